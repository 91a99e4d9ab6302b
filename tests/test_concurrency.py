"""Thread-safety of the shared in-process maps under concurrent requests."""

import asyncio
import threading
from datetime import timedelta

from tenantgate.service.rate_limit import InMemoryWindowStore
from tenantgate.service.tenants import TenantCache
from tenantgate.storage.memory import MemoryStore
from tenantgate.storage.models import EnforcementContext, Tenant, utcnow


def _run_threads(target, count):
    barrier = threading.Barrier(count)

    def runner():
        barrier.wait()
        target()

    threads = [threading.Thread(target=runner) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_window_store_counts_every_hit():
    store = InMemoryWindowStore()
    hits_per_thread = 50

    def hammer():
        for _ in range(hits_per_thread):
            asyncio.run(store.hit("ip:10.0.0.1", 60, 1000.0))

    _run_threads(hammer, 8)
    count, reset_at = asyncio.run(store.hit("ip:10.0.0.1", 60, 1000.0))
    assert count == 8 * hits_per_thread + 1
    assert reset_at == 1060.0


def test_magic_link_is_consumed_exactly_once():
    store = MemoryStore()
    store.create_magic_link("owner@acme.test", "tok-1", utcnow() + timedelta(minutes=15))
    winners = []
    lock = threading.Lock()

    def consume():
        won = store.mark_magic_link_used("tok-1", utcnow())
        with lock:
            winners.append(won)

    _run_threads(consume, 16)
    assert winners.count(True) == 1
    assert winners.count(False) == 15


def test_tenant_cache_stays_bounded_under_concurrent_writes():
    cache = TenantCache(ttl_seconds=300, max_entries=32)

    def fill():
        name = threading.current_thread().name
        for i in range(100):
            tenant = Tenant(id=f"{name}-{i}", slug=f"s{i}", name="T")
            cache.set(f"slug:{name}-{i}", tenant)
            cache.get(f"slug:{name}-{i}")

    _run_threads(fill, 8)
    assert len(cache._entries) <= 32


def test_invitation_is_accepted_exactly_once():
    store = MemoryStore()
    tenant = store.create_tenant("acme", "Acme")
    ctx = EnforcementContext(tenant_id=tenant.id, user_id="u-1", role="OWNER")
    store.create_invitation(
        ctx, "new@acme.test", "STAFF", "inv-tok", utcnow() + timedelta(hours=1)
    )
    outcomes = []
    lock = threading.Lock()

    def accept():
        result = store.accept_invitation(
            "inv-tok", name="Nia", password_hash="x", accepted_at=utcnow()
        )
        with lock:
            outcomes.append(result)

    _run_threads(accept, 16)
    assert sum(1 for r in outcomes if r is not None) == 1
    assert [u.email for u in store.users.values()] == ["new@acme.test"]

from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from tenantgate.logging import get_logger

logger = get_logger(__name__)

_EMAIL_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Outbound transactional email.

    When SMTP is not configured the message is logged instead of sent. Send
    failures are logged and reported as ``False``; they never raise.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Tenantgate",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = self._build_message(to_email, subject, html_body, text_body)
            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_magic_link(
        self, to_email: str, url: str, *, tenant_name: Optional[str] = None, ttl_minutes: int = 15
    ) -> bool:
        brand = tenant_name or self.from_name
        subject = f"Your sign-in link for {brand}"
        safe_url = html.escape(url, quote=True)
        safe_brand = html.escape(brand)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_EMAIL_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Sign in to {safe_brand}</h1>
        <p>Click the button below to sign in. No password needed.</p>
        <p style="margin: 30px 0;">
            <a href="{safe_url}" class="button">Sign in</a>
        </p>
        <p>This link expires in {ttl_minutes} minutes and can only be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {safe_url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Sign in to {brand}

Visit the link below to sign in:

{url}

This link expires in {ttl_minutes} minutes and can only be used once.

If you didn't request this, you can safely ignore this email.
"""
        return self.send(to_email, subject, html_body, text_body)

    def send_invitation(
        self,
        to_email: str,
        url: str,
        *,
        tenant_name: str,
        role: str,
        inviter_name: Optional[str] = None,
        ttl_hours: int = 48,
    ) -> bool:
        subject = f"You're invited to join {tenant_name}"
        safe_url = html.escape(url, quote=True)
        safe_tenant = html.escape(tenant_name)
        inviter = inviter_name or "A team member"
        safe_inviter = html.escape(inviter)
        role_label = role.lower()
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_EMAIL_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Join {safe_tenant}</h1>
        <p>{safe_inviter} invited you to join {safe_tenant} as {role_label}.</p>
        <p style="margin: 30px 0;">
            <a href="{safe_url}" class="button">Accept invitation</a>
        </p>
        <p>This invitation expires in {ttl_hours} hours.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {safe_url}</p>
        </div>
    </div>
</body>
</html>
"""
        text_body = f"""Join {tenant_name}

{inviter} invited you to join {tenant_name} as {role_label}.

Accept the invitation here:

{url}

This invitation expires in {ttl_hours} hours.
"""
        return self.send(to_email, subject, html_body, text_body)

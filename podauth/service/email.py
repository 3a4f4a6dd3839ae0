from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol

from podauth.logging import get_logger

logger = get_logger(__name__)


class MessageSender(Protocol):
    def send_templated(self, template: str, data: Dict[str, Any], to: str) -> bool: ...


TEMPLATES: Dict[str, Dict[str, str]] = {
    "password_reset": {
        "subject": "Reset your password",
        "text": """Hello {user_name},

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link expires at {expiry_time}.

If you didn't request this, you can safely ignore this email.
Need help? {support_url}
""",
        "html": """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <h1>Reset your password</h1>
    <p>Hello {user_name},</p>
    <p>We received a request to reset your password. Click the link below to choose a new password:</p>
    <p><a href="{reset_url}">Reset Password</a></p>
    <p>This link expires at {expiry_time}.</p>
    <p>If you didn't request this, you can safely ignore this email.</p>
    <p><a href="{support_url}">Contact support</a></p>
</body>
</html>
""",
    },
}


class EmailService:
    """Templated transactional email over SMTP.

    When SMTP is not configured the rendered message is logged instead of
    sent, which keeps local development and tests free of a mail server.
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
        from_name: str = "Pod Server",
        templates: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.templates = templates or TEMPLATES

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, data: Dict[str, Any]) -> tuple[str, str, str]:
        """Return ``(subject, html, text)`` for ``template`` filled with ``data``."""
        try:
            parts = self.templates[template]
        except KeyError:
            raise ValueError(f"unknown email template: {template}") from None
        escaped = {key: html.escape(str(value)) for key, value in data.items()}
        return (
            parts["subject"].format(**data),
            parts["html"].format(**escaped),
            parts["text"].format(**data),
        )

    def send_templated(self, template: str, data: Dict[str, Any], to: str) -> bool:
        subject, html_body, text_body = self.render(template, data)
        return self._send_email(to, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

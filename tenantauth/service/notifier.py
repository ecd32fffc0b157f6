from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)


class TemplateKind(str, Enum):
    OTP = "otp"
    PASSWORD_RESET = "password_reset"
    INVITE = "invite"


class NotificationError(RuntimeError):
    """Delivery failed after the message was handed to the transport."""


class Notifier(Protocol):
    async def send(
        self, recipient: str, template: TemplateKind, data: Dict[str, Any]
    ) -> None: ...


@dataclass
class RenderedMessage:
    subject: str
    text_body: str
    html_body: str


_HTML_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {content}
        <div class="footer"><p>{brand}</p></div>
    </div>
</body>
</html>
"""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP delivery of one-time secrets and invitations.

    When SMTP is not configured the message is logged instead of sent, which
    keeps local development usable without a mail server.
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
        from_name: str = "TenantAuth",
        base_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(
        self, recipient: str, template: TemplateKind, data: Dict[str, Any]
    ) -> None:
        message = self.render(TemplateKind(template), data)
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(recipient), subject=message.subject)
            return
        await asyncio.to_thread(self._deliver, recipient, message)

    def render(self, template: TemplateKind, data: Dict[str, Any]) -> RenderedMessage:
        brand = self.from_name
        if template == TemplateKind.OTP:
            code = data["code"]
            minutes = data.get("expires_in_minutes", 10)
            subject = f"Your {brand} login code"
            text = (
                f"Your login code is {code}\n\n"
                f"It expires in {minutes} minutes. If you did not try to sign in, "
                "you can ignore this email.\n"
            )
            content = (
                f'<p>Your login code is:</p><p class="code">{code}</p>'
                f"<p>It expires in {minutes} minutes.</p>"
            )
            heading = "Your login code"
        elif template == TemplateKind.PASSWORD_RESET:
            reset_url = f"{self.base_url}/reset-password?token={data['token']}"
            minutes = data.get("expires_in_minutes", 60)
            subject = f"Reset your {brand} password"
            text = (
                "We received a request to reset your password. Visit the link below "
                f"to choose a new one:\n\n{reset_url}\n\n"
                f"This link will expire in {minutes} minutes.\n"
            )
            content = (
                f'<p>We received a request to reset your password.</p>'
                f'<p><a href="{reset_url}">Reset password</a></p>'
                f"<p>This link will expire in {minutes} minutes.</p>"
            )
            heading = "Reset your password"
        else:
            apps = ", ".join(data.get("app_names", []))
            subject = f"You have been invited to {brand}"
            lines = [f"You have been given access to: {apps}."]
            if data.get("temporary_password"):
                lines.append(
                    f"Your temporary password is {data['temporary_password']}. "
                    "Change it after your first sign-in."
                )
            text = "\n\n".join(lines) + "\n"
            content = "".join(f"<p>{line}</p>" for line in lines)
            heading = "You're invited"
        html = _HTML_LAYOUT.format(heading=heading, content=content, brand=brand)
        return RenderedMessage(subject=subject, text_body=text, html_body=html)

    def _build_mime(self, recipient: str, message: RenderedMessage) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = f"{self.from_name} <{self.from_email}>"
        mime["To"] = recipient
        mime.attach(MIMEText(message.text_body, "plain"))
        mime.attach(MIMEText(message.html_body, "html"))
        return mime

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if not self.smtp_use_tls:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        server.starttls(context=context)
        return server

    def _deliver(self, recipient: str, message: RenderedMessage) -> None:
        """Hand one message to the SMTP relay, raising NotificationError on failure."""
        mime = self._build_mime(recipient, message)
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, recipient, mime.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=redact_email(recipient),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            raise NotificationError(f"failed to deliver {message.subject!r}") from exc
        logger.info("email_sent", to=redact_email(recipient), subject=message.subject)

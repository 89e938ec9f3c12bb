"""
auth/mailer.py -- Outbound transactional email (verification link, reset OTP, welcome).

Mailer holds the message templates and delegates delivery to send(). SmtpMailer
delivers over SMTP (STARTTLS or implicit TLS). With no SMTP host configured it
runs in dev mode and logs a redacted preview instead of sending.

Every delivery failure surfaces as MailDeliveryError. Whether that aborts the
request is the caller's decision (registration swallows it, password reset
does not).

Raw secrets appear only in the message body, never in log lines.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Optional
from urllib.parse import urlencode

from auth.errors import MailDeliveryError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("marketplace.auth.mailer")


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    """Template layer. Subclasses implement send()."""

    def __init__(self, frontend_url: str = "http://localhost:3000", product_name: str = "Asset Marketplace") -> None:
        self.frontend_url = frontend_url.rstrip("/")
        self.product_name = product_name

    def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        raise NotImplementedError

    def send_verification_email(self, email: str, token: str) -> None:
        url = f"{self.frontend_url}/verify-email?{urlencode({'token': token, 'email': email})}"
        text_body = (
            f"Thank you for registering with {self.product_name}!\n\n"
            f"Verify your email address by opening this link:\n{url}\n\n"
            "This link will expire in 24 hours. If you didn't create an account, please ignore this email."
        )
        html_body = (
            f"<h2>Verify Your Email Address</h2>"
            f"<p>Thank you for registering with {self.product_name}!</p>"
            f'<p><a href="{url}">Verify Email Address</a></p>'
            f"<p>This link will expire in 24 hours. If you didn't create an account, please ignore this email.</p>"
        )
        self.send(email, "Verify your email address", html_body, text_body)

    def send_password_reset_email(self, email: str, otp: str) -> None:
        text_body = (
            f"Your password reset code is: {otp}\n\n"
            "The code expires in 10 minutes. If you didn't request a reset, you can ignore this email."
        )
        html_body = (
            "<h2>Password Reset Code</h2>"
            f"<p>Your password reset code is: <strong>{otp}</strong></p>"
            "<p>The code expires in 10 minutes. If you didn't request a reset, you can ignore this email.</p>"
        )
        self.send(email, "Your password reset code", html_body, text_body)

    def send_welcome_email(self, email: str, name: Optional[str] = None) -> None:
        greeting = f"Hi {name}," if name else "Hi,"
        text_body = f"{greeting}\n\nYour email is verified. Welcome to {self.product_name}!"
        html_body = f"<p>{greeting}</p><p>Your email is verified. Welcome to {self.product_name}!</p>"
        self.send(email, f"Welcome to {self.product_name}", html_body, text_body)


class SmtpMailer(Mailer):
    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "noreply@marketplace.local",
        from_name: str = "Asset Marketplace",
        frontend_url: str = "http://localhost:3000",
        timeout: float = 30,
    ) -> None:
        super().__init__(frontend_url=frontend_url, product_name=from_name)
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpMailer:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            # Dev mode: no SMTP host, log instead of sending. Body is not
            # logged because it carries the raw secret.
            logger.info("Email (dev mode, not sent) to=%s subject=%r", redact_email(to_email), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery failed to=%s subject=%r: %s", redact_email(to_email), subject, exc)
            raise MailDeliveryError() from exc
        logger.info("Email sent to=%s subject=%r", redact_email(to_email), subject)

from __future__ import annotations

from datetime import datetime
from email.message import EmailMessage
import logging
import smtplib
from typing import Protocol

from app.config import Settings

LOGGER = logging.getLogger(__name__)


class EmailSendError(RuntimeError):
    pass


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class SmtpEmailSender:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._host = host
        self._port = int(port)
        self._sender = sender
        self._username = username
        self._password = password
        self._use_tls = bool(use_tls)
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpEmailSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.otp_email_sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.smtp_timeout_seconds,
        )

    def send(self, to: str, subject: str, body: str) -> None:
        if not self._sender:
            raise EmailSendError("OTP email sender is not configured")

        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls()
                if self._username and self._password:
                    server.login(self._username, self._password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            LOGGER.error("SMTP error host=%s port=%s: %s", self._host, self._port, exc)
            raise EmailSendError("Failed to send OTP email") from exc


def build_otp_body(code: str, expires_at: datetime, ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    return (
        f"Your OTP is {code}. Expires in {minutes} minute(s).\n\n"
        f"Valid until {expires_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}.\n\n"
        "If you did not request this code, you can ignore this email."
    )

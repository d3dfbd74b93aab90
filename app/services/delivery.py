from __future__ import annotations

from enum import Enum
import logging

from fastapi.concurrency import run_in_threadpool

from app.services.connections import ConnectionRegistry
from app.services.email import EmailSendError, EmailSender, build_otp_body
from app.services.errors import NoActiveConnection, NotFound, TransportError
from app.services.identities import IdentityDirectory
from app.services.otp import OtpRecord

LOGGER = logging.getLogger(__name__)


class Channel(str, Enum):
    push = "push"
    email = "email"


def build_push_payload(record: OtpRecord) -> dict:
    return {
        "type": "otp",
        "otp": record.code,
        "expiresAt": record.expires_at.isoformat(),
    }


class DeliveryDispatcher:
    """Routes an issued code to the identity over the requested channel.

    Failures are raised as service errors; the record has already been
    stored by the time ``send`` runs and is left untouched either way.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        directory: IdentityDirectory,
        email_sender: EmailSender,
        email_subject: str,
        ttl_seconds: int,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._email_sender = email_sender
        self._email_subject = email_subject
        self._ttl_seconds = ttl_seconds

    async def send(self, identity: str, record: OtpRecord, channel: Channel) -> None:
        if channel is Channel.push:
            await self._send_push(identity, record)
        elif channel is Channel.email:
            await self._send_email(identity, record)
        else:
            raise ValueError(f"Unsupported channel: {channel!r}")

    async def _send_push(self, identity: str, record: OtpRecord) -> None:
        delivered = await self._registry.deliver(identity, build_push_payload(record))
        if not delivered:
            raise NoActiveConnection()
        LOGGER.info("OTP pushed identity=%s", identity)

    async def _send_email(self, identity: str, record: OtpRecord) -> None:
        address = await run_in_threadpool(self._directory.contact_address, identity)
        if not address:
            raise NotFound()
        body = build_otp_body(record.code, record.expires_at, self._ttl_seconds)
        try:
            await run_in_threadpool(
                self._email_sender.send, address, self._email_subject, body
            )
        except EmailSendError as exc:
            LOGGER.error("Email delivery failed identity=%s: %s", identity, exc)
            raise TransportError() from exc
        LOGGER.info("OTP emailed identity=%s", identity)

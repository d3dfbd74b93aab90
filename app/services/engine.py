from __future__ import annotations

import logging
from typing import Union

from fastapi.concurrency import run_in_threadpool

from app.services.delivery import Channel, DeliveryDispatcher
from app.services.errors import InvalidOrExpired, NotFound, ValidationError
from app.services.identities import IdentityDirectory, normalize_identity
from app.services.otp import OtpRecord, OtpStore

LOGGER = logging.getLogger(__name__)


def parse_channel(channel: Union[str, Channel, None]) -> Channel:
    if isinstance(channel, Channel):
        return channel
    try:
        return Channel((channel or "").strip().lower())
    except ValueError as exc:
        raise ValidationError("Invalid userId or method") from exc


class OtpEngine:
    """Issues codes, hands them to the dispatcher and checks them back in."""

    def __init__(
        self,
        store: OtpStore,
        directory: IdentityDirectory,
        dispatcher: DeliveryDispatcher,
    ) -> None:
        self._store = store
        self._directory = directory
        self._dispatcher = dispatcher

    async def request_otp(
        self, identity: str, channel: Union[str, Channel]
    ) -> OtpRecord:
        key = self._clean_identity(identity)
        method = parse_channel(channel)
        if not await run_in_threadpool(self._directory.exists, key):
            raise NotFound()

        record = self._store.issue(key)
        LOGGER.info("OTP issued identity=%s channel=%s", key, method.value)
        await self._dispatcher.send(key, record, method)
        return record

    def verify_otp(self, identity: str, code: str) -> None:
        key = self._clean_identity(identity)
        clean_code = (code or "").strip()
        length = self._store.code_length
        if len(clean_code) != length or not clean_code.isascii() or not clean_code.isdigit():
            raise ValidationError(f"OTP must be {length} digits")
        if not self._store.verify(key, clean_code):
            LOGGER.info("OTP rejected identity=%s", key)
            raise InvalidOrExpired()
        LOGGER.info("OTP verified identity=%s", key)

    @staticmethod
    def _clean_identity(identity: str) -> str:
        key = normalize_identity(identity or "")
        if not key:
            raise ValidationError("Missing userId")
        return key

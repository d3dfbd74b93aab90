from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hmac
import logging
import secrets
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OtpRecord:
    identity: str
    code: str
    issued_at: datetime
    expires_at: datetime

    def is_valid_at(self, now: datetime) -> bool:
        return self.expires_at > now


class OtpStore:
    """Outstanding one-time codes, held in memory.

    Every operation runs to completion under one lock, so ``verify`` is a
    single find-and-delete and ``sweep`` can never remove a record that a
    concurrent ``verify`` has already matched. Several codes may be
    outstanding for the same identity; each is consumed independently.
    """

    def __init__(
        self,
        ttl_seconds: int,
        code_length: int = 6,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if code_length <= 0:
            raise ValueError("code_length must be positive")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._code_length = code_length
        self._clock = clock or utcnow
        self._records: dict[str, list[OtpRecord]] = {}
        self._lock = threading.Lock()

    @property
    def code_length(self) -> int:
        return self._code_length

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def now(self) -> datetime:
        return self._clock()

    def issue(self, identity: str, validity: Optional[timedelta] = None) -> OtpRecord:
        now = self._clock()
        record = OtpRecord(
            identity=identity,
            code=self._generate_code(),
            issued_at=now,
            expires_at=now + (validity or self._ttl),
        )
        with self._lock:
            self._records.setdefault(identity, []).append(record)
        LOGGER.debug("Issued OTP identity=%s expires_at=%s", identity, record.expires_at)
        return record

    def verify(self, identity: str, code: str, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        candidate = code.encode("utf-8")
        with self._lock:
            records = self._records.get(identity)
            if not records:
                return False
            for index, record in enumerate(records):
                if not record.is_valid_at(now):
                    continue
                if hmac.compare_digest(record.code.encode("utf-8"), candidate):
                    del records[index]
                    if not records:
                        del self._records[identity]
                    return True
        return False

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        removed = 0
        with self._lock:
            for identity in list(self._records):
                records = self._records[identity]
                kept = [record for record in records if record.is_valid_at(now)]
                removed += len(records) - len(kept)
                if kept:
                    self._records[identity] = kept
                else:
                    del self._records[identity]
        return removed

    def outstanding(self, identity: str) -> list[OtpRecord]:
        with self._lock:
            return list(self._records.get(identity, ()))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(records) for records in self._records.values())

    def _generate_code(self) -> str:
        value = secrets.randbelow(10**self._code_length)
        return str(value).zfill(self._code_length)

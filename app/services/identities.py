from datetime import datetime, timezone
import logging
import re
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.database import session_scope
from app.models.identity import IdentityEntry
from app.services.errors import ValidationError

LOGGER = logging.getLogger(__name__)

REGISTRATION_REJECTED = "Registration rejected"


def normalize_identity(identity: str) -> str:
    return identity.strip()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _normalize_phone(phone: str) -> str:
    cleaned = phone.strip()
    digits = re.sub(r"\D", "", cleaned)
    if cleaned.startswith("+"):
        return f"+{digits}"
    return digits


class IdentityDirectory:
    """Registered identities and their contact addresses.

    The OTP engine only reads from the directory; ``register`` exists for the
    request-facing registration route.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def register(self, identity: str, phone: str, email: str) -> bool:
        """Insert the identity unless it already exists.

        Returns True when a new entry was created. Existing identities are
        never updated.
        """
        key = normalize_identity(identity)
        phone_key = _normalize_phone(phone)
        email_key = _normalize_email(email)
        if not key or not phone_key or not email_key:
            raise ValidationError("Missing userId, phone, or email")

        try:
            with session_scope(self._session_factory) as session:
                existing = self._find_existing(session, key, phone_key, email_key)
                if existing is not None:
                    if existing.id == key:
                        return False
                    raise ValidationError(REGISTRATION_REJECTED)
                session.add(
                    IdentityEntry(
                        id=key,
                        phone=phone_key,
                        email=email_key,
                        created_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError as exc:
            # A concurrent registration committed between the lookup and ours.
            with session_scope(self._session_factory) as session:
                existing = self._find_existing(session, key, phone_key, email_key)
            if existing is not None and existing.id == key:
                return False
            LOGGER.info("Registration conflict identity=%s", key)
            raise ValidationError(REGISTRATION_REJECTED) from exc
        LOGGER.info("Registered identity=%s", key)
        return True

    @staticmethod
    def _find_existing(
        session, key: str, phone_key: str, email_key: str
    ) -> Optional[IdentityEntry]:
        entry = session.get(IdentityEntry, key)
        if entry is not None:
            return entry
        return session.execute(
            select(IdentityEntry).where(
                or_(
                    IdentityEntry.phone == phone_key,
                    IdentityEntry.email == email_key,
                )
            )
        ).scalars().first()

    def exists(self, identity: str) -> bool:
        with session_scope(self._session_factory) as session:
            return session.get(IdentityEntry, normalize_identity(identity)) is not None

    def contact_address(self, identity: str) -> Optional[str]:
        with session_scope(self._session_factory) as session:
            entry = session.get(IdentityEntry, normalize_identity(identity))
            if entry is None:
                return None
            return entry.email or None

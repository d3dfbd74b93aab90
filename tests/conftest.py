import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.database import build_engine, build_session_factory, init_db
from app.main import create_app
from app.services.email import EmailSendError
from app.services.identities import IdentityDirectory


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeEmailSender:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, to, subject, body):
        if self.fail:
            raise EmailSendError("SMTP connection refused")
        self.sent.append({"to": to, "subject": subject, "body": body})


class FakeConnection:
    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.closed = False
        self.close_calls = 0

    @property
    def is_open(self):
        return not self.closed

    async def send(self, payload):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def close(self):
        self.close_calls += 1
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def directory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield IdentityDirectory(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        otp_ttl_seconds=300,
        sweeper_enabled=False,
        otp_request_limit=100,
        otp_request_window_seconds=900,
        push_write_timeout_seconds=1.0,
    )


@pytest.fixture
def app(settings, email_sender, clock):
    return create_app(settings, email_sender=email_sender, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client

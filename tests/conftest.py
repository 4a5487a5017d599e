"""
Test configuration and fixtures.

Provides:
- SQLite database session (tables created and dropped per test)
- HTTPX AsyncClient over the ASGI app
- In-memory fakes for every external adapter and a WorkerContext wired to them
"""
import os
import tempfile
from datetime import datetime, timezone
from typing import AsyncGenerator, Generator

from cryptography.fernet import Fernet

_TEST_DIR = tempfile.mkdtemp(prefix="supportdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["QUEUE_SECRET"] = "test-queue-secret"
os.environ["ENV"] = "test"
for _key in ("OPENAI_API_KEY", "IMAP_HOST", "IMAP_USER", "IMAP_PASSWORD", "SMTP_HOST", "SENTRY_DSN"):
    os.environ[_key] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from supportdesk.core.config import settings
from supportdesk.core.deps import get_db
from supportdesk.db.base import Base
from supportdesk.db.enums import TokenProvider
import supportdesk.db.models  # noqa: F401
from supportdesk.db.session import SessionLocal, engine
from supportdesk.jobs.context import WorkerContext
from supportdesk.main import app
from supportdesk.routers.queue import get_context_builder
from supportdesk.services.cdr_api import CdrRecord
from supportdesk.services.commerce_api import OrderPage, TokenGrant
from supportdesk.services.mailbox_client import RawMessage
from supportdesk.services.token_service import TokenManager


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh schema per test; app code is free to commit."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


# =============================================================================
# Adapter fakes
# =============================================================================

class FakeCommerce:
    """iKAS stand-in: pages are served in order, cursor is the 1-based page."""

    def __init__(self):
        self.pages: list[OrderPage] = []
        self.orders_by_number: dict[str, dict] = {}
        self.lookup_error: Exception | None = None
        self.exchanges = 0
        self.list_calls: list[tuple] = []
        self.lookups: list[tuple[str, str]] = []

    async def exchange_token(self, client_id=None, client_secret=None):
        self.exchanges += 1
        return TokenGrant(access_token=f"token-{self.exchanges}", expires_in=3600)

    async def list_orders(self, token, order_filter=None, cursor=None):
        self.list_calls.append((token, order_filter, cursor))
        index = int(cursor) - 1 if cursor else 0
        if index >= len(self.pages):
            return OrderPage()
        return self.pages[index]

    async def get_order_by_number(self, token, number):
        self.lookups.append((token, number))
        if self.lookup_error:
            raise self.lookup_error
        return self.orders_by_number.get(number)


class FakeAI:
    def __init__(self, reply: str = "Merhaba, siparişiniz kargoya verildi."):
        self.reply = reply
        self.prompts: list[dict] = []

    async def complete(self, prompt, model=None, api_key=None, system=""):
        self.prompts.append({"prompt": prompt, "model": model, "api_key": api_key, "system": system})
        return self.reply


class FakeCdr:
    def __init__(self):
        self.records: list[CdrRecord] = []
        self.windows: list[tuple[datetime, datetime]] = []

    async def list_calls(self, from_ts, to_ts):
        self.windows.append((from_ts, to_ts))
        return list(self.records)


class FakeMailbox:
    """Callable like MailboxClient(config) and usable as its context manager."""

    def __init__(self):
        self.messages: list[RawMessage] = []
        self.configs: list = []
        self.since_uids: list[int] = []
        self.unparseable_uids: list[int] = []
        self.skipped_uids: list[int] = []

    def __call__(self, config):
        self.configs.append(config)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def list_unseen(self, since_uid=0, limit=None):
        self.since_uids.append(since_uid)
        self.skipped_uids = [uid for uid in self.unparseable_uids if uid > since_uid]
        messages = [m for m in self.messages if m.uid > since_uid]
        return messages[:limit] if limit else messages


class FakeNotifier:
    is_configured = True

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, to, template, variables):
        self.sent.append((to, template, variables))


def make_message(uid: int, subject: str, body: str, **overrides) -> RawMessage:
    data = {
        "uid": uid,
        "message_id": f"<msg-{uid}@example.com>",
        "from_email": "musteri@example.com",
        "from_name": "Ayşe Yılmaz",
        "to_email": "destek@magaza.com",
        "subject": subject,
        "body_text": body,
        "body_html": None,
        "received_at": datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return RawMessage(**data)


def make_cdr(unique_id: str, **overrides) -> CdrRecord:
    data = {
        "unique_id": unique_id,
        "direction": "in",
        "customer_num": "05321234567",
        "pbx_num": "02121234567",
        "missed": False,
        "disposition": "ANSWERED",
        "billable_seconds": 42,
        "start_time": datetime(2026, 10, 1, 10, 0, tzinfo=timezone.utc),
        "end_time": datetime(2026, 10, 1, 10, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return CdrRecord(**data)


@pytest.fixture
def fake_commerce() -> FakeCommerce:
    return FakeCommerce()


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def fake_cdr() -> FakeCdr:
    return FakeCdr()


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def worker_context(db, fake_commerce, fake_ai, fake_cdr, fake_mailbox) -> WorkerContext:
    return WorkerContext(
        owner_id="test-worker",
        tokens=TokenManager(db, {TokenProvider.IKAS: fake_commerce}),
        commerce=fake_commerce,
        ai=fake_ai,
        cdr=fake_cdr,
        mailbox_factory=fake_mailbox,
        notifier=None,
        settings=settings,
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, worker_context: WorkerContext) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient with the test session and fake adapters injected."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context_builder] = lambda: lambda _db: worker_context

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()

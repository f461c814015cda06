"""
Shared fixtures.

No network: the mirror runs in-process (FastAPI over in-memory SQLite)
and the client reaches it through httpx.ASGITransport.
"""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from finsync.audit import AuditLogger
from finsync.config import ServerSettings, SyncSettings
from finsync.models.records import (
    Account,
    AccountType,
    Category,
    CategoryType,
    Frequency,
    RecurringTransaction,
    TransactionType,
)
from finsync.server import MirrorDatabase, create_app
from finsync.services.remote import RemoteMirrorClient
from finsync.services.storage import InMemoryAuditStorage, InMemoryRecordStore


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
async def checking(store):
    return await store.accounts.create(Account(
        name="Main Checking",
        type=AccountType.CHECKING,
        balance=Decimal("1000.00"),
    ))


@pytest.fixture
async def groceries(store):
    return await store.categories.create(Category(name="Groceries", type=CategoryType.EXPENSE))


@pytest.fixture
async def salary(store):
    return await store.categories.create(Category(name="Salary", type=CategoryType.INCOME))


@pytest.fixture
def make_template(store, checking, groceries):
    """Create a recurring template on the checking account."""

    async def _make(**overrides) -> RecurringTransaction:
        data = {
            "account_id": checking.id,
            "amount": Decimal("9.99"),
            "description": "Streaming subscription",
            "category_id": groceries.id,
            "type": TransactionType.EXPENSE,
            "frequency": Frequency.MONTHLY,
            "start_date": date(2024, 1, 15),
        }
        data.update(overrides)
        return await store.recurring_transactions.create(RecurringTransaction(**data))

    return _make


@pytest.fixture
def mirror_db():
    database = MirrorDatabase.from_url("sqlite://")
    yield database
    database.dispose()


@pytest.fixture
def mirror_app(mirror_db):
    return create_app(mirror_db, ServerSettings())


@pytest.fixture
async def http_client(mirror_app):
    transport = httpx.ASGITransport(app=mirror_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def remote(mirror_app):
    client = RemoteMirrorClient(
        base_url="http://testserver/api",
        timeout=5.0,
        transport=httpx.ASGITransport(app=mirror_app),
    )
    yield client
    await client.aclose()


@pytest.fixture
def sync_settings():
    return SyncSettings(full_sync_delay_seconds=0)

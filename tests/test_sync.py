"""
Tests for the sync engine, the wire codec and SyncService.

Engine logic is tested against a scripted remote; the end-to-end flows
run against the real mirror app over httpx.ASGITransport.
"""

import json
import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx

from finsync.config import SyncSettings
from finsync.models.audit import AuditEventType
from finsync.models.records import (
    Account,
    AccountType,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
    utcnow,
)
from finsync.models.sync import (
    ChangeSet,
    CreatedRecord,
    PushError,
    PushResponse,
    SkippedRow,
    SyncTable,
)
from finsync.orchestrator import WATERMARK_KEY, LedgerService, SyncService
from finsync.services.remote import RemoteError, RemoteMirrorClient
from finsync.services.remote.codec import (
    CodecError,
    decode_changes,
    decode_row,
    encode_record,
    parse_wire_date,
    parse_wire_timestamp,
)
from finsync.services.storage import InMemoryRecordStore, StorageError
from finsync.sync import SyncEngine, SyncError


FIXED_CLOCK = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SERVER_TIME = datetime(2024, 5, 1, 11, 59, 30, tzinfo=timezone.utc)

NEVER_COLD = SyncSettings(
    cold_account_threshold=0,
    cold_category_threshold=0,
    full_sync_delay_seconds=0,
)


class ScriptedRemote:
    """Stands in for RemoteMirrorClient with canned answers."""

    def __init__(self, changes=None, response=None, fetch_error=None, push_error=None):
        self.changes = changes or ChangeSet()
        self.response = response or PushResponse()
        self.fetch_error = fetch_error
        self.push_error = push_error
        self.calls: list[tuple] = []

    async def fetch_changes(self, since):
        self.calls.append(("fetch", since))
        if self.fetch_error:
            raise self.fetch_error
        return self.changes, SERVER_TIME

    async def push_changes(self, batch):
        self.calls.append(("push", batch))
        if self.push_error:
            raise self.push_error
        return self.response


async def warm_up(store):
    """Give a store enough rows not to count as cold."""
    for name in ("Checking", "Savings"):
        await store.accounts.create(Account(name=name, type=AccountType.CHECKING))
    for n in range(5):
        await store.categories.create(Category(name=f"Cat {n}", type=CategoryType.EXPENSE))


def make_engine(store, remote, settings=None, sleep=None):
    async def no_sleep(seconds):
        return None

    return SyncEngine(
        store,
        remote,
        settings or SyncSettings(full_sync_delay_seconds=0),
        clock=lambda: FIXED_CLOCK,
        sleep=sleep or no_sleep,
    )


class TestCodec:
    """Tests for the wire codec."""

    def test_parse_wire_date_variants(self):
        """Test day values in the shapes the mirror sends."""
        assert parse_wire_date("2024-01-15") == date(2024, 1, 15)
        assert parse_wire_date("2024-01-15T00:00:00.000Z") == date(2024, 1, 15)
        assert parse_wire_date(datetime(2024, 1, 15, 23, 0)) == date(2024, 1, 15)
        assert parse_wire_date(None) is None
        with pytest.raises(CodecError):
            parse_wire_date("15/01/2024")

    def test_parse_wire_timestamp(self):
        """Test that timestamps come back aware UTC."""
        assert parse_wire_timestamp("2024-01-15T10:00:00Z") == datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
        assert parse_wire_timestamp("2024-01-15T10:00:00").tzinfo is not None
        assert parse_wire_timestamp("2024-01-15T12:00:00+02:00") == datetime(2024, 1, 15, 10, tzinfo=timezone.utc)
        with pytest.raises(CodecError):
            parse_wire_timestamp(None)

    def test_tags_travel_as_json_string(self):
        """Test tag encoding on the way out and back."""
        txn = Transaction(
            id=3,
            account_id=1,
            date=date(2024, 2, 1),
            amount=Decimal("12"),
            description="Lunch",
            category_id=2,
            type=TransactionType.EXPENSE,
            tags=["work", "food"],
        )
        row = encode_record(SyncTable.TRANSACTIONS, txn)
        assert json.loads(row["tags"]) == ["food", "work"]
        assert decode_row(SyncTable.TRANSACTIONS, row).tags == ["food", "work"]

    def test_decode_row_legacy_values(self):
        """Test NULL tags, 0 references and datetime dates."""
        txn = decode_row(SyncTable.TRANSACTIONS, {
            "id": 8,
            "accountId": 1,
            "date": "2024-02-01T00:00:00.000Z",
            "amount": 5.5,
            "description": "Bus",
            "categoryId": 4,
            "type": "expense",
            "toAccountId": 0,
            "tags": None,
            "isActive": 1,
        })
        assert txn.date == date(2024, 2, 1)
        assert txn.to_account_id is None
        assert txn.tags == []
        assert txn.is_active is True

    def test_decode_changes_missing_tables(self):
        """Test that absent tables decode as empty."""
        changes = decode_changes({"accounts": [{"id": 1, "name": "Cash", "type": "cash"}]})
        assert len(changes.accounts) == 1
        assert changes.net_worth_snapshots == []

    def test_bad_tags(self):
        """Test that undecodable tags are rejected."""
        with pytest.raises(CodecError):
            decode_row(SyncTable.TRANSACTIONS, {"tags": "not json"})

    def test_decode_changes_skips_bad_rows(self):
        """Test that one rejected row does not take its siblings down."""
        changes = decode_changes({
            "accounts": [
                {"id": 1, "name": "Cash", "type": "cash"},
                {"id": 2, "name": "Vault", "type": "vault"},
                "not a row",
            ],
            "transactions": [{
                "id": 5,
                "accountId": 1,
                "date": "2024-03-01",
                "amount": 0,
                "description": "Zero",
                "categoryId": 1,
                "type": "expense",
            }],
        })

        assert [a.name for a in changes.accounts] == ["Cash"]
        assert changes.transactions == []
        assert [(s.table, s.item) for s in changes.skipped] == [
            ("accounts", {"id": 2, "name": "Vault", "type": "vault"}),
            ("accounts", "not a row"),
            ("transactions", {
                "id": 5,
                "accountId": 1,
                "date": "2024-03-01",
                "amount": 0,
                "description": "Zero",
                "categoryId": 1,
                "type": "expense",
            }),
        ]
        assert "amount" in changes.skipped[2].error

    def test_decode_changes_bad_envelope(self):
        """Test that a body that is not an object of lists is rejected."""
        with pytest.raises(CodecError):
            decode_changes([])
        with pytest.raises(CodecError):
            decode_changes({"accounts": {"id": 1}})


class TestSyncEnginePull:
    """Tests for SyncEngine.pull."""

    async def test_cold_store_ignores_watermark(self, store):
        """Test that an empty store asks for everything."""
        remote = ScriptedRemote()
        result = await make_engine(store, remote).pull(FIXED_CLOCK)
        assert remote.calls == [("fetch", None)]
        assert result.full is True

    async def test_warm_store_sends_watermark(self, store):
        """Test an incremental pull."""
        await warm_up(store)
        remote = ScriptedRemote()
        result = await make_engine(store, remote).pull(FIXED_CLOCK)
        assert remote.calls == [("fetch", FIXED_CLOCK)]
        assert result.full is False

    async def test_force_full(self, store):
        """Test that force_full drops the watermark on a warm store."""
        await warm_up(store)
        remote = ScriptedRemote()
        result = await make_engine(store, remote).pull(FIXED_CLOCK, force_full=True)
        assert remote.calls == [("fetch", None)]
        assert result.full is True

    async def test_watermark_is_server_time(self, store):
        """Test that the pull watermark comes from the response, not the clock."""
        result = await make_engine(store, ScriptedRemote()).pull(None)
        assert result.watermark == SERVER_TIME

    async def test_pulled_rows_overwrite_local_rows(self, store):
        """Test last-write-wins on pull."""
        local = await store.accounts.create(Account(name="Old name", type=AccountType.CASH))
        stamp = datetime(2024, 4, 30, tzinfo=timezone.utc)
        remote = ScriptedRemote(changes=ChangeSet(accounts=[
            Account(id=local.id, name="New name", type=AccountType.CASH, updated_at=stamp),
            Account(id=9, name="Other device", type=AccountType.SAVINGS, updated_at=stamp),
        ]))

        result = await make_engine(store, remote).pull(None)

        assert result.imported["accounts"] == 2
        stored = await store.accounts.require(local.id)
        assert stored.name == "New name"
        assert stored.updated_at == stamp
        assert (await store.accounts.create(Account(name="Next", type=AccountType.CASH))).id == 10

    async def test_failure_raises_sync_error(self, store):
        """Test that a remote failure surfaces as SyncError."""
        remote = ScriptedRemote(fetch_error=RemoteError("connection refused"))
        with pytest.raises(SyncError) as exc_info:
            await make_engine(store, remote).pull(None)
        assert exc_info.value.operation == "pull"
        assert str(exc_info.value) == "Failed to pull changes: connection refused"

    async def test_skipped_rows_are_reported(self, store):
        """Test that rows the models rejected ride along on the result."""
        skipped = SkippedRow(table="transactions", item={"id": 3}, error="amount must be > 0")
        remote = ScriptedRemote(changes=ChangeSet(
            accounts=[Account(id=1, name="Cash", type=AccountType.CASH)],
            skipped=[skipped],
        ))

        result = await make_engine(store, remote).pull(None)

        assert result.skipped == [skipped]
        assert result.imported["accounts"] == 1
        assert result.watermark == SERVER_TIME
        assert result.summary() == "Pulled 1 items from server (1 skipped)"

    async def test_store_failure_raises_sync_error(self, store, monkeypatch):
        """Test that a failing local write fails the pull as a whole."""
        async def put(record):
            raise StorageError("disk full")

        monkeypatch.setattr(store.accounts, "put", put)
        remote = ScriptedRemote(changes=ChangeSet(accounts=[
            Account(id=1, name="Cash", type=AccountType.CASH),
        ]))

        with pytest.raises(SyncError) as exc_info:
            await make_engine(store, remote).pull(None)
        assert exc_info.value.operation == "pull"
        assert str(exc_info.value) == "Failed to store pulled changes: disk full"


class TestSyncEnginePush:
    """Tests for SyncEngine.push."""

    async def test_push_sends_every_row(self, store, checking, groceries):
        """Test that the whole store goes out in one batch."""
        await store.transactions.create(Transaction(
            account_id=checking.id,
            date=date(2024, 3, 1),
            amount=Decimal("20"),
            description="Market",
            category_id=groceries.id,
            type=TransactionType.EXPENSE,
            tags=["b", "a"],
        ))
        remote = ScriptedRemote(response=PushResponse(inserted=3))

        result = await make_engine(store, remote).push()

        _, batch = remote.calls[0]
        assert set(batch) == {t.value for t in SyncTable}
        assert [row["name"] for row in batch["accounts"]] == ["Main Checking"]
        assert batch["transactions"][0]["tags"] == '["a", "b"]'
        assert batch["transactions"][0]["accountId"] == checking.id
        assert result.inserted == 3

    async def test_watermark_is_client_clock(self, store):
        """Test that the push watermark is local completion time."""
        result = await make_engine(store, ScriptedRemote()).push()
        assert result.watermark == FIXED_CLOCK
        explicit = datetime(2025, 1, 1, tzinfo=timezone.utc)
        result = await make_engine(store, ScriptedRemote()).push(now=explicit)
        assert result.watermark == explicit

    async def test_row_errors_do_not_fail_push(self, store):
        """Test that per-row errors are reported on the result."""
        error = PushError(table="transactions", item={"id": 4}, error="NOT NULL constraint failed")
        remote = ScriptedRemote(response=PushResponse(updated=2, errors=[error]))
        result = await make_engine(store, remote).push()
        assert result.has_errors
        assert result.errors[0].error == "NOT NULL constraint failed"
        assert result.updated == 2

    async def test_adopts_server_minted_id(self, store, checking, groceries):
        """Test that a re-keyed account takes its references along."""
        txn = await store.transactions.create(Transaction(
            account_id=checking.id,
            date=date(2024, 3, 1),
            amount=Decimal("20"),
            description="Market",
            category_id=groceries.id,
            type=TransactionType.EXPENSE,
        ))
        remote = ScriptedRemote(response=PushResponse(
            inserted=1,
            created=[CreatedRecord(table="accounts", client_id=checking.id, id=40)],
        ))

        result = await make_engine(store, remote).push()

        assert result.reassigned == 1
        assert await store.accounts.get(checking.id) is None
        assert (await store.accounts.require(40)).name == "Main Checking"
        assert (await store.transactions.require(txn.id)).account_id == 40

    async def test_adoption_conflict_is_reported(self, store, checking):
        """Test that a server id already used locally becomes a row error."""
        other = await store.accounts.create(Account(name="Savings", type=AccountType.SAVINGS))
        remote = ScriptedRemote(response=PushResponse(
            created=[CreatedRecord(table="accounts", client_id=checking.id, id=other.id)],
        ))

        result = await make_engine(store, remote).push()

        assert result.reassigned == 0
        assert len(result.errors) == 1
        assert (await store.accounts.require(checking.id)).name == "Main Checking"

    async def test_failure_raises_sync_error(self, store):
        """Test that a rejected push surfaces as SyncError."""
        remote = ScriptedRemote(push_error=RemoteError("Sync server returned 500", status_code=500))
        with pytest.raises(SyncError) as exc_info:
            await make_engine(store, remote).push()
        assert exc_info.value.operation == "push"
        assert "500" in str(exc_info.value)

    async def test_unreadable_store_raises_sync_error(self, store, monkeypatch):
        """Test that nothing is sent when the local store cannot be read."""
        async def all_rows():
            raise StorageError("database is locked")

        monkeypatch.setattr(store.budgets, "all", all_rows)
        remote = ScriptedRemote()

        with pytest.raises(SyncError) as exc_info:
            await make_engine(store, remote).push()
        assert exc_info.value.operation == "push"
        assert "database is locked" in str(exc_info.value)
        assert remote.calls == []


class TestSyncEngineFullSync:
    """Tests for SyncEngine.full_sync."""

    async def test_pull_pause_push(self, store):
        """Test the order of the three steps."""
        remote = ScriptedRemote()
        pauses = []

        async def sleep(seconds):
            pauses.append(seconds)
            remote.calls.append(("sleep", seconds))

        settings = SyncSettings(full_sync_delay_seconds=0.5)
        result = await make_engine(store, remote, settings=settings, sleep=sleep).full_sync(None)

        assert [call[0] for call in remote.calls] == ["fetch", "sleep", "push"]
        assert pauses == [0.5]
        assert result.pull.watermark == SERVER_TIME
        assert result.watermark == FIXED_CLOCK

    async def test_push_failure_keeps_completed_pull(self, store):
        """Test that the pull outcome survives a failed push."""
        remote = ScriptedRemote(push_error=RemoteError("timeout"))
        with pytest.raises(SyncError) as exc_info:
            await make_engine(store, remote).full_sync(None)
        assert exc_info.value.completed_pull is not None
        assert exc_info.value.completed_pull.watermark == SERVER_TIME


class TestSyncAgainstMirror:
    """End-to-end flows against the in-process mirror."""

    async def test_two_devices_share_records(self, remote, sync_settings):
        """Test push from one device and a first pull on another."""
        laptop = InMemoryRecordStore()
        ledger = LedgerService(laptop)
        account = await ledger.add_account("Checking", AccountType.CHECKING, Decimal("250.00"))
        category = await ledger.add_category("Rent", CategoryType.EXPENSE)
        txn = await ledger.add_transaction(
            account.id, date(2024, 3, 1), Decimal("1200.00"), "March rent",
            category.id, TransactionType.EXPENSE, tags=["home", "rent"],
        )

        laptop_sync = SyncService(SyncEngine(laptop, remote, sync_settings), laptop)
        pushed, message = await laptop_sync.push()
        assert pushed is not None
        assert pushed.inserted == 3
        assert message == "Pushed 3 new, updated 0 items"

        phone = InMemoryRecordStore()
        phone_sync = SyncService(SyncEngine(phone, remote, sync_settings), phone)
        pulled, message = await phone_sync.pull()

        assert pulled.full is True
        assert message == "Pulled 3 items from server"
        copy = await phone.transactions.require(txn.id)
        assert copy.amount == Decimal("1200")
        assert copy.tags == ["home", "rent"]
        assert copy.date == date(2024, 3, 1)
        assert (await phone.accounts.require(account.id)).balance == Decimal("250")
        assert await phone_sync.last_sync_time() == pulled.watermark

    async def test_second_push_updates(self, remote, sync_settings, store, checking):
        """Test that rows the mirror already has are updated, not inserted."""
        sync = SyncService(SyncEngine(store, remote, sync_settings), store)
        first, _ = await sync.push()
        await store.accounts.update(checking.id, name="Joint Checking")
        second, _ = await sync.push()

        assert (first.inserted, first.updated) == (1, 0)
        assert (second.inserted, second.updated) == (0, 1)

    async def test_pull_watermark_is_mirror_time(self, remote, store):
        """Test that the stored watermark is the mirror's response time."""
        engine = SyncEngine(store, remote, NEVER_COLD, clock=lambda: FIXED_CLOCK)
        before = utcnow()
        result = await engine.pull(None)
        after = utcnow()
        assert before <= result.watermark <= after

    async def test_incremental_pull(self, remote, mirror_db, store):
        """Test that a second pull only fetches newer rows."""
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Early", "type": "cash"})
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store)

        first, _ = await sync.pull()
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Late", "type": "cash"})
        second, _ = await sync.pull()

        assert first.imported["accounts"] == 1
        assert second.full is False
        assert second.total_imported == 1
        assert [a.name for a in await store.accounts.all()] == ["Early", "Late"]

    async def test_force_full_pull(self, remote, mirror_db, store):
        """Test manual recovery re-fetches everything."""
        mirror_db.insert_row(SyncTable.ACCOUNTS, {"name": "Early", "type": "cash"})
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store)
        await sync.pull()

        result, _ = await sync.force_full_pull()

        assert result.full is True
        assert result.total_imported == 1

    async def test_full_sync_watermark_and_audit(self, remote, store, checking, audit_logger, audit_storage):
        """Test that a full sync ends on the push watermark."""
        engine = SyncEngine(
            store, remote, SyncSettings(full_sync_delay_seconds=0), clock=lambda: FIXED_CLOCK
        )
        sync = SyncService(engine, store, audit_logger)

        result, message = await sync.full_sync()

        assert result is not None
        assert message == "Pulled 0 items from server. Pushed 1 new, updated 0 items"
        assert await store.get_timestamp(WATERMARK_KEY) == FIXED_CLOCK
        types = [e.event_type for e in await audit_storage.get_recent_events()]
        assert AuditEventType.SYNC_PULL_COMPLETED in types
        assert AuditEventType.SYNC_PUSH_COMPLETED in types


    async def test_row_the_mirror_accepts_but_models_reject(
        self, http_client, remote, store, audit_logger, audit_storage
    ):
        """Test that a zero-amount row stored through the CRUD routes does not block pulls."""
        account = (await http_client.post("/api/accounts", json={"name": "Cash", "type": "cash"})).json()
        category = (await http_client.post("/api/categories", json={"name": "Food", "type": "expense"})).json()
        response = await http_client.post("/api/transactions", json={
            "accountId": account["id"],
            "date": "2024-03-01",
            "amount": 0,
            "description": "Zero",
            "categoryId": category["id"],
            "type": "expense",
        })
        assert response.status_code == 201
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store, audit_logger)

        result, message = await sync.pull()

        assert result is not None
        assert message == "Pulled 2 items from server (1 skipped)"
        assert [a.name for a in await store.accounts.all()] == ["Cash"]
        assert await store.transactions.count() == 0
        assert [s.table for s in result.skipped] == ["transactions"]
        assert await sync.last_sync_time() == result.watermark
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.SYNC_PULL_COMPLETED
        assert events[0].details["skipped"] == 1

        again, _ = await sync.pull()
        assert again.full is False
        assert again.skipped == []


class TestSyncFailures:
    """Tests for failures that must leave the watermark alone."""

    @staticmethod
    def client(handler) -> RemoteMirrorClient:
        return RemoteMirrorClient(
            base_url="http://mirror.test/api",
            timeout=5.0,
            transport=httpx.MockTransport(handler),
        )

    async def test_unreachable_mirror(self, store, audit_logger, audit_storage):
        """Test a connection error on pull."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        remote = self.client(handler)
        stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await store.set_timestamp(WATERMARK_KEY, stamp)
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store, audit_logger)

        result, message = await sync.pull()

        assert result is None
        assert message.startswith("Pull failed: Failed to pull changes: Could not reach sync server")
        assert await sync.last_sync_time() == stamp
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.SYNC_FAILED
        await remote.aclose()

    async def test_server_error_on_push(self, store):
        """Test a 500 on push."""
        remote = self.client(lambda request: httpx.Response(500, json={"error": "boom"}))
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store)

        result, message = await sync.push()

        assert result is None
        assert "500" in message
        assert await sync.last_sync_time() is None
        await remote.aclose()

    async def test_malformed_pull_body(self, store):
        """Test that a body without a timestamp is rejected."""
        remote = self.client(lambda request: httpx.Response(200, json={"accounts": []}))
        with pytest.raises(RemoteError):
            await remote.fetch_changes(None)
        await remote.aclose()

    async def test_pull_body_not_an_object(self, store):
        """Test that a JSON array body is a failed pull, not a crash."""
        remote = self.client(lambda request: httpx.Response(200, json=[]))
        stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await store.set_timestamp(WATERMARK_KEY, stamp)
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store)

        result, message = await sync.pull()

        assert result is None
        assert "instead of an object" in message
        assert await sync.last_sync_time() == stamp
        await remote.aclose()

    async def test_store_failure_is_a_failed_pull(self, store, monkeypatch):
        """Test that a local write error comes back as a message."""
        body = {
            "accounts": [{"id": 1, "name": "Cash", "type": "cash"}],
            "timestamp": "2024-05-01T11:59:30+00:00",
        }
        remote = self.client(lambda request: httpx.Response(200, json=body))

        async def put(record):
            raise StorageError("disk full")

        monkeypatch.setattr(store.accounts, "put", put)
        sync = SyncService(SyncEngine(store, remote, NEVER_COLD), store)

        result, message = await sync.pull()

        assert result is None
        assert message == "Pull failed: Failed to store pulled changes: disk full"
        assert await sync.last_sync_time() is None
        await remote.aclose()

    async def test_failed_push_keeps_pull_watermark(self, store):
        """Test that a full sync whose push fails still records the pull."""
        server_time = "2024-05-01T11:59:30+00:00"

        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"timestamp": server_time})
            return httpx.Response(503, json={"error": "maintenance"})

        remote = self.client(handler)
        sync = SyncService(
            SyncEngine(store, remote, SyncSettings(full_sync_delay_seconds=0)),
            store,
        )

        result, message = await sync.full_sync()

        assert result is None
        assert message.startswith("Sync failed: Failed to push changes")
        assert await sync.last_sync_time() == SERVER_TIME
        await remote.aclose()

    async def test_health(self, remote):
        """Test the health check against the mirror."""
        assert await remote.health() is True
        down = self.client(lambda request: httpx.Response(503))
        assert await down.health() is False
        await down.aclose()
        odd = self.client(lambda request: httpx.Response(200, json=["ok"]))
        assert await odd.health() is False
        await odd.aclose()

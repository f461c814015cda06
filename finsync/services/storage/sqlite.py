"""
SQLite Storage Implementation

DESIGN DECISION: The local store is a single SQLite file because:
1. It is durable without running any service
2. It ships with Python
3. A record-per-row JSON document keeps every table's schema in the
   pydantic models instead of duplicating it in DDL

TRADEOFFS:
- Field queries filter in Python (fine for one person's ledger)
- One connection per store; all access happens on the event loop thread

Transient "database is locked" errors (another process holding the file)
are retried with tenacity; anything else propagates as StorageError.
"""

import json
import sqlite3
from pathlib import Path
from typing import Optional, Union

import structlog
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from finsync.models.audit import AuditEvent
from finsync.models.sync import SyncTable
from finsync.services.storage.interface import (
    AuditStorageInterface,
    R,
    RecordStore,
    RecordTable,
    StorageError,
)


logger = structlog.get_logger(__name__)


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


class SQLiteConnection:
    """
    Thin wrapper around one sqlite3 connection.

    Every statement goes through execute(), which commits and retries
    lock contention.
    """

    def __init__(self, path: Union[str, Path], retry_attempts: int = 3):
        self.path = str(path)
        self._retry_attempts = retry_attempts
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = sqlite3.connect(self.path, timeout=10.0)
            except sqlite3.Error as e:
                raise StorageError(f"Failed to open database {self.path}: {e}")
            self._conn.row_factory = sqlite3.Row
            logger.debug("sqlite_connected", path=self.path)
        return self._conn

    def execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self.connect()
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
                retry=retry_if_exception(_is_locked),
                reraise=True,
            ):
                with attempt:
                    try:
                        rows = conn.execute(sql, params).fetchall()
                        conn.commit()
                    except sqlite3.Error:
                        conn.rollback()
                        raise
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e
        return rows

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class SQLiteRecordTable(RecordTable[R]):
    """
    One SQL table per record table: (id, data JSON, updated_at).

    AUTOINCREMENT guarantees identifiers are never reused, even after
    deletes; sqlite_sequence also absorbs explicitly inserted ids.
    """

    def __init__(self, table: SyncTable, db: SQLiteConnection):
        super().__init__(table)
        self._db = db
        self._sql_name = table.store_attr

    def init_schema(self) -> None:
        self._db.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._sql_name} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                data TEXT NOT NULL,
                updated_at TEXT
            )
        """)

    def _to_record(self, row: sqlite3.Row) -> R:
        return self.model.model_validate_json(row["data"])

    async def _fetch_one(self, record_id: int) -> Optional[R]:
        rows = self._db.execute(
            f"SELECT data FROM {self._sql_name} WHERE id = ?", (record_id,)
        )
        return self._to_record(rows[0]) if rows else None

    async def _fetch_all(self) -> list[R]:
        rows = self._db.execute(f"SELECT data FROM {self._sql_name} ORDER BY id")
        return [self._to_record(row) for row in rows]

    async def _write(self, record: R) -> None:
        self._db.execute(
            f"""
            INSERT INTO {self._sql_name} (id, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (
                record.id,
                record.model_dump_json(),
                record.updated_at.isoformat() if record.updated_at else None,
            ),
        )

    async def _remove(self, record_id: int) -> bool:
        existed = await self._fetch_one(record_id) is not None
        self._db.execute(f"DELETE FROM {self._sql_name} WHERE id = ?", (record_id,))
        return existed

    def _sequence(self) -> int:
        rows = self._db.execute(
            "SELECT seq FROM sqlite_sequence WHERE name = ?", (self._sql_name,)
        )
        return rows[0]["seq"] if rows else 0

    async def _allocate_id(self) -> int:
        next_id = self._sequence() + 1
        await self._reserve_id(next_id)
        return next_id

    async def _reserve_id(self, record_id: int) -> None:
        if record_id <= self._sequence():
            return
        known = self._db.execute(
            "SELECT 1 FROM sqlite_sequence WHERE name = ?", (self._sql_name,)
        )
        if known:
            self._db.execute(
                "UPDATE sqlite_sequence SET seq = ? WHERE name = ?",
                (record_id, self._sql_name),
            )
        else:
            self._db.execute(
                "INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)",
                (self._sql_name, record_id),
            )

    async def count(self) -> int:
        rows = self._db.execute(f"SELECT COUNT(*) AS n FROM {self._sql_name}")
        return rows[0]["n"]


class SQLiteRecordStore(RecordStore):
    """
    Durable local store backed by one SQLite file.

    Pass ":memory:" as the path for a private throwaway database.
    """

    def __init__(self, path: Union[str, Path], retry_attempts: int = 3):
        self._db = SQLiteConnection(path, retry_attempts=retry_attempts)
        self.accounts = SQLiteRecordTable(SyncTable.ACCOUNTS, self._db)
        self.categories = SQLiteRecordTable(SyncTable.CATEGORIES, self._db)
        self.transactions = SQLiteRecordTable(SyncTable.TRANSACTIONS, self._db)
        self.budgets = SQLiteRecordTable(SyncTable.BUDGETS, self._db)
        self.recurring_transactions = SQLiteRecordTable(SyncTable.RECURRING_TRANSACTIONS, self._db)
        self.net_worth_snapshots = SQLiteRecordTable(SyncTable.NET_WORTH_SNAPSHOTS, self._db)
        self._init_schema()

    @property
    def connection(self) -> SQLiteConnection:
        return self._db

    def _init_schema(self) -> None:
        for table in SyncTable:
            self.table(table).init_schema()
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    async def get_value(self, key: str) -> Optional[str]:
        rows = self._db.execute("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    async def set_value(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._db.execute("DELETE FROM meta WHERE key = ?", (key,))
        else:
            self._db.execute(
                """
                INSERT INTO meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )

    async def close(self) -> None:
        self._db.close()


class SQLiteAuditStorage(AuditStorageInterface):
    """
    Audit events in the same SQLite file as the records.

    Audit events are append-only.
    """

    def __init__(self, db: SQLiteConnection):
        self._db = db
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                data TEXT NOT NULL
            )
        """)

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            self._db.execute(
                "INSERT INTO audit_events (event_id, timestamp, event_type, data) VALUES (?, ?, ?, ?)",
                (
                    str(event.event_id),
                    event.timestamp.isoformat(),
                    event.event_type.value,
                    json.dumps(event.to_log_dict()),
                ),
            )
            return True
        except (StorageError, sqlite3.Error) as e:
            # Audit logging must not break the main flow
            logger.warning("audit_append_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        rows = self._db.execute(
            "SELECT data FROM audit_events ORDER BY timestamp DESC LIMIT ?", (limit,)
        )
        return [AuditEvent.model_validate(json.loads(row["data"])) for row in rows]

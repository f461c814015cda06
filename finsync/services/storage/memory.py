"""
In-Memory Storage Implementation

Used by tests and for throwaway sessions. Records are deep-copied on the
way in and out so callers can never mutate stored state by accident.
"""

from typing import Optional

from finsync.models.audit import AuditEvent
from finsync.models.sync import SyncTable
from finsync.services.storage.interface import (
    AuditStorageInterface,
    R,
    RecordStore,
    RecordTable,
)


class InMemoryRecordTable(RecordTable[R]):
    """Dict-backed table with a monotonic identifier sequence."""

    def __init__(self, table: SyncTable):
        super().__init__(table)
        self._rows: dict[int, R] = {}
        self._sequence = 0

    async def _fetch_one(self, record_id: int) -> Optional[R]:
        record = self._rows.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    async def _fetch_all(self) -> list[R]:
        return [record.model_copy(deep=True) for record in self._rows.values()]

    async def _write(self, record: R) -> None:
        self._rows[record.id] = record.model_copy(deep=True)

    async def _remove(self, record_id: int) -> bool:
        return self._rows.pop(record_id, None) is not None

    async def _allocate_id(self) -> int:
        self._sequence += 1
        return self._sequence

    async def _reserve_id(self, record_id: int) -> None:
        self._sequence = max(self._sequence, record_id)


class InMemoryRecordStore(RecordStore):
    """All six tables and the key-value area held in process memory."""

    def __init__(self):
        self.accounts = InMemoryRecordTable(SyncTable.ACCOUNTS)
        self.categories = InMemoryRecordTable(SyncTable.CATEGORIES)
        self.transactions = InMemoryRecordTable(SyncTable.TRANSACTIONS)
        self.budgets = InMemoryRecordTable(SyncTable.BUDGETS)
        self.recurring_transactions = InMemoryRecordTable(SyncTable.RECURRING_TRANSACTIONS)
        self.net_worth_snapshots = InMemoryRecordTable(SyncTable.NET_WORTH_SNAPSHOTS)
        self._values: dict[str, str] = {}

    async def get_value(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set_value(self, key: str, value: Optional[str]) -> None:
        if value is None:
            self._values.pop(key, None)
        else:
            self._values[key] = value


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

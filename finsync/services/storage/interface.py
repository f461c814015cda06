"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for the local record store.
This allows us to:
1. Use SQLite on disk for the real client
2. Use in-memory storage for testing
3. Keep the recurring and sync engines decoupled from storage details

Every table behaves the same way: records carry a table-scoped integer
identifier assigned on creation (never reused) and an `updated_at`
timestamp refreshed on every mutation. Concrete stores only implement a
handful of row primitives; the record semantics live here once.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from finsync.models.audit import AuditEvent
from finsync.models.records import (
    Account,
    Budget,
    Category,
    NetWorthSnapshot,
    RecordModel,
    RecurringTransaction,
    Transaction,
    utcnow,
)
from finsync.models.sync import SyncTable


R = TypeVar("R", bound=RecordModel)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class RecordTable(ABC, Generic[R]):
    """
    One durable table of records.

    Subclasses provide the row primitives (_fetch_one, _fetch_all,
    _write, _remove, _allocate_id); the public operations below are
    shared by every backend.
    """

    def __init__(self, table: SyncTable):
        self.table = table
        self.model: type[R] = table.model

    @property
    def name(self) -> str:
        return self.table.value

    # -------------------------------------------------------------------------
    # Row primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _fetch_one(self, record_id: int) -> Optional[R]:
        pass

    @abstractmethod
    async def _fetch_all(self) -> list[R]:
        pass

    @abstractmethod
    async def _write(self, record: R) -> None:
        """Insert or fully replace the row with record.id."""
        pass

    @abstractmethod
    async def _remove(self, record_id: int) -> bool:
        pass

    @abstractmethod
    async def _allocate_id(self) -> int:
        """Next identifier. Must never return one handed out before."""
        pass

    @abstractmethod
    async def _reserve_id(self, record_id: int) -> None:
        """Make sure _allocate_id never returns record_id or anything below it."""
        pass

    # -------------------------------------------------------------------------
    # Record operations
    # -------------------------------------------------------------------------

    async def create(self, record: R) -> R:
        """
        Store a new record under a freshly allocated identifier.

        Any identifier already on `record` is ignored.
        """
        now = utcnow()
        update: dict[str, Any] = {"id": await self._allocate_id(), "updated_at": now}
        if "created_at" in self.model.model_fields and getattr(record, "created_at", None) is None:
            update["created_at"] = now
        stored = record.model_copy(update=update)
        await self._write(stored)
        return stored

    async def get(self, record_id: int) -> Optional[R]:
        return await self._fetch_one(record_id)

    async def require(self, record_id: int) -> R:
        record = await self._fetch_one(record_id)
        if record is None:
            raise NotFoundError(f"{self.name} #{record_id} not found")
        return record

    async def update(self, record_id: int, **fields: Any) -> R:
        """
        Change some fields of an existing record and refresh updated_at.

        The result is re-validated, so invariants still hold after the update.

        Raises:
            NotFoundError: If no record has this identifier
            ValueError: On unknown fields or an invalid result
        """
        unknown = set(fields) - set(self.model.model_fields) - {"id", "updated_at"}
        if unknown:
            raise ValueError(f"Unknown {self.name} fields: {sorted(unknown)}")

        current = await self.require(record_id)
        data = current.model_dump()
        data.update(fields)
        data["id"] = record_id
        data["updated_at"] = utcnow()
        updated = self.model.model_validate(data)
        await self._write(updated)
        return updated

    async def put(self, record: R) -> R:
        """
        Upsert by identifier: insert if absent, full replace if present.

        The record's own timestamps are kept; used when applying
        records pulled from the mirror.
        """
        if record.id is None:
            raise ValueError(f"put() needs a record with an id ({self.name})")
        if record.updated_at is None:
            record = record.model_copy(update={"updated_at": utcnow()})
        await self._reserve_id(record.id)
        await self._write(record)
        return record

    async def soft_delete(self, record_id: int) -> R:
        """Clear the active flag. Raises NotFoundError if absent."""
        if "is_active" not in self.model.model_fields:
            raise StorageError(f"{self.name} records cannot be soft-deleted")
        return await self.update(record_id, is_active=False)

    async def delete(self, record_id: int) -> bool:
        """Hard delete. Returns False if there was nothing to delete."""
        return await self._remove(record_id)

    async def all(self) -> list[R]:
        """Every row, ordered by identifier."""
        records = await self._fetch_all()
        return sorted(records, key=lambda r: r.id or 0)

    async def where(self, **equals: Any) -> list[R]:
        """Rows whose fields equal all the given values."""
        for field in equals:
            if field not in self.model.model_fields:
                raise ValueError(f"Unknown {self.name} field: {field}")
        return [
            record for record in await self.all()
            if all(getattr(record, field) == value for field, value in equals.items())
        ]

    async def count(self) -> int:
        return len(await self._fetch_all())

    async def reassign_id(self, old_id: int, new_id: int) -> R:
        """
        Move a record to a different identifier.

        Used to adopt an identifier minted by the mirror.

        Raises:
            NotFoundError: If old_id does not exist
            DuplicateError: If new_id is already taken
        """
        record = await self.require(old_id)
        if old_id == new_id:
            return record
        if await self._fetch_one(new_id) is not None:
            raise DuplicateError(f"{self.name} #{new_id} already exists")
        moved = record.model_copy(update={"id": new_id})
        await self._reserve_id(new_id)
        await self._write(moved)
        await self._remove(old_id)
        return moved


class RecordStore(ABC):
    """
    Abstract local record store: six tables plus a small key-value area.

    The key-value area holds client state such as the sync watermark.
    """

    accounts: RecordTable[Account]
    categories: RecordTable[Category]
    transactions: RecordTable[Transaction]
    budgets: RecordTable[Budget]
    recurring_transactions: RecordTable[RecurringTransaction]
    net_worth_snapshots: RecordTable[NetWorthSnapshot]

    def table(self, table: SyncTable) -> RecordTable:
        return getattr(self, table.store_attr)

    @abstractmethod
    async def get_value(self, key: str) -> Optional[str]:
        """Read a stored string value, None if unset."""
        pass

    @abstractmethod
    async def set_value(self, key: str, value: Optional[str]) -> None:
        """Store a string value; None removes the key."""
        pass

    async def get_timestamp(self, key: str) -> Optional[datetime]:
        """Read an ISO-8601 timestamp value."""
        raw = await self.get_value(key)
        if not raw:
            return None
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))

    async def set_timestamp(self, key: str, value: Optional[datetime]) -> None:
        await self.set_value(key, value.isoformat() if value else None)

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass

"""
Sync Models for finsync

Shapes exchanged between the sync engine and the remote mirror, and
the results the engine hands back to its caller.

DESIGN DECISION: The engine returns the new watermark inside its result
instead of writing it anywhere. Whoever called pull/push decides whether
and where to persist it.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from finsync.models.records import (
    Account,
    Budget,
    Category,
    NetWorthSnapshot,
    RecordModel,
    RecurringTransaction,
    Transaction,
)


class SyncTable(str, Enum):
    """
    The six synchronized tables, keyed by their wire names.

    Declaration order is the order changes are applied in.
    """
    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    RECURRING_TRANSACTIONS = "recurringTransactions"
    NET_WORTH_SNAPSHOTS = "netWorthSnapshots"

    @property
    def model(self) -> type[RecordModel]:
        return _TABLE_MODELS[self]

    @property
    def store_attr(self) -> str:
        """Attribute name of this table on a RecordStore."""
        return _STORE_ATTRS[self]


_TABLE_MODELS: dict[SyncTable, type[RecordModel]] = {
    SyncTable.ACCOUNTS: Account,
    SyncTable.CATEGORIES: Category,
    SyncTable.TRANSACTIONS: Transaction,
    SyncTable.BUDGETS: Budget,
    SyncTable.RECURRING_TRANSACTIONS: RecurringTransaction,
    SyncTable.NET_WORTH_SNAPSHOTS: NetWorthSnapshot,
}

_STORE_ATTRS: dict[SyncTable, str] = {
    SyncTable.ACCOUNTS: "accounts",
    SyncTable.CATEGORIES: "categories",
    SyncTable.TRANSACTIONS: "transactions",
    SyncTable.BUDGETS: "budgets",
    SyncTable.RECURRING_TRANSACTIONS: "recurring_transactions",
    SyncTable.NET_WORTH_SNAPSHOTS: "net_worth_snapshots",
}


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class SkippedRow(BaseModel):
    """A pulled row the local models rejected."""

    table: str
    item: Any = None
    error: str


class ChangeSet(WireModel):
    """
    Records of all six tables, already decoded into models.

    Used for the pull response body and the push request body.

    Rows of a pull response that could not be decoded are kept on
    `skipped` instead of failing the whole response.
    """

    accounts: list[Account] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    transactions: list[Transaction] = Field(default_factory=list)
    budgets: list[Budget] = Field(default_factory=list)
    recurring_transactions: list[RecurringTransaction] = Field(default_factory=list)
    net_worth_snapshots: list[NetWorthSnapshot] = Field(default_factory=list)
    skipped: list[SkippedRow] = Field(default_factory=list)

    def records(self, table: SyncTable) -> list[RecordModel]:
        return getattr(self, table.store_attr)

    def counts(self) -> dict[str, int]:
        return {table.value: len(self.records(table)) for table in SyncTable}

    @property
    def total(self) -> int:
        return sum(self.counts().values())


class PushError(WireModel):
    """A single row the mirror failed to apply."""

    table: str
    item: dict[str, Any] = Field(default_factory=dict)
    error: str


class CreatedRecord(WireModel):
    """A row the mirror inserted during a push."""

    table: str
    client_id: Optional[int] = Field(
        default=None,
        description="Identifier the client sent, if any"
    )
    id: int = Field(..., description="Identifier the mirror stored the row under")


class PushResponse(WireModel):
    """Body of POST /api/sync/push."""

    success: bool = True
    inserted: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    errors: list[PushError] = Field(default_factory=list)
    created: list[CreatedRecord] = Field(default_factory=list)
    timestamp: Optional[datetime] = None


class PullResult(BaseModel):
    """Outcome of a successful pull."""

    watermark: datetime = Field(
        ...,
        description="Server-reported response time; the next pull asks for changes after it"
    )
    full: bool = Field(
        default=False,
        description="True if the watermark was ignored and everything was requested"
    )
    imported: dict[str, int] = Field(default_factory=dict)
    skipped: list[SkippedRow] = Field(
        default_factory=list,
        description="Rows the mirror sent that could not be stored locally"
    )

    @property
    def total_imported(self) -> int:
        return sum(self.imported.values())

    def summary(self) -> str:
        text = f"Pulled {self.total_imported} items from server"
        if self.skipped:
            text += f" ({len(self.skipped)} skipped)"
        return text


class PushResult(BaseModel):
    """Outcome of a push that reached the server."""

    watermark: datetime = Field(
        ...,
        description="Client clock when the push completed"
    )
    inserted: int = 0
    updated: int = 0
    errors: list[PushError] = Field(default_factory=list)
    reassigned: int = Field(
        default=0,
        description="Local rows re-keyed to a server-minted identifier"
    )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def summary(self) -> str:
        text = f"Pushed {self.inserted} new, updated {self.updated} items"
        if self.errors:
            text += f" ({len(self.errors)} failed)"
        return text


class FullSyncResult(BaseModel):
    """Pull followed by push."""

    pull: PullResult
    push: PushResult

    @property
    def watermark(self) -> datetime:
        return self.push.watermark

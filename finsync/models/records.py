"""
Core Data Models for finsync

These models define the strict schemas for every record the local store
and the remote mirror hold. They are designed to:
1. Enforce the ledger invariants at construction time
2. Provide clear validation error messages
3. Serialize to the mirror's camelCase wire format
4. Carry the timestamps last-write-wins sync depends on

DESIGN DECISION: Attribute names are snake_case, wire names are camelCase
aliases. Models accept either (populate_by_name), so the same classes read
local rows and mirror payloads.
"""

import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# Year-month key, as used by budgets
MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def utcnow() -> dt.datetime:
    """Timezone-aware current UTC time."""
    return dt.datetime.now(dt.timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Supported account types."""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    CASH = "cash"
    INVESTMENT = "investment"
    ASSET = "asset"
    LIABILITY = "liability"


ASSET_ACCOUNT_TYPES = frozenset({
    AccountType.CHECKING,
    AccountType.SAVINGS,
    AccountType.CASH,
    AccountType.INVESTMENT,
    AccountType.ASSET,
})

LIABILITY_ACCOUNT_TYPES = frozenset({
    AccountType.CREDIT,
    AccountType.LIABILITY,
})


class CategoryType(str, Enum):
    """Category direction."""
    INCOME = "income"
    EXPENSE = "expense"


class TransactionType(str, Enum):
    """
    Transaction direction.

    The amount on a transaction is always a positive magnitude;
    the type decides the sign.
    """
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class Frequency(str, Enum):
    """How often a recurring transaction fires."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# =============================================================================
# BASE RECORD
# =============================================================================

class RecordModel(BaseModel):
    """
    Common shape of every stored record.

    `id` is assigned by the owning store on creation and never reused.
    `updated_at` is refreshed by the store on every mutation.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    id: Optional[int] = Field(
        default=None,
        gt=0,
        description="Table-scoped identifier"
    )
    updated_at: Optional[dt.datetime] = Field(
        default=None,
        description="Last mutation time (UTC)"
    )

    def to_wire(self) -> dict:
        """JSON-compatible dict keyed by wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True)


class ActiveRecordModel(RecordModel):
    """A record that is soft-deleted through a boolean flag."""

    is_active: bool = Field(
        default=True,
        description="False once the record is soft-deleted"
    )

    @field_validator('is_active', mode='before')
    @classmethod
    def normalize_active_flag(cls, v):
        """Mirror rows may carry NULL for an untouched flag."""
        if v is None:
            return True
        return v


def _normalize_tags(v):
    if v is None:
        return []
    if isinstance(v, (list, tuple, set, frozenset)):
        # Unordered set semantics, stored as a sorted de-duplicated list
        return sorted({str(tag).strip() for tag in v if str(tag).strip()})
    return v


# =============================================================================
# ENTITIES
# =============================================================================

class Account(ActiveRecordModel):
    """
    A place money lives (or is owed).

    `balance` is the OPENING balance. The current balance is derived
    from transactions, see finsync.networth.
    """

    name: str = Field(..., min_length=1, max_length=200)
    type: AccountType
    balance: Decimal = Field(
        default=Decimal("0"),
        description="Opening balance (signed; liabilities conventionally positive)"
    )
    color: str = Field(default="#0ea5e9", max_length=20)
    created_at: Optional[dt.datetime] = None


class Category(ActiveRecordModel):
    """
    Income or expense category.

    Categories form a two-level tree through parent_category_id.
    The depth rule needs the store, so it is checked by LedgerValidator.
    """

    name: str = Field(..., min_length=1, max_length=200)
    type: CategoryType
    color: str = Field(default="#64748b", max_length=20)
    icon: Optional[str] = Field(default=None, max_length=50)
    monthly_budget: Optional[Decimal] = Field(default=None, ge=0)
    parent_category_id: Optional[int] = None

    @model_validator(mode='after')
    def validate_parent(self) -> 'Category':
        if self.parent_category_id is not None and self.parent_category_id == self.id:
            raise ValueError("A category cannot be its own parent")
        return self


class Transaction(ActiveRecordModel):
    """A single dated money movement."""

    account_id: int = Field(..., gt=0)
    date: dt.date
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Unsigned magnitude; sign implied by type"
    )
    description: str = Field(..., min_length=1, max_length=500)
    category_id: Optional[int] = None
    type: TransactionType
    to_account_id: Optional[int] = Field(
        default=None,
        description="Destination account, transfers only"
    )
    payee: Optional[str] = Field(default=None, max_length=200)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=2000)
    created_at: Optional[dt.datetime] = None

    @field_validator('tags', mode='before')
    @classmethod
    def normalize_tags(cls, v):
        return _normalize_tags(v)

    @field_validator('category_id', 'to_account_id', mode='before')
    @classmethod
    def zero_means_absent(cls, v):
        """Legacy rows use 0 for "no reference"."""
        if v == 0:
            return None
        return v

    @model_validator(mode='after')
    def validate_type_rules(self) -> 'Transaction':
        if self.type == TransactionType.TRANSFER:
            if self.to_account_id is None:
                raise ValueError("A transfer needs a destination account")
            if self.to_account_id == self.account_id:
                raise ValueError("Transfer source and destination must differ")
            # Transfers carry no category
            self.category_id = None
        else:
            if self.to_account_id is not None:
                raise ValueError("Only transfers may have a destination account")
            if self.category_id is None:
                raise ValueError(f"A category is required for {self.type.value} transactions")
        return self

    @property
    def signed_amount(self) -> Decimal:
        """Amount as seen by the source account."""
        if self.type == TransactionType.INCOME:
            return self.amount
        return -self.amount

    def matches_occurrence(
        self,
        account_id: int,
        amount: Decimal,
        description: str,
        on: dt.date,
    ) -> bool:
        """True if this row is the given (account, amount, description, date)."""
        return (
            self.account_id == account_id
            and self.amount == amount
            and self.description == description
            and self.date == on
        )


class RecurringTransaction(ActiveRecordModel):
    """
    Template that materializes into Transactions on a schedule.

    `last_processed` is the watermark: the date of the most recent
    occurrence already materialized. It is always start_date advanced
    by a whole number of frequency steps.
    """

    account_id: int = Field(..., gt=0)
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    category_id: int = Field(..., gt=0)
    type: TransactionType
    frequency: Frequency
    start_date: dt.date
    end_date: Optional[dt.date] = Field(
        default=None,
        description="Inclusive last day an occurrence may fall on"
    )
    last_processed: Optional[dt.date] = None
    payee: Optional[str] = Field(default=None, max_length=200)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=2000)
    created_at: Optional[dt.datetime] = None

    @field_validator('tags', mode='before')
    @classmethod
    def normalize_tags(cls, v):
        return _normalize_tags(v)

    @model_validator(mode='after')
    def validate_schedule(self) -> 'RecurringTransaction':
        if self.type == TransactionType.TRANSFER:
            raise ValueError("Recurring transactions cannot be transfers")
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class NetWorthSnapshot(RecordModel):
    """Point-in-time net worth, at most one per calendar day."""

    date: dt.date
    total_assets: Decimal
    total_liabilities: Decimal
    net_worth: Decimal
    created_at: Optional[dt.datetime] = None


class Budget(RecordModel):
    """
    Monthly allocation for a category.

    `spent` is a cache only. The authoritative spend is always
    recomputed from transactions (finsync.queries.BudgetQueries).
    """

    category_id: int = Field(..., gt=0)
    month: str = Field(
        ...,
        pattern=MONTH_PATTERN,
        description="Year-month key, YYYY-MM"
    )
    amount: Decimal = Field(..., ge=0, description="Allocated amount")
    spent: Decimal = Field(default=Decimal("0"), ge=0)


def month_key(day: dt.date) -> str:
    """YYYY-MM key for a date."""
    return f"{day.year:04d}-{day.month:02d}"

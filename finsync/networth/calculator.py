"""
Account Balance & Net Worth

Balances are never stored. An account's current balance is its opening
balance plus the effect of every active transaction touching it, and is
recomputed on every call.

Sign rules, from the account's point of view:
- income on the account:            +amount
- expense on the account:           -amount
- transfer out of the account:      -amount
- transfer into the account:        +amount

Asset accounts add their balance to total assets. Liability accounts add
the ABSOLUTE value of their balance to total liabilities.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from finsync.audit import AuditLogger
from finsync.models.records import (
    ASSET_ACCOUNT_TYPES,
    LIABILITY_ACCOUNT_TYPES,
    Account,
    AccountType,
    NetWorthSnapshot,
    Transaction,
    TransactionType,
)
from finsync.services.storage import RecordStore


logger = structlog.get_logger(__name__)


class AccountBalance(BaseModel):
    """An account with its derived balance."""

    account_id: int
    name: str
    type: AccountType
    opening_balance: Decimal
    balance: Decimal

    @property
    def is_liability(self) -> bool:
        return self.type in LIABILITY_ACCOUNT_TYPES


class NetWorthSummary(BaseModel):
    """Totals over all active accounts."""

    total_assets: Decimal = Decimal("0")
    total_liabilities: Decimal = Decimal("0")
    net_worth: Decimal = Decimal("0")
    accounts: list[AccountBalance] = Field(default_factory=list)


def account_balance(account: Account, transactions: Iterable[Transaction]) -> Decimal:
    """
    Current balance of one account.

    Inactive transactions are ignored.
    """
    balance = account.balance
    for txn in transactions:
        if not txn.is_active:
            continue
        if txn.type == TransactionType.TRANSFER:
            if txn.account_id == account.id:
                balance -= txn.amount
            if txn.to_account_id == account.id:
                balance += txn.amount
        elif txn.account_id == account.id:
            balance += txn.signed_amount
    return balance


def calculate_net_worth(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
) -> NetWorthSummary:
    """Net worth over the active accounts (pure function)."""
    transactions = [txn for txn in transactions if txn.is_active]
    summary = NetWorthSummary()

    for account in accounts:
        if not account.is_active:
            continue
        balance = account_balance(account, transactions)
        summary.accounts.append(AccountBalance(
            account_id=account.id,
            name=account.name,
            type=account.type,
            opening_balance=account.balance,
            balance=balance,
        ))
        if account.type in ASSET_ACCOUNT_TYPES:
            summary.total_assets += balance
        elif account.type in LIABILITY_ACCOUNT_TYPES:
            summary.total_liabilities += abs(balance)

    summary.net_worth = summary.total_assets - summary.total_liabilities
    return summary


class NetWorthService:
    """Net worth over the record store, plus daily snapshots."""

    def __init__(self, store: RecordStore, audit_logger: Optional[AuditLogger] = None):
        self._store = store
        self._audit = audit_logger

    async def calculate(self) -> NetWorthSummary:
        accounts = await self._store.accounts.all()
        transactions = await self._store.transactions.all()
        return calculate_net_worth(accounts, transactions)

    async def account_balances(self) -> list[AccountBalance]:
        """Every active account with its current balance."""
        return (await self.calculate()).accounts

    async def take_snapshot(self, today: Optional[date] = None) -> NetWorthSnapshot:
        """
        Record today's net worth.

        There is at most one snapshot per calendar day: taking another one
        on the same day overwrites its three figures.
        """
        today = today or date.today()
        summary = await self.calculate()

        existing = await self._store.net_worth_snapshots.where(date=today)
        if existing:
            snapshot = await self._store.net_worth_snapshots.update(
                existing[0].id,
                total_assets=summary.total_assets,
                total_liabilities=summary.total_liabilities,
                net_worth=summary.net_worth,
            )
        else:
            snapshot = await self._store.net_worth_snapshots.create(NetWorthSnapshot(
                date=today,
                total_assets=summary.total_assets,
                total_liabilities=summary.total_liabilities,
                net_worth=summary.net_worth,
            ))

        logger.info(
            "net_worth_snapshot_taken",
            snapshot_id=snapshot.id,
            day=today.isoformat(),
            net_worth=str(snapshot.net_worth),
            replaced=bool(existing),
        )
        if self._audit:
            await self._audit.log_snapshot_taken(
                snapshot_id=snapshot.id,
                day=today,
                net_worth=snapshot.net_worth,
                replaced=bool(existing),
            )
        return snapshot

    async def history(self, since: Optional[date] = None) -> list[NetWorthSnapshot]:
        """Snapshots in date order, optionally from `since` on."""
        snapshots = await self._store.net_worth_snapshots.all()
        if since is not None:
            snapshots = [s for s in snapshots if s.date >= since]
        return sorted(snapshots, key=lambda s: s.date)

"""
Main Orchestrator for finsync

This module ties together all the components and defines the
user-facing flows:
1. Ledger edits (validate → persist → audit)
2. Sync (read watermark → pull/push → persist watermark → audit)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing is persisted before validation passed
- The sync watermark only moves after a fully successful operation
- Every step is audited

This is the "glue" that keeps the engines themselves free of
user-facing concerns.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, NamedTuple, Optional
from uuid import UUID

import structlog

from finsync.audit import AuditLogger, create_correlation_id
from finsync.config import get_settings
from finsync.models.records import (
    Account,
    AccountType,
    Budget,
    Category,
    CategoryType,
    Frequency,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from finsync.models.sync import FullSyncResult, PullResult, PushResult
from finsync.models.validation import ValidationIssue
from finsync.networth import NetWorthService
from finsync.queries import BudgetQueries
from finsync.recurring import RecurringEngine, RecurringScheduler
from finsync.services.remote import RemoteMirrorClient
from finsync.services.storage import (
    InMemoryAuditStorage,
    InMemoryRecordStore,
    RecordStore,
    SQLiteAuditStorage,
    SQLiteRecordStore,
)
from finsync.sync import SyncEngine, SyncError
from finsync.validation import LedgerValidator, RecordValidationError, build_record


logger = structlog.get_logger(__name__)

WATERMARK_KEY = "lastSyncTime"

# Set by the store, never through an edit
_STORE_MANAGED_FIELDS = frozenset({"id", "updated_at"})

# First-run seed: (name, type, color, icon)
DEFAULT_CATEGORIES: list[tuple[str, CategoryType, str, str]] = [
    ("Salary", CategoryType.INCOME, "#10b981", "Briefcase"),
    ("Freelance", CategoryType.INCOME, "#14b8a6", "Wallet"),
    ("Investment", CategoryType.INCOME, "#06b6d4", "TrendingUp"),
    ("Other Income", CategoryType.INCOME, "#0ea5e9", "CircleDollarSign"),
    ("Groceries", CategoryType.EXPENSE, "#f59e0b", "ShoppingCart"),
    ("Dining Out", CategoryType.EXPENSE, "#ef4444", "Utensils"),
    ("Transportation", CategoryType.EXPENSE, "#8b5cf6", "Car"),
    ("Utilities", CategoryType.EXPENSE, "#6366f1", "Zap"),
    ("Rent", CategoryType.EXPENSE, "#ec4899", "Home"),
    ("Entertainment", CategoryType.EXPENSE, "#f43f5e", "Tv"),
    ("Healthcare", CategoryType.EXPENSE, "#14b8a6", "Heart"),
    ("Shopping", CategoryType.EXPENSE, "#a855f7", "ShoppingBag"),
    ("Insurance", CategoryType.EXPENSE, "#3b82f6", "CreditCard"),
    ("Education", CategoryType.EXPENSE, "#06b6d4", "GraduationCap"),
    ("Other", CategoryType.EXPENSE, "#64748b", "Package"),
]


class LedgerService:
    """
    Create, update and delete the user's records.

    Flow for every write:
    1. Build the model (schema validation)
    2. LedgerValidator (reference validation)
    3. Persist
    4. Audit

    A failure in 1 or 2 raises RecordValidationError and writes nothing.
    """

    def __init__(
        self,
        store: RecordStore,
        validator: Optional[LedgerValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._validator = validator or LedgerValidator(store)
        self._audit_logger = audit_logger

    async def _reject(self, error: RecordValidationError) -> None:
        logger.info("record_rejected", table=error.table, issues=len(error.issues))
        if self._audit_logger:
            await self._audit_logger.log_validation_failed(
                error.table,
                [issue.model_dump() for issue in error.issues],
            )

    async def _build(self, model: type, table: str, data: dict[str, Any]):
        try:
            return build_record(model, table, data)
        except RecordValidationError as e:
            await self._reject(e)
            raise

    async def _check(self, check, record) -> None:
        try:
            await check(record)
        except RecordValidationError as e:
            await self._reject(e)
            raise

    async def _created(self, table: str, record_id: int, description: str) -> None:
        if self._audit_logger:
            await self._audit_logger.log_record_created(table, record_id, description)

    async def _update(
        self,
        table,
        table_name: str,
        model: type,
        record_id: int,
        fields: dict[str, Any],
        check=None,
    ):
        """
        Validate a partial change as a whole record, then write it.

        Unknown or store-managed field names and a missing record are
        rejected before anything is written.
        """
        current = await table.require(record_id)
        unknown = set(fields) - (set(model.model_fields) - _STORE_MANAGED_FIELDS)
        if unknown:
            error = RecordValidationError(table_name, [
                ValidationIssue(
                    field=name,
                    issue_type="unknown_field",
                    message=f"Unknown field: {name}",
                )
                for name in sorted(unknown)
            ])
            await self._reject(error)
            raise error

        data = current.model_dump()
        data.update(fields)
        candidate = await self._build(model, table_name, data)
        if check is not None:
            await self._check(check, candidate)

        updated = await table.update(record_id, **fields)
        if self._audit_logger:
            await self._audit_logger.log_record_updated(table_name, record_id, sorted(fields))
        return updated

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def add_account(
        self,
        name: str,
        account_type: AccountType,
        opening_balance: Decimal = Decimal("0"),
        color: Optional[str] = None,
    ) -> Account:
        data: dict[str, Any] = {"name": name, "type": account_type, "balance": opening_balance}
        if color:
            data["color"] = color
        account = await self._build(Account, "accounts", data)
        account = await self._store.accounts.create(account)
        await self._created("accounts", account.id, account.name)
        return account

    async def update_account(self, account_id: int, **fields: Any) -> Account:
        """Change name, type, opening balance or color of an account."""
        return await self._update(self._store.accounts, "accounts", Account, account_id, fields)

    async def deactivate_account(self, account_id: int) -> Account:
        """Close an account. Its transactions stay but stop counting."""
        account = await self._store.accounts.soft_delete(account_id)
        if self._audit_logger:
            await self._audit_logger.log_record_deleted("accounts", account_id, soft=True)
        return account

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def add_category(
        self,
        name: str,
        category_type: CategoryType,
        color: Optional[str] = None,
        icon: Optional[str] = None,
        monthly_budget: Optional[Decimal] = None,
        parent_category_id: Optional[int] = None,
    ) -> Category:
        data: dict[str, Any] = {
            "name": name,
            "type": category_type,
            "icon": icon,
            "monthly_budget": monthly_budget,
            "parent_category_id": parent_category_id,
        }
        if color:
            data["color"] = color
        category = await self._build(Category, "categories", data)
        await self._check(self._validator.check_category, category)
        category = await self._store.categories.create(category)
        await self._created("categories", category.id, category.name)
        return category

    async def update_category(self, category_id: int, **fields: Any) -> Category:
        """Change a category; the tree rules are checked again."""
        return await self._update(
            self._store.categories,
            "categories",
            Category,
            category_id,
            fields,
            check=self._validator.check_category,
        )

    async def set_monthly_budget(self, category_id: int, amount: Optional[Decimal]) -> Category:
        """Standing monthly allocation of a category (None clears it)."""
        return await self.update_category(category_id, monthly_budget=amount)

    async def delete_category(self, category_id: int) -> bool:
        """
        Delete a category.

        A category still referenced by transactions, templates, budgets or
        subcategories is only deactivated, so history keeps its label.

        Returns:
            True if the row was removed, False if it was deactivated
        """
        await self._store.categories.require(category_id)
        referenced = (
            await self._store.transactions.where(category_id=category_id)
            or await self._store.recurring_transactions.where(category_id=category_id)
            or await self._store.budgets.where(category_id=category_id)
            or await self._store.categories.where(parent_category_id=category_id)
        )
        if referenced:
            await self._store.categories.soft_delete(category_id)
        else:
            await self._store.categories.delete(category_id)

        if self._audit_logger:
            await self._audit_logger.log_record_deleted(
                "categories", category_id, soft=bool(referenced)
            )
        return not referenced

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def add_transaction(
        self,
        account_id: int,
        on: date,
        amount: Decimal,
        description: str,
        category_id: int,
        transaction_type: TransactionType,
        payee: Optional[str] = None,
        tags: Optional[list[str]] = None,
        notes: Optional[str] = None,
    ) -> Transaction:
        """Record an income or expense."""
        txn = await self._build(Transaction, "transactions", {
            "account_id": account_id,
            "date": on,
            "amount": amount,
            "description": description,
            "category_id": category_id,
            "type": transaction_type,
            "payee": payee,
            "tags": tags,
            "notes": notes,
        })
        await self._check(self._validator.check_transaction, txn)
        txn = await self._store.transactions.create(txn)
        await self._created("transactions", txn.id, f"{txn.type.value} {txn.amount} {txn.description}")
        return txn

    async def add_transfer(
        self,
        from_account_id: int,
        to_account_id: int,
        on: date,
        amount: Decimal,
        description: str = "Transfer",
        notes: Optional[str] = None,
    ) -> Transaction:
        """Move money between two of the user's accounts."""
        txn = await self._build(Transaction, "transactions", {
            "account_id": from_account_id,
            "to_account_id": to_account_id,
            "date": on,
            "amount": amount,
            "description": description,
            "type": TransactionType.TRANSFER,
            "notes": notes,
        })
        await self._check(self._validator.check_transaction, txn)
        txn = await self._store.transactions.create(txn)
        await self._created("transactions", txn.id, f"transfer {txn.amount} #{from_account_id}->#{to_account_id}")
        return txn

    async def update_transaction(self, transaction_id: int, **fields: Any) -> Transaction:
        """
        Change fields of a transaction.

        The changed transaction is validated as a whole before anything
        is written.
        """
        return await self._update(
            self._store.transactions,
            "transactions",
            Transaction,
            transaction_id,
            fields,
            check=self._validator.check_transaction,
        )

    async def delete_transaction(self, transaction_id: int) -> Transaction:
        """Soft delete; the row stays so the deletion syncs."""
        txn = await self._store.transactions.soft_delete(transaction_id)
        if self._audit_logger:
            await self._audit_logger.log_record_deleted("transactions", transaction_id, soft=True)
        return txn

    # =========================================================================
    # RECURRING & BUDGETS
    # =========================================================================

    async def add_recurring(
        self,
        account_id: int,
        amount: Decimal,
        description: str,
        category_id: int,
        transaction_type: TransactionType,
        frequency: Frequency,
        start_date: date,
        end_date: Optional[date] = None,
        payee: Optional[str] = None,
        tags: Optional[list[str]] = None,
        notes: Optional[str] = None,
    ) -> RecurringTransaction:
        template = await self._build(RecurringTransaction, "recurringTransactions", {
            "account_id": account_id,
            "amount": amount,
            "description": description,
            "category_id": category_id,
            "type": transaction_type,
            "frequency": frequency,
            "start_date": start_date,
            "end_date": end_date,
            "payee": payee,
            "tags": tags,
            "notes": notes,
        })
        await self._check(self._validator.check_recurring, template)
        template = await self._store.recurring_transactions.create(template)
        await self._created(
            "recurringTransactions",
            template.id,
            f"{template.frequency.value} {template.amount} {template.description}",
        )
        return template

    async def update_recurring(self, template_id: int, **fields: Any) -> RecurringTransaction:
        """
        Change a template.

        Occurrences already materialized are left as they are; the new
        values apply from the next occurrence on.
        """
        return await self._update(
            self._store.recurring_transactions,
            "recurringTransactions",
            RecurringTransaction,
            template_id,
            fields,
            check=self._validator.check_recurring,
        )

    async def set_recurring_active(self, template_id: int, active: bool) -> RecurringTransaction:
        """
        Pause or resume a template.

        A resumed template catches up on the occurrences it missed while
        paused, the same way it does after the app was closed.
        """
        template = await self._store.recurring_transactions.update(template_id, is_active=active)
        if self._audit_logger:
            await self._audit_logger.log_record_updated("recurringTransactions", template_id, ["is_active"])
        return template

    async def delete_recurring(self, template_id: int) -> None:
        """Remove a template. Transactions it already created are kept."""
        await self._store.recurring_transactions.require(template_id)
        await self._store.recurring_transactions.delete(template_id)
        if self._audit_logger:
            await self._audit_logger.log_record_deleted("recurringTransactions", template_id, soft=False)

    async def set_budget(self, category_id: int, month: str, amount: Decimal) -> Budget:
        """Create or change the allocation of a category for a month."""
        existing = await self._store.budgets.where(category_id=category_id, month=month)
        budget = await self._build(Budget, "budgets", {
            "id": existing[0].id if existing else None,
            "category_id": category_id,
            "month": month,
            "amount": amount,
            "spent": existing[0].spent if existing else Decimal("0"),
        })
        await self._check(self._validator.check_budget, budget)

        if existing:
            budget = await self._store.budgets.update(existing[0].id, amount=budget.amount)
            if self._audit_logger:
                await self._audit_logger.log_record_updated("budgets", budget.id, ["amount"])
        else:
            budget = await self._store.budgets.create(budget)
            await self._created("budgets", budget.id, f"{month} #{category_id} {amount}")
        return budget

    # =========================================================================
    # FIRST RUN
    # =========================================================================

    async def seed_defaults(self) -> bool:
        """
        Give an empty store its default categories and one account.

        Does nothing if any account exists.

        Returns:
            True if the store was seeded
        """
        if await self._store.accounts.count() > 0:
            return False

        for name, category_type, color, icon in DEFAULT_CATEGORIES:
            await self._store.categories.create(Category(
                name=name,
                type=category_type,
                color=color,
                icon=icon,
            ))
        await self._store.accounts.create(Account(
            name="Main Checking",
            type=AccountType.CHECKING,
            balance=Decimal("0"),
            color="#0ea5e9",
        ))
        logger.info("store_seeded", categories=len(DEFAULT_CATEGORIES), accounts=1)
        return True


class SyncService:
    """
    Runs the sync engine for the user and owns the watermark.

    The watermark lives in the record store under "lastSyncTime".
    Every method returns (result, message); result is None on failure
    and message is ready to show.
    """

    def __init__(
        self,
        engine: SyncEngine,
        store: RecordStore,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._engine = engine
        self._store = store
        self._audit_logger = audit_logger

    async def last_sync_time(self) -> Optional[datetime]:
        return await self._store.get_timestamp(WATERMARK_KEY)

    async def _save_watermark(self, watermark: datetime) -> None:
        await self._store.set_timestamp(WATERMARK_KEY, watermark)

    async def _failed(self, operation: str, error: SyncError, correlation_id: UUID) -> str:
        if self._audit_logger:
            await self._audit_logger.log_sync_failed(
                operation=operation,
                error_message=str(error),
                correlation_id=correlation_id,
            )
        return f"{operation.capitalize()} failed: {error}"

    async def _pulled(self, result: PullResult, correlation_id: UUID) -> None:
        await self._save_watermark(result.watermark)
        if self._audit_logger:
            await self._audit_logger.log_pull_completed(
                imported=result.imported,
                watermark=result.watermark,
                full=result.full,
                skipped=len(result.skipped),
                correlation_id=correlation_id,
            )

    async def _pushed(self, result: PushResult, correlation_id: UUID) -> None:
        await self._save_watermark(result.watermark)
        if self._audit_logger:
            await self._audit_logger.log_push_completed(
                inserted=result.inserted,
                updated=result.updated,
                error_count=len(result.errors),
                watermark=result.watermark,
                correlation_id=correlation_id,
            )

    async def pull(
        self,
        force_full: bool = False,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Optional[PullResult], str]:
        correlation_id = correlation_id or create_correlation_id()
        since = await self.last_sync_time()
        try:
            result = await self._engine.pull(since, force_full=force_full)
        except SyncError as e:
            return None, await self._failed("pull", e, correlation_id)
        await self._pulled(result, correlation_id)
        return result, result.summary()

    async def force_full_pull(self) -> tuple[Optional[PullResult], str]:
        """Forget the watermark and pull everything (manual recovery)."""
        await self._store.set_timestamp(WATERMARK_KEY, None)
        logger.info("sync_watermark_cleared")
        return await self.pull(force_full=True)

    async def push(
        self,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[Optional[PushResult], str]:
        correlation_id = correlation_id or create_correlation_id()
        try:
            result = await self._engine.push()
        except SyncError as e:
            return None, await self._failed("push", e, correlation_id)
        await self._pushed(result, correlation_id)
        return result, result.summary()

    async def full_sync(self) -> tuple[Optional[FullSyncResult], str]:
        """Pull then push, under one correlation id."""
        correlation_id = create_correlation_id()
        since = await self.last_sync_time()
        try:
            result = await self._engine.full_sync(since)
        except SyncError as e:
            if e.completed_pull is not None:
                await self._pulled(e.completed_pull, correlation_id)
            return None, await self._failed("sync", e, correlation_id)

        await self._pulled(result.pull, correlation_id)
        await self._pushed(result.push, correlation_id)
        return result, f"{result.pull.summary()}. {result.push.summary()}"


class AppComponents(NamedTuple):
    """Everything a front end needs, wired to one store."""

    store: RecordStore
    remote: RemoteMirrorClient
    ledger: LedgerService
    sync: SyncService
    recurring: RecurringEngine
    scheduler: RecurringScheduler
    net_worth: NetWorthService
    budgets: BudgetQueries
    audit_logger: AuditLogger


def create_app_components(
    use_sqlite: bool = True,
    remote: Optional[RemoteMirrorClient] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_sqlite: Whether to open the SQLite store from settings.
                    Set to False for an in-memory store (tests, demos).
        remote: Mirror client (default: from settings)

    Returns:
        AppComponents
    """
    settings = get_settings()

    if use_sqlite:
        store = SQLiteRecordStore(
            settings.store.database_file,
            retry_attempts=settings.store.busy_retry_attempts,
        )
        audit_logger = AuditLogger(SQLiteAuditStorage(store.connection))
    else:
        store = InMemoryRecordStore()
        audit_logger = AuditLogger(InMemoryAuditStorage())

    remote = remote or RemoteMirrorClient()
    recurring = RecurringEngine(store, audit_logger=audit_logger)

    return AppComponents(
        store=store,
        remote=remote,
        ledger=LedgerService(store, audit_logger=audit_logger),
        sync=SyncService(SyncEngine(store, remote, settings.sync), store, audit_logger),
        recurring=recurring,
        scheduler=RecurringScheduler(recurring, settings.recurring.interval_seconds),
        net_worth=NetWorthService(store, audit_logger=audit_logger),
        budgets=BudgetQueries(store),
        audit_logger=audit_logger,
    )

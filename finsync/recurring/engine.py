"""
Recurring Transaction Engine

Turns recurring templates into concrete transactions.

DESIGN DECISION: The engine is safe to run any number of times.
1. Each template keeps a watermark (last_processed), the date of the
   latest occurrence already materialized. Only occurrences after it
   are considered.
2. Before inserting an occurrence the engine looks for an existing
   transaction with the same account, amount, description and date,
   and skips the insert if one exists (deleted ones included).
3. The watermark is saved after every occurrence, so a run that dies
   halfway resumes where it stopped.

Templates are processed independently: one broken template is logged
and reported, the rest still run.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from finsync.audit import AuditLogger
from finsync.models.records import RecurringTransaction, Transaction
from finsync.recurring.schedule import next_occurrence
from finsync.services.storage import RecordStore


logger = structlog.get_logger(__name__)


class RecurringRunError(BaseModel):
    """A template that failed during a run."""

    template_id: Optional[int] = None
    description: str = ""
    error: str


class MaterializedOccurrence(BaseModel):
    """One transaction generated from a template."""

    template_id: int
    transaction_id: int
    occurred_on: date
    amount: Decimal


class RecurringRunResult(BaseModel):
    """What one pass of the engine did."""

    today: date
    templates_checked: int = 0
    materialized: list[MaterializedOccurrence] = Field(default_factory=list)
    skipped_existing: int = Field(
        default=0,
        description="Occurrences that already had a matching transaction"
    )
    deactivated: list[int] = Field(
        default_factory=list,
        description="Templates switched off because their end date passed"
    )
    errors: list[RecurringRunError] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.materialized)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class RecurringEngine:
    """
    Materializes due occurrences of every active template.
    """

    def __init__(
        self,
        store: RecordStore,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._audit = audit_logger

    async def process(self, today: Optional[date] = None) -> RecurringRunResult:
        """
        Run one pass over all active templates.

        Args:
            today: Local calendar day to process up to (inclusive).
                   Defaults to date.today().

        Returns:
            RecurringRunResult. Per-template failures are in `errors`;
            this method does not raise for them.
        """
        today = today or date.today()
        result = RecurringRunResult(today=today)

        templates = await self._store.recurring_transactions.where(is_active=True)
        for template in templates:
            result.templates_checked += 1
            try:
                await self._process_template(template, today, result)
            except Exception as e:
                logger.error(
                    "recurring_template_failed",
                    template_id=template.id,
                    description=template.description,
                    error=str(e),
                    exc_info=True,
                )
                result.errors.append(RecurringRunError(
                    template_id=template.id,
                    description=template.description,
                    error=str(e),
                ))
                if self._audit:
                    await self._audit.log_recurring_failed(template.id, str(e))

        logger.info(
            "recurring_run_completed",
            today=today.isoformat(),
            templates=result.templates_checked,
            created=result.created_count,
            skipped=result.skipped_existing,
            deactivated=len(result.deactivated),
            errors=len(result.errors),
        )
        return result

    async def _process_template(
        self,
        template: RecurringTransaction,
        today: date,
        result: RecurringRunResult,
    ) -> None:
        if template.end_date is not None and template.end_date < today:
            await self._store.recurring_transactions.update(template.id, is_active=False)
            result.deactivated.append(template.id)
            logger.info(
                "recurring_template_ended",
                template_id=template.id,
                end_date=template.end_date.isoformat(),
            )
            if self._audit:
                await self._audit.log_recurring_deactivated(template.id, template.end_date)
            return

        watermark = template.last_processed
        if watermark is None:
            if template.start_date > today:
                return
            await self._materialize(template, template.start_date, result)
            watermark = template.start_date

        while True:
            due = next_occurrence(template.start_date, template.frequency, watermark)
            if due > today:
                break
            if template.end_date is not None and due > template.end_date:
                break
            await self._materialize(template, due, result)
            watermark = due

    async def _materialize(
        self,
        template: RecurringTransaction,
        on: date,
        result: RecurringRunResult,
    ) -> None:
        """Insert the occurrence unless it already exists, then advance the watermark."""
        existing = await self._store.transactions.where(account_id=template.account_id, date=on)
        if any(
            txn.matches_occurrence(template.account_id, template.amount, template.description, on)
            for txn in existing
        ):
            result.skipped_existing += 1
            logger.debug(
                "recurring_occurrence_exists",
                template_id=template.id,
                date=on.isoformat(),
            )
        else:
            transaction = await self._store.transactions.create(Transaction(
                account_id=template.account_id,
                date=on,
                amount=template.amount,
                description=template.description,
                category_id=template.category_id,
                type=template.type,
                payee=template.payee,
                tags=list(template.tags),
                notes=template.notes,
            ))
            result.materialized.append(MaterializedOccurrence(
                template_id=template.id,
                transaction_id=transaction.id,
                occurred_on=on,
                amount=template.amount,
            ))
            if self._audit:
                await self._audit.log_recurring_materialized(
                    template_id=template.id,
                    transaction_id=transaction.id,
                    occurrence=on,
                    amount=template.amount,
                )

        await self._store.recurring_transactions.update(template.id, last_processed=on)

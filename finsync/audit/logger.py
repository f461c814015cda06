"""
Audit Logger

DESIGN DECISION: Every significant action in the system is logged.
This provides:
1. Complete traceability of generated transactions
2. Debugging capability for sync runs
3. A history the user can see next to the sync panel

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events (pull + push of one full sync)
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from finsync.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from finsync.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(debug: bool = False) -> None:
    """Route structlog output through stdlib logging at the chosen level."""
    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if debug else logging.INFO,
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence and user visibility), if configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("finsync.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def recent_events(self, limit: int = 20) -> list[AuditEvent]:
        """Most recent persisted events, newest first (empty without storage)."""
        if not self._storage:
            return []
        return await self._storage.get_recent_events(limit=limit)

    async def log_record_created(self, table: str, record_id: int, description: str) -> None:
        await self.log(AuditEventBuilder.record_created(table, record_id, description))

    async def log_record_updated(self, table: str, record_id: int, fields: list[str]) -> None:
        await self.log(AuditEventBuilder.record_updated(table, record_id, fields))

    async def log_record_deleted(self, table: str, record_id: int, soft: bool) -> None:
        await self.log(AuditEventBuilder.record_deleted(table, record_id, soft))

    async def log_validation_failed(self, table: str, issues: list[dict]) -> None:
        await self.log(AuditEventBuilder.validation_failed(table, issues))

    async def log_recurring_materialized(
        self,
        template_id: int,
        transaction_id: int,
        occurrence: date,
        amount: Decimal,
    ) -> None:
        """Log one generated occurrence."""
        event = AuditEventBuilder.recurring_materialized(
            template_id=template_id,
            transaction_id=transaction_id,
            occurrence=occurrence,
            amount=amount,
        )
        await self.log(event)

    async def log_recurring_deactivated(self, template_id: int, end_date: date) -> None:
        await self.log(AuditEventBuilder.recurring_deactivated(template_id, end_date))

    async def log_recurring_failed(self, template_id: Optional[int], error_message: str) -> None:
        await self.log(AuditEventBuilder.recurring_failed(template_id, error_message))

    async def log_pull_completed(
        self,
        imported: dict[str, int],
        watermark: datetime,
        full: bool,
        skipped: int = 0,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a successful pull."""
        event = AuditEventBuilder.pull_completed(
            imported=imported,
            watermark=watermark,
            full=full,
            skipped=skipped,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_push_completed(
        self,
        inserted: int,
        updated: int,
        error_count: int,
        watermark: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a push that reached the server (possibly with row errors)."""
        event = AuditEventBuilder.push_completed(
            inserted=inserted,
            updated=updated,
            error_count=error_count,
            watermark=watermark,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_sync_failed(
        self,
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.sync_failed(
            operation=operation,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_snapshot_taken(
        self,
        snapshot_id: int,
        day: date,
        net_worth: Decimal,
        replaced: bool,
    ) -> None:
        event = AuditEventBuilder.snapshot_taken(
            snapshot_id=snapshot_id,
            day=day,
            net_worth=net_worth,
            replaced=replaced,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (e.g., a full sync) and pass it
    through all subsequent operations.
    """
    return uuid4()

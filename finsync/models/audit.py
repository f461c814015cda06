"""
Audit Models for finsync

Every significant action in the system is logged for audit purposes.
This provides:
1. Traceability of what the recurring engine generated, and when
2. Debugging information when a sync goes wrong
3. A history the user can be shown next to the sync panel

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from finsync.models.records import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.
    """
    # Ledger edits
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    VALIDATION_FAILED = "validation_failed"

    # Recurring engine
    RECURRING_MATERIALIZED = "recurring_materialized"
    RECURRING_DEACTIVATED = "recurring_deactivated"
    RECURRING_FAILED = "recurring_failed"

    # Sync
    SYNC_PULL_COMPLETED = "sync_pull_completed"
    SYNC_PUSH_COMPLETED = "sync_push_completed"
    SYNC_FAILED = "sync_failed"

    # Net worth
    SNAPSHOT_TAKEN = "snapshot_taken"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Table of the entity (e.g., 'transactions', 'recurringTransactions')"
    )
    entity_id: Optional[int] = Field(
        default=None,
        description="Identifier of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., one full sync)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.recurring_materialized(template_id, txn_id, day)
        event = AuditEventBuilder.pull_completed(imported, watermark, correlation_id)
    """

    @staticmethod
    def record_created(
        table: str,
        record_id: int,
        description: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_CREATED,
            entity_type=table,
            entity_id=record_id,
            description=f"Created in {table}: {description}",
            is_user_action=True,
        )

    @staticmethod
    def record_updated(
        table: str,
        record_id: int,
        fields: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_UPDATED,
            entity_type=table,
            entity_id=record_id,
            description=f"Updated {table} #{record_id}",
            details={"fields": fields},
            is_user_action=True,
        )

    @staticmethod
    def record_deleted(
        table: str,
        record_id: int,
        soft: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECORD_DELETED,
            entity_type=table,
            entity_id=record_id,
            description=f"{'Deactivated' if soft else 'Deleted'} {table} #{record_id}",
            details={"soft": soft},
            is_user_action=True,
        )

    @staticmethod
    def validation_failed(
        table: str,
        issues: list[dict],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type=table,
            description=f"Rejected {table} write with {len(issues)} issues",
            details={"issues": issues},
            is_user_action=True,
        )

    @staticmethod
    def recurring_materialized(
        template_id: int,
        transaction_id: int,
        occurrence: date,
        amount: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_MATERIALIZED,
            entity_type="recurringTransactions",
            entity_id=template_id,
            description=f"Generated transaction #{transaction_id} for {occurrence.isoformat()}",
            details={
                "transaction_id": transaction_id,
                "occurrence": occurrence.isoformat(),
                "amount": str(amount),
            },
        )

    @staticmethod
    def recurring_deactivated(
        template_id: int,
        end_date: date,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_DEACTIVATED,
            entity_type="recurringTransactions",
            entity_id=template_id,
            description=f"Recurring transaction ended on {end_date.isoformat()}",
            details={"end_date": end_date.isoformat()},
        )

    @staticmethod
    def recurring_failed(
        template_id: Optional[int],
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="recurringTransactions",
            entity_id=template_id,
            description="Recurring transaction could not be processed",
            error_message=error_message,
        )

    @staticmethod
    def pull_completed(
        imported: dict[str, int],
        watermark: datetime,
        full: bool,
        skipped: int = 0,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_PULL_COMPLETED,
            severity=AuditSeverity.WARNING if skipped else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Pulled {sum(imported.values())} items from server",
            details={
                "imported": imported,
                "watermark": watermark.isoformat(),
                "full": full,
                "skipped": skipped,
            },
            is_user_action=True,
        )

    @staticmethod
    def push_completed(
        inserted: int,
        updated: int,
        error_count: int,
        watermark: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_PUSH_COMPLETED,
            severity=AuditSeverity.WARNING if error_count else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Pushed {inserted} new, updated {updated} items",
            details={
                "inserted": inserted,
                "updated": updated,
                "error_count": error_count,
                "watermark": watermark.isoformat(),
            },
            is_user_action=True,
        )

    @staticmethod
    def sync_failed(
        operation: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description=f"{operation.capitalize()} failed",
            error_message=error_message,
            details={"operation": operation},
            is_user_action=True,
        )

    @staticmethod
    def snapshot_taken(
        snapshot_id: int,
        day: date,
        net_worth: Decimal,
        replaced: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_TAKEN,
            entity_type="netWorthSnapshots",
            entity_id=snapshot_id,
            description=f"Net worth snapshot for {day.isoformat()}: {net_worth}",
            details={
                "net_worth": str(net_worth),
                "replaced": replaced,
            },
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

"""
Data Models Package

This package contains all Pydantic models used in finsync.
All data flowing through the system must conform to these schemas.
"""

from finsync.models.records import (
    ASSET_ACCOUNT_TYPES,
    LIABILITY_ACCOUNT_TYPES,
    Account,
    AccountType,
    ActiveRecordModel,
    Budget,
    Category,
    CategoryType,
    Frequency,
    NetWorthSnapshot,
    RecordModel,
    RecurringTransaction,
    Transaction,
    TransactionType,
    month_key,
    utcnow,
)
from finsync.models.sync import (
    ChangeSet,
    CreatedRecord,
    FullSyncResult,
    PullResult,
    PushError,
    PushResponse,
    PushResult,
    SkippedRow,
    SyncTable,
)
from finsync.models.validation import ValidationIssue, ValidationResult
from finsync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Record models
    "ASSET_ACCOUNT_TYPES",
    "LIABILITY_ACCOUNT_TYPES",
    "Account",
    "AccountType",
    "ActiveRecordModel",
    "Budget",
    "Category",
    "CategoryType",
    "Frequency",
    "NetWorthSnapshot",
    "RecordModel",
    "RecurringTransaction",
    "Transaction",
    "TransactionType",
    "month_key",
    "utcnow",
    # Sync models
    "ChangeSet",
    "CreatedRecord",
    "FullSyncResult",
    "PullResult",
    "PushError",
    "PushResponse",
    "PushResult",
    "SkippedRow",
    "SyncTable",
    # Validation models
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

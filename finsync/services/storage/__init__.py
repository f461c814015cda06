"""
Storage Services Package

Provides the abstract record store interface and its implementations.
SQLite is the durable local backend; the in-memory store backs tests.
"""

from finsync.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    NotFoundError,
    RecordStore,
    RecordTable,
    StorageError,
)
from finsync.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryRecordStore,
    InMemoryRecordTable,
)
from finsync.services.storage.sqlite import (
    SQLiteAuditStorage,
    SQLiteConnection,
    SQLiteRecordStore,
    SQLiteRecordTable,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "RecordStore",
    "RecordTable",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryRecordStore",
    "InMemoryRecordTable",
    # SQLite implementation
    "SQLiteAuditStorage",
    "SQLiteConnection",
    "SQLiteRecordStore",
    "SQLiteRecordTable",
]

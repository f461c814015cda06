"""Services package."""

from finsync.services.remote import (
    CodecError,
    RemoteError,
    RemoteMirrorClient,
)
from finsync.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryRecordStore,
    NotFoundError,
    RecordStore,
    RecordTable,
    SQLiteAuditStorage,
    SQLiteRecordStore,
    StorageError,
)

__all__ = [
    # Remote mirror
    "CodecError",
    "RemoteError",
    "RemoteMirrorClient",
    # Storage services
    "AuditStorageInterface",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryRecordStore",
    "NotFoundError",
    "RecordStore",
    "RecordTable",
    "SQLiteAuditStorage",
    "SQLiteRecordStore",
    "StorageError",
]

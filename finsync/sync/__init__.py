"""Sync package."""

from finsync.sync.engine import SyncEngine, SyncError

__all__ = ["SyncEngine", "SyncError"]

"""
Sync Engine

Reconciles the local record store with the remote mirror.

DESIGN DECISION: The engine holds no sync state of its own.
- pull() and push() take the watermark as an argument and return the new
  one inside their result. The caller persists it (see SyncService).
- A transport failure, a malformed response envelope or a failing local
  store raises SyncError before anything is returned, so a failed
  operation can never advance the watermark.
- A single pulled row the local models reject is skipped and reported on
  PullResult.skipped. It does not hold back the rest of the pull.

CONFLICT POLICY: last-write-wins. The engine compares no timestamps: a
pull overwrites local rows with whatever the mirror sent, a push sends
every local row and the mirror overwrites its copy. A row edited on both
sides between syncs keeps whichever side wrote last. This is accepted
for a single user with occasional multi-device use.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from finsync.config import SyncSettings, get_settings
from finsync.models.records import utcnow
from finsync.models.sync import (
    ChangeSet,
    FullSyncResult,
    PullResult,
    PushError,
    PushResult,
    SyncTable,
)
from finsync.services.remote import RemoteError, RemoteMirrorClient, encode_changes
from finsync.services.storage import RecordStore, StorageError


logger = structlog.get_logger(__name__)


class SyncError(Exception):
    """
    A pull or push failed as a whole.

    The message is suitable for showing to the user.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        completed_pull: Optional[PullResult] = None,
    ):
        self.operation = operation
        # Set when a full sync pulled successfully but then failed to push
        self.completed_pull = completed_pull
        super().__init__(message)


# (table, field) pairs that hold an identifier of the keyed table
_REFERENCES: dict[SyncTable, list[tuple[SyncTable, str]]] = {
    SyncTable.ACCOUNTS: [
        (SyncTable.TRANSACTIONS, "account_id"),
        (SyncTable.TRANSACTIONS, "to_account_id"),
        (SyncTable.RECURRING_TRANSACTIONS, "account_id"),
    ],
    SyncTable.CATEGORIES: [
        (SyncTable.CATEGORIES, "parent_category_id"),
        (SyncTable.TRANSACTIONS, "category_id"),
        (SyncTable.RECURRING_TRANSACTIONS, "category_id"),
        (SyncTable.BUDGETS, "category_id"),
    ],
}


class SyncEngine:
    """
    Pull, push and full sync against one mirror.
    """

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteMirrorClient,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            store: Local record store
            remote: Mirror client
            settings: Sync heuristics (defaults from environment)
            clock: Source of "now" for the push watermark
            sleep: Used for the pause inside full_sync
        """
        self._store = store
        self._remote = remote
        self._settings = settings or get_settings().sync
        self._clock = clock
        self._sleep = sleep

    async def is_cold(self) -> bool:
        """
        True if the local store looks never populated.

        Both counts have to be under their thresholds; a store with a
        couple of accounts but no categories is not cold.
        """
        accounts = await self._store.accounts.count()
        categories = await self._store.categories.count()
        return (
            accounts < self._settings.cold_account_threshold
            and categories < self._settings.cold_category_threshold
        )

    # =========================================================================
    # PULL
    # =========================================================================

    async def pull(
        self,
        since: Optional[datetime],
        *,
        force_full: bool = False,
    ) -> PullResult:
        """
        Fetch changes from the mirror and upsert them locally.

        Args:
            since: Current watermark (None = never synced)
            force_full: Ignore the watermark and the cold-store check

        Returns:
            PullResult whose watermark is the mirror's response timestamp

        Raises:
            SyncError: If the mirror could not be reached or answered badly,
                or the local store failed while applying the changes
        """
        full = force_full or since is None or await self.is_cold()
        request_since = None if full else since

        try:
            changes, server_time = await self._remote.fetch_changes(request_since)
        except RemoteError as e:
            logger.warning("sync_pull_failed", error=str(e), since=str(request_since))
            raise SyncError("pull", f"Failed to pull changes: {e}") from e

        for skipped in changes.skipped:
            logger.warning(
                "sync_pull_row_skipped",
                table=skipped.table,
                item=skipped.item,
                error=skipped.error,
            )

        try:
            imported = await self._apply(changes)
        except StorageError as e:
            logger.error("sync_pull_apply_failed", error=str(e))
            raise SyncError("pull", f"Failed to store pulled changes: {e}") from e

        result = PullResult(
            watermark=server_time,
            full=full,
            imported=imported,
            skipped=changes.skipped,
        )
        logger.info(
            "sync_pull_completed",
            full=full,
            since=str(request_since),
            total=result.total_imported,
            skipped=len(result.skipped),
            watermark=server_time.isoformat(),
        )
        return result

    async def _apply(self, changes: ChangeSet) -> dict[str, int]:
        """Upsert every record, whole-row replace, in table order."""
        imported = {}
        for table in SyncTable:
            records = changes.records(table)
            target = self._store.table(table)
            for record in records:
                await target.put(record)
            imported[table.value] = len(records)
        return imported

    # =========================================================================
    # PUSH
    # =========================================================================

    async def push(self, *, now: Optional[datetime] = None) -> PushResult:
        """
        Send every local row to the mirror.

        Rows the mirror could not apply come back in PushResult.errors and
        do not fail the push. If the mirror stored a row under a different
        identifier than ours, the local row is re-keyed to match.

        Args:
            now: Override for the completion time (defaults to the clock)

        Returns:
            PushResult whose watermark is the local clock at completion

        Raises:
            SyncError: If the local store could not be read, or the mirror
                could not be reached or answered badly
        """
        try:
            snapshot = ChangeSet(**{
                table.store_attr: await self._store.table(table).all()
                for table in SyncTable
            })
        except StorageError as e:
            logger.error("sync_push_read_failed", error=str(e))
            raise SyncError("push", f"Failed to read local records: {e}") from e

        try:
            response = await self._remote.push_changes(encode_changes(snapshot))
        except RemoteError as e:
            logger.warning("sync_push_failed", error=str(e), rows=snapshot.total)
            raise SyncError("push", f"Failed to push changes: {e}") from e

        errors = list(response.errors)
        reassigned = 0
        for created in response.created:
            if created.client_id is None or created.client_id == created.id:
                continue
            try:
                table = SyncTable(created.table)
                await self._adopt_identifier(table, created.client_id, created.id)
                reassigned += 1
            except (ValueError, StorageError) as e:
                logger.warning(
                    "sync_reassign_failed",
                    table=created.table,
                    client_id=created.client_id,
                    server_id=created.id,
                    error=str(e),
                )
                errors.append(PushError(
                    table=created.table,
                    item={"id": created.client_id},
                    error=f"Could not adopt server id {created.id}: {e}",
                ))

        result = PushResult(
            watermark=now or self._clock(),
            inserted=response.inserted,
            updated=response.updated,
            errors=errors,
            reassigned=reassigned,
        )
        logger.info(
            "sync_push_completed",
            rows=snapshot.total,
            inserted=result.inserted,
            updated=result.updated,
            errors=len(result.errors),
            reassigned=reassigned,
        )
        return result

    async def _adopt_identifier(self, table: SyncTable, old_id: int, new_id: int) -> None:
        """Re-key a local row and every row that points at it."""
        await self._store.table(table).reassign_id(old_id, new_id)
        for ref_table, field in _REFERENCES.get(table, []):
            target = self._store.table(ref_table)
            for record in await target.where(**{field: old_id}):
                await target.update(record.id, **{field: new_id})

    # =========================================================================
    # FULL SYNC
    # =========================================================================

    async def full_sync(self, since: Optional[datetime]) -> FullSyncResult:
        """
        Pull, pause briefly, then push.

        Raises:
            SyncError: If either half fails. A failed push after a
                successful pull carries the pull on `completed_pull`.
        """
        pull = await self.pull(since)
        await self._sleep(self._settings.full_sync_delay_seconds)
        try:
            push = await self.push()
        except SyncError as e:
            e.completed_pull = pull
            raise
        return FullSyncResult(pull=pull, push=push)

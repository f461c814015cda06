"""
Mirror Database

The remote mirror keeps the same six tables as the client, one SQL table
each, with camelCase column names equal to the wire keys. It is a plain
key-value store per table: it does not enforce ledger rules, only the
NOT NULL columns every row needs.

Every write stamps the row's updatedAt with the mirror's own clock. The
sync endpoint filters on it.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from finsync.models.records import utcnow
from finsync.models.sync import CreatedRecord, PushError, PushResponse, SyncTable
from finsync.services.remote.codec import (
    CodecError,
    TAGGED_TABLES,
    decode_tags,
    encode_tags,
    parse_wire_date,
    parse_wire_timestamp,
)


logger = structlog.get_logger(__name__)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("type", String(20), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, default=0),
    Column("color", String(20), nullable=False, default="#0ea5e9"),
    Column("createdAt", DateTime),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("type", String(20), nullable=False),
    Column("color", String(20), nullable=False, default="#64748b"),
    Column("icon", String(50)),
    Column("monthlyBudget", Numeric(14, 2)),
    Column("parentCategoryId", Integer),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("accountId", Integer, nullable=False),
    Column("date", Date, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(500), nullable=False),
    Column("categoryId", Integer),
    Column("type", String(20), nullable=False),
    Column("toAccountId", Integer),
    Column("payee", String(200)),
    Column("tags", Text),
    Column("notes", Text),
    Column("createdAt", DateTime),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("categoryId", Integer, nullable=False),
    Column("month", String(7), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("spent", Numeric(14, 2), nullable=False, default=0),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

recurring_transactions = Table(
    "recurring_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("accountId", Integer, nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("description", String(500), nullable=False),
    Column("categoryId", Integer, nullable=False),
    Column("type", String(20), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("startDate", Date, nullable=False),
    Column("endDate", Date),
    Column("lastProcessed", Date),
    Column("payee", String(200)),
    Column("tags", Text),
    Column("notes", Text),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("createdAt", DateTime),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

networth_snapshots = Table(
    "networth_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", Date, nullable=False),
    Column("totalAssets", Numeric(14, 2), nullable=False),
    Column("totalLiabilities", Numeric(14, 2), nullable=False),
    Column("netWorth", Numeric(14, 2), nullable=False),
    Column("createdAt", DateTime),
    Column("updatedAt", DateTime, nullable=False),
    sqlite_autoincrement=True,
)

TABLES: dict[SyncTable, Table] = {
    SyncTable.ACCOUNTS: accounts,
    SyncTable.CATEGORIES: categories,
    SyncTable.TRANSACTIONS: transactions,
    SyncTable.BUDGETS: budgets,
    SyncTable.RECURRING_TRANSACTIONS: recurring_transactions,
    SyncTable.NET_WORTH_SNAPSHOTS: networth_snapshots,
}


class MirrorError(Exception):
    """A row could not be written to the mirror."""
    pass


def _naive_utc(value: datetime) -> datetime:
    """Mirror columns hold naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes"):
            return True
        if lowered in ("0", "false", "no", ""):
            return False
        raise MirrorError(f"Invalid boolean: {value!r}")
    return bool(value)


def _coerce(sync_table: SyncTable, table: Table, data: dict[str, Any]) -> dict[str, Any]:
    """
    Wire row to column values.

    Unknown keys, `id` and `updatedAt` are dropped; the caller decides
    the identifier and the mirror owns updatedAt.
    """
    values = {}
    for key, value in data.items():
        if key in ("id", "updatedAt") or key not in table.c:
            continue
        column = table.c[key]
        if value is None:
            values[key] = None
            continue
        try:
            if key == "tags" and sync_table in TAGGED_TABLES:
                values[key] = encode_tags(decode_tags(value))
            elif isinstance(column.type, Date):
                values[key] = parse_wire_date(value)
            elif isinstance(column.type, DateTime):
                values[key] = _naive_utc(parse_wire_timestamp(value))
            elif isinstance(column.type, Boolean):
                values[key] = _to_bool(value)
            elif isinstance(column.type, Numeric):
                values[key] = Decimal(str(value))
            elif isinstance(column.type, Integer):
                # 0 is the legacy "no reference"
                values[key] = int(value) or None
            else:
                values[key] = str(value)
        except (CodecError, InvalidOperation, TypeError, ValueError) as e:
            raise MirrorError(f"Invalid value for {key}: {e}") from e
    return values


def _to_wire(table: Table, row: dict[str, Any]) -> dict[str, Any]:
    """Column values to a JSON-ready wire row."""
    wire = {}
    for key, value in row.items():
        if isinstance(value, datetime):
            wire[key] = value.replace(tzinfo=timezone.utc).isoformat()
        elif hasattr(value, "isoformat"):
            wire[key] = value.isoformat()
        elif isinstance(value, Decimal):
            wire[key] = float(value)
        else:
            wire[key] = value
    return wire


class MirrorDatabase:
    """
    SQLAlchemy Core access to the mirror tables.

    All methods are synchronous; FastAPI runs them in its threadpool.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: str) -> "MirrorDatabase":
        """Create the engine for a URL and make sure the schema exists."""
        kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or every checkout sees an empty database
                kwargs["poolclass"] = StaticPool
        database = cls(create_engine(url, **kwargs))
        database.create_schema()
        return database

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # -------------------------------------------------------------------------
    # Generic CRUD
    # -------------------------------------------------------------------------

    def list_rows(self, sync_table: SyncTable) -> list[dict[str, Any]]:
        table = TABLES[sync_table]
        with self.engine.begin() as conn:
            rows = conn.execute(select(table).order_by(table.c.id)).mappings().all()
        return [_to_wire(table, dict(row)) for row in rows]

    def get_row(self, sync_table: SyncTable, record_id: int) -> Optional[dict[str, Any]]:
        table = TABLES[sync_table]
        with self.engine.begin() as conn:
            row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
        return _to_wire(table, dict(row)) if row else None

    def insert_row(
        self,
        sync_table: SyncTable,
        data: dict[str, Any],
        record_id: Optional[int] = None,
    ) -> int:
        """
        Insert a row; the mirror mints the id unless `record_id` is given.

        Raises:
            MirrorError: On bad values or a constraint violation
        """
        table = TABLES[sync_table]
        values = _coerce(sync_table, table, data)
        values["updatedAt"] = _naive_utc(utcnow())
        if record_id is not None:
            values["id"] = record_id
        try:
            with self.engine.begin() as conn:
                result = conn.execute(insert(table).values(**values))
                new_id = record_id if record_id is not None else result.inserted_primary_key[0]
        except SQLAlchemyError as e:
            raise MirrorError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e
        return new_id

    def update_row(self, sync_table: SyncTable, record_id: int, data: dict[str, Any]) -> bool:
        """
        Change the given columns and refresh updatedAt.

        Returns False if no row has this id.

        Raises:
            MirrorError: On bad values or a constraint violation
        """
        table = TABLES[sync_table]
        values = _coerce(sync_table, table, data)
        values["updatedAt"] = _naive_utc(utcnow())
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(table).where(table.c.id == record_id).values(**values)
                )
        except SQLAlchemyError as e:
            raise MirrorError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e
        return result.rowcount > 0

    def delete_row(self, sync_table: SyncTable, record_id: int) -> bool:
        table = TABLES[sync_table]
        with self.engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.id == record_id))
        return result.rowcount > 0

    def row_exists(self, sync_table: SyncTable, record_id: int) -> bool:
        table = TABLES[sync_table]
        with self.engine.begin() as conn:
            found = conn.execute(select(table.c.id).where(table.c.id == record_id)).first()
        return found is not None

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def changes_since(self, since: Optional[datetime]) -> dict[str, list[dict[str, Any]]]:
        """Rows of all six tables with updatedAt strictly after `since` (all if None)."""
        changes = {}
        with self.engine.begin() as conn:
            for sync_table, table in TABLES.items():
                stmt = select(table).order_by(table.c.id)
                if since is not None:
                    stmt = stmt.where(table.c.updatedAt > _naive_utc(since))
                rows = conn.execute(stmt).mappings().all()
                changes[sync_table.value] = [_to_wire(table, dict(row)) for row in rows]
        return changes

    def apply_push(self, body: dict[str, Any]) -> PushResponse:
        """
        Upsert every row of a push body, independently.

        A row with an id updates that row, or is inserted under that id
        if the mirror has no such row. A row without an id is inserted
        under a new id. Failed rows are reported, not raised.
        """
        response = PushResponse(timestamp=utcnow())
        for sync_table in SyncTable:
            for item in body.get(sync_table.value) or []:
                try:
                    self._apply_row(sync_table, item, response)
                except MirrorError as e:
                    logger.warning(
                        "mirror_push_row_failed",
                        table=sync_table.value,
                        id=item.get("id") if isinstance(item, dict) else None,
                        error=str(e),
                    )
                    response.errors.append(PushError(
                        table=sync_table.value,
                        item=item if isinstance(item, dict) else {"value": item},
                        error=str(e),
                    ))
        logger.info(
            "mirror_push_applied",
            inserted=response.inserted,
            updated=response.updated,
            errors=len(response.errors),
        )
        return response

    def _apply_row(self, sync_table: SyncTable, item: Any, response: PushResponse) -> None:
        if not isinstance(item, dict):
            raise MirrorError("Row must be an object")
        raw_id = item.get("id")
        try:
            client_id = int(raw_id) if raw_id else None
        except (TypeError, ValueError) as e:
            raise MirrorError(f"Invalid id: {raw_id!r}") from e

        if client_id is not None and self.row_exists(sync_table, client_id):
            self.update_row(sync_table, client_id, item)
            response.updated += 1
            return

        new_id = self.insert_row(sync_table, item, record_id=client_id)
        response.inserted += 1
        response.created.append(CreatedRecord(
            table=sync_table.value,
            client_id=client_id,
            id=new_id,
        ))

"""
Mirror API

FastAPI app exposing the mirror database:

- GET  /api/health
- CRUD on /api/{accounts|categories|transactions|budgets}
- GET  /api/sync?since=<ISO-8601>   changes after `since`, plus server time
- POST /api/sync/push               upsert a batch of rows from a client

The app is deliberately thin; all row handling is in MirrorDatabase.
"""

from enum import Enum
from typing import Any, Optional

import structlog
import uvicorn
from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from finsync import __version__
from finsync.audit import configure_logging
from finsync.config import ServerSettings, get_settings
from finsync.models.records import utcnow
from finsync.models.sync import SyncTable
from finsync.server.database import MirrorDatabase, MirrorError
from finsync.services.remote.codec import CodecError, parse_wire_timestamp


logger = structlog.get_logger(__name__)


class CrudTable(str, Enum):
    """Tables with generic CRUD routes."""
    ACCOUNTS = "accounts"
    CATEGORIES = "categories"
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"

    @property
    def sync_table(self) -> SyncTable:
        return SyncTable(self.value)


def create_app(
    database: Optional[MirrorDatabase] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    """
    Build the mirror app.

    Args:
        database: Mirror database (default: from settings.database_url)
        settings: Server settings (default: from environment)
    """
    settings = settings or get_settings().server
    database = database or MirrorDatabase.from_url(settings.database_url)

    app = FastAPI(title="finsync mirror", version=__version__)
    app.state.db = database

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MirrorError)
    async def mirror_error_handler(request: Request, exc: MirrorError) -> JSONResponse:
        logger.warning("mirror_request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "message": "Finance API is running"}

    # Sync routes are declared before /api/{table} so they win the match

    @app.get("/api/sync")
    def pull_changes(since: Optional[str] = Query(default=None)) -> dict[str, Any]:
        watermark = None
        if since:
            try:
                # A "+" in an unencoded query string arrives as a space
                watermark = parse_wire_timestamp(since.replace(" ", "+"))
            except CodecError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
        # Taken before reading, so rows written meanwhile are fetched again next time
        timestamp = utcnow()
        changes = database.changes_since(watermark)
        logger.info(
            "mirror_changes_served",
            since=since,
            total=sum(len(rows) for rows in changes.values()),
        )
        return {**changes, "timestamp": timestamp.isoformat()}

    @app.post("/api/sync/push")
    def push_changes(body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        response = database.apply_push(body)
        return response.model_dump(mode="json", by_alias=True)

    @app.get("/api/{table}")
    def list_records(table: CrudTable) -> list[dict[str, Any]]:
        return database.list_rows(table.sync_table)

    @app.get("/api/{table}/{record_id}")
    def get_record(table: CrudTable, record_id: int) -> dict[str, Any]:
        row = database.get_row(table.sync_table, record_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Record not found")
        return row

    @app.post("/api/{table}", status_code=201)
    def create_record(table: CrudTable, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        new_id = database.insert_row(table.sync_table, body)
        return database.get_row(table.sync_table, new_id)

    @app.put("/api/{table}/{record_id}")
    def update_record(
        table: CrudTable,
        record_id: int,
        body: dict[str, Any] = Body(...),
    ) -> dict[str, Any]:
        if not database.update_row(table.sync_table, record_id, body):
            raise HTTPException(status_code=404, detail="Record not found")
        return database.get_row(table.sync_table, record_id)

    @app.delete("/api/{table}/{record_id}")
    def delete_record(table: CrudTable, record_id: int) -> dict[str, str]:
        if not database.delete_row(table.sync_table, record_id):
            raise HTTPException(status_code=404, detail="Record not found")
        return {"message": "Record deleted successfully"}

    return app


def run_server() -> None:
    """Serve the mirror with uvicorn, configured from settings."""
    settings = get_settings()
    configure_logging(settings.app.debug_mode)
    uvicorn.run(create_app(), host=settings.server.host, port=settings.server.port)

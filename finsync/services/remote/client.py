"""
Remote Mirror Client

HTTP client for the mirror's sync endpoints, built on httpx.AsyncClient.

DESIGN DECISION: No automatic retries here. A failed pull or push is
reported to the user, who decides when to try again; the sync watermark
is only advanced after a call succeeded, so nothing is lost.
"""

from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from finsync.config import get_settings
from finsync.models.sync import ChangeSet, PushResponse
from finsync.services.remote.codec import (
    CodecError,
    decode_changes,
    parse_wire_timestamp,
)


logger = structlog.get_logger(__name__)


class RemoteError(Exception):
    """The mirror could not be reached or rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RemoteMirrorClient:
    """
    Client for one mirror.

    Pass `transport` (e.g. httpx.ASGITransport) to talk to an in-process
    app instead of the network.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings().remote
        self._base_url = (base_url or settings.base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("remote_unreachable", method=method, path=path, error=str(e))
            raise RemoteError(f"Could not reach sync server: {e}") from e

        if response.is_error:
            logger.warning(
                "remote_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise RemoteError(
                f"Sync server returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteError(
                f"Sync server sent an invalid response for {method} {path}",
                status_code=response.status_code,
            ) from e
        # Every mirror endpoint answers with a JSON object
        if not isinstance(body, dict):
            raise RemoteError(
                f"Sync server sent {type(body).__name__} instead of an object for {method} {path}",
                status_code=response.status_code,
            )
        return body

    async def health(self) -> bool:
        """True if the mirror answers its health check."""
        try:
            body = await self._request("GET", "/health")
        except RemoteError:
            return False
        return body.get("status") == "ok"

    async def fetch_changes(self, since: Optional[datetime]) -> tuple[ChangeSet, datetime]:
        """
        Everything changed after `since` (everything if None).

        Returns:
            (changes, server timestamp of the response)

        Raises:
            RemoteError: On transport failure, non-2xx, or a malformed
                envelope. Individual bad rows do not raise, they come back
                on ChangeSet.skipped.
        """
        params = {"since": since.isoformat()} if since else None
        body = await self._request("GET", "/sync", params=params)
        try:
            changes = decode_changes(body)
            timestamp = parse_wire_timestamp(body.get("timestamp"))
        except CodecError as e:
            raise RemoteError(f"Sync server sent malformed changes: {e}") from e
        logger.debug(
            "remote_changes_fetched",
            total=changes.total,
            skipped=len(changes.skipped),
            since=str(since),
        )
        return changes, timestamp

    async def push_changes(self, batch: dict[str, list[dict[str, Any]]]) -> PushResponse:
        """
        Send every local row; the mirror upserts them.

        Raises:
            RemoteError: On transport failure, non-2xx, or a malformed body
        """
        body = await self._request("POST", "/sync/push", json=batch)
        try:
            return PushResponse.model_validate(body)
        except ValidationError as e:
            raise RemoteError(f"Sync server sent a malformed push response: {e}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

"""HTTP client for the remote Arke snapshot and event endpoints.

Handles retries for transient failures and exposes the snapshot metadata
headers before the snapshot body is downloaded.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from ..errors import DecodeError, TransportError
from .models import RemoteEventPage, RemoteSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_SEQUENCE_HEADER = "X-Snapshot-Sequence"
ENTITY_COUNT_HEADER = "X-Entity-Count"


def _decode_json(body: bytes, what: str) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeError(f"Malformed {what} body: {e}") from e


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise DecodeError(f"Header {name} is not an integer: {value!r}") from e


class SnapshotHandle:
    """An in-flight snapshot response whose body has not been read yet."""

    def __init__(self, response: httpx.Response):
        self._response = response

    @property
    def sequence(self) -> int | None:
        """Snapshot sequence from the response headers, if the server sent it."""
        return _int_header(self._response, SNAPSHOT_SEQUENCE_HEADER)

    @property
    def entity_count(self) -> int | None:
        """Entity count from the response headers, if the server sent it."""
        return _int_header(self._response, ENTITY_COUNT_HEADER)

    async def read(self) -> RemoteSnapshot:
        """Download and decode the full snapshot body.

        Raises:
            TransportError: If the download fails.
            DecodeError: If the body is not a valid snapshot.
        """
        try:
            body = await self._response.aread()
        except httpx.HTTPError as e:
            raise TransportError(f"Snapshot download failed: {e}") from e
        return RemoteSnapshot.from_dict(_decode_json(body, "snapshot"))

    async def abort(self) -> None:
        """Close the response without downloading the rest of the body."""
        await self._response.aclose()


class ArkeClient:
    """Async client for the remote store's snapshot and event history API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        page_size: int = 100,
        retry_backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the remote API (e.g., "http://arke:3000").
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts for transient failures.
            page_size: Number of events requested per page.
            retry_backoff: Initial delay between attempts, doubled each retry.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.page_size = page_size
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ArkeClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _send(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """Send a GET request with exponential backoff retry.

        The returned response is streamed; the caller must read or close it.

        Args:
            path: URL path relative to the base URL.
            params: Optional query parameters.
            allow_not_found: Return 404 responses instead of raising.

        Raises:
            TransportError: On non-retryable statuses or when retries run out.
        """
        client = self._get_client()
        backoff = self.retry_backoff
        last_error = "no attempts made"

        for attempt in range(self.max_retries):
            request = client.build_request("GET", path, params=params)
            try:
                response = await client.send(request, stream=True)
            except httpx.ConnectError as e:
                last_error = f"Connection failed: {e}"
                logger.warning(
                    f"Connection to {self.base_url} failed, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TimeoutException:
                last_error = "Request timed out"
                logger.warning(
                    f"Request timeout for {path}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Request to {path} failed: {e}") from e
            else:
                status = response.status_code
                if status == 200 or (status == 404 and allow_not_found):
                    return response

                await response.aclose()
                if status < 500:
                    # Client error, don't retry
                    raise TransportError(f"HTTP {status} from {path}", status_code=status)

                last_error = f"HTTP {status} from {path}"
                logger.warning(
                    f"Server error {status} for {path}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise TransportError(
            f"Max retries ({self.max_retries}) exceeded for {path}: {last_error}"
        )

    @asynccontextmanager
    async def open_snapshot(self) -> AsyncIterator[SnapshotHandle | None]:
        """Start a snapshot request and yield before the body is read.

        Yields None when the remote has no snapshot yet (404). The response
        is closed on exit whether or not the body was read.
        """
        response = await self._send("/snapshot/latest", allow_not_found=True)
        try:
            if response.status_code == 404:
                logger.debug("Remote reports no snapshot")
                yield None
            else:
                yield SnapshotHandle(response)
        finally:
            await response.aclose()

    async def fetch_snapshot(self) -> RemoteSnapshot | None:
        """Fetch and decode the latest snapshot, or None if none exists."""
        async with self.open_snapshot() as handle:
            if handle is None:
                return None
            return await handle.read()

    async def fetch_events(self, page_token: str | None = None) -> RemoteEventPage:
        """Fetch one page of the event history, newest first.

        Args:
            page_token: Continuation token from the previous page, or None
                for the head of the history.

        Raises:
            TransportError: If the request fails.
            DecodeError: If the page body is malformed.
        """
        params: dict[str, Any] = {"limit": self.page_size}
        if page_token:
            params["cursor"] = page_token

        response = await self._send("/events", params=params)
        try:
            body = await response.aread()
        except httpx.HTTPError as e:
            raise TransportError(f"Event page download failed: {e}") from e
        finally:
            await response.aclose()

        return RemoteEventPage.from_dict(_decode_json(body, "event page"))

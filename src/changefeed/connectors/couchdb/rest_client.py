"""
REST client for the CouchDB / Cloudant changes API.

One HTTP request per call: no retries, no classification. Failures surface
raw so the follower can decide what to do with them:
- non-2xx -> ChangesApiError
- 2xx with a malformed body -> ResponseParseError
- network faults -> aiohttp / OSError / timeout exceptions
"""

from __future__ import annotations

import contextlib
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp
import orjson
from pydantic import ValidationError

from changefeed.connectors.couchdb.types import ClientConfig
from changefeed.connectors.errors import ChangesApiError, ResponseParseError
from changefeed.contracts.changes import ChangesResult, DatabaseInformation

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


def _query_value(value: Any) -> str:
    """Render a query parameter the way the server expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return orjson.dumps(value).decode()
    return str(value)


def _parse_retry_after(headers: Mapping[str, str]) -> int | None:
    """Parse a Retry-After header (delay-seconds or HTTP-date) into milliseconds."""
    value = headers.get("Retry-After")
    if value is None:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    with contextlib.suppress(TypeError, ValueError):
        when = parsedate_to_datetime(value)
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        # A date already passed means retry now
        return max(int((when - datetime.now(UTC)).total_seconds() * 1000), 0)
    return None


def _error_fields(body: bytes) -> tuple[str, str]:
    """Extract CouchDB's ``error`` / ``reason`` from an error body."""
    with contextlib.suppress(orjson.JSONDecodeError):
        data = orjson.loads(body)
        if isinstance(data, dict):
            return str(data.get("error", "")), str(data.get("reason", ""))
    return "", body[:200].decode(errors="replace")


class CouchRestClient:
    """
    Async client for the database endpoints the follower needs.

    Usage:
        async with CouchRestClient(ClientConfig(base_url=url)) as client:
            result = await client.post_changes("orders", {"since": "0"})
    """

    def __init__(self, config: ClientConfig | None = None) -> None:
        self._config = config or ClientConfig()
        self._session: aiohttp.ClientSession | None = None

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def timeout_ms(self) -> int:
        """Per-request timeout in milliseconds (0 = none)."""
        return self._config.request_timeout_ms

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            total = self._config.request_timeout_ms / 1000 if self._config.request_timeout_ms else None
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=total),
                headers=self._config.headers,
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> CouchRestClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _url(self, db: str, path: str = "") -> str:
        return f"{self._config.base_url}/{quote(db, safe='')}{path}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Make exactly one HTTP request and decode the JSON body.

        Raises:
            ChangesApiError: On a non-2xx response.
            ResponseParseError: If the body is not JSON.
            aiohttp.ClientError: On network errors.
        """
        query = {k: _query_value(v) for k, v in (params or {}).items() if v is not None}
        data = orjson.dumps(body) if body is not None else None
        headers = {"Content-Type": "application/json"} if data is not None else None

        session = await self._get_session()
        async with session.request(method, url, params=query, data=data, headers=headers) as response:
            raw = await response.read()

            if not 200 <= response.status < 300:
                error, reason = _error_fields(raw)
                retry_after_ms = _parse_retry_after(response.headers)
                logger.warning(
                    "HTTP error",
                    extra={
                        "status": response.status,
                        "error": error,
                        "retry_after_ms": retry_after_ms,
                    },
                )
                raise ChangesApiError(
                    response.status,
                    error=error,
                    reason=reason,
                    retry_after_ms=retry_after_ms,
                )

            try:
                return orjson.loads(raw)
            except orjson.JSONDecodeError as e:
                raise ResponseParseError(
                    f"Error processing HTTP response: {e}",
                    body=raw.decode(errors="replace"),
                ) from e

    async def post_changes(
        self,
        db: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> ChangesResult:
        """
        Fetch one page of the changes feed.

        Args:
            db: Database name.
            params: Query parameters (since, limit, feed, timeout, ...).
            body: JSON body (selector, doc_ids, fields).

        Returns:
            Parsed ChangesResult.
        """
        data = await self._request("POST", self._url(db, "/_changes"), params=params, body=body or {})
        try:
            result = ChangesResult.model_validate(data)
        except ValidationError as e:
            raise ResponseParseError(f"Invalid changes response: {e.error_count()} errors") from e

        logger.debug(
            "Fetched changes",
            extra={"db": db, "count": len(result.results), "pending": result.pending},
        )
        return result

    async def get_database_information(self, db: str) -> DatabaseInformation:
        """Fetch database information (doc count and sizes)."""
        data = await self._request("GET", self._url(db))
        try:
            return DatabaseInformation.model_validate(data)
        except ValidationError as e:
            raise ResponseParseError(f"Invalid database information: {e.error_count()} errors") from e

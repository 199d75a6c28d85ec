"""Tests for the changes API REST client."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import orjson
import pytest

from changefeed.connectors.couchdb import ClientConfig, CouchRestClient
from changefeed.connectors.errors import ChangesApiError, ResponseParseError

CHANGES_BODY = {
    "results": [
        {"seq": "1-a", "id": "doc1", "changes": [{"rev": "1-x"}]},
        {"seq": "2-b", "id": "doc2", "changes": [{"rev": "3-y"}], "deleted": True},
    ],
    "last_seq": "2-b",
    "pending": 0,
}


class TestClientConfig:
    """Tests for ClientConfig."""

    def test_defaults(self) -> None:
        config = ClientConfig()
        assert config.base_url == "http://localhost:5984"
        assert config.request_timeout_ms == 120_000

    def test_strips_trailing_slash(self) -> None:
        assert ClientConfig(base_url="http://db:5984/").base_url == "http://db:5984"

    def test_empty_url_rejected(self) -> None:
        with pytest.raises(ValueError, match="base_url"):
            ClientConfig(base_url="")

    def test_negative_timeout_rejected(self) -> None:
        with pytest.raises(ValueError, match="request_timeout_ms"):
            ClientConfig(request_timeout_ms=-1)


class TestCouchRestClient:
    """Tests for CouchRestClient."""

    @pytest.fixture
    def client(self) -> CouchRestClient:
        return CouchRestClient(ClientConfig(base_url="http://db.example:5984"))

    @pytest.fixture
    def mock_response(self) -> MagicMock:
        """Create mock aiohttp response."""
        response = MagicMock()
        response.status = 200
        response.headers = {}
        response.read = AsyncMock(return_value=orjson.dumps(CHANGES_BODY))
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=None)
        return response

    def test_timeout_ms(self, client: CouchRestClient) -> None:
        assert client.timeout_ms == 120_000

    @pytest.mark.asyncio
    async def test_post_changes_success(self, client: CouchRestClient, mock_response: MagicMock) -> None:
        with patch.object(aiohttp.ClientSession, "request", return_value=mock_response) as request:
            result = await client.post_changes(
                "orders",
                {"since": "0", "limit": 10, "feed": "normal", "include_docs": True, "view": None},
                {"selector": {"type": "order"}},
            )

        assert [r.id for r in result.results] == ["doc1", "doc2"]
        assert result.results[1].deleted is True
        assert result.last_seq == "2-b"

        args, kwargs = request.call_args
        assert args == ("POST", "http://db.example:5984/orders/_changes")
        assert kwargs["params"] == {"since": "0", "limit": "10", "feed": "normal", "include_docs": "true"}
        assert orjson.loads(kwargs["data"]) == {"selector": {"type": "order"}}

        await client.close()

    @pytest.mark.asyncio
    async def test_post_changes_with_seq_interval(self, client: CouchRestClient, mock_response: MagicMock) -> None:
        mock_response.read = AsyncMock(
            return_value=orjson.dumps(
                {
                    "results": [
                        {"seq": None, "id": "doc1", "changes": [{"rev": "1-x"}]},
                        {"seq": "2-b", "id": "doc2", "changes": [{"rev": "1-y"}]},
                    ],
                    "last_seq": "2-b",
                    "pending": 0,
                }
            )
        )

        with patch.object(aiohttp.ClientSession, "request", return_value=mock_response) as request:
            result = await client.post_changes("orders", {"since": "0", "limit": 10, "seq_interval": 2})

        assert [r.seq for r in result.results] == [None, "2-b"]
        assert result.last_seq == "2-b"
        assert request.call_args.kwargs["params"]["seq_interval"] == "2"
        await client.close()

    @pytest.mark.asyncio
    async def test_db_name_is_quoted(self, client: CouchRestClient, mock_response: MagicMock) -> None:
        with patch.object(aiohttp.ClientSession, "request", return_value=mock_response) as request:
            await client.post_changes("team/orders")

        assert request.call_args.args[1] == "http://db.example:5984/team%2Forders/_changes"
        await client.close()

    @pytest.mark.asyncio
    async def test_error_response_raises_api_error(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.status = 404
        mock_response.read = AsyncMock(
            return_value=b'{"error":"not_found","reason":"Database does not exist."}'
        )

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ChangesApiError) as exc_info,
        ):
            await client.post_changes("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.error == "not_found"
        assert exc_info.value.reason == "Database does not exist."
        assert exc_info.value.retryable is False
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limited_carries_retry_after(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.status = 429
        mock_response.headers = {"Retry-After": "3"}
        mock_response.read = AsyncMock(return_value=b"Too Many Requests")

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ChangesApiError) as exc_info,
        ):
            await client.post_changes("orders")

        assert exc_info.value.retry_after_ms == 3000
        assert exc_info.value.reason == "Too Many Requests"
        assert exc_info.value.retryable is True
        await client.close()

    @pytest.mark.parametrize(
        ("offset", "low", "high"),
        [
            (timedelta(seconds=30), 25_000, 30_000),
            (timedelta(seconds=-30), 0, 0),
        ],
    )
    @pytest.mark.asyncio
    async def test_retry_after_http_date(
        self,
        client: CouchRestClient,
        mock_response: MagicMock,
        offset: timedelta,
        low: int,
        high: int,
    ) -> None:
        mock_response.status = 503
        mock_response.headers = {"Retry-After": format_datetime(datetime.now(UTC) + offset, usegmt=True)}
        mock_response.read = AsyncMock(return_value=b"Service Unavailable")

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ChangesApiError) as exc_info,
        ):
            await client.post_changes("orders")

        assert exc_info.value.retry_after_ms is not None
        assert low <= exc_info.value.retry_after_ms <= high
        await client.close()

    @pytest.mark.asyncio
    async def test_unparseable_retry_after_ignored(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.status = 503
        mock_response.headers = {"Retry-After": "soon"}
        mock_response.read = AsyncMock(return_value=b"Service Unavailable")

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ChangesApiError) as exc_info,
        ):
            await client.post_changes("orders")

        assert exc_info.value.retry_after_ms is None
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_json_raises_parse_error(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.read = AsyncMock(return_value=b'{"results": [')

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ResponseParseError),
        ):
            await client.post_changes("orders")
        await client.close()

    @pytest.mark.asyncio
    async def test_invalid_schema_raises_parse_error(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.read = AsyncMock(return_value=b'{"results": "nope"}')

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response),
            pytest.raises(ResponseParseError, match="Invalid changes response"),
        ):
            await client.post_changes("orders")
        await client.close()

    @pytest.mark.asyncio
    async def test_network_error_surfaces_raw(self, client: CouchRestClient) -> None:
        with (
            patch.object(
                aiohttp.ClientSession,
                "request",
                side_effect=aiohttp.ServerDisconnectedError(),
            ),
            pytest.raises(aiohttp.ServerDisconnectedError),
        ):
            await client.post_changes("orders")
        await client.close()

    @pytest.mark.asyncio
    async def test_one_request_per_call(self, client: CouchRestClient, mock_response: MagicMock) -> None:
        mock_response.status = 503
        mock_response.read = AsyncMock(return_value=b"{}")

        with (
            patch.object(aiohttp.ClientSession, "request", return_value=mock_response) as request,
            pytest.raises(ChangesApiError),
        ):
            await client.post_changes("orders")

        assert request.call_count == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_get_database_information(
        self, client: CouchRestClient, mock_response: MagicMock
    ) -> None:
        mock_response.read = AsyncMock(
            return_value=orjson.dumps(
                {"db_name": "orders", "doc_count": 4, "sizes": {"external": 4000}}
            )
        )

        with patch.object(aiohttp.ClientSession, "request", return_value=mock_response) as request:
            info = await client.get_database_information("orders")

        assert info.doc_count == 4
        assert info.sizes.external == 4000
        assert request.call_args.args == ("GET", "http://db.example:5984/orders")
        await client.close()

    @pytest.mark.asyncio
    async def test_async_context_manager_closes_session(self) -> None:
        async with CouchRestClient() as client:
            session = await client._get_session()
        assert session.closed

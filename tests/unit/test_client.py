"""Unit tests for shared HTTP client construction."""

from unittest.mock import MagicMock

import httpx
import pytest

from goupdate import __version__
from goupdate.client import DEFAULT_TIMEOUTS, USER_AGENT, HTTPTimeouts, create_http_client


class TestHTTPTimeouts:
    """Tests for the HTTPTimeouts value object."""

    def test_defaults(self):
        assert DEFAULT_TIMEOUTS.connect == 5.0
        assert DEFAULT_TIMEOUTS.read == 10.0
        assert DEFAULT_TIMEOUTS.write == 10.0
        assert DEFAULT_TIMEOUTS.pool == 5.0
        assert DEFAULT_TIMEOUTS.request == 30.0
        assert DEFAULT_TIMEOUTS.max_connections == 100
        assert DEFAULT_TIMEOUTS.max_keepalive_connections == 10
        assert DEFAULT_TIMEOUTS.keepalive_expiry == 90.0

    def test_from_settings(self):
        settings = MagicMock()
        settings.http_connect_timeout = 1.0
        settings.http_read_timeout = 2.0
        settings.http_write_timeout = 3.0
        settings.http_pool_timeout = 4.0
        settings.http_request_timeout = 20.0
        settings.http_keepalive_expiry = 15.0
        settings.http_max_connections = 8
        settings.http_max_keepalive_connections = 2

        timeouts = HTTPTimeouts.from_settings(settings)

        assert timeouts == HTTPTimeouts(
            connect=1.0,
            read=2.0,
            write=3.0,
            pool=4.0,
            request=20.0,
            keepalive_expiry=15.0,
            max_connections=8,
            max_keepalive_connections=2,
        )


class TestCreateHttpClient:
    """Tests for create_http_client."""

    @pytest.mark.asyncio
    async def test_client_timeouts(self):
        async with create_http_client(HTTPTimeouts(connect=1.0, read=2.0, write=3.0)) as client:
            assert client.timeout.connect == 1.0
            assert client.timeout.read == 2.0
            assert client.timeout.write == 3.0
            assert client.timeout.pool == 5.0

    @pytest.mark.asyncio
    async def test_follows_redirects(self):
        async with create_http_client() as client:
            assert client.follow_redirects is True

    @pytest.mark.asyncio
    async def test_user_agent_header(self):
        async with create_http_client() as client:
            assert client.headers["User-Agent"] == USER_AGENT
        assert USER_AGENT == f"goupdate/{__version__}"

    @pytest.mark.asyncio
    async def test_injected_transport_is_used(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/old":
                return httpx.Response(302, headers={"Location": "https://example.test/new"})
            return httpx.Response(200, text="ok")

        async with create_http_client(transport=httpx.MockTransport(handler)) as client:
            response = await client.get("https://example.test/old")

        assert response.text == "ok"
        assert [r.url.path for r in seen] == ["/old", "/new"]
        assert seen[0].headers["User-Agent"] == USER_AGENT

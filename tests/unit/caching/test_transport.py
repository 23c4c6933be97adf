"""
Transport unit tests

Covers header parsing, body draining, the connectivity probe, the global
fetch pool and the aiohttp transport against a local aiohttp server.
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web
from aiohttp import test_utils

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
from fixtures.fake_transport import PNG_BYTES, make_response, stalled_stream

from imgcache.caching.errors import ConnectivityError
from imgcache.caching.transport import (
    DEFAULT_VALIDITY,
    AiohttpTransport,
    GlobalFetchPool,
    TransportResponse,
    dns_probe,
    extension_for,
    get_global_pool,
    parse_valid_till,
    reset_global_pool,
)


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestParseValidTill:
    """Server freshness parsing"""

    def test_max_age(self):
        assert parse_valid_till({"cache-control": "public, max-age=3600"}, NOW) == NOW + timedelta(hours=1)

    @pytest.mark.parametrize("directive", ["no-cache", "no-store", "private, no-cache"])
    def test_no_cache_means_immediately_stale(self, directive):
        assert parse_valid_till({"cache-control": directive}, NOW) == NOW

    def test_expires(self):
        headers = {"expires": "Sat, 08 Jun 2024 12:00:00 GMT"}
        assert parse_valid_till(headers, NOW) == datetime(2024, 6, 8, 12, 0, tzinfo=timezone.utc)

    def test_max_age_wins_over_expires(self):
        headers = {"cache-control": "max-age=60", "expires": "Sat, 08 Jun 2024 12:00:00 GMT"}
        assert parse_valid_till(headers, NOW) == NOW + timedelta(seconds=60)

    def test_invalid_expires(self):
        assert parse_valid_till({"expires": "0"}, NOW) == NOW

    def test_default_validity(self):
        assert parse_valid_till({}, NOW) == NOW + DEFAULT_VALIDITY


class TestExtensionFor:
    """Content-Type to extension"""

    @pytest.mark.parametrize("content_type,expected", [
        ("image/jpeg", ".jpg"),
        ("image/png", ".png"),
        ("image/webp", ".webp"),
        ("text/html; charset=utf-8", ".html"),
        ("application/json", ".json"),
    ])
    def test_known_types(self, content_type, expected):
        assert extension_for(content_type) == expected

    def test_falls_back_to_url_suffix(self):
        assert extension_for(None, "https://x/a/photo.WEBP?w=1") == ".webp"

    def test_nothing_known(self):
        assert extension_for(None, "https://x/a/photo") == ""


class TestTransportResponse:
    """Header derived fields and draining"""

    def test_from_headers(self):
        response = TransportResponse.from_headers(
            url="https://x/a",
            status_code=200,
            headers={"ETag": '"abc"', "Content-Length": "12", "Content-Type": "image/gif", "Cache-Control": "max-age=10"},
            content=stalled_stream(),
            now=NOW,
        )
        assert response.headers["etag"] == '"abc"'
        assert response.e_tag == '"abc"'
        assert response.content_length == 12
        assert response.file_extension == ".gif"
        assert response.valid_till == NOW + timedelta(seconds=10)

    @pytest.mark.asyncio
    async def test_drain_consumes_and_releases(self):
        release = AsyncMock()
        response = make_response(body=[b"a", b"b"])
        response.release = release

        await response.drain()

        release.assert_awaited_once()
        assert [chunk async for chunk in response.content] == []

    @pytest.mark.asyncio
    async def test_drain_is_bounded(self):
        release = AsyncMock()
        response = make_response(content=stalled_stream())
        response.release = release

        await asyncio.wait_for(response.drain(timeout=0.05), 1.0)

        release.assert_awaited_once()


class TestDnsProbe:
    """Connectivity probe"""

    @pytest.mark.asyncio
    async def test_resolvable_host(self):
        loop = asyncio.get_running_loop()
        with patch.object(loop, "getaddrinfo", AsyncMock(return_value=[("addr",)])):
            await dns_probe("cdn.example.com")

    @pytest.mark.asyncio
    async def test_resolution_failure(self):
        loop = asyncio.get_running_loop()
        with patch.object(loop, "getaddrinfo", AsyncMock(side_effect=OSError("no route"))):
            with pytest.raises(ConnectivityError) as exc_info:
                await dns_probe("cdn.example.com")
        assert exc_info.value.host == "cdn.example.com"

    @pytest.mark.asyncio
    async def test_empty_result(self):
        loop = asyncio.get_running_loop()
        with patch.object(loop, "getaddrinfo", AsyncMock(return_value=[])):
            with pytest.raises(ConnectivityError, match="no addresses"):
                await dns_probe("cdn.example.com")


class TestGlobalFetchPool:
    """Process-wide download slots"""

    @pytest.mark.asyncio
    async def test_capacity_is_enforced(self):
        pool = GlobalFetchPool(capacity=2)
        peak = 0

        async def download():
            nonlocal peak
            async with pool.slot():
                peak = max(peak, pool.in_flight)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(download() for _ in range(8)))

        assert peak == 2
        assert pool.in_flight == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            GlobalFetchPool(capacity=0)

    def test_global_pool_singleton(self):
        pool = reset_global_pool(3)
        assert get_global_pool() is pool
        assert get_global_pool(10).capacity == 3
        assert reset_global_pool(6) is not pool


class TestAiohttpTransport:
    """Real aiohttp transport against a local server"""

    @staticmethod
    async def _start_server():
        async def image(request):
            return web.Response(
                body=PNG_BYTES,
                content_type="image/png",
                headers={"ETag": '"v1"', "Cache-Control": "max-age=120"},
            )

        async def echo_agent(request):
            return web.Response(text=request.headers.get("User-Agent", ""))

        app = web.Application()
        app.router.add_get("/a.png", image)
        app.router.add_get("/agent", echo_agent)
        server = test_utils.TestServer(app)
        await server.start_server()
        return server

    @pytest.mark.asyncio
    async def test_streams_body_and_parses_headers(self):
        server = await self._start_server()
        transport = AiohttpTransport()
        try:
            response = await transport.request(str(server.make_url("/a.png")), {})
            body = b"".join([chunk async for chunk in response.content])
        finally:
            await transport.close()
            await server.close()

        assert response.status_code == 200
        assert response.e_tag == '"v1"'
        assert response.file_extension == ".png"
        assert body == PNG_BYTES

    @pytest.mark.asyncio
    async def test_not_found_and_request_headers(self):
        server = await self._start_server()
        transport = AiohttpTransport()
        try:
            missing = await transport.request(str(server.make_url("/missing.png")), {})
            await missing.drain()
            agent = await transport.request(str(server.make_url("/agent")), {"User-Agent": "imgcache-test"})
            text = b"".join([chunk async for chunk in agent.content])
        finally:
            await transport.close()
            await server.close()

        assert missing.status_code == 404
        assert text == b"imgcache-test"

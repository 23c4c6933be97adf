"""
HTTP Transport
Raw network access for the resilient fetch layer

- TransportResponse: status, headers and a streamed body, before any policy
- BaseTransport / AiohttpTransport: one shared aiohttp session (TCP keep-alive
  saves DNS + TCP + TLS round trips per image)
- dns_probe: resolves the target host before a retry
- GlobalFetchPool: process-wide cap on simultaneous downloads across all buckets
"""

import asyncio
import mimetypes
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from pathlib import PurePosixPath
from typing import AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlsplit

import aiohttp
from loguru import logger

from imgcache.caching.errors import ConnectivityError


DEFAULT_VALIDITY = timedelta(days=7)
CHUNK_SIZE = 64 * 1024

_MAX_AGE = re.compile(r"max-age\s*=\s*(\d+)", re.IGNORECASE)

_MIME_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/avif": ".avif",
    "image/heic": ".heic",
    "image/bmp": ".bmp",
    "image/svg+xml": ".svg",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "text/html": ".html",
    "application/xhtml+xml": ".html",
    "application/json": ".json",
    "text/json": ".json",
    "text/plain": ".txt",
    "text/xml": ".xml",
    "application/xml": ".xml",
}

DnsProbe = Callable[[str], Awaitable[None]]


async def _empty_stream() -> AsyncIterator[bytes]:
    return
    yield  # pragma: no cover


async def _noop_release() -> None:
    return None


@dataclass
class TransportResponse:
    """A raw HTTP response whose body has not been consumed yet."""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)  # lower-cased names
    content: AsyncIterator[bytes] = field(default_factory=_empty_stream)
    content_length: Optional[int] = None
    e_tag: Optional[str] = None
    valid_till: datetime = field(default_factory=lambda: datetime.now(timezone.utc) + DEFAULT_VALIDITY)
    file_extension: str = ""
    release: Callable[[], Awaitable[None]] = _noop_release

    @classmethod
    def from_headers(
        cls,
        url: str,
        status_code: int,
        headers: Mapping[str, str],
        content: AsyncIterator[bytes],
        release: Callable[[], Awaitable[None]] = _noop_release,
        now: Optional[datetime] = None,
    ) -> "TransportResponse":
        """Derive freshness, eTag, length and extension from response headers."""
        lowered = {k.lower(): v for k, v in headers.items()}
        now = now or datetime.now(timezone.utc)

        length = lowered.get("content-length")
        return cls(
            status_code=status_code,
            headers=lowered,
            content=content,
            content_length=int(length) if length and length.isdigit() else None,
            e_tag=lowered.get("etag"),
            valid_till=parse_valid_till(lowered, now),
            file_extension=extension_for(lowered.get("content-type"), url),
            release=release,
        )

    async def drain(self, timeout: float = 5.0) -> None:
        """Consume and discard the body (best effort, bounded)."""
        async def _consume():
            async for _ in self.content:
                pass

        try:
            await asyncio.wait_for(_consume(), timeout)
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            logger.debug(f"Ignoring drain error: {e!r}")
        finally:
            await self.release()


def parse_valid_till(headers: Mapping[str, str], now: datetime) -> datetime:
    """Server freshness: Cache-Control max-age, then Expires, then 7 days."""
    cache_control = headers.get("cache-control", "")
    if cache_control:
        directives = cache_control.lower()
        if "no-cache" in directives or "no-store" in directives:
            return now
        match = _MAX_AGE.search(cache_control)
        if match:
            return now + timedelta(seconds=int(match.group(1)))

    expires = headers.get("expires")
    if expires:
        try:
            parsed = parsedate_to_datetime(expires)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except (TypeError, ValueError):
            return now

    return now + DEFAULT_VALIDITY


def extension_for(content_type: Optional[str], url: str = "") -> str:
    """Map a Content-Type to a dotted file extension; fall back to the URL suffix."""
    if content_type:
        mime = content_type.split(";", 1)[0].strip().lower()
        if mime in _MIME_EXTENSIONS:
            return _MIME_EXTENSIONS[mime]
        guessed = mimetypes.guess_extension(mime)
        if guessed:
            return guessed

    try:
        return PurePosixPath(urlsplit(url).path).suffix.lower()
    except ValueError:
        return ""


class BaseTransport(ABC):
    """Issues a single GET and returns headers plus a lazy body."""

    @abstractmethod
    async def request(self, url: str, headers: Mapping[str, str]) -> TransportResponse:
        """Perform the GET; the body is streamed by the returned response."""

    async def close(self) -> None:
        """Release pooled connections."""


class AiohttpTransport(BaseTransport):
    """
    aiohttp transport sharing one ClientSession.

    The session is created lazily inside the running loop. No total timeout
    is set on the session: per-attempt timeouts and the stream watchdog
    bound every request instead.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = 10.0,
        limit_per_host: int = 0,
    ):
        self._session = session
        self._owns_session = session is None
        self._connect_timeout = connect_timeout
        self._limit_per_host = limit_per_host

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout),
                connector=aiohttp.TCPConnector(limit_per_host=self._limit_per_host),
                auto_decompress=True,
            )
            self._owns_session = True
        return self._session

    async def request(self, url: str, headers: Mapping[str, str]) -> TransportResponse:
        session = await self._get_session()
        response = await session.get(url, headers=dict(headers), allow_redirects=True)

        async def _content() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    yield chunk
            finally:
                response.release()

        async def _release() -> None:
            response.release()

        return TransportResponse.from_headers(
            url=url,
            status_code=response.status,
            headers=response.headers,
            content=_content(),
            release=_release,
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.debug("Closed aiohttp session")
        self._session = None


async def dns_probe(host: str, timeout: float = 4.0) -> None:
    """
    Resolve the target host; raise ConnectivityError when unreachable.

    Probing the actual target (not a well-known site) proves the route
    is open even in regions where popular hosts are blocked.
    """
    loop = asyncio.get_running_loop()
    try:
        result = await asyncio.wait_for(loop.getaddrinfo(host, None), timeout)
    except (OSError, asyncio.TimeoutError) as e:
        raise ConnectivityError(host) from e

    if not result:
        raise ConnectivityError(host, "DNS returned no addresses")


class GlobalFetchPool:
    """
    Bounded pool of download slots shared by every bucket.

    Without it, avatar + feed + thumbnail buckets add up to 14+ concurrent
    downloads and starve each other on a 2G link.
    """

    def __init__(self, capacity: int = 6):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @asynccontextmanager
    async def slot(self):
        """Hold one download slot for the duration of the block."""
        async with self._semaphore:
            self._in_flight += 1
            try:
                yield
            finally:
                self._in_flight -= 1


# Process-wide pool
_global_pool: Optional[GlobalFetchPool] = None


def get_global_pool(capacity: int = 6) -> GlobalFetchPool:
    """
    Get or create the process-wide fetch pool.

    Args:
        capacity: Only used on first call
    """
    global _global_pool

    if _global_pool is None:
        _global_pool = GlobalFetchPool(capacity)

    return _global_pool


def reset_global_pool(capacity: int = 6) -> GlobalFetchPool:
    """Replace the process-wide pool (tests, reconfiguration)."""
    global _global_pool
    _global_pool = GlobalFetchPool(capacity)
    return _global_pool

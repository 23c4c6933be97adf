"""
Fetch Responses
The two response variants returned by ResilientFetcher

- ResilientResponse: a real network response wrapped with
    1. a stream watchdog (kills connections that stall at zero bytes)
    2. content sniffing (rejects captive portal pages disguised as 200 OK)
    3. freshness clamping (valid_till forced into [min_fresh, max_fresh])
- SyntheticStaleResponse: a "304 Not Modified" standing in for a network
  response when a revalidation cannot complete (stale-if-error)

Both implement FetchResponse. Bodies are single-consumption async iterators.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from imgcache.caching.errors import CaptivePortalError, StreamStallError
from imgcache.caching.transport import TransportResponse


HTTP_OK = 200
HTTP_NOT_MODIFIED = 304

_WHITESPACE = b" \t\r\n"
_SIGNATURES = {
    b"<": "HTML signature",
    b"{": "JSON signature",
    b"[": "JSON array signature",
}


class FetchResponse(ABC):
    """Capability interface consumed by the storage manager."""

    @property
    @abstractmethod
    def status_code(self) -> int: ...

    @property
    @abstractmethod
    def content(self) -> AsyncIterator[bytes]: ...

    @property
    @abstractmethod
    def valid_till(self) -> datetime: ...

    @property
    @abstractmethod
    def e_tag(self) -> Optional[str]: ...

    @property
    @abstractmethod
    def content_length(self) -> Optional[int]: ...

    @property
    @abstractmethod
    def file_extension(self) -> str: ...

    @property
    def is_synthetic(self) -> bool:
        return False

    async def read(self) -> bytes:
        """Consume the whole body."""
        chunks = []
        async for chunk in self.content:
            chunks.append(chunk)
        return b"".join(chunks)


async def watch_stream(
    stream: AsyncIterator[bytes],
    timeout: float,
    on_stall: Optional[Callable[[StreamStallError], None]] = None,
) -> AsyncIterator[bytes]:
    """Fail with StreamStallError if no chunk arrives within ``timeout`` seconds."""
    iterator = stream.__aiter__()

    async def _next() -> bytes:
        return await iterator.__anext__()

    try:
        while True:
            try:
                chunk = await asyncio.wait_for(_next(), timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                error = StreamStallError(timeout)
                if on_stall is not None:
                    on_stall(error)
                raise error from e
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def sniff_stream(
    stream: AsyncIterator[bytes],
    on_detected: Optional[Callable[[str], None]] = None,
) -> AsyncIterator[bytes]:
    """
    Inspect the first non-whitespace byte once.

    ``<``, ``{`` and ``[`` mean an HTML/JSON page arrived where image bytes
    were expected. Leading whitespace-only chunks are held back until the
    verdict, so nothing reaches the consumer before detection.
    """
    checked = False
    held = []

    try:
        async for chunk in stream:
            if not checked:
                if not chunk:
                    continue
                stripped = chunk.lstrip(_WHITESPACE)
                if not stripped:
                    held.append(chunk)
                    continue

                label = _SIGNATURES.get(stripped[:1])
                if label is not None:
                    if on_detected is not None:
                        on_detected(label)
                    raise CaptivePortalError(f"Captive portal detected ({label} in content)")

                checked = True
                for pending in held:
                    yield pending
                held.clear()

            yield chunk

        for pending in held:
            yield pending
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()


class ResilientResponse(FetchResponse):
    """A real network response with watchdog, sniffing and clamped freshness."""

    def __init__(
        self,
        inner: TransportResponse,
        stream_timeout: timedelta,
        min_fresh: timedelta,
        max_fresh: timedelta,
        sniff: bool = True,
        on_captive_portal: Optional[Callable[[str], None]] = None,
        on_stall: Optional[Callable[[StreamStallError], None]] = None,
        received_at: Optional[datetime] = None,
    ):
        self._inner = inner
        self._stream_timeout = stream_timeout
        self._min_fresh = min_fresh
        self._max_fresh = max_fresh
        self._sniff = sniff
        self._on_captive_portal = on_captive_portal
        self._on_stall = on_stall
        self._received_at = received_at or datetime.now(timezone.utc)

    @property
    def status_code(self) -> int:
        return self._inner.status_code

    @property
    def content_length(self) -> Optional[int]:
        return self._inner.content_length

    @property
    def e_tag(self) -> Optional[str]:
        return self._inner.e_tag

    @property
    def file_extension(self) -> str:
        return self._inner.file_extension

    @property
    def received_at(self) -> datetime:
        return self._received_at

    @property
    def content(self) -> AsyncIterator[bytes]:
        stream = watch_stream(self._inner.content, self._stream_timeout.total_seconds(), self._on_stall)
        if self._sniff and 200 <= self.status_code < 300:
            stream = sniff_stream(stream, self._on_captive_portal)
        return stream

    @property
    def valid_till(self) -> datetime:
        """Server freshness clamped to [received_at + min_fresh, received_at + max_fresh]."""
        lower = self._received_at + self._min_fresh
        upper = self._received_at + self._max_fresh
        server = self._inner.valid_till
        if server < lower:
            return lower
        if server > upper:
            return upper
        return server

    async def release(self) -> None:
        await self._inner.release()


class SyntheticStaleResponse(FetchResponse):
    """Synthetic 304: keep serving the cached copy until ``valid_till``."""

    def __init__(self, valid_till: datetime, e_tag: Optional[str] = None):
        self._valid_till = valid_till
        self._e_tag = e_tag

    @property
    def status_code(self) -> int:
        return HTTP_NOT_MODIFIED

    @property
    def content(self) -> AsyncIterator[bytes]:
        async def _empty() -> AsyncIterator[bytes]:
            return
            yield  # pragma: no cover
        return _empty()

    @property
    def valid_till(self) -> datetime:
        return self._valid_till

    @property
    def e_tag(self) -> Optional[str]:
        return self._e_tag

    @property
    def content_length(self) -> Optional[int]:
        return 0

    @property
    def file_extension(self) -> str:
        return ""

    @property
    def is_synthetic(self) -> bool:
        return True

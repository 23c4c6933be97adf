"""
Fake HTTP transport for network-free unit testing.
Replays a script of responses/exceptions and records every request.
"""

import asyncio
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from imgcache.caching.transport import BaseTransport, TransportResponse


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 28


async def chunk_stream(chunks: Sequence[bytes], delay: float = 0.0) -> AsyncIterator[bytes]:
    """Yield chunks, optionally sleeping before each one."""
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


async def stalled_stream() -> AsyncIterator[bytes]:
    """A body that never delivers a byte."""
    await asyncio.sleep(3600)
    yield b""  # pragma: no cover


def make_response(
    status_code: int = 200,
    body: Union[bytes, Sequence[bytes]] = PNG_BYTES,
    headers: Optional[Mapping[str, str]] = None,
    url: str = "https://cdn.example.com/a.png",
    content: Optional[AsyncIterator[bytes]] = None,
) -> TransportResponse:
    """Build a TransportResponse the way the real transport does."""
    chunks = [body] if isinstance(body, bytes) else list(body)
    all_headers = {"Content-Type": "image/png"}
    all_headers.update(headers or {})
    return TransportResponse.from_headers(
        url=url,
        status_code=status_code,
        headers=all_headers,
        content=content if content is not None else chunk_stream(chunks),
    )


ScriptItem = Union[TransportResponse, BaseException, Callable[[], TransportResponse]]


class FakeTransport(BaseTransport):
    """
    Scripted transport.

    Each request pops the next item: a TransportResponse is returned, an
    exception is raised, a callable is invoked for a fresh response. When
    the script runs out the last item repeats (use a callable for a
    response that must be served more than once).
    """

    def __init__(self, script: Optional[List[ScriptItem]] = None, delay: float = 0.0):
        self.script: List[ScriptItem] = list(script or [])
        self.delay = delay
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.closed = False
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, *items: ScriptItem) -> "FakeTransport":
        self.script.extend(items)
        return self

    async def request(self, url: str, headers: Mapping[str, str]) -> TransportResponse:
        self.calls.append((url, dict(headers)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if not self.script:
            raise AssertionError(f"FakeTransport has no scripted response for {url}")
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]

        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item()
        return item

    async def close(self) -> None:
        self.closed = True

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def last_headers(self) -> Dict[str, str]:
        return self.calls[-1][1]


class FakeProbe:
    """Connectivity probe that records hosts and optionally fails."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.hosts: List[str] = []

    async def __call__(self, host: str) -> None:
        self.hosts.append(host)
        if self.fail:
            raise OSError(f"Name or service not known: {host}")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(seconds: float) -> None:
    """Backoff sleeper that returns immediately."""
    return None


def respond(*args, **kwargs) -> Callable[[], TransportResponse]:
    """Response factory; each request gets an unconsumed body."""
    return lambda: make_response(*args, **kwargs)

"""
Test fixtures for imgcache unit tests.
Provides a scripted transport, a fake probe and a manual clock.
"""

from .fake_transport import (
    JPEG_BYTES,
    PNG_BYTES,
    FakeClock,
    FakeProbe,
    FakeTransport,
    chunk_stream,
    make_response,
    no_sleep,
    respond,
    stalled_stream,
)

__all__ = [
    "JPEG_BYTES",
    "PNG_BYTES",
    "FakeClock",
    "FakeProbe",
    "FakeTransport",
    "chunk_stream",
    "make_response",
    "no_sleep",
    "respond",
    "stalled_stream",
]

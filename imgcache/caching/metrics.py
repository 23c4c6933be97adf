"""
Cache Metrics
Observation events emitted by the fetch layer

Sinks are purely observational: a failing sink is logged and ignored,
never allowed to change control flow.
"""

import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional
from urllib.parse import urlsplit

from loguru import logger


class MetricEventType(str, Enum):
    """Types of cache metric events."""
    FETCH_STARTED = "fetch_started"
    FETCH_SUCCEEDED = "fetch_succeeded"
    FETCH_FAILED = "fetch_failed"
    RETRY_ATTEMPT = "retry_attempt"
    CIRCUIT_BREAKER_TRIPPED = "circuit_breaker_tripped"
    STALE_IF_ERROR_SERVED = "stale_if_error_served"
    CAPTIVE_PORTAL_DETECTED = "captive_portal_detected"


@dataclass(frozen=True)
class MetricEvent:
    """A single read-only observation."""
    kind: MetricEventType
    url: str
    host: Optional[str] = None
    status_code: Optional[int] = None
    attempt_number: Optional[int] = None  # 0-indexed
    duration: Optional[float] = None  # seconds
    error_message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def __str__(self) -> str:
        return (
            f"MetricEvent({self.kind.value}, url={self.url}, "
            f"status={self.status_code}, attempt={self.attempt_number})"
        )


MetricsSink = Callable[[MetricEvent], None]


def emit(sink: Optional[MetricsSink], event: MetricEvent) -> None:
    """Deliver an event to a sink, isolating sink failures."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.warning(f"Metrics sink failed on {event.kind.value}: {e}")


def fan_out(*sinks: Optional[MetricsSink]) -> MetricsSink:
    """Combine several sinks into one."""
    active = [s for s in sinks if s is not None]

    def _sink(event: MetricEvent) -> None:
        for s in active:
            emit(s, event)

    return _sink


def shorten_url(url: str) -> str:
    """Keep host + last path segment for log lines."""
    try:
        parts = urlsplit(url)
        segments = [s for s in parts.path.split("/") if s]
        last = segments[-1] if segments else ""
        return f"{parts.hostname or ''}/.../{last}"
    except ValueError:
        return url[:50] + "..." if len(url) > 50 else url


def log_metrics_sink(event: MetricEvent) -> None:
    """Render metric events through loguru (fetch_started is too noisy)."""
    short = shorten_url(event.url)
    kind = event.kind

    if kind == MetricEventType.FETCH_SUCCEEDED:
        duration = f"{event.duration:.2f}s" if event.duration is not None else "?"
        logger.debug(f"[ImageCache] {short} loaded in {duration}")
    elif kind == MetricEventType.FETCH_FAILED:
        logger.warning(f"[ImageCache] {short} failed: {event.error_message or event.status_code}")
    elif kind == MetricEventType.RETRY_ATTEMPT:
        logger.info(
            f"[ImageCache] Retry {(event.attempt_number or 0) + 1} for {short} "
            f"({event.status_code or event.error_message})"
        )
    elif kind == MetricEventType.STALE_IF_ERROR_SERVED:
        logger.info(f"[ImageCache] Serving stale for {short}")
    elif kind == MetricEventType.CIRCUIT_BREAKER_TRIPPED:
        logger.warning(f"[ImageCache] Circuit breaker open for {event.host}")
    elif kind == MetricEventType.CAPTIVE_PORTAL_DETECTED:
        logger.warning(f"[ImageCache] Captive portal detected for {short}")


class MetricsCollector:
    """
    In-memory metrics sink.

    Counts events per type and per host and keeps a bounded ring of the
    most recent events for debugging.

    Usage:
        collector = MetricsCollector()
        registry.initialize(metrics_sink=collector)
        ...
        print(collector.get_stats())
    """

    def __init__(self, max_events: int = 1000):
        self._max_events = max_events
        self._events: Deque[MetricEvent] = deque(maxlen=max_events)
        self._by_kind: Counter = Counter()
        self._by_host: Dict[str, Counter] = {}
        self._durations: List[float] = []

    def __call__(self, event: MetricEvent) -> None:
        self._events.append(event)
        self._by_kind[event.kind] += 1

        host = event.host or urlsplit(event.url).hostname
        if host:
            self._by_host.setdefault(host, Counter())[event.kind] += 1

        if event.kind == MetricEventType.FETCH_SUCCEEDED and event.duration is not None:
            self._durations.append(event.duration)
            if len(self._durations) > self._max_events:
                self._durations = self._durations[-self._max_events:]

    def count(self, kind: MetricEventType, host: Optional[str] = None) -> int:
        if host is not None:
            return self._by_host.get(host, Counter())[kind]
        return self._by_kind[kind]

    def events(self, kind: Optional[MetricEventType] = None) -> List[MetricEvent]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.kind == kind]

    def reset(self) -> None:
        self._events.clear()
        self._by_kind.clear()
        self._by_host.clear()
        self._durations.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get aggregated statistics."""
        succeeded = self._by_kind[MetricEventType.FETCH_SUCCEEDED]
        failed = self._by_kind[MetricEventType.FETCH_FAILED]
        finished = succeeded + failed
        avg_duration = sum(self._durations) / len(self._durations) if self._durations else 0.0

        return {
            "events": {kind.value: self._by_kind[kind] for kind in MetricEventType},
            "success_rate": succeeded / finished if finished > 0 else 0.0,
            "avg_fetch_seconds": avg_duration,
            "hosts": {
                host: {kind.value: n for kind, n in counter.items()}
                for host, counter in self._by_host.items()
            },
            "recorded_events": len(self._events),
        }

"""
Per-Host Circuit Breaker
Prevents retry storms when a CDN edge is down or DNS is flaky

Without it, 4 retries x 100 images = 400 doomed requests. With it, the host
is fast-failed after a few consecutive failures and probed again later.

States:
- CLOSED: normal operation, requests pass through
- OPEN: failure threshold reached, requests fail fast
- HALF_OPEN: reset window elapsed, exactly ONE probe request is admitted
    - probe succeeds -> CLOSED
    - probe fails    -> OPEN again (new opened_at)

The host table is guarded by a lock, so the "claim the probe slot"
check-and-set in allow_request() is indivisible under asyncio and threads alike.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from loguru import logger


class CircuitState(str, Enum):
    """Circuit states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class HostCircuitState:
    """Mutable per-host circuit record."""
    consecutive_failures: int = 0
    is_open: bool = False
    is_half_open: bool = False
    probe_in_flight: bool = False
    opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self.is_open:
            return CircuitState.OPEN
        if self.is_half_open:
            return CircuitState.HALF_OPEN
        return CircuitState.CLOSED


class HostCircuitBreaker:
    """
    Per-host circuit breaker.

    Usage:
        breaker = HostCircuitBreaker(failure_threshold=5, reset_duration=30.0)

        if not breaker.allow_request("cdn.example.com"):
            raise CircuitOpenError("cdn.example.com")
        try:
            response = await do_request()
            breaker.record_success("cdn.example.com")
        except OSError:
            breaker.record_failure("cdn.example.com")
            raise
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_duration: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            failure_threshold: Consecutive failures before the circuit opens
            reset_duration: Seconds the circuit stays open before a probe
            clock: Monotonic clock (seconds); injectable for tests
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self.failure_threshold = failure_threshold
        self.reset_duration = reset_duration
        self._clock = clock or time.monotonic
        self._states: Dict[str, HostCircuitState] = {}
        self._lock = threading.RLock()

    def allow_request(self, host: str) -> bool:
        """
        Check whether a request to ``host`` may proceed.

        Not a pure predicate: performs the OPEN -> HALF_OPEN transition once
        the reset window has elapsed and claims the single probe slot for the
        caller. Concurrent callers during an in-flight probe are denied.
        """
        with self._lock:
            state = self._states.get(host)
            if state is None:
                return True

            if state.is_open:
                if state.opened_at is not None and self._clock() - state.opened_at >= self.reset_duration:
                    state.is_open = False
                    state.is_half_open = True
                    state.probe_in_flight = False
                    logger.info(f"Circuit half-open for {host}, admitting one probe")
                else:
                    return False

            if state.is_half_open:
                if state.probe_in_flight:
                    return False
                state.probe_in_flight = True
                return True

            return True

    def is_open(self, host: str) -> bool:
        """Read-only: is the circuit open? Never triggers a transition."""
        with self._lock:
            state = self._states.get(host)
            return state.is_open if state else False

    def is_half_open(self, host: str) -> bool:
        """Read-only: is the circuit half-open?"""
        with self._lock:
            state = self._states.get(host)
            return state.is_half_open if state else False

    def state(self, host: str) -> CircuitState:
        """Read-only circuit state for a host."""
        with self._lock:
            state = self._states.get(host)
            return state.state if state else CircuitState.CLOSED

    def failure_count(self, host: str) -> int:
        with self._lock:
            state = self._states.get(host)
            return state.consecutive_failures if state else 0

    def record_success(self, host: str) -> None:
        """Reset the host to CLOSED with zero failures."""
        with self._lock:
            previous = self._states.get(host)
            if previous is not None and previous.state != CircuitState.CLOSED:
                logger.info(f"Circuit closed for {host}")
            self._states[host] = HostCircuitState()

    def record_failure(self, host: str) -> None:
        """Count a failure; re-opens immediately when half-open."""
        with self._lock:
            state = self._states.setdefault(host, HostCircuitState())

            if state.is_half_open:
                state.is_half_open = False
                state.probe_in_flight = False
                state.is_open = True
                state.opened_at = self._clock()
                logger.warning(f"Circuit re-opened for {host} (probe failed)")
                return

            state.consecutive_failures += 1

            if not state.is_open and state.consecutive_failures >= self.failure_threshold:
                state.is_open = True
                state.opened_at = self._clock()
                logger.warning(
                    f"Circuit opened for {host} after "
                    f"{state.consecutive_failures} consecutive failures"
                )

    def release_probe(self, host: str) -> None:
        """
        Give back an unresolved probe slot (the probing caller went away).

        The host stays half-open so the next allow_request admits a new probe.
        """
        with self._lock:
            state = self._states.get(host)
            if state is not None and state.is_half_open and state.probe_in_flight:
                state.probe_in_flight = False
                logger.info(f"Probe abandoned for {host}, slot released")

    def reset(self, host: str) -> None:
        """Manually clear one host."""
        with self._lock:
            self._states.pop(host, None)

    def reset_all(self) -> None:
        """Clear every host (e.g. connectivity regained)."""
        with self._lock:
            self._states.clear()

    def debug_state(self) -> Dict[str, Dict[str, object]]:
        """Snapshot of every tracked host."""
        with self._lock:
            return {
                host: {
                    "failures": state.consecutive_failures,
                    "is_open": state.is_open,
                    "is_half_open": state.is_half_open,
                    "probe_in_flight": state.probe_in_flight,
                }
                for host, state in self._states.items()
            }

    def __len__(self) -> int:
        return len(self._states)

"""
Resilient Fetcher
Network transport for hostile networks (high latency, packet loss, captive portals)

Assumes the network is unreliable and actively fights to get the image through:
- Circuit breaker: fails fast while a host is known-bad
- Global pool: caps aggregate downloads across every bucket
- Adaptive timeouts: more patience on later attempts
- DNS probe before retries: no retrying in a dead zone
- Exponential backoff with jitter: no retry storms, no thundering herd
- Captive portal detection: by file extension and by content sniffing
- Stale-if-error: a failed revalidation keeps the cached copy alive

Each attempt produces a tagged outcome (Ok / RetryableFailure / FatalFailure)
consumed by one retry dispatcher; the error channel is only used for
terminal failures.

Author: imgcache
Version: 1.0.0
"""

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Mapping, Optional, Union
from urllib.parse import urlsplit

import aiohttp
from loguru import logger

from imgcache.caching.bucket_policy import BucketPolicy
from imgcache.caching.circuit_breaker import HostCircuitBreaker
from imgcache.caching.errors import (
    CaptivePortalError,
    CircuitOpenError,
    ConnectivityError,
    HttpStatusError,
    RetryableTransportError,
    RetryExhaustedError,
)
from imgcache.caching.metrics import MetricEvent, MetricEventType, MetricsSink, emit
from imgcache.caching.responses import (
    HTTP_NOT_MODIFIED,
    HTTP_OK,
    FetchResponse,
    ResilientResponse,
    SyntheticStaleResponse,
)
from imgcache.caching.transport import (
    AiohttpTransport,
    BaseTransport,
    DnsProbe,
    GlobalFetchPool,
    TransportResponse,
    dns_probe,
    get_global_pool,
)
from imgcache.config.config_loader import FetchSettings


# Temporary conditions worth retrying
RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({
    408,  # Request Timeout
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
    # Cloudflare / CDN
    520,  # Unknown Error
    521,  # Web Server Is Down
    522,  # Connection Timed Out
    523,  # Origin Is Unreachable
    524,  # A Timeout Occurred
    525,  # SSL Handshake Failed
})

RETRYABLE_MESSAGE_PATTERNS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection closed",
    "handshake",
)

_NEVER_RETRY = (CaptivePortalError, ConnectivityError, CircuitOpenError, HttpStatusError, RetryExhaustedError)


# ===========================================================================
# Attempt outcomes
# ===========================================================================

@dataclass
class Ok:
    """The attempt produced a usable response."""
    response: TransportResponse


@dataclass
class RetryableFailure:
    """A transient failure; the dispatcher may try again."""
    error: BaseException
    status_code: Optional[int] = None


@dataclass
class FatalFailure:
    """A failure that must not be retried."""
    error: BaseException
    host_responded: bool = False


AttemptOutcome = Union[Ok, RetryableFailure, FatalFailure]


# ===========================================================================
# Helpers
# ===========================================================================

def host_of(url: str) -> str:
    """Lower-cased host of a URL ('' when it cannot be parsed)."""
    try:
        return urlsplit(url).hostname or ""
    except ValueError:
        return ""


def is_revalidation_request(headers: Optional[Mapping[str, str]]) -> bool:
    """A request carrying If-None-Match / If-Modified-Since is a revalidation."""
    if not headers:
        return False
    names = {name.lower() for name in headers}
    return "if-none-match" in names or "if-modified-since" in names


def etag_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Case-insensitive If-None-Match lookup."""
    if not headers:
        return None
    for name, value in headers.items():
        if name.lower() == "if-none-match":
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an exception as a transient network issue."""
    if isinstance(error, _NEVER_RETRY):
        return False
    # aiohttp.InvalidURL is a ClientError too; a bad URL never heals
    if isinstance(error, (aiohttp.InvalidURL, ValueError)):
        return False
    if isinstance(error, (asyncio.TimeoutError, RetryableTransportError, OSError, aiohttp.ClientError)):
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


def backoff_delay(
    attempt: int,
    base_ms: int = 500,
    jitter_ms: int = 500,
    cap_ms: int = 15000,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Exponential backoff with jitter, in seconds.

    500ms, 1s, 2s, 4s ... plus random [0, jitter) ms, capped at ``cap_ms``.
    """
    rng = rng or random
    exp_ms = base_ms * (1 << attempt)
    jitter = rng.randrange(jitter_ms) if jitter_ms > 0 else 0
    return min(exp_ms + jitter, cap_ms) / 1000.0


# ===========================================================================
# Resilient Fetcher
# ===========================================================================

class ResilientFetcher:
    """
    Fetches image bytes for one bucket.

    Usage:
        fetcher = ResilientFetcher(
            policy=DEFAULT_POLICIES[Bucket.THUMBNAIL],
            circuit_breaker=breaker,
            metrics_sink=log_metrics_sink,
        )
        response = await fetcher.fetch("https://cdn.example.com/a.jpg")
        data = await response.read()
    """

    def __init__(
        self,
        policy: BucketPolicy,
        circuit_breaker: Optional[HostCircuitBreaker] = None,
        transport: Optional[BaseTransport] = None,
        metrics_sink: Optional[MetricsSink] = None,
        settings: Optional[FetchSettings] = None,
        pool: Optional[GlobalFetchPool] = None,
        probe: Optional[DnsProbe] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            policy: Bucket policy (timeouts, retries, freshness bounds)
            circuit_breaker: Shared per-host breaker
            transport: HTTP transport (default: shared-session aiohttp)
            metrics_sink: Optional observer of MetricEvents
            settings: Fetch settings (user agent, backoff, heuristics)
            pool: Download slot pool (default: process-wide pool)
            probe: Connectivity probe called with the host before retries
            sleep: Backoff sleeper; injectable for tests
            rng: Jitter source
        """
        self.policy = policy
        self.settings = settings or FetchSettings()
        self.circuit_breaker = circuit_breaker or HostCircuitBreaker()
        self.metrics_sink = metrics_sink
        self._transport = transport or AiohttpTransport()
        self._pool = pool or get_global_pool(self.settings.global_concurrency)
        self._probe = probe
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._poisoned_extensions = frozenset(ext.lower() for ext in self.settings.poisoned_extensions)

        self._stats = {
            "requests": 0,
            "successes": 0,
            "failures": 0,
            "attempts": 0,
            "retries": 0,
            "stale_served": 0,
            "circuit_rejections": 0,
            "captive_portals": 0,
        }

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    async def fetch(self, url: str, headers: Optional[Mapping[str, str]] = None) -> FetchResponse:
        """
        Fetch a URL with retries, circuit breaking and stale-if-error.

        Args:
            url: Image URL
            headers: Request headers; conditional headers mark a revalidation

        Returns:
            ResilientResponse, or SyntheticStaleResponse for a failed revalidation

        Raises:
            CircuitOpenError: host is fast-failed (first fetch only)
            ConnectivityError: connectivity probe failed (first fetch only)
            CaptivePortalError: a 200 OK carried a page instead of an image
            HttpStatusError: non-retryable HTTP status
            RetryExhaustedError: every attempt failed (first fetch only)
        """
        self._stats["requests"] += 1
        host = host_of(url)
        is_revalidation = is_revalidation_request(headers)

        async with self._pool.slot():
            if not self.circuit_breaker.allow_request(host):
                self._stats["circuit_rejections"] += 1
                self._emit(MetricEventType.CIRCUIT_BREAKER_TRIPPED, url, host)

                if is_revalidation:
                    return self._serve_stale(url, host, headers)

                raise CircuitOpenError(host)

            # allow_request admitted us while half-open: we hold the probe slot
            holds_probe = self.circuit_breaker.is_half_open(host)

            request_headers = self._prepare_headers(headers)
            try:
                return await self._dispatch(url, host, request_headers, headers, is_revalidation)
            except asyncio.CancelledError:
                if holds_probe:
                    self.circuit_breaker.release_probe(host)
                raise

    async def _dispatch(
        self,
        url: str,
        host: str,
        request_headers: Dict[str, str],
        original_headers: Optional[Mapping[str, str]],
        is_revalidation: bool,
    ) -> FetchResponse:
        """Retry loop consuming attempt outcomes."""
        max_attempts = self.policy.max_retry_attempts

        for attempt in range(max_attempts):
            started = time.monotonic()
            outcome = await self._attempt(url, host, request_headers, attempt)
            is_last = attempt == max_attempts - 1

            if isinstance(outcome, Ok):
                self.circuit_breaker.record_success(host)
                self._stats["successes"] += 1
                self._emit(
                    MetricEventType.FETCH_SUCCEEDED, url, host,
                    status_code=outcome.response.status_code,
                    attempt_number=attempt,
                    duration=time.monotonic() - started,
                )
                return self._wrap(outcome.response, url, host)

            if isinstance(outcome, FatalFailure):
                # No breaker bookkeeping for URLs without a usable host
                if host and outcome.host_responded:
                    self.circuit_breaker.record_success(host)
                elif host:
                    self.circuit_breaker.record_failure(host)

                if is_revalidation and isinstance(outcome.error, ConnectivityError):
                    self._report_failure(url, host, attempt, outcome.error)
                    return self._serve_stale(url, host, original_headers)

                self._fail(url, host, attempt, outcome.error)
                raise outcome.error

            # RetryableFailure
            if host:
                self.circuit_breaker.record_failure(host)

            if is_last:
                if is_revalidation:
                    self._report_failure(url, host, attempt, outcome.error)
                    return self._serve_stale(url, host, original_headers)

                error = RetryExhaustedError(
                    url,
                    attempts=max_attempts,
                    status_code=outcome.status_code,
                    last_error=outcome.error,
                )
                self._fail(url, host, attempt, error)
                raise error from outcome.error

            self._stats["retries"] += 1
            self._emit(
                MetricEventType.RETRY_ATTEMPT, url, host,
                status_code=outcome.status_code,
                attempt_number=attempt,
                error_message=type(outcome.error).__name__,
            )
            delay = backoff_delay(
                attempt,
                base_ms=self.settings.backoff_base_ms,
                jitter_ms=self.settings.backoff_jitter_ms,
                cap_ms=self.settings.backoff_cap_ms,
                rng=self._rng,
            )
            logger.warning(f"Retrying {url} in {delay:.2f}s (attempt {attempt + 1}/{max_attempts}): {outcome.error}")
            await self._sleep(delay)

        raise RuntimeError("ResilientFetcher retry loop exited without an outcome")

    async def _attempt(
        self,
        url: str,
        host: str,
        headers: Dict[str, str],
        attempt: int,
    ) -> AttemptOutcome:
        """Run one network attempt and classify its result."""
        self._stats["attempts"] += 1
        timeout = self.policy.response_timeout.total_seconds() + attempt * self.settings.attempt_timeout_step

        try:
            if attempt > 0:
                await self._ensure_connectivity(host)

            self._emit(MetricEventType.FETCH_STARTED, url, host, attempt_number=attempt)
            response = await asyncio.wait_for(self._transport.request(url, headers), timeout)

        except ConnectivityError as e:
            return FatalFailure(e)
        except asyncio.TimeoutError:
            return RetryableFailure(RetryableTransportError(f"Timed out after {timeout:.1f}s waiting for {url}"))
        except Exception as e:
            if is_retryable_error(e):
                return RetryableFailure(e)
            return FatalFailure(e)

        status = response.status_code

        if status in RETRYABLE_STATUS_CODES:
            await response.drain(self.settings.drain_timeout)
            return RetryableFailure(
                RetryableTransportError(f"HTTP {status} for {url}", status_code=status),
                status_code=status,
            )

        if status == HTTP_OK and response.file_extension.lower() in self._poisoned_extensions:
            await response.drain(self.settings.drain_timeout)
            self._stats["captive_portals"] += 1
            self._emit(MetricEventType.CAPTIVE_PORTAL_DETECTED, url, host, status_code=status)
            logger.warning(f"Captive portal suspected for {url} ({response.file_extension} body on 200)")
            return FatalFailure(CaptivePortalError(
                f"Captive portal detected ({response.file_extension} content for image at {url})"
            ))

        if 200 <= status < 300 or status == HTTP_NOT_MODIFIED:
            return Ok(response)

        await response.drain(self.settings.drain_timeout)
        return FatalFailure(HttpStatusError(status, url), host_responded=True)

    async def _ensure_connectivity(self, host: str) -> None:
        """Probe before retrying; any probe failure is a ConnectivityError."""
        try:
            if self._probe is not None:
                await self._probe(host)
            else:
                await dns_probe(host, self.settings.dns_probe_timeout)
        except ConnectivityError:
            raise
        except Exception as e:
            raise ConnectivityError(host) from e

    def _prepare_headers(self, headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
        """Copy headers, injecting User-Agent and Accept-Encoding when absent."""
        prepared = dict(headers or {})
        present = {name.lower() for name in prepared}
        if "user-agent" not in present:
            prepared["User-Agent"] = self.settings.user_agent
        if "accept-encoding" not in present:
            prepared["Accept-Encoding"] = "gzip"
        return prepared

    def _wrap(self, response: TransportResponse, url: str, host: str) -> ResilientResponse:
        def _on_captive_portal(label: str) -> None:
            self._stats["captive_portals"] += 1
            self._emit(
                MetricEventType.CAPTIVE_PORTAL_DETECTED, url, host,
                status_code=response.status_code,
                error_message=label,
            )

        return ResilientResponse(
            inner=response,
            stream_timeout=self.policy.stream_timeout,
            min_fresh=self.policy.min_fresh,
            max_fresh=self.policy.max_fresh,
            sniff=self.settings.sniff_content,
            on_captive_portal=_on_captive_portal,
            on_stall=lambda error: self._on_stream_stall(url, host, error),
        )

    def _serve_stale(
        self,
        url: str,
        host: str,
        headers: Optional[Mapping[str, str]],
    ) -> SyntheticStaleResponse:
        self._stats["stale_served"] += 1
        self._emit(MetricEventType.STALE_IF_ERROR_SERVED, url, host)
        logger.warning(f"Serving stale content for {url}")
        return SyntheticStaleResponse(
            valid_till=datetime.now(timezone.utc) + self.policy.min_fresh,
            e_tag=etag_from_headers(headers),
        )

    def _report_failure(self, url: str, host: str, attempt: Optional[int], error: BaseException) -> None:
        """Emit FETCH_FAILED; also used when the failure is swallowed by stale-if-error."""
        self._emit(
            MetricEventType.FETCH_FAILED, url, host,
            status_code=getattr(error, "status_code", None),
            attempt_number=attempt,
            error_message=str(error) or type(error).__name__,
        )

    def _fail(self, url: str, host: str, attempt: int, error: BaseException) -> None:
        self._stats["failures"] += 1
        self._report_failure(url, host, attempt, error)
        logger.error(f"Fetch failed for {url}: {error}")

    def _on_stream_stall(self, url: str, host: str, error: BaseException) -> None:
        self._stats["failures"] += 1
        self._report_failure(url, host, None, error)
        logger.warning(f"Stream stalled for {url}: {error}")

    def _emit(self, kind: MetricEventType, url: str, host: str, **fields) -> None:
        emit(self.metrics_sink, MetricEvent(kind=kind, url=url, host=host or None, **fields))

    async def close(self) -> None:
        await self._transport.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get fetcher statistics."""
        return {
            "bucket": self.policy.versioned_key,
            **self._stats,
        }

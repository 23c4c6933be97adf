"""
Error taxonomy for the resilient fetch layer

- ConnectivityError: DNS/connectivity probe failed (dead radio, tunnel)
- CircuitOpenError: host fast-failed by the circuit breaker
- RetryableTransportError: timeout, socket/TLS error or retryable HTTP status
- CaptivePortalError: a "200 OK" that is really a login/error page
- RetryExhaustedError: every attempt was consumed
- StreamStallError: no bytes arrived within the stream timeout
- HttpStatusError: non-retryable HTTP status (e.g. 404)
"""

from typing import Optional


class ImageCacheError(Exception):
    """Base class for all imgcache errors."""


class ConfigError(ValueError):
    """A bucket policy or configuration value violates an invariant."""


class ConnectivityError(ImageCacheError):
    """The connectivity probe could not resolve the target host."""

    def __init__(self, host: str, message: str = "No Internet connectivity"):
        self.host = host
        super().__init__(f"{message} (host={host})")


class CircuitOpenError(ImageCacheError):
    """The circuit breaker is open for a host; the request was not sent."""

    status_code = 503

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"Circuit breaker open for {host}")


class RetryableTransportError(ImageCacheError):
    """A transient failure worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CaptivePortalError(ImageCacheError):
    """A successful-looking response carried HTML/JSON instead of image bytes."""


class HttpStatusError(ImageCacheError):
    """The server answered with a status that is neither success nor retryable."""

    def __init__(self, status_code: int, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"HTTP {status_code} for {url}")


class RetryExhaustedError(ImageCacheError):
    """All retry attempts were consumed without a usable response."""

    def __init__(
        self,
        url: str,
        attempts: int,
        status_code: Optional[int] = None,
        last_error: Optional[BaseException] = None,
    ):
        self.url = url
        self.attempts = attempts
        self.status_code = status_code
        self.last_error = last_error
        detail = f"HTTP {status_code}" if status_code is not None else repr(last_error)
        super().__init__(f"Retry exhausted for {url} after {attempts} attempts ({detail})")


class StreamStallError(ImageCacheError):
    """The content stream delivered no bytes within the stream timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Stream stalled (no data for {timeout:.1f}s)")

"""
imgcache Caching System
Resilient, bucketed image caching for hostile networks

This module provides:
- CacheRegistry: Owner of per-bucket storage managers and the shared breaker
- BucketCacheManager: Per-bucket storage (LRU, revalidation, eviction)
- ResilientFetcher: Retries, backoff, circuit breaking, stale-if-error
- HostCircuitBreaker: Per-host CLOSED / OPEN / HALF_OPEN breaker
- BucketPolicy / Bucket: Retention, freshness and concurrency rules
- build_cache_key / normalize_url: Deterministic, user-scoped keys
- MetricEvent / MetricsCollector: Observation events and sinks

Architecture:
- Registry (session, sweep) -> bucket managers -> resilient fetcher
- Fetcher -> global fetch pool -> circuit breaker -> transport (aiohttp)
"""

from imgcache.caching.bucket_policy import (
    Bucket,
    BucketPolicy,
    DEFAULT_POLICIES,
    USER_BUCKETS,
    resolve_policies,
)
from imgcache.caching.cache_key import (
    build_cache_key,
    normalize_url,
    user_scoped_key,
)
from imgcache.caching.circuit_breaker import (
    CircuitState,
    HostCircuitBreaker,
)
from imgcache.caching.errors import (
    CaptivePortalError,
    CircuitOpenError,
    ConfigError,
    ConnectivityError,
    HttpStatusError,
    ImageCacheError,
    RetryableTransportError,
    RetryExhaustedError,
    StreamStallError,
)
from imgcache.caching.metrics import (
    MetricEvent,
    MetricEventType,
    MetricsCollector,
    fan_out,
    log_metrics_sink,
)
from imgcache.caching.registry import (
    CacheRegistry,
    get_cache_registry,
    reset_cache_registry,
)
from imgcache.caching.resilient_fetcher import ResilientFetcher
from imgcache.caching.responses import (
    FetchResponse,
    ResilientResponse,
    SyntheticStaleResponse,
)
from imgcache.caching.storage import (
    BucketCacheManager,
    CacheObject,
    StorageRoots,
)
from imgcache.caching.transport import (
    AiohttpTransport,
    BaseTransport,
    GlobalFetchPool,
    TransportResponse,
    get_global_pool,
    reset_global_pool,
)

__all__ = [
    # Policies
    "Bucket",
    "BucketPolicy",
    "DEFAULT_POLICIES",
    "USER_BUCKETS",
    "resolve_policies",
    # Keys
    "build_cache_key",
    "normalize_url",
    "user_scoped_key",
    # Circuit breaker
    "CircuitState",
    "HostCircuitBreaker",
    # Errors
    "CaptivePortalError",
    "CircuitOpenError",
    "ConfigError",
    "ConnectivityError",
    "HttpStatusError",
    "ImageCacheError",
    "RetryableTransportError",
    "RetryExhaustedError",
    "StreamStallError",
    # Metrics
    "MetricEvent",
    "MetricEventType",
    "MetricsCollector",
    "fan_out",
    "log_metrics_sink",
    # Registry
    "CacheRegistry",
    "get_cache_registry",
    "reset_cache_registry",
    # Fetching
    "ResilientFetcher",
    "FetchResponse",
    "ResilientResponse",
    "SyntheticStaleResponse",
    # Storage
    "BucketCacheManager",
    "CacheObject",
    "StorageRoots",
    # Transport
    "AiohttpTransport",
    "BaseTransport",
    "GlobalFetchPool",
    "TransportResponse",
    "get_global_pool",
    "reset_global_pool",
]

"""
Cache Registry
Central command for the image caching system

Responsibilities:
1. Multi-bucket management: lazily builds one storage manager per bucket,
   each following its own retention and concurrency policy
2. Security scope: holds the current user id used to scope private keys
3. Resilience orchestration: one HostCircuitBreaker shared by all buckets
4. Maintenance: deletes obsolete storage generations (``<name>-v<N>``)

Usage:
    registry = CacheRegistry(config)
    registry.initialize(user_id=auth.user_id, metrics_sink=log_metrics_sink)

    data = await registry.get_bytes(url, Bucket.AVATAR, is_private=True)

    # On logout
    await registry.clear_user_caches()
    registry.set_user_id(None)
"""

import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from imgcache.caching.bucket_policy import USER_BUCKETS, Bucket, BucketPolicy, resolve_policies
from imgcache.caching.cache_key import build_cache_key
from imgcache.caching.circuit_breaker import HostCircuitBreaker
from imgcache.caching.metrics import MetricEvent, MetricsSink, emit
from imgcache.caching.resilient_fetcher import ResilientFetcher
from imgcache.caching.storage import BucketCacheManager, StorageRoots
from imgcache.caching.transport import (
    AiohttpTransport,
    BaseTransport,
    DnsProbe,
    GlobalFetchPool,
    get_global_pool,
)
from imgcache.config.config_loader import Config


class CacheRegistry:
    """
    Factory and owner of per-bucket storage managers.

    The registry exclusively owns the shared circuit breaker and the session
    state (current user id, initialized flag). Construct one at process start
    and pass it to whatever needs images; tests build fresh instances.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        circuit_breaker: Optional[HostCircuitBreaker] = None,
        transport: Optional[BaseTransport] = None,
        pool: Optional[GlobalFetchPool] = None,
        probe: Optional[DnsProbe] = None,
        roots: Optional[StorageRoots] = None,
    ):
        """
        Args:
            config: Configuration (default: built-in defaults)
            circuit_breaker: Shared breaker (default: built from config)
            transport: HTTP transport shared by all buckets
            pool: Global download pool (default: process-wide pool)
            probe: Connectivity probe used before retries
            roots: Storage roots (default: from config.storage)
        """
        self.config = config or Config()
        self.policies: Dict[Bucket, BucketPolicy] = resolve_policies(self.config.buckets)
        self.roots = roots or StorageRoots.from_settings(self.config.storage)

        self._circuit_breaker = circuit_breaker or HostCircuitBreaker(
            failure_threshold=self.config.circuit_breaker.failure_threshold,
            reset_duration=self.config.circuit_breaker.reset_seconds,
        )
        self._transport = transport or AiohttpTransport()
        self._pool = pool or get_global_pool(self.config.fetch.global_concurrency)
        self._probe = probe

        self._managers: Dict[Bucket, BucketCacheManager] = {}
        self._managers_lock = threading.Lock()

        self._metrics_sink: Optional[MetricsSink] = None
        self._current_user_id: Optional[str] = None
        self._initialized = False
        self._swept = False

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def initialize(
        self,
        user_id: Optional[str] = None,
        metrics_sink: Optional[MetricsSink] = None,
    ) -> None:
        """
        Set session state and run the one-time storage generation sweep.

        Call once at startup before any image is requested.
        """
        self._metrics_sink = metrics_sink
        self._current_user_id = user_id
        self._initialized = True
        logger.info(f"Cache registry initialized (user={'set' if user_id else 'none'})")

        if not self._swept:
            self._swept = True
            self.prune_old_versions()

    def set_user_id(self, user_id: Optional[str]) -> None:
        """Set the current user; affects later private cache keys."""
        self._current_user_id = user_id

    @property
    def current_user_id(self) -> Optional[str]:
        return self._current_user_id

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Managers
    # ------------------------------------------------------------------

    def get_manager(self, bucket: Bucket) -> BucketCacheManager:
        """Get (or lazily create) the storage manager for a bucket."""
        bucket = Bucket(bucket)
        with self._managers_lock:
            manager = self._managers.get(bucket)
            if manager is None:
                manager = self._create_manager(bucket)
                self._managers[bucket] = manager
            return manager

    @property
    def avatar(self) -> BucketCacheManager:
        """Persistent; 180 day retention; 12h-30d freshness."""
        return self.get_manager(Bucket.AVATAR)

    @property
    def icon(self) -> BucketCacheManager:
        """Persistent; 365 day retention."""
        return self.get_manager(Bucket.ICON)

    @property
    def thumbnail(self) -> BucketCacheManager:
        """Temporary; 6 concurrent downloads."""
        return self.get_manager(Bucket.THUMBNAIL)

    @property
    def content(self) -> BucketCacheManager:
        """Temporary; 30 day retention."""
        return self.get_manager(Bucket.CONTENT)

    @property
    def banner(self) -> BucketCacheManager:
        """Temporary; 2 concurrent downloads."""
        return self.get_manager(Bucket.BANNER)

    def _create_manager(self, bucket: Bucket) -> BucketCacheManager:
        policy = self.policies[bucket]
        directory = self.roots.directory_for(bucket, policy)

        fetcher = ResilientFetcher(
            policy=policy,
            circuit_breaker=self._circuit_breaker,
            transport=self._transport,
            metrics_sink=self._forward_metric,
            settings=self.config.fetch,
            pool=self._pool,
            probe=self._probe,
        )
        logger.info(f"Created cache manager for {bucket.value} at {directory}")
        return BucketCacheManager(bucket, policy, directory, fetcher)

    def _forward_metric(self, event: MetricEvent) -> None:
        # Resolved per event so a sink set by initialize() reaches existing managers
        emit(self._metrics_sink, event)

    # ------------------------------------------------------------------
    # Keys and reads
    # ------------------------------------------------------------------

    def build_cache_key(
        self,
        url: str,
        explicit_key: Optional[str] = None,
        is_private: bool = False,
    ) -> str:
        """Normalized (and, for private images, user-scoped) cache key."""
        return build_cache_key(
            url,
            explicit_key=explicit_key,
            user_id=self._current_user_id,
            is_private=is_private,
        )

    async def get_bytes(
        self,
        url: str,
        bucket: Bucket = Bucket.CONTENT,
        headers: Optional[Mapping[str, str]] = None,
        explicit_key: Optional[str] = None,
        is_private: bool = False,
    ) -> bytes:
        """Bytes for a URL from the bucket's cache, fetching as needed."""
        key = self.build_cache_key(url, explicit_key=explicit_key, is_private=is_private)
        return await self.get_manager(bucket).get_file(url, key=key, headers=headers)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    async def clear(self, bucket: Bucket) -> None:
        """Empty one bucket."""
        await self.get_manager(bucket).empty_cache()

    async def clear_all(self) -> None:
        """Empty every bucket and reset the circuit breaker (full reset)."""
        for bucket in Bucket:
            await self.get_manager(bucket).empty_cache()
        self._circuit_breaker.reset_all()

    async def clear_user_caches(self) -> None:
        """Empty the buckets holding user-identifiable content (on logout)."""
        for bucket in USER_BUCKETS:
            await self.clear(bucket)

    def reset_circuit_breakers(self) -> None:
        """Connectivity came back: retry previously blocked hosts immediately."""
        self._circuit_breaker.reset_all()

    @property
    def circuit_breaker(self) -> HostCircuitBreaker:
        return self._circuit_breaker

    @property
    def circuit_breaker_state(self) -> Dict[str, Dict[str, object]]:
        return self._circuit_breaker.debug_state()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_old_versions(self) -> List[Path]:
        """
        Delete bucket directories left over from older policy versions.

        A directory is obsolete when it shares a bucket's ``<name>-v`` prefix
        but is not the currently configured versioned key. Best effort:
        failures are logged and skipped.

        Returns:
            Deleted directories
        """
        deleted: List[Path] = []
        current = {policy.versioned_key for policy in self.policies.values()}
        prefixes = {policy.name_prefix for policy in self.policies.values()}

        for root in self.roots.all():
            try:
                if not root.is_dir():
                    continue
                entries = list(root.iterdir())
            except OSError as e:
                logger.warning(f"Cannot scan cache root {root}: {e}")
                continue

            for entry in entries:
                name = entry.name
                if name in current or not any(name.startswith(prefix) for prefix in prefixes):
                    continue
                try:
                    if not entry.is_dir():
                        continue
                    shutil.rmtree(entry)
                    deleted.append(entry)
                    logger.info(f"Deleted obsolete cache generation {entry}")
                except OSError as e:
                    logger.warning(f"Failed to delete obsolete cache generation {entry}: {e}")

        return deleted

    async def close(self) -> None:
        """Release network resources."""
        await self._transport.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        with self._managers_lock:
            managers = dict(self._managers)
        return {
            "initialized": self._initialized,
            "user_scoped": self._current_user_id is not None,
            "buckets": {bucket.value: manager.get_stats() for bucket, manager in managers.items()},
            "circuit_breaker": self._circuit_breaker.debug_state(),
            "pool": {"capacity": self._pool.capacity, "in_flight": self._pool.in_flight},
        }


# Default instance for applications that want one process-level registry
_default_registry: Optional[CacheRegistry] = None


def get_cache_registry(config: Optional[Config] = None) -> CacheRegistry:
    """
    Get or create the default registry.

    Args:
        config: Only used on first call
    """
    global _default_registry

    if _default_registry is None:
        _default_registry = CacheRegistry(config)

    return _default_registry


async def reset_cache_registry() -> None:
    """Close and drop the default registry."""
    global _default_registry

    if _default_registry is not None:
        await _default_registry.close()
        _default_registry = None

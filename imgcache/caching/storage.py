"""
Bucket Storage
Per-bucket storage manager consuming the resilient fetcher

Storage layout:
    <persistent_root>/<versioned_key>/   avatar, icon (not reclaimed by the OS)
    <temporary_root>/<versioned_key>/    thumbnail, content, banner

Each manager keeps an LRU index (OrderedDict) of cached objects whose bytes
live in files named by the SHA-256 of the cache key. The index lives in
memory only. Downloads are limited per bucket by
``policy.max_concurrent_fetches`` on top of the global fetch pool.
"""

import asyncio
import hashlib
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from imgcache.caching.bucket_policy import Bucket, BucketPolicy
from imgcache.caching.cache_key import normalize_url
from imgcache.caching.errors import HttpStatusError
from imgcache.caching.resilient_fetcher import ResilientFetcher
from imgcache.caching.responses import HTTP_NOT_MODIFIED
from imgcache.config.config_loader import StorageSettings


@dataclass
class StorageRoots:
    """Persistent and temporary storage roots."""
    persistent: Path
    temporary: Path

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "StorageRoots":
        return cls(
            persistent=Path(settings.persistent_root).expanduser(),
            temporary=Path(settings.temporary_root).expanduser(),
        )

    def root_for(self, bucket: Bucket) -> Path:
        return self.persistent if bucket.is_long_lived else self.temporary

    def directory_for(self, bucket: Bucket, policy: BucketPolicy) -> Path:
        return self.root_for(bucket) / policy.versioned_key

    def all(self) -> List[Path]:
        return [self.persistent, self.temporary]


@dataclass
class CacheObject:
    """Index entry for one cached image."""
    key: str
    url: str
    file_name: str
    valid_till: datetime
    e_tag: Optional[str] = None
    length: int = 0
    file_extension: str = ""
    created_at: float = field(default_factory=time.time)
    touched_at: float = field(default_factory=time.time)
    access_count: int = 0

    def is_fresh(self, now: datetime) -> bool:
        return self.valid_till > now


def file_name_for(key: str, file_extension: str = "") -> str:
    """Stable on-disk name for a cache key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest() + (file_extension or "")


class BucketCacheManager:
    """
    Storage manager for one bucket.

    Read path (get_file):
    - fresh hit  -> cached bytes
    - stale hit  -> revalidate with If-None-Match; 304 keeps the bytes
    - miss       -> fetch, persist, evict over-limit objects

    Example:
        manager = BucketCacheManager(Bucket.THUMBNAIL, policy, directory, fetcher)
        data = await manager.get_file("https://cdn.example.com/a.jpg")
    """

    def __init__(
        self,
        bucket: Bucket,
        policy: BucketPolicy,
        directory: Path,
        fetcher: ResilientFetcher,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.bucket = bucket
        self.policy = policy
        self.directory = Path(directory)
        self.fetcher = fetcher
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._index: "OrderedDict[str, CacheObject]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._download_limiter = asyncio.Semaphore(policy.max_concurrent_fetches)
        # key -> download task; later callers for the same key await it
        self._in_flight: Dict[str, "asyncio.Task[bytes]"] = {}

        self._stats = {
            "hits": 0,
            "misses": 0,
            "revalidations": 0,
            "not_modified": 0,
            "downloads": 0,
            "coalesced": 0,
            "evictions": 0,
            "bytes_written": 0,
        }

    # ------------------------------------------------------------------
    # Storage contract
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[CacheObject]:
        """Look up a cached object, marking it most recently used."""
        async with self._lock:
            obj = self._index.get(key)
            if obj is None:
                return None
            if not (self.directory / obj.file_name).exists():
                del self._index[key]
                return None
            self._index.move_to_end(key)
            obj.touched_at = time.time()
            obj.access_count += 1
            return obj

    async def read_bytes(self, key: str) -> Optional[bytes]:
        """Cached bytes for a key, or None on a miss."""
        obj = await self.get(key)
        if obj is None:
            return None
        return await self._read(obj)

    async def put(
        self,
        key: str,
        data: bytes,
        valid_till: datetime,
        e_tag: Optional[str] = None,
        file_extension: str = "",
        url: Optional[str] = None,
    ) -> CacheObject:
        """Persist bytes under a key and evict over-limit objects."""
        name = file_name_for(key, file_extension)
        path = self.directory / name
        await asyncio.to_thread(self._write_file, path, data)

        async with self._lock:
            previous = self._index.pop(key, None)
            if previous is not None and previous.file_name != name:
                self._unlink(previous.file_name)

            obj = CacheObject(
                key=key,
                url=url or key,
                file_name=name,
                valid_till=valid_till,
                e_tag=e_tag,
                length=len(data),
                file_extension=file_extension,
            )
            self._index[key] = obj
            self._stats["bytes_written"] += len(data)

        await self.evict_lru()
        return obj

    async def evict_lru(self, max_objects: Optional[int] = None) -> int:
        """
        Drop objects unused for longer than ``stale_after``, then least
        recently used objects until at most ``max_objects`` remain.

        Returns:
            Number of evicted objects
        """
        limit = self.policy.max_objects if max_objects is None else max_objects
        cutoff = time.time() - self.policy.stale_after.total_seconds()
        evicted = 0

        async with self._lock:
            for key in [k for k, o in self._index.items() if o.touched_at < cutoff]:
                self._unlink(self._index.pop(key).file_name)
                evicted += 1

            while len(self._index) > limit:
                _, obj = self._index.popitem(last=False)
                self._unlink(obj.file_name)
                evicted += 1

            self._stats["evictions"] += evicted

        if evicted:
            logger.debug(f"[{self.policy.versioned_key}] evicted {evicted} objects")
        return evicted

    async def remove(self, key: str) -> bool:
        """Remove one object."""
        async with self._lock:
            obj = self._index.pop(key, None)
            if obj is None:
                return False
            self._unlink(obj.file_name)
            return True

    async def empty_cache(self) -> None:
        """Remove every object in this bucket."""
        async with self._lock:
            for obj in self._index.values():
                self._unlink(obj.file_name)
            self._index.clear()

            if self.directory.exists():
                for path in self.directory.iterdir():
                    if path.is_file():
                        path.unlink(missing_ok=True)

        logger.info(f"Emptied cache bucket {self.policy.versioned_key}")

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------

    async def get_file(
        self,
        url: str,
        key: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bytes:
        """
        Return bytes for a URL, fetching or revalidating as needed.

        Args:
            url: Image URL
            key: Cache key (default: normalized URL)
            headers: Extra request headers (auth etc.)

        Returns:
            Image bytes, fresh or stale-but-valid

        Concurrent calls for one key share a single download. A caller that
        is cancelled stops waiting; the download itself runs to completion.
        """
        key = key or normalize_url(url)

        obj = await self.get(key)
        if obj is not None and obj.is_fresh(self._now()):
            self._stats["hits"] += 1
            return await self._read(obj)

        task = self._in_flight.get(key)
        if task is not None:
            self._stats["coalesced"] += 1
        else:
            task = asyncio.ensure_future(self._limited_download(url, key, headers))
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._download_finished(key, done))

        return await asyncio.shield(task)

    def _download_finished(self, key: str, task: "asyncio.Task[bytes]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Retrieved here so an unawaited failure is not reported as lost
            task.exception()

    async def _limited_download(
        self,
        url: str,
        key: str,
        headers: Optional[Mapping[str, str]],
    ) -> bytes:
        async with self._download_limiter:
            # State may have changed while waiting for a download slot
            obj = await self.get(key)
            if obj is not None and obj.is_fresh(self._now()):
                self._stats["hits"] += 1
                return await self._read(obj)

            return await self._download(url, key, obj, headers)

    async def _download(
        self,
        url: str,
        key: str,
        cached: Optional[CacheObject],
        headers: Optional[Mapping[str, str]],
    ) -> bytes:
        request_headers: Dict[str, str] = dict(headers or {})
        if cached is not None:
            self._stats["revalidations"] += 1
            if cached.e_tag and not any(name.lower() == "if-none-match" for name in request_headers):
                request_headers["If-None-Match"] = cached.e_tag
        else:
            self._stats["misses"] += 1

        response = await self.fetcher.fetch(url, request_headers)

        if response.status_code == HTTP_NOT_MODIFIED:
            if cached is None:
                raise HttpStatusError(HTTP_NOT_MODIFIED, url)
            self._stats["not_modified"] += 1
            async with self._lock:
                cached.valid_till = response.valid_till
                if response.e_tag:
                    cached.e_tag = response.e_tag
            return await self._read(cached)

        data = await response.read()
        self._stats["downloads"] += 1
        await self.put(
            key,
            data,
            valid_till=response.valid_till,
            e_tag=response.e_tag,
            file_extension=response.file_extension,
            url=url,
        )
        return data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _read(self, obj: CacheObject) -> bytes:
        return await asyncio.to_thread((self.directory / obj.file_name).read_bytes)

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.part")
        tmp.write_bytes(data)
        tmp.replace(path)

    def _unlink(self, file_name: str) -> None:
        (self.directory / file_name).unlink(missing_ok=True)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def get_stats(self) -> Dict[str, Any]:
        """Get bucket statistics."""
        lookups = self._stats["hits"] + self._stats["misses"] + self._stats["revalidations"]
        return {
            "bucket": self.bucket.value,
            "versioned_key": self.policy.versioned_key,
            "directory": str(self.directory),
            "size": len(self._index),
            "max_objects": self.policy.max_objects,
            "max_concurrent_fetches": self.policy.max_concurrent_fetches,
            "hit_rate": self._stats["hits"] / lookups if lookups > 0 else 0.0,
            **self._stats,
            "fetcher": self.fetcher.get_stats(),
        }

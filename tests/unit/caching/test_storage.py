"""
BucketCacheManager unit tests

Uses a temporary directory and a scripted transport.
"""

import asyncio
import os
import sys
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
from fixtures.fake_transport import JPEG_BYTES, PNG_BYTES, FakeProbe, FakeTransport, make_response, respond

from imgcache.caching.bucket_policy import DEFAULT_POLICIES, Bucket
from imgcache.caching.errors import HttpStatusError
from imgcache.caching.resilient_fetcher import ResilientFetcher
from imgcache.caching.storage import BucketCacheManager, StorageRoots, file_name_for
from imgcache.caching.transport import GlobalFetchPool


URL = "https://cdn.example.com/photos/cat.png"
POLICY = DEFAULT_POLICIES[Bucket.THUMBNAIL]


class Clock:
    """Wall clock that can be pushed forward."""

    def __init__(self):
        self.offset = timedelta(0)

    def __call__(self) -> datetime:
        return datetime.now(timezone.utc) + self.offset


def build_manager(tmp_path, script=None, policy=POLICY, delay=0.0):
    transport = FakeTransport(script if script is not None else [respond()], delay=delay)
    fetcher = ResilientFetcher(
        policy=policy,
        transport=transport,
        pool=GlobalFetchPool(6),
        probe=FakeProbe(),
        sleep=AsyncMock(),
    )
    clock = Clock()
    manager = BucketCacheManager(Bucket.THUMBNAIL, policy, tmp_path / policy.versioned_key, fetcher, now=clock)
    return manager, transport, clock


class TestStorageRoots:
    """Root selection"""

    def test_long_lived_buckets_are_persistent(self, tmp_path):
        roots = StorageRoots(persistent=tmp_path / "p", temporary=tmp_path / "t")
        assert roots.root_for(Bucket.AVATAR) == tmp_path / "p"
        assert roots.root_for(Bucket.ICON) == tmp_path / "p"
        assert roots.root_for(Bucket.BANNER) == tmp_path / "t"
        assert roots.directory_for(Bucket.THUMBNAIL, POLICY) == tmp_path / "t" / "img-thumb-v1"

    def test_file_name_is_stable(self):
        assert file_name_for("k", ".png") == file_name_for("k", ".png")
        assert file_name_for("k", ".png").endswith(".png")
        assert file_name_for("k") != file_name_for("other")


class TestStorageContract:
    """get / put / evict / remove / empty"""

    @pytest.mark.asyncio
    async def test_put_then_get(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        valid_till = clock() + timedelta(days=1)

        obj = await manager.put("k1", PNG_BYTES, valid_till, e_tag='"v1"', file_extension=".png")

        assert (manager.directory / obj.file_name).read_bytes() == PNG_BYTES
        found = await manager.get("k1")
        assert found.e_tag == '"v1"'
        assert found.access_count == 1
        assert await manager.read_bytes("k1") == PNG_BYTES
        assert "k1" in manager

    @pytest.mark.asyncio
    async def test_missing_file_drops_entry(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        obj = await manager.put("k1", PNG_BYTES, clock())
        (manager.directory / obj.file_name).unlink()

        assert await manager.get("k1") is None
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_lru_eviction_over_limit(self, tmp_path):
        manager, _, clock = build_manager(tmp_path, policy=replace(POLICY, max_objects=2))

        first = await manager.put("a", b"a", clock())
        await manager.put("b", b"b", clock())
        await manager.get("a")
        await manager.put("c", b"c", clock())

        assert "a" in manager
        assert "b" not in manager
        assert "c" in manager
        assert (manager.directory / first.file_name).exists()
        assert len(list(manager.directory.iterdir())) == 2

    @pytest.mark.asyncio
    async def test_unused_objects_expire_after_stale_after(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        old = await manager.put("old", b"o", clock())
        await manager.put("new", b"n", clock())
        old.touched_at = time.time() - POLICY.stale_after.total_seconds() - 60

        evicted = await manager.evict_lru()

        assert evicted == 1
        assert "old" not in manager
        assert "new" in manager

    @pytest.mark.asyncio
    async def test_remove(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        obj = await manager.put("k", b"x", clock())

        assert await manager.remove("k") is True
        assert await manager.remove("k") is False
        assert not (manager.directory / obj.file_name).exists()

    @pytest.mark.asyncio
    async def test_empty_cache_deletes_files(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        await manager.put("a", b"a", clock())
        await manager.put("b", b"b", clock())
        (manager.directory / "orphan.part").write_bytes(b"x")

        await manager.empty_cache()

        assert len(manager) == 0
        assert list(manager.directory.iterdir()) == []


class TestReadThrough:
    """get_file: miss, hit, revalidation"""

    @pytest.mark.asyncio
    async def test_miss_downloads_and_persists(self, tmp_path):
        manager, transport, _ = build_manager(tmp_path)

        data = await manager.get_file(URL)

        assert data == PNG_BYTES
        assert transport.call_count == 1
        obj = await manager.get(URL)
        assert obj.file_name.endswith(".png")
        assert manager.get_stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_fresh_hit_skips_network(self, tmp_path):
        manager, transport, _ = build_manager(tmp_path)

        await manager.get_file(URL)
        data = await manager.get_file(URL + "?token=rotated")

        assert data == PNG_BYTES
        assert transport.call_count == 1
        assert manager.get_stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_min_fresh_applies_to_no_cache_responses(self, tmp_path):
        manager, transport, clock = build_manager(
            tmp_path, [respond(headers={"Cache-Control": "no-cache"})]
        )

        await manager.get_file(URL)
        clock.offset = POLICY.min_fresh - timedelta(minutes=1)
        await manager.get_file(URL)

        assert transport.call_count == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_revalidated_with_etag(self, tmp_path):
        manager, transport, clock = build_manager(tmp_path, [
            make_response(headers={"ETag": '"v1"'}),
            make_response(status_code=304, body=b""),
        ])

        await manager.get_file(URL)
        clock.offset = POLICY.max_fresh + timedelta(days=1)
        data = await manager.get_file(URL)

        assert data == PNG_BYTES
        assert transport.calls[1][1]["If-None-Match"] == '"v1"'
        obj = await manager.get(URL)
        assert obj.e_tag == '"v1"'
        assert obj.valid_till > datetime.now(timezone.utc)
        assert manager.get_stats()["not_modified"] == 1

    @pytest.mark.asyncio
    async def test_changed_content_replaces_entry(self, tmp_path):
        manager, _, clock = build_manager(tmp_path, [
            make_response(headers={"ETag": '"v1"'}),
            make_response(body=JPEG_BYTES, headers={"ETag": '"v2"', "Content-Type": "image/jpeg"}),
        ])

        await manager.get_file(URL)
        clock.offset = POLICY.max_fresh + timedelta(days=1)
        data = await manager.get_file(URL)

        assert data == JPEG_BYTES
        obj = await manager.get(URL)
        assert obj.e_tag == '"v2"'
        assert obj.file_name.endswith(".jpg")
        assert len(list(manager.directory.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_offline_revalidation_serves_cached_bytes(self, tmp_path):
        manager, transport, clock = build_manager(tmp_path, [
            make_response(headers={"ETag": '"v1"'}),
            respond(status_code=503),
        ])

        await manager.get_file(URL)
        clock.offset = POLICY.max_fresh + timedelta(days=1)
        data = await manager.get_file(URL)

        assert data == PNG_BYTES
        assert transport.call_count == 1 + POLICY.max_retry_attempts
        assert manager.fetcher.get_stats()["stale_served"] == 1

    @pytest.mark.asyncio
    async def test_not_modified_without_cached_copy(self, tmp_path):
        manager, _, _ = build_manager(tmp_path, [make_response(status_code=304, body=b"")])

        with pytest.raises(HttpStatusError):
            await manager.get_file(URL, headers={"If-None-Match": '"zzz"'})

    @pytest.mark.asyncio
    async def test_explicit_key(self, tmp_path):
        manager, _, _ = build_manager(tmp_path)

        await manager.get_file(URL, key="u:42|avatar")

        assert "u:42|avatar" in manager
        assert URL not in manager


class TestBucketConcurrency:
    """Per-bucket download limiter"""

    @pytest.mark.asyncio
    async def test_downloads_are_limited_per_bucket(self, tmp_path):
        policy = replace(POLICY, max_concurrent_fetches=1)
        manager, transport, _ = build_manager(tmp_path, [respond()], policy=policy, delay=0.02)

        await asyncio.gather(*(manager.get_file(f"{URL}?i={i}") for i in range(4)))

        assert transport.call_count == 4
        assert transport.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_one_url_download_once(self, tmp_path):
        assert POLICY.max_concurrent_fetches > 1
        manager, transport, _ = build_manager(tmp_path, [respond()], delay=0.02)

        results = await asyncio.gather(*(manager.get_file(URL) for _ in range(3)))

        assert results == [PNG_BYTES] * 3
        assert transport.call_count == 1
        assert manager.get_stats()["coalesced"] == 2
        assert manager._in_flight == {}

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_download(self, tmp_path):
        manager, transport, _ = build_manager(tmp_path, [respond()], delay=0.05)

        first = asyncio.ensure_future(manager.get_file(URL))
        second = asyncio.ensure_future(manager.get_file(URL))
        await asyncio.sleep(0.01)
        first.cancel()

        assert await second == PNG_BYTES
        assert first.cancelled()
        assert transport.call_count == 1
        assert URL in manager

    @pytest.mark.asyncio
    async def test_shared_download_failure_reaches_every_caller(self, tmp_path):
        manager, transport, _ = build_manager(tmp_path, [respond(status_code=404)], delay=0.02)

        results = await asyncio.gather(*(manager.get_file(URL) for _ in range(3)), return_exceptions=True)

        assert all(isinstance(r, HttpStatusError) for r in results)
        assert transport.call_count == 1
        assert manager._in_flight == {}

    @pytest.mark.asyncio
    async def test_concurrent_writes_to_one_key(self, tmp_path):
        manager, _, clock = build_manager(tmp_path)
        valid_till = clock() + timedelta(days=1)

        await asyncio.gather(*(
            manager.put("k1", bytes([i]) * 64, valid_till, file_extension=".png") for i in range(8)
        ))

        assert len(manager) == 1
        files = list(manager.directory.iterdir())
        assert [f.name for f in files] == [file_name_for("k1", ".png")]
        assert len(files[0].read_bytes()) == 64

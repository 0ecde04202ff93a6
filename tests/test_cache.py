"""
Tests for the tiered cache.

Integrity: a tampered or over-age entry must behave as a miss and be
purged. Promotion: a hit in a slower tier warms the faster ones.
Cleanup: recently created video entries outlive their nominal expiry.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis

from src.config import CacheSettings
from src.db.database import get_db
from src.db.models import CachePriority
from src.db.repositories import CacheRepository
from src.services.cache import CacheStore, PrefetchQueue, compute_checksum, make_key
from src.services.errors import PersistenceFailure
from src.services.stores import MemoryStore


@pytest.fixture
def cold_only(clock):
    return CacheStore(hot=None, warm=None, settings=CacheSettings(), clock=clock)


def failing_store():
    store = MagicMock()
    store.set.side_effect = redis.RedisError("down")
    store.get.side_effect = redis.RedisError("down")
    return store


class TestIntegrity:
    def test_set_then_get_returns_payload(self, cold_only):
        key = make_key("youtube", "video", "abc")
        data = {"title": "Launch", "tags": ["a", "b"]}
        assert cold_only.set(key, data, "video") is True

        assert cold_only.get(key) == data
        assert CacheRepository.get(key).checksum == compute_checksum(data)

    def test_tampered_payload_is_a_miss_and_purged(self, cold_only):
        key = make_key("youtube", "video", "abc")
        cold_only.set(key, {"title": "original"}, "video")

        entry = CacheRepository.get(key)
        tampered = entry.payload.replace("original", "forged")
        with get_db() as conn:
            conn.execute("UPDATE cache_entries SET payload = ? WHERE cache_key = ?", (tampered, key))

        assert cold_only.get(key) is None
        assert CacheRepository.get(key) is None
        assert cold_only.get_stats()["by_type"]["video"]["purges"] == 1

    def test_unreadable_entry_is_purged(self, clock):
        hot = MemoryStore()
        cache = CacheStore(hot=hot, settings=CacheSettings(), clock=clock)
        key = make_key("youtube", "content", "UCx")
        hot.set(key, "not json")

        assert cache.get(key) is None
        assert hot.get(key) is None

    def test_entries_older_than_max_age_are_rejected(self, clock, cold_only):
        key = make_key("youtube", "content", "UCx")
        cold_only.set(key, [1, 2, 3], "content", ttl=30 * 86400)

        clock.advance(days=8)
        assert cold_only.get(key) is None
        assert CacheRepository.get(key) is None

    def test_expired_entry_is_a_miss(self, clock, cold_only):
        key = make_key("youtube", "api", "q")
        cold_only.set(key, {"x": 1}, "api")
        clock.advance(seconds=301)
        assert cold_only.get(key) is None


class TestTiers:
    def test_normal_writes_skip_cold_tier(self, clock):
        cache = CacheStore(hot=MemoryStore(), warm=MemoryStore(), clock=clock)
        key = make_key("youtube", "metadata", "UCx")
        cache.set(key, {"name": "x"}, "metadata")

        assert cache.hot.get(key) is not None
        assert cache.warm.get(key) is not None
        assert CacheRepository.get(key) is None

    def test_critical_writes_reach_every_tier(self, clock):
        cache = CacheStore(hot=MemoryStore(), warm=MemoryStore(), clock=clock)
        key = make_key("youtube", "video", "live1")
        cache.set(key, {"live": True}, "video", priority=CachePriority.CRITICAL)

        assert CacheRepository.get(key) is not None
        assert cache.hot.get(key) is not None

    def test_warm_hit_promotes_to_hot(self, clock):
        cache = CacheStore(hot=MemoryStore(), warm=MemoryStore(), clock=clock)
        key = make_key("youtube", "metadata", "UCx")
        cache.set(key, {"name": "x"}, "metadata")
        cache.hot.delete(key)

        assert cache.get(key) == {"name": "x"}
        assert cache.hot.get(key) is not None
        assert cache.get_stats()["tier_hits"] == {"warm": 1}

    def test_cold_hit_warms_both_faster_tiers(self, clock):
        cache = CacheStore(hot=MemoryStore(), warm=MemoryStore(), clock=clock)
        key = make_key("youtube", "video", "v1")
        cache.set(key, {"id": "v1"}, "video", priority=CachePriority.HIGH)
        cache.hot.delete(key)
        cache.warm.delete(key)

        assert cache.get(key) == {"id": "v1"}
        assert cache.hot.get(key) is not None
        assert cache.warm.get(key) is not None

    def test_failing_fast_tiers_fall_back_to_cold(self, clock):
        cache = CacheStore(hot=failing_store(), warm=failing_store(), clock=clock)
        key = make_key("youtube", "content", "UCx")

        assert cache.set(key, ["a"], "content") is True
        assert CacheRepository.get(key) is not None
        assert cache.get(key) == ["a"]

    def test_set_fails_only_when_every_tier_fails(self, clock):
        cache = CacheStore(hot=failing_store(), warm=failing_store(), clock=clock)
        with patch.object(CacheRepository, "replace", side_effect=PersistenceFailure("disk full")):
            assert cache.set(make_key("youtube", "content", "UCx"), ["a"], "content") is False

    def test_warm_failure_does_not_fail_get(self, clock):
        cache = CacheStore(hot=MemoryStore(), warm=failing_store(), clock=clock)
        key = make_key("youtube", "video", "v1")
        cache.set(key, {"id": "v1"}, "video", priority=CachePriority.CRITICAL)
        cache.hot.delete(key)

        assert cache.get(key) == {"id": "v1"}


class TestCleanup:
    def test_recent_video_entries_survive_expiry(self, clock, cold_only):
        video_key = make_key("youtube", "video", "v1")
        content_key = make_key("youtube", "content", "c1")
        cold_only.set(video_key, {"id": "v1"}, "video", ttl=60)
        cold_only.set(content_key, {"id": "c1"}, "content", ttl=60)

        clock.advance(hours=2)
        assert cold_only.cleanup() == 1
        assert CacheRepository.get(video_key) is not None
        assert CacheRepository.get(content_key) is None

    def test_old_video_entries_are_removed(self, clock, cold_only):
        video_key = make_key("youtube", "video", "v1")
        cold_only.set(video_key, {"id": "v1"}, "video", ttl=60)

        clock.advance(hours=25)
        assert cold_only.cleanup() == 1

    def test_invalidate_and_flush(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        video = make_key("youtube", "video", "v1")
        content = make_key("youtube", "content", "c1")
        cache.set(video, {"id": 1}, "video", priority=CachePriority.HIGH)
        cache.set(content, {"id": 2}, "content", priority=CachePriority.HIGH)

        assert cache.invalidate(video) is True
        assert cache.get(video) is None

        cache.flush("content")
        assert cache.get(content) is None

    def test_misses_do_not_grow_access_counts(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        for i in range(50):
            cache.get(make_key("youtube", "video", f"missing{i}"))

        assert cache._access_counts == {}

    def test_cleanup_forgets_expired_keys(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        for i in range(20):
            key = make_key("youtube", "api", f"q{i}")
            cache.set(key, {"n": i}, "api", ttl=60)
            cache.get(key)
        kept = make_key("youtube", "content", "UCa")
        cache.set(kept, ["x"], "content", ttl=3 * 86400)
        cache.get(kept)

        clock.advance(days=2)
        cache.cleanup()

        assert list(cache._known_keys) == [kept]
        assert list(cache._access_counts) == [kept]


class TestPrefetch:
    def test_late_cold_hit_enqueues_refresh(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        key = make_key("youtube", "video", "v1")
        cache.set(key, {"id": "v1"}, "video", priority=CachePriority.HIGH, ttl=100)
        cache.hot.delete(key)

        clock.advance(seconds=80)
        cache.get(key)
        assert key in cache.prefetch_queue

    def test_related_keys_are_capped(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        key = make_key("youtube", "content", "UCx")
        related = [make_key("youtube", "video", f"v{i}") for i in range(8)]
        cache.set(key, ["x"], "content", priority=CachePriority.HIGH, related_keys=related)
        cache.hot.delete(key)

        cache.get(key)
        queued = [k for k in related if k in cache.prefetch_queue]
        assert len(queued) == 5

    def test_queue_is_bounded_and_evicts_lowest_priority(self, clock):
        queue = PrefetchQueue(max_size=2)
        assert queue.enqueue("a", "video", "miss", 0, clock.now)
        assert queue.enqueue("b", "video", "miss", 5, clock.now)
        assert queue.enqueue("c", "video", "refresh", 0, clock.now)

        assert len(queue) == 2
        assert "a" not in queue
        assert queue.enqueue("d", "video", "miss", 0, clock.now) is False

    def test_access_bonus_is_capped(self, clock):
        queue = PrefetchQueue()
        queue.enqueue("hot", "video", "miss", 500, clock.now)
        queue.enqueue("fresh", "video", "refresh", 0, clock.now)
        first, second = queue.pop_batch(2)
        assert first.key == "hot"
        assert first.priority == 40
        assert second.priority == 30

    @pytest.mark.asyncio
    async def test_process_queue_loads_and_drops_stale_tasks(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        stale = make_key("youtube", "video", "old")
        fresh = make_key("youtube", "video", "new")
        cache.get(stale)
        clock.advance(hours=2)
        cache.get(fresh)

        loader = AsyncMock(return_value={"loaded": True})
        assert await cache.process_prefetch_queue(loader) == 1
        loader.assert_awaited_once_with(fresh, "video")
        assert cache.get(fresh) == {"loaded": True}

    @pytest.mark.asyncio
    async def test_process_queue_skips_already_cached_keys(self, clock):
        cache = CacheStore(hot=MemoryStore(), clock=clock)
        key = make_key("youtube", "video", "v1")
        cache.get(key)
        cache.set(key, {"id": "v1"}, "video")

        loader = AsyncMock()
        assert await cache.process_prefetch_queue(loader) == 0
        loader.assert_not_awaited()

import hashlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import redis

from src.config import CacheSettings
from src.db.models import CacheEntry, CachePriority
from src.db.repositories import CacheRepository
from src.services.errors import PersistenceFailure
from src.services.stores import KeyValueStore

logger = logging.getLogger(__name__)

TIER_ERRORS = (redis.RedisError, PersistenceFailure)

PREFETCH_REASON_PRIORITY = {
    "miss": 10,
    "related": 20,
    "refresh": 30,
}


def make_key(platform: str, content_type: str, content_id: str) -> str:
    return f"sf:{platform}:{content_type}:{content_id}"


def content_type_of(key: str) -> str:
    parts = key.split(":")
    return parts[2] if len(parts) >= 4 else "content"


def compute_checksum(data: Any) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class PrefetchTask:
    key: str
    content_type: str
    reason: str
    priority: int
    enqueued_at: datetime


class PrefetchQueue:
    """Bounded priority queue of cache keys worth loading ahead of demand."""

    def __init__(self, max_size: int = 100, max_access_bonus: int = 30):
        self.max_size = max_size
        self.max_access_bonus = max_access_bonus
        self._tasks: dict[str, PrefetchTask] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def enqueue(
        self,
        key: str,
        content_type: str,
        reason: str,
        access_count: int,
        now: datetime,
    ) -> bool:
        priority = PREFETCH_REASON_PRIORITY.get(reason, 10) + min(self.max_access_bonus, access_count)

        existing = self._tasks.get(key)
        if existing:
            if priority > existing.priority:
                existing.priority = priority
                existing.reason = reason
            return False

        if len(self._tasks) >= self.max_size:
            lowest = min(self._tasks.values(), key=lambda task: task.priority)
            if lowest.priority >= priority:
                return False
            del self._tasks[lowest.key]

        self._tasks[key] = PrefetchTask(key, content_type, reason, priority, now)
        return True

    def pop_batch(self, size: int) -> list[PrefetchTask]:
        ordered = sorted(self._tasks.values(), key=lambda task: (-task.priority, task.enqueued_at))
        batch = ordered[:size]
        for task in batch:
            del self._tasks[task.key]
        return batch


@dataclass
class _Envelope:
    data: Any
    timestamp: float
    checksum: str
    priority: str
    content_type: str
    expires_at: float
    related_keys: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(
            {
                "data": self.data,
                "timestamp": self.timestamp,
                "checksum": self.checksum,
                "priority": self.priority,
                "content_type": self.content_type,
                "expires_at": self.expires_at,
                "related_keys": self.related_keys,
            },
            default=str,
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["_Envelope"]:
        try:
            payload = json.loads(raw)
            return cls(
                data=payload["data"],
                timestamp=float(payload["timestamp"]),
                checksum=payload["checksum"],
                priority=payload.get("priority", CachePriority.NORMAL.value),
                content_type=payload.get("content_type", "content"),
                expires_at=float(payload["expires_at"]),
                related_keys=list(payload.get("related_keys") or []),
            )
        except (ValueError, KeyError, TypeError):
            return None


class CacheStore:
    """Three-tier cache: hot (memory), warm (redis), cold (sqlite).

    Either fast tier may be absent. Tier failures are logged and never
    surface from get(); set() fails only when no tier accepted the write.
    """

    def __init__(
        self,
        hot: Optional[KeyValueStore] = None,
        warm: Optional[KeyValueStore] = None,
        settings: Optional[CacheSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.hot = hot
        self.warm = warm
        self.settings = settings or CacheSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.prefetch_queue = PrefetchQueue(
            max_size=self.settings.prefetch_queue_size,
            max_access_bonus=self.settings.prefetch_max_access_bonus,
        )
        self._access_counts: dict[str, int] = {}
        # key -> (content type, expiry timestamp) of entries written by this process
        self._known_keys: dict[str, tuple[str, float]] = {}
        self._stats: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._tier_hits: dict[str, int] = defaultdict(int)

    def ttl_for(self, content_type: str) -> int:
        return self.settings.ttls.get(content_type, self.settings.default_ttl)

    def _fast_tiers(self) -> list[tuple[str, KeyValueStore]]:
        tiers = []
        if self.hot is not None:
            tiers.append(("hot", self.hot))
        if self.warm is not None:
            tiers.append(("warm", self.warm))
        return tiers

    def _validate(self, envelope: Optional[_Envelope], now: datetime) -> Optional[str]:
        """Return the reason an envelope is unusable, or None when it is valid."""
        if envelope is None:
            return "unreadable"
        if compute_checksum(envelope.data) != envelope.checksum:
            return "checksum mismatch"
        age = now.timestamp() - envelope.timestamp
        if age > self.settings.max_entry_age_days * 86400:
            return "older than maximum age"
        if now.timestamp() >= envelope.expires_at:
            return "expired"
        return None

    def _in_video_grace(self, envelope: _Envelope, now: datetime) -> bool:
        return (
            envelope.content_type == "video"
            and now.timestamp() - envelope.timestamp < self.settings.video_grace_hours * 3600
        )

    def _read_tier(
        self, name: str, store: Optional[KeyValueStore], key: str
    ) -> tuple[bool, Optional[_Envelope]]:
        """Return (found, envelope). A found entry with no envelope is unreadable."""
        try:
            if store is None:
                entry = CacheRepository.get(key)
                if entry is None:
                    return False, None
                envelope = _Envelope.from_json(entry.payload)
                if envelope is not None:
                    # the row checksum is authoritative for the durable tier
                    envelope.checksum = entry.checksum
                return True, envelope
            raw = store.get(key)
        except TIER_ERRORS as e:
            logger.warning(f"Cache {name} tier read failed for {key}: {e}")
            return False, None
        if raw is None:
            return False, None
        return True, _Envelope.from_json(raw)

    def _delete_tier(self, name: str, store: Optional[KeyValueStore], key: str) -> bool:
        try:
            if store is None:
                return CacheRepository.delete(key)
            return store.delete(key)
        except TIER_ERRORS as e:
            logger.warning(f"Cache {name} tier delete failed for {key}: {e}")
            return False

    def _write_tier(
        self,
        name: str,
        store: Optional[KeyValueStore],
        key: str,
        envelope: _Envelope,
        ttl: int,
    ) -> bool:
        try:
            if store is None:
                CacheRepository.replace(
                    CacheEntry(
                        key=key,
                        payload=envelope.to_json(),
                        checksum=envelope.checksum,
                        created_at=datetime.fromtimestamp(envelope.timestamp, timezone.utc),
                        expires_at=datetime.fromtimestamp(envelope.expires_at, timezone.utc),
                        content_type=envelope.content_type,
                        tier_hint="cold",
                    )
                )
            else:
                store.set(key, envelope.to_json(), ttl=max(1, ttl))
            return True
        except TIER_ERRORS as e:
            logger.warning(f"Cache {name} tier write failed for {key}: {e}")
            return False

    def get(self, key: str) -> Optional[Any]:
        """Return cached data for `key`, or None on a miss."""
        now = self._clock()
        content_type = content_type_of(key)
        tiers: list[tuple[str, Optional[KeyValueStore]]] = [*self._fast_tiers(), ("cold", None)]

        for index, (name, store) in enumerate(tiers):
            found, envelope = self._read_tier(name, store, key)
            if not found:
                continue

            problem = self._validate(envelope, now)
            if problem:
                if problem == "expired" and name == "cold" and self._in_video_grace(envelope, now):
                    continue
                logger.warning(f"Purging {name} cache entry {key}: {problem}")
                self._delete_tier(name, store, key)
                self._stats[content_type]["purges"] += 1
                continue

            self._access_counts[key] = self._access_counts.get(key, 0) + 1
            self._known_keys.setdefault(key, (envelope.content_type, envelope.expires_at))
            self._stats[content_type]["hits"] += 1
            self._tier_hits[name] += 1
            logger.debug(f"Cache hit in {name} tier: {key}")

            if index > 0:
                remaining_ttl = int(envelope.expires_at - now.timestamp())
                for upper_name, upper_store in tiers[:index]:
                    if self._write_tier(upper_name, upper_store, key, envelope, remaining_ttl):
                        self._stats[content_type]["warms"] += 1
                self.check_prefetch_opportunity(key, envelope, now)
            return envelope.data

        self._stats[content_type]["misses"] += 1
        self.prefetch_queue.enqueue(key, content_type, "miss", self._access_counts.get(key, 0), now)
        return None

    def check_prefetch_opportunity(self, key: str, envelope: _Envelope, now: datetime) -> None:
        lifetime = envelope.expires_at - envelope.timestamp
        if lifetime > 0:
            elapsed = (now.timestamp() - envelope.timestamp) / lifetime
            if elapsed >= self.settings.refresh_threshold:
                self.prefetch_queue.enqueue(
                    key, envelope.content_type, "refresh", self._access_counts.get(key, 0), now
                )

        for related in envelope.related_keys[: self.settings.max_related_keys]:
            self.prefetch_queue.enqueue(
                related, content_type_of(related), "related", self._access_counts.get(related, 0), now
            )

    def set(
        self,
        key: str,
        data: Any,
        content_type: Optional[str] = None,
        priority: CachePriority = CachePriority.NORMAL,
        related_keys: Optional[list[str]] = None,
        ttl: Optional[int] = None,
    ) -> bool:
        now = self._clock()
        content_type = content_type or content_type_of(key)
        ttl = ttl or self.ttl_for(content_type)
        envelope = _Envelope(
            data=data,
            timestamp=now.timestamp(),
            checksum=compute_checksum(data),
            priority=priority.value,
            content_type=content_type,
            expires_at=(now + timedelta(seconds=ttl)).timestamp(),
            related_keys=list(related_keys or [])[: self.settings.max_related_keys],
        )

        written = [
            self._write_tier(name, store, key, envelope, ttl) for name, store in self._fast_tiers()
        ]
        if priority in (CachePriority.CRITICAL, CachePriority.HIGH) or not any(written):
            written.append(self._write_tier("cold", None, key, envelope, ttl))

        if not any(written):
            logger.error(f"Cache write failed in every tier: {key}")
            return False

        self._known_keys[key] = (content_type, envelope.expires_at)
        self._stats[content_type]["sets"] += 1
        return True

    def invalidate(self, key: str) -> bool:
        removed = False
        for name, store in [*self._fast_tiers(), ("cold", None)]:
            removed = self._delete_tier(name, store, key) or removed
        self._known_keys.pop(key, None)
        self._access_counts.pop(key, None)
        if removed:
            self._stats[content_type_of(key)]["deletes"] += 1
        return removed

    def flush(self, content_type: Optional[str] = None) -> int:
        """Drop every entry, or only those of one content type."""
        keys = [
            key for key, (key_type, _) in self._known_keys.items()
            if content_type is None or key_type == content_type
        ]
        for key in keys:
            for name, store in self._fast_tiers():
                self._delete_tier(name, store, key)
            self._known_keys.pop(key, None)
            self._access_counts.pop(key, None)

        try:
            removed = CacheRepository.delete_by_type(content_type)
        except PersistenceFailure as e:
            logger.warning(f"Cache cold tier flush failed: {e}")
            removed = 0
        logger.info(f"Flushed cache ({content_type or 'all types'}): {max(removed, len(keys))} entries")
        return max(removed, len(keys))

    def cleanup(self) -> int:
        """Delete expired cold entries, sparing recent video entries.

        Also forgets access counts and known keys of entries that have expired.
        """
        now = self._clock()
        grace_cutoff = now - timedelta(hours=self.settings.video_grace_hours)
        removed = CacheRepository.delete_expired(now, "video", grace_cutoff)
        if removed:
            logger.info(f"Cache cleanup removed {removed} expired entries")

        grace_seconds = self.settings.video_grace_hours * 3600
        for key, (key_type, expires_at) in list(self._known_keys.items()):
            lifetime_end = expires_at + grace_seconds if key_type == "video" else expires_at
            if now.timestamp() >= lifetime_end:
                del self._known_keys[key]
        for key in [key for key in list(self._access_counts) if key not in self._known_keys]:
            del self._access_counts[key]
        return removed

    def _is_fresh(self, key: str, now: datetime) -> bool:
        for name, store in [*self._fast_tiers(), ("cold", None)]:
            _, envelope = self._read_tier(name, store, key)
            if envelope is None or self._validate(envelope, now):
                continue
            lifetime = envelope.expires_at - envelope.timestamp
            elapsed = (now.timestamp() - envelope.timestamp) / lifetime if lifetime > 0 else 1.0
            return elapsed < self.settings.refresh_threshold
        return False

    def due_prefetch_tasks(self, batch_size: Optional[int] = None) -> list[PrefetchTask]:
        """Pop a batch of queued keys, dropping stale tasks and keys still fresh in cache."""
        now = self._clock()
        batch = self.prefetch_queue.pop_batch(batch_size or self.settings.prefetch_batch_size)
        due = []
        for task in batch:
            age = (now - task.enqueued_at).total_seconds()
            if age > self.settings.prefetch_max_age_seconds:
                logger.debug(f"Dropping stale prefetch task {task.key} ({age:.0f}s old)")
                continue
            if self._is_fresh(task.key, now):
                continue
            due.append(task)
        return due

    async def process_prefetch_queue(
        self,
        loader: Callable[[str, str], Awaitable[Optional[Any]]],
        batch_size: Optional[int] = None,
    ) -> int:
        """Load a batch of queued keys through `loader(key, content_type)`.

        Returns the number of entries written.
        """
        tasks = self.due_prefetch_tasks(batch_size)
        loaded = 0
        for task in tasks:
            data = await loader(task.key, task.content_type)
            if data is None:
                continue
            if self.set(task.key, data, task.content_type):
                loaded += 1

        if tasks:
            logger.info(f"Prefetch processed {len(tasks)} tasks, loaded {loaded}")
        return loaded

    def get_stats(self) -> dict:
        by_type = {content_type: dict(counters) for content_type, counters in self._stats.items()}
        hits = sum(counters.get("hits", 0) for counters in by_type.values())
        misses = sum(counters.get("misses", 0) for counters in by_type.values())
        total = hits + misses
        return {
            "by_type": by_type,
            "tier_hits": dict(self._tier_hits),
            "hit_rate": round(hits / total * 100, 2) if total else 0.0,
            "prefetch_queue": len(self.prefetch_queue),
            "tiers": [name for name, _ in self._fast_tiers()] + ["cold"],
        }

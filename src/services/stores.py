import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import redis

from src.db.repositories import KeyValueRepository

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal string key/value store with TTLs and atomic counters."""

    name = "store"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        """Add `amount` and return the new value. `ttl` applies only when the key is created."""

    def ttl_remaining(self, key: str) -> Optional[int]:
        return None


class MemoryStore(KeyValueStore):
    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[str, Optional[float]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key)
            return item[0] if item else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        with self._lock:
            expires_at = self._clock() + ttl if ttl else None
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        with self._lock:
            item = self._live(key)
            if item is None:
                value = amount
                expires_at = self._clock() + ttl if ttl else None
            else:
                value = int(item[0]) + amount
                expires_at = item[1]
            self._data[key] = (str(value), expires_at)
            return value

    def ttl_remaining(self, key: str) -> Optional[int]:
        with self._lock:
            item = self._live(key)
            if item is None or item[1] is None:
                return None
            return max(0, int(item[1] - self._clock()))

    def keys(self) -> list[str]:
        with self._lock:
            return [key for key in list(self._data) if self._live(key)]


class RedisStore(KeyValueStore):
    name = "redis"

    def __init__(self, url: str = "", prefix: str = "sf", client: Optional[redis.Redis] = None):
        self.prefix = prefix
        self.client = client or redis.Redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[str]:
        return self.client.get(self._key(key))

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            self.client.setex(self._key(key), ttl, value)
        else:
            self.client.set(self._key(key), value)

    def delete(self, key: str) -> bool:
        return self.client.delete(self._key(key)) > 0

    def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        full_key = self._key(key)
        value = int(self.client.incrby(full_key, amount))
        if ttl and self.client.ttl(full_key) < 0:
            self.client.expire(full_key, ttl)
        return value

    def ttl_remaining(self, key: str) -> Optional[int]:
        remaining = self.client.ttl(self._key(key))
        return remaining if remaining >= 0 else None


class SqliteStore(KeyValueStore):
    """Durable store on the kv_store table."""

    name = "sqlite"

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._clock = clock

    def _expiry(self, ttl: Optional[int]) -> Optional[datetime]:
        return self._clock() + timedelta(seconds=ttl) if ttl else None

    def get(self, key: str) -> Optional[str]:
        return KeyValueRepository.get(key, self._clock())

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        KeyValueRepository.set(key, value, self._expiry(ttl))

    def delete(self, key: str) -> bool:
        return KeyValueRepository.delete(key)

    def incr(self, key: str, amount: int = 1, ttl: Optional[int] = None) -> int:
        return KeyValueRepository.incr(key, amount, self._clock(), self._expiry(ttl))

    def purge_expired(self) -> int:
        removed = KeyValueRepository.delete_expired(self._clock())
        if removed:
            logger.info(f"Purged {removed} expired store keys")
        return removed

"""Counter store for rate-limit windows and ban state.

Two backings share one interface: an in-process store with sharded locks for
single-instance deployments and tests, and a Redis store for deployments with
several API workers or that need the state to survive a restart.
"""

import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import redis

from accessguard.core.clock import Clock, system_clock
from accessguard.core.exceptions import StoreUnavailableError

logger = logging.getLogger("accessguard.store")

# (allowed, count in window after the call, seconds until a slot frees up)
HitResult = Tuple[bool, int, float]


class CounterStore(ABC):
    """Atomic primitives the rate limiter and ban list are built on.

    Implementations raise StoreUnavailableError when the backing cannot be
    reached.
    """

    @abstractmethod
    def hit(self, key: str, window_seconds: float, limit: int, ttl_seconds: float) -> HitResult:
        """Record a hit in the sliding window at ``key`` unless it is full."""
        ...

    @abstractmethod
    def incr(self, key: str, ttl_seconds: float) -> int:
        """Increment a counter; the TTL starts with the first increment."""
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        ...

    @abstractmethod
    def keys(self, prefix: str) -> List[str]:
        """Live keys starting with ``prefix``."""
        ...

    @abstractmethod
    def ping(self) -> bool:
        ...

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get(key)
        if raw:
            return json.loads(raw)
        return None

    def set_json(self, key: str, value: Any, ttl_seconds: float) -> None:
        self.set(key, json.dumps(value, default=str), ttl_seconds)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class _Shard:
    def __init__(self):
        self.lock = threading.Lock()
        self.data: Dict[str, _Entry] = {}

    def live(self, key: str, now: float) -> Optional[_Entry]:
        entry = self.data.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self.data[key]
            return None
        return entry


class InMemoryCounterStore(CounterStore):
    """Process-local store. Keys are spread over shards, each with its own lock."""

    def __init__(self, clock: Clock = system_clock, shards: int = 16, sweep_interval: float = 60.0):
        self._clock = clock
        self._shards = [_Shard() for _ in range(shards)]
        self._sweep_interval = sweep_interval
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def hit(self, key: str, window_seconds: float, limit: int, ttl_seconds: float) -> HitResult:
        now = self._clock()
        self._maybe_sweep(now)
        shard = self._shard(key)
        with shard.lock:
            entry = shard.live(key, now)
            log = entry.value if entry else deque()
            cutoff = now - window_seconds
            while log and log[0] <= cutoff:
                log.popleft()

            if len(log) >= limit:
                retry_after = log[0] + window_seconds - now
                shard.data[key] = _Entry(log, now + ttl_seconds)
                return False, len(log), max(retry_after, 0.0)

            log.append(now)
            shard.data[key] = _Entry(log, now + ttl_seconds)
            return True, len(log), 0.0

    def incr(self, key: str, ttl_seconds: float) -> int:
        now = self._clock()
        self._maybe_sweep(now)
        shard = self._shard(key)
        with shard.lock:
            entry = shard.live(key, now)
            if entry is None:
                entry = _Entry(0, now + ttl_seconds)
                shard.data[key] = entry
            entry.value += 1
            return entry.value

    def get(self, key: str) -> Optional[str]:
        shard = self._shard(key)
        with shard.lock:
            entry = shard.live(key, self._clock())
            return entry.value if entry else None

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        shard = self._shard(key)
        with shard.lock:
            shard.data[key] = _Entry(value, self._clock() + ttl_seconds)

    def delete(self, *keys: str) -> int:
        now = self._clock()
        deleted = 0
        for key in keys:
            shard = self._shard(key)
            with shard.lock:
                if shard.live(key, now) is not None:
                    del shard.data[key]
                    deleted += 1
        return deleted

    def keys(self, prefix: str) -> List[str]:
        now = self._clock()
        found = []
        for shard in self._shards:
            with shard.lock:
                found.extend(
                    key for key, entry in shard.data.items()
                    if key.startswith(prefix) and entry.expires_at > now
                )
        return sorted(found)

    def ping(self) -> bool:
        return True

    def sweep(self) -> int:
        """Drop every expired key. Returns the number removed."""
        now = self._clock()
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [key for key, entry in shard.data.items() if entry.expires_at <= now]
                for key in expired:
                    del shard.data[key]
                removed += len(expired)
        return removed

    def size(self) -> int:
        return sum(len(shard.data) for shard in self._shards)

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = now
            removed = self.sweep()
            if removed:
                logger.debug("Swept %d expired counter key(s)", removed)
        finally:
            self._sweep_lock.release()


# Sliding-log check-and-add; runs atomically inside Redis.
_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, count, oldest[2]}
end
redis.call('ZADD', key, now, ARGV[5])
redis.call('EXPIRE', key, ttl)
return {1, count + 1, '0'}
"""


class RedisCounterStore(CounterStore):
    """Redis-backed store shared by every API worker."""

    def __init__(
        self,
        url: str = None,
        prefix: str = "accessguard",
        clock: Clock = system_clock,
        client: Optional[redis.Redis] = None,
    ):
        self._url = url
        self._prefix = prefix
        self._clock = clock
        self._client = client
        self._script = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                max_connections=100,
                socket_timeout=2,
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def hit(self, key: str, window_seconds: float, limit: int, ttl_seconds: float) -> HitResult:
        now = self._clock()
        try:
            if self._script is None:
                self._script = self.client.register_script(_SLIDING_WINDOW_LUA)
            allowed, count, oldest = self._script(
                keys=[self._key(key)],
                args=[now, window_seconds, limit, int(ttl_seconds) + 1, f"{now}:{uuid.uuid4().hex}"],
            )
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")

        if int(allowed):
            return True, int(count), 0.0
        retry_after = float(oldest) + window_seconds - now
        return False, int(count), max(retry_after, 0.0)

    def incr(self, key: str, ttl_seconds: float) -> int:
        name = self._key(key)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(name, 0, ex=int(ttl_seconds), nx=True)
            pipe.incr(name)
            _, value = pipe.execute()
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")
        return int(value)

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        try:
            self.client.set(self._key(key), value, ex=max(int(ttl_seconds), 1))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*(self._key(k) for k in keys)))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")

    def keys(self, prefix: str) -> List[str]:
        strip = len(self._prefix) + 1
        try:
            return sorted(
                name[strip:]
                for name in self.client.scan_iter(match=f"{self._key(prefix)}*", count=500)
            )
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Counter store unavailable: {e}")

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


def build_counter_store(settings, clock: Clock = system_clock) -> CounterStore:
    """Store selected by ``COUNTER_BACKEND``."""
    if settings.COUNTER_BACKEND == "redis":
        logger.info("Using Redis counter store at %s", settings.REDIS_URL)
        return RedisCounterStore(settings.REDIS_URL, prefix=settings.COUNTER_KEY_PREFIX, clock=clock)
    if settings.COUNTER_BACKEND != "memory":
        raise ValueError(f"Unknown COUNTER_BACKEND: {settings.COUNTER_BACKEND}")
    return InMemoryCounterStore(clock=clock)

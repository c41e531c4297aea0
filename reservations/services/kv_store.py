"""
Ephemeral key-value store for reservation state.

Every compare-then-mutate primitive the engine relies on is a single method
here, so correctness never depends on a caller doing read-then-write:

- set_if_absent: slot lock acquisition (SET NX EX)
- compare_and_delete: owner-checked lock release and one-time code consumption
- compare_and_swap: draft state transitions
- increment: attempt counters that get their TTL on creation
- reserve_in_window: sliding-window rate limiting

Redis Key Schema (owned by the services, listed here for reference):
    slotlock:{tenant}:{doctor}:{slot_start_utc} - owning session id
    booking:draft:{booking_id}                  - draft JSON
    otp:{booking_id}                            - code hash
    otp:attempts:{booking_id}                   - failed verification counter
    otp:ratelimit:{contact_hash}                - sorted set of generation times

Two backends:
- RedisKeyValueStore: redis.asyncio with registered Lua scripts
- InMemoryKeyValueStore: single-process store for tests and local development
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""

# Lua script for atomic compare-and-swap on the raw stored value
#
# Args:
#   KEYS[1] - key to update
#   ARGV[1] - expected current value
#   ARGV[2] - new value
#   ARGV[3] - ttl in seconds
#
# Returns:
#   1 - value matched and was replaced
#   0 - key missing or value changed underneath us
COMPARE_AND_SWAP = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
    return 1
else
    return 0
end
"""

# Counter that receives its TTL only when created, so retries never extend it
INCREMENT_WITH_TTL = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""

# Sliding window: trim, count, add if under limit. Returns the oldest score
# (as a string) so callers can compute retry-after.
#
# Args:
#   KEYS[1] - sorted set key
#   ARGV[1] - now (unix seconds, float)
#   ARGV[2] - window in seconds
#   ARGV[3] - limit
#   ARGV[4] - member to add
WINDOW_RESERVE = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
if count >= tonumber(ARGV[3]) then
    local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
    return {0, count, oldest[2]}
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], math.ceil(window))
return {1, count + 1, ARGV[1]}
"""


@dataclass(frozen=True)
class WindowReservation:
    """Outcome of a sliding-window reservation attempt."""
    allowed: bool
    count: int
    retry_after_seconds: int = 0


def _retry_after(oldest: float, window_seconds: int, now: float) -> int:
    return max(1, math.ceil(oldest + window_seconds - now))


class KeyValueStore:
    """Abstract ephemeral store. All methods are coroutines."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Write only if no live entry exists. Atomic."""
        raise NotImplementedError

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete only if the current value equals expected. Atomic."""
        raise NotImplementedError

    async def compare_and_swap(self, key: str, expected: str, new_value: str, ttl_seconds: int) -> bool:
        """Replace only if the current value equals expected. Atomic."""
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter; the TTL is applied only when the counter is created."""
        raise NotImplementedError

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds, -1 for no expiry, None if the key does not exist."""
        raise NotImplementedError

    async def reserve_in_window(
        self,
        key: str,
        member: str,
        window_seconds: int,
        limit: int
    ) -> WindowReservation:
        """Record one occurrence unless `limit` occurrences already fall inside the window."""
        raise NotImplementedError

    async def release_from_window(self, key: str, member: str) -> None:
        raise NotImplementedError


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store. Compare-then-mutate operations run as Lua scripts so
    they execute atomically on the server.

    Usage:
        store = RedisKeyValueStore(get_redis_client(settings))
        acquired = await store.set_if_absent("slotlock:...", session_id, 600)
    """

    def __init__(self, redis_client: Redis, clock: Callable[[], float] = time.time):
        """
        Args:
            redis_client: redis.asyncio client created with decode_responses=True
            clock: Wall clock used for sliding-window scores
        """
        self.redis = redis_client
        self._clock = clock
        self._compare_and_delete = redis_client.register_script(COMPARE_AND_DELETE)
        self._compare_and_swap = redis_client.register_script(COMPARE_AND_SWAP)
        self._increment = redis_client.register_script(INCREMENT_WITH_TTL)
        self._window_reserve = redis_client.register_script(WINDOW_RESERVE)

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self.redis.mget(list(keys))

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self.redis.set(key, value, ex=ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        # SET NX EX - set only if not exists, with expiry, in one command
        return bool(await self.redis.set(key, value, nx=True, ex=ttl_seconds))

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        result = await self._compare_and_delete(keys=[key], args=[expected])
        return int(result) == 1

    async def compare_and_swap(self, key: str, expected: str, new_value: str, ttl_seconds: int) -> bool:
        result = await self._compare_and_swap(keys=[key], args=[expected, new_value, ttl_seconds])
        return int(result) == 1

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.redis.delete(*keys))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        return int(await self._increment(keys=[key], args=[ttl_seconds]))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self.redis.ttl(key))
        if remaining == -2:
            return None
        return remaining

    async def reserve_in_window(
        self,
        key: str,
        member: str,
        window_seconds: int,
        limit: int
    ) -> WindowReservation:
        now = self._clock()
        allowed, count, oldest = await self._window_reserve(
            keys=[key],
            args=[now, window_seconds, limit, member]
        )
        if int(allowed):
            return WindowReservation(allowed=True, count=int(count))
        return WindowReservation(
            allowed=False,
            count=int(count),
            retry_after_seconds=_retry_after(float(oldest), window_seconds, now)
        )

    async def release_from_window(self, key: str, member: str) -> None:
        await self.redis.zrem(key, member)


class InMemoryKeyValueStore(KeyValueStore):
    """
    Single-process store with the same atomicity contract as Redis.

    All operations are serialized behind one asyncio.Lock and expiry is
    evaluated lazily against the injected clock, so tests can move time
    forward without sleeping. Not shared across processes - use Redis for
    any multi-worker deployment.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._windows: Dict[str, Dict[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _write(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._values[key] = (value, expires_at)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        async with self._lock:
            return [self._live(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            self._write(key, value, ttl_seconds)
            return True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._write(key, value, ttl_seconds)
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            del self._values[key]
            return True

    async def compare_and_swap(self, key: str, expected: str, new_value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            self._write(key, new_value, ttl_seconds)
            return True

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                if self._windows.pop(key, None) is not None:
                    removed += 1
            return removed

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            current = self._live(key)
            if current is None:
                self._write(key, "1", ttl_seconds)
                return 1
            value, expires_at = self._values[key]
            new_value = int(value) + 1
            self._values[key] = (str(new_value), expires_at)
            return new_value

    async def ttl(self, key: str) -> Optional[int]:
        async with self._lock:
            if self._live(key) is None:
                return None
            _, expires_at = self._values[key]
            if expires_at is None:
                return -1
            return max(0, math.ceil(expires_at - self._clock()))

    async def reserve_in_window(
        self,
        key: str,
        member: str,
        window_seconds: int,
        limit: int
    ) -> WindowReservation:
        async with self._lock:
            now = self._clock()
            cutoff = now - window_seconds
            entries = {
                m: score for m, score in self._windows.get(key, {}).items()
                if score > cutoff
            }
            if len(entries) >= limit:
                self._windows[key] = entries
                return WindowReservation(
                    allowed=False,
                    count=len(entries),
                    retry_after_seconds=_retry_after(min(entries.values()), window_seconds, now)
                )
            entries[member] = now
            self._windows[key] = entries
            return WindowReservation(allowed=True, count=len(entries))

    async def release_from_window(self, key: str, member: str) -> None:
        async with self._lock:
            self._windows.get(key, {}).pop(member, None)

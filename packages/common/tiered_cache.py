"""
Tiered Cache - In-process LRU tier in front of a shared Redis tier

Cache Strategy:
1. Local tier (per process): bounded LRU, sliding expiration (reset on every hit)
2. Shared tier (Redis, all processes): fixed TTL from write, reads never extend it
3. Read path: local → shared → miss (shared hits backfill local)
4. Write path: set() populates both tiers

Single-flight:
- In-process: one future per key, concurrent callers await the leader's result
- Cross-process: a Redis lease (SET NX PX) per key; losers poll for the value.
  The lease expires on its own, so a crashed holder can't wedge a key.
- Failed computations are never cached and markers are always cleared

Degraded mode:
- If Redis is unreachable, reads/writes/leases log `shared_cache_unavailable`
  and behave like a miss. Only delete() surfaces the error, since a partial
  invalidation would leave the shared tier serving the old value.
"""
import asyncio
import json
import time
import uuid
from collections import OrderedDict
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    Protocol,
    Set,
    Tuple,
    TypeVar,
)

import structlog
from pydantic import BaseModel
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from packages.common.errors import CacheUnavailableError

logger = structlog.get_logger()

V = TypeVar("V")


class CacheStats(BaseModel):
    """Tiered cache counters for monitoring"""
    hit_count: int = 0
    miss_count: int = 0
    hit_rate: float = 0.0
    local_items: int = 0
    shared_items: Optional[int] = None
    total_items: int = 0


class LocalTier:
    """
    Bounded in-process tier with sliding expiration.

    An entry expires after `sliding_seconds` without access; every hit
    resets the timer. On capacity pressure the least recently used entry goes.
    """

    def __init__(
        self,
        max_items: int = 10000,
        sliding_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_items = max_items
        self.sliding_seconds = sliding_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, last_access = entry
        now = self._clock()
        if now - last_access > self.sliding_seconds:
            del self._entries[key]
            return None

        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock())
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_items:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("local_cache_evicted", key=evicted_key)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop entries idle longer than the sliding window"""
        now = self._clock()
        expired = [
            key for key, (_, last_access) in self._entries.items()
            if now - last_access > self.sliding_seconds
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SharedTier(Protocol):
    """
    Protocol for the shared (cross-process) tier.

    Values are already-encoded strings. Every method raises
    CacheUnavailableError when the backend can't be reached.
    """

    async def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def acquire_lease(self, key: str, lease_seconds: float) -> Optional[str]:
        """Return a token if the lease was taken, None if someone else holds it"""
        ...

    async def release_lease(self, key: str, token: str) -> None:
        ...

    async def lease_exists(self, key: str) -> bool:
        ...

    async def count(self) -> int:
        ...

    async def close(self) -> None:
        ...


# Delete the lease only if we still own it (it may have expired and been re-taken)
_RELEASE_LEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisSharedTier:
    """
    Redis implementation of the shared tier.

    Keys:
    - <prefix><hash>        cached value, SET EX (fixed TTL from write)
    - <prefix>lease:<hash>  single-flight lease, SET NX PX with a random token
    """

    def __init__(self, client: aioredis.Redis, key_prefix: str = "bim:classification:"):
        self.client = client
        self.key_prefix = key_prefix
        self.lease_prefix = f"{key_prefix}lease:"
        self._release_script = client.register_script(_RELEASE_LEASE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, key_prefix: str = "bim:classification:") -> "RedisSharedTier":
        """Build from a redis:// URL (connection is lazy)"""
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            max_connections=20,
        )
        return cls(client, key_prefix=key_prefix)

    def _value_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _lease_key(self, key: str) -> str:
        return f"{self.lease_prefix}{key}"

    async def get_many(self, keys: List[str]) -> Dict[str, Optional[str]]:
        if not keys:
            return {}
        try:
            values = await self.client.mget([self._value_key(k) for k in keys])
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis MGET failed: {e}") from e
        return dict(zip(keys, values))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.client.set(self._value_key(key), value, ex=ttl_seconds)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis SET failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._value_key(key))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis DEL failed: {e}") from e

    async def acquire_lease(self, key: str, lease_seconds: float) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            acquired = await self.client.set(
                self._lease_key(key),
                token,
                nx=True,
                px=max(int(lease_seconds * 1000), 1),
            )
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis lease acquire failed: {e}") from e
        return token if acquired else None

    async def release_lease(self, key: str, token: str) -> None:
        try:
            await self._release_script(keys=[self._lease_key(key)], args=[token])
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis lease release failed: {e}") from e

    async def lease_exists(self, key: str) -> bool:
        try:
            return bool(await self.client.exists(self._lease_key(key)))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis EXISTS failed: {e}") from e

    async def count(self) -> int:
        """Number of cached values (SCAN, leases excluded)"""
        total = 0
        try:
            async for key in self.client.scan_iter(match=f"{self.key_prefix}*", count=1000):
                if not key.startswith(self.lease_prefix):
                    total += 1
        except (RedisError, OSError) as e:
            raise CacheUnavailableError(f"Redis SCAN failed: {e}") from e
        return total

    async def close(self) -> None:
        await self.client.aclose()


class TieredCache(Generic[V]):
    """
    Two-level cache with read-through lookups and single-flight computation.

    Usage:
        cache = TieredCache(LocalTier(), RedisSharedTier.from_url(url),
                            encode=lambda s: s.model_dump_json(),
                            decode=Suggestion.model_validate_json)
        found = await cache.get_many(hashes)
        value = await cache.get_or_compute(hash, lambda: classify(pattern))
    """

    def __init__(
        self,
        local: LocalTier,
        shared: Optional[SharedTier] = None,
        *,
        encode: Callable[[V], str] = json.dumps,
        decode: Callable[[str], V] = json.loads,
        shared_ttl_seconds: int = 86400,
        lease_seconds: float = 60.0,
        poll_interval_seconds: float = 0.1,
    ):
        self.local = local
        self.shared = shared
        self.encode = encode
        self.decode = decode
        self.shared_ttl_seconds = shared_ttl_seconds
        self.lease_seconds = lease_seconds
        self.poll_interval_seconds = poll_interval_seconds

        self._inflight: Dict[str, "asyncio.Future[V]"] = {}
        # Keys deleted while their compute was running; that result must not be written back
        self._invalidated: Set[str] = set()
        self._hits = 0
        self._misses = 0

    # ---- reads ------------------------------------------------------------------------

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[V]]:
        """
        Look up many keys: local first, then one shared round trip for the rest.

        Returns:
            Dict of every requested key → value, or None on a miss
        """
        keys = list(dict.fromkeys(keys))
        results: Dict[str, Optional[V]] = {}
        remaining = []

        for key in keys:
            value = self.local.get(key)
            results[key] = value
            if value is None:
                remaining.append(key)

        local_hits = len(keys) - len(remaining)
        shared_hits = 0

        if remaining:
            for key, value in (await self._shared_get_many(remaining)).items():
                self.local.set(key, value)
                results[key] = value
                shared_hits += 1

        misses = len(keys) - local_hits - shared_hits
        self._hits += local_hits + shared_hits
        self._misses += misses

        logger.debug("cache_lookup",
                     requested=len(keys),
                     local_hits=local_hits,
                     shared_hits=shared_hits,
                     misses=misses)

        return results

    async def get(self, key: str) -> Optional[V]:
        return (await self.get_many([key]))[key]

    # ---- writes -----------------------------------------------------------------------

    async def set(self, key: str, value: V) -> None:
        """Write to both tiers (local sliding expiry, shared fixed TTL)"""
        self.local.set(key, value)

        if self.shared is None:
            return

        try:
            await self.shared.set(key, self.encode(value), self.shared_ttl_seconds)
        except CacheUnavailableError as e:
            self._report_unavailable("set", e)

    async def delete(self, key: str) -> None:
        """
        Invalidate both tiers. Idempotent.

        Raises:
            CacheUnavailableError: shared tier unreachable (local is already cleared)
        """
        self.local.delete(key)
        if key in self._inflight:
            self._invalidated.add(key)

        if self.shared is not None:
            try:
                await self.shared.delete(key)
            except CacheUnavailableError as e:
                self._report_unavailable("delete", e)
                raise

        logger.info("cache_invalidated", key=key)

    # ---- single-flight ------------------------------------------------------------------

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[V]],
        refresh: bool = False,
    ) -> V:
        """
        Return the cached value for key, computing it at most once across callers.

        Args:
            key: Cache key
            compute: Expensive coroutine factory, called only by the leader
            refresh: Skip cached values but still dedupe and write back

        Raises:
            Whatever compute raised (delivered to the leader and every waiter)
        """
        while True:
            if not refresh:
                value = self.local.get(key)
                if value is not None:
                    return value

            pending = self._inflight.get(key)
            if pending is None:
                break

            # asyncio.wait doesn't propagate the leader's cancellation to us
            await asyncio.wait([pending])
            if pending.cancelled():
                continue
            return pending.result()

        future: "asyncio.Future[V]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self._invalidated.discard(key)
        try:
            value = await self._load_or_compute(key, compute, refresh)
        except Exception as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody is waiting
            raise
        else:
            future.set_result(value)
            return value
        finally:
            if not future.done():
                future.cancel()
            if self._inflight.get(key) is future:
                del self._inflight[key]
                self._invalidated.discard(key)

    async def _load_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[V]],
        refresh: bool,
    ) -> V:
        if self.shared is None:
            return await self._compute_and_store(key, compute)

        if not refresh:
            value = await self._shared_get(key)
            if value is not None:
                self.local.set(key, value)
                return value

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lease_seconds * 2

        while True:
            try:
                token = await self.shared.acquire_lease(key, self.lease_seconds)
            except CacheUnavailableError as e:
                self._report_unavailable("acquire_lease", e)
                return await self._compute_and_store(key, compute)

            if token is not None:
                try:
                    if not refresh:
                        # Another process may have published between our miss and the lease
                        value = await self._shared_get(key)
                        if value is not None:
                            self.local.set(key, value)
                            return value
                    return await self._compute_and_store(key, compute)
                finally:
                    await self._release_lease(key, token)

            logger.debug("cache_lease_held_elsewhere", key=key)
            value = await self._wait_for_shared(key, deadline, refresh)
            if value is not None:
                return value

            if loop.time() >= deadline:
                logger.warning("cache_lease_wait_expired",
                               key=key,
                               waited_seconds=self.lease_seconds * 2)
                return await self._compute_and_store(key, compute)

    async def _wait_for_shared(self, key: str, deadline: float, refresh: bool) -> Optional[V]:
        """
        Poll until another process publishes the value or drops its lease.

        Returns the value, or None if the lease went away without one
        (holder failed or crashed) or the deadline passed.
        """
        loop = asyncio.get_running_loop()
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval_seconds)

            try:
                held = await self.shared.lease_exists(key)
            except CacheUnavailableError as e:
                self._report_unavailable("lease_exists", e)
                return None

            # On refresh the existing value is stale until the holder is done
            if held and refresh:
                continue

            value = await self._shared_get(key)
            if value is not None:
                self.local.set(key, value)
                return value
            if not held:
                return None
        return None

    async def _compute_and_store(self, key: str, compute: Callable[[], Awaitable[V]]) -> V:
        value = await compute()
        if key in self._invalidated:
            logger.info("cache_write_skipped_after_invalidate", key=key)
            return value
        await self.set(key, value)
        return value

    async def _release_lease(self, key: str, token: str) -> None:
        try:
            await self.shared.release_lease(key, token)
        except CacheUnavailableError as e:
            # Lease expires on its own
            self._report_unavailable("release_lease", e)

    # ---- shared tier helpers ------------------------------------------------------------

    async def _shared_get(self, key: str) -> Optional[V]:
        return (await self._shared_get_many([key])).get(key)

    async def _shared_get_many(self, keys: List[str]) -> Dict[str, V]:
        """Decoded shared-tier hits only; unreachable tier or bad payloads count as misses"""
        if self.shared is None:
            return {}

        try:
            raw = await self.shared.get_many(keys)
        except CacheUnavailableError as e:
            self._report_unavailable("get_many", e)
            return {}

        decoded = {}
        for key, payload in raw.items():
            if payload is None:
                continue
            try:
                decoded[key] = self.decode(payload)
            except (ValueError, TypeError) as e:
                logger.warning("cache_entry_undecodable", key=key, error=str(e))
        return decoded

    def _report_unavailable(self, operation: str, error: Exception) -> None:
        logger.warning("shared_cache_unavailable",
                       operation=operation,
                       error=str(error))

    # ---- monitoring ---------------------------------------------------------------------

    async def stats(self) -> CacheStats:
        """Hit/miss counters for this process plus item counts per tier"""
        self.local.purge_expired()
        local_items = len(self.local)

        shared_items = None
        if self.shared is not None:
            try:
                shared_items = await self.shared.count()
            except CacheUnavailableError as e:
                self._report_unavailable("count", e)

        lookups = self._hits + self._misses
        return CacheStats(
            hit_count=self._hits,
            miss_count=self._misses,
            hit_rate=self._hits / lookups if lookups else 0.0,
            local_items=local_items,
            shared_items=shared_items,
            total_items=shared_items if shared_items is not None else local_items,
        )

    async def close(self) -> None:
        if self.shared is not None:
            await self.shared.close()

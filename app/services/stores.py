# app/services/stores.py
"""
Keyed stores shared by the rate limiter, payment verifier and response cache.

Every store offers the same per-key atomic operations:
- get / put / delete
- put_if_absent: insert only when the key is missing (replay de-duplication)
- compare_and_swap: replace the value only when it still equals what the
  caller read (token buckets, cache entries)

Values are strings (serialized JSON) so the in-process store and Redis
behave the same way. Keys expire after their TTL in both backends.

Backends:
- InMemoryStore: process-local dict guarded by a lock
- RedisStore: shared across instances
- FallbackStore: tries a primary store and degrades to a local one when the
  primary is unreachable
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Raised when a store backend cannot be reached."""


class KeyValueStore:
    """Interface implemented by every store backend."""

    name = "store"

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        raise NotImplementedError

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[float] = None
    ) -> bool:
        """
        Replace the value stored at key if it currently equals expected.

        An expected value of None means "the key must be absent".
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def sweep_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        return 0

    def ping(self) -> bool:
        return True


class InMemoryStore(KeyValueStore):
    """
    Process-local store.

    A single lock serializes all operations, which makes put_if_absent and
    compare_and_swap linearizable within the process. Entries past their TTL
    are invisible immediately and physically removed on access or during
    the periodic sweep. When max_entries is reached the oldest insertion is
    evicted.
    """

    name = "memory"

    def __init__(
        self,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 300.0
    ):
        self._entries: "OrderedDict[str, Tuple[str, Optional[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self._max_entries = max_entries
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None:
            return None
        return self._clock() + ttl

    def _live_value(self, key: str, now: float) -> Optional[str]:
        # Caller holds the lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._entries[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl: Optional[float]) -> None:
        # Caller holds the lock
        self._entries.pop(key, None)
        self._entries[key] = (value, self._expires_at(ttl))
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted {evicted} from memory store (capacity {self._max_entries})")

    def _maybe_sweep(self, now: float) -> None:
        # Caller holds the lock
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        stale = [
            key for key, (_, expires_at) in self._entries.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug(f"Cleaned up {len(stale)} expired memory store entries")
        return len(stale)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            now = self._clock()
            self._maybe_sweep(now)
            return self._live_value(key, now)

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live_value(key, self._clock()) is not None:
                return False
            self._store(key, value, ttl)
            return True

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[float] = None
    ) -> bool:
        with self._lock:
            if self._live_value(key, self._clock()) != expected:
                return False
            self._store(key, value, ttl)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep_expired(self) -> int:
        with self._lock:
            now = self._clock()
            self._last_sweep = now
            return self._sweep_locked(now)


def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
    if ttl is None:
        return None
    return max(1, int(ttl * 1000))


class RedisStore(KeyValueStore):
    """
    Redis-backed store shared across gateway instances.

    put_if_absent maps to SET NX PX; compare_and_swap uses WATCH/MULTI so a
    concurrent writer aborts the transaction. Any Redis failure surfaces as
    StoreUnavailableError.
    """

    name = "redis"

    def __init__(self, client: "redis.Redis", key_prefix: str = ""):
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "", timeout: float = 1.0) -> "RedisStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(self._key(key))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Redis get failed: {e}") from e

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        try:
            self._client.set(self._key(key), value, px=_ttl_ms(ttl))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Redis set failed: {e}") from e

    def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        try:
            return bool(self._client.set(self._key(key), value, nx=True, px=_ttl_ms(ttl)))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Redis set-if-absent failed: {e}") from e

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[float] = None
    ) -> bool:
        if expected is None:
            return self.put_if_absent(key, value, ttl)

        full_key = self._key(key)
        try:
            with self._client.pipeline() as pipe:
                pipe.watch(full_key)
                current = pipe.get(full_key)
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(full_key, value, px=_ttl_ms(ttl))
                pipe.execute()
                return True
        except redis.WatchError:
            return False
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Redis compare-and-swap failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Redis delete failed: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


class FallbackStore(KeyValueStore):
    """
    Primary store with a local fallback.

    While the primary is failing, operations go to the fallback and the
    primary is re-probed every retry_interval seconds. The degradation is
    logged once when it starts and once when the primary recovers.

    Only for state that may be fail-open (rate windows, response cache).
    """

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: KeyValueStore,
        retry_interval: float = 30.0,
        clock: Callable[[], float] = time.time
    ):
        self.primary = primary
        self.fallback = fallback
        self._retry_interval = retry_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._degraded_since: Optional[float] = None

    @property
    def name(self) -> str:
        return f"{self.primary.name}+{self.fallback.name}"

    @property
    def degraded(self) -> bool:
        return self._degraded_since is not None

    def _should_try_primary(self) -> bool:
        with self._lock:
            if self._degraded_since is None:
                return True
            return self._clock() - self._degraded_since >= self._retry_interval

    def _mark_failed(self, error: Exception) -> None:
        with self._lock:
            if self._degraded_since is None:
                logger.warning(
                    f"Store {self.primary.name} unreachable ({error}), "
                    f"falling back to {self.fallback.name}"
                )
            self._degraded_since = self._clock()

    def _mark_recovered(self) -> None:
        with self._lock:
            if self._degraded_since is not None:
                logger.info(f"Store {self.primary.name} reachable again")
                self._degraded_since = None

    def _call(self, operation: str, *args, **kwargs):
        if self._should_try_primary():
            try:
                result = getattr(self.primary, operation)(*args, **kwargs)
            except StoreUnavailableError as e:
                self._mark_failed(e)
            else:
                self._mark_recovered()
                return result
        return getattr(self.fallback, operation)(*args, **kwargs)

    def get(self, key: str) -> Optional[str]:
        return self._call("get", key)

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        self._call("put", key, value, ttl)

    def put_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        return self._call("put_if_absent", key, value, ttl)

    def compare_and_swap(
        self,
        key: str,
        expected: Optional[str],
        value: str,
        ttl: Optional[float] = None
    ) -> bool:
        return self._call("compare_and_swap", key, expected, value, ttl)

    def delete(self, key: str) -> None:
        self._call("delete", key)

    def sweep_expired(self) -> int:
        return self.fallback.sweep_expired()

    def ping(self) -> bool:
        return self.primary.ping()

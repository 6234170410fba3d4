# app/services/cache.py
"""
Freshness-bounded cache for computed responses.

An entry is served only while now - computed_at < ttl. Concurrent misses on
the same key inside one process are collapsed: the first caller computes,
the others wait on a per-key lock and then read the fresh entry. Across
processes sharing a store, computation may happen more than once; the write
is a compare-and-swap against the entry each process observed, so the first
writer's entry is the one that stays.

Store failures never fail the request: the value is computed and returned
uncached.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Iterator, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.services.stores import KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache:"

T = TypeVar("T", bound=BaseModel)


class CacheEntry(BaseModel):
    key: str
    payload: dict
    computed_at: float
    ttl: float


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: T
    cache_hit: bool


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ResponseCache(Generic[T]):
    """Read-through cache of pydantic models."""

    def __init__(
        self,
        store: KeyValueStore,
        model: Type[T],
        clock: Callable[[], float] = time.time
    ):
        self._store = store
        self._model = model
        self._clock = clock
        self._key_locks: Dict[str, _KeyLock] = {}
        self._key_locks_guard = threading.Lock()

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        """Hold the per-key lock; the entry is dropped once no thread holds or waits on it."""
        with self._key_locks_guard:
            holder = self._key_locks.get(key)
            if holder is None:
                holder = self._key_locks[key] = _KeyLock()
            holder.users += 1
        try:
            with holder.lock:
                yield
        finally:
            with self._key_locks_guard:
                holder.users -= 1
                if holder.users == 0:
                    del self._key_locks[key]

    def _read(self, key: str) -> Optional[str]:
        try:
            return self._store.get(f"{KEY_PREFIX}{key}")
        except StoreUnavailableError as e:
            logger.warning(f"Cache store unavailable on read of {key}: {e}")
            return None

    def _live_value(self, raw: Optional[str], ttl: float) -> Optional[T]:
        """Decode raw and return its payload if it is still within ttl."""
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
            value = self._model.model_validate(entry.payload)
        except ValidationError:
            logger.warning("Ignoring unreadable cache entry")
            return None
        age = self._clock() - entry.computed_at
        if age < 0 or age >= min(ttl, entry.ttl):
            return None
        return value

    def get(self, key: str, ttl: float) -> Optional[T]:
        """Return the live cached value for key, or None."""
        return self._live_value(self._read(key), ttl)

    def get_or_compute(self, key: str, ttl: float, compute_fn: Callable[[], T]) -> CacheResult[T]:
        """
        Return a live cached value, computing and storing it on a miss.

        Args:
            key: Cache key
            ttl: Maximum age in seconds of a value that may be served
            compute_fn: Produces a fresh value; its exceptions propagate

        Returns:
            CacheResult with the value and whether it came from the cache
        """
        cached = self.get(key, ttl)
        if cached is not None:
            logger.debug(f"Cache hit for key: {key}")
            return CacheResult(cached, True)

        with self._key_lock(key):
            # Another thread may have filled the entry while we waited
            raw = self._read(key)
            cached = self._live_value(raw, ttl)
            if cached is not None:
                logger.debug(f"Cache hit for key: {key} after wait")
                return CacheResult(cached, True)

            logger.debug(f"Cache miss for key: {key}")
            value = compute_fn()
            entry = CacheEntry(
                key=key,
                payload=value.model_dump(mode="json"),
                computed_at=self._clock(),
                ttl=ttl,
            )

            try:
                stored = self._store.compare_and_swap(
                    f"{KEY_PREFIX}{key}", raw, entry.model_dump_json(), ttl=ttl
                )
            except StoreUnavailableError as e:
                logger.warning(f"Cache store unavailable on write of {key}: {e}")
                stored = False

            if not stored:
                logger.debug(f"Entry for {key} was written by another instance first")

            return CacheResult(value, False)

    def invalidate(self, key: str) -> None:
        try:
            self._store.delete(f"{KEY_PREFIX}{key}")
        except StoreUnavailableError as e:
            logger.warning(f"Cache store unavailable on delete of {key}: {e}")

    def sweep(self) -> int:
        """Proactively drop expired entries from the local store."""
        return self._store.sweep_expired()

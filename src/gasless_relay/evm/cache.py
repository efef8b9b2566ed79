"""Thread-safe TTL cache with single-flight refresh."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    stored_at: float


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


class SingleFlight(Generic[K]):
    """Deduplicate concurrent calls for the same key; waiters share the leader's result."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flights: dict[K, _Flight] = {}

    def do(self, key: K, fn: Callable[[], V]) -> V:
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if flight is None:
                flight = _Flight()
                self._flights[key] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.value

        try:
            flight.value = fn()
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
        return flight.value

    def in_flight(self, key: K) -> bool:
        with self._lock:
            return key in self._flights


class TTLCache(Generic[K, V]):
    """Per-key cache whose entries are replaced whole, never merged."""

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[K, CacheEntry[V]] = {}
        self._flight: SingleFlight[K] = SingleFlight()

    @property
    def ttl(self) -> float:
        return self._ttl

    def now(self) -> float:
        return self._clock()

    def is_fresh(self, entry: CacheEntry[V]) -> bool:
        return self._clock() - entry.stored_at < self._ttl

    def peek(self, key: K) -> CacheEntry[V] | None:
        """Return the entry for ``key`` regardless of age."""
        with self._lock:
            return self._entries.get(key)

    def get_fresh(self, key: K) -> V | None:
        entry = self.peek(key)
        if entry is not None and self.is_fresh(entry):
            return entry.value
        return None

    def put(self, key: K, value: V) -> CacheEntry[V]:
        entry = CacheEntry(value=value, stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        return entry

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        """Return a fresh value, running ``loader`` at most once across concurrent callers."""

        cached = self.get_fresh(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return cached

        def _load() -> V:
            # Another flight may have stored a value while this caller was deciding to load.
            current = self.get_fresh(key)
            if current is not None:
                return current
            value = loader()
            self.put(key, value)
            return value

        return self._flight.do(key, _load)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items() if now - entry.stored_at >= self._ttl
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = {key: now - entry.stored_at for key, entry in self._entries.items()}
        return {"size": len(entries), "ages": entries}

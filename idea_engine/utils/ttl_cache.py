from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Read-through cache with time based expiry and one refresh in flight per key.

    Readers that find an expired entry while another thread is refreshing it get
    the stale value. Readers with nothing cached wait up to
    ``refresh_wait_seconds`` for the refreshing thread, then load on their own.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        refresh_wait_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.refresh_wait_seconds = refresh_wait_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[V]] = {}
        self._pending: set[Hashable] = set()
        self._condition = threading.Condition()

    def get_or_load(self, key: Hashable, loader: Callable[[], V]) -> V:
        with self._condition:
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > self._clock():
                return entry.value

            if key in self._pending:
                if entry is not None:
                    return entry.value
                refreshed = self._wait_for_refresh(key)
                if refreshed is not None:
                    return refreshed.value
                owns_refresh = False
            else:
                self._pending.add(key)
                owns_refresh = True

        if not owns_refresh:
            return loader()

        try:
            value = loader()
        except Exception:
            with self._condition:
                self._pending.discard(key)
                self._condition.notify_all()
            raise

        with self._condition:
            self._entries[key] = CacheEntry(
                value=value, expires_at=self._clock() + self.ttl_seconds
            )
            self._pending.discard(key)
            self._condition.notify_all()
        return value

    def peek(self, key: Hashable) -> CacheEntry[V] | None:
        with self._condition:
            return self._entries.get(key)

    def invalidate(self, key: Hashable | None = None) -> None:
        with self._condition:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def is_refreshing(self, key: Hashable) -> bool:
        with self._condition:
            return key in self._pending

    def _wait_for_refresh(self, key: Hashable) -> CacheEntry[V] | None:
        # Caller holds the condition lock.
        deadline = time.monotonic() + self.refresh_wait_seconds
        while key in self._pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._condition.wait(remaining)
        return self._entries.get(key)

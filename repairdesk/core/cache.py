from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from repairdesk.core.config import get_settings
from repairdesk.metrics import observe_reference_cache_lookup


Clock = Callable[[], float]
InvalidationHook = Callable[[str | None], None]


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class ReferenceCache:
    """Read-through cache for slow-changing reference data.

    Entries expire after ``ttl_seconds`` as measured by ``clock``. Writers of
    the underlying data call :meth:`invalidate` (one key) or :meth:`clear`
    (everything); registered hooks are notified with the key, or ``None``
    for a full clear.
    """

    def __init__(self, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}
        self._hooks: list[InvalidationHook] = []

    def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=self._clock() + self._ttl_seconds)

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            observe_reference_cache_lookup("hit")
            return cached

        observe_reference_cache_lookup("miss")
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
        self._notify(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self._notify(None)

    def on_invalidate(self, hook: InvalidationHook) -> None:
        self._hooks.append(hook)

    def _notify(self, key: str | None) -> None:
        for hook in list(self._hooks):
            hook(key)


_reference_cache: ReferenceCache | None = None


def get_reference_cache() -> ReferenceCache:
    global _reference_cache

    if _reference_cache is None:
        _reference_cache = ReferenceCache(ttl_seconds=get_settings().reference_cache_ttl_seconds)
    return _reference_cache


def reset_reference_cache() -> None:
    if _reference_cache is not None:
        _reference_cache.clear()

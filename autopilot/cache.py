"""Process-wide query cache with prefix invalidation.

Keys are tuples; invalidating a key also invalidates every key it prefixes,
so ``invalidate(intake_keys.forms())`` stales the collection *and* each
individual form.  The cache never serialises writers: mutations go straight
to the database and the cache only learns about them through
``invalidate``/``remove``.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

log = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]

FORMS_STALE_TIME = 5 * 60.0
READ_RETRIES = 1


class intake_keys:
    """Key factory for intake queries."""

    @staticmethod
    def all() -> CacheKey:
        return ("intake",)

    @staticmethod
    def forms() -> CacheKey:
        return (*intake_keys.all(), "forms")

    @staticmethod
    def form(form_id: str) -> CacheKey:
        return (*intake_keys.forms(), form_id)

    @staticmethod
    def forms_by_user(user_id: str) -> CacheKey:
        return (*intake_keys.forms(), "by-user", user_id)

    @staticmethod
    def scores() -> CacheKey:
        return (*intake_keys.all(), "scores")

    @staticmethod
    def score(form_id: str) -> CacheKey:
        return (*intake_keys.scores(), form_id)


@dataclass
class _Entry:
    data: Any
    fetched_at: float
    stale: bool = False


def _has_prefix(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic, retries: int = READ_RETRIES):
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, _Entry] = {}
        self._clock = clock
        self.retries = retries

    def _is_fresh(self, entry: _Entry, stale_time: float) -> bool:
        return not entry.stale and (self._clock() - entry.fetched_at) < stale_time

    def fetch(self, key: CacheKey, fetcher: Callable[[], Any], stale_time: float = 0.0) -> Any:
        """Return cached data for *key* if fresh, otherwise call *fetcher* and store the result.

        A failed fetch is retried ``self.retries`` times before the last error
        propagates; the previous entry (if any) is left as is.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._is_fresh(entry, stale_time):
                return entry.data

        attempt = 0
        while True:
            try:
                data = fetcher()
                break
            except Exception as exc:
                if attempt >= self.retries:
                    raise
                attempt += 1
                log.warning("Query %s failed (attempt %d), retrying: %s", key, attempt, exc)

        with self._lock:
            self._entries[key] = _Entry(data=data, fetched_at=self._clock())
        return data

    def get_data(self, key: CacheKey) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            return entry.data if entry else None

    def set_data(self, key: CacheKey, data: Any) -> None:
        with self._lock:
            self._entries[key] = _Entry(data=data, fetched_at=self._clock())

    def is_stale(self, key: CacheKey) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is None or entry.stale

    def invalidate(self, prefix: CacheKey) -> int:
        """Mark every entry under *prefix* stale. Returns the number of entries touched."""
        with self._lock:
            touched = 0
            for key, entry in self._entries.items():
                if _has_prefix(key, prefix):
                    entry.stale = True
                    touched += 1
        log.debug("Invalidated %d cache entries under %s", touched, prefix)
        return touched

    def remove(self, prefix: CacheKey) -> int:
        with self._lock:
            doomed = [k for k in self._entries if _has_prefix(k, prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list[CacheKey]:
        with self._lock:
            return list(self._entries)

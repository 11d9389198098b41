"""Short-lived in-memory cache for analysis responses."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Hashable, Optional, Tuple


class ResponseCache:
    """TTL cache keyed by tuples whose first element is the owning user id.

    Entries expire `ttl_seconds` after insertion and the oldest entries are
    evicted beyond `max_entries`. A TTL of 0 disables caching. The class
    holds only process-local state, so a shared cache can replace it
    without touching call sites as long as it keeps `get`/`set`/
    `invalidate_user`/`clear`.
    """

    def __init__(self, ttl_seconds: float = 5, max_entries: int = 1000):
        self._entries: "OrderedDict[Tuple, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_entries = max_entries

    @property
    def enabled(self) -> bool:
        return self._ttl > 0

    def get(self, key: Tuple[Hashable, ...]) -> Optional[Any]:
        if not self.enabled:
            return None
        now = time.monotonic()
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= now:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: Tuple[Hashable, ...], value: Any) -> None:
        if not self.enabled:
            return
        now = time.monotonic()
        with self._lock:
            self._entries[key] = (now + self._ttl, value)
            self._entries.move_to_end(key)
            self._prune(now)

    def invalidate_user(self, user_id: Hashable) -> None:
        with self._lock:
            for key in [k for k in self._entries if k and k[0] == user_id]:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _prune(self, now: float) -> None:
        for key in [k for k, (exp, _) in self._entries.items() if exp <= now]:
            self._entries.pop(key, None)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

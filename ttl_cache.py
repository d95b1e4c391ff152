"""In-process TTL cache used for upstream responses.

Entries are checked lazily on read: an entry is live while
``now <= inserted_at + ttl`` and is dropped by the first read that finds it
expired. Nothing runs in the background.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


class _Missing:
    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _Missing()


class TtlCache:
    """Key -> (value, expires_at) arena with an injectable clock."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 when set")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, tuple]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any:
        """Return the cached value, or MISSING if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISSING
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                return MISSING
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            # re-inserting moves the key to the newest position
            self._entries.pop(key, None)
            self._entries[key] = (value, self._clock() + self.ttl_seconds)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not MISSING

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

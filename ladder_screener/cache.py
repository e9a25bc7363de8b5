from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Tuple


class TtlCache:
    """In-memory read-through store of expiring values keyed by string."""

    def __init__(self, max_entries: int = 5000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires, value = entry
        if self._clock() >= expires:
            del self._data[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_s: float) -> None:
        if len(self._data) >= self.max_entries and key not in self._data:
            self._evict()
        self._data[key] = (self._clock() + float(ttl_s), value)

    def _evict(self) -> None:
        now = self._clock()
        for k in [k for k, (exp, _) in self._data.items() if exp <= now]:
            del self._data[k]
        # still full: drop the entry closest to expiry
        if len(self._data) >= self.max_entries:
            oldest = min(self._data, key=lambda k: self._data[k][0])
            del self._data[oldest]

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

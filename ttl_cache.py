from __future__ import annotations

import time
from typing import Any, Callable, Dict, Hashable, Tuple


class _Miss:
    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Any = _Miss()


class TTLCache:
    """In-memory memo of remote lookups.

    ``get`` returns ``MISS`` for absent or expired keys so that cached
    ``None``/``False`` values stay distinguishable from a miss. Expiry is
    lazy (checked on read); ``cleanup`` sweeps explicitly.
    """

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float, float]] = {}

    def get(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return MISS
        value, stored_at, ttl = entry
        if self._clock() - stored_at >= ttl:
            del self._entries[key]
            return MISS
        return value

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        self._entries[key] = (value, self._clock(), self.ttl if ttl is None else float(ttl))

    def has(self, key: Hashable) -> bool:
        return self.get(key) is not MISS

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        now = self._clock()
        expired = [
            key for key, (_, stored_at, ttl) in self._entries.items() if now - stored_at >= ttl
        ]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

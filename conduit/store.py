"""Key/value session store with per-key TTL.

Conversation histories live behind this interface so the process never
holds hidden module-level session maps. MemoryStore is the in-process
implementation; anything with get/set/expire/delete can replace it.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def expire(self, key: str, ttl: float) -> bool: ...

    def delete(self, key: str) -> bool: ...


class MemoryStore:
    """In-process TTL store, least-recently-used entries evicted past ``max_entries``."""

    def __init__(
        self,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._clock = clock
        # key -> (value, deadline or None)
        self._entries: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()

    def __len__(self) -> int:
        self._purge()
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= self._clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        deadline = self._clock() + ttl if ttl is not None else None
        self._entries[key] = (value, deadline)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Store full, evicted %s", evicted)

    def expire(self, key: str, ttl: float) -> bool:
        """Reset the TTL of a live key. False if the key is missing or expired."""
        if self.get(key) is None:
            return False
        value, _ = self._entries[key]
        self._entries[key] = (value, self._clock() + ttl)
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def _purge(self) -> None:
        now = self._clock()
        expired = [k for k, (_, d) in self._entries.items() if d is not None and d <= now]
        for key in expired:
            del self._entries[key]

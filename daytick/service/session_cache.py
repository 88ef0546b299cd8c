from __future__ import annotations

import threading
from typing import Dict, Optional

from daytick.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 10000


class SessionCache:
    """Process-local map of token value to user id shared by all request workers.

    Every operation runs under one lock. ``generation`` increments on each
    explicit eviction so a reader that resolved a token from the store can
    refuse to repopulate an entry that was evicted while it was reading.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        # dicts preserve insertion order, which doubles as eviction order
        self._entries: Dict[str, int] = {}
        self._generation = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, value: object) -> bool:
        with self._lock:
            return value in self._entries

    def get(self, value: str) -> Optional[int]:
        with self._lock:
            return self._entries.get(value)

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def put(self, value: str, user_id: int) -> None:
        with self._lock:
            self._put_locked(value, user_id)

    def put_if_generation(self, value: str, user_id: int, generation: int) -> bool:
        """Insert only if no eviction happened since ``generation`` was read."""

        with self._lock:
            if self._generation != generation:
                return False
            self._put_locked(value, user_id)
            return True

    def evict(self, value: str) -> bool:
        with self._lock:
            self._generation += 1
            return self._entries.pop(value, None) is not None

    def evict_user(self, user_id: int, except_value: Optional[str] = None) -> int:
        with self._lock:
            self._generation += 1
            stale = [
                value
                for value, owner in self._entries.items()
                if owner == user_id and value != except_value
            ]
            for value in stale:
                self._entries.pop(value, None)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def _put_locked(self, value: str, user_id: int) -> None:
        if (
            self.max_entries
            and value not in self._entries
            and len(self._entries) >= self.max_entries
        ):
            # Drop ~10% of the oldest entries; they fall back to the store on next use
            evict_count = max(1, self.max_entries // 10)
            for old_value in list(self._entries)[:evict_count]:
                self._entries.pop(old_value, None)
            logger.info("session_cache_capacity_evicted", evicted=evict_count)
        self._entries[value] = user_id

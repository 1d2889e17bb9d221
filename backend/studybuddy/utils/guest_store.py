"""
Bounded in-memory store for guest sessions and degraded writes.

Usage:
    from studybuddy.utils.guest_store import get_guest_store

    store = get_guest_store()
    store.quizzes.set(quiz.id, quiz)
    quiz = store.quizzes.get(quiz.id)

    # Records written for a user because the database write failed
    orphaned = store.quizzes.owned_by(user_id)

Each resource kind lives in its own LRU map so a flood of guest chats
cannot evict quizzes. The store is process-local; concurrent writers to the
same key race and the last write wins.
"""

import os
import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

GUEST_STORE_MAX_ENTRIES = int(os.getenv("GUEST_STORE_MAX_ENTRIES", "1000"))

T = TypeVar("T")


class LRUStore(Generic[T]):
    """Thread-safe size-capped map evicting the least recently used key."""

    def __init__(self, name: str, maxsize: int = GUEST_STORE_MAX_ENTRIES):
        self.name = name
        self.maxsize = maxsize
        self._data: "OrderedDict[Hashable, T]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[T]:
        """Get value and mark it as recently used."""
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: Hashable, value: T) -> None:
        """Insert or replace, evicting the oldest entry when full."""
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            elif len(self._data) >= self.maxsize:
                evicted, _ = self._data.popitem(last=False)
                logger.info(f"Guest store '{self.name}' full, evicted {evicted}")
            self._data[key] = value

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def values(self) -> List[T]:
        """Snapshot of the stored values, oldest first."""
        with self._lock:
            return list(self._data.values())

    def filter(self, predicate: Callable[[T], bool]) -> List[T]:
        return [value for value in self.values() if predicate(value)]

    def owned_by(self, owner_id: Optional[str]) -> List[T]:
        """Values whose owner_id equals `owner_id` (None selects guest records)."""
        return self.filter(lambda value: getattr(value, "owner_id", None) == owner_id)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class GuestStore:
    """One LRU map per resource kind."""

    def __init__(self, maxsize: int = GUEST_STORE_MAX_ENTRIES):
        self.conversations: LRUStore[Any] = LRUStore("conversations", maxsize)
        self.quizzes: LRUStore[Any] = LRUStore("quizzes", maxsize)
        self.quiz_results: LRUStore[Any] = LRUStore("quiz_results", maxsize)
        self.file_analyses: LRUStore[Any] = LRUStore("file_analyses", maxsize)

    def clear(self) -> None:
        for kind in (self.conversations, self.quizzes, self.quiz_results, self.file_analyses):
            kind.clear()


# Global store instance
guest_store = GuestStore()


def get_guest_store() -> GuestStore:
    """FastAPI dependency returning the process-wide guest store."""
    return guest_store

"""
Bounded Log
===========

Append-only history with a fixed capacity. Appending past the cap evicts the
oldest entry. Each supervision component owns its own instance (health checks,
interventions, escalations) instead of trimming lists at every call site.
"""

from collections import deque
from typing import Generic, Iterable, Iterator, List, Optional, TypeVar

T = TypeVar("T")


class BoundedLog(Generic[T]):
    """A capped, insertion-ordered log of entries."""

    def __init__(self, max_size: int = 100, entries: Optional[Iterable[T]] = None):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self._entries: deque[T] = deque(entries or (), maxlen=max_size)

    def append(self, entry: T) -> None:
        """Append an entry, evicting the oldest one when full."""
        self._entries.append(entry)

    def extend(self, entries: Iterable[T]) -> None:
        for entry in entries:
            self.append(entry)

    def recent(self, limit: Optional[int] = None) -> List[T]:
        """Return up to `limit` most recent entries, oldest first."""
        entries = list(self._entries)
        if limit:
            return entries[-limit:]
        return entries

    def latest(self) -> Optional[T]:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._entries))

    def __bool__(self) -> bool:
        return bool(self._entries)

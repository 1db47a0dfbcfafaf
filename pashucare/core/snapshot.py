"""
Versioned Snapshot Holder

Keeps a single reference to an immutable reference-data snapshot.  Readers
call ``current()`` once per request and keep using that object; ``swap()``
replaces the reference atomically, so no reader ever sees a partial reload.
"""

from __future__ import annotations

import threading
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class SnapshotHolder(Generic[T]):
    """Versioned pointer to the active snapshot."""

    def __init__(self, initial: Optional[T] = None) -> None:
        self._lock = threading.Lock()
        self._snapshot = initial
        self._generation = 0 if initial is None else 1

    def current(self) -> Optional[T]:
        return self._snapshot

    @property
    def generation(self) -> int:
        """Number of successful swaps, starting at 1 for the first load."""
        return self._generation

    def swap(self, snapshot: T) -> T:
        """Install ``snapshot`` and return the one it replaced (or None)."""
        with self._lock:
            previous = self._snapshot
            self._snapshot = snapshot
            self._generation += 1
        return previous

"""Shared reference state and its locking discipline.

A :class:`ReferenceContext` bundles the reference store, the cluster index and
the locks guarding them. Solvers receive it explicitly; several solvers (for
example one per worker thread of a transport simulation) may share one.

Lookups, estimation and acceptance run under the read lock. Insertion and
eviction run under the write lock. Usage bookkeeping (LRU order, usage
counters, most-recently-used cluster) changes on every hit, so it is guarded
by a separate short mutex taken while the read lock is held.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
from typing import Iterator, List, Optional

from .clusters import ClusterIndex
from .spatial import DistanceMetric
from .store import ReferenceRecord, ReferenceStore

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Writer-preferring readers-writer lock.

    New readers wait while a writer is waiting, so a steady stream of lookups
    cannot starve insertions. Not reentrant.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class ReferenceContext:
    """Reference store plus cluster index, shared explicitly between solvers."""

    def __init__(
        self,
        capacity: int = 10000,
        metric: Optional[DistanceMetric] = None,
        rebuild_threshold: int = 32,
    ) -> None:
        self.store = ReferenceStore(capacity)
        self.index = ClusterIndex(self.store, metric=metric, rebuild_threshold=rebuild_threshold)
        self.lock = ReadWriteLock()
        self._meta = threading.Lock()

    @property
    def capacity(self) -> int:
        return self.store.capacity

    def insert(self, record: ReferenceRecord) -> List[ReferenceRecord]:
        """Atomically insert ``record``; returns the records evicted to make room."""
        with self.lock.write():
            evicted = self.index.insert(record)
        for old in evicted:
            logger.debug("Evicted reference %d to insert %d.", old.label, record.label)
        return evicted

    def mark_used(self, record: ReferenceRecord) -> None:
        """Record that ``record`` served a query. Caller holds the read lock."""
        with self._meta:
            if record.label in self.store:
                self.index.mark_used(record)

    def set_capacity(self, capacity: int) -> List[ReferenceRecord]:
        with self.lock.write():
            return self.index.set_capacity(capacity)

    def next_label(self) -> int:
        with self._meta:
            return self.store.next_label()

    def clear(self) -> None:
        with self.lock.write():
            self.index.clear()

    def __len__(self) -> int:
        return len(self.store)


__all__ = [
    "ReadWriteLock",
    "ReferenceContext",
]

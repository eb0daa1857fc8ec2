"""Reference records and the capacity-bounded store that owns them."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
import itertools
import logging
from typing import Dict, Iterator, List, Optional

from .fingerprint import Fingerprint
from .problem import Conditions
from .solution import Sensitivity, Solution

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ReferenceRecord:
    """A rigorously solved state kept for reuse.

    Records are immutable; usage counters live in the :class:`ReferenceStore`.
    ``curvature`` is the relative second-order change of the amounts per
    squared normalised distance, measured against the nearest record of the
    same cluster at the time of learning, or ``None`` for the first record of
    a cluster.
    """

    label: int
    conditions: Conditions
    solution: Solution
    sensitivity: Sensitivity
    fingerprint: Fingerprint
    created: float
    curvature: Optional[float] = None

    @property
    def layout(self) -> tuple:
        return self.conditions.layout


class ReferenceStore:
    """Least-recently-used ordered mapping ``label -> record``."""

    def __init__(self, capacity: int = 10000) -> None:
        self._capacity = self._check_capacity(capacity)
        self._records: "OrderedDict[int, ReferenceRecord]" = OrderedDict()
        self._usage: Dict[int, int] = {}
        self._labels = itertools.count()

    @staticmethod
    def _check_capacity(capacity: int) -> int:
        if int(capacity) < 1:
            raise ValueError("capacity must be at least 1.")
        return int(capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def next_label(self) -> int:
        return next(self._labels)

    def insert(self, record: ReferenceRecord) -> List[ReferenceRecord]:
        """Insert ``record``, evicting least-recently-used records first when full."""
        if record.label in self._records:
            raise KeyError(f"Record {record.label} is already stored.")
        evicted: List[ReferenceRecord] = []
        while len(self._records) >= self._capacity:
            evicted.append(self.evict_one())
        self._records[record.label] = record
        self._usage[record.label] = 0
        return evicted

    def evict_one(self) -> ReferenceRecord:
        label, record = self._records.popitem(last=False)
        self._usage.pop(label, None)
        logger.debug("Evicted reference %d (fingerprint %s).", label, record.fingerprint)
        return record

    def remove(self, label: int) -> ReferenceRecord:
        self._usage.pop(label, None)
        return self._records.pop(label)

    def set_capacity(self, capacity: int) -> List[ReferenceRecord]:
        """Change the capacity, evicting down to it immediately."""
        self._capacity = self._check_capacity(capacity)
        evicted: List[ReferenceRecord] = []
        while len(self._records) > self._capacity:
            evicted.append(self.evict_one())
        if evicted:
            logger.info("Capacity reduced to %d; evicted %d references.", self._capacity, len(evicted))
        return evicted

    def touch(self, label: int) -> None:
        """Mark a record as used by the current query."""
        self._records.move_to_end(label)
        self._usage[label] += 1

    def get(self, label: int) -> ReferenceRecord:
        return self._records[label]

    def usage(self, label: int) -> int:
        return self._usage[label]

    def least_recently_used(self) -> Optional[ReferenceRecord]:
        if not self._records:
            return None
        return next(iter(self._records.values()))

    def clear(self) -> None:
        self._records.clear()
        self._usage.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, label: object) -> bool:
        return label in self._records

    def __iter__(self) -> Iterator[ReferenceRecord]:
        return iter(list(self._records.values()))


__all__ = [
    "ReferenceRecord",
    "ReferenceStore",
]

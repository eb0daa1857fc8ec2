"""Fingerprint-partitioned clusters of reference records.

Records are grouped first by the layout of their Conditions (queries with
different restriction structures are never compared) and then by their
fingerprint. Each cluster owns a spatial index over the Conditions vectors of
its members.

Candidate clusters for a query are ranked by recency: the most recently used
cluster of the layout first, then the clusters queries most often moved to
from it, then by overall usage, then by creation order.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
import itertools
import logging
from typing import Dict, List, Optional, Tuple

from .fingerprint import Fingerprint
from .problem import Conditions
from .spatial import DistanceMetric, EuclideanMetric, SpatialIndex, make_index
from .store import ReferenceRecord, ReferenceStore

logger = logging.getLogger(__name__)


@dataclass
class Cluster:
    fingerprint: Fingerprint
    layout: tuple
    index: SpatialIndex
    order: int
    usage: int = 0

    def __len__(self) -> int:
        return len(self.index)

    def records(self) -> List[ReferenceRecord]:
        """Members in label order."""
        return [self.index.get(label) for label in self.index.labels()]


@dataclass
class _Partition:
    metric: DistanceMetric
    clusters: Dict[Fingerprint, Cluster] = field(default_factory=dict)
    recent: Optional[Fingerprint] = None
    transitions: Dict[Tuple[Fingerprint, Fingerprint], int] = field(default_factory=lambda: defaultdict(int))


class ClusterIndex:
    """Two-level index: exact fingerprint key, then nearest neighbour."""

    def __init__(
        self,
        store: ReferenceStore,
        metric: Optional[DistanceMetric] = None,
        rebuild_threshold: int = 32,
    ) -> None:
        self.store = store
        self.metric = metric if metric is not None else EuclideanMetric()
        self.rebuild_threshold = int(rebuild_threshold)
        self._partitions: Dict[tuple, _Partition] = {}
        self._owner: Dict[int, Cluster] = {}
        self._orders = itertools.count()

    # ------------------------------------------------------------------ queries

    def metric_for(self, layout: tuple) -> Optional[DistanceMetric]:
        part = self._partitions.get(layout)
        return None if part is None else part.metric

    def clusters(self, layout: Optional[tuple] = None) -> List[Cluster]:
        if layout is not None:
            part = self._partitions.get(layout)
            return [] if part is None else sorted(part.clusters.values(), key=lambda c: c.order)
        out: List[Cluster] = []
        for part in self._partitions.values():
            out.extend(part.clusters.values())
        return sorted(out, key=lambda c: c.order)

    def cluster_of(self, record: ReferenceRecord) -> Optional[Cluster]:
        return self._owner.get(record.label)

    def ranked_clusters(self, layout: tuple) -> List[Cluster]:
        part = self._partitions.get(layout)
        if part is None or not part.clusters:
            return []
        head = part.clusters.get(part.recent) if part.recent is not None else None
        rest = [c for c in part.clusters.values() if c is not head]
        if head is not None:
            rest.sort(key=lambda c: (-part.transitions.get((head.fingerprint, c.fingerprint), 0), -c.usage, c.order))
            return [head] + rest
        rest.sort(key=lambda c: (-c.usage, c.order))
        return rest

    def best_cluster(self, layout: tuple) -> Optional[Cluster]:
        """Top-ranked cluster of ``layout`` without ordering the rest."""
        part = self._partitions.get(layout)
        if part is None or not part.clusters:
            return None
        if part.recent is not None and part.recent in part.clusters:
            return part.clusters[part.recent]
        return min(part.clusters.values(), key=lambda c: (-c.usage, c.order))

    def candidates(self, conditions: Conditions, depth: int = 1) -> List[Tuple[ReferenceRecord, float]]:
        """Nearest record in each of the ``depth`` best-ranked clusters."""
        out: List[Tuple[ReferenceRecord, float]] = []
        query = conditions.vector
        depth = max(int(depth), 1)
        if depth == 1:
            best = self.best_cluster(conditions.layout)
            ranked = [] if best is None else [best]
        else:
            ranked = self.ranked_clusters(conditions.layout)[:depth]
        for cluster in ranked:
            hit = cluster.index.nearest(query)
            if hit is not None:
                _, record, distance = hit
                out.append((record, distance))
        return out

    def lookup(self, conditions: Conditions) -> Optional[Tuple[ReferenceRecord, float]]:
        """Nearest record in the candidate cluster, or ``None`` on a miss."""
        found = self.candidates(conditions, depth=1)
        return found[0] if found else None

    def nearest_in(self, fingerprint: Fingerprint, conditions: Conditions) -> Optional[Tuple[ReferenceRecord, float]]:
        part = self._partitions.get(conditions.layout)
        if part is None or fingerprint not in part.clusters:
            return None
        hit = part.clusters[fingerprint].index.nearest(conditions.vector)
        if hit is None:
            return None
        return hit[1], hit[2]

    # ---------------------------------------------------------------- mutation

    def evict_one_if_over_capacity(self, incoming: int = 1) -> Optional[ReferenceRecord]:
        """Evict the least-recently-used record if ``incoming`` more would not fit."""
        if len(self.store) + int(incoming) <= self.store.capacity or len(self.store) == 0:
            return None
        record = self.store.evict_one()
        self._detach(record)
        return record

    def insert(self, record: ReferenceRecord) -> List[ReferenceRecord]:
        """Insert a record, evicting first when the store is at capacity."""
        evicted: List[ReferenceRecord] = []
        while True:
            victim = self.evict_one_if_over_capacity()
            if victim is None:
                break
            evicted.append(victim)
        evicted.extend(self._detach_all(self.store.insert(record)))

        layout = record.layout
        part = self._partitions.get(layout)
        if part is None:
            part = _Partition(metric=self.metric.fit(record.conditions.vector))
            self._partitions[layout] = part
        cluster = part.clusters.get(record.fingerprint)
        if cluster is None:
            cluster = Cluster(
                fingerprint=record.fingerprint,
                layout=layout,
                index=make_index(part.metric, rebuild_threshold=self.rebuild_threshold),
                order=next(self._orders),
            )
            part.clusters[record.fingerprint] = cluster
            logger.info("Created cluster %s (%d clusters in layout).", record.fingerprint, len(part.clusters))
        weights = part.metric.item_weights(record.solution, record.sensitivity)
        cluster.index.insert(record.label, record.conditions.vector, record, weights)
        self._owner[record.label] = cluster
        part.recent = record.fingerprint
        return evicted

    def remove(self, record: ReferenceRecord) -> None:
        if record.label in self.store:
            self.store.remove(record.label)
        self._detach(record)

    def mark_used(self, record: ReferenceRecord) -> None:
        """Record that ``record`` served a query."""
        cluster = self._owner.get(record.label)
        if cluster is None:
            return
        self.store.touch(record.label)
        cluster.usage += 1
        part = self._partitions[cluster.layout]
        if part.recent is not None and part.recent != cluster.fingerprint:
            part.transitions[(part.recent, cluster.fingerprint)] += 1
        part.recent = cluster.fingerprint

    def set_capacity(self, capacity: int) -> List[ReferenceRecord]:
        return self._detach_all(self.store.set_capacity(capacity))

    def clear(self) -> None:
        self.store.clear()
        self._partitions.clear()
        self._owner.clear()

    def _detach_all(self, records: List[ReferenceRecord]) -> List[ReferenceRecord]:
        for record in records:
            self._detach(record)
        return records

    def _detach(self, record: ReferenceRecord) -> None:
        cluster = self._owner.pop(record.label, None)
        if cluster is None:
            return
        cluster.index.remove(record.label)
        if len(cluster) == 0:
            part = self._partitions[cluster.layout]
            del part.clusters[cluster.fingerprint]
            if part.recent == cluster.fingerprint:
                part.recent = None
            for key in [k for k in part.transitions if cluster.fingerprint in k]:
                del part.transitions[key]
            logger.debug("Removed empty cluster %s.", cluster.fingerprint)

    def __len__(self) -> int:
        return len(self.store)


__all__ = [
    "Cluster",
    "ClusterIndex",
]

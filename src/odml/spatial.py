"""Nearest-neighbour indices over Conditions vectors.

Indices are keyed by integer labels (insertion order) and hold arbitrary
payloads. Distances come from a pluggable :class:`DistanceMetric`. Isotropic
metrics (plain Euclidean after a fixed per-coordinate transform) can be served
by :class:`KDTreeIndex`; anisotropic metrics need :class:`BruteForceIndex`.
Ties are always broken by the smallest label.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

import numpy as np
from scipy.spatial import cKDTree

logger = logging.getLogger(__name__)

V = TypeVar("V")
Array = np.ndarray


class DistanceMetric(ABC):
    """Distance between two Conditions vectors."""

    isotropic = True

    def fit(self, reference: Array) -> "DistanceMetric":
        """Return a metric calibrated on the first vector of a layout."""
        return self

    @abstractmethod
    def transform(self, x: Array) -> Array:
        """Map a vector into the space where the metric is Euclidean."""

    def normalized_step(self, delta: Array) -> Array:
        return self.transform(delta)

    def item_weights(self, solution=None, sensitivity=None) -> Optional[Array]:
        """Per-reference weights for anisotropic metrics."""
        return None

    def distance(self, query: Array, key: Array, weights: Optional[Array] = None) -> float:
        diff = self.transform(query) - self.transform(key)
        if weights is not None:
            diff = diff * weights
        return float(np.linalg.norm(diff))


class EuclideanMetric(DistanceMetric):
    """Euclidean distance on ``x / scale``.

    Without an explicit ``scale`` the metric is fitted on a reference vector as
    ``max(|x|, floor)`` per coordinate, so distances are relative changes.
    """

    def __init__(self, scale: Optional[Array] = None, floor: float = 1e-6) -> None:
        if floor <= 0.0:
            raise ValueError("floor must be positive.")
        self.floor = float(floor)
        if scale is not None:
            scale = np.asarray(scale, dtype=float).reshape(-1)
            if np.any(~np.isfinite(scale)) or np.any(scale <= 0.0):
                raise ValueError("scale entries must be positive and finite.")
        self.scale = scale

    def fit(self, reference: Array) -> "EuclideanMetric":
        if self.scale is not None:
            if self.scale.shape[0] != np.asarray(reference).reshape(-1).shape[0]:
                raise ValueError("scale length does not match the Conditions vector length.")
            return self
        scale = np.maximum(np.abs(np.asarray(reference, dtype=float).reshape(-1)), self.floor)
        return type(self)(scale=scale, floor=self.floor)

    def transform(self, x: Array) -> Array:
        x = np.asarray(x, dtype=float)
        return x if self.scale is None else x / self.scale


class SensitivityWeightedMetric(EuclideanMetric):
    """Anisotropic distance weighting each coordinate by the solution's response.

    The weight of coordinate ``j`` for a reference is
    ``1 + strength * |dn/dc_j| * scale_j / sum(|n|)``: coordinates the
    reference solution reacts strongly to count more.
    """

    isotropic = False

    def __init__(self, scale: Optional[Array] = None, floor: float = 1e-6, strength: float = 1.0) -> None:
        super().__init__(scale=scale, floor=floor)
        if strength < 0.0:
            raise ValueError("strength must be nonnegative.")
        self.strength = float(strength)

    def fit(self, reference: Array) -> "SensitivityWeightedMetric":
        base = EuclideanMetric.fit(self, reference)
        return SensitivityWeightedMetric(scale=base.scale, floor=self.floor, strength=self.strength)

    def item_weights(self, solution=None, sensitivity=None) -> Optional[Array]:
        if sensitivity is None or solution is None:
            return None
        cols = sensitivity.column_norms()
        scale = self.scale if self.scale is not None else np.ones_like(cols)
        total = max(float(np.sum(np.abs(solution.amounts))), self.floor)
        return 1.0 + self.strength * cols * scale / total


class SpatialIndex(ABC, Generic[V]):
    """Labelled point set supporting nearest-neighbour queries."""

    def __init__(self, metric: DistanceMetric) -> None:
        self.metric = metric

    @abstractmethod
    def insert(self, label: int, key: Array, value: V, weights: Optional[Array] = None) -> None:
        ...

    @abstractmethod
    def remove(self, label: int) -> V:
        ...

    @abstractmethod
    def get(self, label: int) -> V:
        ...

    @abstractmethod
    def nearest(self, query: Array) -> Optional[Tuple[int, V, float]]:
        """Return ``(label, value, distance)`` of the closest item, or ``None``."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    @abstractmethod
    def __contains__(self, label: object) -> bool:
        ...

    @abstractmethod
    def labels(self) -> List[int]:
        ...


class BruteForceIndex(SpatialIndex[V]):
    """Linear scan; supports any metric."""

    def __init__(self, metric: DistanceMetric) -> None:
        super().__init__(metric)
        self._items: Dict[int, Tuple[Array, V, Optional[Array]]] = {}

    def insert(self, label: int, key: Array, value: V, weights: Optional[Array] = None) -> None:
        label = int(label)
        if label in self._items:
            raise KeyError(f"Label {label} already indexed.")
        key = np.array(key, dtype=float).reshape(-1)
        self._items[label] = (key, value, None if weights is None else np.asarray(weights, dtype=float))

    def remove(self, label: int) -> V:
        return self._items.pop(int(label))[1]

    def get(self, label: int) -> V:
        return self._items[int(label)][1]

    def nearest(self, query: Array) -> Optional[Tuple[int, V, float]]:
        best: Optional[Tuple[int, V, float]] = None
        for label in sorted(self._items):
            key, value, weights = self._items[label]
            d = self.metric.distance(query, key, weights)
            if best is None or d < best[2]:
                best = (label, value, d)
        return best

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, label: object) -> bool:
        return label in self._items

    def labels(self) -> List[int]:
        return sorted(self._items)


class KDTreeIndex(SpatialIndex[V]):
    """``cKDTree`` over transformed keys with an insertion buffer.

    New items are appended to a small buffer scanned linearly; the tree is
    rebuilt once the buffer holds ``rebuild_threshold`` items or once half of
    the tree consists of removed items.
    """

    def __init__(self, metric: DistanceMetric, rebuild_threshold: int = 32) -> None:
        if not metric.isotropic:
            raise ValueError("KDTreeIndex requires an isotropic metric.")
        if rebuild_threshold < 1:
            raise ValueError("rebuild_threshold must be positive.")
        super().__init__(metric)
        self.rebuild_threshold = int(rebuild_threshold)
        self._points: Dict[int, Array] = {}
        self._values: Dict[int, V] = {}
        self._pending: List[int] = []
        self._tree: Optional[cKDTree] = None
        self._tree_labels: Array = np.zeros(0, dtype=np.int64)
        self._removed: set[int] = set()

    def insert(self, label: int, key: Array, value: V, weights: Optional[Array] = None) -> None:
        label = int(label)
        if label in self._values:
            raise KeyError(f"Label {label} already indexed.")
        self._points[label] = np.asarray(self.metric.transform(np.asarray(key, dtype=float).reshape(-1)), dtype=float)
        self._values[label] = value
        self._pending.append(label)
        if len(self._pending) >= self.rebuild_threshold:
            self._rebuild()

    def remove(self, label: int) -> V:
        label = int(label)
        value = self._values.pop(label)
        del self._points[label]
        if label in self._pending:
            self._pending.remove(label)
        else:
            self._removed.add(label)
            if 2 * len(self._removed) >= len(self._tree_labels):
                self._rebuild()
        return value

    def get(self, label: int) -> V:
        return self._values[int(label)]

    def _rebuild(self) -> None:
        labels = np.array(sorted(self._points), dtype=np.int64)
        self._pending = []
        self._removed = set()
        self._tree_labels = labels
        if labels.size == 0:
            self._tree = None
            return
        self._tree = cKDTree(np.stack([self._points[int(lb)] for lb in labels], axis=0))
        logger.debug("Rebuilt KD-tree over %d references.", labels.size)

    def _distance(self, tq: Array, label: int) -> float:
        return float(np.linalg.norm(tq - self._points[label]))

    def nearest(self, query: Array) -> Optional[Tuple[int, V, float]]:
        if not self._values:
            return None
        tq = np.asarray(self.metric.transform(np.asarray(query, dtype=float).reshape(-1)), dtype=float)
        candidates: List[int] = list(self._pending)

        if self._tree is not None and self._tree_labels.size > len(self._removed):
            k = min(int(self._tree_labels.size), len(self._removed) + 1)
            dists, idx = self._tree.query(tq, k=k)
            dists = np.atleast_1d(dists)
            idx = np.atleast_1d(idx)
            d_star = None
            for d, i in zip(dists, idx):
                if int(self._tree_labels[int(i)]) not in self._removed:
                    d_star = float(d)
                    break
            if d_star is not None:
                radius = d_star * (1.0 + 1e-9) + 1e-300
                for i in self._tree.query_ball_point(tq, r=radius):
                    lb = int(self._tree_labels[int(i)])
                    if lb not in self._removed:
                        candidates.append(lb)

        best: Optional[Tuple[int, float]] = None
        for lb in sorted(candidates):
            d = self._distance(tq, lb)
            if best is None or d < best[1]:
                best = (lb, d)
        assert best is not None
        return best[0], self._values[best[0]], best[1]

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, label: object) -> bool:
        return label in self._values

    def labels(self) -> List[int]:
        return sorted(self._values)


def make_index(metric: DistanceMetric, rebuild_threshold: int = 32) -> SpatialIndex:
    """Pick the fastest index the metric supports."""
    if metric.isotropic:
        return KDTreeIndex(metric, rebuild_threshold=rebuild_threshold)
    return BruteForceIndex(metric)


__all__ = [
    "DistanceMetric",
    "EuclideanMetric",
    "SensitivityWeightedMetric",
    "SpatialIndex",
    "BruteForceIndex",
    "KDTreeIndex",
    "make_index",
]

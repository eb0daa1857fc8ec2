"""Discrete fingerprints of equilibrium solutions.

A fingerprint records which species are present in non-negligible amount.
References sharing a fingerprint share an active set, so a Taylor step from
one of them to a nearby query does not cross a phase boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .solution import Solution


@dataclass(frozen=True, order=True)
class Fingerprint:
    active: tuple[bool, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "active", tuple(bool(a) for a in self.active))

    @property
    def num_active(self) -> int:
        return sum(self.active)

    def mask(self) -> np.ndarray:
        return np.array(self.active, dtype=bool)

    def __len__(self) -> int:
        return len(self.active)

    def __str__(self) -> str:
        return "".join("1" if a else "0" for a in self.active)


class FingerprintPolicy:
    """Classify species as active or suppressed.

    A species is active when its amount reaches ``threshold``. Amounts within
    ``dead_band`` decades of the threshold are ambiguous: with an ``anchor``
    fingerprint (the reference the query was compared against) they keep the
    anchor's classification, so solutions hovering at the threshold do not
    flap between clusters.
    """

    def __init__(self, threshold: float = 1e-10, dead_band: float = 1.0) -> None:
        if not (np.isfinite(threshold) and threshold > 0.0):
            raise ValueError("threshold must be positive and finite.")
        if not (np.isfinite(dead_band) and dead_band >= 0.0):
            raise ValueError("dead_band must be nonnegative and finite.")
        self.threshold = float(threshold)
        self.dead_band = float(dead_band)

    @property
    def band(self) -> tuple[float, float]:
        factor = 10.0 ** self.dead_band
        return self.threshold / factor, self.threshold * factor

    def __call__(self, solution: Solution, anchor: Optional[Fingerprint] = None) -> Fingerprint:
        return self.classify(solution.amounts, anchor)

    def classify(self, amounts: np.ndarray, anchor: Optional[Fingerprint] = None) -> Fingerprint:
        amounts = np.asarray(amounts, dtype=float).reshape(-1)
        active = amounts >= self.threshold
        if anchor is not None and self.dead_band > 0.0:
            if len(anchor) != amounts.shape[0]:
                raise ValueError("anchor fingerprint length does not match the number of species.")
            lo, hi = self.band
            ambiguous = (amounts >= lo) & (amounts < hi)
            active = np.where(ambiguous, anchor.mask(), active)
        return Fingerprint(tuple(active.tolist()))


__all__ = [
    "Fingerprint",
    "FingerprintPolicy",
]

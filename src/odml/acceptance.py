"""Acceptance tests for extrapolated solutions.

Checks run cheapest first and stop at the first failure:

1. distance to the reference within ``distance_radius``;
2. every amount at least ``amount_floor - feasibility_tolerance``;
3. the local error bound within ``error_tolerance`` (tightened by
   ``ill_conditioned_factor`` when the estimate is flagged ill-conditioned);
4. the element balance, fixed-amount and bound residual within
   ``balance_tolerance``, relative to ``max(|b|_inf, 1)``.

Amounts below the floor but inside the feasibility tolerance are clipped to
the floor before the balance check, so an accepted solution never has an
amount below the floor.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import enum
import logging
from typing import Optional

import numpy as np

from .estimator import Estimate
from .problem import Conditions
from .solution import Solution
from .spatial import DistanceMetric, EuclideanMetric
from .store import ReferenceRecord
from .system import ChemicalSystem

logger = logging.getLogger(__name__)


class Check(enum.Enum):
    DISTANCE = "distance"
    FEASIBILITY = "feasibility"
    ERROR = "error"
    BALANCE = "balance"


@dataclass(frozen=True, eq=False)
class Decision:
    accepted: bool
    failed_check: Optional[Check] = None
    distance: float = float("nan")
    error: float = float("nan")
    residual: float = float("nan")
    solution: Optional[Solution] = None


class ErrorBound(ABC):
    """Scalar estimate of the truncation error of a Taylor step."""

    name = "custom"

    @abstractmethod
    def __call__(self, estimate: Estimate, record: ReferenceRecord, metric: DistanceMetric) -> float:
        ...


class StepSizeBound(ErrorBound):
    """Largest normalised component of the step."""

    name = "step"

    def __call__(self, estimate: Estimate, record: ReferenceRecord, metric: DistanceMetric) -> float:
        step = metric.normalized_step(estimate.step)
        return float(np.max(np.abs(step))) if step.size else 0.0


class CurvatureBound(ErrorBound):
    """``0.5 * kappa * h**2`` with ``h`` the normalised step length.

    ``kappa`` is the curvature proxy stored on the record when it was learned
    (relative second-order change per squared normalised distance, measured
    against the nearest record of the same cluster). Records learned without
    a neighbour fall back to :class:`StepSizeBound`.
    """

    name = "curvature"

    def __init__(self) -> None:
        self._fallback = StepSizeBound()

    def __call__(self, estimate: Estimate, record: ReferenceRecord, metric: DistanceMetric) -> float:
        if record.curvature is None:
            return self._fallback(estimate, record, metric)
        h = float(np.linalg.norm(metric.normalized_step(estimate.step)))
        return 0.5 * float(record.curvature) * h * h


class VariationBound(ErrorBound):
    """Largest relative change of an active species amount."""

    name = "variation"

    def __init__(self, cutoff: float = 1e-8) -> None:
        if not cutoff > 0.0:
            raise ValueError("cutoff must be positive.")
        self.cutoff = float(cutoff)

    def __call__(self, estimate: Estimate, record: ReferenceRecord, metric: DistanceMetric) -> float:
        n0 = record.solution.amounts
        mask = np.abs(n0) > self.cutoff
        if not np.any(mask):
            return 0.0
        rel = np.abs(estimate.solution.amounts[mask] - n0[mask]) / np.abs(n0[mask])
        return float(np.max(rel))


def make_error_bound(spec, variation_cutoff: float = 1e-8) -> ErrorBound:
    if isinstance(spec, ErrorBound):
        return spec
    key = str(spec).strip().lower()
    if key == "step":
        return StepSizeBound()
    if key == "curvature":
        return CurvatureBound()
    if key == "variation":
        return VariationBound(variation_cutoff)
    raise ValueError("error_bound must be 'step', 'curvature', 'variation' or an ErrorBound instance.")


def balance_residual(system: ChemicalSystem, conditions: Conditions, amounts: np.ndarray) -> float:
    """Relative residual of element balance, fixed amounts and bounds."""
    n = np.asarray(amounts, dtype=float).reshape(-1)
    b = conditions.amounts
    if b.shape[0] != system.num_elements:
        raise ValueError(f"Conditions carry {b.shape[0]} element amounts, system has {system.num_elements}.")
    restrictions = conditions.restrictions
    fixed_idx = list(restrictions.fixed_indices)
    fixed_val = restrictions.fixed_values
    residual = system.formula_matrix @ n - b
    if fixed_idx:
        residual = np.concatenate([residual, n[fixed_idx] - fixed_val])
    scale = max(float(np.max(np.abs(b))) if b.size else 0.0, float(np.max(fixed_val)) if fixed_val.size else 0.0, 1.0)
    worst = float(np.max(np.abs(residual))) if residual.size else 0.0
    for i, lo in restrictions.lower:
        worst = max(worst, lo - n[i])
    for i, hi in restrictions.upper:
        worst = max(worst, n[i] - hi)
    return worst / scale


class AcceptanceController:
    def __init__(
        self,
        system: ChemicalSystem,
        distance_radius: float = 0.05,
        amount_floor: float = 0.0,
        feasibility_tolerance: float = 1e-12,
        error_tolerance: float = 0.01,
        balance_tolerance: float = 1e-8,
        error_bound: ErrorBound | str = "step",
        ill_conditioned_factor: float = 0.1,
        variation_cutoff: float = 1e-8,
    ) -> None:
        self.system = system
        self.distance_radius = float(distance_radius)
        self.amount_floor = float(amount_floor)
        self.feasibility_tolerance = float(feasibility_tolerance)
        self.error_tolerance = float(error_tolerance)
        self.balance_tolerance = float(balance_tolerance)
        self.error_bound = make_error_bound(error_bound, variation_cutoff)
        self.ill_conditioned_factor = float(ill_conditioned_factor)

    def evaluate(
        self,
        conditions: Conditions,
        estimate: Estimate,
        record: ReferenceRecord,
        distance: Optional[float] = None,
        metric: Optional[DistanceMetric] = None,
    ) -> Decision:
        if metric is None:
            metric = EuclideanMetric().fit(record.conditions.vector)
        if distance is None:
            distance = metric.distance(conditions.vector, record.conditions.vector)
        distance = float(distance)

        if not distance <= self.distance_radius:
            return self._reject(Check.DISTANCE, record, distance=distance)

        amounts = estimate.solution.amounts
        if not np.all(amounts >= self.amount_floor - self.feasibility_tolerance):
            return self._reject(Check.FEASIBILITY, record, distance=distance)
        clipped = np.maximum(amounts, self.amount_floor)

        tolerance = self.error_tolerance
        if estimate.ill_conditioned:
            tolerance *= self.ill_conditioned_factor
        error = float(self.error_bound(estimate, record, metric))
        if not error <= tolerance:
            return self._reject(Check.ERROR, record, distance=distance, error=error)

        residual = balance_residual(self.system, conditions, clipped)
        if not residual <= self.balance_tolerance:
            return self._reject(Check.BALANCE, record, distance=distance, error=error, residual=residual)

        est = estimate.solution
        solution = Solution(
            amounts=clipped,
            duals=est.duals,
            stability=est.stability,
            properties=est.properties,
            estimated=True,
        )
        return Decision(True, None, distance=distance, error=error, residual=residual, solution=solution)

    def accept(
        self,
        conditions: Conditions,
        estimate: Estimate,
        record: ReferenceRecord,
        distance: Optional[float] = None,
        metric: Optional[DistanceMetric] = None,
    ) -> bool:
        return self.evaluate(conditions, estimate, record, distance=distance, metric=metric).accepted

    @staticmethod
    def _reject(check: Check, record: ReferenceRecord, **values: float) -> Decision:
        logger.debug("Reference %d rejected by %s check (%s).", record.label, check.value, values)
        return Decision(False, check, **values)


__all__ = [
    "Check",
    "Decision",
    "ErrorBound",
    "StepSizeBound",
    "CurvatureBound",
    "VariationBound",
    "make_error_bound",
    "balance_residual",
    "AcceptanceController",
]

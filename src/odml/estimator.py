"""First-order Taylor extrapolation from a reference record."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .problem import Conditions
from .solution import Solution
from .store import ReferenceRecord


@dataclass(frozen=True, eq=False)
class Estimate:
    """Extrapolated solution.

    ``step`` is ``conditions.vector - record.conditions.vector``.
    ``ill_conditioned`` flags a stored sensitivity that is non-finite or too
    large to trust, or an estimate that came out non-finite; the acceptance
    controller tightens its error tolerance when it is set.
    """

    solution: Solution
    step: np.ndarray
    ill_conditioned: bool = False


class TaylorEstimator:
    """``x(c) ~ x(c0) + dx/dc (c - c0)`` for amounts, duals and properties."""

    def __init__(self, conditioning_limit: float = 1e8) -> None:
        if not conditioning_limit > 0.0:
            raise ValueError("conditioning_limit must be positive.")
        self.conditioning_limit = float(conditioning_limit)

    def estimate(self, conditions: Conditions, record: ReferenceRecord) -> Estimate:
        step = conditions.vector - record.conditions.vector
        sens = record.sensitivity
        if sens.num_inputs != step.shape[0]:
            raise ValueError(
                f"Sensitivity has {sens.num_inputs} columns but the Conditions vector has length {step.shape[0]}."
            )
        ref = record.solution

        amounts = ref.amounts + sens.amounts @ step
        if sens.duals is not None and sens.duals.shape[0] == ref.duals.shape[0]:
            duals = ref.duals + sens.duals @ step
        else:
            duals = np.array(ref.duals)
        properties = dict(ref.properties)
        for name, row in sens.properties.items():
            if name in properties:
                properties[name] = float(properties[name] + row @ step)

        solution = Solution(
            amounts=amounts,
            duals=duals,
            stability=ref.stability,
            properties=properties,
            estimated=True,
        )
        ill = (not sens.is_finite()) or sens.norm > self.conditioning_limit or not solution.is_finite()
        step = np.array(step)
        step.setflags(write=False)
        return Estimate(solution=solution, step=step, ill_conditioned=bool(ill))


__all__ = [
    "Estimate",
    "TaylorEstimator",
]

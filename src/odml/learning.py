"""Rigorous fallback path: solve exactly, fingerprint, store."""

from __future__ import annotations

import logging
import time
from typing import Optional, Tuple

import numpy as np

from .context import ReferenceContext
from .errors import SolveFailure
from .fingerprint import Fingerprint, FingerprintPolicy
from .problem import Conditions
from .solution import OracleResult, RigorousSolver, Sensitivity, Solution
from .store import ReferenceRecord
from .system import ChemicalSystem

logger = logging.getLogger(__name__)


class LearningController:
    def __init__(
        self,
        system: ChemicalSystem,
        oracle: RigorousSolver,
        context: ReferenceContext,
        fingerprint: Optional[FingerprintPolicy] = None,
    ) -> None:
        self.system = system
        self.oracle = oracle
        self.context = context
        self.fingerprint = fingerprint if fingerprint is not None else FingerprintPolicy()

    def learn(self, conditions: Conditions, anchor: Optional[Fingerprint] = None) -> Tuple[Solution, Sensitivity]:
        record = self.learn_record(conditions, anchor=anchor)
        if record is None:
            raise SolveFailure("Rigorous solve returned a non-finite sensitivity.")
        return record.solution, record.sensitivity

    def solve_exact(self, conditions: Conditions) -> OracleResult:
        """Call the oracle and validate its result. Nothing is stored."""
        result = self.oracle.solve(conditions)
        diag = result.diagnostics
        if not diag.converged:
            logger.warning(
                "Rigorous solve did not converge after %d iterations (residual %.3e).",
                diag.iterations,
                diag.residual,
            )
            raise SolveFailure(diag.message or "Rigorous solve did not converge.", diagnostics=diag)
        if not result.solution.is_finite():
            raise SolveFailure("Rigorous solve returned non-finite values.", diagnostics=diag)
        if result.solution.num_species != self.system.num_species:
            raise ValueError(
                f"Oracle returned {result.solution.num_species} amounts for a system of {self.system.num_species} species."
            )
        if result.sensitivity.num_inputs != conditions.num_inputs:
            raise ValueError(
                f"Oracle sensitivity has {result.sensitivity.num_inputs} columns, expected {conditions.num_inputs}."
            )
        return result

    def learn_record(
        self,
        conditions: Conditions,
        anchor: Optional[Fingerprint] = None,
        result: Optional[OracleResult] = None,
    ) -> Optional[ReferenceRecord]:
        """Solve ``conditions`` exactly and insert the result as a new record.

        Returns ``None`` without storing anything when the oracle's solution is
        usable but its sensitivity is not finite.
        """
        if result is None:
            result = self.solve_exact(conditions)
        if not result.sensitivity.is_finite():
            logger.warning("Sensitivity is not finite; the solution is returned but not stored.")
            return None

        fingerprint = self.fingerprint(result.solution, anchor)
        record = ReferenceRecord(
            label=self.context.next_label(),
            conditions=conditions,
            solution=result.solution,
            sensitivity=result.sensitivity,
            fingerprint=fingerprint,
            created=time.time(),
            curvature=self._curvature(conditions, result, fingerprint),
        )
        self.context.insert(record)
        logger.debug("Learned reference %d with fingerprint %s.", record.label, fingerprint)
        return record

    def _curvature(self, conditions: Conditions, result: OracleResult, fingerprint: Fingerprint) -> Optional[float]:
        index = self.context.index
        with self.context.lock.read():
            hit = index.nearest_in(fingerprint, conditions)
            metric = index.metric_for(conditions.layout)
        if hit is None or metric is None:
            return None
        neighbour = hit[0]
        dc = conditions.vector - neighbour.conditions.vector
        h = float(np.linalg.norm(metric.normalized_step(dc)))
        if h == 0.0:
            return None
        change = float(np.linalg.norm((result.sensitivity.amounts - neighbour.sensitivity.amounts) @ dc))
        total = max(float(np.sum(np.abs(result.solution.amounts))), np.finfo(float).tiny)
        return change / (h * h * total)


__all__ = [
    "LearningController",
]

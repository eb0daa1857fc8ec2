"""Query-stream lifecycle utilities.

A stream of Conditions (for example one per cell and time step of a transport
simulation) is fed to a :class:`~odml.toolbox.SmartEquilibriumSolver` in
episodes; per-episode metrics show how the reference store warms up.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from .acceptance import Check
from .problem import Conditions
from .solution import RigorousSolver, Solution
from .toolbox import SmartEquilibriumSolver

logger = logging.getLogger(__name__)


def relative_error(estimate: Solution, exact: Solution, floor: float = 1e-12) -> float:
    """Largest relative amount error, with amounts below ``floor`` compared absolutely."""
    denom = np.maximum(np.abs(exact.amounts), floor)
    return float(np.max(np.abs(estimate.amounts - exact.amounts) / denom))


def solve_baseline(conditions: Sequence[Conditions], oracle: RigorousSolver) -> List[Solution]:
    """Solve each query rigorously to obtain reference answers."""
    out: List[Solution] = []
    for idx, cond in enumerate(conditions):
        result = oracle.solve(cond)
        if not result.diagnostics.converged:
            raise RuntimeError(f"Baseline solve failed to converge for query {idx}")
        out.append(result.solution)
    return out


def run_query_stream(
    solver: SmartEquilibriumSolver,
    conditions: Sequence[Conditions],
    episode_size: int,
    baseline: Optional[Sequence[Solution]] = None,
) -> List[Dict[str, float]]:
    """Feed ``conditions`` to ``solver`` and collect metrics per episode.

    With ``baseline`` (exact answers aligned with ``conditions``) the largest
    relative error of accepted estimates is reported as well.
    """
    if episode_size < 1:
        raise ValueError("episode_size must be positive.")
    if baseline is not None and len(baseline) != len(conditions):
        raise ValueError("baseline must have one solution per query.")

    metrics: List[Dict[str, float]] = []
    for episode_idx, start in enumerate(range(0, len(conditions), episode_size), start=1):
        batch = conditions[start : start + episode_size]
        hits = 0
        accepts = 0
        learns = 0
        distances: List[float] = []
        iterations: List[int] = []
        total_time = 0.0
        learn_time = 0.0
        rejected = {check: 0 for check in Check}
        max_error = 0.0

        for offset, cond in enumerate(batch):
            solution, stats = solver.solve_with_stats(cond)
            total_time += stats.timings.get("total", 0.0)
            learn_time += stats.timings.get("learn", 0.0)
            if stats.hit:
                hits += 1
                distances.append(stats.distance)
            if stats.accepted:
                accepts += 1
                if baseline is not None:
                    max_error = max(max_error, relative_error(solution, baseline[start + offset]))
            if stats.learned:
                learns += 1
            if stats.oracle_iterations is not None:
                iterations.append(stats.oracle_iterations)
            for check in stats.rejections:
                rejected[check] += 1

        n = len(batch)
        row: Dict[str, float] = {
            "episode": episode_idx,
            "queries": n,
            "hit_rate": hits / n,
            "acceptance_rate": accepts / n,
            "learns": learns,
            "mean_distance": float(np.mean(distances)) if distances else float("nan"),
            "avg_oracle_iterations": float(np.mean(iterations)) if iterations else float("nan"),
            "store_size": solver.num_references,
            "avg_time": total_time / n,
            "learn_time_share": learn_time / total_time if total_time > 0.0 else float("nan"),
        }
        for check, count in rejected.items():
            row[f"rejected_{check.value}"] = count
        if baseline is not None:
            row["max_accepted_error"] = max_error
        metrics.append(row)
        logger.info(
            "Episode %d: acceptance %.2f, %d learns, %d references.",
            episode_idx,
            row["acceptance_rate"],
            learns,
            row["store_size"],
        )
    return metrics


def format_metrics(metrics: Sequence[Dict[str, float]]) -> str:
    """Render episode metrics as a fixed-width table."""
    if not metrics:
        return ""
    columns = list(metrics[0].keys())
    widths = [max(len(col), 10) for col in columns]

    def cell(value: float) -> str:
        if isinstance(value, (int, np.integer)):
            return str(int(value))
        return f"{float(value):.4g}"

    lines = ["  ".join(col.rjust(w) for col, w in zip(columns, widths))]
    for row in metrics:
        lines.append("  ".join(cell(row.get(col, float("nan"))).rjust(w) for col, w in zip(columns, widths)))
    return "\n".join(lines)


__all__ = [
    "relative_error",
    "solve_baseline",
    "run_query_stream",
    "format_metrics",
]

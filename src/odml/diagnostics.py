"""Query states and statistics.

One query moves through the states below. Each state is a small immutable
object; the solver facade advances a query by dispatching on the state type
until it reaches :class:`Accepted` or :class:`Learned`::

    Lookup -> Miss -> Learned
    Lookup -> Estimated -> Accepted
    Lookup -> Estimated -> Rejected -> (Estimated | Learned)

A failing rigorous solve raises instead of producing a terminal state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import threading
from typing import Dict, List, Optional, Tuple, Union

from .acceptance import Check, Decision
from .estimator import Estimate
from .problem import Conditions
from .solution import Sensitivity, SolveDiagnostics, Solution
from .spatial import DistanceMetric
from .store import ReferenceRecord

Candidate = Tuple[ReferenceRecord, float]


class Outcome(enum.Enum):
    ACCEPTED = "accepted"
    LEARNED_MISS = "learned_miss"
    LEARNED_REJECTED = "learned_rejected"
    LEARNED_FORCED = "learned_forced"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class Lookup:
    conditions: Conditions


@dataclass(frozen=True, eq=False)
class Miss:
    conditions: Conditions


@dataclass(frozen=True, eq=False)
class Estimated:
    conditions: Conditions
    record: ReferenceRecord
    distance: float
    estimate: Estimate
    metric: DistanceMetric
    remaining: Tuple[Candidate, ...] = ()


@dataclass(frozen=True, eq=False)
class Rejected:
    conditions: Conditions
    record: ReferenceRecord
    decision: Decision
    metric: DistanceMetric
    remaining: Tuple[Candidate, ...] = ()


@dataclass(frozen=True, eq=False)
class Accepted:
    conditions: Conditions
    record: ReferenceRecord
    decision: Decision

    @property
    def solution(self) -> Solution:
        assert self.decision.solution is not None
        return self.decision.solution


@dataclass(frozen=True, eq=False)
class Learned:
    conditions: Conditions
    solution: Solution
    outcome: Outcome
    record: Optional[ReferenceRecord] = None
    diagnostics: Optional[SolveDiagnostics] = None
    sensitivity: Optional[Sensitivity] = None


QueryState = Union[Lookup, Miss, Estimated, Rejected, Accepted, Learned]


@dataclass
class QueryStats:
    """What happened to one query."""

    outcome: Outcome = Outcome.FAILED
    hit: bool = False
    distance: float = float("nan")
    error: float = float("nan")
    residual: float = float("nan")
    candidates_tried: int = 0
    rejections: List[Check] = field(default_factory=list)
    reference_label: Optional[int] = None
    learned_label: Optional[int] = None
    oracle_iterations: Optional[int] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.outcome is Outcome.ACCEPTED

    @property
    def failed_check(self) -> Optional[Check]:
        return self.rejections[-1] if self.rejections else None

    @property
    def learned(self) -> bool:
        return self.outcome in {Outcome.LEARNED_MISS, Outcome.LEARNED_REJECTED, Outcome.LEARNED_FORCED}

    def add_time(self, phase: str, seconds: float) -> None:
        self.timings[phase] = self.timings.get(phase, 0.0) + float(seconds)


class SolverStatistics:
    """Running totals over all queries of a solver. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self.queries = 0
            self.hits = 0
            self.misses = 0
            self.accepts = 0
            self.learns = 0
            self.failures = 0
            self.rejections: Dict[Check, int] = {check: 0 for check in Check}
            self.timings: Dict[str, float] = {}

    def record(self, stats: QueryStats) -> None:
        with self._lock:
            self.queries += 1
            if stats.hit:
                self.hits += 1
            elif stats.outcome is not Outcome.LEARNED_FORCED:
                self.misses += 1
            if stats.accepted:
                self.accepts += 1
            if stats.learned:
                self.learns += 1
            if stats.outcome is Outcome.FAILED:
                self.failures += 1
            for check in stats.rejections:
                self.rejections[check] += 1
            for phase, seconds in stats.timings.items():
                self.timings[phase] = self.timings.get(phase, 0.0) + seconds

    @property
    def hit_rate(self) -> float:
        return self.hits / self.queries if self.queries else float("nan")

    @property
    def acceptance_rate(self) -> float:
        return self.accepts / self.queries if self.queries else float("nan")

    def as_dict(self) -> Dict[str, float]:
        with self._lock:
            out: Dict[str, float] = {
                "queries": self.queries,
                "hits": self.hits,
                "misses": self.misses,
                "accepts": self.accepts,
                "learns": self.learns,
                "failures": self.failures,
            }
            for check, count in self.rejections.items():
                out[f"rejected_{check.value}"] = count
            for phase, seconds in self.timings.items():
                out[f"time_{phase}"] = seconds
        out["hit_rate"] = self.hit_rate
        out["acceptance_rate"] = self.acceptance_rate
        return out


__all__ = [
    "Outcome",
    "Lookup",
    "Miss",
    "Estimated",
    "Rejected",
    "Accepted",
    "Learned",
    "QueryState",
    "QueryStats",
    "SolverStatistics",
]

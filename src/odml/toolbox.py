"""Smart equilibrium solver facade and its options."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
import logging
import threading
import time
from typing import Any, List, Optional, Sequence, Tuple
import warnings

import numpy as np

from .acceptance import AcceptanceController, ErrorBound
from .clusters import ClusterIndex
from .context import ReferenceContext
from .diagnostics import (
    Accepted,
    Estimated,
    Learned,
    Lookup,
    Miss,
    Outcome,
    QueryState,
    QueryStats,
    Rejected,
    SolverStatistics,
)
from .errors import ConfigurationError
from .estimator import TaylorEstimator
from .fingerprint import Fingerprint, FingerprintPolicy
from .learning import LearningController
from .problem import Conditions, Restrictions
from .solution import RigorousSolver, Sensitivity, Solution
from .spatial import DistanceMetric, EuclideanMetric, SensitivityWeightedMetric
from .system import ChemicalSystem

logger = logging.getLogger(__name__)

_INDEX_OPTIONS = ("metric", "condition_scale", "scale_floor", "rebuild_threshold")


def _number(value: Any, name: str) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}.") from exc
    if not np.isfinite(out):
        raise ConfigurationError(f"{name} must be finite.")
    return out


def _positive(value: Any, name: str) -> float:
    out = _number(value, name)
    if out <= 0.0:
        raise ConfigurationError(f"{name} must be positive.")
    return out


def _nonnegative(value: Any, name: str) -> float:
    out = _number(value, name)
    if out < 0.0:
        raise ConfigurationError(f"{name} must be nonnegative.")
    return out


def _count(value: Any, name: str) -> int:
    if isinstance(value, bool) or _number(value, name) != int(value) or int(value) < 1:
        raise ConfigurationError(f"{name} must be an integer >= 1.")
    return int(value)


@dataclass
class EngineOptions:
    """Tolerances, capacities and strategies of the smart solver.

    Defaults favour correctness over hit rate. Invalid values raise
    :class:`~odml.errors.ConfigurationError`.

    ``amount_floor`` constrains estimated solutions only: an estimate with an
    amount below the floor (beyond ``feasibility_tolerance``) is rejected, and
    one inside the tolerance is clipped to it. Solutions from the rigorous
    solver are returned exactly as computed, so with a positive floor a
    learned amount may lie below it.
    """

    capacity: int = 10000
    distance_radius: float = 0.05
    amount_floor: float = 0.0
    feasibility_tolerance: float = 1e-12
    error_tolerance: float = 0.01
    balance_tolerance: float = 1e-8
    error_bound: Any = "step"
    variation_cutoff: float = 1e-8
    ill_conditioned_factor: float = 0.1
    conditioning_limit: float = 1e8
    metric: Any = "euclidean"
    condition_scale: Optional[Tuple[float, ...]] = None
    scale_floor: float = 1e-6
    search_depth: int = 1
    fingerprint_threshold: float = 1e-10
    fingerprint_dead_band: float = 1.0
    estimation_enabled: bool = True
    rebuild_threshold: int = 32

    def __post_init__(self) -> None:
        self.capacity = _count(self.capacity, "capacity")
        self.search_depth = _count(self.search_depth, "search_depth")
        self.rebuild_threshold = _count(self.rebuild_threshold, "rebuild_threshold")
        self.distance_radius = _nonnegative(self.distance_radius, "distance_radius")
        self.amount_floor = _number(self.amount_floor, "amount_floor")
        self.feasibility_tolerance = _nonnegative(self.feasibility_tolerance, "feasibility_tolerance")
        self.error_tolerance = _positive(self.error_tolerance, "error_tolerance")
        self.balance_tolerance = _positive(self.balance_tolerance, "balance_tolerance")
        self.variation_cutoff = _positive(self.variation_cutoff, "variation_cutoff")
        self.conditioning_limit = _positive(self.conditioning_limit, "conditioning_limit")
        self.scale_floor = _positive(self.scale_floor, "scale_floor")
        self.fingerprint_threshold = _positive(self.fingerprint_threshold, "fingerprint_threshold")
        self.fingerprint_dead_band = _nonnegative(self.fingerprint_dead_band, "fingerprint_dead_band")
        self.ill_conditioned_factor = _positive(self.ill_conditioned_factor, "ill_conditioned_factor")
        if self.ill_conditioned_factor > 1.0:
            raise ConfigurationError("ill_conditioned_factor must not exceed 1.")

        if not isinstance(self.error_bound, ErrorBound):
            bound = str(self.error_bound).strip().lower()
            if bound not in {"step", "curvature", "variation"}:
                raise ConfigurationError(
                    "error_bound must be one of {'step', 'curvature', 'variation'} or an ErrorBound instance."
                )
            self.error_bound = bound
        if not isinstance(self.metric, DistanceMetric):
            metric = str(self.metric).strip().lower()
            if metric not in {"euclidean", "sensitivity"}:
                raise ConfigurationError(
                    "metric must be one of {'euclidean', 'sensitivity'} or a DistanceMetric instance."
                )
            self.metric = metric
        if self.condition_scale is not None:
            try:
                scale = np.asarray(self.condition_scale, dtype=float).reshape(-1)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError("condition_scale must be a sequence of numbers.") from exc
            if scale.size == 0 or np.any(~np.isfinite(scale)) or np.any(scale <= 0.0):
                raise ConfigurationError("condition_scale entries must be positive and finite.")
            self.condition_scale = tuple(float(s) for s in scale)
        if not isinstance(self.estimation_enabled, (bool, np.bool_)):
            raise ConfigurationError("estimation_enabled must be a boolean.")
        self.estimation_enabled = bool(self.estimation_enabled)


def build_metric(options: EngineOptions) -> DistanceMetric:
    if isinstance(options.metric, DistanceMetric):
        metric = options.metric
    else:
        scale = None if options.condition_scale is None else np.asarray(options.condition_scale, dtype=float)
        if options.metric == "sensitivity":
            metric = SensitivityWeightedMetric(scale=scale, floor=options.scale_floor)
        else:
            metric = EuclideanMetric(scale=scale, floor=options.scale_floor)
    if not metric.isotropic:
        logger.warning("Metric %s is anisotropic; cluster searches fall back to a linear scan.", type(metric).__name__)
    return metric


@dataclass(frozen=True)
class _Components:
    options: EngineOptions
    estimator: TaylorEstimator
    acceptance: AcceptanceController
    learner: LearningController


class SmartEquilibriumSolver:
    """On-demand learning front end for a rigorous equilibrium solver.

    Each query looks up the nearest stored reference, extrapolates from it and
    returns the estimate if it passes the acceptance checks. Otherwise the
    rigorous ``oracle`` is called and its result stored for later queries.
    """

    def __init__(
        self,
        system: ChemicalSystem,
        oracle: RigorousSolver,
        options: Optional[EngineOptions] = None,
        context: Optional[ReferenceContext] = None,
    ) -> None:
        if options is not None and not isinstance(options, EngineOptions):
            raise TypeError("options must be an EngineOptions instance or None.")
        self.system = system
        self.oracle = oracle
        opts = replace(options) if options is not None else EngineOptions()
        if context is None:
            context = ReferenceContext(
                capacity=opts.capacity,
                metric=build_metric(opts),
                rebuild_threshold=opts.rebuild_threshold,
            )
        else:
            if options is not None and context.capacity != opts.capacity:
                warnings.warn(
                    f"Shared context keeps its capacity {context.capacity}; requested {opts.capacity} is ignored. "
                    "Use configure(capacity=...) to resize it.",
                    RuntimeWarning,
                    stacklevel=2,
                )
            opts = replace(opts, capacity=context.capacity)
        self.context = context
        self.statistics = SolverStatistics()
        self._local = threading.local()
        self._config_error: Optional[ConfigurationError] = None
        self._components = self._build_components(opts)

    # ----------------------------------------------------------- configuration

    @property
    def options(self) -> EngineOptions:
        return self._components.options

    def _build_components(self, opts: EngineOptions) -> _Components:
        return _Components(
            options=opts,
            estimator=TaylorEstimator(conditioning_limit=opts.conditioning_limit),
            acceptance=AcceptanceController(
                self.system,
                distance_radius=opts.distance_radius,
                amount_floor=opts.amount_floor,
                feasibility_tolerance=opts.feasibility_tolerance,
                error_tolerance=opts.error_tolerance,
                balance_tolerance=opts.balance_tolerance,
                error_bound=opts.error_bound,
                ill_conditioned_factor=opts.ill_conditioned_factor,
                variation_cutoff=opts.variation_cutoff,
            ),
            learner=LearningController(
                self.system,
                self.oracle,
                self.context,
                FingerprintPolicy(opts.fingerprint_threshold, opts.fingerprint_dead_band),
            ),
        )

    def configure(self, options: Optional[EngineOptions] = None, **overrides: Any) -> EngineOptions:
        """Replace the options, optionally overriding individual fields.

        Invalid values raise :class:`ConfigurationError` and leave the solver
        unusable until a later call succeeds. Stored references are kept and
        not revalidated; lowering ``capacity`` evicts immediately.
        """
        base = options if options is not None else self.options
        try:
            if not isinstance(base, EngineOptions):
                raise ConfigurationError("options must be an EngineOptions instance or None.")
            unknown = set(overrides) - {f.name for f in fields(EngineOptions)}
            if unknown:
                raise ConfigurationError(f"Unknown option(s): {', '.join(sorted(unknown))}.")
            new = replace(base, **overrides)
        except ConfigurationError as exc:
            self._config_error = exc
            raise

        old = self.options
        if new.capacity != self.context.capacity:
            evicted = self.context.set_capacity(new.capacity)
            logger.info("Capacity set to %d (%d references evicted).", new.capacity, len(evicted))
        if any(getattr(new, name) != getattr(old, name) for name in _INDEX_OPTIONS):
            new = self._reindex(new, old)
        self._components = self._build_components(new)
        self._config_error = None
        return new

    def _reindex(self, new: EngineOptions, old: EngineOptions) -> EngineOptions:
        ctx = self.context
        with ctx.lock.write():
            if len(ctx.store) == 0:
                ctx.index = ClusterIndex(ctx.store, metric=build_metric(new), rebuild_threshold=new.rebuild_threshold)
                return new
        warnings.warn(
            "Distance metric options cannot change while references are stored; keeping the current index.",
            RuntimeWarning,
            stacklevel=3,
        )
        return replace(new, **{name: getattr(old, name) for name in _INDEX_OPTIONS})

    # ---------------------------------------------------------------- queries

    def solve(self, conditions: Conditions, restrictions: Optional[Restrictions] = None) -> Solution:
        return self.solve_with_stats(conditions, restrictions)[0]

    def solve_batch(self, conditions: Sequence[Conditions]) -> List[Solution]:
        return [self.solve(c) for c in conditions]

    def solve_with_stats(
        self,
        conditions: Conditions,
        restrictions: Optional[Restrictions] = None,
    ) -> Tuple[Solution, QueryStats]:
        state, stats = self._query(conditions, restrictions)
        return state.solution.copy(), stats

    def solve_with_sensitivity(
        self,
        conditions: Conditions,
        restrictions: Optional[Restrictions] = None,
    ) -> Tuple[Solution, Sensitivity]:
        """Solve and return the sensitivity the answer is based on.

        A learned answer carries the oracle's sensitivity at the query. An
        accepted estimate carries the sensitivity of the reference it was
        extrapolated from, which is the slope the estimate used.
        The returned sensitivity is immutable and may be shared with the store.
        """
        state, _ = self._query(conditions, restrictions)
        if isinstance(state, Accepted):
            sensitivity = state.record.sensitivity
        else:
            sensitivity = state.sensitivity
        return state.solution.copy(), sensitivity

    def _query(self, conditions: Conditions, restrictions: Optional[Restrictions]) -> Tuple[QueryState, QueryStats]:
        if self._config_error is not None:
            raise ConfigurationError(f"Solver is not configured: {self._config_error}") from self._config_error
        if restrictions is not None:
            conditions = conditions.with_restrictions(restrictions)
        comps = self._components
        self._validate(conditions, comps.options)

        stats = QueryStats()
        self._local.stats = stats
        t0 = time.perf_counter()
        try:
            state = self._run(conditions, comps, stats)
        except Exception:
            stats.outcome = Outcome.FAILED
            stats.add_time("total", time.perf_counter() - t0)
            self.statistics.record(stats)
            raise
        stats.add_time("total", time.perf_counter() - t0)
        self.statistics.record(stats)
        logger.debug(
            "Query %s (distance %.3e, rejections %s).",
            stats.outcome.value,
            stats.distance,
            [c.value for c in stats.rejections],
        )
        return state, stats

    def _validate(self, conditions: Conditions, opts: EngineOptions) -> None:
        if not isinstance(conditions, Conditions):
            raise TypeError("conditions must be a Conditions instance.")
        if conditions.num_elements != self.system.num_elements:
            raise ValueError(
                f"Conditions carry {conditions.num_elements} element amounts, system has {self.system.num_elements}."
            )
        if conditions.restrictions.max_index() >= self.system.num_species:
            raise ValueError("Restriction references a species outside the system.")
        if opts.condition_scale is not None and len(opts.condition_scale) != conditions.num_inputs:
            raise ValueError(
                f"condition_scale has {len(opts.condition_scale)} entries, Conditions vector has {conditions.num_inputs}."
            )

    def _run(self, conditions: Conditions, comps: _Components, stats: QueryStats) -> QueryState:
        if not comps.options.estimation_enabled:
            return self._learn(conditions, comps, stats, Outcome.LEARNED_FORCED, anchor=None)

        anchor: Optional[Fingerprint] = None
        ctx = self.context
        with ctx.lock.read():
            state: QueryState = Lookup(conditions)
            while True:
                if isinstance(state, Lookup):
                    state = self._lookup(state, comps, stats)
                elif isinstance(state, Estimated):
                    state = self._decide(state, comps, stats)
                elif isinstance(state, Rejected) and state.remaining:
                    if anchor is None:
                        anchor = state.record.fingerprint
                    state = self._estimate(conditions, state.remaining, state.metric, comps, stats)
                else:
                    break
            if isinstance(state, Accepted):
                ctx.mark_used(state.record)
                stats.outcome = Outcome.ACCEPTED
                stats.reference_label = state.record.label
                return state

        if isinstance(state, Miss):
            return self._learn(conditions, comps, stats, Outcome.LEARNED_MISS, anchor=None)
        assert isinstance(state, Rejected)
        if anchor is None:
            anchor = state.record.fingerprint
        return self._learn(conditions, comps, stats, Outcome.LEARNED_REJECTED, anchor=anchor)

    def _lookup(self, state: Lookup, comps: _Components, stats: QueryStats) -> QueryState:
        t0 = time.perf_counter()
        index = self.context.index
        found = index.candidates(state.conditions, depth=comps.options.search_depth)
        metric = index.metric_for(state.conditions.layout)
        stats.add_time("lookup", time.perf_counter() - t0)
        if not found or metric is None:
            return Miss(state.conditions)
        stats.hit = True
        return self._estimate(state.conditions, tuple(found), metric, comps, stats)

    def _estimate(self, conditions, candidates, metric, comps: _Components, stats: QueryStats) -> Estimated:
        t0 = time.perf_counter()
        record, distance = candidates[0]
        estimate = comps.estimator.estimate(conditions, record)
        stats.add_time("estimate", time.perf_counter() - t0)
        return Estimated(
            conditions=conditions,
            record=record,
            distance=float(distance),
            estimate=estimate,
            metric=metric,
            remaining=tuple(candidates[1:]),
        )

    def _decide(self, state: Estimated, comps: _Components, stats: QueryStats) -> QueryState:
        t0 = time.perf_counter()
        decision = comps.acceptance.evaluate(
            state.conditions,
            state.estimate,
            state.record,
            distance=state.distance,
            metric=state.metric,
        )
        stats.add_time("accept", time.perf_counter() - t0)
        stats.candidates_tried += 1
        if stats.candidates_tried == 1 or decision.accepted:
            stats.distance = decision.distance
            stats.error = decision.error
            stats.residual = decision.residual
        if decision.accepted:
            return Accepted(state.conditions, state.record, decision)
        assert decision.failed_check is not None
        stats.rejections.append(decision.failed_check)
        return Rejected(state.conditions, state.record, decision, state.metric, state.remaining)

    def _learn(
        self,
        conditions: Conditions,
        comps: _Components,
        stats: QueryStats,
        outcome: Outcome,
        anchor: Optional[Fingerprint],
    ) -> Learned:
        t0 = time.perf_counter()
        try:
            result = comps.learner.solve_exact(conditions)
            stats.oracle_iterations = int(result.diagnostics.iterations)
            record = comps.learner.learn_record(conditions, anchor=anchor, result=result)
        finally:
            stats.add_time("learn", time.perf_counter() - t0)
        stats.outcome = outcome
        stats.learned_label = None if record is None else record.label
        return Learned(conditions, result.solution, outcome, record, result.diagnostics, result.sensitivity)

    # ------------------------------------------------------------ diagnostics

    @property
    def last_stats(self) -> Optional[QueryStats]:
        """Statistics of the last query issued from the calling thread."""
        return getattr(self._local, "stats", None)

    def reset_statistics(self) -> None:
        self.statistics.reset()

    @property
    def num_references(self) -> int:
        return len(self.context)


__all__ = [
    "EngineOptions",
    "SmartEquilibriumSolver",
    "build_metric",
]

import threading

import numpy as np
import pytest

from odml.acceptance import Check, balance_residual
from odml.context import ReferenceContext
from odml.diagnostics import Outcome
from odml.errors import ConfigurationError, SolveFailure
from odml.problem import Conditions, Restrictions
from odml.toolbox import EngineOptions, SmartEquilibriumSolver

from oracles import (
    PolymorphOracle,
    SaturationOracle,
    conditions,
    polymorph_system,
    saturation_system,
)


def saturation_solver(**overrides):
    oracle = SaturationOracle()
    solver = SmartEquilibriumSolver(saturation_system(), oracle, EngineOptions(**overrides))
    return solver, oracle


def random_stream(n: int, seed: int = 0):
    rng = np.random.default_rng(seed)
    T = rng.uniform(290.0, 310.0, size=n)
    b = rng.uniform(0.5, 1.5, size=n)
    return [conditions(T=t, b=x) for t, x in zip(T, b)]


def test_options_validation():
    with pytest.raises(ConfigurationError):
        EngineOptions(capacity=0)
    with pytest.raises(ConfigurationError):
        EngineOptions(capacity=2.5)
    with pytest.raises(ConfigurationError):
        EngineOptions(error_tolerance=0.0)
    with pytest.raises(ConfigurationError):
        EngineOptions(distance_radius=float("nan"))
    with pytest.raises(ConfigurationError):
        EngineOptions(metric="manhattan")
    with pytest.raises(ConfigurationError):
        EngineOptions(error_bound="psychic")
    with pytest.raises(ConfigurationError):
        EngineOptions(ill_conditioned_factor=2.0)
    with pytest.raises(ConfigurationError):
        EngineOptions(estimation_enabled="yes")
    with pytest.raises(ConfigurationError):
        EngineOptions(condition_scale=[1.0, -1.0])

    opts = EngineOptions(metric=" Sensitivity ", error_bound="CURVATURE", condition_scale=[300, 1e5, 1])
    assert opts.metric == "sensitivity"
    assert opts.error_bound == "curvature"
    assert opts.condition_scale == (300.0, 1e5, 1.0)
    with pytest.raises(TypeError):
        SmartEquilibriumSolver(saturation_system(), SaturationOracle(), options={"capacity": 3})


def test_miss_then_accept_with_stats():
    solver, oracle = saturation_solver()
    assert solver.last_stats is None

    first = solver.solve(conditions(b=1.2))
    stats = solver.last_stats
    assert stats.outcome is Outcome.LEARNED_MISS
    assert not stats.hit
    assert stats.learned_label == 0
    assert stats.oracle_iterations == 3
    assert not first.estimated
    np.testing.assert_allclose(first.amounts, [1.0, 0.2])

    second, stats = solver.solve_with_stats(conditions(b=1.21))
    assert stats.accepted
    assert stats.hit
    assert stats.reference_label == 0
    assert stats.distance == pytest.approx(0.01 / 1.2)
    assert second.estimated
    np.testing.assert_allclose(second.amounts, [1.0, 0.21])
    assert oracle.calls == 1

    totals = solver.statistics.as_dict()
    assert totals["queries"] == 2
    assert totals["misses"] == 1
    assert totals["accepts"] == 1
    assert totals["learns"] == 1
    assert totals["hit_rate"] == pytest.approx(0.5)
    assert totals["time_total"] > 0.0
    solver.reset_statistics()
    assert solver.statistics.queries == 0
    assert solver.num_references == 1


def test_returned_solution_is_independent_copy():
    solver, _ = saturation_solver()
    out = solver.solve(conditions(b=1.2))
    out.amounts[0] = -5.0
    again = solver.solve(conditions(b=1.2))
    np.testing.assert_allclose(again.amounts, [1.0, 0.2])


def test_capacity_eviction_forces_relearn():
    oracle = PolymorphOracle()
    solver = SmartEquilibriumSolver(polymorph_system(), oracle, EngineOptions(capacity=2))
    for T in (250.0, 350.0, 450.0):
        solver.solve(conditions(T=T, b=1.0))
    assert oracle.calls == 3
    assert solver.num_references == 2

    out, stats = solver.solve_with_stats(conditions(T=250.0, b=1.0))
    assert stats.learned
    assert oracle.calls == 4
    np.testing.assert_allclose(out.amounts, [1.0, 0.0, 0.0])
    assert solver.num_references == 2


def test_infeasible_estimate_rejected_then_exact_hit():
    solver, oracle = saturation_solver()
    solver.solve(conditions(b=1.02))

    out, stats = solver.solve_with_stats(conditions(b=0.99))
    assert stats.outcome is Outcome.LEARNED_REJECTED
    assert stats.failed_check is Check.FEASIBILITY
    assert stats.hit
    np.testing.assert_allclose(out.amounts, [0.99, 0.0])
    assert oracle.calls == 2

    out, stats = solver.solve_with_stats(conditions(b=0.99))
    assert stats.accepted
    assert stats.distance == 0.0
    np.testing.assert_allclose(out.amounts, [0.99, 0.0])
    assert oracle.calls == 2
    assert solver.statistics.rejections[Check.FEASIBILITY] == 1


def test_default_error_tolerance_rejects_large_steps():
    solver, oracle = saturation_solver()
    solver.solve(conditions(b=1.2))
    out, stats = solver.solve_with_stats(conditions(b=1.23))
    assert stats.hit
    assert stats.distance <= solver.options.distance_radius
    assert stats.outcome is Outcome.LEARNED_REJECTED
    assert stats.failed_check is Check.ERROR
    assert stats.error == pytest.approx(0.025)
    np.testing.assert_allclose(out.amounts, [1.0, 0.23])
    assert oracle.calls == 2
    assert solver.statistics.rejections[Check.ERROR] == 1


def test_positive_amount_floor_applies_to_estimates_only():
    solver, oracle = saturation_solver(amount_floor=0.1)
    out, stats = solver.solve_with_stats(conditions(b=0.5))
    assert stats.outcome is Outcome.LEARNED_MISS
    assert not out.estimated
    np.testing.assert_allclose(out.amounts, [0.5, 0.0])

    out, stats = solver.solve_with_stats(conditions(b=0.505))
    assert stats.outcome is Outcome.LEARNED_REJECTED
    assert stats.failed_check is Check.FEASIBILITY
    np.testing.assert_allclose(out.amounts, [0.505, 0.0])
    assert oracle.calls == 2


def test_solve_with_sensitivity():
    solver, oracle = saturation_solver()
    first, sens = solver.solve_with_sensitivity(conditions(b=1.2))
    assert solver.last_stats.outcome is Outcome.LEARNED_MISS
    expected = oracle.solve(conditions(b=1.2)).sensitivity.amounts
    assert sens.amounts.shape == (2, 3)
    np.testing.assert_array_equal(sens.amounts, expected)
    assert sens.amounts[1, 2] == 1.0
    np.testing.assert_allclose(first.amounts, [1.0, 0.2])

    near, near_sens = solver.solve_with_sensitivity(conditions(b=1.21))
    assert solver.last_stats.accepted
    assert near.estimated
    np.testing.assert_array_equal(near_sens.amounts, sens.amounts)
    record = solver.context.store.get(solver.last_stats.reference_label)
    assert near_sens is record.sensitivity

    _, far_sens = solver.solve_with_sensitivity(conditions(b=0.9))
    assert solver.last_stats.learned
    assert far_sens.amounts[0, 2] == 1.0
    assert far_sens.amounts[1, 2] == 0.0


def test_deterministic_for_identical_streams():
    stream = random_stream(60, seed=3)
    a, _ = saturation_solver()
    b, _ = saturation_solver()
    outs_a = a.solve_batch(stream)
    outs_b = b.solve_batch(stream)
    for x, y in zip(outs_a, outs_b):
        np.testing.assert_array_equal(x.amounts, y.amounts)
        assert x.estimated == y.estimated


def test_disabled_estimation_matches_oracle_exactly():
    solver, oracle = saturation_solver(estimation_enabled=False)
    reference = SaturationOracle()
    stream = random_stream(20, seed=1)
    for cond in stream:
        out, stats = solver.solve_with_stats(cond)
        assert stats.outcome is Outcome.LEARNED_FORCED
        np.testing.assert_array_equal(out.amounts, reference.solve(cond).solution.amounts)
    assert oracle.calls == len(stream)
    assert solver.statistics.misses == 0
    assert solver.statistics.learns == len(stream)


def test_store_never_exceeds_capacity():
    solver, _ = saturation_solver(capacity=5)
    for cond in random_stream(150, seed=7):
        solver.solve(cond)
        assert solver.num_references <= 5


def test_accepted_results_are_feasible_and_balanced():
    system = saturation_system()
    solver, _ = saturation_solver(distance_radius=0.05)
    accepted = 0
    for cond in random_stream(300, seed=11):
        out, stats = solver.solve_with_stats(cond)
        if stats.accepted:
            accepted += 1
            assert np.all(out.amounts >= 0.0)
            assert balance_residual(system, cond, out.amounts) <= 1e-8
            assert stats.residual <= 1e-8
            assert stats.error <= 0.05
            assert stats.distance <= 0.05
    assert accepted > 0


def test_search_depth_tries_further_clusters():
    for depth, expect_accept in ((1, False), (2, True)):
        oracle = PolymorphOracle()
        solver = SmartEquilibriumSolver(polymorph_system(), oracle, EngineOptions(search_depth=depth))
        solver.solve(conditions(T=250.0, b=1.0))
        solver.solve(conditions(T=350.0, b=1.0))
        out, stats = solver.solve_with_stats(conditions(T=252.0, b=1.0))
        assert stats.accepted is expect_accept
        assert stats.rejections[0] is Check.DISTANCE
        np.testing.assert_allclose(out.amounts, [1.0, 0.0, 0.0])
        if expect_accept:
            assert stats.candidates_tried == 2
            assert stats.reference_label == 0
            assert oracle.calls == 2


def test_restricted_queries_use_their_own_partition():
    solver, oracle = saturation_solver()
    fixed = Restrictions(fixed={1: 0.2})
    solver.solve(conditions(b=1.2), fixed)
    out, stats = solver.solve_with_stats(conditions(b=1.2), fixed)
    assert stats.accepted
    np.testing.assert_allclose(out.amounts, [1.0, 0.2])

    _, stats = solver.solve_with_stats(conditions(b=1.2))
    assert stats.outcome is Outcome.LEARNED_MISS
    assert oracle.calls == 2


def test_invalid_queries_raise():
    solver, _ = saturation_solver()
    with pytest.raises(ValueError):
        solver.solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0, 1.0]))
    with pytest.raises(ValueError):
        solver.solve(conditions(), Restrictions(fixed={5: 0.1}))
    with pytest.raises(TypeError):
        solver.solve([300.0, 1e5, 1.0])
    scaled, _ = saturation_solver(condition_scale=[300.0, 1e5])
    with pytest.raises(ValueError):
        scaled.solve(conditions())


def test_configuration_error_blocks_until_fixed():
    solver, _ = saturation_solver()
    with pytest.raises(ConfigurationError):
        solver.configure(error_tolerance=-1.0)
    with pytest.raises(ConfigurationError):
        solver.solve(conditions())
    with pytest.raises(ConfigurationError):
        solver.configure(bogus=1)
    with pytest.raises(ConfigurationError):
        solver.solve(conditions())

    opts = solver.configure(error_tolerance=0.02)
    assert opts.error_tolerance == 0.02
    assert solver.options.error_tolerance == 0.02
    np.testing.assert_allclose(solver.solve(conditions(b=1.2)).amounts, [1.0, 0.2])


def test_configure_capacity_and_index_options():
    solver, _ = saturation_solver(capacity=10)
    for b in (1.2, 1.5, 0.7):
        solver.solve(conditions(b=b))
    assert solver.num_references == 3
    solver.configure(capacity=1)
    assert solver.num_references == 1
    assert solver.context.capacity == 1

    with pytest.warns(RuntimeWarning):
        opts = solver.configure(metric="sensitivity")
    assert opts.metric == "euclidean"

    fresh, _ = saturation_solver()
    opts = fresh.configure(metric="sensitivity")
    assert opts.metric == "sensitivity"
    assert not fresh.context.index.metric.isotropic


def test_failures_propagate_and_are_counted():
    solver, oracle = saturation_solver()
    oracle.mode = "diverge"
    with pytest.raises(SolveFailure) as info:
        solver.solve(conditions(b=1.2))
    assert info.value.diagnostics.message == "maximum iterations reached"
    assert solver.last_stats.outcome is Outcome.FAILED
    assert solver.num_references == 0

    oracle.mode = "raise"
    with pytest.raises(RuntimeError, match="oracle crashed"):
        solver.solve(conditions(b=1.2))
    assert solver.statistics.failures == 2

    oracle.mode = "ok"
    solver.solve(conditions(b=1.2))
    assert solver.num_references == 1


def test_shared_context_between_solvers():
    ctx = ReferenceContext(capacity=50)
    first_oracle, second_oracle = SaturationOracle(), SaturationOracle()
    first = SmartEquilibriumSolver(saturation_system(), first_oracle, context=ctx)
    second = SmartEquilibriumSolver(saturation_system(), second_oracle, context=ctx)
    first.solve(conditions(b=1.2))
    _, stats = second.solve_with_stats(conditions(b=1.21))
    assert stats.accepted
    assert second_oracle.calls == 0
    assert first.num_references == second.num_references == 1

    with pytest.warns(RuntimeWarning):
        third = SmartEquilibriumSolver(saturation_system(), SaturationOracle(), EngineOptions(capacity=5), context=ctx)
    assert third.options.capacity == 50


def test_shared_context_capacity_survives_configure():
    ctx = ReferenceContext(capacity=2)
    solver = SmartEquilibriumSolver(saturation_system(), SaturationOracle(), context=ctx)
    assert solver.options.capacity == 2
    solver.configure(error_tolerance=0.02)
    assert ctx.capacity == 2
    assert solver.options.capacity == 2
    for b in (0.6, 0.9, 1.2, 1.5, 1.8):
        solver.solve(conditions(b=b))
        assert len(ctx) <= 2


def test_concurrent_queries():
    solver, _ = saturation_solver(capacity=40)
    streams = [random_stream(80, seed=s) for s in range(4)]
    errors = []
    seen = []

    def work(stream):
        try:
            for cond in stream:
                out = solver.solve(cond)
                assert np.all(out.amounts >= 0.0)
            seen.append(solver.last_stats)
        except Exception as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=work, args=(s,)) for s in streams]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert solver.statistics.queries == 320
    assert solver.num_references <= 40
    assert len(seen) == 4 and all(s is not None for s in seen)
    assert solver.last_stats is None

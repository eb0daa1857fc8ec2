import numpy as np
import pytest

from odml.lifecycle import format_metrics, relative_error, run_query_stream, solve_baseline
from odml.perturbations import PerturbationSpec, perturb_conditions
from odml.problem import Restrictions
from odml.solution import Solution
from odml.toolbox import EngineOptions, SmartEquilibriumSolver

from oracles import SaturationOracle, conditions, saturation_system


def stream(n: int, kind: str = "uniform"):
    spec = PerturbationSpec(kind=kind, temperature_scale=2.0, amount_scale=0.1, seed=5)
    base = conditions(T=300.0, b=1.2)
    return [perturb_conditions(base, spec, i) for i in range(n)]


def test_perturbations_are_deterministic_per_index():
    spec = PerturbationSpec(kind="gaussian", temperature_scale=1.0, pressure_scale=10.0, amount_scale=0.05, seed=2)
    base = conditions()
    a = perturb_conditions(base, spec, 4)
    b = perturb_conditions(base, spec, 4)
    c = perturb_conditions(base, spec, 5)
    np.testing.assert_array_equal(a.vector, b.vector)
    assert not np.array_equal(a.vector, c.vector)


def test_perturbation_kinds():
    base = conditions(T=300.0, b=1.0, restrictions=Restrictions(fixed={1: 0.2}))
    same = perturb_conditions(base, PerturbationSpec(kind="none", temperature_scale=5.0), 0)
    np.testing.assert_array_equal(same.vector, base.vector)

    rel = perturb_conditions(base, PerturbationSpec(kind="Relative", temperature_scale=0.01, amount_scale=0.1), 3)
    assert abs(rel.temperature - 300.0) <= 3.0
    assert 0.9 <= rel.amounts[0] <= 1.1
    assert rel.pressure == base.pressure
    assert rel.restrictions == base.restrictions

    clipped = perturb_conditions(base, PerturbationSpec(kind="uniform", amount_scale=50.0, seed=1), 0)
    assert np.all(clipped.amounts >= 0.0)

    masked = perturb_conditions(base, PerturbationSpec(kind="uniform", temperature_scale=1.0, amount_scale=0.5, amount_mask=np.zeros(1)), 0)
    assert masked.amounts[0] == 1.0

    with pytest.raises(ValueError):
        perturb_conditions(base, PerturbationSpec(kind="brownian"), 0)
    with pytest.raises(ValueError):
        perturb_conditions(base, PerturbationSpec(kind="uniform", amount_mask=np.ones(3)), 0)
    with pytest.raises(TypeError):
        perturb_conditions(base, {"kind": "uniform"}, 0)


def test_relative_error():
    exact = Solution(amounts=[1.0, 0.0])
    assert relative_error(Solution(amounts=[1.1, 0.0]), exact) == pytest.approx(0.1)
    assert relative_error(Solution(amounts=[1.0, 1e-13]), exact) == pytest.approx(0.1)


def test_query_stream_metrics():
    queries = stream(40)
    oracle = SaturationOracle()
    baseline = solve_baseline(queries, SaturationOracle())
    solver = SmartEquilibriumSolver(saturation_system(), oracle, EngineOptions(distance_radius=0.1, error_tolerance=0.05))
    metrics = run_query_stream(solver, queries, episode_size=10, baseline=baseline)

    assert [m["episode"] for m in metrics] == [1, 2, 3, 4]
    assert all(m["queries"] == 10 for m in metrics)
    assert metrics[0]["learns"] >= 1
    assert sum(m["learns"] for m in metrics) == oracle.calls
    assert metrics[-1]["store_size"] == solver.num_references
    assert metrics[-1]["acceptance_rate"] > 0.0
    for m in metrics:
        assert 0.0 <= m["acceptance_rate"] <= m["hit_rate"] <= 1.0
        assert m["max_accepted_error"] >= 0.0
        assert "rejected_feasibility" in m
    assert solver.statistics.queries == 40


def test_query_stream_validation():
    solver = SmartEquilibriumSolver(saturation_system(), SaturationOracle())
    with pytest.raises(ValueError):
        run_query_stream(solver, stream(3), episode_size=0)
    with pytest.raises(ValueError):
        run_query_stream(solver, stream(3), episode_size=2, baseline=[])

    oracle = SaturationOracle()
    oracle.mode = "diverge"
    with pytest.raises(RuntimeError):
        solve_baseline(stream(2), oracle)


def test_format_metrics():
    assert format_metrics([]) == ""
    text = format_metrics([{"episode": 1, "hit_rate": 0.5}, {"episode": 2, "hit_rate": 0.75}])
    lines = text.splitlines()
    assert len(lines) == 3
    assert lines[0].split() == ["episode", "hit_rate"]
    assert lines[2].split() == ["2", "0.75"]

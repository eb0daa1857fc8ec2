import numpy as np
import pytest

from odml.equilibrium import GibbsEnergySolver, GibbsSettings
from odml.problem import Conditions, Restrictions
from odml.system import ChemicalSystem
from odml.thermo import GAS_CONSTANT, IdealThermoModel

H_B = -2000.0  # J/mol, B favoured over A


def isomer_system() -> ChemicalSystem:
    return ChemicalSystem.from_compositions(
        {"A": {"X": 1.0}, "B": {"X": 1.0}},
        phases=[("liquid", ["A", "B"], "solution")],
    )


def isomer_solver(**settings) -> GibbsEnergySolver:
    system = isomer_system()
    thermo = IdealThermoModel(system, enthalpy=[0.0, H_B], entropy=[0.0, 0.0])
    return GibbsEnergySolver(system, thermo, GibbsSettings(**settings))


def ratio(T: float) -> float:
    return float(np.exp(-H_B / (GAS_CONSTANT * T)))


def test_isomerisation_matches_closed_form():
    T, b = 300.0, 2.0
    result = isomer_solver().solve(Conditions(temperature=T, pressure=1e5, amounts=[b]))
    assert result.diagnostics.converged
    assert result.diagnostics.message == "converged"
    K = ratio(T)
    np.testing.assert_allclose(result.solution.amounts, [b / (1.0 + K), b * K / (1.0 + K)], rtol=1e-7)
    assert "gibbs_energy" in result.solution.properties
    assert result.solution.duals.shape == (1,)


def test_sensitivity_matches_closed_form():
    T, b = 320.0, 1.5
    result = isomer_solver().solve(Conditions(temperature=T, pressure=2e5, amounts=[b]))
    S = result.sensitivity.amounts
    assert S.shape == (2, 3)
    K = ratio(T)
    dK_dT = K * H_B / (GAS_CONSTANT * T * T)
    dA_dT = -b * dK_dT / (1.0 + K) ** 2
    np.testing.assert_allclose(S[:, 0], [dA_dT, -dA_dT], rtol=1e-6)
    np.testing.assert_allclose(S[:, 1], [0.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(S[:, 2], [1.0 / (1.0 + K), K / (1.0 + K)], rtol=1e-6)
    assert result.sensitivity.duals.shape == (1, 3)
    assert result.sensitivity.properties["gibbs_energy"].shape == (3,)


def test_sensitivity_agrees_with_finite_differences():
    solver = isomer_solver()
    base = Conditions(temperature=310.0, pressure=1e5, amounts=[1.0])
    S = solver.solve(base).sensitivity.amounts
    for j in (0, 2):
        h = 1e-3 * base.vector[j]
        step = np.zeros(base.num_inputs)
        step[j] = h
        hi = solver.solve(base.with_vector(base.vector + step)).solution.amounts
        lo = solver.solve(base.with_vector(base.vector - step)).solution.amounts
        np.testing.assert_allclose((hi - lo) / (2 * h), S[:, j], rtol=1e-3, atol=1e-8)


def test_fixed_amount_restriction():
    cond = Conditions(
        temperature=300.0,
        pressure=1e5,
        amounts=[1.0],
        restrictions=Restrictions(fixed={1: 0.3}),
    )
    result = isomer_solver().solve(cond)
    assert result.diagnostics.converged
    np.testing.assert_allclose(result.solution.amounts, [0.7, 0.3], rtol=1e-7)
    S = result.sensitivity.amounts
    assert S.shape == (2, 4)
    np.testing.assert_allclose(S[:, 2], [1.0, 0.0], atol=1e-8)
    np.testing.assert_allclose(S[:, 3], [-1.0, 1.0], atol=1e-8)


def test_upper_bound_restriction():
    cond = Conditions(
        temperature=300.0,
        pressure=1e5,
        amounts=[1.0],
        restrictions=Restrictions(upper={1: 0.4}),
    )
    result = isomer_solver().solve(cond)
    assert result.diagnostics.converged
    np.testing.assert_allclose(result.solution.amounts, [0.6, 0.4], rtol=1e-6)
    assert result.solution.stability[1] < 0.0


def test_pure_phase_takes_everything():
    system = ChemicalSystem.from_compositions(
        {"A(aq)": {"X": 1.0}, "B(s)": {"X": 1.0}},
        phases=[("liquid", ["A(aq)"], "solution"), ("solid", ["B(s)"], "pure")],
    )
    thermo = IdealThermoModel(system, enthalpy=[0.0, H_B], entropy=[0.0, 0.0])
    result = GibbsEnergySolver(system, thermo).solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0]))
    assert result.diagnostics.converged
    assert result.solution.amounts[0] < 1e-8
    assert result.solution.amounts[1] == pytest.approx(1.0, abs=1e-8)


def test_iteration_limit_reports_failure():
    result = isomer_solver(max_iters=1).solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0]))
    diag = result.diagnostics
    assert not diag.converged
    assert diag.iterations == 1
    assert diag.message == "maximum number of iterations reached"
    assert not result.sensitivity.is_finite()
    assert result.solution.properties == {}


def test_detailed_solve_history_and_warm_start():
    solver = isomer_solver()
    cond = Conditions(temperature=300.0, pressure=1e5, amounts=[1.0])
    cold = solver.solve_detailed(cond)
    assert cold.converged
    assert cold.history[0]["iter"] == 0.0
    warm = solver.solve_detailed(cond.with_vector(cond.vector * np.array([1.0, 1.0, 1.01])), initial_state=cold.state)
    assert warm.converged


def test_solve_builds_problem_once(monkeypatch):
    solver = isomer_solver()
    built = []
    original = GibbsEnergySolver._problem

    def counting(self, conditions):
        built.append(conditions)
        return original(self, conditions)

    monkeypatch.setattr(GibbsEnergySolver, "_problem", counting)
    result = solver.solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0]))
    assert result.diagnostics.converged
    assert len(built) == 1
    solver.solve_detailed(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0]))
    assert len(built) == 2


def test_invalid_inputs():
    with pytest.raises(ValueError):
        isomer_solver(max_iters=0)
    with pytest.raises(ValueError):
        isomer_solver(sigma=1.5)
    with pytest.raises(ValueError):
        isomer_solver(tol=0.0)
    solver = isomer_solver()
    with pytest.raises(ValueError):
        solver.solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0], parameters={"ionic_strength": 0.1}))
    with pytest.raises(ValueError):
        solver.solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0, 2.0]))
    with pytest.raises(ValueError):
        solver.solve(Conditions(temperature=300.0, pressure=1e5, amounts=[1.0], restrictions=Restrictions(fixed={4: 0.1})))

"""Small smart-equilibrium run on the N2O4/NO2 gas system."""

from __future__ import annotations

from odml.equilibrium import GibbsEnergySolver
from odml.lifecycle import format_metrics, run_query_stream, solve_baseline
from odml.perturbations import PerturbationSpec, perturb_conditions
from odml.problem import Conditions
from odml.system import ChemicalSystem
from odml.thermo import IdealThermoModel
from odml.toolbox import EngineOptions, SmartEquilibriumSolver


def dinitrogen_tetroxide() -> tuple[ChemicalSystem, IdealThermoModel]:
    # O stays in a fixed 2:1 ratio to N, so N is the only independent element.
    system = ChemicalSystem.from_compositions(
        {"NO2(g)": {"N": 1.0}, "N2O4(g)": {"N": 2.0}},
        phases=[("gas", ["NO2(g)", "N2O4(g)"], "gas")],
    )
    # Standard enthalpies of formation (J/mol) and entropies (J/mol/K) at 298.15 K.
    thermo = IdealThermoModel(system, enthalpy=[33180.0, 9160.0], entropy=[240.06, 304.29])
    return system, thermo


if __name__ == "__main__":
    system, thermo = dinitrogen_tetroxide()
    oracle = GibbsEnergySolver(system, thermo)
    base = Conditions(temperature=320.0, pressure=1.0e5, amounts=[1.0])
    spec = PerturbationSpec(kind="relative", temperature_scale=0.03, pressure_scale=0.2, seed=11)
    queries = [perturb_conditions(base, spec, i) for i in range(400)]
    baseline = solve_baseline(queries, oracle)

    solver = SmartEquilibriumSolver(
        system,
        oracle,
        EngineOptions(capacity=200, distance_radius=0.05, error_tolerance=0.02, error_bound="curvature"),
    )
    metrics = run_query_stream(solver, queries, episode_size=50, baseline=baseline)
    print(format_metrics(metrics))
    print(solver.statistics.as_dict())

"""On-demand learning acceleration for chemical equilibrium.

The stable top-level API is centered on :class:`SmartEquilibriumSolver`, its
options, the query/solution data types and the reference rigorous oracle.

Engine internals (cluster index, spatial indices, acceptance strategies,
query states) remain available from their submodules, for example
``odml.clusters`` or ``odml.acceptance``, but are not re-exported here.
"""

from .context import ReferenceContext
from .diagnostics import Outcome, QueryStats, SolverStatistics
from .equilibrium import GibbsEnergySolver, GibbsSettings
from .errors import ConfigurationError, SolveFailure
from .fingerprint import Fingerprint, FingerprintPolicy
from .problem import Conditions, Restrictions
from .solution import OracleResult, RigorousSolver, Sensitivity, SolveDiagnostics, Solution
from .system import ChemicalSystem, Phase
from .thermo import IdealThermoModel, ThermoModel, TorchThermoModel
from .toolbox import EngineOptions, SmartEquilibriumSolver

__all__ = [
    "ChemicalSystem",
    "Phase",
    "Conditions",
    "Restrictions",
    "Solution",
    "Sensitivity",
    "SolveDiagnostics",
    "OracleResult",
    "RigorousSolver",
    "Fingerprint",
    "FingerprintPolicy",
    "ThermoModel",
    "TorchThermoModel",
    "IdealThermoModel",
    "GibbsEnergySolver",
    "GibbsSettings",
    "EngineOptions",
    "SmartEquilibriumSolver",
    "ReferenceContext",
    "Outcome",
    "QueryStats",
    "SolverStatistics",
    "ConfigurationError",
    "SolveFailure",
]

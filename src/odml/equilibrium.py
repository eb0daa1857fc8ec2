"""Primal-dual interior-point Gibbs energy minimisation.

This is the rigorous solver the smart engine falls back to. It minimises the
dimensionless Gibbs energy ``G/RT = sum_i n_i mu_i/RT`` subject to the element
balance ``A n = b``, fixed-amount restrictions and species bounds
``lb <= n <= ub``. At the converged point the sensitivity of the solution with
respect to ``[T, P, b, fixed amounts]`` follows from implicit differentiation
of the final KKT system, so it is obtained at the cost of one extra linear
solve with several right-hand sides.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Dict, List, Optional, Tuple

import numpy as np

from .problem import Conditions
from .solution import OracleResult, Sensitivity, Solution, SolveDiagnostics
from .system import ChemicalSystem
from .thermo import ThermoModel

logger = logging.getLogger(__name__)

Array = np.ndarray


@dataclass
class GibbsSettings:
    """Interior-point parameters."""

    max_iters: int = 200
    tol: float = 1e-9  # dual residual, in units of RT
    feas_tol: float = 1e-12  # primal residual relative to max(|b|, 1)
    comp_tol: float = 1e-14  # mean complementarity at convergence
    sigma: float = 0.1  # centering parameter
    step_fraction: float = 0.995  # fraction-to-boundary rule
    initial_amount: float = 1e-2
    initial_multiplier: float = 1.0

    def validate(self) -> None:
        if self.max_iters <= 0:
            raise ValueError("max_iters must be positive.")
        if min(self.tol, self.feas_tol, self.comp_tol) <= 0.0:
            raise ValueError("tolerances must be positive.")
        if not (0.0 < self.sigma < 1.0):
            raise ValueError("sigma must be in (0, 1).")
        if not (0.0 < self.step_fraction < 1.0):
            raise ValueError("step_fraction must be in (0, 1).")
        if self.initial_amount <= 0.0 or self.initial_multiplier <= 0.0:
            raise ValueError("initial_amount and initial_multiplier must be positive.")


@dataclass
class GibbsState:
    n: Array
    y: Array
    z: Array
    w: Array

    def copy(self) -> "GibbsState":
        return GibbsState(self.n.copy(), self.y.copy(), self.z.copy(), self.w.copy())


@dataclass
class GibbsResult:
    state: GibbsState
    converged: bool
    iterations: int
    error: float
    history: List[Dict[str, float]] = field(default_factory=list)


@dataclass
class _Problem:
    A: Array
    b: Array
    lb: Array
    ub: Array
    T: float
    P: float
    num_elements: int
    fixed: Tuple[int, ...]

    @property
    def has_ub(self) -> Array:
        return np.isfinite(self.ub)


class GibbsEnergySolver:
    """Rigorous equilibrium oracle for a :class:`ChemicalSystem`."""

    def __init__(
        self,
        system: ChemicalSystem,
        thermo: ThermoModel,
        settings: Optional[GibbsSettings] = None,
    ) -> None:
        self.system = system
        self.thermo = thermo
        self.settings = settings or GibbsSettings()
        self.settings.validate()

    def solve(self, conditions: Conditions) -> OracleResult:
        t0 = time.perf_counter()
        problem = self._problem(conditions)
        result = self._minimize(problem, None)
        n, y, z, w = result.state.n, result.state.y, result.state.z, result.state.w
        props = self.thermo.properties(problem.T, problem.P, n) if result.converged else {}
        solution = Solution(amounts=n, duals=y, stability=z - w, properties=props)
        if result.converged:
            sensitivity = self._sensitivity(problem, result.state)
        else:
            K = conditions.num_inputs
            sensitivity = Sensitivity(amounts=np.full((self.system.num_species, K), np.nan))
        diagnostics = SolveDiagnostics(
            converged=result.converged,
            iterations=result.iterations,
            residual=result.error,
            elapsed=time.perf_counter() - t0,
            message="converged" if result.converged else "maximum number of iterations reached",
        )
        return OracleResult(solution=solution, sensitivity=sensitivity, diagnostics=diagnostics)

    def solve_detailed(self, conditions: Conditions, initial_state: Optional[GibbsState] = None) -> GibbsResult:
        return self._minimize(self._problem(conditions), initial_state)

    def _minimize(self, problem: _Problem, initial_state: Optional[GibbsState]) -> GibbsResult:
        st = self.settings
        state = self._initialize(problem, initial_state)
        n, y, z, w = state.n, state.y, state.z, state.w
        has_ub = problem.has_ub
        b_scale = max(float(np.max(np.abs(problem.b))) if problem.b.size else 0.0, 1.0)
        history: List[Dict[str, float]] = []
        error = float("inf")

        for k in range(st.max_iters):
            props = self.thermo.evaluate(problem.T, problem.P, n)
            g = props.potentials
            r_d = g - problem.A.T @ y - z + w
            r_p = problem.A @ n - problem.b
            slack_lo = n - problem.lb
            slack_up = np.where(has_ub, problem.ub - n, 1.0)
            comp = np.concatenate([slack_lo * z, (slack_up * w)[has_ub]])
            mu_c = float(np.mean(comp)) if comp.size else 0.0

            dual_err = float(np.max(np.abs(r_d))) if r_d.size else 0.0
            primal_err = float(np.max(np.abs(r_p))) / b_scale if r_p.size else 0.0
            error = max(dual_err / st.tol, primal_err / st.feas_tol, mu_c / st.comp_tol)
            history.append(
                {
                    "iter": float(k),
                    "dual_residual": dual_err,
                    "primal_residual": primal_err,
                    "complementarity": mu_c,
                }
            )
            if not np.isfinite(error):
                logger.warning("Gibbs minimisation produced non-finite iterates at iteration %d.", k)
                break
            if error <= 1.0:
                return GibbsResult(GibbsState(n, y, z, w), True, k, self._residual(history[-1]), history)

            tau = st.sigma * mu_c
            sig = z / slack_lo + np.where(has_ub, w / slack_up, 0.0)
            r_cz = slack_lo * z - tau
            r_cw = np.where(has_ub, slack_up * w - tau, 0.0)
            rhs_n = -r_d - r_cz / slack_lo + np.where(has_ub, r_cw / slack_up, 0.0)

            dn, dy = self._solve_kkt(props.dn + np.diag(sig), problem.A, rhs_n, -r_p)
            dz = (-r_cz - z * dn) / slack_lo
            dw = np.where(has_ub, (-r_cw + w * dn) / slack_up, 0.0)

            alpha = self._step_length(n, dn, z, dz, w, dw, problem)
            n = n + alpha * dn
            y = y + alpha * dy
            z = z + alpha * dz
            w = np.where(has_ub, w + alpha * dw, 0.0)

        return GibbsResult(GibbsState(n, y, z, w), False, len(history), self._residual(history[-1]) if history else error, history)

    @staticmethod
    def _residual(entry: Dict[str, float]) -> float:
        return max(entry["dual_residual"], entry["primal_residual"], entry["complementarity"])

    def _problem(self, conditions: Conditions) -> _Problem:
        sys = self.system
        if conditions.num_elements != sys.num_elements:
            raise ValueError(
                f"Conditions carry {conditions.num_elements} element amounts, system has {sys.num_elements}."
            )
        if conditions.parameters:
            raise ValueError("GibbsEnergySolver does not interpret condition parameters.")
        restrictions = conditions.restrictions
        if restrictions.max_index() >= sys.num_species:
            raise ValueError("Restriction references an unknown species index.")

        N = sys.num_species
        fixed = restrictions.fixed_indices
        rows = np.zeros((len(fixed), N), dtype=float)
        for r, i in enumerate(fixed):
            rows[r, i] = 1.0
        A = np.vstack([sys.formula_matrix, rows])
        b = np.concatenate([conditions.amounts, restrictions.fixed_values])

        lb = np.zeros(N, dtype=float)
        ub = np.full(N, np.inf, dtype=float)
        for i, v in restrictions.lower:
            lb[i] = v
        for i, v in restrictions.upper:
            ub[i] = v
        return _Problem(
            A=A,
            b=b,
            lb=lb,
            ub=ub,
            T=conditions.temperature,
            P=conditions.pressure,
            num_elements=sys.num_elements,
            fixed=fixed,
        )

    def _initialize(self, problem: _Problem, state: Optional[GibbsState]) -> GibbsState:
        N = self.system.num_species
        st = self.settings
        has_ub = problem.has_ub
        if state is not None:
            start = state.copy()
            n, y, z, w = start.n, start.y, start.z, start.w
            if n.shape == (N,) and y.shape == (problem.A.shape[0],) and np.all(np.isfinite(n)):
                n = np.maximum(n, problem.lb + 1e-14)
                n = np.where(has_ub, np.minimum(n, problem.ub - 1e-14), n)
                z = np.maximum(z, 1e-14)
                w = np.where(has_ub, np.maximum(w, 1e-14), 0.0)
                return GibbsState(n, y, z, w)

        scale = max(float(np.mean(np.abs(problem.b))) if problem.b.size else 0.0, 1e-6)
        n = problem.lb + max(st.initial_amount * scale, 1e-10)
        mid = 0.5 * (problem.lb + problem.ub)
        n = np.where(has_ub, np.minimum(n, mid), n)
        z = np.full(N, st.initial_multiplier, dtype=float)
        w = np.where(has_ub, st.initial_multiplier, 0.0)

        # Least-squares dual start: A^T y ~ g - z.
        g = self.thermo.evaluate(problem.T, problem.P, n).potentials
        y, _, _, _ = np.linalg.lstsq(problem.A.T, g - z + w, rcond=None)
        return GibbsState(n, y, z, w)

    def _solve_kkt(self, H: Array, A: Array, rhs_n: Array, rhs_y: Array) -> Tuple[Array, Array]:
        N = H.shape[0]
        K = self._kkt_matrix(H, A)
        rhs = np.concatenate([rhs_n, rhs_y])
        try:
            sol = np.linalg.solve(K, rhs)
        except np.linalg.LinAlgError:
            sol = np.linalg.lstsq(K, rhs, rcond=None)[0]
        return sol[:N], sol[N:]

    @staticmethod
    def _kkt_matrix(H: Array, A: Array) -> Array:
        M = A.shape[0]
        return np.block([[H, -A.T], [A, np.zeros((M, M))]])

    def _step_length(self, n: Array, dn: Array, z: Array, dz: Array, w: Array, dw: Array, problem: _Problem) -> float:
        frac = self.settings.step_fraction
        alpha = 1.0
        slack_lo = n - problem.lb
        neg = dn < 0.0
        if np.any(neg):
            alpha = min(alpha, frac * float(np.min(-slack_lo[neg] / dn[neg])))
        up = problem.has_ub & (dn > 0.0)
        if np.any(up):
            alpha = min(alpha, frac * float(np.min((problem.ub[up] - n[up]) / dn[up])))
        neg = dz < 0.0
        if np.any(neg):
            alpha = min(alpha, frac * float(np.min(-z[neg] / dz[neg])))
        neg = problem.has_ub & (dw < 0.0)
        if np.any(neg):
            alpha = min(alpha, frac * float(np.min(-w[neg] / dw[neg])))
        return alpha

    def _sensitivity(self, problem: _Problem, state: GibbsState) -> Sensitivity:
        """Differentiate the KKT conditions with respect to ``Conditions.vector``."""
        N = self.system.num_species
        E = problem.num_elements
        n_fixed = len(problem.fixed)
        M = E + n_fixed
        K = 2 + E + n_fixed

        props = self.thermo.evaluate(problem.T, problem.P, state.n)
        has_ub = problem.has_ub
        sig = state.z / (state.n - problem.lb)
        sig = sig + np.where(has_ub, state.w / np.where(has_ub, problem.ub - state.n, 1.0), 0.0)
        kkt = self._kkt_matrix(props.dn + np.diag(sig), problem.A)

        rhs = np.zeros((N + M, K), dtype=float)
        rhs[:N, 0] = -props.dT
        rhs[:N, 1] = -props.dP
        rhs[N:, 2:] = np.eye(M)
        try:
            sol = np.linalg.solve(kkt, rhs)
        except np.linalg.LinAlgError:
            sol = np.linalg.lstsq(kkt, rhs, rcond=None)[0]
        dn_dc = sol[:N]
        dy_dc = sol[N:]

        prop_sens: Dict[str, Array] = {}
        for name, (d_n, d_T, d_P) in self.thermo.property_gradients(problem.T, problem.P, state.n).items():
            row = d_n @ dn_dc
            row[0] += d_T
            row[1] += d_P
            prop_sens[name] = row
        return Sensitivity(amounts=dn_dc, duals=dy_dc, properties=prop_sens)


__all__ = [
    "GibbsSettings",
    "GibbsState",
    "GibbsResult",
    "GibbsEnergySolver",
]

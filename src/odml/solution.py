"""Solutions, sensitivities and the rigorous-solver contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol

import numpy as np

from .problem import Conditions

Array = np.ndarray


def _frozen(arr: Array | None, ndim: int, name: str) -> Array | None:
    if arr is None:
        return None
    out = np.array(arr, dtype=float)
    if ndim == 1:
        out = out.reshape(-1)
    elif out.ndim != 2:
        raise ValueError(f"{name} must be a 2D array, got shape {out.shape}.")
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class Solution:
    """Species amounts plus dual quantities and scalar properties.

    ``duals`` are the Lagrange multipliers of the equality rows (element and
    fixed-amount constraints) and ``stability`` the multipliers of the species
    bounds. Both are dimensionless (divided by RT) when produced by
    :class:`~odml.equilibrium.GibbsEnergySolver`.
    """

    amounts: Array
    duals: Array = field(default_factory=lambda: np.zeros(0))
    stability: Optional[Array] = None
    properties: Mapping[str, float] = field(default_factory=dict)
    estimated: bool = False

    def __post_init__(self) -> None:
        amounts = _frozen(self.amounts, 1, "amounts")
        stability = _frozen(self.stability, 1, "stability")
        if stability is None:
            stability = _frozen(np.zeros_like(amounts), 1, "stability")
        elif stability.shape != amounts.shape:
            raise ValueError("stability must have the same length as amounts.")
        object.__setattr__(self, "amounts", amounts)
        object.__setattr__(self, "duals", _frozen(self.duals, 1, "duals"))
        object.__setattr__(self, "stability", stability)
        object.__setattr__(self, "properties", {str(k): float(v) for k, v in dict(self.properties).items()})

    @property
    def num_species(self) -> int:
        return int(self.amounts.shape[0])

    def is_finite(self) -> bool:
        return bool(
            np.all(np.isfinite(self.amounts))
            and np.all(np.isfinite(self.duals))
            and all(np.isfinite(v) for v in self.properties.values())
        )

    def copy(self) -> "Solution":
        """Independent copy with writable arrays, handed to callers."""
        out = object.__new__(Solution)
        object.__setattr__(out, "amounts", np.array(self.amounts, dtype=float))
        object.__setattr__(out, "duals", np.array(self.duals, dtype=float))
        object.__setattr__(out, "stability", np.array(self.stability, dtype=float))
        object.__setattr__(out, "properties", dict(self.properties))
        object.__setattr__(out, "estimated", bool(self.estimated))
        return out


@dataclass(frozen=True, eq=False)
class Sensitivity:
    """Derivatives of a :class:`Solution` with respect to ``Conditions.vector``."""

    amounts: Array
    duals: Optional[Array] = None
    properties: Mapping[str, Array] = field(default_factory=dict)

    def __post_init__(self) -> None:
        amounts = _frozen(self.amounts, 2, "amounts")
        duals = _frozen(self.duals, 2, "duals")
        if duals is not None and duals.shape[1] != amounts.shape[1]:
            raise ValueError("duals sensitivity must have as many columns as the amounts sensitivity.")
        props: Dict[str, Array] = {}
        for name, row in dict(self.properties).items():
            row = _frozen(row, 1, f"properties[{name!r}]")
            if row.shape[0] != amounts.shape[1]:
                raise ValueError(f"Property sensitivity {name!r} has the wrong length.")
            props[str(name)] = row
        object.__setattr__(self, "amounts", amounts)
        object.__setattr__(self, "duals", duals)
        object.__setattr__(self, "properties", props)
        finite = bool(
            np.all(np.isfinite(amounts))
            and (duals is None or np.all(np.isfinite(duals)))
            and all(np.all(np.isfinite(r)) for r in props.values())
        )
        norm = float(np.linalg.norm(amounts, ord=2)) if finite and amounts.size else (0.0 if finite else np.inf)
        object.__setattr__(self, "_finite", finite)
        object.__setattr__(self, "_norm", norm)

    @property
    def num_inputs(self) -> int:
        return int(self.amounts.shape[1])

    @property
    def norm(self) -> float:
        """Spectral norm of the amount block (``inf`` when non-finite)."""
        return self._norm  # type: ignore[attr-defined]

    def is_finite(self) -> bool:
        return self._finite  # type: ignore[attr-defined]

    def column_norms(self) -> Array:
        return np.linalg.norm(self.amounts, axis=0)


@dataclass(frozen=True)
class SolveDiagnostics:
    converged: bool
    iterations: int = 0
    residual: float = float("nan")
    elapsed: float = 0.0
    message: str = ""


@dataclass(frozen=True, eq=False)
class OracleResult:
    solution: Solution
    sensitivity: Sensitivity
    diagnostics: SolveDiagnostics


class RigorousSolver(Protocol):
    """Exact solver consumed by the engine.

    Implementations return an :class:`OracleResult` (converged or not) or
    raise :class:`~odml.errors.SolveFailure`.
    """

    def solve(self, conditions: Conditions) -> OracleResult:
        ...


__all__ = [
    "Solution",
    "Sensitivity",
    "SolveDiagnostics",
    "OracleResult",
    "RigorousSolver",
]

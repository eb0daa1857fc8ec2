"""Thermodynamic property evaluation for the rigorous equilibrium path.

Chemical potentials are expressed in units of RT. Models written against
:class:`TorchThermoModel` only implement the forward evaluation; derivatives
with respect to temperature, pressure and species amounts come from
``torch.autograd``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
import torch

from .system import ChemicalSystem

GAS_CONSTANT = 8.314462618  # J/(mol K)
WATER_MOLAR_MASS = 0.018015268  # kg/mol
REFERENCE_PRESSURE = 1.0e5  # Pa

_TINY = 1e-300


@dataclass(frozen=True)
class ThermoProperties:
    """Dimensionless chemical potentials ``mu/RT`` and their derivatives."""

    potentials: np.ndarray
    dn: np.ndarray
    dT: np.ndarray
    dP: np.ndarray


class ThermoModel(ABC):
    """Property-evaluation oracle used by the rigorous solver."""

    @abstractmethod
    def evaluate(self, T: float, P: float, n: np.ndarray) -> ThermoProperties:
        """Return ``mu/RT`` and its derivatives at ``(T, P, n)``."""

    def properties(self, T: float, P: float, n: np.ndarray) -> Dict[str, float]:
        """Auxiliary scalar properties (e.g. ``pH``) of a state."""
        return {}

    def property_gradients(self, T: float, P: float, n: np.ndarray) -> Dict[str, Tuple[np.ndarray, float, float]]:
        """Gradients ``(d/dn, d/dT, d/dP)`` of each property."""
        return {}


TensorFn = Callable[[torch.Tensor, torch.Tensor, torch.Tensor], torch.Tensor]


class TorchThermoModel(ThermoModel):
    """Thermo model whose derivatives are computed with ``torch.autograd``."""

    dtype = torch.float64

    @abstractmethod
    def potentials(self, T: torch.Tensor, P: torch.Tensor, n: torch.Tensor) -> torch.Tensor:
        """Forward evaluation of ``mu/RT`` as a tensor of shape ``(N,)``."""

    def property_functions(self) -> Dict[str, TensorFn]:
        return {}

    def _inputs(self, T: float, P: float, n: np.ndarray) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        return (
            torch.tensor(float(T), dtype=self.dtype),
            torch.tensor(float(P), dtype=self.dtype),
            torch.as_tensor(np.asarray(n, dtype=float).reshape(-1), dtype=self.dtype),
        )

    def evaluate(self, T: float, P: float, n: np.ndarray) -> ThermoProperties:
        inputs = self._inputs(T, P, n)
        with torch.no_grad():
            mu = self.potentials(*inputs)
        d_T, d_P, d_n = torch.autograd.functional.jacobian(self.potentials, inputs)
        return ThermoProperties(
            potentials=mu.detach().cpu().numpy(),
            dn=d_n.detach().cpu().numpy(),
            dT=d_T.detach().cpu().numpy().reshape(-1),
            dP=d_P.detach().cpu().numpy().reshape(-1),
        )

    def properties(self, T: float, P: float, n: np.ndarray) -> Dict[str, float]:
        inputs = self._inputs(T, P, n)
        out: Dict[str, float] = {}
        with torch.no_grad():
            for name, fn in self.property_functions().items():
                out[name] = float(fn(*inputs).item())
        return out

    def property_gradients(self, T: float, P: float, n: np.ndarray) -> Dict[str, Tuple[np.ndarray, float, float]]:
        inputs = self._inputs(T, P, n)
        out: Dict[str, Tuple[np.ndarray, float, float]] = {}
        for name, fn in self.property_functions().items():
            d_T, d_P, d_n = torch.autograd.functional.jacobian(fn, inputs)
            out[name] = (d_n.detach().cpu().numpy().reshape(-1), float(d_T.item()), float(d_P.item()))
        return out


class IdealThermoModel(TorchThermoModel):
    """Ideal mixing with constant standard enthalpy and entropy.

    Standard potentials follow ``g0/RT = h0/(RT) - s0/R``. Solution phases mix
    ideally on mole fractions; gas species add ``ln(P/P0)``. A solution phase
    containing ``solvent`` is treated as an ideal aqueous phase: solutes use
    molalities, the solvent its mole fraction. When both ``solvent`` and
    ``hydron`` are given the model reports ``pH`` as ``-log10 m(H+)``.
    """

    def __init__(
        self,
        system: ChemicalSystem,
        enthalpy: Sequence[float],
        entropy: Sequence[float],
        solvent: Optional[str] = None,
        hydron: Optional[str] = None,
        reference_pressure: float = REFERENCE_PRESSURE,
    ) -> None:
        h = np.asarray(enthalpy, dtype=float).reshape(-1)
        s = np.asarray(entropy, dtype=float).reshape(-1)
        if h.shape[0] != system.num_species or s.shape[0] != system.num_species:
            raise ValueError("enthalpy and entropy must provide one value per species.")
        if reference_pressure <= 0.0:
            raise ValueError("reference_pressure must be positive.")
        self.system = system
        self.reference_pressure = float(reference_pressure)
        self._h = torch.as_tensor(h, dtype=self.dtype)
        self._s = torch.as_tensor(s, dtype=self.dtype)
        self._solvent = system.species_index(solvent) if solvent is not None else None
        self._hydron = system.species_index(hydron) if hydron is not None else None
        if self._hydron is not None and self._solvent is None:
            raise ValueError("hydron requires a solvent species.")

        self._phase_index = [torch.as_tensor(p.species, dtype=torch.long) for p in system.phases]
        self._phase_kind = [p.kind for p in system.phases]
        self._aqueous = [self._solvent is not None and self._solvent in p.species for p in system.phases]

    def standard_potentials(self, T: torch.Tensor) -> torch.Tensor:
        return self._h / (GAS_CONSTANT * T) - self._s / GAS_CONSTANT

    def potentials(self, T: torch.Tensor, P: torch.Tensor, n: torch.Tensor) -> torch.Tensor:
        n = torch.clamp(n, min=_TINY)
        mu = self.standard_potentials(T)
        ln_a = torch.zeros_like(n)
        for idx, kind, aqueous in zip(self._phase_index, self._phase_kind, self._aqueous):
            if kind == "pure":
                continue
            n_p = n[idx]
            if aqueous:
                n_w = n[self._solvent]
                local = torch.log(n_p / (n_w * WATER_MOLAR_MASS))
                pos = int((idx == self._solvent).nonzero()[0, 0])
                local = local.clone()
                local[pos] = torch.log(n_w / n_p.sum())
            else:
                local = torch.log(n_p / n_p.sum())
            if kind == "gas":
                local = local + torch.log(P / self.reference_pressure)
            ln_a = ln_a.index_put((idx,), local)
        return mu + ln_a

    def _gibbs(self, T: torch.Tensor, P: torch.Tensor, n: torch.Tensor) -> torch.Tensor:
        return torch.dot(torch.clamp(n, min=0.0), self.potentials(T, P, n))

    def _ph(self, T: torch.Tensor, P: torch.Tensor, n: torch.Tensor) -> torch.Tensor:
        n = torch.clamp(n, min=_TINY)
        molality = n[self._hydron] / (n[self._solvent] * WATER_MOLAR_MASS)
        return -torch.log10(molality)

    def property_functions(self) -> Dict[str, TensorFn]:
        fns: Dict[str, TensorFn] = {"gibbs_energy": self._gibbs}
        if self._hydron is not None:
            fns["pH"] = self._ph
        return fns


__all__ = [
    "GAS_CONSTANT",
    "WATER_MOLAR_MASS",
    "REFERENCE_PRESSURE",
    "ThermoProperties",
    "ThermoModel",
    "TorchThermoModel",
    "IdealThermoModel",
]

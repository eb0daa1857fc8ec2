"""Structured perturbations of equilibrium conditions for query streams."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .problem import Conditions


@dataclass(frozen=True)
class PerturbationSpec:
    kind: str
    temperature_scale: float = 0.0
    pressure_scale: float = 0.0
    amount_scale: float = 0.0
    seed: int = 0
    amount_mask: np.ndarray | None = None


def _apply_mask(delta: np.ndarray, mask: np.ndarray | None) -> np.ndarray:
    if mask is None:
        return delta
    mask_arr = np.asarray(mask, dtype=float).reshape(-1)
    if mask_arr.shape != delta.shape:
        raise ValueError(f"amount_mask shape mismatch: expected {delta.shape}, got {mask_arr.shape}.")
    return delta * mask_arr


def perturb_conditions(base: Conditions, spec: PerturbationSpec, idx: int) -> Conditions:
    """Deterministic per-index perturbation using seed+idx.

    ``uniform`` and ``gaussian`` add absolute offsets (K, Pa, mol);
    ``relative`` multiplies each quantity by ``1 + u`` with ``u`` uniform in
    ``[-scale, scale]``. Element amounts are clipped at zero and temperature
    and pressure kept positive.
    """
    if not isinstance(spec, PerturbationSpec):
        raise TypeError("spec must be a PerturbationSpec instance.")

    kind = str(spec.kind).strip().lower()
    T = float(base.temperature)
    P = float(base.pressure)
    b = np.asarray(base.amounts, dtype=float)

    if kind == "none":
        return Conditions(T, P, b.copy(), base.parameters, base.restrictions)

    rng = np.random.default_rng(int(spec.seed) + int(idx))
    T_scale = float(spec.temperature_scale)
    P_scale = float(spec.pressure_scale)
    b_scale = float(spec.amount_scale)

    if kind == "uniform":
        dT = rng.uniform(-T_scale, T_scale)
        dP = rng.uniform(-P_scale, P_scale)
        db = rng.uniform(-b_scale, b_scale, size=b.shape)
    elif kind == "gaussian":
        dT = rng.normal(loc=0.0, scale=T_scale)
        dP = rng.normal(loc=0.0, scale=P_scale)
        db = rng.normal(loc=0.0, scale=b_scale, size=b.shape)
    elif kind == "relative":
        dT = T * rng.uniform(-T_scale, T_scale)
        dP = P * rng.uniform(-P_scale, P_scale)
        db = b * rng.uniform(-b_scale, b_scale, size=b.shape)
    else:
        raise ValueError("spec.kind must be one of: none, uniform, gaussian, relative.")

    db = _apply_mask(db, spec.amount_mask)
    tiny = np.finfo(float).tiny
    return Conditions(
        temperature=max(T + dT, tiny),
        pressure=max(P + dP, tiny),
        amounts=np.maximum(b + db, 0.0),
        parameters=base.parameters,
        restrictions=base.restrictions,
    )


__all__ = [
    "PerturbationSpec",
    "perturb_conditions",
]

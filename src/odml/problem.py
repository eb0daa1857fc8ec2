"""Query inputs: equilibrium conditions and reactivity restrictions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Tuple

import numpy as np

ArrayLike = np.ndarray


def _as_items(values: Mapping[int, float] | Iterable[Tuple[int, float]] | None, name: str) -> tuple[tuple[int, float], ...]:
    if values is None:
        return ()
    pairs = values.items() if isinstance(values, Mapping) else values
    items = []
    for idx, val in pairs:
        val = float(val)
        if not np.isfinite(val) or val < 0.0:
            raise ValueError(f"{name} restriction values must be finite and nonnegative.")
        items.append((int(idx), val))
    items.sort()
    indices = [i for i, _ in items]
    if len(set(indices)) != len(indices):
        raise ValueError(f"Duplicate species index in {name} restrictions.")
    if indices and indices[0] < 0:
        raise ValueError(f"{name} restriction indices must be nonnegative.")
    return tuple(items)


@dataclass(frozen=True)
class Restrictions:
    """Equality and inequality restrictions on species amounts.

    ``fixed`` pins the amount of a species (an inert species, or one whose
    amount is imposed by the caller). ``lower`` and ``upper`` bound species
    amounts without pinning them.
    """

    fixed: Any = ()
    lower: Any = ()
    upper: Any = ()

    def __post_init__(self) -> None:
        fixed = _as_items(self.fixed, "fixed")
        lower = _as_items(self.lower, "lower")
        upper = _as_items(self.upper, "upper")
        fixed_idx = {i for i, _ in fixed}
        for i, _ in lower + upper:
            if i in fixed_idx:
                raise ValueError(f"Species {i} cannot be both fixed and bounded.")
        lo = dict(lower)
        for i, u in upper:
            if i in lo and lo[i] > u:
                raise ValueError(f"Lower bound exceeds upper bound for species {i}.")
        object.__setattr__(self, "fixed", fixed)
        object.__setattr__(self, "lower", lower)
        object.__setattr__(self, "upper", upper)

    @property
    def fixed_indices(self) -> tuple[int, ...]:
        return tuple(i for i, _ in self.fixed)

    @property
    def fixed_values(self) -> np.ndarray:
        return np.array([v for _, v in self.fixed], dtype=float)

    @property
    def layout(self) -> tuple:
        """Structural key; bound values are part of it, fixed values are not."""
        return (self.fixed_indices, self.lower, self.upper)

    def __bool__(self) -> bool:
        return bool(self.fixed or self.lower or self.upper)

    def max_index(self) -> int:
        indices = [i for i, _ in self.fixed + self.lower + self.upper]
        return max(indices) if indices else -1


@dataclass(frozen=True, eq=False)
class Conditions:
    """Input of one equilibrium query.

    The continuous key used by the reference index is :attr:`vector`, laid out
    as ``[T, P, b_1..b_E, parameters..., fixed amounts...]``. Temperature is in
    K, pressure in Pa and element amounts in mol.
    """

    temperature: float
    pressure: float
    amounts: ArrayLike
    parameters: Any = ()
    restrictions: Restrictions = field(default_factory=Restrictions)

    def __post_init__(self) -> None:
        T = float(self.temperature)
        P = float(self.pressure)
        if not (np.isfinite(T) and T > 0.0):
            raise ValueError("temperature must be positive and finite.")
        if not (np.isfinite(P) and P > 0.0):
            raise ValueError("pressure must be positive and finite.")
        b = np.array(self.amounts, dtype=float).reshape(-1)
        if b.size == 0:
            raise ValueError("amounts must be non-empty.")
        if not np.all(np.isfinite(b)):
            raise ValueError("amounts must be finite.")
        b.setflags(write=False)

        params = self.parameters
        if isinstance(params, Mapping):
            params = params.items()
        params = tuple(sorted((str(k), float(v)) for k, v in params))
        if len({k for k, _ in params}) != len(params):
            raise ValueError("Duplicate parameter names.")
        if not all(np.isfinite(v) for _, v in params):
            raise ValueError("parameters must be finite.")

        restrictions = self.restrictions
        if restrictions is None:
            restrictions = Restrictions()
        elif not isinstance(restrictions, Restrictions):
            raise TypeError("restrictions must be a Restrictions instance or None.")

        object.__setattr__(self, "temperature", T)
        object.__setattr__(self, "pressure", P)
        object.__setattr__(self, "amounts", b)
        object.__setattr__(self, "parameters", params)
        object.__setattr__(self, "restrictions", restrictions)

        vec = np.concatenate(
            [
                np.array([T, P], dtype=float),
                b,
                np.array([v for _, v in params], dtype=float),
                restrictions.fixed_values,
            ]
        )
        vec.setflags(write=False)
        object.__setattr__(self, "_vector", vec)

    @property
    def vector(self) -> np.ndarray:
        return self._vector  # type: ignore[attr-defined]

    @property
    def num_inputs(self) -> int:
        return int(self.vector.shape[0])

    @property
    def num_elements(self) -> int:
        return int(self.amounts.shape[0])

    @property
    def layout(self) -> tuple:
        """Conditions with equal layouts have comparable vectors."""
        return (self.num_elements, tuple(k for k, _ in self.parameters), self.restrictions.layout)

    def parameter(self, name: str) -> float:
        for key, value in self.parameters:
            if key == name:
                return value
        raise KeyError(f"Unknown parameter {name!r}.")

    def with_restrictions(self, restrictions: Restrictions | None) -> "Conditions":
        return Conditions(
            temperature=self.temperature,
            pressure=self.pressure,
            amounts=self.amounts,
            parameters=self.parameters,
            restrictions=restrictions if restrictions is not None else Restrictions(),
        )

    def with_vector(self, vector: ArrayLike) -> "Conditions":
        """Return conditions of the same layout holding the values in ``vector``."""
        vec = np.asarray(vector, dtype=float).reshape(-1)
        if vec.shape[0] != self.num_inputs:
            raise ValueError(f"vector must have length {self.num_inputs}, got {vec.shape[0]}.")
        E = self.num_elements
        n_par = len(self.parameters)
        params = tuple((k, float(v)) for (k, _), v in zip(self.parameters, vec[2 + E : 2 + E + n_par]))
        fixed_vals = vec[2 + E + n_par :]
        restrictions = self.restrictions
        if restrictions.fixed:
            restrictions = Restrictions(
                fixed=tuple(zip(restrictions.fixed_indices, fixed_vals)),
                lower=restrictions.lower,
                upper=restrictions.upper,
            )
        return Conditions(
            temperature=float(vec[0]),
            pressure=float(vec[1]),
            amounts=vec[2 : 2 + E],
            parameters=params,
            restrictions=restrictions,
        )


__all__ = [
    "Restrictions",
    "Conditions",
]

"""Chemical system description: species, elements, formula matrix and phases."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Mapping, Sequence

import numpy as np

PhaseKind = Literal["solution", "gas", "pure"]


@dataclass(frozen=True)
class Phase:
    name: str
    species: tuple[int, ...]
    kind: PhaseKind = "solution"

    def __post_init__(self) -> None:
        if self.kind not in {"solution", "gas", "pure"}:
            raise ValueError("Phase kind must be one of {'solution', 'gas', 'pure'}.")
        species = tuple(int(i) for i in self.species)
        if not species:
            raise ValueError(f"Phase {self.name!r} must contain at least one species.")
        if self.kind == "pure" and len(species) != 1:
            raise ValueError(f"Pure phase {self.name!r} must contain exactly one species.")
        object.__setattr__(self, "species", species)


@dataclass(frozen=True)
class ChemicalSystem:
    """Species, elements and phases of a chemical system.

    ``formula_matrix[j, i]`` is the number of atoms of element ``j`` in
    species ``i``. An electric charge balance is expressed as an ordinary
    element row (conventionally named ``"Z"``).
    """

    species: tuple[str, ...]
    elements: tuple[str, ...]
    formula_matrix: np.ndarray
    phases: tuple[Phase, ...]

    def __post_init__(self) -> None:
        species = tuple(str(s) for s in self.species)
        elements = tuple(str(e) for e in self.elements)
        if len(set(species)) != len(species):
            raise ValueError("Species names must be unique.")
        if len(set(elements)) != len(elements):
            raise ValueError("Element names must be unique.")
        A = np.array(self.formula_matrix, dtype=float)
        if A.shape != (len(elements), len(species)):
            raise ValueError(
                f"formula_matrix must have shape {(len(elements), len(species))}, got {A.shape}."
            )
        if not np.all(np.isfinite(A)):
            raise ValueError("formula_matrix must be finite.")
        A.setflags(write=False)

        phases = tuple(self.phases)
        owner = np.full(len(species), -1, dtype=int)
        for k, phase in enumerate(phases):
            for i in phase.species:
                if not (0 <= i < len(species)):
                    raise ValueError(f"Phase {phase.name!r} references unknown species index {i}.")
                if owner[i] >= 0:
                    raise ValueError(f"Species {species[i]!r} belongs to more than one phase.")
                owner[i] = k
        if np.any(owner < 0):
            missing = [species[i] for i in np.flatnonzero(owner < 0)]
            raise ValueError(f"Species without a phase: {missing}.")

        object.__setattr__(self, "species", species)
        object.__setattr__(self, "elements", elements)
        object.__setattr__(self, "formula_matrix", A)
        object.__setattr__(self, "phases", phases)

    @classmethod
    def from_compositions(
        cls,
        compositions: Mapping[str, Mapping[str, float]],
        phases: Sequence[tuple[str, Sequence[str], PhaseKind]],
        elements: Iterable[str] | None = None,
    ) -> "ChemicalSystem":
        """Build a system from explicit element counts per species.

        ``phases`` is a sequence of ``(name, species names, kind)`` triples.
        Elements are ordered as given, or by first appearance otherwise.
        """
        species = list(compositions)
        if elements is None:
            order: list[str] = []
            for comp in compositions.values():
                for el in comp:
                    if el not in order:
                        order.append(el)
            elements = order
        elements = list(elements)
        A = np.zeros((len(elements), len(species)), dtype=float)
        for i, name in enumerate(species):
            for el, count in compositions[name].items():
                if el not in elements:
                    raise ValueError(f"Species {name!r} uses undeclared element {el!r}.")
                A[elements.index(el), i] = float(count)
        index = {name: i for i, name in enumerate(species)}
        built = []
        for name, members, kind in phases:
            try:
                idx = tuple(index[m] for m in members)
            except KeyError as exc:
                raise ValueError(f"Phase {name!r} references unknown species {exc.args[0]!r}.") from None
            built.append(Phase(name=name, species=idx, kind=kind))
        return cls(species=tuple(species), elements=tuple(elements), formula_matrix=A, phases=tuple(built))

    @property
    def num_species(self) -> int:
        return len(self.species)

    @property
    def num_elements(self) -> int:
        return len(self.elements)

    def species_index(self, name: str) -> int:
        try:
            return self.species.index(name)
        except ValueError:
            raise KeyError(f"Unknown species {name!r}.") from None

    def element_index(self, name: str) -> int:
        try:
            return self.elements.index(name)
        except ValueError:
            raise KeyError(f"Unknown element {name!r}.") from None

    def element_amounts(self, n: np.ndarray) -> np.ndarray:
        """Evaluate ``b = A n``."""
        n = np.asarray(n, dtype=float).reshape(-1)
        if n.shape[0] != self.num_species:
            raise ValueError("Dimension mismatch for species amounts.")
        return self.formula_matrix @ n


__all__ = [
    "Phase",
    "ChemicalSystem",
]

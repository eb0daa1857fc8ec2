"""Exception types raised by the smart equilibrium engine."""

from __future__ import annotations

from typing import Any


class ConfigurationError(ValueError):
    """Raised when engine options are invalid."""


class SolveFailure(RuntimeError):
    """The rigorous solver could not produce a solution.

    The oracle's diagnostic payload is kept in ``diagnostics`` so callers can
    inspect iteration counts and residuals. A failed solve is never cached.
    """

    def __init__(self, message: str, diagnostics: Any = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


__all__ = [
    "ConfigurationError",
    "SolveFailure",
]

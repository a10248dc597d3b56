"""Exception types raised by the muscle redundancy solver.

Validation errors are raised eagerly, before any solve is attempted.
Solver errors are raised when the nonlinear program fails to converge.
Out-of-range interpolation is a broken internal contract rather than a
user error, so it derives from `AssertionError`.

:copyright: Copyright 2024 by MLL <mll@mll.bio>.
:license: Apache 2.0. See LICENSE for details.
"""

__all__ = [
    "MuscleRedundancyError",
    "ValidationError",
    "SolverError",
    "DataRangeError",
]


class MuscleRedundancyError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(MuscleRedundancyError, ValueError):
    """Invalid model, data, or option detected during setup."""


class SolverError(MuscleRedundancyError, RuntimeError):
    """The direct collocation solve did not converge."""

    def __init__(self, message: str, solution=None):
        super().__init__(message)
        self.solution = solution


class DataRangeError(MuscleRedundancyError, AssertionError):
    """Motion data was requested outside of its valid time range."""

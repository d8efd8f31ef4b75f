"""
Error taxonomy for patchquilt.

Validation and configuration problems are raised at call boundaries before
any potential, inference or voting work starts. Numerical problems abort
the current call; no partial result is ever returned.
"""

import numpy as np


class PatchQuiltError(Exception):
    """Base class for all patchquilt errors."""


class ValidationError(PatchQuiltError, ValueError):
    """Malformed shapes, out-of-range node ids or bad connectivity."""


class NumericalError(PatchQuiltError, ArithmeticError):
    """Non-finite or negative values in computed potentials, beliefs or weights."""


class ConfigurationError(PatchQuiltError, ValueError):
    """Mutually exclusive options were supplied together."""

    def __init__(self, message, options=()):
        super().__init__(message)
        self.options = tuple(options)


def check_finite(arr, what):
    """Raise NumericalError if arr holds NaN or infinite values."""
    if not np.all(np.isfinite(arr)):
        bad = int(np.size(arr) - np.count_nonzero(np.isfinite(arr)))
        raise NumericalError(f"{what}: {bad} non-finite entries")


def check_potential(arr, what):
    """Raise NumericalError unless arr is finite and non-negative."""
    check_finite(arr, what)
    if np.any(arr < 0):
        raise NumericalError(f"{what}: negative entries")

"""
errors.py – Exception taxonomy shared by every stage of the denoiser.

* InvalidArgumentError – malformed sizes, thresholds, σ, empty inputs.
* InvalidStateError    – a call made out of order (e.g. project before fit).
* UnrecoverableError   – numeric failure inside the eigen solver.

`InvalidArgumentError` also derives from `ValueError` so callers that only
know the numeric helpers' usual contract can keep catching `ValueError`.
"""

from __future__ import annotations

__all__ = [
    "DenoiseError",
    "InvalidArgumentError",
    "InvalidStateError",
    "UnrecoverableError",
]


class DenoiseError(Exception):
    """Base class of all errors raised by the denoiser."""


class InvalidArgumentError(DenoiseError, ValueError):
    pass


class InvalidStateError(DenoiseError, RuntimeError):
    pass


class UnrecoverableError(DenoiseError, RuntimeError):
    pass

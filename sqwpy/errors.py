"""Exception types raised by sqwpy.

Every error is detected before the accumulation hot loop runs (at
construction, when an intensity formula is built, or on entry to
:meth:`sqwpy.correlations.SampledCorrelations.accumulate`). An exception
raised during accumulation itself leaves the running statistics partially
updated; such an accumulator has to be restored from a checkpoint.
"""

from __future__ import annotations


class SqwError(Exception):
    """Base class for all sqwpy errors."""


class ConfigurationError(SqwError, ValueError):
    """Invalid construction or query configuration.

    Raised for incompatible ``(dt, nw, wmax)`` combinations, variance requests
    on accumulators built without variance tracking, temperature corrections
    on static-only data, and mismatched accumulators passed to ``merge``.
    """


class ShapeMismatch(SqwError, ValueError):
    """A sample buffer or system does not fit the accumulator grid."""


class InvalidTemperature(SqwError, ValueError):
    """A finite temperature ``kT <= 0`` was requested."""


class CorrelationNotFound(SqwError, LookupError):
    """A channel pair was requested that the accumulator does not record."""

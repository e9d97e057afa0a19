"""Environment-variable helpers.

These helpers centralize parsing/normalization of the environment variables
that control accumulation (kernel backend selection, FFT worker count).

Notes
-----
Invalid inputs fall back to defaults rather than raising.
"""

from __future__ import annotations

import os

ACCUMULATION_BACKENDS = ("numba", "numpy")


def parse_int_env(name: str, *, default: int, minimum: int = 1) -> int:
    """Parse an integer environment variable with a lower bound.

    Parameters
    ----------
    name:
        Environment variable name.
    default:
        Default value used when the variable is unset or invalid.
    minimum:
        Lower bound enforced on the returned value.

    Returns
    -------
    int
        Parsed integer value (at least ``minimum``).
    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def normalize_accumulation_backend(value: str) -> str:
    """Normalize the accumulation kernel selector.

    Parameters
    ----------
    value:
        A raw environment variable value.

    Returns
    -------
    str
        One of ``{"numba", "numpy"}``; unknown values map to ``"numba"``.
    """

    raw = (value or "").strip().lower()
    if raw in {"numpy", "np", "vectorized"}:
        return "numpy"
    return "numba"


def default_backend() -> str:
    """Accumulation backend requested through ``SQWPY_ACCUM_BACKEND``."""

    return normalize_accumulation_backend(os.environ.get("SQWPY_ACCUM_BACKEND", ""))


def fft_workers() -> int:
    """Number of threads handed to :func:`scipy.fft.fftn` (``SQWPY_FFT_WORKERS``)."""

    return parse_int_env("SQWPY_FFT_WORKERS", default=1, minimum=1)

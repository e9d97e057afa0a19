"""Space-time Fourier transform of sample buffers.

A sample buffer has shape ``(nobs, L1, L2, L3, natoms, n_t)``. The transform
runs over the three cell axes and the time axis; the channel and sublattice
axes are left untouched. Sublattice phases are applied later, when
intensities are computed.
"""

from __future__ import annotations

import numpy as np
import scipy.fft

from sqwpy.env import fft_workers
from sqwpy.errors import ConfigurationError, ShapeMismatch

FFT_AXES = (1, 2, 3, 5)

PROCESSING_OPTIONS = ("none", "symmetrize", "subtract_mean")


def symmetrize(buf: np.ndarray) -> None:
    """Symmetrize a trajectory in time, in place.

    Entry ``t`` becomes the average of entries ``t`` and ``n_t - 1 - t``. The
    average is formed from an unmodified copy so the result is exactly
    symmetric under time reversal.
    """

    buf[...] = 0.5 * (buf + buf[..., ::-1])


def subtract_mean(buf: np.ndarray) -> None:
    """Remove the time average of every entry, in place (drops the elastic line)."""

    buf -= buf.mean(axis=-1, keepdims=True)


def processing_hook(name: str | None):
    """Return the trajectory pre-processing function registered under ``name``.

    Returns ``None`` for ``"none"``.
    """

    key = "none" if name is None else str(name).lower()
    if key == "none":
        return None
    if key == "symmetrize":
        return symmetrize
    if key in {"subtract_mean", "subtract-mean"}:
        return subtract_mean
    raise ConfigurationError(
        f"Unknown trajectory processing {name!r}. Expected one of {PROCESSING_OPTIONS}."
    )


class FourierPlan:
    """Pre-planned, pre-normalized FFT for one accumulator configuration.

    Parameters
    ----------
    shape:
        Full sample-buffer shape ``(nobs, L1, L2, L3, natoms, n_t)``.
    workers:
        Worker threads for :func:`scipy.fft.fftn`. Defaults to
        :func:`sqwpy.env.fft_workers`.

    Notes
    -----
    The normalization ``1 / (n_t * sqrt(L1 L2 L3))`` makes the per-sample
    correlation ``X_a(q, w) conj(X_b(q, w))`` independent of the system size
    for uncorrelated spins.
    """

    def __init__(self, shape: tuple[int, ...], workers: int | None = None):
        self.shape = tuple(int(n) for n in shape)
        if len(self.shape) != 6:
            raise ShapeMismatch(f"Sample buffers are 6-dimensional, got shape {self.shape}")
        self.axes = FFT_AXES
        self.workers = fft_workers() if workers is None else int(workers)
        latsize = self.shape[1:4]
        n_t = self.shape[5]
        self.normalization = 1.0 / (n_t * np.sqrt(np.prod(latsize)))

    def check(self, buf: np.ndarray) -> None:
        if buf.shape != self.shape:
            raise ShapeMismatch(
                f"Sample buffer of shape {buf.shape} incompatible with accumulator grid {self.shape}"
            )

    def __call__(self, buf: np.ndarray) -> np.ndarray:
        """Transform ``buf`` in place and return it."""

        self.check(buf)
        out = scipy.fft.fftn(buf, axes=self.axes, overwrite_x=True, workers=self.workers)
        out *= self.normalization
        if out is not buf:
            buf[...] = out
        return buf

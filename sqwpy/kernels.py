"""Accumulation kernels.

Both kernels fold one Fourier-transformed sample into the running mean (and
optionally the running variance) of every registered correlation. They
perform the same floating-point operations in the same order:

    mu_new = mu_old + (x - mu_old) * (1 / count)
    var   += (Re[conj(x - mu_old) * (x - mu_new)] - var) * (1 / count)

with ``x = X_a,i(q, w) * conj(X_b,j(q, w))``. The stored variance is the
running second moment divided by ``count`` (Welford).

``accumulate_numpy`` is the vectorized reference; ``accumulate_numba`` is the
parallel version used by default.
"""

from __future__ import annotations

import numba as nb
import numpy as np
from numba import prange


def accumulate_numpy(
    data: np.ndarray,
    variance: np.ndarray | None,
    samplebuf: np.ndarray,
    pairs: np.ndarray,
    count: int,
) -> None:
    """Fold a transformed sample into ``data`` (and ``variance``), in place.

    Parameters
    ----------
    data:
        Complex running mean, shape ``(ncorr, natoms, natoms, L1, L2, L3, n_t)``.
    variance:
        Real running variance with the shape of ``data``, or ``None``.
    samplebuf:
        Transformed sample, shape ``(nobs, L1, L2, L3, natoms, n_t)``.
    pairs:
        Integer array of shape ``(ncorr, 2)`` with the channel pair of every
        correlation.
    count:
        Sample number after incrementing the counter.
    """

    weight = 1 / count
    natoms = samplebuf.shape[4]
    for c, (a, b) in enumerate(pairs):
        for i in range(natoms):
            sample_a = samplebuf[a, :, :, :, i, :]
            for j in range(natoms):
                sample_b = samplebuf[b, :, :, :, j, :]
                elem = sample_a * np.conj(sample_b)
                databuf = data[c, i, j]

                if variance is None:
                    databuf += (elem - databuf) * weight
                    continue

                mu_old = databuf.copy()
                databuf += (elem - databuf) * weight
                varbuf = variance[c, i, j]
                # The product is real by construction; drop the rounding residue.
                varbuf += (np.real(np.conj(elem - mu_old) * (elem - databuf)) - varbuf) * weight


@nb.njit(parallel=True, nogil=True)
def _accumulate_kernel(data, variance, with_variance, samples, pairs, weight):
    ncorr = pairs.shape[0]
    natoms = samples.shape[1]
    m = samples.shape[2]
    total = ncorr * natoms * natoms * m

    for idx in prange(total):
        k = idx % m
        rest = idx // m
        j = rest % natoms
        rest = rest // natoms
        i = rest % natoms
        c = rest // natoms

        a = pairs[c, 0]
        b = pairs[c, 1]
        elem = samples[a, i, k] * np.conj(samples[b, j, k])
        mu_old = data[c, i, j, k]
        mu = mu_old + (elem - mu_old) * weight
        data[c, i, j, k] = mu

        if with_variance:
            var = variance[c, i, j, k]
            second = (np.conj(elem - mu_old) * (elem - mu)).real
            variance[c, i, j, k] = var + (second - var) * weight


def accumulate_numba(
    data: np.ndarray,
    variance: np.ndarray | None,
    samplebuf: np.ndarray,
    pairs: np.ndarray,
    count: int,
) -> None:
    """Numba-parallel drop-in replacement for :func:`accumulate_numpy`.

    ``data`` and ``variance`` must be C-contiguous so that their flattened
    views alias the accumulator storage.
    """

    ncorr, natoms = data.shape[:2]
    nobs = samplebuf.shape[0]

    samples = np.ascontiguousarray(np.moveaxis(samplebuf, 4, 1)).reshape(nobs, natoms, -1)
    data_flat = data.reshape(ncorr, natoms, natoms, -1)
    if variance is None:
        var_flat = np.zeros((1, 1, 1, 1), dtype=np.float64)
    else:
        var_flat = variance.reshape(ncorr, natoms, natoms, -1)

    _accumulate_kernel(
        data_flat,
        var_flat,
        variance is not None,
        samples,
        np.ascontiguousarray(pairs, dtype=np.int64),
        1 / count,
    )


KERNELS = {
    "numpy": accumulate_numpy,
    "numba": accumulate_numba,
}


def pooled_statistics(
    mean_a: np.ndarray,
    var_a: np.ndarray | None,
    n_a: int,
    mean_b: np.ndarray,
    var_b: np.ndarray | None,
    n_b: int,
) -> tuple[np.ndarray, np.ndarray | None]:
    """Combine two sets of running statistics (parallel Welford).

    Parameters
    ----------
    mean_a, var_a, n_a:
        Mean, variance (second moment over ``n_a``) and count of the first set.
    mean_b, var_b, n_b:
        The same for the second set.

    Returns
    -------
    tuple
        Pooled mean and pooled variance (``None`` when either variance is
        missing). Both are weighted by sample count.
    """

    n = n_a + n_b
    if n == 0:
        return mean_a.copy(), None if var_a is None else var_a.copy()

    delta = mean_b - mean_a
    mean = mean_a + delta * (n_b / n)
    if var_a is None or var_b is None:
        return mean, None

    m2 = var_a * n_a + var_b * n_b + np.abs(delta) ** 2 * (n_a * n_b / n)
    return mean, m2 / n

"""Intensity queries on accumulated correlations.

All functions here are read-only with respect to the accumulator and may run
concurrently with each other, but not with :meth:`add_sample`.

Wave vectors are given in reciprocal lattice units (RLU) unless
``units="absolute"`` is passed. A wave vector outside the first Brillouin zone
reads the data at its periodic image, while the absolute ``k`` handed to form
factors and polarization factors keeps the requested zone.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import numpy as np

from sqwpy.errors import ConfigurationError, ShapeMismatch
from sqwpy.formula import IntensityFormula, classical_to_quantum

log = logging.getLogger(__name__)

INTERPOLATION_MODES = ("nearest", "linear")


def available_energies(sc: Any, negative_energies: bool = False) -> np.ndarray:
    """Energies of the accumulator's frequency grid.

    With ``negative_energies`` the full signed grid is returned in FFT order;
    the negative half is the Hermitian back-fold of the positive one.
    """

    return sc.parameters.energies(negative_energies)


def available_wave_vectors(sc: Any, bzsize: tuple[int, int, int] = (1, 1, 1)) -> np.ndarray:
    """Every exact grid wave vector in RLU, shape ``(B1 L1, B2 L2, B3 L3, 3)``."""

    L = np.asarray(sc.latsize)
    counts = L * np.asarray(bzsize, dtype=int)
    axes = [np.arange(n) / L[a] for a, n in enumerate(counts)]
    return np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1)


def _energy_indices(sc: Any, negative_energies: bool, energies) -> np.ndarray:
    params = sc.parameters
    if params.is_static:
        return np.array([0])
    if energies is None:
        return np.arange(params.n_t if negative_energies else params.nw)

    energies = np.atleast_1d(np.asarray(energies, dtype=float))
    m = np.rint(energies / params.dw).astype(int)
    limit = params.nw - 1
    if np.any(np.abs(m) > limit):
        log.warning(
            "Requested energies beyond the resolved range +-%g are clipped to the grid edge",
            limit * params.dw,
        )
        m = np.clip(m, -limit, limit)
    return np.mod(m, params.n_t)


def _to_rlu(sc: Any, qs, units: str) -> np.ndarray:
    qs = np.asarray(qs, dtype=float)
    if qs.shape[-1] != 3:
        raise ShapeMismatch(f"Wave vectors must have a trailing axis of length 3, got {qs.shape}")
    if units == "rlu":
        return qs
    if units == "absolute":
        return sc.lattice.to_rlu(qs)
    raise ConfigurationError(f"Unknown wave vector units {units!r}; use 'rlu' or 'absolute'")


def _evaluate(sc, formula: IntensityFormula, m: np.ndarray, ix_w: np.ndarray) -> np.ndarray:
    """Intensities at integer grid coordinates ``m`` (possibly outside the first zone)."""

    L = np.asarray(sc.latsize)
    k = sc.lattice.to_absolute(m / L)
    return formula(k, np.mod(m, L), ix_w)


def intensities_interpolated(
    sc: Any,
    qs,
    formula: IntensityFormula,
    *,
    interpolation: str = "nearest",
    negative_energies: bool = False,
    energies=None,
    units: str = "rlu",
) -> np.ndarray:
    """Intensities at arbitrary wave vectors.

    Parameters
    ----------
    sc:
        Accumulator the formula was built for.
    qs:
        Wave vectors, shape ``(..., 3)``.
    formula:
        Compiled :class:`~sqwpy.formula.IntensityFormula`.
    interpolation:
        ``"nearest"`` snaps every ``q`` to the closest grid point;
        ``"linear"`` combines the 8 surrounding grid points trilinearly.
    negative_energies:
        Return the full signed energy axis instead of the ``nw`` non-negative
        energies.
    energies:
        Explicit energies, each snapped to the nearest grid energy.
    units:
        ``"rlu"`` or ``"absolute"``.

    Returns
    -------
    np.ndarray
        Shape ``qs.shape[:-1] + (nw,)`` followed by any axes the contraction
        adds (the channel matrix for ``"full"``).
    """

    if formula.sc is not sc:
        raise ConfigurationError("The intensity formula was built for a different accumulator")
    if interpolation not in INTERPOLATION_MODES:
        raise ConfigurationError(
            f"Unknown interpolation {interpolation!r}; expected one of {INTERPOLATION_MODES}"
        )

    qs = _to_rlu(sc, qs, units)
    batch_shape = qs.shape[:-1]
    qs = qs.reshape(-1, 3)
    ix_w = _energy_indices(sc, negative_energies, energies)
    L = np.asarray(sc.latsize)

    scaled = qs * L
    nearest = np.rint(scaled).astype(int)

    if interpolation == "nearest":
        vals = _evaluate(sc, formula, nearest, ix_w)
    else:
        base = np.floor(scaled).astype(int)
        frac = scaled - base
        on_grid = np.abs(scaled - nearest) < 1e-10
        base = np.where(on_grid, nearest, base)
        frac = np.where(on_grid, 0.0, frac)

        vals = None
        for corner in np.ndindex(2, 2, 2):
            corner = np.asarray(corner)
            weight = np.prod(np.where(corner == 1, frac, 1 - frac), axis=-1)
            contribution = _evaluate(sc, formula, base + corner, ix_w)
            weight = weight.reshape((-1,) + (1,) * (contribution.ndim - 1))
            vals = weight * contribution if vals is None else vals + weight * contribution

    return vals.reshape(batch_shape + vals.shape[1:])


def instant_intensities_interpolated(
    sc: Any,
    qs,
    formula: IntensityFormula,
    **kwargs,
) -> np.ndarray:
    """Instantaneous structure factor ``S(q)``.

    For dynamical accumulators the (temperature-corrected) intensities are
    summed over the full signed energy axis. Keyword arguments are forwarded
    to :func:`intensities_interpolated`.
    """

    kwargs.pop("negative_energies", None)
    kwargs.pop("energies", None)
    vals = intensities_interpolated(sc, qs, formula, negative_energies=True, **kwargs)
    energy_axis = np.ndim(qs) - 1
    return vals.sum(axis=energy_axis)


# ----------------------------------------------------------------------------
# Energy broadening
# ----------------------------------------------------------------------------


def lorentzian(x, eta: float):
    """Returns ``eta / (pi (x^2 + eta^2))``."""

    return eta / (np.pi * (np.asarray(x) ** 2 + eta**2))


def integrated_lorentzian(eta: float) -> Callable:
    """Returns ``x -> atan(x / eta) / pi``, for use with :func:`sqwpy.binning.intensities_binned`."""

    def kernel(x):
        return np.arctan(np.asarray(x) / eta) / np.pi

    return kernel


def broaden_energy(
    sc: Any,
    vals: np.ndarray,
    kernel: Callable,
    *,
    negative_energies: bool = False,
    normalize: bool = True,
    axis: int = -1,
) -> np.ndarray:
    """Dense convolution of intensities along the energy axis.

    Every output energy receives contributions from every input energy:

        out[..., w] = sum_{w0} vals[..., w0] * K(w, w0)

    Parameters
    ----------
    sc:
        Accumulator providing the energy grid.
    vals:
        Intensities as returned by :func:`intensities_interpolated`.
    kernel:
        Real function ``kernel(w, w0)`` of the energy and the kernel centre,
        e.g. ``lambda w, w0: lorentzian(w - w0, 0.1)``. Called with broadcast
        arrays.
    negative_energies:
        Whether ``vals`` holds the full signed energy axis.
    normalize:
        Scale the kernel weights of each source energy to sum to one over the
        grid, which conserves spectral weight.
    axis:
        Energy axis of ``vals``.
    """

    if sc.parameters.is_static:
        raise ConfigurationError("Energy broadening needs dynamical correlations")

    ws = available_energies(sc, negative_energies)
    vals = np.asarray(vals)
    if vals.shape[axis] != ws.size:
        raise ShapeMismatch(
            f"Energy axis of length {vals.shape[axis]} does not match the {ws.size} grid energies"
        )

    weights = np.asarray(kernel(ws[:, None], ws[None, :]), dtype=float)
    weights = np.broadcast_to(weights, (ws.size, ws.size))
    if normalize:
        weights = weights / weights.sum(axis=0, keepdims=True)

    moved = np.moveaxis(vals, axis, -1)
    out = np.einsum("...j,ij->...i", moved, weights)
    return np.moveaxis(out, -1, axis)


# ----------------------------------------------------------------------------
# Powder averaging
# ----------------------------------------------------------------------------


def spherical_points_fibonacci(n: int) -> np.ndarray:
    """``n`` nearly uniform unit vectors from a Fibonacci lattice, shape ``(n, 3)``."""

    golden = (1 + np.sqrt(5)) / 2
    idx = np.arange(1, n + 1)
    x = np.mod(idx / golden, 1.0)
    y = idx / n
    theta = 2 * np.pi * x
    phi = np.arccos(1 - 2 * y)
    return np.stack(
        (np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)), axis=-1
    )


def spherical_shell(radius: float, density: float) -> np.ndarray:
    """Absolute wave vectors on a sphere of ``radius`` with ``density`` points per unit area."""

    numpoints = int(round(4 * np.pi * radius**2 * density))
    if numpoints == 0:
        return np.zeros((1, 3))
    return radius * spherical_points_fibonacci(numpoints)


def powder_average(
    sc: Any,
    radii,
    formula: IntensityFormula,
    density: float,
    **kwargs,
) -> np.ndarray:
    """Spherically averaged intensities.

    Parameters
    ----------
    radii:
        Shell radii ``|k|`` in absolute units.
    density:
        Sample points per unit area of each shell.
    kwargs:
        Forwarded to :func:`intensities_interpolated`.

    Returns
    -------
    np.ndarray
        Shape ``(len(radii), nw)``.
    """

    kwargs["units"] = "absolute"
    out = []
    for radius in np.atleast_1d(radii):
        ks = spherical_shell(float(radius), density)
        vals = intensities_interpolated(sc, ks, formula, **kwargs)
        out.append(vals.mean(axis=0))
    return np.stack(out)


__all__ = [
    "available_energies",
    "available_wave_vectors",
    "broaden_energy",
    "classical_to_quantum",
    "instant_intensities_interpolated",
    "integrated_lorentzian",
    "intensities_interpolated",
    "lorentzian",
    "powder_average",
    "spherical_points_fibonacci",
    "spherical_shell",
]

"""Histogram binning of exact-grid intensities.

Experimental inelastic scattering data is usually reduced onto a 4-D
parallelepiped histogram in ``(q, w)``. :class:`BinningParameters` describes
such a histogram and :func:`intensities_binned` aggregates the intensities of
every exact scattering vector of an accumulator into it, so that simulated and
measured data can be compared bin by bin.

The histogram axes are the rows of ``covectors`` applied to ``(q, w)``, with
``q`` in reciprocal lattice units. With the default identity ``covectors`` the
axes are ``(qx, qy, qz, w)``.

Binning convention:

- the left edge of the first bin is ``binstart``,
- every bin has width ``binwidth``,
- the last bin contains ``binend`` (there are no partial bins, so the last
  bin may reach beyond ``binend``).

A value is binned by

    coords = covectors @ value
    bin_ix = floor((coords - binstart) / binwidth)
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Sequence

import numpy as np

from sqwpy.errors import ConfigurationError
from sqwpy.formula import IntensityFormula
from sqwpy.parameters import Lattice

log = logging.getLogger(__name__)


def count_bins(binstart, binend, binwidth) -> np.ndarray:
    """Number of bins implied by ``binstart``, ``binend`` and ``binwidth``.

    This defines how partial bins are handled; prefer it over counting bins
    by hand.
    """

    return np.ceil(
        (np.asarray(binend, dtype=float) - np.asarray(binstart, dtype=float))
        / np.asarray(binwidth, dtype=float)
    ).astype(int)


class BinningParameters:
    """Parameters of a 4-D ``(q, w)`` histogram.

    Args:
        binstart (Sequence[float]): Left edge of the first bin along each axis.
        binend (Sequence[float]): A value contained in the last bin along each axis.
        binwidth (Sequence[float]): Bin widths.
        covectors (np.ndarray): 4x4 matrix mapping ``(q, w)`` to histogram coordinates.
    """

    def __init__(self, binstart, binend, binwidth, covectors=None):
        self.binstart = np.array(binstart, dtype=float).reshape(4)
        self.binend = np.array(binend, dtype=float).reshape(4)
        self.binwidth = np.array(binwidth, dtype=float).reshape(4)
        self.covectors = (
            np.eye(4) if covectors is None else np.array(covectors, dtype=float).reshape(4, 4)
        )

    @classmethod
    def from_numbins(cls, binstart, binend, numbins, covectors=None) -> "BinningParameters":
        """Build parameters with a given number of bins per axis."""

        params = cls(binstart, binend, np.zeros(4), covectors)
        params.numbins = numbins
        return params

    @property
    def numbins(self) -> np.ndarray:
        return count_bins(self.binstart, self.binend, self.binwidth)

    @numbins.setter
    def numbins(self, numbins):
        # Ensure that the last bin contains binend
        numbins = np.asarray(numbins, dtype=float).reshape(4)
        if np.any(numbins < 1):
            raise ConfigurationError(f"Every axis needs at least one bin, got {numbins}")
        self.binwidth = (self.binend - self.binstart) / (numbins - 0.5)

    def copy(self) -> "BinningParameters":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        names = ["x", "y", "z", "E"]
        first_edges = [edges[0] for edges in axes_binedges(self)]
        last_edges = [edges[-1] for edges in axes_binedges(self)]
        lines = ["BinningParameters"]
        for k, nbin in enumerate(self.numbins):
            head = "Integrated" if nbin == 1 else f"{nbin:5d} bins"
            along = " ".join(
                f"{self.covectors[k, j]:+.2f} d{names[j]}"
                for j in range(4)
                if self.covectors[k, j] != 0
            )
            delta = self.binwidth[k] / np.linalg.norm(self.covectors[k])
            lines.append(
                f"  {head} from {first_edges[k]:+.3f} to {last_edges[k]:+.3f} "
                f"along [{along}] (step = {delta:.3f})"
            )
        return "\n".join(lines)


def integrate_axes(params: BinningParameters, axes: int | Sequence[int]) -> BinningParameters:
    """Integrate over one or more histogram axes by giving them a single bin."""

    for k in np.atleast_1d(axes):
        k = int(k)
        extent = params.binend[k] - params.binstart[k]
        if extent <= 0:
            params.binstart[k] = params.binend[k] - 0.5
            extent = 0.5
        # A single bin of width 2 * extent still contains binend
        params.binwidth[k] = 2 * extent
    return params


def axes_bincenters(params: BinningParameters) -> list[np.ndarray]:
    """Bin centers along each histogram axis."""

    centers = []
    for k in range(4):
        nbin = count_bins(params.binstart[k], params.binend[k], params.binwidth[k])
        first = params.binstart[k] + params.binwidth[k] / 2
        centers.append(first + params.binwidth[k] * np.arange(nbin))
    return centers


def axes_binedges(params: BinningParameters) -> list[np.ndarray]:
    """Bin edges along each histogram axis (``numbins + 1`` per axis)."""

    edges = []
    for k in range(4):
        nbin = count_bins(params.binstart[k], params.binend[k], params.binwidth[k])
        edges.append(params.binstart[k] + params.binwidth[k] * np.arange(nbin + 1))
    return edges


def binning_parameters_aabb(params: BinningParameters) -> tuple[np.ndarray, np.ndarray]:
    """Axis-aligned bounding box in ``q`` (RLU) containing the histogram."""

    edges = axes_binedges(params)
    bounds = np.array([[e[0], e[-1]] for e in edges])
    corners = np.array(
        [[bounds[k, (j >> k) & 1] for k in range(4)] for j in range(16)]
    )
    q_corners = np.linalg.solve(params.covectors, corners.T).T
    return q_corners[:, :3].min(axis=0), q_corners[:, :3].max(axis=0)


def _recipvecs(reciprocal: Any) -> np.ndarray:
    if isinstance(reciprocal, Lattice):
        return reciprocal.recipvecs
    return np.asarray(reciprocal, dtype=float).reshape(3, 3)


def bin_rlu_as_absolute_units(params: BinningParameters, reciprocal: Any) -> BinningParameters:
    """Make parameters that bin absolute ``(k, w)`` accept ``(q, w)`` in RLU instead.

    ``reciprocal`` is a 3x3 matrix of reciprocal lattice vectors (columns) or
    a :class:`~sqwpy.parameters.Lattice`. ``params`` is modified in place.
    """

    # covectorsQ q = covectorsK recipvecs q = covectorsK k
    block = np.eye(4)
    block[:3, :3] = _recipvecs(reciprocal)
    params.covectors = params.covectors @ block
    return params


def bin_absolute_units_as_rlu(params: BinningParameters, reciprocal: Any) -> BinningParameters:
    """Inverse of :func:`bin_rlu_as_absolute_units`. ``params`` is modified in place."""

    block = np.eye(4)
    block[:3, :3] = np.linalg.inv(_recipvecs(reciprocal))
    params.covectors = params.covectors @ block
    return params


def axis_binning_parameters(bincenters) -> tuple[float, float, float]:
    """``(binstart, binend, binwidth)`` for one axis given its bin centers."""

    bincenters = np.asarray(bincenters, dtype=float)
    if bincenters.size == 1:
        raise ConfigurationError("Can not infer bin width given only one bin center")
    if not np.all(np.abs(np.diff(np.diff(np.sort(bincenters)))) < 1e-12):
        log.warning("Non-uniform bins will be re-spaced into uniform bins")
    width = (bincenters.max() - bincenters.min()) / (bincenters.size - 1)
    return bincenters.min() - width / 2, bincenters.max(), width


def grid_binning_parameters(energies, latsize) -> BinningParameters:
    """One bin centered on each exact ``(q, w)`` of a ``latsize`` grid."""

    energies = np.asarray(energies, dtype=float)
    numbins = np.array([*latsize, energies.size])
    max_q = 1 - 1 / numbins[:3]

    min_val = np.array([0.0, 0.0, 0.0, energies.min()])
    max_val = np.array([*max_q, energies.max()])
    with np.errstate(divide="ignore", invalid="ignore"):
        binwidth = (max_val - min_val) / (numbins - 1)
    binstart = min_val - binwidth / 2
    binend = max_val.copy()

    # Axes with a single bin
    single = numbins == 1
    binwidth[single] = 1.0
    binstart[single] = min_val[single] - 0.5
    binend[single] = min_val[single]

    return BinningParameters(binstart, binend, binwidth)


def _energies_including_zero(sc: Any, negative_energies: bool = False) -> np.ndarray:
    ws = sc.parameters.energies(negative_energies)
    return np.array([0.0]) if sc.parameters.is_static else ws


def unit_resolution_binning_parameters(sc: Any, negative_energies: bool = False) -> BinningParameters:
    """Finest binning of ``sc``: one bin centered at each available ``(q, w)``."""

    return grid_binning_parameters(_energies_including_zero(sc, negative_energies), sc.latsize)


def slice_2D_binning_parameters(
    energies,
    cut_from_q,
    cut_to_q,
    cut_bins: int,
    cut_width: float,
    *,
    plane_normal=(0.0, 0.0, 1.0),
    cut_height: float | None = None,
) -> BinningParameters:
    """Histogram along a straight cut through ``q`` space.

    The four axes are: progress along the cut, the two transverse directions
    (integrated over ``cut_width`` and ``cut_height``), and energy. The
    transverse covectors are

        cut = normalize(cut_to_q - cut_from_q)
        transverse = normalize(plane_normal x cut)
        cotransverse = normalize(transverse x cut)
    """

    cut_height = cut_width if cut_height is None else cut_height
    cut_from_q = np.asarray(cut_from_q, dtype=float)
    cut_to_q = np.asarray(cut_to_q, dtype=float)

    cut_covector = cut_to_q - cut_from_q
    cut_covector = cut_covector / np.linalg.norm(cut_covector)
    transverse = np.cross(np.asarray(plane_normal, dtype=float), cut_covector)
    if np.linalg.norm(transverse) < 1e-12:
        raise ConfigurationError("plane_normal must not be parallel to the cut")
    transverse = transverse / np.linalg.norm(transverse)
    cotransverse = np.cross(transverse, cut_covector)
    cotransverse = cotransverse / np.linalg.norm(cotransverse)

    start_x = cut_covector @ cut_from_q
    end_x = cut_covector @ cut_to_q
    transverse_center = transverse @ cut_from_q
    cotransverse_center = cotransverse @ cut_from_q

    wstart, wend, _ = axis_binning_parameters(energies)
    xstart, xend, _ = axis_binning_parameters(np.linspace(start_x, end_x, cut_bins))

    binstart = [
        xstart,
        transverse_center - cut_width / 2,
        cotransverse_center - cut_height / 2,
        wstart,
    ]
    binend = [xend, transverse_center, cotransverse_center, wend]
    numbins = [cut_bins, 1, 1, np.size(energies)]
    covectors = np.zeros((4, 4))
    covectors[0, :3] = cut_covector
    covectors[1, :3] = transverse
    covectors[2, :3] = cotransverse
    covectors[3, 3] = 1.0

    return BinningParameters.from_numbins(binstart, binend, numbins, covectors)


def q_space_path_bins(energies, qs, density: float, cut_width: float, **kwargs):
    """Histograms whose first axis traces a path through the points ``qs`` (RLU).

    Parameters
    ----------
    energies:
        Energy bin centers.
    qs:
        Path vertices in RLU.
    density:
        Bins per reciprocal lattice unit along the path.
    cut_width:
        Transverse integration width, see :func:`slice_2D_binning_parameters`.

    Returns
    -------
    tuple
        ``(params, markers, ranges)``: one :class:`BinningParameters` per
        segment, the concatenated bin index of every vertex, and the
        concatenated bin ranges of every segment.
    """

    qs = [np.asarray(q, dtype=float) for q in qs]
    params, markers, ranges = [], [0], []
    total = 0
    for start, end in zip(qs[:-1], qs[1:]):
        nbins = int(round(density * np.linalg.norm(end - start)))
        if nbins < 2:
            raise ConfigurationError(
                f"Path segment {start} -> {end} is too short for density {density}"
            )
        params.append(slice_2D_binning_parameters(energies, start, end, nbins, cut_width, **kwargs))
        ranges.append(range(total, total + nbins))
        total += nbins
        markers.append(total)
    return params, markers, ranges


def _bin_cells(sc: Any, params: BinningParameters) -> np.ndarray:
    """Integer grid coordinates of every scattering vector inside the histogram's bounding box."""

    L = np.asarray(sc.latsize)
    lower, upper = binning_parameters_aabb(params)
    lower_cell = np.floor(lower * L).astype(int)
    upper_cell = np.ceil(upper * L).astype(int)
    axes = [np.arange(lo, hi + 1) for lo, hi in zip(lower_cell, upper_cell)]
    return np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1).reshape(-1, 3)


def intensities_binned(
    sc: Any,
    params: BinningParameters,
    formula: IntensityFormula,
    *,
    integrated_kernel: Callable | None = None,
    negative_energies: bool = False,
) -> tuple[np.ndarray, np.ndarray]:
    """Aggregate exact-grid intensities into a histogram.

    Parameters
    ----------
    sc:
        Accumulator.
    params:
        Histogram description.
    formula:
        Scalar-valued intensity formula (not ``"full"``).
    integrated_kernel:
        Cumulative energy broadening kernel ``K`` (e.g.
        :func:`sqwpy.retrieval.integrated_lorentzian`). Each scattering vector
        then contributes ``K(b - w) - K(a - w)`` of its intensity to the
        energy bin ``[a, b]``.
    negative_energies:
        Also bin the negative energies of the grid.

    Returns
    -------
    tuple of np.ndarray
        Summed intensities and the (fractional) number of scattering vectors
        per bin, both shaped ``params.numbins``. Divide them to obtain the
        mean intensity per bin.
    """

    if formula.sc is not sc:
        raise ConfigurationError("The intensity formula was built for a different accumulator")

    numbins = params.numbins
    L = np.asarray(sc.latsize)
    ws = _energies_including_zero(sc, negative_energies)
    ix_w = np.arange(ws.size)

    cells = _bin_cells(sc, params)
    q = cells / L
    vals = np.asarray(formula(sc.lattice.to_absolute(q), np.mod(cells, L), ix_w))
    if vals.ndim != 2:
        raise ConfigurationError("Binning needs a scalar-valued intensity formula")

    output = np.zeros(numbins, dtype=vals.dtype)
    counts = np.zeros(numbins, dtype=float)

    coords = (q @ params.covectors[:, :3].T)[:, None, :] + ws[None, :, None] * params.covectors[:, 3]
    bins = np.floor((coords - params.binstart) / params.binwidth).astype(int)

    if integrated_kernel is None:
        inside = np.all((bins >= 0) & (bins < numbins), axis=-1)
        index = tuple(bins[inside].T)
        np.add.at(output, index, vals[inside])
        np.add.at(counts, index, 1.0)
        return output, counts

    # Energy broadening into bins: only the momentum axes select the bin
    inside = np.all((bins[..., :3] >= 0) & (bins[..., :3] < numbins[:3]), axis=-1)
    energy = coords[..., 3][inside]
    qbins = bins[..., :3][inside]
    source = vals[inside]
    for wbin in range(numbins[3]):
        a = params.binstart[3] + wbin * params.binwidth[3]
        b = a + params.binwidth[3]
        fraction = integrated_kernel(b - energy) - integrated_kernel(a - energy)
        index = tuple(qbins.T) + (np.full(len(qbins), wbin),)
        np.add.at(output, index, fraction * source)
        np.add.at(counts, index, fraction)
    return output, counts


def powder_averaged_bins(
    sc: Any,
    radial_binning_parameters: tuple[float, float, float],
    formula: IntensityFormula,
    *,
    w_binning_parameters: tuple[float, float, float] | None = None,
    integrated_kernel: Callable | None = None,
    bzsize: tuple[int, int, int] | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Bin exact-grid intensities by ``|k|`` (absolute units) and energy.

    Parameters
    ----------
    radial_binning_parameters:
        ``(start, end, width)`` of the radial axis.
    w_binning_parameters:
        ``(start, end, width)`` of the energy axis. Defaults to unit resolution
        on the non-negative energies.
    integrated_kernel:
        Cumulative energy broadening kernel, as in :func:`intensities_binned`.
    bzsize:
        Number of Brillouin zones to cover in each direction. Defaults to
        enough zones to contain the largest radius.

    Returns
    -------
    tuple of np.ndarray
        Summed intensities and counts, shape ``(n_radial, n_energy)``.
    """

    ws = _energies_including_zero(sc)
    if w_binning_parameters is None:
        if ws.size == 1:
            w_binning_parameters = (ws[0] - 0.5, ws[0], 1.0)
        else:
            w_binning_parameters = axis_binning_parameters(ws)
    wstart, wend, wwidth = w_binning_parameters
    rstart, rend, rwidth = radial_binning_parameters
    nw_bins = int(count_bins(wstart, wend, wwidth))
    nr_bins = int(count_bins(rstart, rend, rwidth))

    L = np.asarray(sc.latsize)
    recip = sc.lattice.recipvecs
    if bzsize is None:
        shortest = np.min(np.linalg.norm(recip, axis=0))
        bzsize = (int(np.ceil(rend / shortest)),) * 3
    n = L * np.asarray(bzsize, dtype=int)
    axes = [np.arange(-n[a], n[a]) for a in range(3)]
    cells = np.stack(np.meshgrid(*axes, indexing="ij"), axis=-1).reshape(-1, 3)

    k = sc.lattice.to_absolute(cells / L)
    rbin = np.floor((np.linalg.norm(k, axis=-1) - rstart) / rwidth).astype(int)
    keep = (rbin >= 0) & (rbin < nr_bins)
    cells, k, rbin = cells[keep], k[keep], rbin[keep]

    vals = np.asarray(formula(k, np.mod(cells, L), np.arange(ws.size)))
    if vals.ndim != 2:
        raise ConfigurationError("Binning needs a scalar-valued intensity formula")

    output = np.zeros((nr_bins, nw_bins), dtype=vals.dtype)
    counts = np.zeros((nr_bins, nw_bins), dtype=float)

    if integrated_kernel is None:
        wbin = np.floor((ws - wstart) / wwidth).astype(int)
        for iw, b in enumerate(wbin):
            if 0 <= b < nw_bins:
                np.add.at(output[:, b], rbin, vals[:, iw])
                np.add.at(counts[:, b], rbin, 1.0)
        return output, counts

    for iw, w in enumerate(ws):
        for b in range(nw_bins):
            a_edge = wstart + b * wwidth
            b_edge = a_edge + wwidth
            fraction = integrated_kernel(b_edge - w) - integrated_kernel(a_edge - w)
            np.add.at(output[:, b], rbin, fraction * vals[:, iw])
            np.add.at(counts[:, b], rbin, fraction)
    return output, counts

"""Sampled correlation accumulator.

This module defines :class:`~sqwpy.correlations.SampledCorrelations`, which
owns the running statistics of the dynamical structure factor

    S^{ab}_{ij}(q, w) = < X_{a,i}(q, w) conj(X_{b,j}(q, w)) >

over independent thermalized samples, where ``X`` is the space-time Fourier
transform of the observable ``a`` (or ``b``) measured on sublattice ``i``
(or ``j``).

Only canonical channel pairs ``(a, b)`` with ``a <= b`` are stored. The pair
``(b, a)`` follows from Hermitian symmetry,
``S^{ba}_{ji}(q, w) = conj(S^{ab}_{ij}(q, w))``.

An accumulator is a single-writer object: calls to :meth:`add_sample`,
:meth:`accumulate` and :meth:`merge` must be serialized by the caller.
Queries never mutate it.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Iterable

import numpy as np

from sqwpy.env import default_backend, normalize_accumulation_backend
from sqwpy.errors import ConfigurationError, CorrelationNotFound, ShapeMismatch
from sqwpy.kernels import KERNELS, pooled_statistics
from sqwpy.parameters import Lattice, SamplingParameters
from sqwpy.trajectory import Observables, trajectory_into
from sqwpy.transform import FourierPlan, processing_hook, subtract_mean, symmetrize


class SampledCorrelations:
    """Running mean (and variance) of sampled space-time correlations.

    Parameters
    ----------
    parameters
        Momentum/frequency grid. Fixed for the lifetime of the accumulator.
    lattice
        Lattice vectors and sublattice positions. Defaults to a simple cubic
        lattice with one sublattice.
    observables
        Observables to measure, see :class:`sqwpy.trajectory.Observables`.
    correlations
        Channel pairs to record, given by name or by index. Defaults to every
        pair.
    calculate_variance
        Track the running variance next to the running mean.
    process_trajectory
        ``"none"``, ``"symmetrize"`` or ``"subtract_mean"``; applied to every
        trajectory before the transform.
    apply_g
        Multiply dipoles by the sublattice g-tensors before measuring.
    backend
        Accumulation kernel, ``"numba"`` or ``"numpy"``. Defaults to
        ``SQWPY_ACCUM_BACKEND``.

    Attributes
    ----------
    data
        Complex running mean, shape ``(ncorr, natoms, natoms, L1, L2, L3, n_t)``.
    samplebuf
        Sample buffer, shape ``(nobs, L1, L2, L3, natoms, n_t)``.
    nsamples
        Number of accumulated samples.
    correlations
        Mapping from canonical channel-index pair to correlation index.
    """

    data: np.ndarray
    _variance: np.ndarray | None
    samplebuf: np.ndarray
    nsamples: int

    def __init__(
        self,
        parameters: SamplingParameters,
        lattice: Lattice | None = None,
        observables: Any = None,
        correlations: Iterable[tuple] | None = None,
        calculate_variance: bool = False,
        process_trajectory: str | None = "none",
        apply_g: bool = True,
        backend: str | None = None,
    ):
        self.parameters = parameters
        self.lattice = Lattice() if lattice is None else lattice
        self.observables = (
            observables if isinstance(observables, Observables) else Observables(observables)
        )
        self.process_trajectory = "none" if process_trajectory is None else str(process_trajectory)
        self._processtraj = processing_hook(self.process_trajectory)
        self.apply_g = bool(apply_g)
        if backend is None:
            self.backend = default_backend()
        elif str(backend).strip().lower() in KERNELS:
            self.backend = normalize_accumulation_backend(backend)
        else:
            raise ConfigurationError(
                f"Unsupported accumulation backend: {backend!r}. Expected one of {set(KERNELS)}."
            )

        self.log = logging.getLogger(self.__class__.__module__)

        self.correlations = self.__register_correlations(correlations)
        self.nsamples = 0
        self.__allocate(calculate_variance)

        self.log.info(
            "Created %s accumulator: %d observables, %d correlations, latsize=%s, natoms=%d, n_t=%d%s",
            "static" if self.parameters.is_static else "dynamic",
            len(self.observables),
            len(self.correlations),
            self.parameters.latsize,
            self.natoms,
            self.parameters.n_t,
            ", tracking variance" if calculate_variance else "",
        )

    def __register_correlations(self, correlations) -> dict[tuple[int, int], int]:
        """Build the canonical ``(a, b) -> index`` registry."""

        nobs = len(self.observables)
        if correlations is None:
            correlations = [(a, b) for a in range(nobs) for b in range(nobs)]

        registry: dict[tuple[int, int], int] = {}
        for pair in correlations:
            if len(pair) != 2:
                raise ConfigurationError(f"Correlations are pairs of channels, got {pair!r}")
            a, b = (self.__channel_index(p) for p in pair)
            key = (min(a, b), max(a, b))
            if key not in registry:
                registry[key] = len(registry)
        if not registry:
            raise ConfigurationError("At least one correlation must be recorded")
        return registry

    def __channel_index(self, channel) -> int:
        if isinstance(channel, (int, np.integer)):
            if not 0 <= channel < len(self.observables):
                raise CorrelationNotFound(f"Channel index {channel} out of range")
            return int(channel)
        try:
            return self.observables.index[channel]
        except KeyError:
            raise CorrelationNotFound(
                f"Unknown observable {channel!r}; defined observables are {self.observables.names}"
            ) from None

    def __allocate(self, calculate_variance: bool):
        L1, L2, L3 = self.parameters.latsize
        n_t = self.parameters.n_t
        natoms = self.natoms
        ncorr = len(self.correlations)

        self.samplebuf = np.zeros((len(self.observables), L1, L2, L3, natoms, n_t), dtype=complex)
        self.data = np.zeros((ncorr, natoms, natoms, L1, L2, L3, n_t), dtype=complex)
        self._variance = np.zeros(self.data.shape, dtype=float) if calculate_variance else None
        self.fft = FourierPlan(self.samplebuf.shape)
        self._pairs = np.array(
            sorted(self.correlations, key=self.correlations.get), dtype=np.int64
        ).reshape(-1, 2)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def natoms(self) -> int:
        return self.lattice.natoms

    @property
    def latsize(self) -> tuple[int, int, int]:
        return self.parameters.latsize

    @property
    def dw(self) -> float:
        return self.parameters.dw

    @property
    def calculate_variance(self) -> bool:
        return self._variance is not None

    @property
    def variance(self) -> np.ndarray:
        """Running variance (second moment over ``nsamples``)."""

        if self._variance is None:
            raise ConfigurationError(
                "Variance was not tracked; construct the accumulator with calculate_variance=True"
            )
        return self._variance

    def estimated_variance(self, unbiased: bool = True) -> np.ndarray:
        """Variance estimate of the per-sample correlations.

        Parameters
        ----------
        unbiased
            Apply Bessel's correction ``n / (n - 1)``. Returns ``NaN`` entries
            while fewer than two samples were accumulated.
        """

        variance = self.variance
        n = self.nsamples
        if not unbiased:
            return variance.copy()
        if n < 2:
            return np.full_like(variance, np.nan)
        return variance * (n / (n - 1))

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def symmetrize(self) -> None:
        """Symmetrize the raw sample buffer in time."""

        symmetrize(self.samplebuf)

    def subtract_mean(self) -> None:
        """Remove the time average from the raw sample buffer."""

        subtract_mean(self.samplebuf)

    def new_sample(self, system: Any, integrator: Any) -> None:
        """Generate a trajectory from ``system`` into :attr:`samplebuf`.

        ``system`` is evolved in place.
        """

        expected = (*self.latsize, self.natoms, 3)
        if tuple(np.shape(system.dipoles)) != expected:
            raise ShapeMismatch(
                f"System dipoles of shape {np.shape(system.dipoles)} not compatible "
                f"with accumulator expecting {expected}"
            )
        trajectory_into(
            self.samplebuf,
            system,
            integrator,
            self.observables,
            measperiod=self.parameters.measperiod,
            apply_g=self.apply_g,
        )
        if self._processtraj is not None:
            self._processtraj(self.samplebuf)

    def add_sample(self, system: Any, integrator: Any = None) -> None:
        """Generate a trajectory from ``system`` and accumulate it.

        For static accumulators no integrator is required. For dynamical
        accumulators the state of ``system`` changes; copy it first to keep
        the initial configuration.
        """

        if integrator is None:
            if not self.parameters.is_static:
                raise ConfigurationError("Dynamical correlations require an integrator")
            integrator = _no_step
        self.new_sample(system, integrator)
        self.accumulate()

    def accumulate(self, buffer: np.ndarray | None = None) -> None:
        """Transform a raw sample buffer and fold it into the running statistics.

        Parameters
        ----------
        buffer
            Raw (untransformed) sample of shape ``(nobs, L1, L2, L3, natoms, n_t)``.
            It is copied into :attr:`samplebuf` and the configured trajectory
            processing is applied. When omitted, the current contents of
            :attr:`samplebuf` are used as they are.
        """

        if buffer is not None:
            buffer = np.asarray(buffer)
            self.fft.check(buffer)
            self.samplebuf[...] = buffer
            if self._processtraj is not None:
                self._processtraj(self.samplebuf)

        self.fft(self.samplebuf)
        self.nsamples += 1
        KERNELS[self.backend](self.data, self._variance, self.samplebuf, self._pairs, self.nsamples)
        self.log.debug("Accumulated sample %d", self.nsamples)

    def merge(self, *others: "SampledCorrelations") -> None:
        """Pool the samples of ``others`` into this accumulator.

        Means and variances are combined with count-weighted pooling. All
        accumulators must share the grid, lattice size, observables and
        correlation registry.
        """

        for other in others:
            self.__check_compatible(other)
            if self._variance is not None and other._variance is None:
                raise ConfigurationError(
                    "Cannot merge an accumulator without variance into one that tracks variance"
                )

            n_a, n_b = self.nsamples, other.nsamples
            mean, variance = pooled_statistics(
                self.data, self._variance, n_a, other.data, other._variance, n_b
            )
            self.data[...] = mean
            if self._variance is not None:
                self._variance[...] = variance
            self.nsamples = n_a + n_b
            self.log.info("Merged %d samples into %d (total %d)", n_b, n_a, self.nsamples)

    def __check_compatible(self, other: "SampledCorrelations") -> None:
        if self.parameters != other.parameters:
            raise ConfigurationError(
                f"Cannot merge accumulators on different grids: {self.parameters} vs {other.parameters}"
            )
        if self.observables.names != other.observables.names:
            raise ConfigurationError("Cannot merge accumulators with different observables")
        if self.correlations != other.correlations:
            raise ConfigurationError("Cannot merge accumulators with different correlations")
        if self.data.shape != other.data.shape:
            raise ConfigurationError("Cannot merge accumulators with different sublattices")

    def copy(self) -> "SampledCorrelations":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Correlation lookup
    # ------------------------------------------------------------------

    def lookup_correlations(self, pairs: Iterable[tuple]) -> list[tuple[int, bool]]:
        """Resolve channel pairs to stored correlations.

        Parameters
        ----------
        pairs
            Channel pairs given by observable name or channel index.

        Returns
        -------
        list of (int, bool)
            Correlation index and whether the stored pair is the swapped
            ``(b, a)`` of the request.

        Raises
        ------
        CorrelationNotFound
            If a channel is unknown or the pair was not recorded.
        """

        out = []
        for pair in pairs:
            a, b = (self.__channel_index(p) for p in pair)
            key = (min(a, b), max(a, b))
            if key not in self.correlations:
                raise CorrelationNotFound(
                    f"Missing correlation {tuple(pair)}; recorded pairs are {self.correlation_names()}"
                )
            out.append((self.correlations[key], a > b))
        return out

    def correlation_names(self) -> list[tuple[str, str]]:
        names = self.observables.names
        return [(names[a], names[b]) for (a, b) in sorted(self.correlations, key=self.correlations.get)]

    def correlation_slice(self, pair: tuple, variance: bool = False) -> np.ndarray:
        """Full correlation tensor of ``pair``.

        Returns
        -------
        np.ndarray
            Shape ``(natoms, natoms, L1, L2, L3, n_t)``. Requests in swapped
            channel order are served by Hermitian conjugation with transposed
            sublattice indices.
        """

        ((c, swapped),) = self.lookup_correlations([pair])
        buf = self.variance if variance else self.data
        out = buf[c]
        if swapped:
            out = np.swapaxes(out, 0, 1)
            out = out if variance else np.conj(out)
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, filename: str | Path) -> None:
        """Write a checkpoint, see :class:`sqwpy.checkpoint.Checkpoint`."""

        from sqwpy.checkpoint import Checkpoint

        Checkpoint.from_correlations(self).save(filename)
        self.log.info("Saved %d samples to %s", self.nsamples, filename)

    @classmethod
    def load(cls, filename: str | Path, **kwargs) -> "SampledCorrelations":
        """Restore an accumulator from a checkpoint written by :meth:`save`."""

        from sqwpy.checkpoint import Checkpoint

        return Checkpoint.load(filename).to_correlations(**kwargs)

    def __repr__(self) -> str:
        kind = "S(q)" if self.parameters.is_static else f"S(q,w) | nw = {self.parameters.nw}"
        plural = "s" if self.nsamples != 1 else ""
        return (
            f"SampledCorrelations[{kind} | {self.nsamples} sample{plural}] "
            f"{len(self.correlations)} correlations on {self.latsize} lattice"
        )


def _no_step(system: Any) -> None:
    pass

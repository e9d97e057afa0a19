import logging

import numpy as np

from sqwpy.errors import ConfigurationError


class Lattice:
    """
    Class representing the periodic lattice the observables live on.

    Args:
        latvecs (np.ndarray): 3x3 matrix whose columns are the lattice vectors.
        positions (np.ndarray): Fractional sublattice positions, shape (natoms, 3).
    """

    def __init__(
        self,
        latvecs: np.ndarray | None = None,
        positions: np.ndarray | None = None,
    ):
        self.latvecs = np.eye(3) if latvecs is None else np.asarray(latvecs, dtype=float)
        self.positions = (
            np.zeros((1, 3))
            if positions is None
            else np.atleast_2d(np.asarray(positions, dtype=float))
        )

        if self.latvecs.shape != (3, 3):
            raise ConfigurationError(
                f"Lattice vectors must form a 3x3 matrix, got shape {self.latvecs.shape}"
            )
        if abs(np.linalg.det(self.latvecs)) < 1e-12:
            raise ConfigurationError("Lattice vectors are linearly dependent")
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise ConfigurationError(
                f"Sublattice positions must have shape (natoms, 3), got {self.positions.shape}"
            )

        self.__compute_recipvecs()

    def __compute_recipvecs(self):
        """
        Compute the reciprocal lattice vectors.

        The columns of ``recipvecs`` satisfy ``a_i . b_j = 2 pi delta_ij``, so a
        wave vector ``q`` given in reciprocal lattice units maps to the absolute
        wave vector ``recipvecs @ q``.
        """
        self.recipvecs = 2 * np.pi * np.linalg.inv(self.latvecs).T

    @property
    def natoms(self) -> int:
        return self.positions.shape[0]

    def cartesian_positions(self) -> np.ndarray:
        """Sublattice positions in absolute units, shape (natoms, 3)."""
        return self.positions @ self.latvecs.T

    def to_absolute(self, q: np.ndarray) -> np.ndarray:
        """Convert wave vectors from reciprocal lattice units to absolute units."""
        return np.asarray(q, dtype=float) @ self.recipvecs.T

    def to_rlu(self, k: np.ndarray) -> np.ndarray:
        """Convert absolute wave vectors to reciprocal lattice units."""
        return np.asarray(k, dtype=float) @ np.linalg.inv(self.recipvecs).T


class SamplingParameters:
    """
    Class representing the momentum/frequency grid of an accumulator.

    The grid is fixed at construction and never resized afterwards.

    Args:
        latsize (tuple[int, int, int]): Number of unit cells along each lattice vector.
        dt (float): Integrator time step.
        nw (int): Number of non-negative energies to resolve.
        wmax (float): Maximum energy to resolve. Must be below ``pi / dt``.

    Attributes:
        measperiod (int): Integrator steps between two saved snapshots.
        n_t (int): Number of snapshots per trajectory, ``2 * nw - 1``.
        dw (float): Energy spacing. ``NaN`` for static-only grids.
    """

    def __init__(
        self,
        latsize: tuple[int, int, int],
        dt: float,
        nw: int,
        wmax: float,
    ):
        self.latsize = self.__check_latsize(latsize)
        self.dt = float(dt)
        self.nw = int(nw)
        self.wmax = float(wmax)
        self.log = logging.getLogger(self.__class__.__module__)

        self.__setup()

    @classmethod
    def instant(cls, latsize: tuple[int, int, int]) -> "SamplingParameters":
        """
        Grid for instantaneous (static-only) correlations.

        A single snapshot is stored per sample and there is no energy axis.
        """
        params = cls.__new__(cls)
        params.latsize = cls.__check_latsize(latsize)
        params.dt = np.nan
        params.nw = 1
        params.wmax = np.nan
        params.measperiod = 1
        params.n_t = 1
        params.dw = np.nan
        params.log = logging.getLogger(cls.__module__)
        return params

    @staticmethod
    def __check_latsize(latsize) -> tuple[int, int, int]:
        latsize = tuple(int(L) for L in latsize)
        if len(latsize) != 3 or any(L < 1 for L in latsize):
            raise ConfigurationError(
                f"latsize must hold three positive integers, got {latsize}"
            )
        return latsize

    def __setup(self):
        """
        Validates the dynamics parameters and derives the time/energy grid.
        """
        if not np.isfinite(self.dt) or self.dt <= 0:
            raise ConfigurationError(f"Time step dt must be positive, got {self.dt}")
        if self.nw < 2:
            raise ConfigurationError(
                f"nw must be at least 2 for dynamical correlations, got {self.nw}. "
                "Use SamplingParameters.instant for static correlations."
            )
        if not np.isfinite(self.wmax) or self.wmax <= 0:
            raise ConfigurationError(f"wmax must be positive, got {self.wmax}")
        if np.pi / self.dt <= self.wmax:
            raise ConfigurationError(
                f"Desired wmax={self.wmax} not possible with dt={self.dt}; "
                f"the largest resolvable energy is {np.pi / self.dt}. Choose a smaller dt."
            )

        self.__compute_measperiod()
        self.__compute_dw()
        self.log.debug(
            "Sampling grid: latsize=%s, n_t=%d, measperiod=%d, dw=%g",
            self.latsize,
            self.n_t,
            self.measperiod,
            self.dw,
        )

    def __compute_measperiod(self):
        """
        Number of integrator steps between snapshots, ``floor(pi / (dt * wmax))``.
        """
        self.measperiod = int(np.floor(np.pi / (self.dt * self.wmax)))
        self.n_t = 2 * self.nw - 1

    def __compute_dw(self):
        self.dw = 2 * np.pi / (self.dt * self.measperiod * self.n_t)

    @property
    def is_static(self) -> bool:
        """Whether the grid has no energy axis."""
        return bool(np.isnan(self.dw))

    @property
    def ncells(self) -> int:
        return int(np.prod(self.latsize))

    def energies(self, negative_energies: bool = False) -> np.ndarray:
        """
        Energies of the frequency grid.

        Args:
            negative_energies (bool): Return the full signed grid in FFT order
                (``0, dw, ..., (nw-1) dw, -(nw-1) dw, ..., -dw``). Otherwise
                only the ``nw`` non-negative energies are returned.

        Returns:
            np.ndarray: Energy values. ``[nan]`` for static-only grids.
        """
        if self.is_static:
            return np.array([np.nan])
        ws = np.fft.fftfreq(self.n_t, d=1 / (self.n_t * self.dw))
        return ws if negative_energies else ws[: self.nw]

    def as_dict(self) -> dict:
        return dict(
            latsize=list(self.latsize),
            dt=self.dt,
            nw=self.nw,
            wmax=self.wmax,
            static=self.is_static,
        )

    @classmethod
    def from_dict(cls, values: dict) -> "SamplingParameters":
        if values.get("static", False):
            return cls.instant(values["latsize"])
        return cls(values["latsize"], values["dt"], values["nw"], values["wmax"])

    def __eq__(self, other) -> bool:
        if not isinstance(other, SamplingParameters):
            return NotImplemented
        if self.latsize != other.latsize or self.is_static != other.is_static:
            return False
        if self.is_static:
            return True
        return (
            self.dt == other.dt
            and self.nw == other.nw
            and self.measperiod == other.measperiod
        )

    def __repr__(self) -> str:
        if self.is_static:
            return f"SamplingParameters.instant(latsize={self.latsize})"
        return (
            f"SamplingParameters(latsize={self.latsize}, dt={self.dt}, "
            f"nw={self.nw}, wmax={self.wmax})"
        )

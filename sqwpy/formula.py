"""Intensity formulas.

An :class:`IntensityFormula` is a read-only view over a
:class:`~sqwpy.correlations.SampledCorrelations` that turns the stored
correlations at a set of grid points into intensities. It combines

1. a phase-averaged sum over sublattice pairs, optionally weighted by magnetic
   form factors,
2. a channel contraction (:class:`Trace`, :class:`DipoleFactor`,
   :class:`FullTensor`, :class:`Element` or a :class:`Custom` function),
3. the classical-to-quantum temperature correction.

Every check (unknown correlations, invalid temperature, missing variance) runs
when the formula is built, so evaluating it never fails on valid grid indices.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from sqwpy.errors import ConfigurationError, InvalidTemperature

# ----------------------------------------------------------------------------
# Temperature correction
# ----------------------------------------------------------------------------


def check_temperature(kT: float | None) -> float:
    """Validate ``kT``; ``None`` means infinite temperature."""

    if kT is None:
        return np.inf
    kT = float(kT)
    if np.isnan(kT) or kT <= 0:
        raise InvalidTemperature(f"kT must be greater than zero, got {kT}")
    return kT


def classical_to_quantum(w, kT: float | None = np.inf):
    """Classical-to-quantum correction factor.

    Parameters
    ----------
    w:
        Energy or array of energies.
    kT:
        Temperature in energy units. ``inf`` (or ``None``) disables the
        correction.

    Returns
    -------
    float or np.ndarray
        ``w / (kT (1 - exp(-w/kT)))`` for ``w > 0``, ``1`` at ``w = 0`` and
        ``-w exp(w/kT) / (kT (1 - exp(w/kT)))`` for ``w < 0``. ``NaN``
        energies (static data) map to ``1``.
    """

    kT = check_temperature(kT)
    scalar = np.ndim(w) == 0
    w = np.asarray(w, dtype=float)
    out = np.ones_like(w)

    if kT != np.inf:
        pos = w > 0
        neg = w < 0
        wp = w[pos]
        wn = w[neg]
        out[pos] = wp / (kT * -np.expm1(-wp / kT))
        out[neg] = -wn * np.exp(wn / kT) / (kT * -np.expm1(wn / kT))

    return float(out) if scalar else out


# ----------------------------------------------------------------------------
# Form factors
# ----------------------------------------------------------------------------


@dataclass
class FormFactor:
    """Magnetic form factor in the Neutron Data Booklet parametrization.

    The first-order form factor is

        f(s) = <j0(s)> = A e^{-a s^2} + B e^{-b s^2} + C e^{-c s^2} + D

    with ``s = |k| / 4 pi``. When ``j2`` coefficients and a Landé ``g``
    factor are given, the second-order correction

        F(s) = (2 - g) / g <j2(s)> s^2 + f(s)

    is returned instead.

    Attributes
    ----------
    j0:
        Coefficients ``(A, a, B, b, C, c, D)`` of ``<j0>``.
    j2:
        Optional coefficients of ``<j2>``.
    g:
        Landé g-factor, required with ``j2``.
    """

    j0: Sequence[float]
    j2: Sequence[float] | None = None
    g: float | None = None

    def __post_init__(self):
        if len(self.j0) != 7:
            raise ConfigurationError("j0 form factor needs 7 coefficients (A, a, B, b, C, c, D)")
        if self.j2 is not None:
            if len(self.j2) != 7:
                raise ConfigurationError("j2 form factor needs 7 coefficients (A, a, B, b, C, c, D)")
            if self.g is None or self.g == 0:
                raise ConfigurationError(
                    "Second order form factor requires a non-vanishing Landé g-factor"
                )

    @staticmethod
    def _expand(coefficients, s2):
        A, a, B, b, C, c, D = coefficients
        return A * np.exp(-a * s2) + B * np.exp(-b * s2) + C * np.exp(-c * s2) + D

    def __call__(self, k_norm):
        s2 = (np.asarray(k_norm, dtype=float) / (4 * np.pi)) ** 2
        form = self._expand(self.j0, s2)
        if self.j2 is not None:
            form = ((2 - self.g) / self.g) * self._expand(self.j2, s2) * s2 + form
        return form


def prepare_form_factors(formfactors: Any, natoms: int) -> list[Callable] | None:
    """Normalize form factors to one callable of ``|k|`` per sublattice.

    A single callable is applied to every sublattice.
    """

    if formfactors is None:
        return None
    if callable(formfactors):
        return [formfactors] * natoms
    formfactors = list(formfactors)
    if len(formfactors) != natoms:
        raise ConfigurationError(
            f"Expected {natoms} form factors (one per sublattice), got {len(formfactors)}"
        )
    for ff in formfactors:
        if not callable(ff):
            raise ConfigurationError(f"Form factor {ff!r} is not callable")
    return formfactors


# ----------------------------------------------------------------------------
# Contractions
# ----------------------------------------------------------------------------


class Contraction:
    """Strategy reducing the correlation elements at each point to an intensity.

    Subclasses set :attr:`required` (the channel pairs they read, in the order
    they expect them) and implement :meth:`contract`.

    Attributes
    ----------
    required:
        Channel pairs, by name or channel index.
    dtype:
        Scalar type of the result.
    """

    required: list[tuple] = []
    dtype: type = float
    name: str = "contraction"

    def contract(
        self, elements: np.ndarray, k: np.ndarray, w: np.ndarray, errors: bool = False
    ) -> np.ndarray:  # pragma: no cover
        """Reduce ``elements`` of shape ``(n, nw, ncorr)`` to the intensity.

        Parameters
        ----------
        elements:
            Phase-averaged correlations (or their variances when ``errors``).
        k:
            Absolute wave vectors, shape ``(n, 3)``.
        w:
            Energies, shape ``(nw,)``.
        errors:
            Propagate variances instead of means.
        """

        raise NotImplementedError


class Trace(Contraction):
    """Sum of the auto-correlations of every channel."""

    name = "trace"

    def __init__(self, nobs: int):
        self.required = [(a, a) for a in range(nobs)]

    def contract(self, elements, k, w, errors=False):
        return np.real(elements.sum(axis=-1))


class DipoleFactor(Contraction):
    """Unpolarized neutron contraction ``sum_ab (delta_ab - k_a k_b / k^2) S^{ab}``.

    Uses the first three channels, which must be the Cartesian dipole
    components. At ``k = 0`` the projector reduces to the identity.
    """

    name = "perp"

    def __init__(self, nobs: int):
        if nobs < 3:
            raise ConfigurationError("The perpendicular contraction needs three dipole channels")
        self.required = [(a, b) for a in range(3) for b in range(3)]

    @staticmethod
    def polarization_matrix(k: np.ndarray) -> np.ndarray:
        """Projectors ``I - k k^T / |k|^2``, shape ``(n, 3, 3)``."""

        k = np.atleast_2d(np.asarray(k, dtype=float))
        norm = np.linalg.norm(k, axis=-1, keepdims=True)
        khat = np.divide(k, norm, out=np.zeros_like(k), where=norm > 0)
        return np.eye(3)[None, :, :] - khat[:, :, None] * khat[:, None, :]

    def contract(self, elements, k, w, errors=False):
        proj = self.polarization_matrix(k).reshape(-1, 1, 9)
        if errors:
            proj = proj**2
        return np.real(np.sum(proj * elements, axis=-1))


class FullTensor(Contraction):
    """Full complex ``nobs x nobs`` correlation matrix at every point."""

    name = "full"
    dtype = complex

    def __init__(self, nobs: int):
        self.nobs = nobs
        self.required = [(a, b) for a in range(nobs) for b in range(nobs)]

    def contract(self, elements, k, w, errors=False):
        return elements.reshape(*elements.shape[:-1], self.nobs, self.nobs)


class Element(Contraction):
    """A single correlation ``S^{ab}``."""

    dtype = complex

    def __init__(self, pair: tuple):
        self.required = [tuple(pair)]
        self.name = f"S{tuple(pair)}"

    def contract(self, elements, k, w, errors=False):
        return elements[..., 0]


class Custom(Contraction):
    """User-supplied contraction.

    Parameters
    ----------
    fn:
        With ``vectorized=True``: ``fn(k, w, correlations)`` with ``k`` of
        shape ``(n, 1, 3)``, ``w`` of shape ``(1, nw)`` and ``correlations`` of
        shape ``(n, nw, ncorr)``, returning shape ``(n, nw)``. Otherwise
        ``fn(k, w, correlations)`` is called per point with ``k`` of shape
        ``(3,)``, a scalar ``w`` and ``correlations`` of shape ``(ncorr,)``.
    required:
        Channel pairs passed to ``fn``, in order.
    dtype:
        Result type.
    """

    name = "custom"

    def __init__(
        self,
        fn: Callable,
        required: Sequence[tuple],
        dtype: type = float,
        vectorized: bool = True,
    ):
        if not required:
            raise ConfigurationError("A custom contraction must name the correlations it reads")
        self.fn = fn
        self.required = [tuple(pair) for pair in required]
        self.dtype = dtype
        self.vectorized = vectorized

    def contract(self, elements, k, w, errors=False):
        if self.vectorized:
            return np.asarray(self.fn(k[:, None, :], w[None, :], elements), dtype=self.dtype)

        n, nw = elements.shape[:2]
        out = np.empty((n, nw), dtype=self.dtype)
        for p in range(n):
            for iw in range(nw):
                out[p, iw] = self.fn(k[p], w[iw], elements[p, iw])
        return out


def make_contraction(contraction: Any, nobs: int, required: Sequence[tuple] | None = None) -> Contraction:
    """Build a contraction strategy from a mode name, pair, callable or instance."""

    if isinstance(contraction, Contraction):
        return contraction
    if isinstance(contraction, str):
        mode = contraction.lower()
        if mode == "trace":
            return Trace(nobs)
        if mode in {"perp", "perpendicular", "dipole"}:
            return DipoleFactor(nobs)
        if mode == "full":
            return FullTensor(nobs)
        raise ConfigurationError(
            f"Unknown contraction mode {contraction!r}. Expected 'trace', 'perp' or 'full'."
        )
    if isinstance(contraction, tuple) and len(contraction) == 2:
        return Element(contraction)
    if callable(contraction):
        if required is None:
            raise ConfigurationError("A custom contraction function requires `required` pairs")
        return Custom(contraction, required)
    raise ConfigurationError(f"Cannot build a contraction from {contraction!r}")


# ----------------------------------------------------------------------------
# Formula
# ----------------------------------------------------------------------------


@dataclass
class IntensityFormula:
    """Compiled intensity formula bound to one accumulator.

    Build it with :func:`intensity_formula`.
    """

    sc: Any
    contraction: Contraction
    kT: float = np.inf
    formfactors: list[Callable] | None = None
    calculate_errors: bool = False
    corr_ix: list[tuple[int, bool]] = field(default_factory=list)

    @property
    def dtype(self) -> type:
        return self.contraction.dtype

    def phase_averaged_elements(
        self, k: np.ndarray, ix_q: np.ndarray, ix_w: np.ndarray
    ) -> np.ndarray:
        """Sublattice-summed correlations at grid points.

        Parameters
        ----------
        k:
            Absolute wave vectors, shape ``(n, 3)``.
        ix_q:
            Wrapped grid indices, shape ``(n, 3)``.
        ix_w:
            Indices on the full time/energy axis, shape ``(nw,)``.

        Returns
        -------
        np.ndarray
            Shape ``(n, nw, ncorr)``; complex for means, real for variances.
        """

        sc = self.sc
        errors = self.calculate_errors
        buffer = sc.variance if errors else sc.data
        natoms = sc.natoms

        k = np.asarray(k, dtype=float).reshape(-1, 3)
        r = sc.lattice.cartesian_positions()
        dr = r[:, None, :] - r[None, :, :]
        weights = np.exp(-1j * np.einsum("nc,ijc->nij", k, dr))
        if self.formfactors is not None:
            k_norm = np.linalg.norm(k, axis=-1)
            ff = np.stack(
                [
                    np.broadcast_to(np.asarray(f(k_norm), dtype=complex), k_norm.shape)
                    for f in self.formfactors
                ],
                axis=-1,
            )
            weights = weights * ff[:, :, None] * np.conj(ff[:, None, :])
        if errors:
            weights = np.abs(weights) ** 2

        q0, q1, q2 = (ix_q[:, a] for a in range(3))
        out = np.empty((len(k), len(ix_w), len(self.corr_ix)), dtype=float if errors else complex)
        for n, (c, swapped) in enumerate(self.corr_ix):
            slab = buffer[c][:, :, q0, q1, q2, :][..., ix_w]
            if swapped:
                slab = np.swapaxes(slab, 0, 1)
                if not errors:
                    slab = np.conj(slab)
            if natoms == 1 and self.formfactors is None:
                out[..., n] = slab[0, 0]
            else:
                out[..., n] = np.einsum("nij,ijnw->nw", weights, slab)
        return out

    def __call__(self, k: np.ndarray, ix_q: np.ndarray, ix_w: np.ndarray) -> np.ndarray:
        """Intensities at grid points, shape ``(n, nw, ...)``."""

        ix_w = np.asarray(ix_w, dtype=int).reshape(-1)
        k = np.asarray(k, dtype=float).reshape(-1, 3)
        ix_q = np.asarray(ix_q, dtype=int).reshape(-1, 3)

        elements = self.phase_averaged_elements(k, ix_q, ix_w)
        w = self.sc.parameters.energies(negative_energies=True)[ix_w]
        vals = self.contraction.contract(elements, k, w, errors=self.calculate_errors)

        c2q = classical_to_quantum(w, self.kT)
        if self.calculate_errors:
            c2q = c2q**2
        c2q = c2q.reshape((1, -1) + (1,) * (vals.ndim - 2))
        return vals * c2q if self.kT != np.inf else vals

    def __repr__(self) -> str:
        lines = [f"IntensityFormula[{self.contraction.name}]"]
        lines.append(
            "  form factors included" if self.formfactors is not None else "  no form factors"
        )
        lines.append(
            "  no temperature correction (kT = inf)"
            if self.kT == np.inf
            else f"  temperature corrected (kT = {self.kT})"
        )
        if self.calculate_errors:
            lines.append("  propagates variances")
        return "\n".join(lines)


def intensity_formula(
    sc: Any,
    contraction: Any = "trace",
    *,
    required: Sequence[tuple] | None = None,
    kT: float | None = np.inf,
    formfactors: Any = None,
    calculate_errors: bool = False,
) -> IntensityFormula:
    """Establish a formula for intensities at the discrete ``(q, w)`` modes of ``sc``.

    Parameters
    ----------
    sc:
        Accumulator to read from.
    contraction:
        ``"trace"``, ``"perp"``, ``"full"``, a channel pair ``(a, b)``, a
        :class:`Contraction` instance, or a function (with ``required``).
    required:
        Channel pairs read by a custom contraction function.
    kT:
        Temperature for the classical-to-quantum correction; ``inf`` disables it.
    formfactors:
        One callable of ``|k|`` (e.g. :class:`FormFactor`) per sublattice, or a
        single callable for all.
    calculate_errors:
        Propagate the running variance instead of the running mean.

    Raises
    ------
    InvalidTemperature
        For finite ``kT <= 0``.
    ConfigurationError
        For finite ``kT`` on static data, or ``calculate_errors`` without
        variance tracking.
    CorrelationNotFound
        If the contraction needs a correlation ``sc`` does not record.
    """

    kT = check_temperature(kT)
    if kT != np.inf and sc.parameters.is_static:
        raise ConfigurationError(
            "kT-dependent corrections are not available for instantaneous correlations"
        )
    if calculate_errors and not sc.calculate_variance:
        raise ConfigurationError(
            "Error estimates need variance tracking; construct the accumulator with calculate_variance=True"
        )

    strategy = make_contraction(contraction, len(sc.observables), required)
    corr_ix = sc.lookup_correlations(strategy.required)

    return IntensityFormula(
        sc=sc,
        contraction=strategy,
        kT=kT,
        formfactors=prepare_form_factors(formfactors, sc.natoms),
        calculate_errors=calculate_errors,
        corr_ix=corr_ix,
    )

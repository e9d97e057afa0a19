"""Trajectory generation.

The dynamics integrator is not part of sqwpy. This module only defines the
interface the accumulator consumes: a *system* holding the current spin
configuration and an *integrator* that advances it by one time step.

A system is any object with

- ``dipoles``: real array of shape ``(L1, L2, L3, natoms, 3)``,
- ``gs`` (optional): per-sublattice g-tensors of shape ``(natoms, 3, 3)``.

An integrator is either an object with a ``step(system)`` method or a plain
callable ``integrator(system)``. It must advance ``system.dipoles`` in place.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np

from sqwpy.errors import ConfigurationError, ShapeMismatch

DEFAULT_OBSERVABLES = {
    "Sx": np.array([1.0, 0.0, 0.0]),
    "Sy": np.array([0.0, 1.0, 0.0]),
    "Sz": np.array([0.0, 0.0, 1.0]),
}


class Observables:
    """Named, ordered set of linear observables on the dipoles.

    Parameters
    ----------
    observables:
        ``None`` for the three dipole components ``Sx, Sy, Sz``; a mapping
        ``name -> covector``; or a sequence of covectors, which are named
        ``A, B, C, ...`` in order.

    Attributes
    ----------
    names:
        Observable names in channel order.
    index:
        Mapping from name to channel index.
    covectors:
        Complex array of shape ``(nobs, 3)``.
    """

    def __init__(self, observables: Any = None):
        if observables is None:
            observables = DEFAULT_OBSERVABLES
        elif not isinstance(observables, dict):
            observables = list(observables)
            if observables and isinstance(observables[0], tuple):
                names = [name for name, _ in observables]
                if len(set(names)) != len(names):
                    raise ConfigurationError(f"Repeated observable name in {names}")
                observables = dict(observables)
            else:
                observables = {chr(ord("A") + i): op for i, op in enumerate(observables)}

        if len(observables) == 0:
            raise ConfigurationError("At least one observable is required")

        self.names = [str(name) for name in observables]
        self.index = {name: i for i, name in enumerate(self.names)}
        covectors = []
        for name, op in observables.items():
            op = np.asarray(op, dtype=complex).reshape(-1)
            if op.shape != (3,):
                raise ConfigurationError(
                    f"Observable {name!r} must be a covector of length 3, got shape {op.shape}"
                )
            covectors.append(op)
        self.covectors = np.stack(covectors)

    def __len__(self) -> int:
        return len(self.names)

    def __iter__(self):
        return iter(self.names)

    def as_dict(self) -> dict:
        return {
            name: dict(real=op.real.tolist(), imag=op.imag.tolist())
            for name, op in zip(self.names, self.covectors)
        }

    @classmethod
    def from_dict(cls, values: dict) -> "Observables":
        return cls(
            {
                name: np.asarray(op["real"]) + 1j * np.asarray(op["imag"])
                for name, op in values.items()
            }
        )


def observable_values(
    system: Any, observables: Observables, apply_g: bool = True
) -> np.ndarray:
    """Measure every observable on every site of ``system``.

    Parameters
    ----------
    system:
        Object exposing ``dipoles`` and optionally ``gs``.
    observables:
        Observables to measure.
    apply_g:
        Multiply each dipole by the g-tensor of its sublattice first.

    Returns
    -------
    np.ndarray
        Complex array of shape ``(nobs, L1, L2, L3, natoms)``.
    """

    moments = np.asarray(system.dipoles, dtype=float)
    gs = getattr(system, "gs", None)
    if apply_g and gs is not None:
        moments = np.einsum("nab,xyznb->xyzna", np.asarray(gs, dtype=float), moments)
    return np.einsum("oa,xyzna->oxyzn", observables.covectors, moments)


def _step_function(integrator: Any) -> Callable[[Any], Any]:
    step = getattr(integrator, "step", None)
    if step is not None:
        return step
    if callable(integrator):
        return integrator
    raise TypeError(
        f"Integrator must be callable or provide a step(system) method, got {type(integrator)!r}"
    )


def trajectory_into(
    buf: np.ndarray,
    system: Any,
    integrator: Any,
    observables: Observables,
    measperiod: int = 1,
    apply_g: bool = True,
) -> None:
    """Fill ``buf`` with a trajectory started from the current state of ``system``.

    ``system`` is advanced in place; copy it beforehand to preserve the
    initial configuration. The snapshot loop is the only cancellation point.

    Parameters
    ----------
    buf:
        Complex array of shape ``(nobs, L1, L2, L3, natoms, nsnaps)``.
    system:
        System to measure and evolve.
    integrator:
        Deterministic integrator advancing ``system`` by one step.
    observables:
        Observables to measure; must match ``buf.shape[0]``.
    measperiod:
        Integrator steps between two snapshots.
    apply_g:
        Apply g-tensors before measuring.
    """

    if buf.shape[0] != len(observables):
        raise ShapeMismatch(
            f"Buffer holds {buf.shape[0]} channels but {len(observables)} observables are defined"
        )
    dipoles_shape = np.shape(system.dipoles)
    if tuple(dipoles_shape) != tuple(buf.shape[1:5]) + (3,):
        raise ShapeMismatch(
            f"System dipoles of shape {dipoles_shape} do not fit a buffer of shape {buf.shape}"
        )

    step = _step_function(integrator)
    nsnaps = buf.shape[-1]

    buf[..., 0] = observable_values(system, observables, apply_g)
    for n in range(1, nsnaps):
        for _ in range(measperiod):
            step(system)
        buf[..., n] = observable_values(system, observables, apply_g)


def trajectory(
    system: Any,
    integrator: Any,
    nsnaps: int,
    observables: Observables | None = None,
    measperiod: int = 1,
    apply_g: bool = True,
) -> np.ndarray:
    """Allocate and return a trajectory buffer, see :func:`trajectory_into`."""

    observables = Observables() if observables is None else observables
    shape = np.shape(system.dipoles)[:4]
    buf = np.zeros((len(observables), *shape, nsnaps), dtype=complex)
    trajectory_into(buf, system, integrator, observables, measperiod, apply_g)
    return buf

"""Benchmarks for the accumulation kernels.

Run as ``python -m sqwpy.benchmark``; every pyperf option is accepted next to
the grid options below.
"""

from __future__ import annotations

import argparse
import logging
import os

import numpy as np
import pyperf

from sqwpy.correlations import SampledCorrelations
from sqwpy.kernels import KERNELS
from sqwpy.parameters import Lattice, SamplingParameters


def _set_reproducible_thread_env() -> None:
    """Set conservative thread environment variables (user-provided values win)."""
    for key in ("OMP_NUM_THREADS", "MKL_NUM_THREADS", "OPENBLAS_NUM_THREADS"):
        os.environ.setdefault(key, "1")


def _add_worker_args(cmd: list[str], args: argparse.Namespace) -> None:
    """Populate pyperf worker command-line arguments."""
    cmd.extend(["--latsize", str(args.latsize)])
    cmd.extend(["--natoms", str(args.natoms)])
    cmd.extend(["--nw", str(args.nw)])
    cmd.extend(["--seed", str(args.seed)])
    if args.variance:
        cmd.append("--variance")


def _build_runner() -> pyperf.Runner:
    parser = argparse.ArgumentParser(
        description="Benchmark SampledCorrelations.accumulate for every kernel",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--latsize", type=int, default=8, help="Cells along each lattice direction")
    parser.add_argument("--natoms", type=int, default=1, help="Number of sublattices")
    parser.add_argument("--nw", type=int, default=16, help="Number of non-negative energies")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed for the sample buffer")
    parser.add_argument("--variance", action="store_true", help="Track the running variance")
    return pyperf.Runner(_argparser=parser, add_cmdline_args=_add_worker_args, warmups=1)


def make_correlations(
    *,
    latsize: int,
    natoms: int,
    nw: int,
    backend: str,
    calculate_variance: bool,
) -> SampledCorrelations:
    """Accumulator on a cubic ``latsize``^3 grid with ``natoms`` random sublattices."""
    rng = np.random.default_rng(0)
    lattice = Lattice(np.eye(3), rng.random((natoms, 3)))
    parameters = SamplingParameters((latsize,) * 3, dt=0.05, nw=nw, wmax=5.0)
    return SampledCorrelations(
        parameters,
        lattice=lattice,
        calculate_variance=calculate_variance,
        backend=backend,
    )


def bench_accumulate(
    runner: pyperf.Runner,
    *,
    latsize: int = 8,
    natoms: int = 1,
    nw: int = 16,
    calculate_variance: bool = False,
    seed: int = 0,
) -> None:
    """Register one ``accumulate`` benchmark per kernel backend on ``runner``."""
    if runner is None:
        raise ValueError("Please provide a runner for benchmarking!")

    for backend in KERNELS:
        sc = make_correlations(
            latsize=latsize,
            natoms=natoms,
            nw=nw,
            backend=backend,
            calculate_variance=calculate_variance,
        )
        rng = np.random.default_rng(seed)
        sample = rng.normal(size=sc.samplebuf.shape) + 0j
        # Compile and warm the FFT plan outside the timed region
        sc.accumulate(sample)
        runner.bench_func(f"accumulate_{backend}", sc.accumulate, sample)


def main() -> None:
    _set_reproducible_thread_env()
    logging.getLogger("sqwpy").setLevel(logging.WARNING)

    runner = _build_runner()
    args = runner.parse_args()
    bench_accumulate(
        runner,
        latsize=args.latsize,
        natoms=args.natoms,
        nw=args.nw,
        calculate_variance=args.variance,
        seed=args.seed,
    )


if __name__ == "__main__":
    main()

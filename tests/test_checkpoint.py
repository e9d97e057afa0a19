from pathlib import Path

import numpy as np
import numpy.testing as npt
import pytest

from sqwpy.checkpoint import Checkpoint
from sqwpy.correlations import SampledCorrelations
from sqwpy.errors import ConfigurationError
from sqwpy.parameters import Lattice, SamplingParameters


def _filled_correlations(*, static=False, calculate_variance=True) -> SampledCorrelations:
    params = (
        SamplingParameters.instant((2, 3, 1))
        if static
        else SamplingParameters((2, 3, 1), dt=0.1, nw=3, wmax=1.0)
    )
    sc = SampledCorrelations(
        params,
        Lattice(np.diag([1.0, 2.0, 3.0]), [[0, 0, 0], [0.5, 0.25, 0]]),
        observables=[("Mx", [1, 0, 0]), ("My", [0, 1j, 0])],
        correlations=[("Mx", "Mx"), ("My", "Mx")],
        calculate_variance=calculate_variance,
        process_trajectory="subtract_mean",
        backend="numpy",
    )
    rng = np.random.default_rng(9)
    for _ in range(3):
        sc.accumulate(rng.normal(size=sc.samplebuf.shape) + 0j)
    return sc


def _assert_same_state(restored: SampledCorrelations, sc: SampledCorrelations) -> None:
    assert restored.parameters == sc.parameters
    assert restored.nsamples == sc.nsamples
    assert restored.observables.names == sc.observables.names
    assert restored.correlations == sc.correlations
    assert restored.process_trajectory == sc.process_trajectory
    npt.assert_allclose(restored.lattice.latvecs, sc.lattice.latvecs)
    npt.assert_allclose(restored.lattice.positions, sc.lattice.positions)
    npt.assert_allclose(restored.observables.covectors, sc.observables.covectors)
    npt.assert_allclose(restored.data, sc.data, rtol=1e-15)
    assert restored.calculate_variance == sc.calculate_variance
    if sc.calculate_variance:
        npt.assert_allclose(restored.variance, sc.variance, rtol=1e-15)


@pytest.mark.parametrize("suffix", [".json", ".yaml", ".yml", ".pkl", ".bz2", ".mat"])
def test_checkpoint_round_trip(tmp_path: Path, suffix: str):
    sc = _filled_correlations()
    path = tmp_path / f"checkpoint{suffix}"

    sc.save(path)
    restored = SampledCorrelations.load(path, backend="numpy")

    _assert_same_state(restored, sc)


@pytest.mark.parametrize("suffix", [".json", ".bz2"])
def test_static_checkpoint_without_variance(tmp_path: Path, suffix: str):
    sc = _filled_correlations(static=True, calculate_variance=False)
    path = tmp_path / f"static{suffix}"

    Checkpoint.from_correlations(sc).save(str(path))
    restored = Checkpoint.load(str(path)).to_correlations(backend="numpy")

    assert restored.parameters.is_static
    _assert_same_state(restored, sc)


def test_accumulation_continues_after_restore(tmp_path: Path):
    sc = _filled_correlations()
    path = tmp_path / "checkpoint.pkl"
    sc.save(path)
    restored = SampledCorrelations.load(path, backend="numpy")

    extra = np.random.default_rng(10).normal(size=sc.samplebuf.shape) + 0j
    sc.accumulate(extra)
    restored.accumulate(extra)

    _assert_same_state(restored, sc)


def test_unknown_suffix(tmp_path: Path):
    sc = _filled_correlations()
    with pytest.raises(ConfigurationError):
        sc.save(tmp_path / "checkpoint.h5")
    with pytest.raises(ConfigurationError):
        Checkpoint.load(tmp_path / "checkpoint.h5")


def test_inconsistent_checkpoint_is_rejected():
    values = Checkpoint.from_correlations(_filled_correlations()).model_dump()
    values["data_real"] = values["data_real"][:-1]
    with pytest.raises(ValueError):
        Checkpoint.model_validate(values)

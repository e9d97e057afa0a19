import numpy as np
import numpy.testing as npt
import pytest
import scipy.fft

from sqwpy.correlations import SampledCorrelations
from sqwpy.errors import ConfigurationError, CorrelationNotFound, ShapeMismatch
from sqwpy.parameters import Lattice, SamplingParameters


def _make_correlations(
    *,
    latsize=(2, 2, 1),
    nw=4,
    natoms=1,
    observables=None,
    calculate_variance=True,
    backend="numpy",
    **kwargs,
) -> SampledCorrelations:
    positions = np.random.default_rng(1).random((natoms, 3))
    return SampledCorrelations(
        SamplingParameters(latsize, dt=0.1, nw=nw, wmax=1.0),
        lattice=Lattice(np.eye(3), positions),
        observables=observables,
        calculate_variance=calculate_variance,
        backend=backend,
        **kwargs,
    )


def _transform(buf: np.ndarray) -> np.ndarray:
    n_t = buf.shape[-1]
    ncells = np.prod(buf.shape[1:4])
    return scipy.fft.fftn(buf, axes=(1, 2, 3, 5)) / (n_t * np.sqrt(ncells))


def _elements(samples, a, b, i, j) -> np.ndarray:
    """Per-sample correlations X_a,i conj(X_b,j), stacked along the first axis."""
    out = []
    for buf in samples:
        x = _transform(buf)
        out.append(x[a, :, :, :, i, :] * np.conj(x[b, :, :, :, j, :]))
    return np.stack(out)


def _random_samples(sc: SampledCorrelations, n: int, seed: int = 0) -> list[np.ndarray]:
    rng = np.random.default_rng(seed)
    return [rng.normal(size=sc.samplebuf.shape) + 0j for _ in range(n)]


def _reverse_modes(arr: np.ndarray, axes) -> np.ndarray:
    """Map index k to (-k) mod N along ``axes``."""
    for ax in axes:
        arr = np.roll(np.flip(arr, axis=ax), 1, axis=ax)
    return arr


def test_running_mean_matches_arithmetic_mean():
    sc = _make_correlations(latsize=(3, 2, 2), natoms=2, observables=[("A", [1, 0, 0]), ("B", [0, 1, 1])])
    samples = _random_samples(sc, 20)
    for buf in samples:
        sc.accumulate(buf)

    assert sc.nsamples == 20
    for (a, b), c in sc.correlations.items():
        for i in range(2):
            for j in range(2):
                expected = _elements(samples, a, b, i, j).mean(axis=0)
                npt.assert_allclose(sc.data[c, i, j], expected, rtol=1e-10, atol=1e-12)


def test_running_variance_matches_batch_variance():
    sc = _make_correlations(observables=[("A", [1, 0, 0])])
    samples = _random_samples(sc, 1000, seed=3)
    for buf in samples:
        sc.accumulate(buf)

    x = _elements(samples, 0, 0, 0, 0)
    npt.assert_allclose(sc.variance[0, 0, 0], np.var(x, axis=0), rtol=1e-9, atol=1e-12)
    npt.assert_allclose(
        sc.estimated_variance(unbiased=True)[0, 0, 0], np.var(x, axis=0, ddof=1), rtol=1e-9, atol=1e-12
    )
    npt.assert_allclose(
        sc.estimated_variance(unbiased=False)[0, 0, 0], np.var(x, axis=0), rtol=1e-9, atol=1e-12
    )


def test_same_sample_twice_has_zero_variance():
    sc = _make_correlations(latsize=(2, 2, 1), nw=4, observables=[("A", [1, 0, 0])])
    (buf,) = _random_samples(sc, 1)

    sc.accumulate(buf)
    sc.accumulate(buf)

    assert sc.data.shape == (1, 1, 1, 2, 2, 1, 7)
    npt.assert_array_equal(sc.variance, 0.0)


def test_perturbed_sample_has_bounded_positive_variance():
    sc = _make_correlations(latsize=(2, 2, 1), nw=4, observables=[("A", [1, 0, 0])])
    (buf,) = _random_samples(sc, 1)
    perturbed = buf + 1e-3 * np.random.default_rng(7).normal(size=buf.shape)

    sc.accumulate(buf)
    sc.accumulate(perturbed)

    x1, x2 = _elements([buf, perturbed], 0, 0, 0, 0)
    bound = np.abs(x1 - x2) ** 2 / 4
    assert np.all(sc.variance >= 0)
    assert sc.variance.max() > 0
    npt.assert_allclose(sc.variance[0, 0, 0], bound, rtol=1e-8, atol=1e-20)


def test_estimated_variance_needs_two_samples():
    sc = _make_correlations(observables=[("A", [1, 0, 0])])
    sc.accumulate(_random_samples(sc, 1)[0])
    assert np.isnan(sc.estimated_variance()).all()


def test_hermitian_symmetry_for_real_observables():
    sc = _make_correlations(latsize=(3, 4, 2), natoms=2, calculate_variance=False)
    for buf in _random_samples(sc, 3):
        sc.accumulate(buf)

    # S^{ab}_{ij}(-q, -w) = conj(S^{ab}_{ij}(q, w))
    reflected = _reverse_modes(sc.data, axes=(3, 4, 5, 6))
    npt.assert_allclose(reflected, np.conj(sc.data), rtol=1e-10, atol=1e-12)

    # S^{ba}_{ji} = conj(S^{ab}_{ij})
    forward = sc.correlation_slice(("Sx", "Sy"))
    backward = sc.correlation_slice(("Sy", "Sx"))
    npt.assert_array_equal(backward, np.conj(np.swapaxes(forward, 0, 1)))


def test_canonical_pairs_are_stored_once():
    sc = _make_correlations(calculate_variance=False)

    assert sorted(sc.correlations) == [(0, 0), (0, 1), (0, 2), (1, 1), (1, 2), (2, 2)]
    assert sc.data.shape[0] == 6
    assert sc.lookup_correlations([("Sz", "Sx")]) == [(sc.correlations[(0, 2)], True)]
    assert sc.lookup_correlations([(0, 2)]) == [(sc.correlations[(0, 2)], False)]


def test_unknown_correlations_raise():
    sc = _make_correlations(correlations=[("Sx", "Sx"), ("Sy", "Sz")])

    with pytest.raises(CorrelationNotFound):
        sc.lookup_correlations([("Sx", "Sy")])
    with pytest.raises(CorrelationNotFound):
        sc.lookup_correlations([("Sx", "Q")])
    with pytest.raises(LookupError):
        sc.correlation_slice(("Sz", "Sz"))
    assert sc.correlation_names() == [("Sx", "Sx"), ("Sy", "Sz")]


def test_variance_requires_tracking():
    sc = _make_correlations(calculate_variance=False)
    assert not sc.calculate_variance
    with pytest.raises(ConfigurationError):
        sc.variance


def test_accumulate_rejects_wrong_shape():
    sc = _make_correlations()
    with pytest.raises(ShapeMismatch):
        sc.accumulate(np.zeros((3, 2, 2, 1, 1, 5), dtype=complex))
    assert sc.nsamples == 0


def test_unknown_backend_and_processing_raise():
    with pytest.raises(ConfigurationError):
        _make_correlations(backend="cuda")
    with pytest.raises(ConfigurationError):
        _make_correlations(process_trajectory="window")


def test_merge_equals_single_accumulator():
    single = _make_correlations(latsize=(2, 3, 1), natoms=2)
    first = _make_correlations(latsize=(2, 3, 1), natoms=2)
    second = _make_correlations(latsize=(2, 3, 1), natoms=2)

    samples = _random_samples(single, 12, seed=5)
    for buf in samples:
        single.accumulate(buf)
    for buf in samples[:5]:
        first.accumulate(buf)
    for buf in samples[5:]:
        second.accumulate(buf)

    first.merge(second)

    assert first.nsamples == 12
    npt.assert_allclose(first.data, single.data, rtol=1e-10, atol=1e-12)
    npt.assert_allclose(first.variance, single.variance, rtol=1e-9, atol=1e-12)


def test_merge_into_empty_accumulator():
    empty = _make_correlations()
    filled = _make_correlations()
    for buf in _random_samples(filled, 3):
        filled.accumulate(buf)

    empty.merge(filled)

    assert empty.nsamples == 3
    npt.assert_allclose(empty.data, filled.data, rtol=1e-12)
    npt.assert_allclose(empty.variance, filled.variance, rtol=1e-12, atol=1e-15)


def test_merge_rejects_incompatible_accumulators():
    sc = _make_correlations(latsize=(2, 2, 1))
    with pytest.raises(ConfigurationError):
        sc.merge(_make_correlations(latsize=(2, 2, 2)))
    with pytest.raises(ConfigurationError):
        sc.merge(_make_correlations(latsize=(2, 2, 1), calculate_variance=False))
    with pytest.raises(ConfigurationError):
        sc.merge(_make_correlations(latsize=(2, 2, 1), correlations=[("Sx", "Sx")]))


def test_numba_and_numpy_kernels_agree():
    kwargs = dict(latsize=(3, 2, 2), natoms=2, nw=3)
    fast = _make_correlations(backend="numba", **kwargs)
    reference = _make_correlations(backend="numpy", **kwargs)

    for buf in _random_samples(reference, 4, seed=11):
        fast.accumulate(buf)
        reference.accumulate(buf)

    npt.assert_allclose(fast.data, reference.data, rtol=1e-12, atol=1e-14)
    npt.assert_allclose(fast.variance, reference.variance, rtol=1e-12, atol=1e-14)


def test_copy_is_independent():
    sc = _make_correlations()
    (buf,) = _random_samples(sc, 1)
    sc.accumulate(buf)

    clone = sc.copy()
    clone.accumulate(buf * 2)

    assert sc.nsamples == 1
    assert clone.nsamples == 2
    assert not np.allclose(clone.data, sc.data)


def test_symmetrize_processing_applies_before_transform():
    sc = _make_correlations(process_trajectory="symmetrize", calculate_variance=False)
    plain = _make_correlations(calculate_variance=False)
    (buf,) = _random_samples(sc, 1)

    sc.accumulate(buf)
    plain.accumulate(0.5 * (buf + buf[..., ::-1]))

    npt.assert_allclose(sc.data, plain.data, rtol=1e-12, atol=1e-14)
    assert "S(q,w)" in repr(sc)

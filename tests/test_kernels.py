import numpy as np
import numpy.testing as npt

from sqwpy.kernels import accumulate_numba, accumulate_numpy, pooled_statistics


def test_kernels_match_on_raw_buffers():
    rng = np.random.default_rng(0)
    samples = rng.normal(size=(2, 2, 3, 1, 2, 5)) + 1j * rng.normal(size=(2, 2, 3, 1, 2, 5))
    pairs = np.array([[0, 0], [0, 1], [1, 1]])

    data_np = np.zeros((3, 2, 2, 2, 3, 1, 5), dtype=complex)
    var_np = np.zeros(data_np.shape)
    data_nb = data_np.copy()
    var_nb = var_np.copy()

    for count in range(1, 4):
        sample = samples * count
        accumulate_numpy(data_np, var_np, sample, pairs, count)
        accumulate_numba(data_nb, var_nb, sample, pairs, count)

    npt.assert_allclose(data_nb, data_np, rtol=1e-12)
    npt.assert_allclose(var_nb, var_np, rtol=1e-12)
    expected = samples[0, :, :, :, 1, :] * np.conj(samples[1, :, :, :, 0, :]) * (1 + 4 + 9) / 3
    npt.assert_allclose(data_np[1, 1, 0], expected)


def test_kernels_without_variance():
    rng = np.random.default_rng(1)
    sample = rng.normal(size=(1, 2, 2, 2, 1, 3)) + 0j
    pairs = np.array([[0, 0]])
    data_np = np.zeros((1, 1, 1, 2, 2, 2, 3), dtype=complex)
    data_nb = data_np.copy()

    accumulate_numpy(data_np, None, sample, pairs, 1)
    accumulate_numba(data_nb, None, sample, pairs, 1)

    npt.assert_allclose(data_nb, data_np)
    npt.assert_allclose(data_np[0, 0, 0], np.abs(sample[0, ..., 0, :]) ** 2)


def test_pooled_statistics_matches_concatenation():
    rng = np.random.default_rng(2)
    a = rng.normal(size=(7, 4)) + 1j * rng.normal(size=(7, 4))
    b = rng.normal(size=(3, 4)) + 1j * rng.normal(size=(3, 4))

    mean, var = pooled_statistics(a.mean(0), a.var(0), 7, b.mean(0), b.var(0), 3)

    both = np.concatenate([a, b])
    npt.assert_allclose(mean, both.mean(0))
    npt.assert_allclose(var, both.var(0))

    mean, var = pooled_statistics(a.mean(0), None, 7, b.mean(0), b.var(0), 3)
    assert var is None

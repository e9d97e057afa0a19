import numpy as np
import numpy.testing as npt
import pytest

from sqwpy.binning import (
    BinningParameters,
    axes_bincenters,
    axes_binedges,
    bin_absolute_units_as_rlu,
    bin_rlu_as_absolute_units,
    binning_parameters_aabb,
    count_bins,
    integrate_axes,
    intensities_binned,
    powder_averaged_bins,
    q_space_path_bins,
    slice_2D_binning_parameters,
    unit_resolution_binning_parameters,
)
from sqwpy.correlations import SampledCorrelations
from sqwpy.errors import ConfigurationError
from sqwpy.formula import intensity_formula
from sqwpy.parameters import Lattice, SamplingParameters
from sqwpy.retrieval import (
    available_energies,
    available_wave_vectors,
    integrated_lorentzian,
    intensities_interpolated,
)


def _filled_correlations(latsize=(4, 4, 2), nw=3) -> SampledCorrelations:
    sc = SampledCorrelations(
        SamplingParameters(latsize, dt=0.1, nw=nw, wmax=1.0),
        Lattice(np.eye(3), [[0.1, 0.2, 0.3]]),
        backend="numpy",
    )
    rng = np.random.default_rng(8)
    for _ in range(2):
        sc.accumulate(rng.normal(size=sc.samplebuf.shape) + 0j)
    return sc


def test_bin_counting():
    params = BinningParameters([0, 0, 0, 0], [1, 1, 1, 1], [0.25] * 4)

    npt.assert_array_equal(params.numbins, [4, 4, 4, 4])
    npt.assert_allclose(axes_bincenters(params)[0], [0.125, 0.375, 0.625, 0.875])
    npt.assert_allclose(axes_binedges(params)[1], [0.0, 0.25, 0.5, 0.75, 1.0])
    npt.assert_array_equal(count_bins(0.0, 1.0, 0.3), 4)

    params.numbins = [3, 3, 3, 3]
    npt.assert_allclose(params.binwidth, 0.4)
    npt.assert_array_equal(params.numbins, [3, 3, 3, 3])

    integrate_axes(params, 3)
    npt.assert_array_equal(params.numbins, [3, 3, 3, 1])
    npt.assert_allclose(params.binwidth[:3], 0.4)

    with pytest.raises(ConfigurationError):
        params.numbins = [0, 1, 1, 1]

    assert "Integrated" in repr(params)


def test_from_numbins():
    params = BinningParameters.from_numbins([0, 0, 0, 0], [1, 1, 1, 1], [5, 5, 5, 2])
    npt.assert_array_equal(params.numbins, [5, 5, 5, 2])


def test_bounding_box():
    params = BinningParameters([0, -1, 0, 0], [1, 1, 0.5, 1], [0.5, 0.5, 0.25, 1])
    lower, upper = binning_parameters_aabb(params)
    npt.assert_allclose(lower, [0, -1, 0])
    npt.assert_allclose(upper, [1.0, 1.0, 0.5])


def test_unit_conversions_round_trip():
    lattice = Lattice(np.array([[1.0, 0.5, 0.0], [0.0, 2.0, 0.0], [0.0, 0.0, 3.0]]))
    params = BinningParameters([0, 0, 0, 0], [1, 1, 1, 1], [0.25] * 4)

    bin_rlu_as_absolute_units(params, lattice)
    npt.assert_allclose(params.covectors[:3, :3], lattice.recipvecs)

    bin_absolute_units_as_rlu(params, lattice.recipvecs)
    npt.assert_allclose(params.covectors, np.eye(4), atol=1e-12)


def test_unit_resolution_binning_reproduces_grid_intensities():
    sc = _filled_correlations()
    formula = intensity_formula(sc, "trace")
    params = unit_resolution_binning_parameters(sc)

    npt.assert_array_equal(params.numbins, [4, 4, 2, 3])

    intensities, counts = intensities_binned(sc, params, formula)

    qs = available_wave_vectors(sc).reshape(-1, 3)
    expected = intensities_interpolated(sc, qs, formula).reshape(4, 4, 2, 3)
    npt.assert_array_equal(counts, 1.0)
    npt.assert_allclose(intensities, expected, rtol=1e-12)


def test_narrow_integrated_kernel_matches_plain_binning():
    sc = _filled_correlations()
    formula = intensity_formula(sc, "trace")
    params = unit_resolution_binning_parameters(sc)

    plain, _ = intensities_binned(sc, params, formula)
    eta = 1e-6 * sc.parameters.dw
    broadened, counts = intensities_binned(
        sc, params, formula, integrated_kernel=integrated_lorentzian(eta)
    )

    npt.assert_allclose(broadened, plain, rtol=1e-4)
    npt.assert_allclose(counts, 1.0, rtol=1e-4)


def test_binning_requires_scalar_formula():
    sc = _filled_correlations()
    with pytest.raises(ConfigurationError):
        intensities_binned(sc, unit_resolution_binning_parameters(sc), intensity_formula(sc, "full"))


def test_static_unit_resolution_has_a_single_energy_bin():
    sc = SampledCorrelations(SamplingParameters.instant((2, 2, 1)), backend="numpy")
    sc.accumulate(np.ones(sc.samplebuf.shape, dtype=complex))

    params = unit_resolution_binning_parameters(sc)
    npt.assert_array_equal(params.numbins, [2, 2, 1, 1])

    intensities, counts = intensities_binned(sc, params, intensity_formula(sc, "trace"))
    npt.assert_array_equal(counts, 1.0)
    npt.assert_allclose(intensities[0, 0, 0, 0], 12.0)
    npt.assert_allclose(intensities.sum(), 12.0)


def test_slice_2D_binning_parameters():
    sc = _filled_correlations()
    ws = available_energies(sc)

    params = slice_2D_binning_parameters(ws, [0, 0, 0], [1, 0, 0], 5, 0.1)

    npt.assert_array_equal(params.numbins, [5, 1, 1, 3])
    npt.assert_allclose(params.covectors[0, :3], [1, 0, 0])
    npt.assert_allclose(axes_bincenters(params)[0], np.linspace(0, 1, 5), atol=1e-12)
    npt.assert_allclose(axes_bincenters(params)[3], ws, atol=1e-12)

    intensities, counts = intensities_binned(sc, params, intensity_formula(sc, "trace"))
    assert intensities.shape == (5, 1, 1, 3)
    assert counts.sum() > 0

    with pytest.raises(ConfigurationError):
        slice_2D_binning_parameters(ws, [0, 0, 0], [0, 0, 1], 5, 0.1)


def test_q_space_path_bins():
    ws = np.linspace(0, 1, 4)
    qs = [[0, 0, 0], [0.5, 0, 0], [0.5, 0.5, 0]]

    params, markers, ranges = q_space_path_bins(ws, qs, 20, 0.1)

    assert len(params) == 2
    assert markers == [0, 10, 20]
    assert [list(r) for r in ranges] == [list(range(10)), list(range(10, 20))]
    npt.assert_array_equal(params[1].numbins, [10, 1, 1, 4])
    npt.assert_allclose(params[1].covectors[0, :3], [0, 1, 0])


def test_powder_averaged_bins():
    sc = _filled_correlations()
    formula = intensity_formula(sc, "trace")

    intensities, counts = powder_averaged_bins(sc, (0.0, 2 * np.pi, np.pi / 2), formula)

    assert intensities.shape == counts.shape == (4, 3)
    assert counts[0, 0] >= 1
    assert counts.sum() > 0

    broadened, weights = powder_averaged_bins(
        sc, (0.0, 2 * np.pi, np.pi / 2), formula, integrated_kernel=integrated_lorentzian(0.1)
    )
    assert broadened.shape == (4, 3)
    assert weights.sum() > 0

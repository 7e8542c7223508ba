import math

import numpy as np
import pytest

from psfguard.psf_fitting import (
    GaussianPSF,
    LevenbergMarquardt,
    Moffat4PSF,
    PSFFitter,
    PSFModel,
    PSFType,
    bilinear_sample,
    extract_roi,
)


def _model(psf_type=PSFType.GAUSSIAN, sigma_x=1.0, sigma_y=1.0):
    return PSFModel(
        psf_type=psf_type,
        amplitude=1000.0,
        background=100.0,
        x0=0.0,
        y0=0.0,
        sigma_x=sigma_x,
        sigma_y=sigma_y,
        theta=0.0,
    )


def _star_image(width=40, height=40, cx=20.0, cy=20.0, sigma=2.0, amp=1000.0, bg=100.0):
    ys, xs = np.mgrid[0:height, 0:width]
    image = bg + amp * np.exp(-((xs - cx) ** 2 + (ys - cy) ** 2) / (2 * sigma * sigma))
    return [int(v) for v in image.reshape(-1)]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("none", PSFType.NONE),
        ("Gaussian", PSFType.GAUSSIAN),
        ("moffat", PSFType.MOFFAT4),
        ("MOFFAT4", PSFType.MOFFAT4),
        ("moffat_4", PSFType.MOFFAT4),
    ],
)
def test_parse_psf_type(text, expected):
    assert PSFType.parse(text) is expected


def test_parse_unknown_psf_type():
    with pytest.raises(ValueError, match="Unknown PSF type: airy"):
        PSFType.parse("airy")


def test_fwhm_per_type():
    assert _model(PSFType.GAUSSIAN).calculate_fwhm() == pytest.approx(2.354, abs=1e-3)
    assert _model(PSFType.MOFFAT4).calculate_fwhm() == pytest.approx(1.1895, abs=1e-4)
    assert _model(PSFType.NONE).calculate_fwhm() == 0.0


def test_fwhm_matches_function_conversion():
    model = _model(PSFType.MOFFAT4, sigma_x=2.0, sigma_y=3.0)
    assert model.calculate_fwhm() == pytest.approx(Moffat4PSF().sigma_to_fwhm(2.5))
    gauss = _model(PSFType.GAUSSIAN, sigma_x=2.0, sigma_y=3.0)
    assert gauss.calculate_fwhm() == pytest.approx(GaussianPSF().sigma_to_fwhm(2.5))


def test_eccentricity_round_and_line():
    assert _model(sigma_x=2.0, sigma_y=2.0).calculate_eccentricity() == 0.0
    assert _model(sigma_x=2.0, sigma_y=0.0).calculate_eccentricity() == 1.0
    assert _model(sigma_x=0.0, sigma_y=0.0).calculate_eccentricity() == 0.0


def test_eccentricity_symmetric_and_bounded():
    e1 = _model(sigma_x=3.0, sigma_y=1.5).calculate_eccentricity()
    e2 = _model(sigma_x=1.5, sigma_y=3.0).calculate_eccentricity()
    assert e1 == pytest.approx(e2)
    assert 0.0 < e1 < 1.0


def test_sigma_to_fwhm_is_linear():
    for psf in (GaussianPSF(), Moffat4PSF()):
        assert psf.sigma_to_fwhm(2.0) == pytest.approx(2.0 * psf.sigma_to_fwhm(1.0))


@pytest.mark.parametrize("psf", [GaussianPSF(), Moffat4PSF()])
def test_value_at_centre_and_far_away(psf):
    params = [500.0, 20.0, 0.0, 0.0, 2.0, 3.0, 0.3]
    assert psf.value(0.0, 0.0, params) == pytest.approx(520.0)
    assert psf.value(1e4, 1e4, params) == pytest.approx(20.0, abs=1e-6)


@pytest.mark.parametrize("psf", [GaussianPSF(), Moffat4PSF()])
def test_value_accepts_arrays(psf):
    params = [500.0, 20.0, 0.5, -0.5, 2.0, 3.0, 0.3]
    xs = np.array([0.0, 1.0, -2.5])
    ys = np.array([1.0, -1.0, 0.5])
    vectorised = psf.value(xs, ys, params)
    assert [psf.value(x, y, params) for x, y in zip(xs, ys)] == pytest.approx(
        list(vectorised)
    )


def _numerical_gradient(psf, x, y, params, index, step=1e-6):
    up = list(params)
    down = list(params)
    up[index] += step
    down[index] -= step
    return (psf.value(x, y, up) - psf.value(x, y, down)) / (2 * step)


@pytest.mark.parametrize("index", range(6))
def test_gaussian_gradient_matches_finite_difference(index):
    psf = GaussianPSF()
    params = [400.0, 10.0, 0.3, -0.2, 1.7, 2.4, 0.4]
    grad = psf.gradient(1.1, -0.7, params)
    assert grad.shape == (7,)
    assert grad[index] == pytest.approx(
        _numerical_gradient(psf, 1.1, -0.7, params, index), rel=1e-4, abs=1e-6
    )


@pytest.mark.parametrize("index", range(7))
def test_moffat_gradient_matches_finite_difference(index):
    psf = Moffat4PSF()
    params = [400.0, 10.0, 0.3, -0.2, 1.7, 2.4, 0.4]
    grad = psf.gradient(1.1, -0.7, params)
    assert grad[index] == pytest.approx(
        _numerical_gradient(psf, 1.1, -0.7, params, index), rel=1e-4, abs=1e-6
    )


def test_gradient_over_arrays_has_row_per_parameter():
    xs = np.linspace(-2, 2, 5)
    grad = GaussianPSF().gradient(xs, xs, [1.0, 0.0, 0.0, 0.0, 1.0, 1.0, 0.0])
    assert grad.shape == (7, 5)
    assert np.all(grad[1] == 1.0)


def test_bilinear_sample_integer_and_midpoints():
    data = [0, 10, 20, 30]
    assert bilinear_sample(data, 2, 2, 1.0, 1.0) == 30.0
    assert bilinear_sample(data, 2, 2, 0.5, 0.0) == pytest.approx((data[0] + data[1]) / 2)
    centre = bilinear_sample(data, 2, 2, 0.5, 0.5)
    assert centre == pytest.approx(sum(data) / 4)


def test_bilinear_sample_clamps():
    data = [3, 7, 11, 13, 17, 19]
    assert bilinear_sample(data, 3, 2, -5.0, -5.0) == 3.0
    assert bilinear_sample(data, 3, 2, 50.0, 50.0) == 19.0


def test_bilinear_sample_empty_image():
    with pytest.raises(ValueError):
        bilinear_sample([], 0, 0, 0.0, 0.0)


def test_extract_roi_inside_image():
    data = list(range(100))
    positions, values = extract_roi(data, 10, 10, 5.0, 5.0, 2, 1.0)
    assert len(positions) == 9
    assert (-1.0, -1.0) in positions and (1.0, 1.0) in positions
    for (dx, dy), value in zip(positions, values):
        assert value == data[int(5 + dy) * 10 + int(5 + dx)]


def test_extract_roi_clips_at_corner():
    positions, values = extract_roi(list(range(100)), 10, 10, 0.0, 0.0, 2, 1.0)
    assert sorted(positions) == [(0.0, 0.0), (0.0, 1.0), (1.0, 0.0), (1.0, 1.0)]
    assert len(values) == len(positions)


def test_extract_roi_rejects_non_positive_spacing():
    with pytest.raises(ValueError):
        extract_roi([0] * 4, 2, 2, 1.0, 1.0, 4, 0.0)


def _grid_samples(psf, params, extent=4):
    positions = [(float(x), float(y)) for y in range(-extent, extent + 1) for x in range(-extent, extent + 1)]
    values = [psf.value(x, y, params) for x, y in positions]
    return positions, values


def test_fit_not_enough_points():
    with pytest.raises(ValueError, match="Not enough data points"):
        LevenbergMarquardt().fit(
            GaussianPSF(), [(0.0, 0.0)] * 3, [1.0] * 3, [0.0] * 7, [0.0] * 7, [1.0] * 7
        )


def test_fit_from_exact_start_returns_start():
    psf = GaussianPSF()
    truth = [300.0, 50.0, 0.0, 0.0, 1.5, 1.5, 0.0]
    positions, values = _grid_samples(psf, truth)
    lower = [0.0, 0.0, -1.0, -1.0, 0.1, 0.1, -math.pi / 2]
    upper = [600.0, 100.0, 1.0, 1.0, 5.0, 5.0, math.pi / 2]
    fitted = LevenbergMarquardt().fit(psf, positions, values, truth, lower, upper)
    assert fitted == pytest.approx(truth)


@pytest.mark.parametrize("psf", [GaussianPSF(), Moffat4PSF()])
def test_fit_never_worse_than_start_and_within_bounds(psf):
    truth = [300.0, 50.0, 0.2, -0.1, 1.5, 2.0, 0.1]
    positions, values = _grid_samples(psf, truth)
    start = [250.0, 40.0, 0.0, 0.0, 2.0, 2.0, 0.0]
    lower = [0.0, 0.0, -1.0, -1.0, 0.1, 0.1, -math.pi / 2]
    upper = [600.0, 100.0, 1.0, 1.0, 5.0, 5.0, math.pi / 2]
    fitted = LevenbergMarquardt().fit(psf, positions, values, start, lower, upper)

    def sse(params):
        return sum((v - psf.value(x, y, params)) ** 2 for (x, y), v in zip(positions, values))

    assert sse(fitted) <= sse(start)
    assert all(lo <= p <= hi for lo, p, hi in zip(lower, fitted, upper))


def test_fit_star_none_type():
    fitter = PSFFitter(PSFType.NONE)
    assert fitter.fit_star(_star_image(), 40, 40, 20.0, 20.0, 12.0, 12.0, 100.0, 1100.0) is None


def test_fit_star_too_few_points():
    fitter = PSFFitter(PSFType.GAUSSIAN)
    assert fitter.fit_star([500], 1, 1, 0.0, 0.0, 4.0, 4.0, 10.0, 500.0) is None


@pytest.mark.parametrize("psf_type", [PSFType.GAUSSIAN, PSFType.MOFFAT4])
def test_fit_star_produces_consistent_model(psf_type):
    fitter = PSFFitter(psf_type)
    model = fitter.fit_star(_star_image(), 40, 40, 20.0, 20.0, 12.0, 12.0, 100.0, 1100.0)
    assert model.psf_type is psf_type
    assert model.r_squared <= 1.0
    assert model.rmse >= 0.0
    assert model.sigma_x >= 0.1 and model.sigma_y >= 0.1
    assert -1.5 <= model.x0 <= 1.5 and -1.5 <= model.y0 <= 1.5
    assert model.fwhm == pytest.approx(model.calculate_fwhm())
    assert model.eccentricity == pytest.approx(model.calculate_eccentricity())


def test_generate_residuals_shapes_and_difference():
    fitter = PSFFitter(PSFType.GAUSSIAN, roi_size=8)
    data = _star_image()
    model = _model()
    observed, fitted, residuals = fitter.generate_residuals(data, 40, 40, 20.0, 20.0, model)
    assert len(observed) == 8 and all(len(row) == 8 for row in observed)
    for obs_row, fit_row, res_row in zip(observed, fitted, residuals):
        for o, f, r in zip(obs_row, fit_row, res_row):
            assert r == pytest.approx(o - f)


def test_generate_residuals_none_type():
    fitter = PSFFitter(PSFType.NONE)
    assert fitter.generate_residuals([0] * 4, 2, 2, 1.0, 1.0, _model(PSFType.NONE)) is None
"""Gaussian and Moffat PSF models fitted with Levenberg-Marquardt."""

from __future__ import annotations

import enum
import math
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

import numpy as np

_GAUSSIAN_FWHM_FACTOR = 2.0 * math.sqrt(2.0 * math.log(2.0))
_MOFFAT4_FWHM_FACTOR = 2.0 * math.sqrt(2.0**0.25 - 1.0)


class PSFType(enum.Enum):
    """Which PSF model to fit."""

    NONE = "none"
    GAUSSIAN = "gaussian"
    MOFFAT4 = "moffat4"

    @classmethod
    def parse(cls, text: str) -> PSFType:
        """Parse a PSF type name, case-insensitively."""
        name = text.lower()
        if name == "none":
            return cls.NONE
        if name == "gaussian":
            return cls.GAUSSIAN
        if name in ("moffat", "moffat4", "moffat_4"):
            return cls.MOFFAT4
        raise ValueError(f"Unknown PSF type: {text}")


@dataclass
class PSFModel:
    """Parameters and fit quality of a fitted PSF."""

    psf_type: PSFType
    amplitude: float
    background: float
    x0: float
    y0: float
    sigma_x: float
    sigma_y: float
    theta: float
    r_squared: float = 0.0
    rmse: float = 0.0
    fwhm: float = 0.0
    eccentricity: float = 0.0

    def calculate_fwhm(self) -> float:
        """FWHM from the mean sigma, according to the PSF type."""
        avg_sigma = (self.sigma_x + self.sigma_y) / 2.0
        if self.psf_type is PSFType.GAUSSIAN:
            return avg_sigma * _GAUSSIAN_FWHM_FACTOR
        if self.psf_type is PSFType.MOFFAT4:
            return avg_sigma * _MOFFAT4_FWHM_FACTOR
        return 0.0

    def calculate_eccentricity(self) -> float:
        """Eccentricity from the two sigmas: 0 is round, 1 is a line."""
        a = max(self.sigma_x, self.sigma_y)
        b = min(self.sigma_x, self.sigma_y)
        if a > 0.0:
            return math.sqrt(1.0 - (b / a) ** 2)
        return 0.0


def _rotated(x, y, x0: float, y0: float, theta: float):
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    dx = x - x0
    dy = y - y0
    return dx * cos_t + dy * sin_t, -dx * sin_t + dy * cos_t, cos_t, sin_t


def _finish(result):
    result = np.asarray(result, dtype=np.float64)
    return float(result) if result.ndim == 0 else result


def _stack(components) -> np.ndarray:
    return np.array(np.broadcast_arrays(*components), dtype=np.float64)


class PSFFunction(ABC):
    """A PSF model over parameters [A, B, x0, y0, sigma_x, sigma_y, theta].

    ``x`` and ``y`` may be scalars or arrays; ``value`` then returns a float or
    an array, and ``gradient`` an array with one leading row per parameter.
    """

    @abstractmethod
    def value(self, x, y, params: Sequence[float]):
        """Evaluate the model at (x, y)."""

    @abstractmethod
    def gradient(self, x, y, params: Sequence[float]) -> np.ndarray:
        """Partial derivatives of the model with respect to each parameter."""

    @abstractmethod
    def sigma_to_fwhm(self, sigma: float) -> float:
        """Convert a width parameter to a full width at half maximum."""


class GaussianPSF(PSFFunction):
    """Elliptical rotated Gaussian."""

    def value(self, x, y, params: Sequence[float]):
        a, b, x0, y0, sigma_x, sigma_y, theta = params[:7]
        xp, yp, _, _ = _rotated(x, y, x0, y0, theta)
        arg = -(xp * xp / (2.0 * sigma_x * sigma_x) + yp * yp / (2.0 * sigma_y * sigma_y))
        return _finish(b + a * np.exp(arg))

    def gradient(self, x, y, params: Sequence[float]) -> np.ndarray:
        a, _, x0, y0, sigma_x, sigma_y, theta = params[:7]
        xp, yp, cos_t, sin_t = _rotated(x, y, x0, y0, theta)
        sx2 = sigma_x * sigma_x
        sy2 = sigma_y * sigma_y
        exp_arg = np.exp(-(xp * xp / (2.0 * sx2) + yp * yp / (2.0 * sy2)))
        return _stack(
            (
                exp_arg,
                1.0,
                a * exp_arg * (xp * cos_t / sx2 - yp * sin_t / sy2),
                a * exp_arg * (xp * sin_t / sx2 + yp * cos_t / sy2),
                a * exp_arg * xp * xp / (sx2 * sigma_x),
                a * exp_arg * yp * yp / (sy2 * sigma_y),
                a * exp_arg * xp * yp * (1.0 / sx2 - 1.0 / sy2),
            )
        )

    def sigma_to_fwhm(self, sigma: float) -> float:
        return sigma * _GAUSSIAN_FWHM_FACTOR


class Moffat4PSF(PSFFunction):
    """Elliptical rotated Moffat profile with beta fixed at 4."""

    _BETA = 4.0

    def value(self, x, y, params: Sequence[float]):
        a, b, x0, y0, u, v, theta = params[:7]
        xp, yp, _, _ = _rotated(x, y, x0, y0, theta)
        d = 1.0 + (xp * xp) / (u * u) + (yp * yp) / (v * v)
        return _finish(b + a / d**4)

    def gradient(self, x, y, params: Sequence[float]) -> np.ndarray:
        a, _, x0, y0, u, v, theta = params[:7]
        beta = self._BETA
        xp, yp, cos_t, sin_t = _rotated(x, y, x0, y0, theta)
        u2 = u * u
        v2 = v * v
        xp2 = xp * xp
        yp2 = yp * yp
        d = 1.0 + xp2 / u2 + yp2 / v2
        d_outer = d ** (-beta - 1.0)
        factor = -a * beta * d_outer
        return _stack(
            (
                d ** (-beta),
                1.0,
                factor * ((2.0 * sin_t * yp / v2) - (2.0 * cos_t * xp / u2)),
                factor * ((-2.0 * sin_t * xp / u2) - (2.0 * cos_t * yp / v2)),
                (2.0 * a * beta / (u2 * u)) * xp2 * d_outer,
                (2.0 * a * beta / (v2 * v)) * yp2 * d_outer,
                factor * (2.0 * yp * xp * (1.0 / u2 - 1.0 / v2)),
            )
        )

    def sigma_to_fwhm(self, sigma: float) -> float:
        return sigma * _MOFFAT4_FWHM_FACTOR


def _model_for(psf_type: PSFType) -> PSFFunction | None:
    if psf_type is PSFType.GAUSSIAN:
        return GaussianPSF()
    if psf_type is PSFType.MOFFAT4:
        return Moffat4PSF()
    return None


def bilinear_sample(data: Sequence[int], width: int, height: int, x: float, y: float) -> float:
    """Sample a row-major image at a sub-pixel position, clamped to its bounds."""
    if width < 1 or height < 1:
        raise ValueError(f"cannot sample an empty {width}x{height} image")
    x = min(max(x, 0.0), float(width - 1))
    y = min(max(y, 0.0), float(height - 1))
    x0 = int(math.floor(x))
    y0 = int(math.floor(y))
    x1 = min(x0 + 1, width - 1)
    y1 = min(y0 + 1, height - 1)
    fx = x - x0
    fy = y - y0
    p00 = float(data[y0 * width + x0])
    p10 = float(data[y0 * width + x1])
    p01 = float(data[y1 * width + x0])
    p11 = float(data[y1 * width + x1])
    p0 = p00 * (1.0 - fx) + p10 * fx
    p1 = p01 * (1.0 - fx) + p11 * fx
    return p0 * (1.0 - fy) + p1 * fy


def _offsets(half_size: float, spacing: float) -> Iterator[float]:
    offset = -half_size
    while offset <= half_size:
        yield offset
        offset += spacing


def extract_roi(
    data: Sequence[int],
    width: int,
    height: int,
    center_x: float,
    center_y: float,
    roi_size: int,
    sample_spacing: float,
) -> tuple[list[tuple[float, float]], list[float]]:
    """Sample a square region around a star.

    Returns positions relative to the centre and the interpolated values at
    those positions, skipping samples that fall outside the image.
    """
    if not sample_spacing > 0.0:
        raise ValueError(f"sample_spacing must be positive, got {sample_spacing}")
    half_size = roi_size / 2.0
    positions: list[tuple[float, float]] = []
    values: list[float] = []
    for dy in _offsets(half_size, sample_spacing):
        sample_y = center_y + dy
        for dx in _offsets(half_size, sample_spacing):
            sample_x = center_x + dx
            if 0.0 <= sample_x < width and 0.0 <= sample_y < height:
                positions.append((dx, dy))
                values.append(bilinear_sample(data, width, height, sample_x, sample_y))
    return positions, values


def _sum_squares(psf: PSFFunction, xs, ys, observed, params) -> float:
    residual = observed - np.asarray(psf.value(xs, ys, params))
    return float(np.sum(residual * residual))


@dataclass
class LevenbergMarquardt:
    """Bounded Levenberg-Marquardt least-squares optimiser.

    The damping factor carries over between calls to :meth:`fit`.
    """

    max_iterations: int = 100
    tolerance: float = 1e-6
    damping: float = 0.01
    damping_factor: float = 10.0
    _max_damping: float = field(default=1e10, repr=False)

    def fit(
        self,
        psf: PSFFunction,
        positions: Sequence[tuple[float, float]],
        values: Sequence[float],
        initial_params: Sequence[float],
        lower_bounds: Sequence[float],
        upper_bounds: Sequence[float],
    ) -> list[float]:
        """Return the parameters with the lowest squared error found."""
        n_params = len(initial_params)
        if len(positions) < n_params:
            raise ValueError("Not enough data points for fitting")
        if len(lower_bounds) != n_params or len(upper_bounds) != n_params:
            raise ValueError("bounds must have one entry per parameter")

        coords = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        xs = coords[:, 0]
        ys = coords[:, 1]
        observed = np.asarray(values, dtype=np.float64)
        lower = np.asarray(lower_bounds, dtype=np.float64)
        upper = np.asarray(upper_bounds, dtype=np.float64)
        identity = np.eye(n_params)

        params = np.asarray(initial_params, dtype=np.float64).copy()
        best_params = params.copy()
        best_error = math.inf

        for _ in range(self.max_iterations):
            residuals = observed - np.asarray(psf.value(xs, ys, params))
            current_error = float(np.sum(residuals * residuals))
            jacobian = -psf.gradient(xs, ys, params).T

            if current_error < best_error:
                best_error = current_error
                best_params = params.copy()

            if current_error < self.tolerance:
                break

            jtj = jacobian.T @ jacobian
            jtr = jacobian.T @ residuals

            while True:
                try:
                    delta = np.linalg.solve(jtj + self.damping * identity, jtr)
                except np.linalg.LinAlgError:
                    self.damping *= self.damping_factor
                    if self.damping > self._max_damping:
                        return best_params.tolist()
                    continue
                candidate = np.minimum(np.maximum(params + delta, lower), upper)
                new_error = _sum_squares(psf, xs, ys, observed, candidate)
                if new_error < current_error:
                    params = candidate
                    self.damping /= self.damping_factor
                    break
                self.damping *= self.damping_factor
                if self.damping > self._max_damping:
                    return best_params.tolist()

        return best_params.tolist()


ResidualMaps = tuple[list[list[float]], list[list[float]], list[list[float]]]


@dataclass
class PSFFitter:
    """Fits a PSF model to a star in a 16-bit image."""

    psf_type: PSFType
    roi_size: int = 32
    sample_spacing: float = 0.5

    def fit_star(
        self,
        data: Sequence[int],
        width: int,
        height: int,
        center_x: float,
        center_y: float,
        bbox_width: float,
        bbox_height: float,
        background: float,
        peak_brightness: float,
    ) -> PSFModel | None:
        """Fit the model around a star; ``None`` if no fit is possible."""
        psf = _model_for(self.psf_type)
        if psf is None:
            return None

        positions, values = extract_roi(
            data, width, height, center_x, center_y, self.roi_size, self.sample_spacing
        )
        if len(positions) < 10:
            return None

        amplitude = peak_brightness - background
        initial_params = [
            amplitude,
            background,
            0.0,
            0.0,
            bbox_width / 3.0,
            bbox_height / 3.0,
            0.0,
        ]
        dx_limit = bbox_width / 8.0
        dy_limit = bbox_height / 8.0
        sigma_max = math.hypot(bbox_width, bbox_height) / 2.0
        lower_bounds = [0.0, 0.0, -dx_limit, -dy_limit, 0.1, 0.1, -math.pi / 2.0]
        upper_bounds = [
            2.0 * amplitude,
            peak_brightness,
            dx_limit,
            dy_limit,
            sigma_max,
            sigma_max,
            math.pi / 2.0,
        ]

        try:
            fitted = LevenbergMarquardt().fit(
                psf, positions, values, initial_params, lower_bounds, upper_bounds
            )
        except ValueError:
            return None

        coords = np.asarray(positions, dtype=np.float64)
        observed = np.asarray(values, dtype=np.float64)
        predicted = np.asarray(psf.value(coords[:, 0], coords[:, 1], fitted))
        sum_squared_residuals = float(np.sum((observed - predicted) ** 2))
        sum_squared_total = float(np.sum((observed - observed.mean()) ** 2))
        r_squared = (
            1.0 - sum_squared_residuals / sum_squared_total if sum_squared_total > 0.0 else 0.0
        )
        rmse = math.sqrt(sum_squared_residuals / len(positions))

        model = PSFModel(
            psf_type=self.psf_type,
            amplitude=fitted[0],
            background=fitted[1],
            x0=fitted[2],
            y0=fitted[3],
            sigma_x=abs(fitted[4]),
            sigma_y=abs(fitted[5]),
            theta=fitted[6],
            r_squared=r_squared,
            rmse=rmse,
        )
        model.fwhm = model.calculate_fwhm()
        model.eccentricity = model.calculate_eccentricity()
        return model

    def generate_residuals(
        self,
        data: Sequence[int],
        width: int,
        height: int,
        center_x: float,
        center_y: float,
        model: PSFModel,
    ) -> ResidualMaps | None:
        """Observed, fitted and residual grids of ``roi_size`` square around a star."""
        psf = _model_for(self.psf_type)
        if psf is None:
            return None

        params = [
            model.amplitude,
            model.background,
            model.x0,
            model.y0,
            model.sigma_x,
            model.sigma_y,
            model.theta,
        ]
        roi_half = self.roi_size / 2.0
        observed = [[0.0] * self.roi_size for _ in range(self.roi_size)]
        fitted = [[0.0] * self.roi_size for _ in range(self.roi_size)]
        residuals = [[0.0] * self.roi_size for _ in range(self.roi_size)]

        for i, (obs_row, fit_row, res_row) in enumerate(zip(observed, fitted, residuals)):
            rel_y = i - roi_half + 0.5
            pixel_y = center_y + rel_y
            for j in range(self.roi_size):
                rel_x = j - roi_half + 0.5
                pixel_x = center_x + rel_x
                if 0.0 <= pixel_x < width and 0.0 <= pixel_y < height:
                    obs_row[j] = bilinear_sample(data, width, height, pixel_x, pixel_y)
                    fit_row[j] = psf.value(rel_x, rel_y, params)
                    res_row[j] = obs_row[j] - fit_row[j]

        return observed, fitted, residuals
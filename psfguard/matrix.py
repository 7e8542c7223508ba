"""Conversions between flat pixel buffers and 2-D arrays, plus PSF templates."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np


def _to_matrix(data: Iterable[int], width: int, height: int, dtype: type) -> np.ndarray:
    values = np.asarray(list(data), dtype=np.int64)
    info = np.iinfo(dtype)
    if values.size > width * height:
        raise ValueError(
            f"{values.size} values do not fit a {width}x{height} image"
        )
    if values.size and (values.min() < info.min or values.max() > info.max):
        raise ValueError(f"values out of range for {np.dtype(dtype).name}")
    mat = np.zeros((height, width), dtype=dtype)
    mat.reshape(-1)[: values.size] = values
    return mat


def create_mat_from_u16(data: Sequence[int], width: int, height: int) -> np.ndarray:
    """Build a ``height`` x ``width`` uint16 array from row-major pixel values."""
    return _to_matrix(data, width, height, np.uint16)


def create_mat_from_u8(data: Sequence[int], width: int, height: int) -> np.ndarray:
    """Build a ``height`` x ``width`` uint8 array from row-major pixel values."""
    return _to_matrix(data, width, height, np.uint8)


def mat_to_u16_list(mat: np.ndarray) -> list[int]:
    """Flatten a 2-D array into a row-major list of 16-bit values."""
    return np.asarray(mat, dtype=np.uint16).reshape(-1).tolist()


def mat_to_u8_list(mat: np.ndarray) -> list[int]:
    """Flatten a 2-D array into a row-major list of 8-bit values."""
    return np.asarray(mat, dtype=np.uint8).reshape(-1).tolist()


def create_gaussian_template(size: int, sigma: float) -> np.ndarray:
    """Return a ``size`` x ``size`` float32 Gaussian, min-max scaled to [0, 1]."""
    center = size / 2.0
    coords = np.arange(size, dtype=np.float64) - center
    xs, ys = np.meshgrid(coords, coords)
    template = np.exp(-(xs * xs + ys * ys) / (2.0 * sigma * sigma)).astype(np.float32)
    if template.size == 0:
        return template
    low = float(template.min())
    high = float(template.max())
    span = high - low
    scale = 1.0 / span if span > np.finfo(np.float64).eps else 0.0
    return ((template.astype(np.float64) - low) * scale).astype(np.float32)


def normalize_u16_to_f32(data: Sequence[int]) -> np.ndarray:
    """Divide each value by the maximum of the data, giving float32 values."""
    values = np.asarray(list(data), dtype=np.float32)
    max_val = np.float32(values.max()) if values.size else np.float32(1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        return values / max_val
"""Wavelet-based removal of large-scale structure from astronomical images."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

_B3_COEFFS = (0.0625, 0.25, 0.375, 0.25, 0.0625)
_B3_OFFSETS = (-2, -1, 0, 1, 2)


def _smooth_axis(image: np.ndarray, scale: int, axis: int) -> np.ndarray:
    """B3 spline smoothing along one axis, renormalising weights at the edges."""
    moved = np.moveaxis(image, axis, -1)
    n = moved.shape[-1]
    total = np.zeros_like(moved)
    weight = np.zeros(n, dtype=np.float64)
    for offset, coeff in zip(_B3_OFFSETS, _B3_COEFFS):
        shift = offset * scale
        if abs(shift) >= n:
            continue
        if shift >= 0:
            total[..., : n - shift] += moved[..., shift:] * coeff
            weight[: n - shift] += coeff
        else:
            total[..., -shift:] += moved[..., : n + shift] * coeff
            weight[-shift:] += coeff
    smoothed = np.divide(total, weight, out=np.zeros_like(total), where=weight > 0)
    return np.moveaxis(smoothed, -1, axis)


@dataclass
class WaveletStructureRemover:
    """Subtracts successive à trous B3 spline layers, leaving fine detail."""

    layers: int = 6

    def _check(self, data: Sequence[float], width: int, height: int) -> np.ndarray:
        image = np.asarray(data, dtype=np.float64).reshape(-1)
        if image.size != width * height:
            raise ValueError(
                f"expected {width * height} values for a {width}x{height} image, "
                f"got {image.size}"
            )
        return image.reshape(height, width)

    def _remove_atrous(self, data: Sequence[float], width: int, height: int) -> np.ndarray:
        residual = self._check(data, width, height).copy()
        if residual.size == 0:
            return residual.reshape(-1)
        for layer in range(self.layers):
            scale = 1 << layer
            horizontal = _smooth_axis(residual, scale, axis=1)
            smoothed = _smooth_axis(horizontal, scale, axis=0)
            residual -= smoothed
        return residual.reshape(-1)

    def remove_structures(
        self, data: Sequence[float], width: int, height: int
    ) -> np.ndarray:
        """Return the residual (small structures and noise) as a flat array."""
        return self._remove_atrous(data, width, height)

    def remove_structures_multi_method(
        self, data: Sequence[float], width: int, height: int
    ) -> np.ndarray:
        """Return the structure-free residual using every available method."""
        return self._remove_atrous(data, width, height)

    def preprocess_with_edge_preserving(
        self, data: Sequence[float], width: int, height: int
    ) -> np.ndarray:
        """Return the data unchanged as a flat float array after size checking."""
        return self._check(data, width, height).reshape(-1).copy()
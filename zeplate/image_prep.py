from __future__ import annotations

import numpy as np
from scipy.ndimage import gaussian_filter, zoom

from .errors import InputError

MAD_TO_SIGMA = 1.4826


def validate_image(img: object) -> np.ndarray:
    """Return *img* as a finite float32 2-D array or raise :class:`InputError`."""
    try:
        data = np.asarray(img, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InputError(f"image is not numeric: {exc}") from exc
    if data.ndim != 2:
        raise InputError(f"image must be two-dimensional, got shape {data.shape}")
    if data.size == 0 or min(data.shape) < 3:
        raise InputError(f"image is too small to solve: shape {data.shape}")
    finite = np.isfinite(data)
    if not finite.any():
        raise InputError("image contains no finite pixels")
    if not finite.all():
        data = np.where(finite, data, np.float32(np.median(data[finite])))
    return data


def _grid_edges(length: int, divisions: int) -> np.ndarray:
    """Return monotonic integer edges covering [0, length]."""
    divisions = max(1, min(int(divisions), int(length)))
    edges = np.linspace(0, int(length), divisions + 1, dtype=int)
    edges[0] = 0
    edges[-1] = int(length)
    return edges


def grid_statistics(array: np.ndarray, divisions: int = 8) -> tuple[np.ndarray, np.ndarray]:
    """Per-cell median and MAD sigma, broadcast back to the array shape."""
    median_map = np.empty_like(array, dtype=np.float32)
    sigma_map = np.empty_like(array, dtype=np.float32)
    global_median = float(np.median(array))
    global_sigma = MAD_TO_SIGMA * float(np.median(np.abs(array - global_median)))
    rows = _grid_edges(array.shape[0], divisions)
    cols = _grid_edges(array.shape[1], divisions)
    for r in range(rows.shape[0] - 1):
        y0, y1 = int(rows[r]), int(rows[r + 1])
        for c in range(cols.shape[0] - 1):
            x0, x1 = int(cols[c]), int(cols[c + 1])
            block = array[y0:y1, x0:x1]
            if block.size == 0:
                continue
            med = float(np.median(block))
            sigma = MAD_TO_SIGMA * float(np.median(np.abs(block - med)))
            if not np.isfinite(med):
                med = global_median
            if not np.isfinite(sigma) or sigma <= 0.0:
                sigma = global_sigma
            median_map[y0:y1, x0:x1] = med
            sigma_map[y0:y1, x0:x1] = sigma
    return median_map, sigma_map


def estimate_background(img: np.ndarray, *, grid_divisions: int = 8) -> tuple[np.ndarray, np.ndarray]:
    """Estimate a smooth background map and a per-pixel noise map.

    The background is a coarse grid median, blurred across cell boundaries so
    that gradients do not leave steps in the residual image.
    """
    median_map, sigma_map = grid_statistics(img, grid_divisions)
    cells = max(1, min(int(grid_divisions), min(img.shape)))
    cell = min(img.shape[0], img.shape[1]) / float(cells)
    if cells > 1:
        median_map = gaussian_filter(median_map, sigma=max(1.0, cell / 4.0), mode="nearest")
    return median_map, sigma_map


def downsample_image(img: np.ndarray, factor: int) -> np.ndarray:
    """Downsample *img* by an integer *factor* using bilinear interpolation."""
    factor = max(1, int(factor))
    if factor == 1:
        return img
    scale = 1.0 / float(factor)
    return zoom(img, scale, order=1)

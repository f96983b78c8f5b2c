from __future__ import annotations

import logging
import math

import numpy as np
from scipy.ndimage import center_of_mass, find_objects, gaussian_filter, label, maximum, sum_labels

from .errors import InputError
from .image_prep import downsample_image, estimate_background, grid_statistics, validate_image

logger = logging.getLogger(__name__)

# Smallest blob kept on a downsampled grid; noise spikes shrink to one or two pixels
MIN_BINNED_AREA = 3

STAR_DTYPE = np.dtype(
    [
        ("x", "f8"),
        ("y", "f8"),
        ("flux", "f8"),
        ("peak", "f8"),
        ("area", "i4"),
        ("fwhm", "f4"),
        ("id", "i8"),
    ]
)


def empty_stars() -> np.ndarray:
    return np.zeros(0, dtype=STAR_DTYPE)


def _check_values(xs: np.ndarray, ys: np.ndarray, fl: np.ndarray) -> None:
    if not (np.isfinite(xs).all() and np.isfinite(ys).all()):
        raise InputError("star positions must be finite")
    if not np.isfinite(fl).all() or (fl < 0).any():
        raise InputError("star fluxes must be finite and non-negative")


def validate_star_array(stars: np.ndarray) -> np.ndarray:
    """Check a ready-made ``STAR_DTYPE`` array and return it unchanged."""
    _check_values(stars["x"], stars["y"], stars["flux"])
    return stars


def make_star_array(
    x: np.ndarray,
    y: np.ndarray,
    flux: np.ndarray | None = None,
    *,
    ids: np.ndarray | None = None,
    sort: bool = True,
) -> np.ndarray:
    """Build a star array from externally detected positions (e.g. a SExtractor list).

    Positions must be finite and fluxes non-negative. When *flux* is omitted the
    input order is taken as brightness order.
    """
    xs = np.asarray(x, dtype=np.float64).ravel()
    ys = np.asarray(y, dtype=np.float64).ravel()
    if xs.shape != ys.shape:
        raise InputError("x and y must have the same length")
    if flux is None:
        fl = np.arange(xs.size, 0, -1, dtype=np.float64)
    else:
        fl = np.asarray(flux, dtype=np.float64).ravel()
        if fl.shape != xs.shape:
            raise InputError("flux must match the number of positions")
    _check_values(xs, ys, fl)
    stars = np.zeros(xs.size, dtype=STAR_DTYPE)
    stars["x"] = xs
    stars["y"] = ys
    stars["flux"] = fl
    stars["peak"] = fl
    stars["area"] = 1
    stars["fwhm"] = 0.0
    if ids is None:
        stars["id"] = np.arange(xs.size)
    else:
        stars["id"] = np.asarray(ids, dtype=np.int64).ravel()
    if sort:
        stars = sort_by_brightness(stars)
    return stars


def sort_by_brightness(stars: np.ndarray) -> np.ndarray:
    """Descending flux; ties fall back to (y, x) so the order is reproducible."""
    if stars.size == 0:
        return stars
    order = np.lexsort((stars["x"], stars["y"], -stars["flux"]))
    return stars[order]


def _touches_border(slc: tuple[slice, slice], shape: tuple[int, int]) -> bool:
    rows, cols = slc
    return rows.start <= 0 or cols.start <= 0 or rows.stop >= shape[0] or cols.stop >= shape[1]


def detect_stars(
    img: np.ndarray,
    *,
    k_sigma: float = 3.0,
    min_area: int = 5,
    max_stars: int | None = 500,
    saturation_level: float | None = None,
    smoothing_sigma: float = 1.0,
    grid_divisions: int = 8,
    downsample: int = 1,
) -> np.ndarray:
    """Detect star-like blobs and return them sorted by descending flux.

    Background is a coarse grid median; noise is the MAD of the smoothed
    residual per grid cell. Blobs above ``k_sigma`` times the local noise are
    kept unless they touch the border, are smaller than *min_area* pixels or
    reach *saturation_level*. Returns an empty array when nothing is found.
    """
    data = validate_image(img)
    factor = max(1, int(downsample or 1))
    work = downsample_image(data, factor) if factor > 1 else data
    if min(work.shape) < 3:
        raise InputError(f"downsample factor {factor} leaves no usable image")
    if factor > 1:
        area_limit = max(MIN_BINNED_AREA, math.ceil(int(min_area) / (factor * factor)))
    else:
        area_limit = max(1, int(min_area))
    background, _ = estimate_background(work, grid_divisions=grid_divisions)
    residual = work - background
    smoothed = gaussian_filter(residual, sigma=float(smoothing_sigma)) if smoothing_sigma > 0 else residual
    level, noise = grid_statistics(smoothed, grid_divisions)
    dynamic = float(np.max(smoothed) - np.median(smoothed))
    noise = np.maximum(noise, 1e-3 * max(dynamic, 0.0))
    mask = smoothed > level + float(k_sigma) * noise
    if not mask.any():
        logger.debug("no pixels above %.1f sigma", k_sigma)
        return empty_stars()
    structure = np.ones((3, 3), dtype=bool)
    labeled, count = label(mask, structure=structure)
    if count == 0:
        return empty_stars()
    indices = np.arange(1, int(count) + 1)
    weights = np.clip(residual, 0.0, None)
    areas = sum_labels(np.ones_like(work), labeled, indices)
    fluxes = sum_labels(weights, labeled, indices)
    peaks = maximum(work, labeled, indices)
    centers = center_of_mass(weights, labeled, indices)
    slices = find_objects(labeled)
    rows: list[tuple[float, float, float, float, int, float]] = []
    rejected = {"border": 0, "area": 0, "saturated": 0, "flux": 0}
    for pos, idx in enumerate(indices):
        slc = slices[idx - 1]
        if slc is None:
            continue
        area = int(areas[pos])
        if area < area_limit:
            rejected["area"] += 1
            continue
        if _touches_border(slc, work.shape):
            rejected["border"] += 1
            continue
        peak = float(peaks[pos])
        if saturation_level is not None and peak >= float(saturation_level):
            rejected["saturated"] += 1
            continue
        flux = float(fluxes[pos])
        cy, cx = centers[pos]
        if flux <= 0.0 or not (np.isfinite(cx) and np.isfinite(cy)):
            rejected["flux"] += 1
            continue
        fwhm = float(np.sqrt(area / np.pi) * 2.0)
        rows.append((float(cx), float(cy), flux, peak, area, fwhm))
    logger.debug(
        "detected %d blobs, kept %d (rejected border=%d area=%d saturated=%d flux=%d)",
        int(count),
        len(rows),
        rejected["border"],
        rejected["area"],
        rejected["saturated"],
        rejected["flux"],
    )
    if not rows:
        return empty_stars()
    stars = np.zeros(len(rows), dtype=STAR_DTYPE)
    table = np.array(rows, dtype=np.float64)
    stars["x"] = table[:, 0]
    stars["y"] = table[:, 1]
    stars["flux"] = table[:, 2]
    stars["peak"] = table[:, 3]
    stars["area"] = table[:, 4].astype(np.int32)
    stars["fwhm"] = table[:, 5]
    if factor > 1:
        sx = (data.shape[1] - 1) / max(1, work.shape[1] - 1)
        sy = (data.shape[0] - 1) / max(1, work.shape[0] - 1)
        stars["x"] *= sx
        stars["y"] *= sy
        stars["fwhm"] *= factor
        stars["area"] *= factor * factor
    stars = sort_by_brightness(stars)
    if max_stars and stars.size > max_stars:
        stars = stars[: int(max_stars)]
    stars["id"] = np.arange(stars.size)
    return stars

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from .catalog import make_catalog
from .matcher import SimilarityTransform
from .projections import deproject_tan, project_tan
from .star_detect import make_star_array

FWHM_TO_SIGMA = 1.0 / (2.0 * math.sqrt(2.0 * math.log(2.0)))


@dataclass(frozen=True, eq=False)
class SyntheticField:
    """A star list generated from a catalog through a known transform."""

    stars: np.ndarray
    catalog: np.ndarray
    transform: SimilarityTransform
    center: tuple[float, float]
    shape: tuple[int, int]
    catalog_index: np.ndarray  # catalog row of each star, -1 for spurious detections

    @property
    def scale_arcsec(self) -> float:
        return self.transform.scale * 3600.0

    @property
    def rotation_deg(self) -> float:
        return self.transform.rotation_deg


def field_transform(
    scale_arcsec: float,
    rotation_deg: float,
    reference_px: tuple[float, float],
    *,
    parity: int = 1,
) -> SimilarityTransform:
    """Pixel to plane similarity sending *reference_px* to the tangent point."""
    scale = float(scale_arcsec) / 3600.0
    rotation = math.radians(rotation_deg)
    ref = complex(*reference_px)
    if parity < 0:
        ref = ref.conjugate()
    t = -scale * complex(math.cos(rotation), math.sin(rotation)) * ref
    return SimilarityTransform(scale, rotation, (t.real, t.imag), -1 if parity < 0 else 1)


def random_catalog(
    count: int,
    center: tuple[float, float],
    size_deg: float,
    *,
    rng: np.random.Generator | None = None,
    mag_range: tuple[float, float] = (6.0, 12.0),
    first_id: int = 0,
) -> np.ndarray:
    """Stars scattered uniformly over a ``size_deg`` square of the tangent plane at *center*."""
    rng = rng or np.random.default_rng()
    half = size_deg / 2.0
    xi = rng.uniform(-half, half, count)
    eta = rng.uniform(-half, half, count)
    ra, dec = deproject_tan(xi, eta, center[0], center[1])
    mags = rng.uniform(mag_range[0], mag_range[1], count)
    return make_catalog(ra, dec, mags, np.arange(first_id, first_id + count))


def catalog_in_footprint(
    count: int,
    transform: SimilarityTransform,
    center: tuple[float, float],
    shape: tuple[int, int],
    *,
    rng: np.random.Generator | None = None,
    mag_range: tuple[float, float] = (6.0, 12.0),
    border_px: float = 16.0,
    first_id: int = 0,
) -> np.ndarray:
    """Catalog stars whose projection lands inside the image footprint."""
    rng = rng or np.random.default_rng()
    height, width = shape
    px = np.column_stack(
        (
            rng.uniform(border_px, width - 1 - border_px, count),
            rng.uniform(border_px, height - 1 - border_px, count),
        )
    )
    plane = transform.apply(px)
    ra, dec = deproject_tan(plane[:, 0], plane[:, 1], center[0], center[1])
    mags = rng.uniform(mag_range[0], mag_range[1], count)
    return make_catalog(ra, dec, mags, np.arange(first_id, first_id + count))


def flux_from_mag(mag: np.ndarray, zero_point: float = 20.0) -> np.ndarray:
    return 10.0 ** (-0.4 * (np.asarray(mag, dtype=np.float64) - zero_point))


def make_field(
    catalog: np.ndarray,
    center: tuple[float, float],
    *,
    scale_arcsec: float,
    rotation_deg: float,
    reference_px: tuple[float, float] | None = None,
    shape: tuple[int, int] = (1024, 1024),
    parity: int = 1,
    noise_px: float = 0.0,
    border_px: float = 0.0,
    drop_fraction: float = 0.0,
    spurious: int = 0,
    rng: np.random.Generator | None = None,
) -> SyntheticField:
    """Project *catalog* through a known transform into a star list.

    Stars outside the frame (less *border_px*) are removed, a *drop_fraction*
    of the rest is lost, *spurious* random detections are added and centroids
    get Gaussian noise of *noise_px*.
    """
    rng = rng or np.random.default_rng()
    height, width = shape
    if reference_px is None:
        reference_px = (width / 2.0, height / 2.0)
    transform = field_transform(scale_arcsec, rotation_deg, reference_px, parity=parity)
    xi, eta = project_tan(catalog["ra"], catalog["dec"], center[0], center[1])
    visible = np.isfinite(xi) & np.isfinite(eta)
    rows = np.nonzero(visible)[0]
    pixels = transform.inverse(np.column_stack((xi[visible], eta[visible])))
    inside = (
        (pixels[:, 0] >= border_px)
        & (pixels[:, 0] <= width - 1 - border_px)
        & (pixels[:, 1] >= border_px)
        & (pixels[:, 1] <= height - 1 - border_px)
    )
    rows = rows[inside]
    pixels = pixels[inside]
    if drop_fraction > 0.0 and rows.size:
        keep = rng.random(rows.size) >= drop_fraction
        rows = rows[keep]
        pixels = pixels[keep]
    if noise_px > 0.0:
        pixels = pixels + rng.normal(0.0, noise_px, pixels.shape)
    flux = flux_from_mag(catalog["mag"][rows])
    source = rows.astype(np.int64)
    if spurious > 0:
        extra = np.column_stack((rng.uniform(0, width - 1, spurious), rng.uniform(0, height - 1, spurious)))
        pixels = np.vstack((pixels, extra))
        flux = np.concatenate((flux, rng.uniform(flux.min() if flux.size else 1.0, flux.max() if flux.size else 10.0, spurious)))
        source = np.concatenate((source, np.full(spurious, -1, dtype=np.int64)))
    stars = make_star_array(pixels[:, 0], pixels[:, 1], flux, ids=source)
    return SyntheticField(
        stars=stars,
        catalog=catalog,
        transform=transform,
        center=(float(center[0]), float(center[1])),
        shape=(int(height), int(width)),
        catalog_index=stars["id"].copy(),
    )


def render_image(
    stars: np.ndarray,
    shape: tuple[int, int],
    *,
    fwhm: float = 3.0,
    background: float = 100.0,
    noise: float = 2.0,
    saturation: float | None = None,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Render stars as Gaussian PSFs on a flat background with Gaussian read noise."""
    rng = rng or np.random.default_rng()
    height, width = shape
    image = np.full((height, width), float(background), dtype=np.float64)
    sigma = max(float(fwhm) * FWHM_TO_SIGMA, 0.3)
    half = int(math.ceil(4.0 * sigma))
    norm = 1.0 / (2.0 * math.pi * sigma * sigma)
    for x, y, flux in zip(stars["x"], stars["y"], stars["flux"]):
        x0, x1 = max(0, int(x) - half), min(width, int(x) + half + 2)
        y0, y1 = max(0, int(y) - half), min(height, int(y) + half + 2)
        if x0 >= x1 or y0 >= y1:
            continue
        yy, xx = np.mgrid[y0:y1, x0:x1]
        image[y0:y1, x0:x1] += flux * norm * np.exp(-((xx - x) ** 2 + (yy - y) ** 2) / (2.0 * sigma * sigma))
    if noise > 0.0:
        image += rng.normal(0.0, noise, image.shape)
    if saturation is not None:
        image = np.minimum(image, saturation)
    return image.astype(np.float32)

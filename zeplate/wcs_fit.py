from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np
from astropy import units as u
from astropy.coordinates import SkyCoord
from astropy.wcs import NoConvergence, WCS
from astropy.wcs.utils import fit_wcs_from_points

from .matcher import SimilarityTransform
from .projections import deproject_tan, project_tan

MAX_ORDER = 3


def term_count(order: int) -> int:
    return (order + 1) * (order + 2) // 2


def _design(u_: np.ndarray, v_: np.ndarray, order: int) -> np.ndarray:
    columns = []
    for total in range(order + 1):
        for j in range(total + 1):
            columns.append(u_ ** (total - j) * v_ ** j)
    return np.column_stack(columns)


def _normalizer(points: np.ndarray) -> tuple[np.ndarray, float]:
    mean = points.mean(axis=0)
    spread = float(np.mean(np.hypot(*(points - mean).T))) / math.sqrt(2.0)
    if not np.isfinite(spread) or spread <= 0.0:
        raise np.linalg.LinAlgError("points have no spatial extent")
    return mean, spread


@dataclass(frozen=True, eq=False)
class PolynomialTransform:
    """Pixel to tangent-plane map fitted in normalized coordinates.

    Order 1 is a general affine map; orders 2 and 3 add polynomial terms.
    Both sides are shifted to their centroid and scaled to unit RMS radius
    before the fit so that the normal equations stay well conditioned.
    """

    order: int
    coeffs: np.ndarray  # (terms, 2) in normalized units
    src_mean: np.ndarray
    src_scale: float
    dst_mean: np.ndarray
    dst_scale: float

    def apply(self, xy: np.ndarray) -> np.ndarray:
        pts = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        norm = (pts - self.src_mean) / self.src_scale
        design = _design(norm[:, 0], norm[:, 1], self.order)
        return design @ self.coeffs * self.dst_scale + self.dst_mean

    def jacobian(self) -> np.ndarray:
        """Linear part (degrees per pixel) at the centroid of the fitted pixels."""
        ratio = self.dst_scale / self.src_scale
        c = self.coeffs
        return ratio * np.array([[c[1, 0], c[2, 0]], [c[1, 1], c[2, 1]]])

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.jacobian()))

    @property
    def parity(self) -> int:
        return -1 if self.determinant < 0 else 1

    @property
    def scale(self) -> float:
        return math.sqrt(abs(self.determinant))

    @property
    def rotation(self) -> float:
        (a, b), (c, d) = self.jacobian()
        if self.parity < 0:
            return math.atan2(b + c, a - d)
        return math.atan2(c - b, a + d)

    def to_similarity(self) -> SimilarityTransform:
        origin = self.apply(np.zeros((1, 2)))[0]
        return SimilarityTransform(
            scale=self.scale,
            rotation=self.rotation,
            translation=(float(origin[0]), float(origin[1])),
            parity=self.parity,
        )


def fit_polynomial(src: np.ndarray, dst: np.ndarray, order: int = 1) -> PolynomialTransform:
    """Least-squares polynomial from pixel positions *src* to plane positions *dst*.

    Raises :class:`numpy.linalg.LinAlgError` when the system is rank deficient.
    """
    order = int(order)
    if not 1 <= order <= MAX_ORDER:
        raise ValueError(f"polynomial order must be between 1 and {MAX_ORDER}")
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if src.shape != dst.shape:
        raise ValueError("src and dst must have the same shape")
    terms = term_count(order)
    if src.shape[0] < terms:
        raise np.linalg.LinAlgError(f"{src.shape[0]} points cannot constrain {terms} terms")
    src_mean, src_scale = _normalizer(src)
    dst_mean, dst_scale = _normalizer(dst)
    norm_src = (src - src_mean) / src_scale
    norm_dst = (dst - dst_mean) / dst_scale
    design = _design(norm_src[:, 0], norm_src[:, 1], order)
    coeffs, _, rank, _ = np.linalg.lstsq(design, norm_dst, rcond=None)
    if rank < terms:
        raise np.linalg.LinAlgError("degenerate polynomial fit")
    transform = PolynomialTransform(order, coeffs, src_mean, src_scale, dst_mean, dst_scale)
    if not np.isfinite(transform.determinant) or abs(transform.determinant) < 1e-300:
        raise np.linalg.LinAlgError("singular linear part")
    return transform


def tan_from_similarity(
    transform: SimilarityTransform,
    tangent_point: tuple[float, float],
) -> WCS:
    """TAN WCS equivalent to *transform* on the plane tangent at *tangent_point*."""
    wcs = WCS(naxis=2)
    wcs.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    wcs.wcs.cunit = ["deg", "deg"]
    crpix0 = transform.inverse(np.zeros((1, 2)))[0]
    # FITS CRPIX is 1-based; astropy with origin=0 uses (pixel - (CRPIX-1))
    wcs.wcs.crpix = [float(crpix0[0] + 1.0), float(crpix0[1] + 1.0)]
    wcs.wcs.crval = [float(tangent_point[0]), float(tangent_point[1])]
    wcs.wcs.cd = transform.matrix()
    wcs.wcs.radesys = "ICRS"
    return wcs


def pixel_residuals(wcs: WCS, matches: np.ndarray) -> np.ndarray:
    """Pixel distance between each matched star and its catalog position mapped through *wcs*."""
    predicted = wcs.all_world2pix(matches[:, 2:4], 0)
    return np.hypot(predicted[:, 0] - matches[:, 0], predicted[:, 1] - matches[:, 1])


def _stats_from_wcs(wcs: WCS, matches: np.ndarray) -> dict[str, float | int]:
    residuals = pixel_residuals(wcs, matches)
    rms_px = float(np.sqrt(np.mean(residuals ** 2)))
    return {"rms_px": rms_px, "mean_px": float(np.mean(residuals)), "inliers": len(matches)}


def fit_wcs_tan(
    matches: np.ndarray,
    *,
    crpix: tuple[float, float] | None = None,
    crval: tuple[float, float] | None = None,
    iterations: int = 3,
) -> tuple[WCS, dict[str, Any]]:
    """Fit a TAN WCS to ``(x, y, ra, dec)`` rows.

    The catalog positions are projected at the current tangent point, an
    affine map is fitted, and the tangent point is moved to the sky position
    of *crpix* before refitting.
    """
    if matches.size == 0:
        raise ValueError("no matches supplied")
    matches = np.asarray(matches, dtype=np.float64)
    pixels = matches[:, :2]
    if crpix is None:
        crpix = (float(np.mean(pixels[:, 0])), float(np.mean(pixels[:, 1])))
    if crval is None:
        crval = (float(np.mean(matches[:, 2])), float(np.mean(matches[:, 3])))
    ref = np.array([crpix], dtype=np.float64)
    center = (float(crval[0]), float(crval[1]))
    affine = None
    for _ in range(max(1, int(iterations))):
        xi, eta = project_tan(matches[:, 2], matches[:, 3], center[0], center[1])
        affine = fit_polynomial(pixels, np.column_stack((xi, eta)), order=1)
        offset = affine.apply(ref)[0]
        ra, dec = deproject_tan(offset[0], offset[1], center[0], center[1])
        center = (float(ra), float(dec))
    xi, eta = project_tan(matches[:, 2], matches[:, 3], center[0], center[1])
    affine = fit_polynomial(pixels, np.column_stack((xi, eta)), order=1)
    wcs = WCS(naxis=2)
    wcs.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    wcs.wcs.cunit = ["deg", "deg"]
    wcs.wcs.crpix = [crpix[0] + 1.0, crpix[1] + 1.0]
    wcs.wcs.crval = [center[0], center[1]]
    wcs.wcs.cd = affine.jacobian()
    wcs.wcs.radesys = "ICRS"
    stats = _stats_from_wcs(wcs, matches)
    return wcs, stats


def fit_wcs_sip(matches: np.ndarray, *, order: int = 2) -> tuple[WCS, dict[str, Any]]:
    if matches.size == 0:
        raise ValueError("no matches supplied")
    matches = np.asarray(matches, dtype=np.float64)
    pixels = matches[:, :2]
    world = matches[:, 2:4]
    coords = SkyCoord(ra=world[:, 0] * u.deg, dec=world[:, 1] * u.deg, frame="icrs")
    wcs = fit_wcs_from_points((pixels[:, 0], pixels[:, 1]), coords, sip_degree=order, projection="TAN")
    try:
        stats = _stats_from_wcs(wcs, matches)
    except NoConvergence as exc:
        raise ValueError(f"SIP order {order} does not invert over the matched stars") from exc
    return wcs, stats


def needs_sip(
    stats: dict[str, Any],
    fov_deg: float,
    *,
    rms_threshold_px: float = 0.9,
    min_inliers: int = 50,
    min_fov_deg: float = 2.0,
) -> bool:
    rms_px = stats.get("rms_px", float("inf"))
    inliers = stats.get("inliers", 0)
    return fov_deg >= min_fov_deg and rms_px > rms_threshold_px and inliers >= min_inliers


def wcs_scale_rotation(wcs: WCS) -> tuple[float, float, int]:
    """(scale arcsec/px, rotation degrees in [0, 360), parity) of the CD matrix."""
    cd = wcs.wcs.cd if wcs.wcs.has_cd() else wcs.pixel_scale_matrix
    (a, b), (c, d) = np.asarray(cd, dtype=np.float64)
    det = a * d - b * c
    scale = math.sqrt(abs(det)) * 3600.0
    if det < 0:
        rotation = math.atan2(b + c, a - d)
        parity = -1
    else:
        rotation = math.atan2(c - b, a + d)
        parity = 1
    return scale, math.degrees(rotation) % 360.0, parity

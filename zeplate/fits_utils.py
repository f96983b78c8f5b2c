from __future__ import annotations

import math
from typing import Optional

import astropy.units as u
import numpy as np
from astropy.coordinates import Angle
from astropy.io import fits

from .solver import SolveHints

RA_KEYS = ("RA", "OBJCTRA", "CRVAL1")
DEC_KEYS = ("DEC", "OBJCTDEC", "CRVAL2")
SCALE_KEYS = ("SCALE", "PIXSCALE", "SECPIX", "PIXSCAL1")


def pixel_scale_from_optics(
    focal_mm: float,
    pixel_um: float,
    binning: int = 1,
    reducer: float = 1.0,
) -> Optional[float]:
    """Pixel scale in arcsec/pixel: ``206.265 * pixel * binning / (focal * reducer)``."""
    try:
        focal = float(focal_mm) * float(reducer or 1.0)
        pixel = float(pixel_um) * max(1, int(binning or 1))
    except (TypeError, ValueError):
        return None
    if not (focal > 0.0 and pixel > 0.0) or not math.isfinite(focal):
        return None
    return 206.265 * pixel / focal


def estimate_scale_and_fov(
    header: fits.Header,
    width: int,
    height: int,
) -> tuple[Optional[float], tuple[Optional[float], Optional[float]]]:
    focal_len = header.get("FOCALLEN") or header.get("FOCLEN") or header.get("FOCALLENGTH")
    if focal_len is None:
        return None, (None, None)
    pix_x = header.get("XPIXSZ") or header.get("PIXSIZE1")
    pix_y = header.get("YPIXSZ") or header.get("PIXSIZE2") or pix_x
    if pix_x is None:
        return None, (None, None)
    try:
        pix_um = (float(pix_x) + float(pix_y)) / 2.0
    except (TypeError, ValueError):
        return None, (None, None)
    # XPIXSZ already includes binning in most capture software
    scale = pixel_scale_from_optics(focal_len, pix_um)
    if scale is None:
        return None, (None, None)
    fov_x = scale * width / 3600.0
    fov_y = scale * height / 3600.0
    return float(scale), (float(fov_x), float(fov_y))


def scale_from_header(header: fits.Header) -> Optional[float]:
    """Pixel scale in arcsec/pixel from explicit scale keywords or an existing CD/CDELT matrix."""
    for key in SCALE_KEYS:
        value = header.get(key)
        try:
            scale = float(value) if value is not None else None
        except (TypeError, ValueError):
            scale = None
        if scale and scale > 0.0 and math.isfinite(scale):
            return scale
    if all(key in header for key in ("CD1_1", "CD1_2", "CD2_1", "CD2_2")):
        try:
            det = float(header["CD1_1"]) * float(header["CD2_2"]) - float(header["CD1_2"]) * float(header["CD2_1"])
        except (TypeError, ValueError):
            det = 0.0
        if det != 0.0 and math.isfinite(det):
            return math.sqrt(abs(det)) * 3600.0
    if "CDELT1" in header and "CDELT2" in header:
        try:
            det = abs(float(header["CDELT1"]) * float(header["CDELT2"]))
        except (TypeError, ValueError):
            det = 0.0
        if det > 0.0 and math.isfinite(det):
            return math.sqrt(det) * 3600.0
    return None


def parse_angle(value: object, *, is_ra: bool) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float, np.floating)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        try:
            angle = Angle(text, unit=u.hourangle if is_ra else u.deg)
            return float(angle.degree)
        except (ValueError, u.UnitsError):
            return None


def _first_angle(header: fits.Header, keys: tuple[str, ...], *, is_ra: bool) -> Optional[float]:
    for key in keys:
        if key not in header:
            continue
        # OBJCTRA is sexagesimal hours; plain RA/CRVAL1 values are degrees
        value = header[key]
        angle = parse_angle(value, is_ra=is_ra and isinstance(value, str))
        if angle is not None and math.isfinite(angle):
            return angle
    return None


def hints_from_header(
    header: fits.Header,
    width: int,
    height: int,
    *,
    scale_tolerance: float = 0.1,
    radius_factor: float = 1.5,
) -> SolveHints:
    """Derive pointing and pixel-scale hints from common FITS keywords."""
    scale = scale_from_header(header)
    if scale is None:
        scale, _ = estimate_scale_and_fov(header, width, height)
    ra = _first_angle(header, RA_KEYS, is_ra=True)
    dec = _first_angle(header, DEC_KEYS, is_ra=False)
    if dec is not None and not -90.0 <= dec <= 90.0:
        dec = None
    radius = None
    if ra is not None and dec is not None and scale:
        radius = max(0.05, 0.5 * math.hypot(width, height) * scale / 3600.0 * radius_factor)
    return SolveHints(
        pixel_scale_arcsec=scale,
        scale_tolerance=scale_tolerance if scale else None,
        ra_deg=(ra % 360.0) if ra is not None and dec is not None else None,
        dec_deg=dec if ra is not None else None,
        radius_deg=radius,
    )

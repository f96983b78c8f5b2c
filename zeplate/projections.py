from __future__ import annotations

import math
from typing import Tuple

import numpy as np


def project_tan(
    ra_deg: np.ndarray,
    dec_deg: np.ndarray,
    center_ra: float,
    center_dec: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Project spherical coordinates to a tangent plane centered on (center_ra, center_dec).

    Returns standard coordinates (xi, eta) in degrees; points on the far
    hemisphere come back as NaN.
    """
    ra_rad = np.deg2rad(np.asarray(ra_deg, dtype=np.float64))
    dec_rad = np.deg2rad(np.asarray(dec_deg, dtype=np.float64))
    ra0_rad = math.radians(center_ra)
    dec0_rad = math.radians(center_dec)
    dra = (ra_rad - ra0_rad + math.pi) % (2 * math.pi) - math.pi
    sin_dec = np.sin(dec_rad)
    cos_dec = np.cos(dec_rad)
    sin_dec0 = math.sin(dec0_rad)
    cos_dec0 = math.cos(dec0_rad)
    cos_dra = np.cos(dra)
    sin_dra = np.sin(dra)
    cosc = sin_dec0 * sin_dec + cos_dec0 * cos_dec * cos_dra
    safe = cosc > 1e-8
    x = np.full_like(ra_rad, np.nan)
    y = np.full_like(dec_rad, np.nan)
    x[safe] = (cos_dec[safe] * sin_dra[safe]) / cosc[safe]
    y[safe] = (cos_dec0 * sin_dec[safe] - sin_dec0 * cos_dec[safe] * cos_dra[safe]) / cosc[safe]
    return np.degrees(x), np.degrees(y)


def deproject_tan(
    xi_deg: np.ndarray,
    eta_deg: np.ndarray,
    center_ra: float,
    center_dec: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`project_tan`; returns (ra, dec) in degrees, RA in [0, 360)."""
    xi = np.deg2rad(np.asarray(xi_deg, dtype=np.float64))
    eta = np.deg2rad(np.asarray(eta_deg, dtype=np.float64))
    ra0 = math.radians(center_ra)
    dec0 = math.radians(center_dec)
    sin_dec0 = math.sin(dec0)
    cos_dec0 = math.cos(dec0)
    denom = cos_dec0 - eta * sin_dec0
    ra = ra0 + np.arctan2(xi, denom)
    dec = np.arctan2(sin_dec0 + eta * cos_dec0, np.hypot(xi, denom))
    return np.degrees(ra) % 360.0, np.degrees(dec)


def angular_separation(ra1, dec1, ra2, dec2):
    """Great-circle distance in degrees (Vincenty form, stable at small angles)."""
    r1 = np.deg2rad(ra1)
    r2 = np.deg2rad(ra2)
    d1 = np.deg2rad(dec1)
    d2 = np.deg2rad(dec2)
    dra = r2 - r1
    sin_d1, cos_d1 = np.sin(d1), np.cos(d1)
    sin_d2, cos_d2 = np.sin(d2), np.cos(d2)
    num1 = cos_d2 * np.sin(dra)
    num2 = cos_d1 * sin_d2 - sin_d1 * cos_d2 * np.cos(dra)
    denom = sin_d1 * sin_d2 + cos_d1 * cos_d2 * np.cos(dra)
    return np.degrees(np.arctan2(np.hypot(num1, num2), denom))


def radec_to_vectors(ra_deg: np.ndarray, dec_deg: np.ndarray) -> np.ndarray:
    """Unit vectors (n, 3) for the given equatorial coordinates."""
    ra = np.deg2rad(np.asarray(ra_deg, dtype=np.float64))
    dec = np.deg2rad(np.asarray(dec_deg, dtype=np.float64))
    cos_dec = np.cos(dec)
    return np.column_stack((cos_dec * np.cos(ra), cos_dec * np.sin(ra), np.sin(dec)))


def chord_for_angle(radius_deg: float) -> float:
    """Euclidean chord length between unit vectors separated by *radius_deg*."""
    radius = min(max(float(radius_deg), 0.0), 180.0)
    return 2.0 * math.sin(math.radians(radius) / 2.0)

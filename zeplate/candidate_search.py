from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from astropy import units as u
from astropy.coordinates import SkyCoord

from .projections import angular_separation

logger = logging.getLogger(__name__)

MIN_RING_POINTS = 6


@dataclass(frozen=True)
class SearchRegion:
    ra_deg: float
    dec_deg: float
    radius_deg: float
    distance_deg: float = 0.0
    order: int = 0


@dataclass(frozen=True)
class SolveAttempt:
    region: SearchRegion
    mag_limit: float | None
    sequence: int = 0

    @property
    def label(self) -> str:
        mag = "all" if self.mag_limit is None else f"{self.mag_limit:g}"
        return f"#{self.sequence} ({self.region.ra_deg:.3f}, {self.region.dec_deg:+.3f}) mag<{mag}"


def field_radius_deg(width: int, height: int, scale_arcsec: float) -> float:
    """Angular radius of the circle circumscribing a *width* x *height* image."""
    return 0.5 * math.hypot(width, height) * scale_arcsec / 3600.0


def tile_sky(step_deg: float) -> list[tuple[float, float]]:
    """Cover the sphere with centres spaced roughly *step_deg* apart.

    Declination bands run from the north pole to the south pole; within a
    band the RA spacing widens by ``1 / cos(dec)``.
    """
    step = float(step_deg)
    if not step > 0.0:
        raise ValueError("step_deg must be positive")
    bands = max(1, int(math.ceil(180.0 / step)))
    centres: list[tuple[float, float]] = []
    for band in range(bands + 1):
        dec = 90.0 - band * 180.0 / bands
        circumference = 360.0 * math.cos(math.radians(dec))
        count = max(1, int(math.ceil(circumference / step)))
        offset = 0.0 if band % 2 == 0 else 0.5
        for k in range(count):
            centres.append((((k + offset) * 360.0 / count) % 360.0, dec))
    return centres


def _ring(ra_deg: float, dec_deg: float, radius_deg: float, step_deg: float) -> list[tuple[float, float]]:
    count = max(MIN_RING_POINTS, int(math.ceil(2.0 * math.pi * radius_deg / step_deg)))
    center = SkyCoord(ra=ra_deg * u.deg, dec=dec_deg * u.deg, frame="icrs")
    angles = np.arange(count) * (360.0 / count)
    points = center.directional_offset_by(angles * u.deg, np.full(count, radius_deg) * u.deg)
    return [(float(ra) % 360.0, float(dec)) for ra, dec in zip(points.ra.deg, points.dec.deg)]


def plan_regions(
    field_radius: float,
    *,
    ra_deg: float | None = None,
    dec_deg: float | None = None,
    hint_radius_deg: float | None = None,
    step_deg: float | None = None,
    margin: float = 1.2,
) -> list[SearchRegion]:
    """Candidate catalog cones for a field of angular radius *field_radius*.

    With a pointing hint the hint centre comes first, followed by rings spaced
    *step_deg* apart out to *hint_radius_deg*. Without one the whole sky is
    tiled. Each cone covers the field plus the worst-case offset between the
    true centre and the nearest candidate.
    """
    step = float(step_deg) if step_deg else max(field_radius, 1e-3)
    radius = field_radius * float(margin) + 0.75 * step
    regions: list[SearchRegion] = []
    if ra_deg is None or dec_deg is None:
        for pos, (ra, dec) in enumerate(tile_sky(step)):
            regions.append(SearchRegion(ra, dec, radius, 0.0, pos))
        logger.debug("blind sky tiling: %d regions at %.2f deg spacing", len(regions), step)
        return regions
    regions.append(SearchRegion(float(ra_deg) % 360.0, float(dec_deg), radius, 0.0, 0))
    limit = float(hint_radius_deg or 0.0)
    ring = 1
    while ring * step <= limit + 1e-9:
        for ra, dec in _ring(float(ra_deg), float(dec_deg), ring * step, step):
            distance = float(angular_separation(ra_deg, dec_deg, ra, dec))
            regions.append(SearchRegion(ra, dec, radius, distance, len(regions)))
        ring += 1
    logger.debug("hinted search: %d regions out to %.2f deg", len(regions), limit)
    return regions


def plan_attempts(
    regions: Sequence[SearchRegion],
    magnitude_ladder: Sequence[float | None] | None,
) -> list[SolveAttempt]:
    """Cross regions with magnitude limits, ordered by (distance, magnitude, region order)."""
    ladder: list[float | None] = list(magnitude_ladder) if magnitude_ladder else [None]

    def _mag_key(mag: float | None) -> float:
        return math.inf if mag is None else float(mag)

    combos = sorted(
        ((region, mag) for region in regions for mag in ladder),
        key=lambda item: (round(item[0].distance_deg, 9), _mag_key(item[1]), item[0].order),
    )
    return [SolveAttempt(region, mag, seq) for seq, (region, mag) in enumerate(combos)]

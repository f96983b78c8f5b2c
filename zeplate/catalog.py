from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol, runtime_checkable

import numpy as np
from scipy.spatial import cKDTree

from .errors import InputError
from .projections import chord_for_angle, radec_to_vectors

logger = logging.getLogger(__name__)

CATALOG_DTYPE = np.dtype(
    [
        ("ra", "f8"),
        ("dec", "f8"),
        ("mag", "f4"),
        ("id", "i8"),
    ]
)


@dataclass(frozen=True)
class CatalogStar:
    ra: float
    dec: float
    mag: float
    id: int = -1


@runtime_checkable
class CatalogSource(Protocol):
    def stars_in_region(
        self,
        ra_deg: float,
        dec_deg: float,
        radius_deg: float,
        mag_limit: float | None,
    ) -> Iterable: ...


def empty_catalog() -> np.ndarray:
    return np.zeros(0, dtype=CATALOG_DTYPE)


def make_catalog(ra, dec, mag=None, ids=None) -> np.ndarray:
    """Build a catalog array; positions must be finite, RA is wrapped into [0, 360)."""
    ras = np.asarray(ra, dtype=np.float64).ravel()
    decs = np.asarray(dec, dtype=np.float64).ravel()
    if ras.shape != decs.shape:
        raise InputError("ra and dec must have the same length")
    if not (np.isfinite(ras).all() and np.isfinite(decs).all()):
        raise InputError("catalog positions must be finite")
    if (np.abs(decs) > 90.0).any():
        raise InputError("catalog declinations must lie in [-90, 90]")
    out = np.zeros(ras.size, dtype=CATALOG_DTYPE)
    out["ra"] = ras % 360.0
    out["dec"] = decs
    if mag is None:
        out["mag"] = 0.0
    else:
        mags = np.asarray(mag, dtype=np.float64).ravel()
        if mags.shape != ras.shape:
            raise InputError("mag must match the number of catalog stars")
        out["mag"] = np.where(np.isfinite(mags), mags, np.inf)
    out["id"] = np.arange(ras.size) if ids is None else np.asarray(ids, dtype=np.int64).ravel()
    return out


def _coerce_row(row) -> tuple[float, float, float, int]:
    if isinstance(row, CatalogStar):
        return row.ra, row.dec, row.mag, row.id
    values = tuple(row)
    if len(values) < 2:
        raise InputError(f"catalog entry {row!r} needs at least ra and dec")
    mag = values[2] if len(values) > 2 else 0.0
    ident = values[3] if len(values) > 3 else -1
    return float(values[0]), float(values[1]), float(mag), int(ident)


def as_catalog_array(stars) -> np.ndarray:
    """Normalise a structured array, ``CatalogStar`` objects or tuples to ``CATALOG_DTYPE``."""
    if isinstance(stars, np.ndarray) and stars.dtype.names:
        names = stars.dtype.names
        if "ra" not in names or "dec" not in names:
            raise InputError("catalog array must have 'ra' and 'dec' fields")
        mag = stars["mag"] if "mag" in names else None
        ids = stars["id"] if "id" in names else None
        return make_catalog(stars["ra"], stars["dec"], mag, ids)
    rows = [_coerce_row(row) for row in stars]
    if not rows:
        return empty_catalog()
    table = list(zip(*rows))
    return make_catalog(table[0], table[1], table[2], table[3])


def sort_by_magnitude(stars: np.ndarray) -> np.ndarray:
    if stars.size == 0:
        return stars
    return stars[np.lexsort((stars["id"], stars["mag"]))]


class InMemoryCatalog:
    """Cone search over a fully materialised star list.

    Positions are indexed as unit vectors in a ``cKDTree`` so that a cone of
    radius r becomes a ball of chord length ``2 sin(r / 2)``.
    """

    def __init__(self, stars) -> None:
        self._stars = as_catalog_array(stars)
        self._stars.setflags(write=False)
        if self._stars.size:
            self._tree = cKDTree(radec_to_vectors(self._stars["ra"], self._stars["dec"]))
        else:
            self._tree = None

    def __len__(self) -> int:
        return int(self._stars.size)

    @property
    def stars(self) -> np.ndarray:
        return self._stars

    def stars_in_region(
        self,
        ra_deg: float,
        dec_deg: float,
        radius_deg: float,
        mag_limit: float | None = None,
    ) -> np.ndarray:
        if self._tree is None:
            return empty_catalog()
        center = radec_to_vectors([ra_deg], [dec_deg])[0]
        hits = self._tree.query_ball_point(center, chord_for_angle(radius_deg) + 1e-12)
        subset = self._stars[np.asarray(sorted(hits), dtype=np.int64)]
        if mag_limit is not None:
            subset = subset[subset["mag"] < float(mag_limit)]
        logger.debug(
            "cone ra=%.4f dec=%.4f r=%.3f mag<%s -> %d stars",
            ra_deg,
            dec_deg,
            radius_deg,
            mag_limit,
            subset.size,
        )
        return sort_by_magnitude(subset)


def ensure_catalog_source(catalog) -> CatalogSource:
    """Wrap plain arrays or iterables of stars into :class:`InMemoryCatalog`."""
    if isinstance(catalog, CatalogSource) and not isinstance(catalog, np.ndarray):
        return catalog
    if catalog is None:
        raise InputError("a catalog is required")
    return InMemoryCatalog(catalog)

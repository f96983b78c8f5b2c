from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from .asterisms import DEFAULT_COLLINEAR_TOLERANCE, QuadSet, build_quads
from .catalog import as_catalog_array, sort_by_magnitude
from .projections import project_tan

logger = logging.getLogger(__name__)


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class CatalogIndex:
    """Quad descriptors of one catalog region on its tangent plane.

    Built once per (region, magnitude limit) attempt; read-only afterwards.
    Positions are standard coordinates (xi, eta) in degrees around *center*.
    """

    center: tuple[float, float]
    stars: np.ndarray
    positions: np.ndarray
    quads: QuadSet
    code_tree: cKDTree | None
    star_tree: cKDTree | None

    @classmethod
    def build(
        cls,
        stars,
        center: tuple[float, float],
        *,
        neighbors: int = 8,
        max_stars: int | None = None,
        max_quads: int | None = None,
        min_quad_size_deg: float = 0.0,
        max_quad_size_deg: float | None = None,
        collinear_tolerance: float = DEFAULT_COLLINEAR_TOLERANCE,
        level_base: int | None = None,
    ) -> "CatalogIndex":
        start = time.perf_counter()
        catalog = sort_by_magnitude(as_catalog_array(stars))
        if max_stars is not None and catalog.size > max_stars:
            catalog = catalog[: int(max_stars)]
        xi, eta = project_tan(catalog["ra"], catalog["dec"], float(center[0]), float(center[1]))
        visible = np.isfinite(xi) & np.isfinite(eta)
        if not visible.all():
            logger.debug("dropping %d catalog stars beyond the projection horizon", int((~visible).sum()))
        catalog = catalog[visible]
        positions = np.column_stack((xi[visible], eta[visible])).astype(np.float64)
        quads = build_quads(
            positions,
            neighbors=neighbors,
            max_quads=max_quads,
            collinear_tolerance=collinear_tolerance,
            min_size=min_quad_size_deg,
            max_size=max_quad_size_deg,
            level_base=level_base,
        )
        code_tree = cKDTree(quads.codes) if len(quads) else None
        star_tree = cKDTree(positions) if positions.shape[0] else None
        index = cls(
            center=(float(center[0]), float(center[1])),
            stars=_readonly(catalog),
            positions=_readonly(positions),
            quads=quads,
            code_tree=code_tree,
            star_tree=star_tree,
        )
        logger.debug(
            "catalog index at (%.4f, %.4f): %d stars, %d quads in %.3fs",
            center[0],
            center[1],
            catalog.size,
            len(quads),
            time.perf_counter() - start,
        )
        return index

    def __len__(self) -> int:
        return len(self.quads)

    @property
    def star_count(self) -> int:
        return int(self.positions.shape[0])

    def query(self, code, radius: float) -> np.ndarray:
        """Indices of catalog quads whose descriptor lies within *radius* of *code*."""
        if self.code_tree is None:
            return np.zeros(0, dtype=np.int64)
        hits = self.code_tree.query_ball_point(np.asarray(code, dtype=np.float64), float(radius))
        return np.array(sorted(hits), dtype=np.int64)

    def query_many(self, codes: np.ndarray, radius: float) -> list[np.ndarray]:
        codes = np.asarray(codes, dtype=np.float64).reshape(-1, 4)
        if self.code_tree is None or codes.shape[0] == 0:
            return [np.zeros(0, dtype=np.int64) for _ in range(codes.shape[0])]
        hits = self.code_tree.query_ball_point(codes, float(radius))
        return [np.array(sorted(h), dtype=np.int64) for h in hits]

    def nearest(self, points: np.ndarray, radius: float) -> tuple[np.ndarray, np.ndarray]:
        """Nearest catalog star to each plane point within *radius* degrees.

        Misses come back as distance ``inf`` and index ``star_count``.
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if self.star_tree is None or pts.shape[0] == 0:
            return np.full(pts.shape[0], np.inf), np.full(pts.shape[0], self.star_count, dtype=np.int64)
        finite = np.isfinite(pts).all(axis=1)
        dist = np.full(pts.shape[0], np.inf)
        idx = np.full(pts.shape[0], self.star_count, dtype=np.int64)
        if finite.any():
            d, i = self.star_tree.query(pts[finite], k=1, distance_upper_bound=float(radius))
            dist[finite] = d
            idx[finite] = i
        return dist, idx

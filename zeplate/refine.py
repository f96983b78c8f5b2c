from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np
from scipy.spatial import cKDTree

from .catalog_index import CatalogIndex
from .errors import InsufficientMatches
from .wcs_fit import PolynomialTransform, fit_polynomial, term_count

logger = logging.getLogger(__name__)


class PlaneTransform(Protocol):
    scale: float

    def apply(self, xy: np.ndarray) -> np.ndarray: ...


@dataclass(frozen=True)
class IterationStats:
    iteration: int
    tolerance_px: float
    matches: int
    mean_residual_px: float
    rms_px: float
    order: int


@dataclass(frozen=True, eq=False)
class RefineResult:
    transform: PolynomialTransform
    image_indices: np.ndarray
    catalog_indices: np.ndarray
    residuals_px: np.ndarray
    history: list[IterationStats] = field(default_factory=list)
    converged: bool = False

    @property
    def matches(self) -> int:
        return int(self.image_indices.size)

    @property
    def mean_residual_px(self) -> float:
        return float(np.mean(self.residuals_px)) if self.residuals_px.size else float("inf")

    @property
    def rms_px(self) -> float:
        return float(np.sqrt(np.mean(self.residuals_px ** 2))) if self.residuals_px.size else float("inf")


def match_one_to_one(
    plane_xy: np.ndarray,
    tree: cKDTree,
    radius: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Pair each projected image star with its nearest catalog star within *radius*.

    A catalog star claimed by several image stars goes to the closest one.
    Returns ``(image_indices, catalog_indices, distances)`` sorted by image index.
    """
    pts = np.asarray(plane_xy, dtype=np.float64).reshape(-1, 2)
    empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0))
    finite = np.isfinite(pts).all(axis=1)
    if not finite.any() or tree.n == 0:
        return empty
    image_idx = np.nonzero(finite)[0]
    dist, cat_idx = tree.query(pts[finite], k=1, distance_upper_bound=float(radius))
    hit = np.isfinite(dist)
    image_idx, cat_idx, dist = image_idx[hit], cat_idx[hit].astype(np.int64), dist[hit]
    if image_idx.size == 0:
        return empty
    order = np.lexsort((image_idx, dist))
    _, first = np.unique(cat_idx[order], return_index=True)
    keep = np.sort(order[first])
    return image_idx[keep], cat_idx[keep], dist[keep]


def _catalog_tree(catalog) -> tuple[cKDTree, np.ndarray]:
    if isinstance(catalog, CatalogIndex):
        positions = catalog.positions
        tree = catalog.star_tree if catalog.star_tree is not None else cKDTree(np.zeros((0, 2)))
        return tree, positions
    positions = np.asarray(catalog, dtype=np.float64).reshape(-1, 2)
    return cKDTree(positions), positions


def _fit_order(count: int, order: int) -> int:
    fit = max(1, int(order))
    while fit > 1 and count < 2 * term_count(fit):
        fit -= 1
    return fit


def refine_transform(
    initial: PlaneTransform,
    image_xy: np.ndarray,
    catalog,
    *,
    initial_tolerance_px: float = 3.0,
    final_tolerance_px: float = 1.0,
    shrink: float = 0.5,
    min_matches: int = 6,
    min_iterations: int = 2,
    max_iterations: int = 10,
    order: int = 1,
    scale_range_deg: tuple[float, float] | None = None,
) -> RefineResult:
    """Iteratively re-match and refit a coarse transform.

    *catalog* is a :class:`CatalogIndex` or an (n, 2) array of plane
    positions in degrees. The match radius shrinks geometrically from
    *initial_tolerance_px* to *final_tolerance_px*. Raises
    :class:`InsufficientMatches` when fewer than *min_matches* pairs survive,
    when the fit is degenerate or when the fitted scale leaves *scale_range_deg*.
    """
    xy = np.asarray(image_xy, dtype=np.float64).reshape(-1, 2)
    tree, positions = _catalog_tree(catalog)
    shrink = min(max(float(shrink), 0.0), 1.0)
    tolerance = max(float(initial_tolerance_px), float(final_tolerance_px))
    current: PlaneTransform = initial
    history: list[IterationStats] = []
    converged = False
    prev_matches = -1
    prev_mean = float("inf")
    fitted: PolynomialTransform | None = None
    for iteration in range(1, max(1, int(max_iterations)) + 1):
        img_idx, cat_idx, _ = match_one_to_one(current.apply(xy), tree, tolerance * current.scale)
        if img_idx.size < min_matches:
            raise InsufficientMatches(
                f"{img_idx.size} matches within {tolerance:.2f}px at iteration {iteration} (need {min_matches})"
            )
        fit_order = _fit_order(img_idx.size, order)
        try:
            fitted = fit_polynomial(xy[img_idx], positions[cat_idx], order=fit_order)
        except np.linalg.LinAlgError as exc:
            raise InsufficientMatches(f"degenerate fit at iteration {iteration}: {exc}") from exc
        if scale_range_deg is not None and not scale_range_deg[0] <= fitted.scale <= scale_range_deg[1]:
            raise InsufficientMatches(
                f"refined scale {fitted.scale * 3600.0:.3f}\"/px outside the plausible range"
            )
        residuals = np.hypot(*(fitted.apply(xy[img_idx]) - positions[cat_idx]).T) / fitted.scale
        mean_res = float(np.mean(residuals))
        history.append(
            IterationStats(
                iteration=iteration,
                tolerance_px=tolerance,
                matches=int(img_idx.size),
                mean_residual_px=mean_res,
                rms_px=float(np.sqrt(np.mean(residuals ** 2))),
                order=fit_order,
            )
        )
        logger.debug(
            "refine iteration %d: tol=%.2fpx matches=%d mean=%.3fpx order=%d",
            iteration,
            tolerance,
            img_idx.size,
            mean_res,
            fit_order,
        )
        improved = img_idx.size > prev_matches or mean_res < prev_mean * (1.0 - 1e-3) - 1e-9
        current = fitted
        prev_matches = int(img_idx.size)
        prev_mean = mean_res
        if iteration >= min_iterations and not improved:
            converged = True
            break
        tolerance = max(float(final_tolerance_px), tolerance * shrink)
    if fitted is None:
        raise InsufficientMatches("refinement did not run")
    img_idx, cat_idx, _ = match_one_to_one(fitted.apply(xy), tree, float(final_tolerance_px) * fitted.scale)
    if img_idx.size < min_matches:
        raise InsufficientMatches(f"{img_idx.size} matches after refinement (need {min_matches})")
    residuals = np.hypot(*(fitted.apply(xy[img_idx]) - positions[cat_idx]).T) / fitted.scale
    return RefineResult(
        transform=fitted,
        image_indices=img_idx,
        catalog_indices=cat_idx,
        residuals_px=residuals,
        history=history,
        converged=converged,
    )

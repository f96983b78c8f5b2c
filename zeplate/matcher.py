from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .asterisms import QuadSet
from .catalog_index import CatalogIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimilarityTransform:
    """Pixel to tangent-plane (degrees) map ``w = s * exp(i*rotation) * z' + t``.

    ``z'`` is the pixel position as a complex number, conjugated when
    *parity* is -1 (image mirrored relative to the sky).
    """

    scale: float
    rotation: float
    translation: tuple[float, float]
    parity: int = 1

    @property
    def rot_scale(self) -> complex:
        return self.scale * complex(math.cos(self.rotation), math.sin(self.rotation))

    @property
    def scale_arcsec(self) -> float:
        return self.scale * 3600.0

    @property
    def rotation_deg(self) -> float:
        return math.degrees(self.rotation) % 360.0

    def matrix(self) -> np.ndarray:
        c = math.cos(self.rotation) * self.scale
        s = math.sin(self.rotation) * self.scale
        if self.parity < 0:
            return np.array([[c, s], [s, -c]])
        return np.array([[c, -s], [s, c]])

    def apply(self, xy: np.ndarray) -> np.ndarray:
        pts = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        comp = _complexify(pts)
        if self.parity < 0:
            comp = np.conj(comp)
        out = self.rot_scale * comp + complex(*self.translation)
        return np.column_stack((out.real, out.imag))

    def inverse(self, plane: np.ndarray) -> np.ndarray:
        pts = np.asarray(plane, dtype=np.float64).reshape(-1, 2)
        comp = (_complexify(pts) - complex(*self.translation)) / self.rot_scale
        if self.parity < 0:
            comp = np.conj(comp)
        return np.column_stack((comp.real, comp.imag))


@dataclass(frozen=True)
class VoteResult:
    transform: SimilarityTransform
    votes: float
    matched: int
    mean_residual_px: float
    bin_key: tuple[int, int, int, int, int]
    quads_tested: int
    candidates: int
    bins: int
    interrupted: bool = False


@dataclass
class _VoteBin:
    votes: float
    transform: SimilarityTransform
    matched: int
    residual_px: float

    def offer(self, transform: SimilarityTransform, matched: int, residual_px: float) -> None:
        if matched > self.matched or (matched == self.matched and residual_px < self.residual_px):
            self.transform = transform
            self.matched = matched
            self.residual_px = residual_px


def _complexify(points: np.ndarray) -> np.ndarray:
    return points[:, 0] + 1j * points[:, 1]


def _derive_similarity(
    src: np.ndarray,
    dst: np.ndarray,
    *,
    reflected: bool = False,
) -> tuple[np.complex128, np.complex128] | None:
    src_c = _complexify(src)
    if reflected:
        src_c = np.conj(src_c)
    dst_c = _complexify(dst)
    src_mean = np.mean(src_c)
    dst_mean = np.mean(dst_c)
    src_zero = src_c - src_mean
    dst_zero = dst_c - dst_mean
    denom = np.sum(np.abs(src_zero) ** 2)
    if denom < 1e-12:
        return None
    rot_scale = np.sum(dst_zero * np.conj(src_zero)) / denom
    translation = dst_mean - rot_scale * src_mean
    return rot_scale, translation


def similarity_from_points(
    image_points: np.ndarray,
    plane_points: np.ndarray,
    *,
    parity: int = 1,
) -> SimilarityTransform | None:
    """Least-squares similarity from corresponding points (exact for two)."""
    derived = _derive_similarity(
        np.asarray(image_points, dtype=np.float64).reshape(-1, 2),
        np.asarray(plane_points, dtype=np.float64).reshape(-1, 2),
        reflected=parity < 0,
    )
    if derived is None:
        return None
    rot_scale, translation = derived
    scale = float(abs(rot_scale))
    if not np.isfinite(scale) or scale <= 0.0:
        return None
    return SimilarityTransform(
        scale=scale,
        rotation=float(np.angle(rot_scale)),
        translation=(float(translation.real), float(translation.imag)),
        parity=-1 if parity < 0 else 1,
    )


def similarity_from_reference_pair(
    image_a, image_b, plane_a, plane_b, *, parity: int = 1
) -> SimilarityTransform | None:
    """Closed-form similarity mapping image A, B onto plane A, B."""
    return similarity_from_points(
        np.array([image_a, image_b], dtype=np.float64),
        np.array([plane_a, plane_b], dtype=np.float64),
        parity=parity,
    )


def count_matches(
    transform: SimilarityTransform,
    image_xy: np.ndarray,
    index: CatalogIndex,
    tolerance_px: float,
) -> tuple[int, float]:
    """Number of image stars landing within *tolerance_px* of a catalog star, and their mean residual."""
    plane = transform.apply(image_xy)
    dist, _ = index.nearest(plane, tolerance_px * transform.scale)
    hit = np.isfinite(dist)
    matched = int(hit.sum())
    if matched == 0:
        return 0, float("inf")
    return matched, float(np.mean(dist[hit]) / transform.scale)


def _bin_key(
    transform: SimilarityTransform,
    center_xy: tuple[float, float],
    *,
    bin_scale: float,
    bin_rotation_deg: float,
    bin_translation_px: float,
) -> tuple[int, int, int, int, int]:
    log_step = math.log1p(bin_scale)
    scale_bin = int(math.floor(math.log(transform.scale) / log_step))
    rot_bin = int(math.floor(transform.rotation_deg / bin_rotation_deg))
    ref_scale = math.exp((scale_bin + 0.5) * log_step)
    cell = bin_translation_px * ref_scale
    center = transform.apply(np.array([center_xy], dtype=np.float64))[0]
    tx = int(math.floor(center[0] / cell))
    ty = int(math.floor(center[1] / cell))
    return (int(transform.parity), scale_bin, rot_bin, tx, ty)


def _interleave_batches(
    quad_sets: Sequence[tuple[QuadSet, int]],
    batch_size: int,
):
    cursors = [0] * len(quad_sets)
    while True:
        progressed = False
        for pos, (quads, parity) in enumerate(quad_sets):
            start = cursors[pos]
            if start >= len(quads):
                continue
            stop = min(len(quads), start + batch_size)
            cursors[pos] = stop
            progressed = True
            yield quads, parity, start, stop
        if not progressed:
            return


def accumulate_votes(
    image_xy: np.ndarray,
    image_quads: QuadSet | Sequence[tuple[QuadSet, int]],
    index: CatalogIndex,
    *,
    center_xy: tuple[float, float] | None = None,
    code_tolerance: float = 0.015,
    scale_range_deg: tuple[float, float] | None = None,
    bin_scale: float = 0.02,
    bin_rotation_deg: float = 2.0,
    bin_translation_px: float = 10.0,
    match_weight: float = 1.0,
    pixel_tolerance: float = 3.0,
    early_exit_votes: float | None = None,
    max_quad_tests: int | None = None,
    batch_size: int = 256,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> VoteResult | None:
    """Vote over all image/catalog quad correspondences and return the leading bin.

    The leading bin is returned whatever its vote count; ``None`` means no
    plausible candidate was produced at all. :func:`vote_for_transform`
    applies the acceptance threshold.
    """
    xy = np.asarray(image_xy, dtype=np.float64).reshape(-1, 2)
    if isinstance(image_quads, QuadSet):
        quad_sets: Sequence[tuple[QuadSet, int]] = [(image_quads, 1)]
    else:
        quad_sets = list(image_quads)
    if center_xy is None:
        center_xy = (float(np.mean(xy[:, 0])), float(np.mean(xy[:, 1]))) if xy.size else (0.0, 0.0)
    bins: dict[tuple[int, int, int, int, int], _VoteBin] = {}
    leader: tuple[int, int, int, int, int] | None = None
    quads_tested = 0
    candidates = 0
    interrupted = False
    finished = False
    budget = None if max_quad_tests is None else max(0, int(max_quad_tests))
    for quads, parity, start, stop in _interleave_batches(quad_sets, max(1, int(batch_size))):
        if cancel_check and cancel_check():
            interrupted = True
            break
        if budget is not None and quads_tested >= budget:
            interrupted = True
            break
        if budget is not None:
            stop = min(stop, start + budget - quads_tested)
        hits_per_quad = index.query_many(quads.codes[start:stop], code_tolerance)
        for offset, hits in enumerate(hits_per_quad):
            quads_tested += 1
            if hits.size == 0:
                continue
            a_img, b_img = quads.indices[start + offset][:2]
            for hit in hits:
                a_cat, b_cat = index.quads.indices[hit][:2]
                transform = similarity_from_reference_pair(
                    xy[a_img],
                    xy[b_img],
                    index.positions[a_cat],
                    index.positions[b_cat],
                    parity=parity,
                )
                if transform is None:
                    continue
                if scale_range_deg is not None and not (
                    scale_range_deg[0] <= transform.scale <= scale_range_deg[1]
                ):
                    continue
                candidates += 1
                matched, residual = count_matches(transform, xy, index, pixel_tolerance)
                key = _bin_key(
                    transform,
                    center_xy,
                    bin_scale=bin_scale,
                    bin_rotation_deg=bin_rotation_deg,
                    bin_translation_px=bin_translation_px,
                )
                weight = 1.0 + match_weight * matched
                entry = bins.get(key)
                if entry is None:
                    entry = _VoteBin(weight, transform, matched, residual)
                    bins[key] = entry
                else:
                    entry.votes += weight
                    entry.offer(transform, matched, residual)
                if leader is None or _ranks_above(entry, bins[leader]):
                    leader = key
                if early_exit_votes is not None and bins[leader].votes >= early_exit_votes:
                    finished = True
                    break
            if finished:
                break
        if finished:
            break
    if leader is None:
        logger.debug("no vote candidates after %d quads (%d tested candidates)", quads_tested, candidates)
        return None
    best = bins[leader]
    logger.debug(
        "vote leader %s: %.1f votes, %d matched, %.2f px after %d quads / %d candidates / %d bins",
        leader,
        best.votes,
        best.matched,
        best.residual_px,
        quads_tested,
        candidates,
        len(bins),
    )
    return VoteResult(
        transform=best.transform,
        votes=float(best.votes),
        matched=int(best.matched),
        mean_residual_px=float(best.residual_px),
        bin_key=leader,
        quads_tested=quads_tested,
        candidates=candidates,
        bins=len(bins),
        interrupted=interrupted,
    )


def _ranks_above(entry: _VoteBin, other: _VoteBin) -> bool:
    if entry is other:
        return False
    if entry.votes != other.votes:
        return entry.votes > other.votes
    if entry.matched != other.matched:
        return entry.matched > other.matched
    return entry.residual_px < other.residual_px


def vote_for_transform(
    image_xy: np.ndarray,
    image_quads: QuadSet | Sequence[tuple[QuadSet, int]],
    index: CatalogIndex,
    *,
    min_votes: float = 10.0,
    **kwargs,
) -> VoteResult | None:
    """Return the winning vote bin, or ``None`` when no bin reaches *min_votes*."""
    result = accumulate_votes(image_xy, image_quads, index, **kwargs)
    if result is None or result.votes < min_votes:
        return None
    return result

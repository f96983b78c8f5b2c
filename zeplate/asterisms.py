from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

import numpy as np

from .quad_sampling import brightness_levels, iter_neighbor_quads

DEFAULT_COLLINEAR_TOLERANCE = 0.01
MIN_SEPARATION_RATIO = 1e-3
CODE_SIZE = 4
_FRAME = 1.0 + 1.0j


@dataclass(frozen=True, slots=True)
class Quad:
    indices: tuple[int, int, int, int]  # canonical (A, B, C, D)
    code: tuple[float, float, float, float]
    size: float


@dataclass(frozen=True, slots=True, eq=False)
class QuadSet:
    indices: np.ndarray  # shape (n, 4)
    codes: np.ndarray  # shape (n, 4)
    sizes: np.ndarray  # shape (n,)

    def __len__(self) -> int:
        return int(self.indices.shape[0])

    def __getitem__(self, item: int) -> Quad:
        return Quad(
            tuple(int(v) for v in self.indices[item]),
            tuple(float(v) for v in self.codes[item]),
            float(self.sizes[item]),
        )

    @classmethod
    def empty(cls) -> "QuadSet":
        return cls(
            np.zeros((0, 4), dtype=np.int64),
            np.zeros((0, CODE_SIZE), dtype=np.float64),
            np.zeros(0, dtype=np.float64),
        )


def _frame_coordinates(points: np.ndarray, a: int, b: int, others: Sequence[int]) -> np.ndarray:
    comp = points[:, 0] + 1j * points[:, 1]
    origin = comp[a]
    mapped = (comp[list(others)] - origin) * _FRAME / (comp[b] - origin)
    return np.column_stack((mapped.real, mapped.imag))


def collinearity(code: Sequence[float]) -> float:
    """Largest distance of C or D from the A-B line, in units of |AB|."""
    xc, yc, xd, yd = code
    return max(abs(xc - yc), abs(xd - yd)) / 2.0


def quad_descriptor(
    points: np.ndarray,
    *,
    collinear_tolerance: float = DEFAULT_COLLINEAR_TOLERANCE,
    min_size: float = 0.0,
    max_size: float | None = None,
) -> tuple[tuple[int, int, int, int], tuple[float, float, float, float], float] | None:
    """Compute the canonical descriptor of four points.

    The most separated pair becomes the reference frame with A at (0, 0) and
    B at (1, 1); the code is the position of the two remaining points in that
    frame. A and B are swapped when ``xC + xD > 1`` and C, D when ``xC > xD``.
    Returns ``(order, code, size)`` where *order* indexes *points*, or ``None``
    for degenerate quads (coincident, near-collinear, outside the unit square
    or outside the size window).
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.shape != (4, 2) or not np.isfinite(pts).all():
        return None
    diffs = pts[:, None, :] - pts[None, :, :]
    dists = np.hypot(diffs[..., 0], diffs[..., 1])
    upper = np.triu_indices(4, k=1)
    pair_d = dists[upper]
    best = int(np.argmax(pair_d))
    size = float(pair_d[best])
    if size <= 0.0 or size < min_size or (max_size is not None and size > max_size):
        return None
    if float(pair_d.min()) < MIN_SEPARATION_RATIO * size:
        return None
    a, b = int(upper[0][best]), int(upper[1][best])
    c, d = [i for i in range(4) if i not in (a, b)]
    frame = _frame_coordinates(pts, a, b, (c, d))
    xc, yc = frame[0]
    xd, yd = frame[1]
    if xc + xd > 1.0:
        a, b = b, a
        xc, yc, xd, yd = 1.0 - xc, 1.0 - yc, 1.0 - xd, 1.0 - yd
    if xc > xd:
        c, d = d, c
        xc, yc, xd, yd = xd, yd, xc, yc
    code = (float(xc), float(yc), float(xd), float(yd))
    if min(code) < 0.0 or max(code) > 1.0:
        return None
    if collinearity(code) < collinear_tolerance:
        return None
    return (a, b, c, d), code, size


def iter_quads(
    positions: np.ndarray,
    *,
    seed_order: Sequence[int] | None = None,
    neighbors: int = 8,
    max_quads: int | None = None,
    collinear_tolerance: float = DEFAULT_COLLINEAR_TOLERANCE,
    min_size: float = 0.0,
    max_size: float | None = None,
) -> Iterator[Quad]:
    """Lazily yield valid :class:`Quad` items from nearest-neighbour groups."""
    pts = np.asarray(positions, dtype=np.float64)
    produced = 0
    for combo in iter_neighbor_quads(pts, seed_order=seed_order, neighbors=neighbors):
        result = quad_descriptor(
            pts[list(combo)],
            collinear_tolerance=collinear_tolerance,
            min_size=min_size,
            max_size=max_size,
        )
        if result is None:
            continue
        order, code, size = result
        yield Quad(tuple(int(combo[i]) for i in order), code, size)
        produced += 1
        if max_quads is not None and produced >= max_quads:
            return


def build_quads(
    positions: np.ndarray,
    *,
    seed_order: Sequence[int] | None = None,
    neighbors: int = 8,
    max_quads: int | None = None,
    collinear_tolerance: float = DEFAULT_COLLINEAR_TOLERANCE,
    min_size: float = 0.0,
    max_size: float | None = None,
    mirror: bool = False,
    level_base: int | None = None,
) -> QuadSet:
    """Materialise quads into a :class:`QuadSet`.

    With *mirror* the descriptors are computed on the reflected positions
    ``(x, -y)`` so that a mirrored image can be matched against the sky.
    With *level_base* the positions must be sorted brightest first; quads are
    then built over the brightest ``level_base``, ``2 * level_base``, ...
    points in turn and a quad already produced by a sparser level is skipped.
    """
    pts = np.array(positions, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError("positions must have shape (N, 2)")
    if mirror:
        pts[:, 1] = -pts[:, 1]
    quads: list[Quad] = []
    seen: set[tuple[int, ...]] = set()
    for size in brightness_levels(pts.shape[0], level_base):
        remaining = None if max_quads is None else max_quads - len(quads)
        if remaining is not None and remaining <= 0:
            break
        level_seeds = None
        if seed_order is not None:
            level_seeds = [int(i) for i in seed_order if 0 <= int(i) < size]
        for quad in iter_quads(
            pts[:size],
            seed_order=level_seeds,
            neighbors=neighbors,
            collinear_tolerance=collinear_tolerance,
            min_size=min_size,
            max_size=max_size,
        ):
            key = tuple(sorted(quad.indices))
            if key in seen:
                continue
            seen.add(key)
            quads.append(quad)
            if remaining is not None and len(quads) >= max_quads:
                break
    if not quads:
        return QuadSet.empty()
    indices = np.array([q.indices for q in quads], dtype=np.int64)
    codes = np.array([q.code for q in quads], dtype=np.float64)
    sizes = np.array([q.size for q in quads], dtype=np.float64)
    for arr in (indices, codes, sizes):
        arr.setflags(write=False)
    return QuadSet(indices, codes, sizes)

from __future__ import annotations

import itertools
from typing import Iterator, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree


def _seed_sequence(count: int, seed_order: Sequence[int] | None) -> np.ndarray:
    if seed_order is None:
        return np.arange(count, dtype=np.int64)
    raw = np.asarray(seed_order, dtype=np.int64)
    seeds = raw[(raw >= 0) & (raw < count)]
    if seeds.size == 0:
        return np.arange(count, dtype=np.int64)
    return seeds


def iter_neighbor_quads(
    positions: np.ndarray,
    *,
    seed_order: Sequence[int] | None = None,
    neighbors: int = 8,
    max_quads: int | None = None,
) -> Iterator[Tuple[int, int, int, int]]:
    """Yield 4-star index groups drawn from each seed's K nearest neighbours.

    Seeds are visited in *seed_order* (brightest first when the caller passes a
    brightness order). Every group is the seed plus three of its neighbours and
    is produced once, whatever seed reaches it first.
    """
    pts = np.asarray(positions, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError("positions must have shape (N, 2)")
    finite = np.isfinite(pts).all(axis=1)
    count = pts.shape[0]
    if int(finite.sum()) < 4 or (max_quads is not None and max_quads <= 0):
        return
    valid_index = np.nonzero(finite)[0]
    tree = cKDTree(pts[finite])
    k = min(int(neighbors), valid_index.size - 1)
    if k < 3:
        return
    lookup = np.full(count, -1, dtype=np.int64)
    lookup[valid_index] = np.arange(valid_index.size)
    seen: set[Tuple[int, int, int, int]] = set()
    produced = 0
    for seed in _seed_sequence(count, seed_order):
        local = lookup[seed]
        if local < 0:
            continue
        _, idx = tree.query(pts[seed], k=k + 1)
        nn = [int(valid_index[i]) for i in np.atleast_1d(idx) if i < valid_index.size and valid_index[i] != seed][:k]
        if len(nn) < 3:
            continue
        for trio in itertools.combinations(nn, 3):
            key = tuple(sorted((int(seed),) + trio))
            if key in seen:
                continue
            seen.add(key)
            yield (int(seed),) + trio
            produced += 1
            if max_quads is not None and produced >= max_quads:
                return


def brightness_levels(count: int, base: int | None) -> list[int]:
    """Prefix sizes ``base, 2*base, 4*base, ..., count`` of a brightness-sorted list.

    Quads built over each prefix keep neighbourhoods comparable between an
    image and a catalog whose limiting magnitudes differ.
    """
    count = int(count)
    if not base or base <= 0 or base >= count:
        return [count] if count > 0 else []
    levels = []
    size = int(base)
    while size < count:
        levels.append(size)
        size *= 2
    levels.append(count)
    return levels


def neighbor_quads(
    positions: np.ndarray,
    *,
    seed_order: Sequence[int] | None = None,
    neighbors: int = 8,
    max_quads: int | None = None,
) -> np.ndarray:
    """Materialised form of :func:`iter_neighbor_quads` as an (n, 4) int array."""
    combos = list(
        iter_neighbor_quads(positions, seed_order=seed_order, neighbors=neighbors, max_quads=max_quads)
    )
    if not combos:
        return np.zeros((0, 4), dtype=np.int64)
    return np.array(combos, dtype=np.int64)

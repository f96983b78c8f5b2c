from __future__ import annotations

import math

import numpy as np
import pytest

from zeplate.asterisms import Quad, QuadSet, build_quads, collinearity, iter_quads, quad_descriptor

SQUARE_QUAD = np.array([(0.0, 0.0), (10.0, 10.0), (2.0, 6.0), (7.0, 3.0)])


def _similarity(points: np.ndarray, *, scale: float, angle_deg: float, shift=(0.0, 0.0)) -> np.ndarray:
    comp = points[:, 0] + 1j * points[:, 1]
    out = scale * np.exp(1j * math.radians(angle_deg)) * comp + complex(*shift)
    return np.column_stack((out.real, out.imag))


def test_descriptor_of_reference_quad() -> None:
    order, code, size = quad_descriptor(SQUARE_QUAD)
    assert order == (0, 1, 2, 3)
    assert code == pytest.approx((0.2, 0.6, 0.7, 0.3))
    assert size == pytest.approx(math.hypot(10.0, 10.0))


def test_descriptor_is_invariant_under_similarity_and_relabeling() -> None:
    _, code, _ = quad_descriptor(SQUARE_QUAD)
    moved = _similarity(SQUARE_QUAD, scale=3.7, angle_deg=123.0, shift=(500.0, -20.0))
    perm = [2, 0, 3, 1]
    order, moved_code, size = quad_descriptor(moved[perm])
    assert moved_code == pytest.approx(code, abs=1e-12)
    assert size == pytest.approx(3.7 * math.hypot(10.0, 10.0))
    # canonical labels point at the same physical stars
    assert [perm[i] for i in order] == [0, 1, 2, 3]


def test_canonical_swaps_keep_code_in_half_square() -> None:
    rng = np.random.default_rng(11)
    seen = 0
    for _ in range(200):
        result = quad_descriptor(rng.uniform(0, 100, (4, 2)))
        if result is None:
            continue
        seen += 1
        xc, yc, xd, yd = result[1]
        assert xc <= xd
        assert xc + xd <= 1.0 + 1e-12
        assert all(0.0 <= v <= 1.0 for v in result[1])
    assert seen > 10


def test_collinear_quads_are_rejected_within_tolerance() -> None:
    nearly = np.array([(0.0, 0.0), (1.0, 1.0), (0.3, 0.31), (0.6, 0.59)])
    assert collinearity((0.3, 0.31, 0.6, 0.59)) == pytest.approx(0.005)
    assert quad_descriptor(nearly) is None
    bent = np.array([(0.0, 0.0), (1.0, 1.0), (0.3, 0.35), (0.6, 0.55)])
    result = quad_descriptor(bent)
    assert result is not None
    assert collinearity(result[1]) == pytest.approx(0.025)
    assert quad_descriptor(nearly, collinear_tolerance=0.001) is not None


def test_degenerate_quads_are_rejected() -> None:
    coincident = np.array([(0.0, 0.0), (10.0, 10.0), (3.0, 5.0), (3.0, 5.0)])
    assert quad_descriptor(coincident) is None
    outside = np.array([(0.0, 0.0), (1.0, 1.0), (-0.2, 0.5), (0.6, 0.3)])
    assert quad_descriptor(outside) is None
    assert quad_descriptor(np.array([(0.0, 0.0), (np.nan, 1.0), (1.0, 0.0), (0.5, 0.2)])) is None
    assert quad_descriptor(SQUARE_QUAD[:3]) is None


def test_size_window_filters_quads() -> None:
    size = math.hypot(10.0, 10.0)
    assert quad_descriptor(SQUARE_QUAD, min_size=size + 1.0) is None
    assert quad_descriptor(SQUARE_QUAD, max_size=size - 1.0) is None
    assert quad_descriptor(SQUARE_QUAD, min_size=size - 1.0, max_size=size + 1.0) is not None


def test_mirrored_quads_match_reflected_field() -> None:
    rng = np.random.default_rng(5)
    points = rng.uniform(0, 1000, (30, 2))
    reflected = points * np.array([1.0, -1.0])
    direct = build_quads(points, neighbors=6)
    mirrored = build_quads(reflected, neighbors=6, mirror=True)
    assert len(direct) > 0
    np.testing.assert_allclose(mirrored.codes, direct.codes, atol=1e-12)
    np.testing.assert_array_equal(mirrored.indices, direct.indices)


def test_build_quads_returns_read_only_unique_quads() -> None:
    rng = np.random.default_rng(9)
    points = rng.uniform(0, 500, (60, 2))
    quads = build_quads(points, neighbors=6, level_base=15)
    assert isinstance(quads, QuadSet)
    keys = {tuple(sorted(row)) for row in quads.indices.tolist()}
    assert len(keys) == len(quads)
    assert not quads.codes.flags.writeable
    first = quads[0]
    assert isinstance(first, Quad)
    assert len(first.code) == 4


def test_brightness_levels_start_with_brightest_prefix() -> None:
    rng = np.random.default_rng(10)
    points = rng.uniform(0, 500, (80, 2))
    quads = build_quads(points, neighbors=6, level_base=10)
    first_level = quads.indices[: len(build_quads(points[:10], neighbors=6))]
    assert first_level.max() < 10
    assert quads.indices.max() >= 10


def test_max_quads_caps_output() -> None:
    rng = np.random.default_rng(2)
    points = rng.uniform(0, 500, (40, 2))
    assert len(build_quads(points, max_quads=25)) == 25
    assert len(list(iter_quads(points, max_quads=7))) == 7


def test_build_quads_on_too_few_points_is_empty() -> None:
    quads = build_quads(np.array([(0.0, 0.0), (1.0, 2.0), (3.0, 1.0)]))
    assert len(quads) == 0
    assert quads.codes.shape == (0, 4)
    with pytest.raises(ValueError):
        build_quads(np.zeros((5, 3)))

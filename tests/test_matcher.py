from __future__ import annotations

import math

import numpy as np
import pytest

from zeplate.asterisms import build_quads
from zeplate.catalog_index import CatalogIndex
from zeplate.matcher import (
    SimilarityTransform,
    accumulate_votes,
    count_matches,
    similarity_from_points,
    similarity_from_reference_pair,
    vote_for_transform,
)
from zeplate.synthetic import field_transform

FIELD_CENTER = (150.0, 20.0)


def _star_xy(field) -> np.ndarray:
    return np.column_stack((field.stars["x"], field.stars["y"]))


@pytest.mark.parametrize("parity", [1, -1])
def test_similarity_inverse_and_matrix_agree(parity: int) -> None:
    transform = field_transform(2.0, 73.0, (400.0, 300.0), parity=parity)
    pixels = np.array([(0.0, 0.0), (400.0, 300.0), (1000.0, 12.0)])
    plane = transform.apply(pixels)
    np.testing.assert_allclose(transform.inverse(plane), pixels, atol=1e-9)
    np.testing.assert_allclose(plane[1], (0.0, 0.0), atol=1e-12)
    linear = (pixels[2] - pixels[0]) @ transform.matrix().T
    np.testing.assert_allclose(plane[2] - plane[0], linear, atol=1e-12)


@pytest.mark.parametrize("parity", [1, -1])
def test_reference_pair_recovers_transform_exactly(parity: int) -> None:
    truth = SimilarityTransform(3e-4, math.radians(250.0), (0.01, -0.02), parity)
    a, b = np.array([10.0, 20.0]), np.array([700.0, 450.0])
    pa, pb = truth.apply(np.array([a, b]))
    found = similarity_from_reference_pair(a, b, pa, pb, parity=parity)
    assert found is not None
    assert found.parity == parity
    assert found.scale == pytest.approx(truth.scale, rel=1e-12)
    assert found.rotation_deg == pytest.approx(250.0, abs=1e-9)
    assert similarity_from_reference_pair(a, a, pa, pb) is None


def test_similarity_from_points_is_least_squares() -> None:
    truth = SimilarityTransform(1e-3, 0.4, (1.0, 2.0))
    rng = np.random.default_rng(0)
    pixels = rng.uniform(0, 1000, (30, 2))
    found = similarity_from_points(pixels, truth.apply(pixels))
    assert found.scale == pytest.approx(truth.scale)
    assert found.rotation == pytest.approx(truth.rotation)
    assert found.translation == pytest.approx(truth.translation)


def test_count_matches_uses_pixel_tolerance(synthetic_field) -> None:
    index = CatalogIndex.build(synthetic_field.catalog, FIELD_CENTER)
    xy = _star_xy(synthetic_field)
    matched, residual = count_matches(synthetic_field.transform, xy, index, 1.0)
    assert matched == xy.shape[0]
    assert residual < 1e-6
    shifted = SimilarityTransform(
        synthetic_field.transform.scale,
        synthetic_field.transform.rotation,
        (synthetic_field.transform.translation[0] + 0.5, synthetic_field.transform.translation[1]),
    )
    assert count_matches(shifted, xy, index, 1.0)[0] == 0


def test_votes_recover_the_field_transform(synthetic_field) -> None:
    index = CatalogIndex.build(synthetic_field.catalog, FIELD_CENTER, level_base=20)
    xy = _star_xy(synthetic_field)
    quads = build_quads(xy, level_base=20, min_size=20.0)
    result = accumulate_votes(xy, quads, index, center_xy=(511.5, 511.5))
    assert result is not None
    assert result.transform.scale_arcsec == pytest.approx(synthetic_field.scale_arcsec, rel=1e-6)
    assert result.transform.rotation_deg == pytest.approx(synthetic_field.rotation_deg, abs=1e-4)
    assert result.matched == xy.shape[0]
    assert result.votes >= 1.0 + result.matched
    assert result.bin_key[0] == 1


def test_mirrored_field_votes_with_negative_parity(field_factory) -> None:
    field = field_factory(parity=-1, rotation_deg=200.0)
    index = CatalogIndex.build(field.catalog, FIELD_CENTER)
    xy = _star_xy(field)
    sets = [(build_quads(xy), 1), (build_quads(xy, mirror=True), -1)]
    result = accumulate_votes(xy, sets, index, early_exit_votes=30.0)
    assert result is not None
    assert result.transform.parity == -1
    assert result.transform.rotation_deg == pytest.approx(200.0, abs=1e-4)


def test_vote_threshold_and_budget(synthetic_field) -> None:
    index = CatalogIndex.build(synthetic_field.catalog, FIELD_CENTER)
    xy = _star_xy(synthetic_field)
    quads = build_quads(xy)
    assert vote_for_transform(xy, quads, index, min_votes=1e9) is None
    assert accumulate_votes(xy, quads, index, max_quad_tests=0) is None
    assert accumulate_votes(xy, quads, index, cancel_check=lambda: True) is None


def test_scale_range_rejects_implausible_candidates(synthetic_field) -> None:
    index = CatalogIndex.build(synthetic_field.catalog, FIELD_CENTER)
    xy = _star_xy(synthetic_field)
    quads = build_quads(xy)
    scale = synthetic_field.transform.scale
    result = accumulate_votes(xy, quads, index, scale_range_deg=(scale * 2.0, scale * 3.0))
    # only chance descriptor collisions survive; they never line up the field
    assert result is None or result.matched < 10

from __future__ import annotations

import math

import numpy as np
import pytest

from zeplate.projections import angular_separation, chord_for_angle, deproject_tan, project_tan, radec_to_vectors


def test_tangent_projection_round_trip_across_ra_zero() -> None:
    ra = np.array([359.5, 0.05, 0.7])
    dec = np.array([-0.3, 0.0, 0.4])
    xi, eta = project_tan(ra, dec, 0.1, 0.0)
    back_ra, back_dec = deproject_tan(xi, eta, 0.1, 0.0)
    np.testing.assert_allclose(back_ra, ra, atol=1e-10)
    np.testing.assert_allclose(back_dec, dec, atol=1e-10)
    assert xi[0] < 0.0 < xi[2]


def test_projection_center_maps_to_origin_and_far_side_is_nan() -> None:
    xi, eta = project_tan(np.array([150.0, 330.0]), np.array([20.0, -20.0]), 150.0, 20.0)
    assert xi[0] == pytest.approx(0.0)
    assert eta[0] == pytest.approx(0.0)
    assert np.isnan(xi[1]) and np.isnan(eta[1])


def test_angular_separation_and_chord() -> None:
    assert float(angular_separation(0.0, 0.0, 90.0, 0.0)) == pytest.approx(90.0)
    assert float(angular_separation(10.0, 89.0, 190.0, 89.0)) == pytest.approx(2.0)
    assert chord_for_angle(60.0) == pytest.approx(1.0)
    vectors = radec_to_vectors(np.array([0.0, 90.0]), np.array([0.0, 0.0]))
    assert math.dist(vectors[0], vectors[1]) == pytest.approx(chord_for_angle(90.0))

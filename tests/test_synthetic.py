from __future__ import annotations

import numpy as np
import pytest

from zeplate.projections import project_tan
from zeplate.synthetic import catalog_in_footprint, field_transform, flux_from_mag, make_field, render_image

CENTER = (150.0, 20.0)
SHAPE = (512, 768)


def test_field_stars_follow_the_known_transform() -> None:
    rng = np.random.default_rng(1)
    transform = field_transform(2.0, 45.0, (384.0, 256.0))
    catalog = catalog_in_footprint(40, transform, CENTER, SHAPE, rng=rng)
    field = make_field(catalog, CENTER, scale_arcsec=2.0, rotation_deg=45.0, shape=SHAPE, rng=rng)
    assert field.stars.size == 40
    assert field.scale_arcsec == pytest.approx(2.0)
    assert field.rotation_deg == pytest.approx(45.0)
    rows = field.catalog_index
    xi, eta = project_tan(catalog["ra"][rows], catalog["dec"][rows], *CENTER)
    pixels = np.column_stack((field.stars["x"], field.stars["y"]))
    np.testing.assert_allclose(field.transform.apply(pixels), np.column_stack((xi, eta)), atol=1e-10)
    assert np.all(np.diff(field.stars["flux"]) <= 0)


def test_degradations_drop_and_add_stars() -> None:
    rng = np.random.default_rng(2)
    transform = field_transform(2.0, 0.0, (384.0, 256.0))
    catalog = catalog_in_footprint(60, transform, CENTER, SHAPE, rng=rng)
    field = make_field(
        catalog,
        CENTER,
        scale_arcsec=2.0,
        rotation_deg=0.0,
        shape=SHAPE,
        drop_fraction=0.5,
        spurious=7,
        rng=rng,
    )
    assert int((field.catalog_index == -1).sum()) == 7
    assert field.stars.size < 60 + 7
    assert field.stars.size > 7


def test_render_image_places_flux_at_star_positions() -> None:
    rng = np.random.default_rng(3)
    transform = field_transform(2.0, 0.0, (384.0, 256.0))
    catalog = catalog_in_footprint(5, transform, CENTER, SHAPE, rng=rng)
    field = make_field(catalog, CENTER, scale_arcsec=2.0, rotation_deg=0.0, shape=SHAPE, rng=rng)
    image = render_image(field.stars, SHAPE, noise=0.0, background=10.0)
    assert image.shape == SHAPE
    assert image.dtype == np.float32
    brightest = field.stars[0]
    assert image[int(round(brightest["y"])), int(round(brightest["x"]))] > 10.0
    clipped = render_image(field.stars, SHAPE, noise=0.0, saturation=20.0)
    assert clipped.max() <= 20.0
    assert flux_from_mag(np.array([20.0]))[0] == pytest.approx(1.0)

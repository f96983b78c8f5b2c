from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import numpy as np
import pytest

from zeplate.catalog import InMemoryCatalog
from zeplate.solver import SolveHints
from zeplate.synthetic import SyntheticField, catalog_in_footprint, field_transform, make_field, random_catalog

FIELD_CENTER = (150.0, 20.0)
FIELD_SHAPE = (1024, 1024)
FIELD_SCALE = 1.5
FIELD_ROTATION = 30.0


def build_field(
    *,
    seed: int = 7,
    count: int = 50,
    extra: int = 0,
    scale_arcsec: float = FIELD_SCALE,
    rotation_deg: float = FIELD_ROTATION,
    parity: int = 1,
    noise_px: float = 0.0,
    **kwargs,
) -> SyntheticField:
    rng = np.random.default_rng(seed)
    height, width = FIELD_SHAPE
    transform = field_transform(scale_arcsec, rotation_deg, (width / 2.0, height / 2.0), parity=parity)
    catalog = catalog_in_footprint(count, transform, FIELD_CENTER, FIELD_SHAPE, rng=rng)
    if extra:
        outside = random_catalog(extra, FIELD_CENTER, 2.0, rng=rng, first_id=count)
        catalog = np.concatenate((catalog, outside))
    return make_field(
        catalog,
        FIELD_CENTER,
        scale_arcsec=scale_arcsec,
        rotation_deg=rotation_deg,
        shape=FIELD_SHAPE,
        parity=parity,
        noise_px=noise_px,
        rng=rng,
        **kwargs,
    )


@pytest.fixture
def field_factory():
    return build_field


@pytest.fixture(scope="module")
def synthetic_field() -> SyntheticField:
    return build_field(extra=100)


@pytest.fixture(scope="module")
def synthetic_catalog(synthetic_field: SyntheticField) -> InMemoryCatalog:
    return InMemoryCatalog(synthetic_field.catalog)


@pytest.fixture
def pointing_hints() -> SolveHints:
    return SolveHints(
        pixel_scale_arcsec=FIELD_SCALE,
        ra_deg=FIELD_CENTER[0],
        dec_deg=FIELD_CENTER[1],
        radius_deg=0.0,
    )

from __future__ import annotations

import numpy as np
import pytest

from zeplate.catalog import (
    CATALOG_DTYPE,
    CatalogSource,
    CatalogStar,
    InMemoryCatalog,
    as_catalog_array,
    ensure_catalog_source,
    make_catalog,
)
from zeplate.errors import InputError


def _catalog() -> InMemoryCatalog:
    return InMemoryCatalog(
        make_catalog(
            [10.0, 10.5, 10.9, 200.0, 359.8, 0.1],
            [5.0, 5.2, 5.0, -30.0, 0.0, 0.0],
            [9.0, 7.5, 8.0, 6.0, 10.0, 11.0],
            [1, 2, 3, 4, 5, 6],
        )
    )


def test_cone_search_filters_and_sorts_by_magnitude() -> None:
    catalog = _catalog()
    stars = catalog.stars_in_region(10.2, 5.1, 1.0)
    assert stars.dtype == CATALOG_DTYPE
    assert list(stars["id"]) == [2, 3, 1]
    assert list(stars["mag"]) == sorted(stars["mag"])


def test_magnitude_limit_is_strict() -> None:
    catalog = _catalog()
    stars = catalog.stars_in_region(10.2, 5.1, 1.0, 8.0)
    assert list(stars["id"]) == [2]


def test_cone_search_across_ra_wrap() -> None:
    catalog = _catalog()
    stars = catalog.stars_in_region(0.0, 0.0, 0.5)
    assert sorted(stars["id"].tolist()) == [5, 6]


def test_empty_catalog_returns_empty_slice() -> None:
    catalog = InMemoryCatalog([])
    assert len(catalog) == 0
    assert catalog.stars_in_region(0.0, 0.0, 10.0).size == 0


def test_make_catalog_wraps_ra_and_validates() -> None:
    catalog = make_catalog([370.0, -10.0], [0.0, 1.0])
    assert catalog["ra"].tolist() == pytest.approx([10.0, 350.0])
    with pytest.raises(InputError):
        make_catalog([1.0], [91.0])
    with pytest.raises(InputError):
        make_catalog([np.nan], [0.0])
    with pytest.raises(InputError):
        make_catalog([1.0, 2.0], [0.0])


def test_as_catalog_array_accepts_objects_and_tuples() -> None:
    rows = [CatalogStar(10.0, 20.0, 8.5, 42), (11.0, 21.0, 9.0, 43), (12.0, 22.0)]
    table = as_catalog_array(rows)
    assert table["id"].tolist() == [42, 43, -1]
    assert table["mag"].tolist() == pytest.approx([8.5, 9.0, 0.0])
    with pytest.raises(InputError):
        as_catalog_array([(1.0,)])


def test_ensure_catalog_source_wraps_plain_inputs() -> None:
    wrapped = ensure_catalog_source(make_catalog([1.0], [2.0]))
    assert isinstance(wrapped, InMemoryCatalog)
    catalog = _catalog()
    assert ensure_catalog_source(catalog) is catalog
    assert isinstance(catalog, CatalogSource)
    with pytest.raises(InputError):
        ensure_catalog_source(None)

from __future__ import annotations

import numpy as np
import pytest
from astropy.wcs import NoConvergence

import zeplate
import zeplate.solver as solver_module
from zeplate.catalog import InMemoryCatalog, make_catalog
from zeplate.errors import InputError, InsufficientMatches, NoStarsDetected, SolveCancelled
from zeplate.solver import MATCH_DTYPE, SolveConfig, SolveHints, SolveState, solve_image, solve_stars
from zeplate.star_detect import empty_stars
from zeplate.synthetic import random_catalog

FIELD_CENTER = (150.0, 20.0)
FIELD_SHAPE = (1024, 1024)


def _rotation_error(found: float, expected: float) -> float:
    return abs((found - expected + 180.0) % 360.0 - 180.0)


def test_hinted_field_is_solved(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, hints=pointing_hints)
    assert solution.success, solution.message
    assert solution.state is SolveState.SOLVED
    assert solution.reason == "solved"
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-4)
    assert _rotation_error(solution.rotation_deg, 30.0) < 0.01
    assert solution.stats["rms_px"] < 0.01
    assert solution.stats["inliers"] >= 30
    assert solution.stats["parity"] == 1
    assert solution.matches.dtype == MATCH_DTYPE
    truth = synthetic_field.catalog["id"][synthetic_field.stars["id"][solution.matches["image_index"]]]
    np.testing.assert_array_equal(solution.matches["catalog_id"], truth)
    assert solution.confidence > 0.5
    assert solution.raise_for_failure() is solution
    pixel = solution.wcs.all_world2pix([FIELD_CENTER], 0)[0]
    assert pixel == pytest.approx((512.0, 512.0), abs=0.05)


def test_header_carries_solution_keywords(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, hints=pointing_hints)
    header = solution.to_header()
    assert header["CTYPE1"].startswith("RA---TAN")
    assert header["SOLVED"] == 1
    assert header["SOLVER"] == "ZePlate"
    assert header["SOLVMODE"] == "HINTED"
    assert header["QUALITY"] == "GOOD"
    assert header["INLIERS"] == solution.stats["inliers"]


def test_reference_scenario_at_seventeen_degrees(field_factory, pointing_hints) -> None:
    field = field_factory(count=50, extra=100, rotation_deg=17.0, noise_px=0.1)
    solution = solve_stars(field.stars, FIELD_SHAPE, InMemoryCatalog(field.catalog), hints=pointing_hints)
    assert solution.success, solution.message
    assert _rotation_error(solution.rotation_deg, 17.0) < 0.05
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-3)
    assert solution.stats["inliers"] >= 30
    assert solution.matches.size >= 30
    pixel = solution.wcs.all_world2pix([FIELD_CENTER], 0)[0]
    assert pixel == pytest.approx((512.0, 512.0), abs=0.5)


def test_blind_field_is_solved_without_hints(synthetic_field, synthetic_catalog) -> None:
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog)
    assert solution.success, solution.message
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-4)
    assert _rotation_error(solution.rotation_deg, 30.0) < 0.01
    assert solution.to_header()["SOLVMODE"] == "BLIND"
    assert len(solution.attempts) > 1
    assert solution.attempts[-1].state is SolveState.SOLVED
    pixel = solution.wcs.all_world2pix([FIELD_CENTER], 0)[0]
    assert pixel == pytest.approx((512.0, 512.0), abs=0.05)


def test_round_trip_over_random_fields(field_factory) -> None:
    rng = np.random.default_rng(2024)
    recovered = 0
    trials = 20
    for trial in range(trials):
        scale = float(np.exp(rng.uniform(np.log(0.8), np.log(4.0))))
        rotation = float(rng.uniform(0.0, 360.0))
        parity = 1 if trial % 4 else -1
        field = field_factory(
            seed=100 + trial,
            extra=60,
            scale_arcsec=scale,
            rotation_deg=rotation,
            parity=parity,
            noise_px=0.05,
        )
        hints = SolveHints(pixel_scale_arcsec=scale, ra_deg=FIELD_CENTER[0], dec_deg=FIELD_CENTER[1], radius_deg=0.0)
        solution = solve_stars(field.stars, FIELD_SHAPE, InMemoryCatalog(field.catalog), hints=hints)
        if not solution.success:
            continue
        if (
            solution.scale_arcsec == pytest.approx(scale, rel=1e-3)
            and _rotation_error(solution.rotation_deg, rotation) < 0.05
            and solution.stats["parity"] == parity
        ):
            recovered += 1
    assert recovered >= 0.95 * trials


def test_mirrored_field_is_solved(field_factory) -> None:
    field = field_factory(parity=-1, rotation_deg=123.0, extra=50, noise_px=0.05)
    hints = SolveHints(pixel_scale_arcsec=1.5, ra_deg=FIELD_CENTER[0], dec_deg=FIELD_CENTER[1], radius_deg=0.0)
    solution = solve_stars(field.stars, FIELD_SHAPE, InMemoryCatalog(field.catalog), hints=hints)
    assert solution.success, solution.message
    assert solution.stats["parity"] == -1
    assert _rotation_error(solution.rotation_deg, 123.0) < 0.05


def test_offset_pointing_is_found_by_ring_search(field_factory) -> None:
    field = field_factory(extra=80)
    hints = SolveHints(pixel_scale_arcsec=1.5, ra_deg=FIELD_CENTER[0] + 0.4, dec_deg=FIELD_CENTER[1], radius_deg=0.5)
    config = SolveConfig(region_step_deg=0.3)
    solution = solve_stars(field.stars, FIELD_SHAPE, InMemoryCatalog(field.catalog), config=config, hints=hints)
    assert solution.success, solution.message
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-4)
    assert len(solution.attempts) >= 1


def test_parallel_workers_solve_the_same_field(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    config = SolveConfig(workers=3)
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, config=config, hints=pointing_hints)
    assert solution.success, solution.message
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-4)
    sequences = [record.sequence for record in solution.attempts]
    assert sequences == sorted(sequences)


def test_image_without_stars_reports_no_stars(synthetic_catalog) -> None:
    solution = solve_image(np.full((64, 64), 100.0, dtype=np.float32), synthetic_catalog)
    assert not solution.success
    assert solution.reason == NoStarsDetected.reason
    with pytest.raises(NoStarsDetected):
        solution.raise_for_failure()


def test_solve_image_uses_detected_stars(monkeypatch, synthetic_field, synthetic_catalog, pointing_hints) -> None:
    calls = []

    def fake_detect(img, **kwargs):
        calls.append(kwargs)
        return synthetic_field.stars

    monkeypatch.setattr(solver_module, "detect_stars", fake_detect)
    solution = solve_image(np.zeros(FIELD_SHAPE, dtype=np.float32), synthetic_catalog, hints=pointing_hints)
    assert solution.success, solution.message
    assert calls and calls[0]["k_sigma"] == SolveConfig().detect_k_sigma

    monkeypatch.setattr(solver_module, "detect_stars", lambda img, **kwargs: empty_stars())
    empty = solve_image(np.zeros(FIELD_SHAPE, dtype=np.float32), synthetic_catalog)
    assert empty.reason == NoStarsDetected.reason
    assert empty.state is SolveState.IDLE


def test_too_few_stars_reports_no_stars(synthetic_field, synthetic_catalog) -> None:
    solution = solve_stars(synthetic_field.stars[:5], FIELD_SHAPE, synthetic_catalog)
    assert solution.reason == NoStarsDetected.reason


def test_tiny_catalog_reports_insufficient_matches(synthetic_field, pointing_hints) -> None:
    catalog = InMemoryCatalog(synthetic_field.catalog[:3])
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, catalog, hints=pointing_hints)
    assert not solution.success
    assert solution.reason == InsufficientMatches.reason
    assert len(solution.attempts) == len(SolveConfig().magnitude_ladder)
    with pytest.raises(InsufficientMatches):
        solution.raise_for_failure()


def test_unrelated_catalog_reports_no_consistent_match(synthetic_field, pointing_hints) -> None:
    other = random_catalog(150, FIELD_CENTER, 1.0, rng=np.random.default_rng(99))
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, other, hints=pointing_hints)
    assert not solution.success
    assert solution.reason in {"no_consistent_match", "insufficient_matches"}
    assert solution.state is SolveState.EXHAUSTED


def test_budget_exhaustion_keeps_best_candidate(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    config = SolveConfig(min_votes=1e9, max_attempts=1)
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, config=config, hints=pointing_hints)
    assert not solution.success
    assert solution.reason == "budget_exhausted"
    assert len(solution.attempts) == 1
    candidate = solution.candidate
    assert candidate is not None and not candidate.confirmed
    assert candidate.similarity.scale_arcsec == pytest.approx(1.5, rel=1e-4)
    pixel = candidate.wcs.all_world2pix([FIELD_CENTER], 0)[0]
    assert pixel == pytest.approx((512.0, 512.0), abs=0.05)


def test_time_budget_stops_the_search(synthetic_field, pointing_hints) -> None:
    other = random_catalog(150, FIELD_CENTER, 1.0, rng=np.random.default_rng(5))
    config = SolveConfig(time_budget_s=1e-9)
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, other, config=config, hints=pointing_hints)
    assert solution.reason == "budget_exhausted"


def test_cancel_check_stops_before_any_attempt(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    solution = solve_stars(
        synthetic_field.stars,
        FIELD_SHAPE,
        synthetic_catalog,
        hints=pointing_hints,
        cancel_check=lambda: True,
    )
    assert solution.reason == SolveCancelled.reason
    assert solution.attempts == []
    early = solve_image(np.zeros((16, 16)), synthetic_catalog, cancel_check=lambda: True)
    assert early.reason == SolveCancelled.reason


def test_plain_tables_are_accepted(synthetic_field, synthetic_catalog, pointing_hints) -> None:
    table = np.column_stack((synthetic_field.stars["x"], synthetic_field.stars["y"], synthetic_field.stars["flux"]))
    solution = solve_stars(table, FIELD_SHAPE, synthetic_catalog, hints=pointing_hints)
    assert solution.success, solution.message
    rows = [tuple(row) for row in synthetic_field.catalog]
    from_rows = solve_stars(table, FIELD_SHAPE, rows, hints=pointing_hints)
    assert from_rows.success, from_rows.message


def test_invalid_inputs_raise(synthetic_field, synthetic_catalog) -> None:
    with pytest.raises(InputError):
        solve_stars(synthetic_field.stars, (2, 2), synthetic_catalog)
    with pytest.raises(InputError):
        solve_stars(np.zeros((10, 5)), FIELD_SHAPE, synthetic_catalog)
    with pytest.raises(InputError):
        solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, config=SolveConfig(pixel_tolerance=-1.0))
    with pytest.raises(InputError):
        solve_stars(
            synthetic_field.stars,
            FIELD_SHAPE,
            synthetic_catalog,
            hints=SolveHints(pixel_scale_arcsec=float("nan")),
        )
    with pytest.raises(InputError):
        SolveConfig().replace(not_a_setting=1)
    nan_stars = synthetic_field.stars.copy()
    nan_stars["x"][3] = np.nan
    with pytest.raises(InputError):
        solve_stars(nan_stars, FIELD_SHAPE, synthetic_catalog)
    with pytest.raises(InputError):
        solve_stars(synthetic_field.stars, FIELD_SHAPE, make_catalog([1.0], [95.0]))


def test_diverging_sip_order_is_skipped(monkeypatch, synthetic_field, synthetic_catalog, pointing_hints) -> None:
    tried = []

    def diverging_sip(rows, *, order):
        tried.append(order)
        raise NoConvergence("inverse SIP diverged")

    monkeypatch.setattr(solver_module, "needs_sip", lambda stats, fov_deg: True)
    monkeypatch.setattr(solver_module, "fit_wcs_sip", diverging_sip)
    config = SolveConfig(sip_order=3)
    solution = solve_stars(synthetic_field.stars, FIELD_SHAPE, synthetic_catalog, config=config, hints=pointing_hints)
    assert solution.success, solution.message
    assert tried == [2, 3]
    assert solution.stats["sip_order"] == 0
    assert solution.scale_arcsec == pytest.approx(1.5, rel=1e-4)


def test_config_validation_and_environment(monkeypatch) -> None:
    monkeypatch.setenv("ZEPLATE_WORKERS", "3")
    assert SolveConfig().workers == 3
    monkeypatch.setenv("ZEPLATE_WORKERS", "lots")
    assert SolveConfig().workers == 1
    for bad in (
        {"quad_neighbors": 2},
        {"fit_order": 4},
        {"sip_order": 7},
        {"tolerance_shrink": 0.0},
        {"min_iterations": 5, "max_iterations": 2},
        {"scale_range_arcsec": (2.0, 1.0)},
        {"log_level": "chatty"},
    ):
        with pytest.raises(InputError):
            SolveConfig(**bad).validate()


def test_package_exports_are_lazy() -> None:
    assert zeplate.solve_stars is solve_stars
    assert zeplate.InsufficientMatches is InsufficientMatches
    assert "CatalogIndex" in dir(zeplate)
    with pytest.raises(AttributeError):
        zeplate.not_exported

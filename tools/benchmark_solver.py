#!/usr/bin/env python3
"""Synthetic round-trip benchmark harness for the ZePlate solver."""
from __future__ import annotations

import argparse
import csv
import json
import logging
import math
import sys
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import numpy as np

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from zeplate.catalog import InMemoryCatalog
from zeplate.errors import InputError
from zeplate.solver import PlateSolution, SolveConfig, SolveHints, solve_image, solve_stars
from zeplate.synthetic import SyntheticField, catalog_in_footprint, field_transform, make_field, random_catalog, render_image


@dataclass(frozen=True)
class SweepProfile:
    label: str
    overrides: dict[str, Any]
    description: str | None = None


@dataclass(frozen=True)
class TrialSpec:
    index: int
    seed: int
    scale_arcsec: float
    rotation_deg: float
    parity: int = 1
    noise_px: float = 0.1


@dataclass
class TrialResult:
    trial: int
    profile_label: str
    overrides: dict[str, Any]
    success: bool
    recovered: bool
    elapsed_s: float
    message: str
    scale_error: float | None
    rotation_error_deg: float | None
    translation_error_px: float | None
    stats: dict[str, Any]


DEFAULT_CONFIG = SolveConfig()
DEFAULT_SWEEP: list[SweepProfile] = [
    SweepProfile("baseline", {}, "Library defaults."),
    SweepProfile(
        "wide-neighbours",
        {"quad_neighbors": 10, "max_image_quads": 40000},
        "Larger neighbourhoods for sparse or incomplete fields.",
    ),
    SweepProfile(
        "tight-codes",
        {"code_tolerance": 0.008, "bin_rotation_deg": 1.0},
        "Stricter descriptor matching for crowded fields.",
    ),
    SweepProfile(
        "no-early-exit",
        {"early_exit_votes": None},
        "Vote over every quad before picking a bin.",
    ),
]

_CONFIG_FIELD_LUT = {field.name.lower(): field.name for field in fields(SolveConfig)}
ROTATION_TOLERANCE_DEG = 0.05
SCALE_TOLERANCE = 1e-3
TRANSLATION_TOLERANCE_PX = 1.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run SolveConfig sweeps against synthetic star fields with known transforms."
    )
    parser.add_argument("--trials", type=int, default=20, help="Synthetic fields per sweep profile.")
    parser.add_argument("--seed", type=int, default=1, help="Seed for the trial generator.")
    parser.add_argument("--stars", type=int, default=50, help="Catalog stars inside each field.")
    parser.add_argument("--extra-stars", type=int, default=100, help="Catalog stars scattered around the field.")
    parser.add_argument("--scale-min", type=float, default=0.8, help="Smallest pixel scale (arcsec/px).")
    parser.add_argument("--scale-max", type=float, default=3.0, help="Largest pixel scale (arcsec/px).")
    parser.add_argument("--noise-px", type=float, default=0.1, help="Centroid noise (pixels).")
    parser.add_argument("--width", type=int, default=1024)
    parser.add_argument("--height", type=int, default=1024)
    parser.add_argument("--mirrored", action="store_true", help="Generate mirrored (parity -1) fields.")
    parser.add_argument("--render", action="store_true", help="Render images and run the star extractor.")
    parser.add_argument("--grid", type=Path, help="JSON file describing sweep entries.")
    parser.add_argument("--output-json", type=Path, help="Write the detailed run log to JSON.")
    parser.add_argument("--output-csv", type=Path, help="Write a flat run log to CSV.")
    parser.add_argument("--log-level", default="INFO", help="Harness log level.")
    parser.add_argument("--workers", type=int, default=DEFAULT_CONFIG.workers)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.grid:
        args.grid = args.grid.expanduser().resolve()
        if not args.grid.is_file():
            parser.error(f"--grid file {args.grid} not found")
    if not 0.0 < args.scale_min <= args.scale_max:
        parser.error("--scale-min must be positive and not exceed --scale-max")
    args.log_level = args.log_level.upper()
    logging.basicConfig(level=getattr(logging, args.log_level, logging.INFO), format="%(levelname)s: %(message)s")
    try:
        sweeps = load_sweeps(args.grid)
    except ValueError as exc:
        parser.error(str(exc))
        return 2
    trials = plan_trials(
        args.trials,
        seed=args.seed,
        scale_range=(args.scale_min, args.scale_max),
        noise_px=args.noise_px,
        parity=-1 if args.mirrored else 1,
    )
    base_config = DEFAULT_CONFIG.replace(workers=max(1, args.workers))
    logging.info("running %d trials x %d sweep profiles", len(trials), len(sweeps))
    results = run_benchmark(
        trials,
        sweeps,
        base_config,
        shape=(args.height, args.width),
        field_stars=args.stars,
        extra_stars=args.extra_stars,
        render=args.render,
    )
    write_outputs(results, sweeps, base_config, args)
    for label, summary in summarize(results).items():
        logging.info(
            "%-16s recovered %d/%d (%.1f%%), mean %.2fs",
            label,
            summary["recovered"],
            summary["trials"],
            100.0 * summary["recovery_rate"],
            summary["mean_elapsed_s"],
        )
    return 0 if results and all(entry.recovered for entry in results) else 1


def plan_trials(
    count: int,
    *,
    seed: int = 1,
    scale_range: tuple[float, float] = (0.8, 3.0),
    noise_px: float = 0.1,
    parity: int = 1,
) -> list[TrialSpec]:
    """Deterministic trial list: rotations spread over 0-360 deg, log-uniform scales."""
    rng = np.random.default_rng(seed)
    lo, hi = scale_range
    trials: list[TrialSpec] = []
    for index in range(max(0, int(count))):
        base = 360.0 * index / max(1, count)
        rotation = (base + rng.uniform(0.0, 360.0 / max(1, count))) % 360.0
        scale = float(math.exp(rng.uniform(math.log(lo), math.log(hi))))
        trials.append(
            TrialSpec(
                index=index,
                seed=int(rng.integers(0, 2**31 - 1)),
                scale_arcsec=scale,
                rotation_deg=rotation,
                parity=parity,
                noise_px=noise_px,
            )
        )
    return trials


def build_trial_field(
    spec: TrialSpec,
    *,
    shape: tuple[int, int] = (1024, 1024),
    field_stars: int = 50,
    extra_stars: int = 100,
    center: tuple[float, float] = (150.0, 20.0),
) -> SyntheticField:
    rng = np.random.default_rng(spec.seed)
    height, width = shape
    reference = (width / 2.0, height / 2.0)
    transform = field_transform(spec.scale_arcsec, spec.rotation_deg, reference, parity=spec.parity)
    inside = catalog_in_footprint(field_stars, transform, center, shape, rng=rng)
    patch = 3.0 * max(width, height) * spec.scale_arcsec / 3600.0
    outside = random_catalog(extra_stars, center, patch, rng=rng, first_id=field_stars)
    catalog = np.concatenate((inside, outside))
    return make_field(
        catalog,
        center,
        scale_arcsec=spec.scale_arcsec,
        rotation_deg=spec.rotation_deg,
        reference_px=reference,
        shape=shape,
        parity=spec.parity,
        noise_px=spec.noise_px,
        border_px=2.0,
        rng=rng,
    )


def transform_errors(solution: PlateSolution, field: SyntheticField) -> tuple[float, float, float]:
    """(relative scale error, rotation error deg, pixel error of the tangent point)."""
    if solution.wcs is None:
        raise ValueError("solution has no WCS")
    scale_err = abs(solution.scale_arcsec - field.scale_arcsec) / field.scale_arcsec
    diff = (solution.rotation_deg - field.rotation_deg + 180.0) % 360.0 - 180.0
    expected = field.transform.inverse(np.zeros((1, 2)))[0]
    px = solution.wcs.all_world2pix([[field.center[0], field.center[1]]], 0)[0]
    translation_err = float(math.hypot(px[0] - expected[0], px[1] - expected[1]))
    return float(scale_err), float(abs(diff)), translation_err


def run_trial(
    spec: TrialSpec,
    config: SolveConfig,
    profile: SweepProfile,
    *,
    shape: tuple[int, int] = (1024, 1024),
    field_stars: int = 50,
    extra_stars: int = 100,
    render: bool = False,
) -> TrialResult:
    field = build_trial_field(spec, shape=shape, field_stars=field_stars, extra_stars=extra_stars)
    catalog = InMemoryCatalog(field.catalog)
    hints = SolveHints(
        pixel_scale_arcsec=spec.scale_arcsec,
        scale_tolerance=0.05,
        ra_deg=field.center[0],
        dec_deg=field.center[1],
        radius_deg=0.0,
    )
    start = time.perf_counter()
    try:
        if render:
            image = render_image(field.stars, shape, rng=np.random.default_rng(spec.seed))
            solution = solve_image(image, catalog, config=config, hints=hints)
        else:
            solution = solve_stars(field.stars, shape, catalog, config=config, hints=hints)
    except InputError as exc:
        elapsed = time.perf_counter() - start
        return TrialResult(spec.index, profile.label, dict(profile.overrides), False, False, elapsed, f"input error: {exc}", None, None, None, {})
    elapsed = time.perf_counter() - start
    scale_err = rot_err = trans_err = None
    recovered = False
    if solution.success:
        scale_err, rot_err, trans_err = transform_errors(solution, field)
        recovered = (
            scale_err <= SCALE_TOLERANCE
            and rot_err <= ROTATION_TOLERANCE_DEG
            and trans_err <= TRANSLATION_TOLERANCE_PX
        )
    return TrialResult(
        trial=spec.index,
        profile_label=profile.label,
        overrides=dict(profile.overrides),
        success=solution.success,
        recovered=recovered,
        elapsed_s=elapsed,
        message=solution.message,
        scale_error=scale_err,
        rotation_error_deg=rot_err,
        translation_error_px=trans_err,
        stats=make_json_safe(solution.stats),
    )


def run_benchmark(
    trials: Sequence[TrialSpec],
    sweeps: Sequence[SweepProfile],
    base_config: SolveConfig,
    *,
    shape: tuple[int, int] = (1024, 1024),
    field_stars: int = 50,
    extra_stars: int = 100,
    render: bool = False,
    log: Callable[[str], None] | None = None,
    cancel_check: Callable[[], bool] | None = None,
) -> list[TrialResult]:
    results: list[TrialResult] = []
    emitter = log or logging.info
    for sweep_index, profile in enumerate(sweeps, 1):
        config = merge_config(base_config, profile.overrides)
        emitter(f"[{sweep_index}/{len(sweeps)}] {profile.label}")
        for spec in trials:
            if cancel_check and cancel_check():
                emitter("benchmark cancelled")
                return results
            result = run_trial(
                spec,
                config,
                profile,
                shape=shape,
                field_stars=field_stars,
                extra_stars=extra_stars,
                render=render,
            )
            results.append(result)
            status = "OK " if result.recovered else ("OFF" if result.success else "ERR")
            emitter(
                f"    trial {spec.index:3d} scale={spec.scale_arcsec:5.2f} rot={spec.rotation_deg:6.1f} "
                f"{status} {result.elapsed_s:5.2f}s :: {result.message}"
            )
    return results


def summarize(results: Iterable[TrialResult]) -> dict[str, dict[str, float]]:
    grouped: dict[str, list[TrialResult]] = {}
    for entry in results:
        grouped.setdefault(entry.profile_label, []).append(entry)
    summary: dict[str, dict[str, float]] = {}
    for label, entries in grouped.items():
        recovered = sum(1 for entry in entries if entry.recovered)
        summary[label] = {
            "trials": len(entries),
            "solved": sum(1 for entry in entries if entry.success),
            "recovered": recovered,
            "recovery_rate": recovered / len(entries),
            "mean_elapsed_s": float(np.mean([entry.elapsed_s for entry in entries])),
        }
    return summary


def write_outputs(
    results: list[TrialResult],
    sweeps: list[SweepProfile],
    base_config: SolveConfig,
    args: argparse.Namespace,
) -> None:
    if args.output_json:
        payload = {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "base_config": make_json_safe(asdict(base_config)),
            "sweeps": [
                {"label": profile.label, "overrides": profile.overrides, "description": profile.description}
                for profile in sweeps
            ],
            "summary": summarize(results),
            "runs": [make_json_safe(asdict(entry)) for entry in results],
        }
        args.output_json.parent.mkdir(parents=True, exist_ok=True)
        args.output_json.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logging.info("wrote JSON results to %s", args.output_json)
    if args.output_csv:
        args.output_csv.parent.mkdir(parents=True, exist_ok=True)
        fieldnames = [
            "trial",
            "profile",
            "success",
            "recovered",
            "elapsed_s",
            "message",
            "scale_error",
            "rotation_error_deg",
            "translation_error_px",
            "overrides",
            "inliers",
            "rms_px",
        ]
        with args.output_csv.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            writer.writeheader()
            for entry in results:
                stats = entry.stats or {}
                writer.writerow(
                    {
                        "trial": entry.trial,
                        "profile": entry.profile_label,
                        "success": entry.success,
                        "recovered": entry.recovered,
                        "elapsed_s": f"{entry.elapsed_s:.3f}",
                        "message": entry.message,
                        "scale_error": entry.scale_error,
                        "rotation_error_deg": entry.rotation_error_deg,
                        "translation_error_px": entry.translation_error_px,
                        "overrides": json.dumps(make_json_safe(entry.overrides), sort_keys=True),
                        "inliers": stats.get("inliers"),
                        "rms_px": stats.get("rms_px"),
                    }
                )
        logging.info("wrote CSV results to %s", args.output_csv)


def load_sweeps(grid_path: Path | None) -> list[SweepProfile]:
    if grid_path is None:
        return [SweepProfile(entry.label, dict(entry.overrides), entry.description) for entry in DEFAULT_SWEEP]
    payload = json.loads(grid_path.read_text(encoding="utf-8"))
    raw_entries: Iterable[Any]
    if isinstance(payload, dict) and "sweeps" in payload:
        raw_entries = payload["sweeps"]
    elif isinstance(payload, list):
        raw_entries = payload
    else:
        raise ValueError("grid file must be a list or an object with a 'sweeps' array")
    sweeps: list[SweepProfile] = []
    for idx, entry in enumerate(raw_entries, 1):
        if not isinstance(entry, dict):
            raise ValueError("each grid entry must be a JSON object")
        label = entry.get("label") or entry.get("name") or f"profile-{idx}"
        description = entry.get("description") or entry.get("notes")
        overrides = entry.get("overrides")
        if overrides is None:
            overrides = {
                key: value for key, value in entry.items() if key not in {"label", "name", "description", "notes"}
            }
        if not isinstance(overrides, dict):
            raise ValueError(f"grid entry '{label}' overrides must be an object")
        sweeps.append(SweepProfile(label, normalize_overrides(overrides), description))
    if not sweeps:
        raise ValueError("grid file did not define any sweeps")
    return sweeps


def normalize_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = _CONFIG_FIELD_LUT.get(key.lower())
        if not canonical:
            raise ValueError(f"unknown SolveConfig field '{key}' in overrides")
        if canonical in {"magnitude_ladder", "scale_range_arcsec"} and isinstance(value, list):
            value = tuple(value)
        normalized[canonical] = value
    return normalized


def merge_config(base: SolveConfig, overrides: dict[str, Any]) -> SolveConfig:
    if not overrides:
        return base
    config = base.replace(**overrides)
    config.validate()
    return config


def make_json_safe(obj: Any) -> Any:
    if isinstance(obj, (str, int, float, bool)) or obj is None:
        return obj
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, dict):
        return {key: make_json_safe(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [make_json_safe(value) for value in obj]
    if hasattr(obj, "tolist"):
        return obj.tolist()
    if hasattr(obj, "item"):
        return obj.item()
    return str(obj)


if __name__ == "__main__":
    raise SystemExit(main())

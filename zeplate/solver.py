from __future__ import annotations

import enum
import logging
import math
import os
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, fields
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, Callable, Optional, Sequence

import numpy as np
from astropy.io import fits
from astropy.wcs import InvalidTransformError, NoConvergence, WCS

from .asterisms import QuadSet, build_quads
from .candidate_search import SolveAttempt, field_radius_deg, plan_attempts, plan_regions
from .catalog import as_catalog_array, ensure_catalog_source
from .catalog_index import CatalogIndex
from .errors import (
    BudgetExhausted,
    InputError,
    InsufficientMatches,
    NoConsistentMatch,
    NoStarsDetected,
    SolveCancelled,
    SolveFailure,
    failure_for_reason,
)
from .matcher import SimilarityTransform, accumulate_votes
from .projections import deproject_tan
from .refine import RefineResult, refine_transform
from .star_detect import STAR_DTYPE, detect_stars, make_star_array, sort_by_brightness, validate_star_array
from .verify import validate_solution
from .wcs_fit import PolynomialTransform, fit_wcs_sip, fit_wcs_tan, needs_sip, tan_from_similarity, wcs_scale_rotation

try:
    __version__ = pkg_version("zeplate")
except PackageNotFoundError:
    __version__ = "0.0.dev"

ZEPLATE_VERSION = __version__
logger = logging.getLogger(__name__)

MATCH_DTYPE = np.dtype(
    [
        ("image_index", "i8"),
        ("catalog_index", "i8"),
        ("catalog_id", "i8"),
        ("x", "f8"),
        ("y", "f8"),
        ("ra", "f8"),
        ("dec", "f8"),
        ("mag", "f4"),
        ("flux", "f8"),
        ("residual_px", "f8"),
    ]
)


def _env_workers(default: int = 1) -> int:
    raw = os.environ.get("ZEPLATE_WORKERS")
    if raw is None:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


@dataclass
class SolveConfig:
    min_stars: int = 8
    max_stars: int = 300
    max_catalog_stars: int = 500
    detect_k_sigma: float = 3.0
    detect_min_area: int = 5
    saturation_level: float | None = None
    downsample: int = 1
    quad_neighbors: int = 8
    quad_level_base: int = 20
    max_image_quads: int | None = 20000
    max_catalog_quads: int | None = 60000
    min_quad_size_px: float = 20.0
    collinear_tolerance: float = 0.01
    code_tolerance: float = 0.015
    bin_scale: float = 0.02
    bin_rotation_deg: float = 2.0
    bin_translation_px: float = 10.0
    match_weight: float = 1.0
    min_votes: float = 10.0
    early_exit_votes: float | None = 30.0
    pixel_tolerance: float = 3.0
    initial_match_tolerance_px: float = 3.0
    final_match_tolerance_px: float = 1.0
    tolerance_shrink: float = 0.5
    min_iterations: int = 2
    max_iterations: int = 10
    fit_order: int = 1
    sip_order: int = 0
    min_matches: int = 6
    max_rms_px: float = 1.0
    magnitude_ladder: tuple[float | None, ...] = (11.0, 13.0, 15.0, None)
    search_radius_deg: float = 5.0
    region_step_deg: float | None = None
    region_margin: float = 1.2
    scale_range_arcsec: tuple[float, float] = (0.1, 60.0)
    allow_reflection: bool = True
    max_quad_tests: int | None = None
    quad_batch_size: int = 256
    time_budget_s: float | None = None
    max_attempts: int | None = None
    workers: int = field(default_factory=_env_workers)
    log_level: str | None = None

    def validate(self) -> None:
        """Raise :class:`InputError` for settings the solver cannot work with."""
        positive = {
            "max_stars": self.max_stars,
            "max_catalog_stars": self.max_catalog_stars,
            "detect_k_sigma": self.detect_k_sigma,
            "code_tolerance": self.code_tolerance,
            "bin_scale": self.bin_scale,
            "bin_rotation_deg": self.bin_rotation_deg,
            "bin_translation_px": self.bin_translation_px,
            "pixel_tolerance": self.pixel_tolerance,
            "initial_match_tolerance_px": self.initial_match_tolerance_px,
            "final_match_tolerance_px": self.final_match_tolerance_px,
            "max_rms_px": self.max_rms_px,
            "region_margin": self.region_margin,
            "quad_batch_size": self.quad_batch_size,
            "workers": self.workers,
        }
        for name, value in positive.items():
            if value is None or not value > 0:
                raise InputError(f"{name} must be positive, got {value!r}")
        if self.quad_neighbors < 3:
            raise InputError("quad_neighbors must be at least 3")
        if self.min_matches < 3:
            raise InputError("min_matches must be at least 3")
        if self.min_stars < 4:
            raise InputError("min_stars must be at least 4")
        if not 1 <= self.fit_order <= 3:
            raise InputError("fit_order must be 1, 2 or 3")
        if self.sip_order != 0 and not 2 <= self.sip_order <= 5:
            raise InputError("sip_order must be 0 or between 2 and 5")
        if not 0.0 < self.tolerance_shrink <= 1.0:
            raise InputError("tolerance_shrink must be in (0, 1]")
        if self.final_match_tolerance_px > self.initial_match_tolerance_px:
            raise InputError("final_match_tolerance_px cannot exceed initial_match_tolerance_px")
        if self.min_iterations < 1 or self.max_iterations < self.min_iterations:
            raise InputError("iteration limits must satisfy 1 <= min_iterations <= max_iterations")
        lo, hi = self.scale_range_arcsec
        if not 0.0 < lo <= hi:
            raise InputError(f"invalid scale_range_arcsec {self.scale_range_arcsec!r}")
        if self.downsample < 1:
            raise InputError("downsample must be >= 1")
        if self.time_budget_s is not None and self.time_budget_s <= 0:
            raise InputError("time_budget_s must be positive when set")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise InputError("max_attempts must be positive when set")
        if self.log_level is not None and not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise InputError(f"unknown log level {self.log_level!r}")

    def replace(self, **changes: Any) -> "SolveConfig":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise InputError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return SolveConfig(**values)


@dataclass(frozen=True)
class SolveHints:
    pixel_scale_arcsec: float | None = None
    scale_tolerance: float | None = None
    ra_deg: float | None = None
    dec_deg: float | None = None
    radius_deg: float | None = None

    @property
    def has_pointing(self) -> bool:
        return self.ra_deg is not None and self.dec_deg is not None


class SolveState(enum.Enum):
    IDLE = "idle"
    TRYING_REGION = "trying_region"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    SOLVED = "solved"
    EXHAUSTED = "exhausted"


@dataclass
class AttemptRecord:
    sequence: int
    ra_deg: float
    dec_deg: float
    radius_deg: float
    mag_limit: float | None
    state: SolveState = SolveState.TRYING_REGION
    reason: str = ""
    message: str = ""
    catalog_stars: int = 0
    catalog_quads: int = 0
    votes: float = 0.0
    matches: int = 0
    rms_px: float = float("inf")
    elapsed_s: float = 0.0


@dataclass(frozen=True, eq=False)
class CandidateTransform:
    """Best vote winner seen during a search, never confirmed by refinement."""

    similarity: SimilarityTransform
    votes: float
    matched: int
    tangent_point: tuple[float, float]
    mag_limit: float | None
    wcs: WCS
    confirmed: bool = False


@dataclass
class PlateSolution:
    success: bool
    reason: str
    message: str
    wcs: WCS | None = None
    transform: PolynomialTransform | None = None
    similarity: SimilarityTransform | None = None
    matches: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=MATCH_DTYPE))
    stats: dict[str, Any] = field(default_factory=dict)
    state: SolveState = SolveState.IDLE
    attempts: list[AttemptRecord] = field(default_factory=list)
    candidate: CandidateTransform | None = None
    header_updates: dict[str, Any] = field(default_factory=dict)

    @property
    def scale_arcsec(self) -> float | None:
        if self.wcs is None:
            return None
        return wcs_scale_rotation(self.wcs)[0]

    @property
    def rotation_deg(self) -> float | None:
        if self.wcs is None:
            return None
        return wcs_scale_rotation(self.wcs)[1]

    @property
    def confidence(self) -> float:
        return float(self.stats.get("confidence", 0.0)) if self.success else 0.0

    def to_header(self) -> fits.Header:
        if self.wcs is None:
            header = fits.Header()
        else:
            header = self.wcs.to_header(relax=True)
        for key, value in self.header_updates.items():
            header[key] = value
        return header

    def raise_for_failure(self) -> "PlateSolution":
        if not self.success:
            raise failure_for_reason(self.reason, self.message)
        return self


@dataclass
class _AttemptOutcome:
    record: AttemptRecord
    solution: PlateSolution | None = None
    cancelled: bool = False
    out_of_budget: bool = False


class _ResultCell:
    """Write-once slot for the first solved attempt."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: PlateSolution | None = None
        self.solved = threading.Event()

    def offer(self, solution: PlateSolution) -> bool:
        with self._lock:
            if self._value is not None:
                return False
            self._value = solution
            self.solved.set()
            return True

    @property
    def value(self) -> PlateSolution | None:
        with self._lock:
            return self._value


@dataclass(eq=False)
class _SearchContext:
    config: SolveConfig
    stars: np.ndarray
    xy: np.ndarray
    image_shape: tuple[int, int]
    quad_sets: list[tuple[QuadSet, int]]
    scale_range_deg: tuple[float, float]
    source: Any
    cancel_check: Optional[Callable[[], bool]]
    deadline: float | None
    cell: _ResultCell = field(default_factory=_ResultCell)
    lock: threading.Lock = field(default_factory=threading.Lock)
    candidate: CandidateTransform | None = None
    cancelled: bool = False
    out_of_time: bool = False

    def should_stop(self) -> bool:
        if self.cell.solved.is_set():
            return True
        if self.cancel_check is not None and self.cancel_check():
            self.cancelled = True
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.out_of_time = True
            return True
        return False

    def offer_candidate(self, candidate: CandidateTransform) -> None:
        with self.lock:
            if self.candidate is None or candidate.votes > self.candidate.votes:
                self.candidate = candidate


def _log_phase(stage: str, start: float) -> None:
    logger.debug("%s completed in %.2fs", stage, time.time() - start)


def _apply_log_level(config: SolveConfig) -> None:
    if config.log_level:
        logging.getLogger("zeplate").setLevel(str(config.log_level).upper())


def _as_star_array(stars) -> np.ndarray:
    if isinstance(stars, np.ndarray) and stars.dtype == STAR_DTYPE:
        return sort_by_brightness(validate_star_array(stars))
    if isinstance(stars, np.ndarray) and stars.dtype.names:
        names = stars.dtype.names
        if "x" not in names or "y" not in names:
            raise InputError("star array must have 'x' and 'y' fields")
        flux = stars["flux"] if "flux" in names else None
        return make_star_array(stars["x"], stars["y"], flux)
    table = np.asarray(stars, dtype=np.float64)
    if table.size == 0:
        return make_star_array([], [])
    if table.ndim != 2 or table.shape[1] not in (2, 3):
        raise InputError("stars must be a structured array or an (N, 2) / (N, 3) table")
    flux = table[:, 2] if table.shape[1] == 3 else None
    return make_star_array(table[:, 0], table[:, 1], flux)


def _scale_range_arcsec(config: SolveConfig, hints: SolveHints) -> tuple[float, float]:
    if hints.pixel_scale_arcsec:
        scale = float(hints.pixel_scale_arcsec)
        if not scale > 0.0 or not math.isfinite(scale):
            raise InputError(f"invalid pixel scale hint {hints.pixel_scale_arcsec!r}")
        tol = float(hints.scale_tolerance) if hints.scale_tolerance is not None else 0.1
        tol = max(tol, 1e-3)
        return scale / (1.0 + tol), scale * (1.0 + tol)
    lo, hi = config.scale_range_arcsec
    return float(lo), float(hi)


def _failure(
    reason: str,
    message: str,
    *,
    state: SolveState = SolveState.EXHAUSTED,
    attempts: list[AttemptRecord] | None = None,
    candidate: CandidateTransform | None = None,
    stats: dict[str, Any] | None = None,
) -> PlateSolution:
    return PlateSolution(
        success=False,
        reason=reason,
        message=message,
        state=state,
        attempts=list(attempts or []),
        candidate=candidate,
        stats=dict(stats or {}),
    )


def _match_table(stars: np.ndarray, catalog: np.ndarray, refined: RefineResult) -> np.ndarray:
    table = np.zeros(refined.matches, dtype=MATCH_DTYPE)
    img = refined.image_indices
    cat = refined.catalog_indices
    table["image_index"] = img
    table["catalog_index"] = cat
    table["catalog_id"] = catalog["id"][cat]
    table["x"] = stars["x"][img]
    table["y"] = stars["y"][img]
    table["ra"] = catalog["ra"][cat]
    table["dec"] = catalog["dec"][cat]
    table["mag"] = catalog["mag"][cat]
    table["flux"] = stars["flux"][img]
    table["residual_px"] = refined.residuals_px
    return table


def _fit_rows(table: np.ndarray) -> np.ndarray:
    return np.column_stack((table["x"], table["y"], table["ra"], table["dec"]))


def _fit_solution_wcs(
    ctx: _SearchContext,
    table: np.ndarray,
    refined: RefineResult,
    tangent_point: tuple[float, float],
    votes: float,
) -> tuple[WCS, dict[str, Any], int]:
    config = ctx.config
    height, width = ctx.image_shape
    crpix = ((width - 1) / 2.0, (height - 1) / 2.0)
    plane = refined.transform.apply(np.array([crpix]))[0]
    ra0, dec0 = deproject_tan(plane[0], plane[1], tangent_point[0], tangent_point[1])
    rows = _fit_rows(table)
    thresholds = {"rms_px": config.max_rms_px, "inliers": config.min_matches, "votes": config.min_votes}
    try:
        wcs, _ = fit_wcs_tan(rows, crpix=crpix, crval=(float(ra0), float(dec0)))
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise InsufficientMatches(f"TAN fit failed: {exc}") from exc
    stats = validate_solution(wcs, rows, thresholds, votes=votes)
    sip_used = 0
    fov_deg = math.hypot(width, height) * refined.transform.scale
    if config.sip_order >= 2 and stats.get("quality") == "GOOD" and needs_sip(stats, fov_deg):
        for order in range(2, config.sip_order + 1):
            if ctx.should_stop():
                break
            try:
                candidate_wcs, _ = fit_wcs_sip(rows, order=order)
            except (ValueError, np.linalg.LinAlgError, InvalidTransformError, NoConvergence) as exc:
                logger.info("SIP fit failed (order=%d): %s", order, exc)
                continue
            candidate_stats = validate_solution(candidate_wcs, rows, thresholds, votes=votes)
            if candidate_stats.get("rms_px", float("inf")) < stats.get("rms_px", float("inf")):
                wcs, stats, sip_used = candidate_wcs, candidate_stats, order
            if not needs_sip(stats, fov_deg):
                break
    return wcs, stats, sip_used


def _run_attempt(ctx: _SearchContext, attempt: SolveAttempt) -> _AttemptOutcome:
    config = ctx.config
    region = attempt.region
    record = AttemptRecord(
        sequence=attempt.sequence,
        ra_deg=region.ra_deg,
        dec_deg=region.dec_deg,
        radius_deg=region.radius_deg,
        mag_limit=attempt.mag_limit,
    )
    start = time.monotonic()
    outcome = _AttemptOutcome(record)
    try:
        if ctx.should_stop():
            raise SolveCancelled("stopped before building the catalog index")
        slice_ = as_catalog_array(
            ctx.source.stars_in_region(region.ra_deg, region.dec_deg, region.radius_deg, attempt.mag_limit)
        )
        record.catalog_stars = int(slice_.size)
        if slice_.size < config.min_matches:
            raise InsufficientMatches(
                f"catalog region holds {slice_.size} stars (need {config.min_matches})"
            )
        height, width = ctx.image_shape
        index = CatalogIndex.build(
            slice_,
            (region.ra_deg, region.dec_deg),
            neighbors=config.quad_neighbors,
            max_stars=config.max_catalog_stars,
            max_quads=config.max_catalog_quads,
            min_quad_size_deg=config.min_quad_size_px * ctx.scale_range_deg[0],
            max_quad_size_deg=math.hypot(width, height) * ctx.scale_range_deg[1],
            collinear_tolerance=config.collinear_tolerance,
            level_base=config.quad_level_base or None,
        )
        record.catalog_quads = len(index)
        if index.star_count < config.min_matches:
            raise InsufficientMatches(f"only {index.star_count} catalog stars project onto the field")
        if len(index) == 0:
            raise NoConsistentMatch("catalog region produced no quads")
        if ctx.should_stop():
            raise SolveCancelled("stopped before voting")
        vote = accumulate_votes(
            ctx.xy,
            ctx.quad_sets,
            index,
            center_xy=((width - 1) / 2.0, (height - 1) / 2.0),
            code_tolerance=config.code_tolerance,
            scale_range_deg=ctx.scale_range_deg,
            bin_scale=config.bin_scale,
            bin_rotation_deg=config.bin_rotation_deg,
            bin_translation_px=config.bin_translation_px,
            match_weight=config.match_weight,
            pixel_tolerance=config.pixel_tolerance,
            early_exit_votes=config.early_exit_votes,
            max_quad_tests=config.max_quad_tests,
            batch_size=config.quad_batch_size,
            cancel_check=ctx.should_stop,
        )
        if vote is not None:
            record.votes = vote.votes
            ctx.offer_candidate(
                CandidateTransform(
                    similarity=vote.transform,
                    votes=vote.votes,
                    matched=vote.matched,
                    tangent_point=index.center,
                    mag_limit=attempt.mag_limit,
                    wcs=tan_from_similarity(vote.transform, index.center),
                )
            )
        if ctx.cancelled or ctx.cell.solved.is_set():
            raise SolveCancelled("stopped during voting")
        if vote is None or vote.votes < config.min_votes:
            if ctx.out_of_time:
                raise SolveCancelled("time budget ran out during voting")
            best = 0.0 if vote is None else vote.votes
            raise NoConsistentMatch(f"best bin reached {best:.1f} votes (need {config.min_votes:g})")
        record.state = SolveState.MATCHED
        refined = refine_transform(
            vote.transform,
            ctx.xy,
            index,
            initial_tolerance_px=config.initial_match_tolerance_px,
            final_tolerance_px=config.final_match_tolerance_px,
            shrink=config.tolerance_shrink,
            min_matches=config.min_matches,
            min_iterations=config.min_iterations,
            max_iterations=config.max_iterations,
            order=config.fit_order,
            scale_range_deg=ctx.scale_range_deg,
        )
        table = _match_table(ctx.stars, index.stars, refined)
        wcs, stats, sip_used = _fit_solution_wcs(ctx, table, refined, index.center, vote.votes)
        record.matches = int(stats.get("inliers", 0))
        record.rms_px = float(stats.get("rms_px", float("inf")))
        if not stats.get("success"):
            raise InsufficientMatches(f"validation failed: {stats.get('reason', 'quality')}")
        scale_arcsec, rotation_deg, parity = wcs_scale_rotation(wcs)
        stats.update(
            {
                "votes": float(vote.votes),
                "vote_matched": int(vote.matched),
                "quads_tested": int(vote.quads_tested),
                "candidates": int(vote.candidates),
                "bins": int(vote.bins),
                "iterations": len(refined.history),
                "converged": bool(refined.converged),
                "scale_arcsec": float(scale_arcsec),
                "rotation_deg": float(rotation_deg),
                "parity": int(parity),
                "sip_order": int(sip_used),
                "mag_limit": attempt.mag_limit,
                "region": (region.ra_deg, region.dec_deg),
            }
        )
        record.state = SolveState.SOLVED
        record.reason = "solved"
        outcome.solution = PlateSolution(
            success=True,
            reason="solved",
            message=f"solution found ({attempt.label})",
            wcs=wcs,
            transform=refined.transform,
            similarity=refined.transform.to_similarity(),
            matches=table,
            stats=stats,
            state=SolveState.SOLVED,
        )
    except SolveCancelled as exc:
        record.state = SolveState.UNMATCHED
        record.reason = exc.reason
        record.message = exc.message
        outcome.cancelled = ctx.cancelled
        outcome.out_of_budget = ctx.out_of_time
    except SolveFailure as exc:
        if record.state is not SolveState.MATCHED:
            record.state = SolveState.UNMATCHED
        record.reason = exc.reason
        record.message = exc.message
    record.elapsed_s = time.monotonic() - start
    logger.debug(
        "attempt %s -> %s (%s) votes=%.1f matches=%d %.3fs",
        attempt.label,
        record.reason or record.state.value,
        record.message,
        record.votes,
        record.matches,
        record.elapsed_s,
    )
    return outcome


def _build_image_quads(xy: np.ndarray, config: SolveConfig) -> list[tuple[QuadSet, int]]:
    kwargs = dict(
        neighbors=config.quad_neighbors,
        max_quads=config.max_image_quads,
        collinear_tolerance=config.collinear_tolerance,
        min_size=config.min_quad_size_px,
        level_base=config.quad_level_base or None,
    )
    sets = [(build_quads(xy, **kwargs), 1)]
    if config.allow_reflection:
        sets.append((build_quads(xy, mirror=True, **kwargs), -1))
    return sets


def _run_sequential(ctx: _SearchContext, attempts: Sequence[SolveAttempt], records: list[AttemptRecord]) -> bool:
    """Run attempts in order; returns True when the budget ran out."""
    max_attempts = ctx.config.max_attempts
    for count, attempt in enumerate(attempts):
        if max_attempts is not None and count >= max_attempts:
            return True
        if ctx.should_stop():
            return ctx.out_of_time
        outcome = _run_attempt(ctx, attempt)
        records.append(outcome.record)
        if outcome.solution is not None and ctx.cell.offer(outcome.solution):
            return False
        if outcome.cancelled or outcome.out_of_budget:
            return outcome.out_of_budget
    return False


def _run_parallel(ctx: _SearchContext, attempts: Sequence[SolveAttempt], records: list[AttemptRecord]) -> bool:
    """Run attempts on a thread pool with a bounded submission window."""
    workers = max(1, int(ctx.config.workers))
    window = workers * 2
    max_attempts = ctx.config.max_attempts
    budget_hit = False
    pending: dict[Future, SolveAttempt] = {}
    finished: list[_AttemptOutcome] = []
    queue = iter(enumerate(attempts))
    exhausted_queue = False
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="zeplate") as pool:
        while True:
            while not exhausted_queue and len(pending) < window and not ctx.should_stop():
                try:
                    count, attempt = next(queue)
                except StopIteration:
                    exhausted_queue = True
                    break
                if max_attempts is not None and count >= max_attempts:
                    budget_hit = True
                    exhausted_queue = True
                    break
                pending[pool.submit(_run_attempt, ctx, attempt)] = attempt
            if not pending:
                break
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for future in done:
                pending.pop(future)
                outcome = future.result()
                finished.append(outcome)
                if outcome.solution is not None:
                    ctx.cell.offer(outcome.solution)
                if outcome.out_of_budget:
                    budget_hit = True
            if ctx.should_stop() and not pending:
                break
    finished.sort(key=lambda item: item.record.sequence)
    records.extend(item.record for item in finished)
    return budget_hit or ctx.out_of_time


def solve_stars(
    stars,
    image_shape: tuple[int, int],
    catalog,
    *,
    config: SolveConfig | None = None,
    hints: SolveHints | None = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> PlateSolution:
    """Solve a prepared star list of an image with shape ``(height, width)``."""
    config = config or SolveConfig()
    config.validate()
    _apply_log_level(config)
    hints = hints or SolveHints()
    start_clock = time.time()
    if len(image_shape) < 2 or min(int(image_shape[0]), int(image_shape[1])) < 3:
        raise InputError(f"invalid image shape {image_shape!r}")
    height, width = int(image_shape[0]), int(image_shape[1])
    star_array = _as_star_array(stars)
    source = ensure_catalog_source(catalog)
    if star_array.size == 0:
        logger.info("no stars detected; cannot solve")
        return _failure(NoStarsDetected.reason, "no stars detected", state=SolveState.IDLE)
    if star_array.size < config.min_stars:
        logger.info("only %d stars detected (need %d)", star_array.size, config.min_stars)
        return _failure(
            NoStarsDetected.reason,
            f"only {star_array.size} stars detected (need {config.min_stars})",
            state=SolveState.IDLE,
        )
    star_array = star_array[: config.max_stars]
    xy = np.column_stack((star_array["x"], star_array["y"])).astype(np.float64)
    scale_lo, scale_hi = _scale_range_arcsec(config, hints)
    stage = time.time()
    quad_sets = _build_image_quads(xy, config)
    total_quads = sum(len(q) for q, _ in quad_sets)
    _log_phase("image quads", stage)
    if total_quads == 0:
        logger.info("no usable quads from %d stars", star_array.size)
        return _failure(
            NoConsistentMatch.reason,
            f"no usable quads from {star_array.size} stars",
            state=SolveState.IDLE,
        )
    field_radius = field_radius_deg(width, height, scale_hi)
    regions = plan_regions(
        field_radius,
        ra_deg=hints.ra_deg if hints.has_pointing else None,
        dec_deg=hints.dec_deg if hints.has_pointing else None,
        hint_radius_deg=(hints.radius_deg if hints.radius_deg is not None else config.search_radius_deg),
        step_deg=config.region_step_deg,
        margin=config.region_margin,
    )
    attempts = plan_attempts(regions, config.magnitude_ladder)
    logger.info(
        "solving %d stars (%d quads) over %d attempts in %d regions, scale %.3f-%.3f\"/px",
        star_array.size,
        total_quads,
        len(attempts),
        len(regions),
        scale_lo,
        scale_hi,
    )
    deadline = None
    if config.time_budget_s is not None:
        deadline = time.monotonic() + float(config.time_budget_s)
    ctx = _SearchContext(
        config=config,
        stars=star_array,
        xy=xy,
        image_shape=(height, width),
        quad_sets=quad_sets,
        scale_range_deg=(scale_lo / 3600.0, scale_hi / 3600.0),
        source=source,
        cancel_check=cancel_check,
        deadline=deadline,
    )
    records: list[AttemptRecord] = []
    stage = time.time()
    if config.workers > 1:
        budget_hit = _run_parallel(ctx, attempts, records)
    else:
        budget_hit = _run_sequential(ctx, attempts, records)
    _log_phase("candidate search", stage)
    solution = ctx.cell.value
    elapsed = time.time() - start_clock
    if solution is not None:
        solution.attempts = records
        solution.stats["attempts"] = len(records)
        solution.stats["elapsed_s"] = elapsed
        solution.header_updates = {
            "SOLVED": 1,
            "RMSPX": round(float(solution.stats["rms_px"]), 4),
            "INLIERS": int(solution.stats["inliers"]),
            "VOTES": round(float(solution.stats["votes"]), 1),
            "SIPORD": int(solution.stats.get("sip_order", 0)),
            "QUALITY": solution.stats["quality"],
            "SOLVER": "ZePlate",
            "SOLVMODE": "HINTED" if hints.has_pointing else "BLIND",
            "ZPLATVER": ZEPLATE_VERSION,
        }
        logger.info(
            "plate solved: scale=%.4f\"/px rot=%.3f deg rms=%.3f px matches=%d after %d attempts (%.2fs)",
            solution.stats["scale_arcsec"],
            solution.stats["rotation_deg"],
            solution.stats["rms_px"],
            solution.stats["inliers"],
            len(records),
            elapsed,
        )
        return solution
    stats = {"attempts": len(records), "elapsed_s": elapsed}
    if ctx.cancelled:
        logger.info("solve cancelled after %d attempts", len(records))
        return _failure(SolveCancelled.reason, "solve cancelled", attempts=records, candidate=ctx.candidate, stats=stats)
    if budget_hit or ctx.out_of_time:
        logger.info("search budget exhausted after %d attempts (%.2fs)", len(records), elapsed)
        return _failure(
            BudgetExhausted.reason,
            f"budget exhausted after {len(records)} of {len(attempts)} attempts",
            attempts=records,
            candidate=ctx.candidate,
            stats=stats,
        )
    reasons = {record.reason for record in records}
    if InsufficientMatches.reason in reasons:
        reason, message = InsufficientMatches.reason, "no attempt kept enough matched stars"
    else:
        reason, message = NoConsistentMatch.reason, "no consistent quad match in any region"
    logger.info("no solution after %d attempts: %s", len(records), message)
    return _failure(reason, message, attempts=records, candidate=ctx.candidate, stats=stats)


def solve_image(
    image,
    catalog,
    *,
    config: SolveConfig | None = None,
    hints: SolveHints | None = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> PlateSolution:
    """Detect stars in *image* and solve them against *catalog*."""
    config = config or SolveConfig()
    config.validate()
    _apply_log_level(config)
    if cancel_check and cancel_check():
        return _failure(SolveCancelled.reason, "solve cancelled", state=SolveState.IDLE)
    stage = time.time()
    data = np.asarray(image)
    stars = detect_stars(
        data,
        k_sigma=config.detect_k_sigma,
        min_area=config.detect_min_area,
        max_stars=config.max_stars,
        saturation_level=config.saturation_level,
        downsample=config.downsample,
    )
    _log_phase("detect", stage)
    logger.info("detected %d stars in %dx%d image", stars.size, data.shape[1], data.shape[0])
    return solve_stars(
        stars,
        data.shape[:2],
        catalog,
        config=config,
        hints=hints,
        cancel_check=cancel_check,
    )

from __future__ import annotations

import math
from typing import Mapping

import numpy as np
from astropy.wcs import InvalidTransformError, NoConvergence, WCS

from .wcs_fit import pixel_residuals

DEFAULT_THRESHOLDS = {"rms_px": 1.0, "inliers": 6, "votes": 0.0}


def validate_solution(
    wcs: WCS,
    matches: np.ndarray,
    thresholds: Mapping[str, float] | None = None,
    *,
    votes: float | None = None,
) -> dict[str, float | int | str | bool]:
    """Check a fitted WCS against ``(x, y, ra, dec)`` rows.

    Success needs the pixel RMS at or below ``thresholds['rms_px']``, at least
    ``thresholds['inliers']`` rows and, when *votes* is given, at least
    ``thresholds['votes']`` votes.
    """
    limits = dict(DEFAULT_THRESHOLDS)
    if thresholds:
        limits.update(thresholds)
    if matches.size == 0:
        return {"quality": "FAIL", "success": False, "reason": "no matches", "rms_px": float("inf"), "inliers": 0}
    try:
        residuals = pixel_residuals(wcs, np.asarray(matches, dtype=np.float64))
    except (InvalidTransformError, NoConvergence):
        return {"quality": "FAIL", "success": False, "reason": "invalid transform", "rms_px": float("inf"), "inliers": 0}
    if not np.isfinite(residuals).all():
        return {"quality": "FAIL", "success": False, "reason": "invalid transform", "rms_px": float("inf"), "inliers": 0}
    rms_px = float(np.sqrt(np.mean(residuals ** 2)))
    n = int(matches.shape[0])
    success = rms_px <= limits["rms_px"] and n >= limits["inliers"]
    reason = ""
    if n < limits["inliers"]:
        reason = "too few matches"
    elif rms_px > limits["rms_px"]:
        reason = "residual too large"
    if votes is not None and votes < limits["votes"]:
        success = False
        reason = reason or "too few votes"
    result: dict[str, float | int | str | bool] = {
        "quality": "GOOD" if success else "FAIL",
        "success": bool(success),
        "rms_px": rms_px,
        "mean_px": float(np.mean(residuals)),
        "max_px": float(np.max(residuals)),
        "inliers": n,
        "confidence": confidence_score(n, rms_px, min_matches=limits["inliers"], max_rms_px=limits["rms_px"]),
    }
    if reason:
        result["reason"] = reason
    return result


def confidence_score(matches: int, rms_px: float, *, min_matches: float, max_rms_px: float) -> float:
    """Score in [0, 1]: saturates with the match count and decays with the residual."""
    if matches <= 0 or not math.isfinite(rms_px):
        return 0.0
    support = 1.0 - math.exp(-float(matches) / max(1.0, float(min_matches)))
    accuracy = max(0.0, 1.0 - rms_px / max(2.0 * float(max_rms_px), 1e-9))
    return round(support * accuracy, 4)

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Optional

from .errors import InputError
from .solver import SolveConfig

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path.home() / ".zeplate_settings.json"
# Increment when the on-disk settings layout changes
SETTINGS_SCHEMA_VERSION = 1

_OPTIONAL_FLOATS = {"saturation_level", "early_exit_votes", "region_step_deg", "time_budget_s"}
_OPTIONAL_INTS = {"max_image_quads", "max_catalog_quads", "max_quad_tests", "max_attempts"}


def _resolve_settings_path(path: Path | str | None = None) -> Path:
    """Return the active settings path: explicit argument, ``ZEPLATE_SETTINGS``, then the default."""
    if path:
        return Path(path).expanduser()
    override = os.environ.get("ZEPLATE_SETTINGS")
    if override:
        return Path(override).expanduser()
    return SETTINGS_PATH


def _float_or_none(value: object) -> Optional[float]:
    if value in (None, "", False):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int_or_none(value: object) -> Optional[int]:
    if value in (None, "", False):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ladder(value: object) -> tuple[float | None, ...]:
    if not isinstance(value, (list, tuple)):
        raise ValueError("magnitude ladder must be a list")
    rungs: list[float | None] = []
    for item in value:
        rungs.append(None if item is None else float(item))
    return tuple(rungs)


def _coerce(name: str, value: object, default: Any) -> Any:
    if name in _OPTIONAL_FLOATS:
        return _float_or_none(value)
    if name in _OPTIONAL_INTS:
        return _int_or_none(value)
    if name == "magnitude_ladder":
        return _ladder(value)
    if name == "scale_range_arcsec":
        lo, hi = value  # type: ignore[misc]
        return (float(lo), float(hi))
    if name == "log_level":
        return str(value).upper() if value else None
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(default, int):
        return int(value)  # type: ignore[arg-type]
    if isinstance(default, float):
        return float(value)  # type: ignore[arg-type]
    return value


def config_from_mapping(payload: dict[str, Any], base: SolveConfig | None = None) -> SolveConfig:
    """Build a :class:`SolveConfig` from a mapping, skipping unknown or malformed keys."""
    base = base or SolveConfig()
    values: dict[str, Any] = {}
    known = {f.name for f in fields(SolveConfig)}
    for key, raw in payload.items():
        if key not in known:
            logger.debug("ignoring unknown setting %r", key)
            continue
        try:
            values[key] = _coerce(key, raw, getattr(base, key))
        except (TypeError, ValueError) as exc:
            logger.warning("ignoring invalid setting %s=%r: %s", key, raw, exc)
    config = base.replace(**values)
    try:
        config.validate()
    except InputError as exc:
        logger.warning("stored settings rejected (%s); using defaults", exc)
        return base
    return config


def load_solve_config(path: Path | str | None = None) -> SolveConfig:
    target = _resolve_settings_path(path)
    if not target.exists():
        return SolveConfig()
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("could not read settings from %s: %s", target, exc)
        return SolveConfig()
    if not isinstance(payload, dict):
        return SolveConfig()
    version = _int_or_none(payload.get("schema_version")) or 0
    if version > SETTINGS_SCHEMA_VERSION:
        logger.info("settings schema %d is newer than supported %d", version, SETTINGS_SCHEMA_VERSION)
    solver_section = payload.get("solver", payload)
    if not isinstance(solver_section, dict):
        return SolveConfig()
    return config_from_mapping(solver_section)


def save_solve_config(config: SolveConfig, path: Path | str | None = None) -> Path:
    target = _resolve_settings_path(path)
    data = {
        "schema_version": SETTINGS_SCHEMA_VERSION,
        "solver": asdict(config),
    }
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return target

"""Convenience exports for the ZePlate plate solving engine (lazy).

Heavy submodules (astropy, scipy) are imported on first access via module
`__getattr__` (PEP 562) so that `python -m zeplate.<submodule>` and light
imports such as `zeplate.errors` stay cheap.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "SolveConfig",
    "SolveHints",
    "SolveState",
    "PlateSolution",
    "solve_image",
    "solve_stars",
    "detect_stars",
    "InMemoryCatalog",
    "CatalogStar",
    "CatalogIndex",
    "InputError",
    "SolveFailure",
    "NoStarsDetected",
    "NoConsistentMatch",
    "InsufficientMatches",
    "BudgetExhausted",
    "SolveCancelled",
]

_SOLVER_NAMES = {"SolveConfig", "SolveHints", "SolveState", "PlateSolution", "solve_image", "solve_stars"}
_ERROR_NAMES = {
    "InputError",
    "SolveFailure",
    "NoStarsDetected",
    "NoConsistentMatch",
    "InsufficientMatches",
    "BudgetExhausted",
    "SolveCancelled",
}


def __getattr__(name: str) -> Any:  # PEP 562 lazy re-exports
    if name in _SOLVER_NAMES:
        from . import solver as _core
        return getattr(_core, name)
    if name in _ERROR_NAMES:
        from . import errors as _errors
        return getattr(_errors, name)
    if name == "detect_stars":
        from .star_detect import detect_stars
        return detect_stars
    if name in {"InMemoryCatalog", "CatalogStar"}:
        from . import catalog as _catalog
        return getattr(_catalog, name)
    if name == "CatalogIndex":
        from .catalog_index import CatalogIndex
        return CatalogIndex
    raise AttributeError(name)


def __dir__() -> list[str]:  # helps IDEs
    return sorted(set(globals().keys()) | set(__all__))

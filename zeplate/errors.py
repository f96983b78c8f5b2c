from __future__ import annotations


class InputError(ValueError):
    """Malformed pixel, catalog or configuration input."""


class SolveFailure(Exception):
    """Negative outcome of a solve attempt (not a programming fault)."""

    reason = "failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.reason.replace("_", " "))

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else self.reason


class NoStarsDetected(SolveFailure):
    reason = "no_stars"


class NoConsistentMatch(SolveFailure):
    reason = "no_consistent_match"


class InsufficientMatches(SolveFailure):
    reason = "insufficient_matches"


class BudgetExhausted(SolveFailure):
    reason = "budget_exhausted"


class SolveCancelled(SolveFailure):
    reason = "cancelled"


FAILURE_TYPES: dict[str, type[SolveFailure]] = {
    cls.reason: cls
    for cls in (NoStarsDetected, NoConsistentMatch, InsufficientMatches, BudgetExhausted, SolveCancelled)
}


def failure_for_reason(reason: str, message: str | None = None) -> SolveFailure:
    cls = FAILURE_TYPES.get(reason, SolveFailure)
    return cls(message)

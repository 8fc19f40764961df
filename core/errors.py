"""Typed engine errors surfaced to callers."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any


class EngineError(Exception):
    """Base class for every failure the engine reports to a caller."""

    code = "engine_error"

    def details(self) -> dict[str, Any]:
        """Return machine-readable context for the failure."""
        return {"error": self.code, "message": str(self)}


class InvalidLevel(EngineError, ValueError):
    """Level below 1 passed to a curve function."""

    code = "invalid_level"

    def __init__(self, level: int) -> None:
        super().__init__(f"Level must be at least 1 (got {level}).")
        self.level = level


class InvalidTransition(EngineError, ValueError):
    """Rank-up target is not exactly one level above the source."""

    code = "invalid_transition"

    def __init__(self, from_level: int, to_level: int) -> None:
        super().__init__(
            f"Target level must be current level + 1 (current: {from_level}, target: {to_level})."
        )
        self.from_level = from_level
        self.to_level = to_level


class LevelMismatch(EngineError):
    """Caller-supplied level disagrees with the stake account."""

    code = "level_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Current level is {actual}, but trial is for level {expected}.")
        self.expected = expected
        self.actual = actual

    def details(self) -> dict[str, Any]:
        return {**super().details(), "expected": self.expected, "actual": self.actual}


class InsufficientBalance(EngineError):
    """A wallet-hold or vault-stake precondition is unmet."""

    code = "insufficient_balance"

    def __init__(self, kind: str, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient {kind.replace('_', ' ')}. Required: {required}, Available: {available}."
        )
        self.kind = kind
        self.required = required
        self.available = available

    def details(self) -> dict[str, Any]:
        return {
            **super().details(),
            "kind": self.kind,
            "required": str(self.required),
            "available": str(self.available),
        }


class TrialAlreadyActive(EngineError):
    """Start called while the owner already has an active trial."""

    code = "trial_already_active"

    def __init__(self, trial_id: str) -> None:
        super().__init__("You already have an active rank-up trial.")
        self.trial_id = trial_id

    def details(self) -> dict[str, Any]:
        return {**super().details(), "trial_id": self.trial_id}


class CooldownActive(EngineError):
    """Start called before a prior failure's cooldown elapsed."""

    code = "cooldown_active"

    def __init__(self, cooldown_until: datetime) -> None:
        super().__init__(f"Trial cooldown active until {cooldown_until.isoformat()}.")
        self.cooldown_until = cooldown_until

    def details(self) -> dict[str, Any]:
        return {**super().details(), "cooldown_until": self.cooldown_until.isoformat()}


class IncompleteSubmission(EngineError):
    """Answer set does not match the issued question set."""

    code = "incomplete_submission"


class InsufficientQuestions(EngineError):
    """Question bank cannot supply enough eligible questions."""

    code = "insufficient_questions"

    def __init__(self, found: int, needed: int, min_complexity: int) -> None:
        super().__init__(
            f"Only {found} questions available at complexity >= {min_complexity}; need {needed}."
        )
        self.found = found
        self.needed = needed
        self.min_complexity = min_complexity

    def details(self) -> dict[str, Any]:
        return {
            **super().details(),
            "found": self.found,
            "needed": self.needed,
            "min_complexity": self.min_complexity,
        }


class TrialNotFound(EngineError, LookupError):
    code = "trial_not_found"


class TrialNotActive(EngineError):
    """Mutation attempted on a terminal trial."""

    code = "trial_not_active"

    def __init__(self, trial_id: str, status: str) -> None:
        super().__init__(f"Trial {trial_id} status is {status}, expected active.")
        self.trial_id = trial_id
        self.status = status


class TrialOwnershipError(EngineError):
    code = "trial_not_owned"


class InvalidNumericFormat(EngineError, ValueError):
    """Numeric answer could not be parsed.

    Grading never raises this; a submission records it per answer as the
    ``InvalidFormat`` tag. ``require_numeric`` raises it for authored values,
    so a question bank import rejects an unparsable canonical answer.
    """

    code = "invalid_numeric_format"


class StakeLocked(EngineError):
    """Withdrawal would dip into stake still under a post-trial lock."""

    code = "stake_locked"

    def __init__(self, locked: Decimal, locked_until: datetime | None) -> None:
        until = locked_until.isoformat() if locked_until else "unknown"
        super().__init__(f"{locked} stake is locked until {until}.")
        self.locked = locked
        self.locked_until = locked_until


class HoldNotFound(EngineError, LookupError):
    code = "hold_not_found"


class SessionNotFound(EngineError, LookupError):
    code = "session_not_found"

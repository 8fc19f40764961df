"""Numeric answer parsing and tolerance-aware comparison.

Accepted forms: signed decimals ("12.5", "-3.14", "1e3"), simple fractions
("3/4", "-1/2") and mixed fractions ("1 1/2", "-2 3/4"). A leading minus on
a mixed fraction negates the whole value.
"""

from __future__ import annotations

import enum
import math
import re

from pydantic import BaseModel

from core.errors import InvalidNumericFormat

EXACT_EPSILON = 1e-10
# Relative to the canonical magnitude, floored at 1.0.
TOLERANCE_GUARD = 1e-12

_DECIMAL_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_FRACTION_RE = re.compile(r"^([+-]?)(\d+)\s*/\s*(\d+)$")
_MIXED_RE = re.compile(r"^([+-]?)(\d+)\s+(\d+)\s*/\s*(\d+)$")


class GradeError(str, enum.Enum):
    """Per-answer error tags; never abort a submission."""

    MISSING_ANSWER = "MissingAnswer"
    INVALID_FORMAT = "InvalidFormat"


class NumericGradeResult(BaseModel):
    correct: bool
    user_value: float | None = None
    correct_value: float | None = None
    error: GradeError | None = None


def parse_numeric(text: str | None) -> float | None:
    """Parse a decimal, fraction or mixed fraction; ``None`` when invalid."""
    if text is None:
        return None
    trimmed = text.strip()
    if not trimmed:
        return None

    if "/" in trimmed:
        mixed = _MIXED_RE.match(trimmed)
        if mixed:
            sign, whole, numerator, denominator = mixed.groups()
            if int(denominator) == 0:
                return None
            value = int(whole) + int(numerator) / int(denominator)
            return -value if sign == "-" else value
        fraction = _FRACTION_RE.match(trimmed)
        if fraction:
            sign, numerator, denominator = fraction.groups()
            if int(denominator) == 0:
                return None
            value = int(numerator) / int(denominator)
            return -value if sign == "-" else value
        return None

    if not _DECIMAL_RE.match(trimmed):
        return None
    value = float(trimmed)
    return value if math.isfinite(value) else None


def require_numeric(text: str | None) -> float:
    """Strict ``parse_numeric`` for authored values such as canonical answers."""
    value = parse_numeric(text)
    if value is None:
        raise InvalidNumericFormat(f"Not a numeric value: {text!r}")
    return value


def _as_text(value: object) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return repr(value) if isinstance(value, float) else str(value)
    return str(value)


def grade_numeric(
    user_answer: object,
    correct_answer: object,
    tolerance: float | None,
) -> NumericGradeResult:
    """Compare a submitted numeric answer against the canonical one."""
    user_text = _as_text(user_answer)
    correct_text = _as_text(correct_answer)
    if not (user_text and user_text.strip()) or not (correct_text and correct_text.strip()):
        return NumericGradeResult(correct=False, error=GradeError.MISSING_ANSWER)

    user_value = parse_numeric(user_text)
    correct_value = parse_numeric(correct_text)
    if user_value is None or correct_value is None:
        return NumericGradeResult(
            correct=False,
            user_value=user_value,
            correct_value=correct_value,
            error=GradeError.INVALID_FORMAT,
        )

    difference = abs(user_value - correct_value)
    if tolerance is None:
        correct = difference < EXACT_EPSILON
    else:
        guard = TOLERANCE_GUARD * max(1.0, abs(correct_value))
        correct = difference <= tolerance + guard
    return NumericGradeResult(correct=correct, user_value=user_value, correct_value=correct_value)

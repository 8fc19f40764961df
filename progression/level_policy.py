"""Level-banded policy tables.

Each table is an ordered list of level bands. A band holds the parameter
values at its lower bound and, optionally, at its upper bound; numeric
values are linearly interpolated across the band, everything else is taken
from the lower bound. Lookups clamp the level into the table's range.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict

MIN_POLICY_LEVEL = 1
MAX_POLICY_LEVEL = 100


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def clamp01(t: float) -> float:
    return max(0.0, min(1.0, t))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class LevelBand:
    """Parameter values for levels ``low`` through ``high`` inclusive."""

    low: int
    high: int
    start: Mapping[str, Any]
    end: Mapping[str, Any] = field(default_factory=dict)

    def contains(self, level: int) -> bool:
        return self.low <= level <= self.high

    def evaluate(self, level: int) -> dict[str, Any]:
        span = self.high - self.low
        t = clamp01((level - self.low) / span) if span else 0.0
        values: dict[str, Any] = {}
        for key, a in self.start.items():
            b = self.end.get(key, a)
            if isinstance(a, bool) or not isinstance(a, (int, float)):
                values[key] = a
            elif isinstance(a, int) and isinstance(b, int):
                values[key] = round_half_up(lerp(a, b, t))
            else:
                values[key] = lerp(float(a), float(b), t)
        return values


def evaluate_bands(table: Sequence[LevelBand], level: int) -> dict[str, Any]:
    """Evaluate the first band that covers ``level`` after clamping."""
    clamped = max(table[0].low, min(table[-1].high, int(math.floor(level))))
    for band in table:
        if band.contains(clamped):
            return band.evaluate(clamped)
    raise ValueError(f"No level band covers level {clamped}")


COMPLEXITY_BANDS: tuple[LevelBand, ...] = (
    LevelBand(1, 20, {"max_complexity": 1}),
    LevelBand(21, 40, {"max_complexity": 2}),
    LevelBand(41, 60, {"max_complexity": 3}),
    LevelBand(61, 80, {"max_complexity": 4}),
    LevelBand(81, MAX_POLICY_LEVEL, {"max_complexity": 5}),
)


def allowed_complexity(level: float) -> int:
    """Maximum question complexity (1-5) unlocked at ``level``."""
    if not math.isfinite(level):
        level = MIN_POLICY_LEVEL
    return int(evaluate_bands(COMPLEXITY_BANDS, int(level))["max_complexity"])


class LevelPolicy(BaseModel):
    """Capabilities the shared model grants at a given level."""

    model_config = ConfigDict(frozen=True)

    retrieval_enabled: bool
    prefer_corpus: str
    simplicity_mode: bool
    top_k: int
    min_score: float
    require_citations: bool
    max_answer_tokens: int
    temperature: float


CAPABILITY_BANDS: tuple[LevelBand, ...] = (
    LevelBand(
        1,
        10,
        {
            "retrieval_enabled": False,
            "prefer_corpus": "off",
            "simplicity_mode": True,
            "top_k": 0,
            "min_score": 0.0,
            "max_answer_tokens": 180,
            "temperature": 0.8,
        },
    ),
    LevelBand(
        11,
        30,
        {
            "retrieval_enabled": True,
            "prefer_corpus": "weak",
            "simplicity_mode": False,
            "top_k": 2,
            "min_score": 0.80,
            "max_answer_tokens": 220,
            "temperature": 0.7,
        },
        {"top_k": 4, "min_score": 0.70, "max_answer_tokens": 350},
    ),
    LevelBand(
        31,
        70,
        {
            "retrieval_enabled": True,
            "prefer_corpus": "strong",
            "simplicity_mode": False,
            "top_k": 4,
            "min_score": 0.70,
            "max_answer_tokens": 350,
            "temperature": 0.7,
        },
        {"top_k": 8, "min_score": 0.60, "max_answer_tokens": 700, "temperature": 0.5},
    ),
    LevelBand(
        71,
        MAX_POLICY_LEVEL,
        {
            "retrieval_enabled": True,
            "prefer_corpus": "strong",
            "simplicity_mode": False,
            "top_k": 8,
            "min_score": 0.60,
            "max_answer_tokens": 700,
            "temperature": 0.5,
        },
        {"top_k": 12, "min_score": 0.55, "max_answer_tokens": 1200, "temperature": 0.35},
    ),
)

CITATION_BANDS: tuple[LevelBand, ...] = (
    LevelBand(1, 39, {"require_citations": False}),
    LevelBand(40, MAX_POLICY_LEVEL, {"require_citations": True}),
)


def get_level_policy(level: float) -> LevelPolicy:
    """Capability policy for ``level``; out-of-range levels are clamped."""
    values = evaluate_bands(CAPABILITY_BANDS, int(level))
    values.update(evaluate_bands(CITATION_BANDS, int(level)))
    return LevelPolicy(**values)

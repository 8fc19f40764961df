"""Question selection for rank-up trials."""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field

from progression.level_policy import allowed_complexity
from trials.types.question import Question

logger = logging.getLogger("rankup.question_selector")


@dataclass
class SelectionResult:
    questions: list[Question] = field(default_factory=list)
    total_available: int = 0
    filtered_by_complexity: int = 0
    filtered_by_history: int = 0
    min_complexity: int = 1
    max_complexity: int = 1


def complexity_range(level: int, min_avg_difficulty: float) -> tuple[int, int]:
    """Difficulty window for a trial: at least the pass bar, at most the level cap."""
    low = max(int(math.ceil(min_avg_difficulty)), 1)
    high = max(allowed_complexity(level), low)
    return low, min(high, 5)


def select_rankup_questions(
    pool: Sequence[Question],
    *,
    level: int,
    count: int,
    min_avg_difficulty: float,
    seen_ids: Collection[str] = (),
    allow_seen: bool = False,
    rng: random.Random | None = None,
) -> SelectionResult:
    """Draw up to ``count`` distinct questions, preferring unseen ones.

    Falls back to already-seen questions when fewer than ``count`` unseen
    ones fit the difficulty window.
    """
    rng = rng or random.Random()
    low, high = complexity_range(level, min_avg_difficulty)
    in_range = [q for q in pool if low <= q.difficulty <= high]
    result = SelectionResult(
        total_available=len(pool),
        filtered_by_complexity=len(in_range),
        min_complexity=low,
        max_complexity=high,
    )
    if not in_range:
        logger.warning("No questions in complexity range %d-%d (pool %d)", low, high, len(pool))
        return result

    available = in_range
    if not allow_seen:
        seen = set(seen_ids)
        available = [q for q in in_range if q.id not in seen]
    result.filtered_by_history = len(available)

    if len(available) < count and not allow_seen:
        logger.info(
            "Falling back to seen questions (%d unseen, %d needed)", len(available), count
        )
        available = in_range

    result.questions = rng.sample(available, min(count, len(available)))
    return result

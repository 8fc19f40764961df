"""Level band policy tests."""

from __future__ import annotations

import pytest

from progression.level_policy import LevelBand, allowed_complexity, evaluate_bands, get_level_policy


@pytest.mark.parametrize(
    ("level", "expected"),
    [(1, 1), (20, 1), (21, 2), (40, 2), (41, 3), (60, 3), (61, 4), (80, 4), (81, 5), (100, 5)],
)
def test_complexity_band_edges(level: int, expected: int) -> None:
    assert allowed_complexity(level) == expected


def test_complexity_clamps_out_of_range_levels() -> None:
    assert allowed_complexity(0) == 1
    assert allowed_complexity(500) == 5


def test_band_interpolates_numbers_and_keeps_flags() -> None:
    band = LevelBand(10, 20, {"top_k": 2, "score": 0.8, "enabled": True}, {"top_k": 4, "score": 0.6})
    values = band.evaluate(15)
    assert values["top_k"] == 3
    assert values["score"] == pytest.approx(0.7)
    assert values["enabled"] is True


def test_evaluate_bands_picks_covering_band() -> None:
    table = (LevelBand(1, 5, {"v": "low"}), LevelBand(6, 10, {"v": "high"}))
    assert evaluate_bands(table, 5)["v"] == "low"
    assert evaluate_bands(table, 6)["v"] == "high"
    assert evaluate_bands(table, 99)["v"] == "high"


def test_level_policy_grows_with_level() -> None:
    novice = get_level_policy(1)
    assert novice.retrieval_enabled is False
    assert novice.top_k == 0
    assert novice.require_citations is False

    mid = get_level_policy(50)
    assert mid.retrieval_enabled is True
    assert mid.require_citations is True
    assert 4 <= mid.top_k <= 8

    top = get_level_policy(100)
    assert top.top_k == 12
    assert top.temperature == pytest.approx(0.35)

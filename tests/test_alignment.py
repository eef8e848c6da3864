from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from rubric_alignment.app.alignment import (
    add_alignment_to_history,
    calculate_alignment,
    dump_alignment_history,
    parse_alignment_history,
)

RUBRIC = json.dumps(
    {
        "rubric_1": {"question": "Is the final figure correct?", "tag": "accuracy"},
        "rubric_2": "Does it cite the governing standard?",
        "rubric_3": {"question": "Is the tone professional?", "tag": "tone"},
    }
)


def test_half_agreement_lists_misaligned_question() -> None:
    result = calculate_alignment(
        json.dumps({"rubric_1": "Yes", "rubric_2": "No"}),
        json.dumps({"rubric_1": "Yes", "rubric_2": "Yes"}),
        RUBRIC,
    )

    assert result.percentage == 50
    assert result.aligned == 1
    assert result.total == 2
    assert len(result.misaligned_items) == 1
    item = result.misaligned_items[0]
    assert item.id == "rubric_2"
    assert item.question == "Does it cite the governing standard?"
    assert item.human_score == "No"
    assert item.model_score == "Yes"


def test_full_agreement_is_one_hundred_percent() -> None:
    scores = json.dumps({"rubric_1": "Yes", "rubric_2": "No", "rubric_3": "Yes"})

    result = calculate_alignment(scores, scores, RUBRIC)

    assert result.percentage == 100
    assert result.misaligned_items == []


@pytest.mark.parametrize(
    ("aligned", "total", "expected"),
    [(2, 3, 67), (1, 8, 13), (19, 24, 79), (12, 15, 80), (23, 40, 57), (0, 4, 0)],
)
def test_percentage_rounds_half_up(aligned: int, total: int, expected: int) -> None:
    human = {f"rubric_{n}": "Yes" for n in range(1, total + 1)}
    model = {key: ("Yes" if index < aligned else "No") for index, key in enumerate(human)}

    result = calculate_alignment(json.dumps(human), json.dumps(model), "{}")

    assert result.percentage == expected


def test_empty_human_scores_yield_zero() -> None:
    result = calculate_alignment("{}", json.dumps({"rubric_1": "Yes"}), RUBRIC)

    assert result.percentage == 0
    assert result.total == 0


def test_missing_model_key_and_question_fallback() -> None:
    result = calculate_alignment(
        json.dumps({"rubric_9": "Yes"}),
        json.dumps({}),
        RUBRIC,
    )

    assert result.misaligned_items[0].question == "Question 9"
    assert result.misaligned_items[0].model_score is None


def test_malformed_input_returns_zero_result() -> None:
    result = calculate_alignment("{", "{}", RUBRIC)

    assert result.percentage == 0
    assert result.misaligned_items == []


def test_history_replaces_entry_for_same_version() -> None:
    moment = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    history = add_alignment_to_history([], 3, 70, 5, timestamp=moment)
    history = add_alignment_to_history(history, 2, 60, 6, timestamp=moment)
    history = add_alignment_to_history(history, 3, 85, 2, timestamp=moment)

    assert [(item.version, item.alignment) for item in history] == [(2, 60), (3, 85)]
    assert history[1].misaligned_count == 2
    assert history[1].timestamp == "2026-03-01T12:00:00Z"


def test_history_wire_format_round_trip() -> None:
    history = add_alignment_to_history([], 2, 75, 4)

    raw = dump_alignment_history(history)

    assert json.loads(raw)[0]["misalignedCount"] == 4
    assert parse_alignment_history(raw) == history
    assert parse_alignment_history("not json") == []
    assert parse_alignment_history(None) == []

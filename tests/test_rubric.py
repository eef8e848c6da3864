from __future__ import annotations

import json
import logging

import pytest

from rubric_alignment.app.rubric import (
    is_structured_rubric,
    parse_rubric,
    question_text,
    validate_rubric_json,
    validate_structured_rubric_json,
)
from conftest import build_rubric


def test_structured_rubric_with_fifteen_items_is_valid() -> None:
    result = validate_rubric_json(build_rubric(15))

    assert result.is_valid is True
    assert result.errors == []
    assert result.rubric_count == 15


def test_simple_rubric_is_valid() -> None:
    result = validate_rubric_json(build_rubric(20, structured=False))

    assert result.is_valid is True
    assert result.rubric_count == 20


@pytest.mark.parametrize("raw", ["", "   \n\t"])
def test_empty_rubric_is_rejected(raw: str) -> None:
    result = validate_rubric_json(raw)

    assert result.is_valid is False
    assert result.errors == ["Rubric JSON is empty"]


def test_malformed_json_reports_single_error() -> None:
    result = validate_rubric_json('{"rubric_1": "Is the answer correct overall?",')

    assert result.is_valid is False
    assert result.errors == ["Invalid JSON format"]


def test_top_level_must_be_object() -> None:
    result = validate_rubric_json(json.dumps(["Is the answer correct overall?"]))

    assert result.is_valid is False
    assert "Rubric must be a JSON object" in result.errors


def test_item_count_bounds() -> None:
    too_few = validate_rubric_json(build_rubric(14))
    too_many = validate_rubric_json(build_rubric(51))

    assert "Minimum 15 rubric items required. Found 14" in too_few.errors
    assert "Maximum 50 rubric items allowed. Found 51" in too_many.errors
    assert validate_rubric_json(build_rubric(50)).is_valid is True


def test_duplicate_keys_are_detected_in_raw_text() -> None:
    duplicate = '"rubric_3": {"question": "Another question text?", "tag": "dup"}'
    raw = build_rubric(15)[:-1] + f", {duplicate}}}"

    result = validate_rubric_json(raw)

    assert result.is_valid is False
    assert result.errors == ["Duplicate key found: rubric_3"]


def test_foreign_keys_are_named() -> None:
    rubric = json.loads(build_rubric(15))
    rubric["notes"] = "This key does not belong here"

    result = validate_rubric_json(json.dumps(rubric))

    assert result.is_valid is False
    assert any(error.startswith("Invalid key: notes") for error in result.errors)
    assert result.rubric_count == 15


@pytest.mark.parametrize("key", ["rubric_1\n", "rubric_١", "rubric_16 "])
def test_near_miss_keys_are_rejected_by_name(key: str) -> None:
    rubric = json.loads(build_rubric(15))
    rubric[key] = {"question": "Does the response cite a primary source?", "tag": "sources"}

    result = validate_rubric_json(json.dumps(rubric))

    assert result.is_valid is False
    assert f"Invalid key: {key} (keys must be rubric_1, rubric_2, ...)" in result.errors
    assert result.rubric_count == 15


def test_errors_are_accumulated() -> None:
    rubric = json.loads(build_rubric(15))
    rubric["rubric_2"] = {"question": "Too short", "tag": "ok"}
    rubric["rubric_4"] = {"question": "Is the tag on this question too long?", "tag": "x" * 21}
    rubric["rubric_5"] = 42
    rubric["extra"] = "Unexpected key with long text"

    result = validate_rubric_json(json.dumps(rubric))

    assert result.is_valid is False
    assert len(result.errors) == 4
    assert result.errors[0].startswith("Invalid key: extra")
    assert result.errors[1].startswith("rubric_2: question")
    assert result.errors[2].startswith("rubric_4: tag")
    assert result.errors[3].startswith("rubric_5:")


def test_short_simple_question_is_rejected() -> None:
    rubric = json.loads(build_rubric(15, structured=False))
    rubric["rubric_7"] = "   short   "

    result = validate_rubric_json(json.dumps(rubric))

    assert result.errors == ["rubric_7: Must be a string with at least 10 characters"]


def test_numbering_gap_only_warns(caplog: pytest.LogCaptureFixture) -> None:
    rubric = json.loads(build_rubric(16))
    del rubric["rubric_9"]
    caplog.set_level(logging.WARNING, logger="rubric_alignment.app.rubric")

    result = validate_rubric_json(json.dumps(rubric))

    assert result.is_valid is True
    assert "non_sequential_keys" in caplog.text


def test_structured_validation_rejects_simple_form() -> None:
    result = validate_structured_rubric_json(build_rubric(15, structured=False))

    assert result.is_valid is False
    assert result.rubric_count == 15
    assert "question and tag" in result.errors[0]
    assert validate_structured_rubric_json(build_rubric(15)).is_valid is True


def test_parse_rubric_orders_by_number() -> None:
    raw = json.dumps(
        {
            "rubric_10": {"question": "Tenth question text here?", "tag": "ten"},
            "rubric_2": "Second question text here?",
            "rubric_1": {"question": "First question text here?", "tag": "one"},
        }
    )

    questions = parse_rubric(raw)

    assert [item.key for item in questions] == ["rubric_1", "rubric_2", "rubric_10"]
    assert questions[0].tag == "one"
    assert questions[1].tag is None
    assert parse_rubric("[1, 2]") == []
    assert is_structured_rubric(json.loads(raw)) is False


def test_question_text_falls_back_to_label() -> None:
    rubric = {"rubric_1": {"question": "Is the math right?", "tag": "math"}}

    assert question_text(rubric, "rubric_1") == "Is the math right?"
    assert question_text(rubric, "rubric_7") == "Question 7"

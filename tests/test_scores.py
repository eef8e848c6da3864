from __future__ import annotations

import json

import pytest

from rubric_alignment.app.scores import parse_scores, validate_evaluation_scores
from conftest import build_rubric, build_scores


def test_complete_scores_are_valid() -> None:
    result = validate_evaluation_scores(build_scores(15, no_keys=(2, 9)), build_rubric(15))

    assert result.is_valid is True
    assert result.errors == []


def test_missing_and_invalid_scores_are_reported() -> None:
    scores = json.loads(build_scores(15))
    del scores["rubric_3"]
    scores["rubric_5"] = "yes"
    scores["rubric_6"] = True

    result = validate_evaluation_scores(json.dumps(scores), build_rubric(15))

    assert result.is_valid is False
    assert result.errors == [
        "Missing score for rubric_3",
        'rubric_5: Score must be "Yes" or "No"',
        'rubric_6: Score must be "Yes" or "No"',
    ]


def test_unexpected_keys_are_named() -> None:
    scores = json.loads(build_scores(15))
    scores["rubric_16"] = "Yes"

    result = validate_evaluation_scores(json.dumps(scores), build_rubric(15))

    assert result.errors == ["Unexpected score key: rubric_16"]


@pytest.mark.parametrize("key", ["rubric_1\n", "rubric_١"])
def test_near_miss_score_keys_are_unexpected(key: str) -> None:
    rubric = json.loads(build_rubric(15))
    rubric[key] = "Does the response cite a primary source?"
    scores = json.loads(build_scores(15))
    scores[key] = "Yes"

    result = validate_evaluation_scores(json.dumps(scores), json.dumps(rubric))

    assert result.is_valid is False
    assert result.errors == [f"Unexpected score key: {key}"]


def test_malformed_json_on_either_side() -> None:
    assert validate_evaluation_scores("{", build_rubric(15)).errors == ["Invalid JSON format"]
    assert validate_evaluation_scores(build_scores(15), "not json").errors == [
        "Invalid JSON format"
    ]
    assert validate_evaluation_scores("[]", build_rubric(15)).errors == ["Invalid JSON format"]


def test_parse_scores_tolerates_bad_input() -> None:
    assert parse_scores(None) == {}
    assert parse_scores("nope") == {}
    assert parse_scores('["Yes"]') == {}
    assert parse_scores('{"rubric_1": "No"}') == {"rubric_1": "No"}

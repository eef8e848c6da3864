"""Evaluation score validation.

A score document maps every rubric key to "Yes" or "No". Its key set must
equal the key set of the rubric it grades.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from rubric_alignment.app.rubric import RUBRIC_KEY_PATTERN

logger = logging.getLogger(__name__)

ALLOWED_SCORES = ("Yes", "No")


@dataclass
class ScoreValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


def validate_evaluation_scores(scores_raw: str, rubric_raw: str) -> ScoreValidation:
    try:
        scores = json.loads(scores_raw)
        rubric = json.loads(rubric_raw)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.info("score_validation event=invalid_json reason=%s", exc)
        return ScoreValidation(is_valid=False, errors=["Invalid JSON format"])
    if not isinstance(scores, dict) or not isinstance(rubric, dict):
        return ScoreValidation(is_valid=False, errors=["Invalid JSON format"])

    errors: list[str] = []
    rubric_keys = [key for key in rubric if RUBRIC_KEY_PATTERN.fullmatch(key)]
    for key in rubric_keys:
        if key not in scores:
            errors.append(f"Missing score for {key}")
        elif scores[key] not in ALLOWED_SCORES:
            errors.append(f'{key}: Score must be "Yes" or "No"')

    expected = set(rubric_keys)
    for key in scores:
        if key not in expected:
            errors.append(f"Unexpected score key: {key}")

    return ScoreValidation(is_valid=not errors, errors=errors)


def parse_scores(raw: str | None) -> dict[str, Any]:
    """Decode a stored score document; invalid or non-object JSON reads as empty."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("score_parse event=invalid_json")
        return {}
    return parsed if isinstance(parsed, dict) else {}

"""Rubric document validation and parsing.

A rubric is a JSON object of 15-50 Yes/No questions keyed `rubric_1`,
`rubric_2`, ... Each value is either the question text (simple form) or an
object `{"question": ..., "tag": ...}` (structured form).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

RUBRIC_KEY_PATTERN = re.compile(r"rubric_([0-9]+)")
MIN_RUBRIC_ITEMS = 15
MAX_RUBRIC_ITEMS = 50
MIN_QUESTION_LENGTH = 10
MAX_TAG_LENGTH = 20


@dataclass
class RubricValidation:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    rubric_count: int = 0


@dataclass(frozen=True)
class RubricQuestion:
    key: str
    number: int
    question: str
    tag: str | None = None


def validate_rubric_json(raw: str) -> RubricValidation:
    """Validate a rubric document, collecting every problem found."""
    if not raw or not raw.strip():
        return RubricValidation(is_valid=False, errors=["Rubric JSON is empty"])

    errors: list[str] = []
    duplicates: list[str] = []
    try:
        rubric = json.loads(raw, object_pairs_hook=_collect_duplicates(duplicates))
    except json.JSONDecodeError as exc:
        logger.info("rubric_validation event=invalid_json reason=%s", exc)
        return RubricValidation(is_valid=False, errors=["Invalid JSON format"])

    for key in duplicates:
        errors.append(f"Duplicate key found: {key}")

    if not isinstance(rubric, dict):
        errors.append("Rubric must be a JSON object")
        return RubricValidation(is_valid=False, errors=errors)

    rubric_keys: list[str] = []
    for key in rubric:
        if RUBRIC_KEY_PATTERN.fullmatch(key):
            rubric_keys.append(key)
        else:
            errors.append(f"Invalid key: {key} (keys must be rubric_1, rubric_2, ...)")

    count = len(rubric_keys)
    if count < MIN_RUBRIC_ITEMS:
        errors.append(f"Minimum {MIN_RUBRIC_ITEMS} rubric items required. Found {count}")
    if count > MAX_RUBRIC_ITEMS:
        errors.append(f"Maximum {MAX_RUBRIC_ITEMS} rubric items allowed. Found {count}")

    for key in rubric_keys:
        errors.extend(_item_errors(key, rubric[key]))

    _warn_on_numbering_gaps(rubric_keys)

    return RubricValidation(is_valid=not errors, errors=errors, rubric_count=count)


def validate_structured_rubric_json(raw: str) -> RubricValidation:
    """Like `validate_rubric_json`, but every item must use the question/tag form."""
    result = validate_rubric_json(raw)
    if not result.is_valid:
        return result
    if not is_structured_rubric(json.loads(raw)):
        return RubricValidation(
            is_valid=False,
            errors=[
                "Rubric must be in new format with question and tag properties for each item"
            ],
            rubric_count=result.rubric_count,
        )
    return result


def is_structured_rubric(rubric: Any) -> bool:
    if not isinstance(rubric, dict) or not rubric:
        return False
    return all(
        isinstance(item, dict)
        and isinstance(item.get("question"), str)
        and isinstance(item.get("tag"), str)
        for item in rubric.values()
    )


def load_rubric(raw: str | None) -> dict[str, Any]:
    """Decode a stored rubric; anything that is not a JSON object reads as empty."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("rubric_parse event=invalid_json")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_rubric(raw: str | None) -> list[RubricQuestion]:
    """Rubric questions ordered by their number."""
    rubric = load_rubric(raw)
    questions: list[RubricQuestion] = []
    for key, value in rubric.items():
        match = RUBRIC_KEY_PATTERN.fullmatch(key)
        if match is None:
            continue
        tag = value.get("tag") if isinstance(value, dict) else None
        questions.append(
            RubricQuestion(
                key=key,
                number=int(match.group(1)),
                question=question_text(rubric, key),
                tag=tag if isinstance(tag, str) else None,
            )
        )
    return sorted(questions, key=lambda item: item.number)


def question_text(rubric: dict[str, Any], key: str) -> str:
    """Question for `key`, or a synthesized `Question N` label when absent."""
    value = rubric.get(key)
    if isinstance(value, dict):
        value = value.get("question")
    if isinstance(value, str) and value:
        return value
    return f"Question {key.removeprefix('rubric_')}"


def _collect_duplicates(duplicates: list[str]):
    # The hook sees every key/value pair before dict() keeps only the last one.
    def hook(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
        seen: set[str] = set()
        for key, _ in pairs:
            if key in seen and RUBRIC_KEY_PATTERN.fullmatch(key) and key not in duplicates:
                duplicates.append(key)
            seen.add(key)
        return dict(pairs)

    return hook


def _item_errors(key: str, value: Any) -> list[str]:
    if isinstance(value, str):
        if len(value.strip()) < MIN_QUESTION_LENGTH:
            return [f"{key}: Must be a string with at least {MIN_QUESTION_LENGTH} characters"]
        return []

    if not isinstance(value, dict):
        return [
            f"{key}: Must be a string or an object with question and tag "
            f"(question at least {MIN_QUESTION_LENGTH} characters)"
        ]

    errors: list[str] = []
    question = value.get("question")
    if not isinstance(question, str) or len(question.strip()) < MIN_QUESTION_LENGTH:
        errors.append(
            f"{key}: question must be a string with at least {MIN_QUESTION_LENGTH} characters"
        )
    tag = value.get("tag")
    if not isinstance(tag, str) or not 1 <= len(tag.strip()) <= MAX_TAG_LENGTH:
        errors.append(f"{key}: tag must be a string of 1-{MAX_TAG_LENGTH} characters")
    return errors


def _warn_on_numbering_gaps(keys: list[str]) -> None:
    numbers = sorted(int(RUBRIC_KEY_PATTERN.fullmatch(key).group(1)) for key in keys)
    expected = list(range(1, len(numbers) + 1))
    if numbers != expected:
        missing = sorted(set(expected) - set(numbers))
        logger.warning(
            "rubric_validation event=non_sequential_keys count=%d missing=%s",
            len(numbers),
            missing,
        )

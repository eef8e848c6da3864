"""Human-vs-model alignment and the per-version alignment history."""

from __future__ import annotations

import json
import logging
import math
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from rubric_alignment.app.models import AlignmentHistoryEntry, AlignmentResult, MisalignedItem
from rubric_alignment.app.rubric import question_text

logger = logging.getLogger(__name__)


def calculate_alignment(human_raw: str, model_raw: str, rubric_raw: str) -> AlignmentResult:
    """Compare human and model scores key by key.

    The human score map defines the compared keys. Percentage is rounded
    half-up; an empty comparison is 0%.
    """
    try:
        human_scores = json.loads(human_raw)
        model_scores = json.loads(model_raw)
        rubric = json.loads(rubric_raw)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.error("alignment event=invalid_json reason=%s", exc)
        return AlignmentResult()
    if not all(isinstance(item, dict) for item in (human_scores, model_scores, rubric)):
        logger.error("alignment event=invalid_shape")
        return AlignmentResult()

    aligned = 0
    misaligned: list[MisalignedItem] = []
    for key, human_score in human_scores.items():
        model_score = model_scores.get(key)
        if human_score == model_score:
            aligned += 1
            continue
        misaligned.append(
            MisalignedItem(
                id=key,
                question=question_text(rubric, key),
                human_score=_score_text(human_score),
                model_score=_score_text(model_score),
            )
        )

    total = len(human_scores)
    return AlignmentResult(
        percentage=_percentage(aligned, total),
        aligned=aligned,
        total=total,
        misaligned_items=misaligned,
    )


def add_alignment_to_history(
    history: list[AlignmentHistoryEntry],
    version: int,
    alignment: int,
    misaligned_count: int,
    timestamp: datetime | None = None,
) -> list[AlignmentHistoryEntry]:
    """Record the alignment for `version`, replacing any earlier entry for it."""
    moment = timestamp or datetime.now(tz=UTC)
    entry = AlignmentHistoryEntry(
        version=version,
        alignment=alignment,
        timestamp=moment.isoformat().replace("+00:00", "Z"),
        misaligned_count=misaligned_count,
    )
    kept = [item for item in history if item.version != version]
    kept.append(entry)
    return sorted(kept, key=lambda item: item.version)


def parse_alignment_history(raw: Any) -> list[AlignmentHistoryEntry]:
    """Decode stored history JSON; unreadable entries are dropped and logged."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("alignment_history event=invalid_json")
            return []
    if not isinstance(raw, list):
        return []

    entries: list[AlignmentHistoryEntry] = []
    for item in raw:
        try:
            entries.append(AlignmentHistoryEntry.model_validate(item))
        except ValidationError as exc:
            logger.warning("alignment_history event=invalid_entry reason=%s", exc)
    return sorted(entries, key=lambda item: item.version)


def dump_alignment_history(history: list[AlignmentHistoryEntry]) -> str:
    """Serialize history in its wire shape (`misalignedCount` key)."""
    return json.dumps([item.model_dump(by_alias=True) for item in history])


def _percentage(aligned: int, total: int) -> int:
    if total == 0:
        return 0
    return math.floor(aligned / total * 100 + 0.5)


def _score_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value)

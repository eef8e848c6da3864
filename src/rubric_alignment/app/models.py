"""Pydantic models shared across API, workflow service, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- Field(default_factory=...): creates a fresh default object per instance.
- Rubric version: an immutable JSON snapshot of the grading questions.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

# Task lifecycle states used by storage + API responses.
TaskStatus = Literal[
    "Task_Creation",
    "Rubric_V1",
    "Rubric_V2",
    "Rubric_Enhancing",
    "Human_Eval_Gemini",
    "Model_Eval_Gemini",
    "Human_Eval_GPT",
    "Model_Eval_GPT",
    "Completed",
]

# The two graded model responses attached to every task.
EvaluationModel = Literal["gemini", "gpt"]

ProfessionalSector = Literal[
    "Data-Science & Analysis",
    "Web development",
    "STEM Research",
    "Medicine",
    "Law",
    "Accounting",
]

class RubricVersion(BaseModel):
    """One immutable rubric snapshot owned by a task."""

    version: int = Field(ge=1)
    # Raw JSON document exactly as the trainer submitted it.
    content: str
    created_at: datetime | None = None


class MisalignedItem(BaseModel):
    """A rubric question where the human and model scores disagree."""

    id: str
    question: str
    human_score: str | None = None
    model_score: str | None = None


class AlignmentResult(BaseModel):
    percentage: int = 0
    aligned: int = 0
    total: int = 0
    misaligned_items: list[MisalignedItem] = Field(default_factory=list)


class AlignmentHistoryEntry(BaseModel):
    """Alignment outcome recorded for one scored rubric version."""

    version: int
    alignment: int = Field(ge=0, le=100)
    timestamp: str
    misaligned_count: int = Field(default=0, ge=0, alias="misalignedCount")

    model_config = ConfigDict(populate_by_name=True)


class Task(BaseModel):
    """Canonical task record shape returned by API/storage."""

    # Score fields are named model_eval_*, which pydantic would otherwise reserve.
    model_config = ConfigDict(protected_namespaces=())

    task_id: str
    trainer_email: str
    # Storage-specific record id (Airtable record id, for example).
    record_id: str | None = None
    prompt: str
    professional_sector: ProfessionalSector
    sources: str = ""
    open_source_confirmed: bool = False
    license_notes: str = ""
    gpt_response: str
    gemini_response: str
    status: TaskStatus = "Task_Creation"
    current_rubric_version: int = Field(default=1, ge=1)
    rubric_versions: list[RubricVersion] = Field(default_factory=list)
    # Score documents are kept as the submitted JSON text.
    human_eval_gemini: str | None = None
    model_eval_gemini: str | None = None
    alignment_gemini: int | None = None
    misaligned_gemini: list[MisalignedItem] = Field(default_factory=list)
    human_eval_gpt: str | None = None
    model_eval_gpt: str | None = None
    alignment_gpt: int | None = None
    misaligned_gpt: list[MisalignedItem] = Field(default_factory=list)
    alignment_history: list[AlignmentHistoryEntry] = Field(default_factory=list)
    comments: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def rubric(self, version: int) -> RubricVersion | None:
        for item in self.rubric_versions:
            if item.version == version:
                return item
        return None

    def current_rubric(self) -> str | None:
        """Content of the rubric named by `current_rubric_version`, if stored."""
        current = self.rubric(self.current_rubric_version)
        if current is None or not current.content.strip():
            return None
        return current.content

    def human_eval(self, model: EvaluationModel) -> str | None:
        return getattr(self, f"human_eval_{model}")

    def alignment(self, model: EvaluationModel) -> int | None:
        return getattr(self, f"alignment_{model}")


class TaskUpdate(BaseModel):
    """Partial task update applied by storage as one record write.

    Unset fields keep their stored value. `new_rubric` is appended to the
    task's rubric versions; storage never replaces an existing version.
    """

    model_config = ConfigDict(protected_namespaces=())

    status: TaskStatus | None = None
    current_rubric_version: int | None = None
    new_rubric: RubricVersion | None = None
    human_eval_gemini: str | None = None
    model_eval_gemini: str | None = None
    alignment_gemini: int | None = None
    misaligned_gemini: list[MisalignedItem] | None = None
    human_eval_gpt: str | None = None
    model_eval_gpt: str | None = None
    alignment_gpt: int | None = None
    misaligned_gpt: list[MisalignedItem] | None = None
    alignment_history: list[AlignmentHistoryEntry] | None = None

    def changed_fields(self) -> dict[str, Any]:
        """Task attributes to overwrite (everything except `new_rubric`)."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "new_rubric" and getattr(self, name) is not None
        }


class TaskSummary(BaseModel):
    """Dashboard row for a trainer's task listing."""

    task_id: str
    prompt: str
    professional_sector: ProfessionalSector
    status: TaskStatus
    progress: float = Field(ge=0, le=100)
    current_rubric_version: int
    trainer_email: str
    created_at: datetime | None = None


class StatusDisplay(BaseModel):
    label: str
    step: int
    description: str


class WorkflowStepInfo(BaseModel):
    status: TaskStatus
    label: str
    description: str
    estimated_time: str


class FileAttachment(BaseModel):
    """One uploaded file, base64 encoded by the client."""

    name: str = Field(min_length=1)
    type: str = "application/octet-stream"
    data: str

    @field_validator("data")
    @classmethod
    def _must_be_base64(cls, value: str) -> str:
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("File data must be base64 encoded") from exc
        return value

    def content(self) -> bytes:
        return base64.b64decode(self.data)


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    prompt: str = Field(min_length=50)
    professional_sector: ProfessionalSector
    open_source_confirmed: bool
    license_notes: str = Field(default="", max_length=1000)
    gpt_response: str = Field(min_length=50)
    gemini_response: str = Field(min_length=50)
    request_files: list[FileAttachment] = Field(default_factory=list)
    response_gemini_files: list[FileAttachment] = Field(default_factory=list)
    response_gpt_files: list[FileAttachment] = Field(default_factory=list)

    @field_validator("prompt", "gpt_response", "gemini_response")
    @classmethod
    def _not_just_whitespace(cls, value: str) -> str:
        if len(value.strip()) < 50:
            raise ValueError("Text must be at least 50 characters and cannot be just whitespace")
        return value

    @field_validator("open_source_confirmed")
    @classmethod
    def _must_confirm_license(cls, value: bool) -> bool:
        if value is not True:
            raise ValueError("You must confirm open source licensing")
        return value


def _json_text(value: Any) -> Any:
    # Clients may post the document as a JSON object instead of JSON text.
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


JsonText = Annotated[str, BeforeValidator(_json_text)]


class RubricSubmission(BaseModel):
    """Request body for POST /tasks/{task_id}/rubric/v1."""

    rubric: JsonText


class RubricEnhanceSubmission(RubricSubmission):
    """Request body for POST /tasks/{task_id}/rubric/enhance."""

    target_version: int = Field(ge=2)


class ScoresSubmission(BaseModel):
    """Request body for human/model evaluation endpoints."""

    scores: JsonText


class StepResult(BaseModel):
    success: bool = True
    message: str
    task: Task


class RubricStepResult(StepResult):
    version: int
    rubric_count: int
    is_creating_v2: bool = False


class ModelEvalResult(StepResult):
    alignment: int
    misaligned_count: int
    needs_revision: bool = False
    current_version: int
    next_version: int | None = None
    gemini_alignment: int | None = None
    gpt_alignment: int | None = None


class CreateTaskResult(BaseModel):
    success: bool = True
    task_id: str
    record_id: str | None = None
    folder_url: str
    request_file_count: int = 0
    response_gemini_file_count: int = 0
    response_gpt_file_count: int = 0
    task: Task

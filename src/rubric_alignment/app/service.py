"""Workflow orchestration for rubric alignment tasks.

Every step follows the same shape: locate the trainer's task, check its
status, validate the submitted document, compute the derived state and
write it back in a single storage update.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from rubric_alignment.app.alignment import add_alignment_to_history, calculate_alignment
from rubric_alignment.app.errors import (
    IncompleteTaskExistsError,
    RemoteStorageError,
    StorageError,
    TaskMissingError,
    TaskNotFoundError,
    TaskStateError,
    TaskValidationError,
)
from rubric_alignment.app.files import FileStorage
from rubric_alignment.app.models import (
    CreateTaskRequest,
    CreateTaskResult,
    EvaluationModel,
    FileAttachment,
    ModelEvalResult,
    RubricStepResult,
    RubricVersion,
    StepResult,
    Task,
    TaskSummary,
    TaskUpdate,
)
from rubric_alignment.app.rubric import validate_structured_rubric_json
from rubric_alignment.app.scores import validate_evaluation_scores
from rubric_alignment.app.workflow import (
    AFTER_HUMAN_EVAL,
    assert_status,
    expected_target_version,
    human_eval_step,
    model_eval_step,
    next_status_after_enhancement,
    next_status_after_model_eval,
    passes_alignment,
    status_display,
    task_progress,
)
from rubric_alignment.storage.base import TaskStorage

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase

MODEL_LABELS: dict[EvaluationModel, str] = {"gemini": "Gemini", "gpt": "GPT"}


def generate_task_id(now: datetime | None = None) -> str:
    """`TASK-<base36 epoch millis>-<6 random base36 chars>`, upper-cased."""
    millis = int((now or datetime.now(tz=UTC)).timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"TASK-{_to_base36(millis)}-{suffix}"


def _to_base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


@contextmanager
def _remote_call(action: str, message: str, task_id: str | None = None) -> Iterator[None]:
    # Remote details stay in the log; trainers only see `message`.
    try:
        yield
    except TaskMissingError as exc:
        # Task vanished between lookup and write.
        raise TaskNotFoundError() from exc
    except StorageError as exc:
        logger.error(
            "task_step event=remote_failure action=%s task_id=%s reason=%s",
            action,
            task_id,
            exc,
        )
        raise RemoteStorageError(message, detail={"action": action}) from exc


class TaskService:
    """Runs the workflow steps against a task storage backend."""

    def __init__(
        self,
        storage: TaskStorage,
        files: FileStorage,
        *,
        id_factory: Callable[[], str] = generate_task_id,
    ) -> None:
        self.storage = storage
        self.files = files
        self.id_factory = id_factory

    def create_task(self, trainer_email: str, payload: CreateTaskRequest) -> CreateTaskResult:
        with _remote_call("find_incomplete_task", "Failed to create task record."):
            incomplete = self.storage.find_incomplete_task(trainer_email)
        if incomplete is not None:
            label = status_display(incomplete.status).label
            raise IncompleteTaskExistsError(incomplete.task_id, incomplete.status, label)

        task_id = self.id_factory()
        logger.info("task_step event=create_start task_id=%s trainer=%s", task_id, trainer_email)
        with _remote_call("create_folders", "Failed to create task folders.", task_id):
            folder = self.files.create_task_folder(task_id)
            uploads = (
                (payload.request_files, folder.request_folder_id),
                (payload.response_gemini_files, folder.response_gemini_folder_id),
                (payload.response_gpt_files, folder.response_gpt_folder_id),
            )
            for attachments, folder_id in uploads:
                self._upload(attachments, folder_id)
            self.files.set_folder_permissions(folder.task_folder_id, trainer_email)

        task = Task(
            task_id=task_id,
            trainer_email=trainer_email,
            prompt=payload.prompt,
            professional_sector=payload.professional_sector,
            sources=folder.task_folder_url,
            open_source_confirmed=payload.open_source_confirmed,
            license_notes=payload.license_notes,
            gpt_response=payload.gpt_response,
            gemini_response=payload.gemini_response,
            status="Task_Creation",
            current_rubric_version=1,
        )
        with _remote_call("create_task", "Failed to create task record.", task_id):
            created = self.storage.create_task(task)
        logger.info("task_step event=created task_id=%s status=%s", task_id, created.status)

        return CreateTaskResult(
            task_id=task_id,
            record_id=created.record_id,
            folder_url=folder.task_folder_url,
            request_file_count=len(payload.request_files),
            response_gemini_file_count=len(payload.response_gemini_files),
            response_gpt_file_count=len(payload.response_gpt_files),
            task=created,
        )

    def get_task(self, task_id: str, trainer_email: str) -> Task:
        with _remote_call("find_task", "Failed to fetch task.", task_id):
            task = self.storage.find_task(task_id, trainer_email)
        if task is None:
            raise TaskNotFoundError()
        return task

    def list_tasks(self, trainer_email: str) -> list[TaskSummary]:
        with _remote_call("list_tasks", "Failed to fetch tasks."):
            tasks = self.storage.list_tasks(trainer_email)
        return [
            TaskSummary(
                task_id=task.task_id,
                prompt=task.prompt,
                professional_sector=task.professional_sector,
                status=task.status,
                progress=task_progress(task.status),
                current_rubric_version=task.current_rubric_version,
                trainer_email=task.trainer_email,
                created_at=task.created_at,
            )
            for task in tasks
        ]

    def update_rubric_v1(self, task_id: str, trainer_email: str, rubric: str) -> RubricStepResult:
        task = self.get_task(task_id, trainer_email)
        assert_status(task.status, "rubric_v1")
        validation = validate_structured_rubric_json(rubric)
        if not validation.is_valid:
            raise TaskValidationError("Invalid rubric format", validation.errors)

        update = TaskUpdate(
            new_rubric=RubricVersion(version=1, content=rubric),
            current_rubric_version=1,
            status="Rubric_V1",
        )
        updated = self._save(task, update, action="rubric_v1", prepare_version=1)
        return RubricStepResult(
            message=f"V1 Rubric saved successfully with {validation.rubric_count} items!",
            task=updated,
            version=1,
            rubric_count=validation.rubric_count,
        )

    def update_rubric_enhanced(
        self,
        task_id: str,
        trainer_email: str,
        rubric: str,
        target_version: int,
    ) -> RubricStepResult:
        task = self.get_task(task_id, trainer_email)
        assert_status(task.status, "rubric_enhance")
        validation = validate_structured_rubric_json(rubric)
        if not validation.is_valid:
            raise TaskValidationError("Invalid rubric format", validation.errors)

        expected = expected_target_version(task.status, task.current_rubric_version)
        if target_version != expected:
            raise TaskStateError(
                f"Target version mismatch. Expected {expected}, got {target_version}",
                detail={"expected": expected, "received": target_version},
            )

        is_creating_v2 = task.status == "Rubric_V1"
        update = TaskUpdate(
            new_rubric=RubricVersion(version=target_version, content=rubric),
            current_rubric_version=target_version,
            status=next_status_after_enhancement(task.status),
        )
        updated = self._save(task, update, action="rubric_enhance", prepare_version=target_version)
        verb = "created" if is_creating_v2 else "enhanced"
        return RubricStepResult(
            message=(
                f"V{target_version} Rubric {verb} successfully "
                f"with {validation.rubric_count} items!"
            ),
            task=updated,
            version=target_version,
            rubric_count=validation.rubric_count,
            is_creating_v2=is_creating_v2,
        )

    def update_human_eval(
        self,
        model: EvaluationModel,
        task_id: str,
        trainer_email: str,
        scores: str,
    ) -> StepResult:
        task = self.get_task(task_id, trainer_email)
        assert_status(task.status, human_eval_step(model))
        if model == "gpt" and not passes_alignment(task.alignment("gemini")):
            raise TaskStateError(
                "Gemini alignment must be ≥80% before proceeding to GPT evaluation.",
                detail={"alignment_gemini": task.alignment("gemini")},
            )

        rubric = task.current_rubric()
        if rubric is None:
            raise TaskStateError("Current rubric not found. Please create/enhance rubric first.")
        validation = validate_evaluation_scores(scores, rubric)
        if not validation.is_valid:
            raise TaskValidationError("Invalid evaluation scores", validation.errors)

        update = TaskUpdate.model_validate(
            {f"human_eval_{model}": scores, "status": AFTER_HUMAN_EVAL[model]}
        )
        updated = self._save(task, update, action=f"human_eval_{model}")
        return StepResult(
            message=f"Human evaluation for {MODEL_LABELS[model]} saved successfully!",
            task=updated,
        )

    def update_model_eval(
        self,
        model: EvaluationModel,
        task_id: str,
        trainer_email: str,
        scores: str,
    ) -> ModelEvalResult:
        task = self.get_task(task_id, trainer_email)
        assert_status(task.status, model_eval_step(model))

        rubric = task.current_rubric()
        human_scores = task.human_eval(model)
        if rubric is None or not human_scores:
            raise TaskStateError(
                f"Current rubric and Human evaluation for {MODEL_LABELS[model]} are required."
            )
        # Human scores may predate the current rubric version.
        stored = validate_evaluation_scores(human_scores, rubric)
        if not stored.is_valid:
            raise TaskValidationError(
                "Stored human evaluation does not match the current rubric", stored.errors
            )
        validation = validate_evaluation_scores(scores, rubric)
        if not validation.is_valid:
            raise TaskValidationError("Invalid evaluation scores", validation.errors)

        alignment = calculate_alignment(human_scores, scores, rubric)
        percentage = alignment.percentage
        misaligned_count = len(alignment.misaligned_items)
        current_version = task.current_rubric_version
        next_status = next_status_after_model_eval(model, percentage)
        needs_revision = next_status == "Rubric_Enhancing"

        fields = {
            f"model_eval_{model}": scores,
            f"alignment_{model}": percentage,
            f"misaligned_{model}": alignment.misaligned_items,
            "status": next_status,
        }
        if model == "gemini":
            fields["alignment_history"] = add_alignment_to_history(
                task.alignment_history, current_version, percentage, misaligned_count
            )
        update = TaskUpdate.model_validate(fields)
        updated = self._save(
            task,
            update,
            action=f"model_eval_{model}",
            prepare_version=current_version + 1 if needs_revision else None,
        )
        logger.info(
            "task_step event=alignment task_id=%s model=%s version=%s alignment=%s "
            "next_status=%s",
            task_id,
            model,
            current_version,
            percentage,
            next_status,
        )

        if model == "gpt":
            return ModelEvalResult(
                message=f"Task completed successfully! GPT alignment: {percentage}%",
                task=updated,
                alignment=percentage,
                misaligned_count=misaligned_count,
                current_version=current_version,
                gemini_alignment=task.alignment("gemini"),
                gpt_alignment=percentage,
            )

        next_version = current_version + 1 if needs_revision else None
        if needs_revision:
            message = (
                f"Alignment: {percentage}%. "
                f"Need to enhance V{current_version} to V{next_version}."
            )
        else:
            message = (
                f"Model evaluation completed! Alignment: {percentage}% "
                "- Ready for GPT evaluation."
            )
        return ModelEvalResult(
            message=message,
            task=updated,
            alignment=percentage,
            misaligned_count=misaligned_count,
            needs_revision=needs_revision,
            current_version=current_version,
            next_version=next_version,
            gemini_alignment=percentage,
        )

    def update_human_eval_gemini(
        self, task_id: str, trainer_email: str, scores: str
    ) -> StepResult:
        return self.update_human_eval("gemini", task_id, trainer_email, scores)

    def update_model_eval_gemini(
        self, task_id: str, trainer_email: str, scores: str
    ) -> ModelEvalResult:
        return self.update_model_eval("gemini", task_id, trainer_email, scores)

    def update_human_eval_gpt(
        self, task_id: str, trainer_email: str, scores: str
    ) -> StepResult:
        return self.update_human_eval("gpt", task_id, trainer_email, scores)

    def update_model_eval_gpt(
        self, task_id: str, trainer_email: str, scores: str
    ) -> ModelEvalResult:
        return self.update_model_eval("gpt", task_id, trainer_email, scores)

    def _save(
        self,
        task: Task,
        update: TaskUpdate,
        *,
        action: str,
        prepare_version: int | None = None,
    ) -> Task:
        with _remote_call(action, "Failed to update task record.", task.task_id):
            if prepare_version is not None:
                self.storage.prepare_rubric_version(prepare_version)
            updated = self.storage.update_task(task.task_id, update)
        logger.info(
            "task_step event=saved action=%s task_id=%s from_status=%s to_status=%s",
            action,
            task.task_id,
            task.status,
            updated.status,
        )
        return updated

    def _upload(self, attachments: list[FileAttachment], folder_id: str) -> None:
        for attachment in attachments:
            self.files.upload_file(
                attachment.content(), attachment.name, attachment.type, folder_id
            )

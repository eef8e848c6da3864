"""Storage interface for rubric alignment tasks."""

from __future__ import annotations

from typing import Protocol

from rubric_alignment.app.models import Task, TaskUpdate


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task) -> Task: ...

    def find_task(self, task_id: str, trainer_email: str) -> Task | None:
        """Task owned by `trainer_email`, or None if absent or owned by someone else."""
        ...

    def find_incomplete_task(self, trainer_email: str) -> Task | None: ...

    def list_tasks(self, trainer_email: str) -> list[Task]:
        """Trainer's tasks, newest first."""
        ...

    def prepare_rubric_version(self, version: int) -> None:
        """Make sure rubric versions 1..`version` can be written."""
        ...

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        """Apply `update` in one write; `update.new_rubric` is appended, never replaced.

        Raises `TaskMissingError` when no task has `task_id`.
        """
        ...

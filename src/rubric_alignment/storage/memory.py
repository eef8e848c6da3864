"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime

from rubric_alignment.app.errors import StorageError, TaskMissingError
from rubric_alignment.app.models import Task, TaskUpdate
from rubric_alignment.app.workflow import is_incomplete


class InMemoryTaskStorage:
    """Simple in-memory implementation with the same semantics as the remote backends."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._order: dict[str, int] = {}
        self._lock = threading.Lock()
        self.prepared_versions: set[int] = set()

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task) -> Task:
        now = datetime.now(UTC)
        with self._lock:
            if task.task_id in self._tasks:
                raise StorageError(f"Task {task.task_id} already exists")
            record = task.model_copy(
                deep=True,
                update={
                    "record_id": task.record_id or f"mem-{len(self._tasks) + 1}",
                    "created_at": task.created_at or now,
                    "updated_at": now,
                },
            )
            self._tasks[record.task_id] = record
            self._order[record.task_id] = len(self._order)
            return record.model_copy(deep=True)

    def find_task(self, task_id: str, trainer_email: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.trainer_email != trainer_email:
                return None
            return task.model_copy(deep=True)

    def find_incomplete_task(self, trainer_email: str) -> Task | None:
        for task in self.list_tasks(trainer_email):
            if is_incomplete(task.status):
                return task
        return None

    def list_tasks(self, trainer_email: str) -> list[Task]:
        with self._lock:
            owned = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if task.trainer_email == trainer_email
            ]
        # Creation order breaks ties between identical timestamps.
        return sorted(
            owned,
            key=lambda task: (task.created_at, self._order[task.task_id]),
            reverse=True,
        )

    def prepare_rubric_version(self, version: int) -> None:
        self.prepared_versions.update(range(1, version + 1))

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskMissingError(f"Task {task_id} does not exist")

            changes = update.changed_fields()
            if update.new_rubric is not None:
                if current.rubric(update.new_rubric.version) is not None:
                    raise StorageError(
                        f"Rubric version {update.new_rubric.version} already exists for {task_id}"
                    )
                rubric = update.new_rubric.model_copy(
                    update={"created_at": update.new_rubric.created_at or datetime.now(UTC)}
                )
                changes["rubric_versions"] = [*current.rubric_versions, rubric]
            changes["updated_at"] = datetime.now(UTC)

            updated = current.model_copy(deep=True, update=changes)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

"""PostgreSQL-backed storage with automatic table migration.

Rubric versions live in their own table keyed by `(task_id, version)`, so a
saved version can never be overwritten and a task can hold any number of
them without schema changes.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from rubric_alignment.app.errors import StorageError, TaskMissingError
from rubric_alignment.app.models import (
    AlignmentHistoryEntry,
    MisalignedItem,
    RubricVersion,
    Task,
    TaskUpdate,
)

# TaskUpdate field -> tasks column. Only these columns are ever written by updates.
UPDATABLE_COLUMNS: dict[str, str] = {
    "status": "status",
    "current_rubric_version": "current_rubric_version",
    "human_eval_gemini": "human_eval_gemini",
    "model_eval_gemini": "model_eval_gemini",
    "alignment_gemini": "alignment_gemini",
    "misaligned_gemini": "misaligned_gemini_json",
    "human_eval_gpt": "human_eval_gpt",
    "model_eval_gpt": "model_eval_gpt",
    "alignment_gpt": "alignment_gpt",
    "misaligned_gpt": "misaligned_gpt_json",
    "alignment_history": "alignment_history_json",
}

_JSON_FIELDS = {"misaligned_gemini", "misaligned_gpt", "alignment_history"}


class PostgresTaskStorage:
    """Persist tasks and their rubric versions in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("RUBRIC_ALIGNMENT_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    trainer_email TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    professional_sector TEXT NOT NULL,
                    sources TEXT NOT NULL DEFAULT '',
                    open_source_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                    license_notes TEXT NOT NULL DEFAULT '',
                    gpt_response TEXT NOT NULL,
                    gemini_response TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_rubric_version INTEGER NOT NULL DEFAULT 1,
                    human_eval_gemini TEXT,
                    model_eval_gemini TEXT,
                    alignment_gemini INTEGER,
                    misaligned_gemini_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    human_eval_gpt TEXT,
                    model_eval_gpt TEXT,
                    alignment_gpt INTEGER,
                    misaligned_gpt_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    alignment_history_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    comments TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_trainer_created
                ON tasks(trainer_email, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_rubric_versions (
                    task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    version INTEGER NOT NULL CHECK (version >= 1),
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (task_id, version)
                )
                """)
            conn.commit()

    def create_task(self, task: Task) -> Task:
        now = datetime.now(tz=UTC)
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tasks (
                        task_id,
                        trainer_email,
                        prompt,
                        professional_sector,
                        sources,
                        open_source_confirmed,
                        license_notes,
                        gpt_response,
                        gemini_response,
                        status,
                        current_rubric_version,
                        comments,
                        created_at,
                        updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        task.task_id,
                        task.trainer_email,
                        task.prompt,
                        task.professional_sector,
                        task.sources,
                        task.open_source_confirmed,
                        task.license_notes,
                        task.gpt_response,
                        task.gemini_response,
                        task.status,
                        task.current_rubric_version,
                        task.comments,
                        task.created_at or now,
                        now,
                    ),
                )
                conn.commit()
        except self._psycopg.Error as exc:
            raise StorageError(f"Failed to create task {task.task_id}: {exc}") from exc

        created = self._get_task(task.task_id)
        if created is None:
            raise StorageError("Failed to load created task")
        return created

    def find_task(self, task_id: str, trainer_email: str) -> Task | None:
        task = self._get_task(task_id)
        if task is None or task.trainer_email != trainer_email:
            return None
        return task

    def find_incomplete_task(self, trainer_email: str) -> Task | None:
        rows = self._fetch_all(
            """
            SELECT *
            FROM tasks
            WHERE trainer_email = %s
              AND status <> 'Completed'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (trainer_email,),
        )
        if not rows:
            return None
        return self._with_rubrics(rows)[0]

    def list_tasks(self, trainer_email: str) -> list[Task]:
        rows = self._fetch_all(
            """
            SELECT *
            FROM tasks
            WHERE trainer_email = %s
            ORDER BY created_at DESC
            """,
            (trainer_email,),
        )
        return self._with_rubrics(rows)

    def prepare_rubric_version(self, version: int) -> None:
        # Versions are rows; nothing to provision.
        return None

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        assignments: list[str] = []
        values: list[Any] = []
        for name, value in update.changed_fields().items():
            assignments.append(f"{UPDATABLE_COLUMNS[name]} = %s")
            values.append(self._column_value(name, value))
        assignments.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))

        try:
            with self._lock, self._connect() as conn:
                if update.new_rubric is not None:
                    conn.execute(
                        """
                        INSERT INTO task_rubric_versions (task_id, version, content, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        (
                            task_id,
                            update.new_rubric.version,
                            update.new_rubric.content,
                            update.new_rubric.created_at or datetime.now(tz=UTC),
                        ),
                    )
                cursor = conn.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = %s",
                    (*values, task_id),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise TaskMissingError(f"Task {task_id} does not exist")
                conn.commit()
        except self._psycopg.Error as exc:
            raise StorageError(f"Failed to update task {task_id}: {exc}") from exc

        refreshed = self._get_task(task_id)
        if refreshed is None:
            raise TaskMissingError(f"Task {task_id} does not exist")
        return refreshed

    def _get_task(self, task_id: str) -> Task | None:
        rows = self._fetch_all("SELECT * FROM tasks WHERE task_id = %s", (task_id,))
        if not rows:
            return None
        return self._with_rubrics(rows)[0]

    def _with_rubrics(self, rows: list[dict[str, Any]]) -> list[Task]:
        task_ids = [row["task_id"] for row in rows]
        rubric_rows = self._fetch_all(
            """
            SELECT task_id, version, content, created_at
            FROM task_rubric_versions
            WHERE task_id = ANY(%s)
            ORDER BY task_id, version
            """,
            (task_ids,),
        )
        rubrics: dict[str, list[RubricVersion]] = {}
        for row in rubric_rows:
            rubrics.setdefault(row["task_id"], []).append(
                RubricVersion(
                    version=int(row["version"]),
                    content=row["content"],
                    created_at=row["created_at"],
                )
            )
        return [self._row_to_task(row, rubrics.get(row["task_id"], [])) for row in rows]

    def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        try:
            with self._lock, self._connect() as conn:
                return list(conn.execute(query, params).fetchall())
        except self._psycopg.Error as exc:
            raise StorageError(f"Task query failed: {exc}") from exc

    def _column_value(self, name: str, value: Any) -> Any:
        if name not in _JSON_FIELDS:
            return value
        if name == "alignment_history":
            return self._json_wrapper([item.model_dump(by_alias=True) for item in value])
        return self._json_wrapper([item.model_dump() for item in value])

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_list(raw: Any) -> list[Any]:
        if raw is None:
            return []
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        return parsed if isinstance(parsed, list) else []

    @classmethod
    def _row_to_task(cls, row: dict[str, Any], rubrics: list[RubricVersion]) -> Task:
        return Task(
            task_id=row["task_id"],
            trainer_email=row["trainer_email"],
            record_id=row["task_id"],
            prompt=row["prompt"],
            professional_sector=row["professional_sector"],
            sources=row["sources"] or "",
            open_source_confirmed=bool(row["open_source_confirmed"]),
            license_notes=row["license_notes"] or "",
            gpt_response=row["gpt_response"],
            gemini_response=row["gemini_response"],
            status=row["status"],
            current_rubric_version=int(row["current_rubric_version"] or 1),
            rubric_versions=rubrics,
            human_eval_gemini=row["human_eval_gemini"],
            model_eval_gemini=row["model_eval_gemini"],
            alignment_gemini=row["alignment_gemini"],
            misaligned_gemini=[
                MisalignedItem.model_validate(item)
                for item in cls._parse_json_list(row["misaligned_gemini_json"])
            ],
            human_eval_gpt=row["human_eval_gpt"],
            model_eval_gpt=row["model_eval_gpt"],
            alignment_gpt=row["alignment_gpt"],
            misaligned_gpt=[
                MisalignedItem.model_validate(item)
                for item in cls._parse_json_list(row["misaligned_gpt_json"])
            ],
            alignment_history=[
                AlignmentHistoryEntry.model_validate(item)
                for item in cls._parse_json_list(row["alignment_history_json"])
            ],
            comments=row["comments"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

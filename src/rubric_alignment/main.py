"""FastAPI application wiring for the rubric alignment service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Dependency: a function FastAPI calls per request (here, to resolve the trainer).
- Middleware: code that wraps every request (here, request logging).
- app.state: a place to store shared runtime objects (settings, storage, service).
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request

from rubric_alignment.app.errors import (
    AuthenticationError,
    ForbiddenError,
    register_exception_handlers,
)
from rubric_alignment.app.files import FileStorage, LocalFolderStorage
from rubric_alignment.app.models import (
    CreateTaskRequest,
    CreateTaskResult,
    EvaluationModel,
    ModelEvalResult,
    RubricEnhanceSubmission,
    RubricStepResult,
    RubricSubmission,
    ScoresSubmission,
    StepResult,
    Task,
    TaskSummary,
)
from rubric_alignment.app.service import TaskService
from rubric_alignment.app.workflow import ALIGNMENT_THRESHOLD, workflow_steps
from rubric_alignment.config.settings import Settings, get_settings
from rubric_alignment.storage.airtable import (
    AirtableClient,
    AirtableFieldManager,
    AirtableTaskStorage,
)
from rubric_alignment.storage.base import TaskStorage
from rubric_alignment.storage.memory import InMemoryTaskStorage
from rubric_alignment.storage.postgres import PostgresTaskStorage

logger = logging.getLogger(__name__)


def build_storage(settings: Settings) -> TaskStorage:
    """Storage backend selected by `settings.storage_backend`."""
    missing = settings.missing_backend_settings()
    if missing:
        raise RuntimeError(
            f"Missing settings for the {settings.storage_backend} storage backend: "
            f"{', '.join(missing)}"
        )
    if settings.storage_backend == "memory":
        return InMemoryTaskStorage()
    if settings.storage_backend == "airtable":
        client = AirtableClient(
            api_key=settings.resolved_airtable_api_key(),
            base_id=settings.airtable_base_id,
            table=settings.resolved_airtable_table(),
            api_url=settings.airtable_api_url,
            timeout_s=settings.airtable_timeout_s,
        )
        return AirtableTaskStorage(client, AirtableFieldManager(client, settings.airtable_table_id))
    return PostgresTaskStorage(settings.resolved_database_url())


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    files_override: FileStorage | None,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "service"):
        files = files_override or LocalFolderStorage(settings.files_root, settings.files_base_url)
        app.state.service = TaskService(app.state.storage, files)


def create_app(
    *,
    storage: TaskStorage | None = None,
    files: FileStorage | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            files_override=files,
        )
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)
    register_exception_handlers(app)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            files_override=files,
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next: Any):
        started = time.perf_counter()
        outcome = "error"
        try:
            response = await call_next(request)
            outcome = "ok" if response.status_code < 400 else "failed"
            return response
        finally:
            logger.info(
                "request method=%s path=%s outcome=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                outcome,
                (time.perf_counter() - started) * 1000.0,
            )

    def _get_service(request: Request) -> TaskService:
        if not hasattr(request.app.state, "service"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                files_override=files,
            )
        return request.app.state.service

    def _current_trainer(request: Request) -> str:
        email = (request.headers.get(settings.trainer_header) or "").strip().lower()
        if not email or "@" not in email:
            raise AuthenticationError()
        domain = settings.allowed_email_domain.strip().lower().lstrip("@")
        if domain and not email.endswith(f"@{domain}"):
            raise ForbiddenError(f"Access restricted to @{domain} accounts.")
        return email

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/workflow/steps")
    def steps() -> dict[str, Any]:
        return {
            "alignment_threshold": ALIGNMENT_THRESHOLD,
            "steps": [step.model_dump() for step in workflow_steps()],
        }

    @app.get("/tasks", response_model=list[TaskSummary])
    def list_tasks(
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> list[TaskSummary]:
        return service.list_tasks(trainer)

    @app.post("/tasks", response_model=CreateTaskResult)
    def create_task(
        payload: CreateTaskRequest,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> CreateTaskResult:
        return service.create_task(trainer, payload)

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(
        task_id: str,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> Task:
        return service.get_task(task_id, trainer)

    @app.post("/tasks/{task_id}/rubric/v1", response_model=RubricStepResult)
    def save_rubric_v1(
        task_id: str,
        payload: RubricSubmission,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> RubricStepResult:
        return service.update_rubric_v1(task_id, trainer, payload.rubric)

    @app.post("/tasks/{task_id}/rubric/enhance", response_model=RubricStepResult)
    def save_enhanced_rubric(
        task_id: str,
        payload: RubricEnhanceSubmission,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> RubricStepResult:
        return service.update_rubric_enhanced(
            task_id, trainer, payload.rubric, payload.target_version
        )

    @app.post("/tasks/{task_id}/evaluations/{model}/human", response_model=StepResult)
    def save_human_eval(
        task_id: str,
        model: EvaluationModel,
        payload: ScoresSubmission,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> StepResult:
        return service.update_human_eval(model, task_id, trainer, payload.scores)

    @app.post("/tasks/{task_id}/evaluations/{model}/model", response_model=ModelEvalResult)
    def save_model_eval(
        task_id: str,
        model: EvaluationModel,
        payload: ScoresSubmission,
        service: TaskService = Depends(_get_service),
        trainer: str = Depends(_current_trainer),
    ) -> ModelEvalResult:
        return service.update_model_eval(model, task_id, trainer, payload.scores)

    return app


app = create_app()

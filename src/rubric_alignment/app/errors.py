"""Workflow error taxonomy and FastAPI exception handlers.

Each error carries a machine-readable `code` (the procedure error codes the
UI already understands) and the HTTP status it maps to. Messages are safe to
show to trainers; remote-system details stay in the server log.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

STATUS_CODES: dict[str, int] = {
    "BAD_REQUEST": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "INTERNAL_SERVER_ERROR": 500,
}


class WorkflowError(Exception):
    """Base error raised by workflow operations."""

    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "detail": self.detail}


class TaskValidationError(WorkflowError):
    """Rubric or score input failed validation; `errors` lists every problem."""

    code = "BAD_REQUEST"

    def __init__(self, prefix: str, errors: list[str]) -> None:
        super().__init__(f"{prefix}: {', '.join(errors)}", detail={"errors": list(errors)})
        self.errors = list(errors)


class TaskStateError(WorkflowError):
    """Task is not in an eligible status (or lacks a prerequisite) for a step."""

    code = "BAD_REQUEST"


class TaskNotFoundError(WorkflowError):
    # Same message whether the task is absent or owned by another trainer.
    code = "NOT_FOUND"

    def __init__(self) -> None:
        super().__init__("Task not found or access denied.")


class IncompleteTaskExistsError(WorkflowError):
    """Trainer already has a task that is not Completed."""

    code = "CONFLICT"

    def __init__(self, task_id: str, status: str, label: str) -> None:
        super().__init__(
            f"INCOMPLETE_TASK_EXISTS:{task_id}:{status}:{label}",
            detail={"task_id": task_id, "status": status, "label": label},
        )


class RemoteStorageError(WorkflowError):
    code = "INTERNAL_SERVER_ERROR"


class AuthenticationError(WorkflowError):
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)


class ForbiddenError(WorkflowError):
    code = "FORBIDDEN"


class StorageError(Exception):
    """Raised by storage backends when the record store call fails."""


class TaskMissingError(StorageError):
    """Raised by storage backends when the task to update does not exist."""


class FileStorageError(StorageError):
    """Raised by file storage when a folder or upload operation fails."""


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(WorkflowError)
    async def _workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
        logger.info(
            "workflow_error code=%s path=%s message=%s",
            exc.code,
            request.url.path,
            exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = [_describe_validation_error(item) for item in exc.errors()]
        logger.info("workflow_error code=BAD_REQUEST path=%s errors=%s", request.url.path, errors)
        body = {
            "error": "BAD_REQUEST",
            "message": f"Validation Error: {'; '.join(errors)}",
            "detail": {"errors": errors},
        }
        return JSONResponse(status_code=STATUS_CODES["BAD_REQUEST"], content=body)


def _describe_validation_error(item: dict[str, Any]) -> str:
    # Drop the leading "body"/"path" location segment.
    location = ".".join(str(part) for part in item.get("loc", ())[1:])
    message = str(item.get("msg", "Invalid value"))
    return f"{location}: {message}" if location else message

from __future__ import annotations

import json
from collections.abc import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from rubric_alignment.app.files import TaskFolder
from rubric_alignment.config.settings import Settings
from rubric_alignment.main import create_app
from rubric_alignment.storage.memory import InMemoryTaskStorage

TRAINER = "trainer@example.com"
OTHER_TRAINER = "someone.else@example.com"


class InMemoryFileStorage:
    """Test-only file storage double that records folders, uploads and grants."""

    def __init__(self) -> None:
        self.folders: list[str] = []
        self.uploads: list[tuple[str, str, str, bytes]] = []
        self.permissions: list[tuple[str, str | None]] = []

    def create_task_folder(self, task_id: str) -> TaskFolder:
        self.folders.append(task_id)
        return TaskFolder(
            task_folder_id=task_id,
            task_folder_url=f"https://files.example/{task_id}",
            request_folder_id=f"{task_id}/request",
            response_gemini_folder_id=f"{task_id}/response_gemini",
            response_gpt_folder_id=f"{task_id}/response_gpt",
        )

    def upload_file(self, content: bytes, name: str, mime_type: str, folder_id: str) -> str:
        self.uploads.append((folder_id, name, mime_type, content))
        return f"{folder_id}/{name}"

    def set_folder_permissions(self, folder_id: str, user_email: str | None = None) -> None:
        self.permissions.append((folder_id, user_email))


def build_rubric(
    count: int = 15, *, structured: bool = True, prefix: str = "Does the response"
) -> str:
    items: dict[str, object] = {}
    for number in range(1, count + 1):
        question = f"{prefix} satisfy criterion number {number}?"
        items[f"rubric_{number}"] = (
            {"question": question, "tag": f"tag-{number}"} if structured else question
        )
    return json.dumps(items)


def build_scores(count: int = 15, *, no_keys: tuple[int, ...] = ()) -> str:
    return json.dumps(
        {
            f"rubric_{number}": "No" if number in no_keys else "Yes"
            for number in range(1, count + 1)
        }
    )


def task_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "prompt": "Explain how to reconcile quarterly revenue with deferred income schedules.",
        "professional_sector": "Accounting",
        "open_source_confirmed": True,
        "license_notes": "CC-BY-4.0 sources only",
        "gpt_response": "GPT answer that walks through the reconciliation steps in detail here.",
        "gemini_response": "Gemini answer that walks through the reconciliation steps in detail.",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def storage() -> InMemoryTaskStorage:
    return InMemoryTaskStorage()


@pytest.fixture
def files() -> InMemoryFileStorage:
    return InMemoryFileStorage()


@pytest.fixture
def settings() -> Settings:
    return Settings(storage_backend="memory", allowed_email_domain="")


@pytest.fixture
def client(
    storage: InMemoryTaskStorage, files: InMemoryFileStorage, settings: Settings
) -> Iterator[TestClient]:
    app = create_app(storage=storage, files=files, settings_override=settings)
    with TestClient(app, headers={"X-Trainer-Email": TRAINER}) as test_client:
        yield test_client


@pytest.fixture
def make_rubric() -> Callable[..., str]:
    return build_rubric


@pytest.fixture
def make_scores() -> Callable[..., str]:
    return build_scores


@pytest.fixture
def create_task(client: TestClient) -> Callable[..., str]:
    def _create(**overrides: object) -> str:
        response = client.post("/tasks", json=task_payload(**overrides))
        assert response.status_code == 200, response.text
        return response.json()["task_id"]

    return _create

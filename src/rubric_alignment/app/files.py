"""Folder/file storage for task attachments.

Every task gets a folder with `request`, `response_gemini` and
`response_gpt` subfolders. Uploads are sequential and there is no cleanup
when one fails midway.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from rubric_alignment.app.errors import FileStorageError

logger = logging.getLogger(__name__)

SUBFOLDERS = ("request", "response_gemini", "response_gpt")


@dataclass(frozen=True)
class TaskFolder:
    task_folder_id: str
    task_folder_url: str
    request_folder_id: str
    response_gemini_folder_id: str
    response_gpt_folder_id: str


class FileStorage(Protocol):
    def create_task_folder(self, task_id: str) -> TaskFolder: ...

    def upload_file(self, content: bytes, name: str, mime_type: str, folder_id: str) -> str: ...

    def set_folder_permissions(self, folder_id: str, user_email: str | None = None) -> None: ...


class LocalFolderStorage:
    """Store task folders on the local filesystem under `root`.

    Folder ids are paths relative to `root`. When `base_url` is set (a file
    server in front of `root`), folder URLs are built from it; otherwise they
    are `file://` URIs.
    """

    def __init__(self, root: Path | str, base_url: str = "") -> None:
        self.root = Path(root).expanduser().resolve()
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()

    def create_task_folder(self, task_id: str) -> TaskFolder:
        task_dir = self._resolve(task_id)
        try:
            for name in SUBFOLDERS:
                (task_dir / name).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FileStorageError(f"Failed to create task folders for {task_id}") from exc
        logger.info("file_storage event=folder_created task_id=%s path=%s", task_id, task_dir)
        return TaskFolder(
            task_folder_id=task_id,
            task_folder_url=self._folder_url(task_id),
            request_folder_id=f"{task_id}/request",
            response_gemini_folder_id=f"{task_id}/response_gemini",
            response_gpt_folder_id=f"{task_id}/response_gpt",
        )

    def upload_file(self, content: bytes, name: str, mime_type: str, folder_id: str) -> str:
        file_name = Path(name).name
        if not file_name or file_name in {".", ".."}:
            raise FileStorageError(f"Invalid file name: {name!r}")
        target = self._resolve(folder_id) / file_name
        try:
            target.write_bytes(content)
        except OSError as exc:
            raise FileStorageError(f"Failed to upload file: {file_name}") from exc
        logger.info(
            "file_storage event=file_uploaded folder=%s name=%s mime_type=%s bytes=%d",
            folder_id,
            file_name,
            mime_type,
            len(content),
        )
        return f"{folder_id}/{file_name}"

    def set_folder_permissions(self, folder_id: str, user_email: str | None = None) -> None:
        # Sharing is recorded beside the folder; a file server reads it to grant access.
        manifest = self._resolve(folder_id) / ".sharing.json"
        grants = [{"role": "reader", "type": "anyone"}]
        if user_email:
            grants.append({"role": "writer", "type": "user", "email": user_email})
        with self._lock:
            try:
                manifest.write_text(json.dumps(grants, indent=2), encoding="utf-8")
            except OSError as exc:
                # Matches the remote drive behaviour: sharing failures do not fail the task.
                logger.error(
                    "file_storage event=permissions_failed folder=%s reason=%s", folder_id, exc
                )

    def _resolve(self, folder_id: str) -> Path:
        path = (self.root / folder_id).resolve()
        if path != self.root and self.root not in path.parents:
            raise FileStorageError(f"Folder id escapes storage root: {folder_id!r}")
        return path

    def _folder_url(self, task_id: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{task_id}"
        return self._resolve(task_id).as_uri()

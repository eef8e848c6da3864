"""Airtable-backed storage.

Each task is one record in a wide table. Rubric versions are stored in
`Rubric_V1`, `Rubric_V2`, ... long-text fields that are created on demand
through the Airtable metadata API. `Final_Rubric` mirrors the newest version.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any
from urllib import error, parse, request

from rubric_alignment.app.alignment import dump_alignment_history, parse_alignment_history
from rubric_alignment.app.errors import StorageError, TaskMissingError
from rubric_alignment.app.models import MisalignedItem, RubricVersion, Task, TaskUpdate
from rubric_alignment.app.workflow import rubric_field_name

logger = logging.getLogger(__name__)

RUBRIC_FIELD_PATTERN = re.compile(r"^Rubric_V(\d+)$")

# Task attribute -> Airtable field for plain scalar fields.
FIELD_NAMES: dict[str, str] = {
    "task_id": "TaskID",
    "prompt": "Prompt",
    "professional_sector": "ProfessionalSector",
    "trainer_email": "TrainerEmail",
    "sources": "Sources",
    "open_source_confirmed": "OpenSourceConfirmed",
    "license_notes": "LicenseNotes",
    "gpt_response": "GPTResponse",
    "gemini_response": "GeminiResponse",
    "status": "Status",
    "current_rubric_version": "Current_Rubric_Version",
    "human_eval_gemini": "Human_Eval_Gemini",
    "model_eval_gemini": "Model_Eval_Gemini",
    "alignment_gemini": "Alignment_Gemini",
    "human_eval_gpt": "Human_Eval_GPT",
    "model_eval_gpt": "Model_Eval_GPT",
    "alignment_gpt": "Alignment_GPT",
    "comments": "Comments",
}

MISALIGNED_FIELDS = {"misaligned_gemini": "Misaligned_Gemini", "misaligned_gpt": "Misaligned_GPT"}
HISTORY_FIELD = "Alignment_History"
FINAL_RUBRIC_FIELD = "Final_Rubric"
CREATED_FIELD = "Created"


class AirtableClient:
    """Minimal JSON client for the Airtable REST and metadata APIs."""

    def __init__(
        self,
        *,
        api_key: str,
        base_id: str,
        table: str,
        api_url: str = "https://api.airtable.com",
        timeout_s: float = 10.0,
    ) -> None:
        if not api_key or not base_id or not table:
            raise ValueError("Airtable storage requires an API key, base id and table")
        self.api_key = api_key
        self.base_id = base_id
        self.table = table
        self.api_url = api_url.rstrip("/")
        self.timeout_s = timeout_s

    def list_records(
        self,
        *,
        formula: str | None = None,
        sort_field: str | None = None,
        max_records: int | None = None,
    ) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        offset: str | None = None
        while True:
            params: dict[str, Any] = {"pageSize": 100}
            if formula:
                params["filterByFormula"] = formula
            if sort_field:
                params["sort[0][field]"] = sort_field
                params["sort[0][direction]"] = "desc"
            if max_records:
                params["maxRecords"] = max_records
            if offset:
                params["offset"] = offset
            payload = self._request_json("GET", self._table_path(), params=params)
            records.extend(payload.get("records", []))
            offset = payload.get("offset")
            if not offset:
                return records

    def create_record(self, fields: dict[str, Any]) -> dict[str, Any]:
        payload = self._request_json(
            "POST", self._table_path(), body={"records": [{"fields": fields}]}
        )
        return self._single_record(payload, "create")

    def update_record(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        payload = self._request_json(
            "PATCH",
            self._table_path(),
            body={"records": [{"id": record_id, "fields": fields}]},
        )
        return self._single_record(payload, "update")

    def list_tables(self) -> list[dict[str, Any]]:
        payload = self._request_json("GET", f"/v0/meta/bases/{self.base_id}/tables")
        return list(payload.get("tables", []))

    def create_field(self, table_id: str, field: dict[str, Any]) -> dict[str, Any]:
        return self._request_json(
            "POST", f"/v0/meta/bases/{self.base_id}/tables/{table_id}/fields", body=field
        )

    def _table_path(self) -> str:
        return f"/v0/{self.base_id}/{parse.quote(self.table, safe='')}"

    @staticmethod
    def _single_record(payload: dict[str, Any], action: str) -> dict[str, Any]:
        records = payload.get("records") or []
        if not records:
            raise StorageError(f"Airtable {action} returned no record")
        return records[0]

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.api_url}{path}"
        if params:
            url = f"{url}?{parse.urlencode(params)}"
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(url=url, method=method, headers=headers, data=data)

        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise StorageError(
                f"Airtable {method} {path} failed with status {exc.code}: {detail[:300]}"
            ) from exc
        except error.URLError as exc:
            raise StorageError(f"Airtable {method} {path} failed: {exc.reason}") from exc

        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError("Airtable returned non-JSON response.") from exc
        if isinstance(parsed, dict):
            return parsed
        raise StorageError(f"Airtable returned unsupported JSON shape: {type(parsed)!r}")


class AirtableFieldManager:
    """Creates `Rubric_V{n}` fields in the task table when they are missing."""

    def __init__(self, client: AirtableClient, table_id: str) -> None:
        self.client = client
        self.table_id = table_id
        self._known_fields: set[str] = set()

    def field_exists(self, name: str) -> bool:
        if name in self._known_fields:
            return True
        for table in self.client.list_tables():
            if table.get("id") != self.table_id:
                continue
            self._known_fields = {field.get("name") for field in table.get("fields", [])}
            return name in self._known_fields
        raise StorageError(f"Airtable table {self.table_id} not found in base schema")

    def create_rubric_field(self, version: int) -> None:
        name = rubric_field_name(version)
        if self.field_exists(name):
            return
        logger.info("airtable event=create_field field=%s table_id=%s", name, self.table_id)
        self.client.create_field(
            self.table_id,
            {
                "name": name,
                "type": "multilineText",
                "description": f"Rubric version {version} - JSON string with evaluation criteria",
            },
        )
        self._known_fields.add(name)

    def ensure_rubric_fields_exist(self, max_version: int) -> None:
        for version in range(1, max_version + 1):
            self.create_rubric_field(version)


class AirtableTaskStorage:
    """Persist tasks as records of one Airtable table."""

    def __init__(self, client: AirtableClient, field_manager: AirtableFieldManager) -> None:
        self.client = client
        self.field_manager = field_manager

    def migrate(self) -> None:
        # The table itself is managed in Airtable; only rubric fields are provisioned.
        self.field_manager.ensure_rubric_fields_exist(1)

    def create_task(self, task: Task) -> Task:
        fields = {FIELD_NAMES[name]: getattr(task, name) for name in FIELD_NAMES}
        fields = {key: value for key, value in fields.items() if value is not None}
        record = self.client.create_record(fields)
        logger.info(
            "airtable event=record_created task_id=%s record_id=%s",
            task.task_id,
            record.get("id"),
        )
        return self._record_to_task(record)

    def find_task(self, task_id: str, trainer_email: str) -> Task | None:
        formula = (
            f"AND({{TaskID}} = {formula_string(task_id)}, "
            f"{{TrainerEmail}} = {formula_string(trainer_email)})"
        )
        records = self.client.list_records(formula=formula, max_records=1)
        return self._record_to_task(records[0]) if records else None

    def find_incomplete_task(self, trainer_email: str) -> Task | None:
        formula = (
            f"AND({{TrainerEmail}} = {formula_string(trainer_email)}, "
            "{Status} != 'Completed')"
        )
        records = self.client.list_records(formula=formula, max_records=1)
        return self._record_to_task(records[0]) if records else None

    def list_tasks(self, trainer_email: str) -> list[Task]:
        records = self.client.list_records(
            formula=f"{{TrainerEmail}} = {formula_string(trainer_email)}",
            sort_field=CREATED_FIELD,
        )
        return [self._record_to_task(record) for record in records]

    def prepare_rubric_version(self, version: int) -> None:
        self.field_manager.ensure_rubric_fields_exist(version)

    def update_task(self, task_id: str, update: TaskUpdate) -> Task:
        records = self.client.list_records(
            formula=f"{{TaskID}} = {formula_string(task_id)}", max_records=1
        )
        if not records:
            raise TaskMissingError(f"Task {task_id} does not exist")
        record = records[0]

        fields: dict[str, Any] = {}
        for name, value in update.changed_fields().items():
            if name == "alignment_history":
                fields[HISTORY_FIELD] = dump_alignment_history(value)
            elif name in MISALIGNED_FIELDS:
                fields[MISALIGNED_FIELDS[name]] = json.dumps(
                    [item.model_dump() for item in value]
                )
            else:
                fields[FIELD_NAMES[name]] = value
        if update.new_rubric is not None:
            field_name = rubric_field_name(update.new_rubric.version)
            if record.get("fields", {}).get(field_name):
                raise StorageError(
                    f"Rubric version {update.new_rubric.version} already exists for {task_id}"
                )
            fields[field_name] = update.new_rubric.content
            fields[FINAL_RUBRIC_FIELD] = update.new_rubric.content

        updated = self.client.update_record(record["id"], fields)
        return self._record_to_task(updated)

    @staticmethod
    def _record_to_task(record: dict[str, Any]) -> Task:
        fields = record.get("fields", {})
        rubrics = []
        for name, value in fields.items():
            match = RUBRIC_FIELD_PATTERN.match(name)
            if match and isinstance(value, str) and value.strip():
                rubrics.append(RubricVersion(version=int(match.group(1)), content=value))
        rubrics.sort(key=lambda item: item.version)

        values: dict[str, Any] = {
            name: fields[field] for name, field in FIELD_NAMES.items() if field in fields
        }
        for name, field in MISALIGNED_FIELDS.items():
            values[name] = _misaligned_items(fields.get(field))
        values["alignment_history"] = parse_alignment_history(fields.get(HISTORY_FIELD))
        values["rubric_versions"] = rubrics
        values["record_id"] = record.get("id")
        created = fields.get(CREATED_FIELD) or record.get("createdTime")
        if created:
            values["created_at"] = datetime.fromisoformat(created.replace("Z", "+00:00"))
        return Task.model_validate(values)


def formula_string(value: str) -> str:
    """Quote `value` as an Airtable formula string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _misaligned_items(raw: Any) -> list[MisalignedItem]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        logger.warning("airtable event=invalid_misaligned_json")
        return []
    if not isinstance(parsed, list):
        return []
    return [MisalignedItem.model_validate(item) for item in parsed if isinstance(item, dict)]

"""Storage backends."""

from rubric_alignment.storage.airtable import (
    AirtableClient,
    AirtableFieldManager,
    AirtableTaskStorage,
)
from rubric_alignment.storage.base import TaskStorage
from rubric_alignment.storage.memory import InMemoryTaskStorage
from rubric_alignment.storage.postgres import PostgresTaskStorage

__all__ = [
    "AirtableClient",
    "AirtableFieldManager",
    "AirtableTaskStorage",
    "InMemoryTaskStorage",
    "PostgresTaskStorage",
    "TaskStorage",
]

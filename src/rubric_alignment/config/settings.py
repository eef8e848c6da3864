"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "rubric-alignment"
    app_env: str = "dev"
    storage_backend: Literal["postgres", "airtable", "memory"] = "postgres"
    database_url: str = ""
    airtable_api_key: str = ""
    airtable_base_id: str = ""
    airtable_table_id: str = ""
    # Name used by the records API; falls back to the table id.
    airtable_table_name: str = ""
    airtable_api_url: str = "https://api.airtable.com"
    airtable_timeout_s: float = Field(default=10.0, ge=0.5)
    files_root: Path = PROJECT_ROOT / "task_files"
    files_base_url: str = ""
    # Header set by the authenticating proxy in front of the service.
    trainer_header: str = "X-Trainer-Email"
    allowed_email_domain: str = ""

    model_config = SettingsConfigDict(
        env_prefix="RUBRIC_ALIGNMENT_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_airtable_api_key(self) -> str:
        return self.airtable_api_key or os.getenv("AIRTABLE_API_KEY", "")

    def resolved_airtable_table(self) -> str:
        return self.airtable_table_name or self.airtable_table_id

    def missing_backend_settings(self) -> list[str]:
        """Names of required settings that are unset for the selected backend."""
        prefix = "RUBRIC_ALIGNMENT_"
        if self.storage_backend == "postgres" and not self.resolved_database_url():
            return [f"{prefix}DATABASE_URL"]
        if self.storage_backend == "airtable":
            required = {
                f"{prefix}AIRTABLE_API_KEY": self.resolved_airtable_api_key(),
                f"{prefix}AIRTABLE_BASE_ID": self.airtable_base_id,
                f"{prefix}AIRTABLE_TABLE_ID": self.airtable_table_id,
            }
            return [name for name, value in required.items() if not value]
        return []


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

"""Application settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "fanout-orchestrator"
    app_env: str = "dev"
    log_level: str = "INFO"
    region: str = "us-east-1"
    store_backend: Literal["memory", "postgres", "dynamodb"] = "memory"
    execution_backend: Literal["memory", "ecs"] = "memory"
    database_url: str = ""
    summary_table_name: str = "workflow_summary"
    summary_hash_key: str = "workflow_name"
    summary_range_key: str = "run_id"
    detail_table_name: str = "workflow_details"
    detail_hash_key: str = "run_id"
    detail_range_key: str = "task_id"
    execution_table_name: str = "workflow_executions"
    poll_interval_s: float = Field(default=120.0, ge=0.0)
    claim_lease_s: float = Field(default=300.0, gt=0.0)
    submit_concurrency: int = Field(default=5, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="FANOUT_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

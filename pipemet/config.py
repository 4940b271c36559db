"""Runtime settings loaded from the environment (``PIPEMET_*``) or a ``.env`` file."""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PIPEMET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage; in-memory event log when unset
    database_url: Optional[str] = None

    # Aggregation
    reservoir_capacity: int = Field(default=1000, ge=1)
    random_seed: Optional[int] = None
    max_aggregation_retries: int = Field(default=3, ge=0)
    sweep_interval_seconds: float = Field(default=30.0, gt=0)

    # Queries
    feed_page_size: int = Field(default=50, ge=1)
    feed_max_page_size: int = Field(default=500, ge=1)

    # Pipeline backend
    pipeline_base_url: str = "https://coss-ai4x.vercel.app"
    pipeline_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

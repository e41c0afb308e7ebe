"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the engine, shared by the CLI and the server.

    Environment variables:
    - LOG_LEVEL                   (optional)
    - WORKFLOW_STORE_BACKEND      (optional: json | memory)
    - WORKFLOW_STATE_PATH         (optional)
    - WORKFLOW_DEFAULT_PRIORITY   (optional)
    - WORKFLOW_LIST_LIMIT         (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    store_backend: Literal["json", "memory"] = Field(
        default="json",
        validation_alias="WORKFLOW_STORE_BACKEND",
        description="Object store adapter. 'memory' loses state when the process exits.",
    )

    state_path: Path = Field(
        default=Path("workflow_state"),
        validation_alias="WORKFLOW_STATE_PATH",
        description="Directory holding one JSON file per entity type (json backend)",
    )

    default_priority: str = Field(
        default="normal",
        validation_alias="WORKFLOW_DEFAULT_PRIORITY",
        description="Priority given to task instances whose template sets none",
    )

    list_limit: int = Field(
        default=50,
        validation_alias="WORKFLOW_LIST_LIMIT",
        description="Default page size when listing workflow instances",
        ge=1,
        le=500,
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown LOG_LEVEL: {value!r}")
        return level

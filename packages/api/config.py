"""API configuration via pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from packages.rebac.config import EngineConfig


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="REBAC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"

    # API configuration
    api_title: str = "ReBAC Access API"
    api_version: str = "1.0.0"

    # Schema (None = built-in dashboard/folder model)
    schema_path: str | None = None

    # Tuple storage
    tuple_store_type: Literal["memory", "file"] = "memory"
    tuple_store_path: str = "data/tuples.jsonl"

    # Engine limits
    max_depth: int = 25
    check_timeout_seconds: float | None = 10.0
    max_concurrency: int = 1

    # Known accounts as user id -> login (JSON in REBAC_USERS)
    users: dict[str, str] = {}

    # Accounts never shown in ACL listings
    hidden_users: list[str] = []

    # Callers allowed to write tuples directly
    admin_users: list[str] = []

    @property
    def engine_config(self) -> EngineConfig:
        """Get engine configuration object."""
        return EngineConfig(
            max_depth=self.max_depth,
            check_timeout_seconds=self.check_timeout_seconds,
            max_concurrency=self.max_concurrency,
        )

"""Engine configuration."""

import os

from pydantic import BaseModel, Field, field_validator


class EngineConfig(BaseModel):
    """Limits applied to every check and expansion."""

    max_depth: int = Field(
        default=25,
        ge=1,
        description="Maximum recursion depth; deeper branches resolve to false",
    )
    check_timeout_seconds: float | None = Field(
        default=10.0,
        description="Deadline for a single check or expansion (None disables it)",
    )
    max_concurrency: int = Field(
        default=1,
        ge=1,
        description="Worker threads for fanning out root branches (1 = sequential)",
    )

    @field_validator("check_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("check_timeout_seconds must be positive")
        return value

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables."""
        timeout = os.getenv("REBAC_CHECK_TIMEOUT_SECONDS", "10")
        return cls(
            max_depth=int(os.getenv("REBAC_MAX_DEPTH", "25")),
            check_timeout_seconds=None if timeout.lower() in ("", "none", "0") else float(timeout),
            max_concurrency=int(os.getenv("REBAC_MAX_CONCURRENCY", "1")),
        )

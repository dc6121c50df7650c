"""Submission-level settings (upload limits, defaults).

Kept apart from client.config.Settings: the transport settings are a plain
frozen dataclass, these come from pydantic-settings so they can also be read
from a .env file.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_FILE_TYPES = ".pdf,.doc,.docx,.xls,.xlsx,.jpg,.jpeg,.png,.gif,.webp"


class SubmissionSettings(BaseSettings):
    """Settings for the submission engine.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      DOCVAULT_MAX_FILE_SIZE        — Largest accepted upload in bytes (default: 50 MB)
      DOCVAULT_ALLOWED_FILE_TYPES   — Comma-separated extensions, e.g. ".pdf,.docx"
      DOCVAULT_DEFAULT_RECORD_TYPE  — Record type for new drafts (default: "item")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    max_file_size: int = Field(default=52428800, validation_alias="DOCVAULT_MAX_FILE_SIZE")
    allowed_file_types: str = Field(
        default=DEFAULT_ALLOWED_FILE_TYPES,
        validation_alias="DOCVAULT_ALLOWED_FILE_TYPES",
    )
    default_record_type: str = Field(default="item", validation_alias="DOCVAULT_DEFAULT_RECORD_TYPE")

    @field_validator("max_file_size")
    @classmethod
    def positive_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_file_size must be positive")
        return v

    @field_validator("allowed_file_types", mode="before")
    @classmethod
    def normalise_types(cls, v: object) -> str:
        """Lowercase, strip, and ensure each entry starts with a dot."""
        parts = [p.strip().lower() for p in str(v or "").split(",")]
        return ",".join(p if p.startswith(".") else f".{p}" for p in parts if p)

    @property
    def allowed_extensions(self) -> tuple[str, ...]:
        return tuple(p for p in self.allowed_file_types.split(",") if p)

    @classmethod
    def from_env(cls) -> SubmissionSettings:
        return cls()

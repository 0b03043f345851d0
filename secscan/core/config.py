"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Upper bound for a single scanner run; a hung tool fails the scan after this.
MAX_TOOL_TIMEOUT_SEC = 7200.0


class Settings(BaseSettings):
    """Validated application settings from env and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    APP_ENV: Literal["dev", "prod"] = "dev"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Filesystem: extracted trees go under WORK_DIR/scan_<id>; uploads land in UPLOAD_DIR
    WORK_DIR: Path = Path("temp")
    UPLOAD_DIR: Path = Path("uploads")
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024

    # External scanners
    TRIVY_BINARY: str = "trivy"
    SEMGREP_BINARY: str = "semgrep"
    SEMGREP_CONFIG: str = "auto"
    TOOL_TIMEOUT_SEC: float = 600.0

    # Normalization
    SNIPPET_CONTEXT_LINES: int = 2
    # When True, SBOM risk levels are derived from the SCA findings of the same scan
    CORRELATE_SBOM_RISK: bool = False

    @field_validator("TRIVY_BINARY", "SEMGREP_BINARY", "SEMGREP_CONFIG")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("scanner binaries and config must be set and non-empty")
        return v.strip()

    @field_validator("TOOL_TIMEOUT_SEC")
    @classmethod
    def validate_tool_timeout(cls, v: float) -> float:
        if v <= 0 or v > MAX_TOOL_TIMEOUT_SEC:
            raise ValueError(
                f"TOOL_TIMEOUT_SEC must be greater than 0 and at most {MAX_TOOL_TIMEOUT_SEC:g}"
            )
        return v

    @field_validator("MAX_UPLOAD_BYTES")
    @classmethod
    def validate_max_upload_bytes(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_UPLOAD_BYTES must be a positive number of bytes")
        return v

    @field_validator("SNIPPET_CONTEXT_LINES")
    @classmethod
    def validate_snippet_context(cls, v: int) -> int:
        if v < 0 or v > 20:
            raise ValueError("SNIPPET_CONTEXT_LINES must be between 0 and 20")
        return v


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance (safe to call from dependencies)."""
    return Settings()


settings = get_settings()

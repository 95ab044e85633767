from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PATCHSCRIPT_", extra="ignore")

    app_name: str = "Patchscript API"
    app_version: str = "0.1.0"
    debug: bool = False
    # Overrides the level of the per-script compiler loggers only.
    compiler_log_level: Literal["debug", "info", "warning", "error", "critical"] | None = None

    api_prefix: str = "/api"

    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    # Engine-exported module schemas (JSON list). Built-in core schemas are used when unset.
    schemas_file: Path | None = None

    default_tempo_bpm: float = Field(default=120.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    return Settings()

from __future__ import annotations

import codecs
import sys
import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DEFERJOB_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    executable: Path = Field(default_factory=lambda: Path(sys.executable))
    init_file: Path | None = None
    debug: bool = False

    default_encoding: str = "utf-8"
    artifact_dir: Path | None = None
    artifact_prefix: str = "deferjob-"

    @field_validator("init_file", "artifact_dir", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        try:
            self.default_encoding = codecs.lookup(self.default_encoding.strip()).name
        except LookupError as exc:
            raise ValueError(f"Unknown default_encoding: {self.default_encoding}") from exc

        normalized_level = self.log_level.upper().strip()
        if normalized_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(SUPPORTED_LOG_LEVELS)}")
        self.log_level = normalized_level

        if not self.artifact_prefix or "/" in self.artifact_prefix:
            raise ValueError("artifact_prefix must be a non-empty file name prefix")

        if self.artifact_dir is not None:
            self.artifact_dir = self.artifact_dir.resolve(strict=False)
            self.artifact_dir.mkdir(parents=True, exist_ok=True)
        return self

    @property
    def effective_artifact_dir(self) -> Path:
        if self.artifact_dir is not None:
            return self.artifact_dir
        return Path(tempfile.gettempdir())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

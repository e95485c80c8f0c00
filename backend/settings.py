from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024  # 100 MiB
DEFAULT_JOB_RETENTION_SECONDS = 365 * 24 * 3600

CommaList = Annotated[tuple[str, ...], NoDecode]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=ROOT_DIR / ".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Storage
    database_url: str = "sqlite:///./clipflow.db"
    upload_dir: Path = ROOT_DIR / "uploads"
    output_dir: Path = ROOT_DIR / "processed"
    max_upload_bytes: int = Field(DEFAULT_MAX_UPLOAD_BYTES, ge=1)

    # FFmpeg
    ffmpeg_bin: str = "ffmpeg"
    ffmpeg_timeout_seconds: float = Field(600.0, ge=1.0)

    # Redis / rq
    redis_url: str = "redis://localhost:6379/0"
    queue_names: CommaList = ("processing", "rendering")
    default_queue: str | None = None
    job_max_attempts: int = Field(3, ge=1)
    retry_backoff_seconds: float = Field(5.0, ge=0.0)
    retry_backoff_max_seconds: float = Field(300.0, ge=0.0)
    # rq kills a job that outlives this; defaults to the ffmpeg timeout plus a minute
    job_timeout_seconds: float | None = Field(None, ge=1.0)
    job_retention_seconds: int = Field(DEFAULT_JOB_RETENTION_SECONDS, ge=1)

    # Workers
    worker_concurrency: int = Field(2, ge=1)
    worker_poll_seconds: float = Field(1.0, ge=0.05)
    worker_shutdown_grace_seconds: float = Field(30.0, ge=0.0)
    run_workers_in_api: bool = True

    # API
    process_mode: Literal["direct", "queued"] = "direct"
    admin_token: str | None = None
    cors_origins: CommaList = ("http://localhost:3000", "http://localhost:5173")

    @field_validator("queue_names", "cors_origins", mode="before")
    @classmethod
    def _split_commas(cls, value):
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return value

    @field_validator("upload_dir", "output_dir", mode="after")
    @classmethod
    def _resolve_dir(cls, value: Path) -> Path:
        if not value.is_absolute():
            value = ROOT_DIR / value
        return value

    @field_validator("process_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("admin_token", "default_queue", mode="before")
    @classmethod
    def _blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _derive_defaults(self) -> "Settings":
        if not self.queue_names:
            self.queue_names = ("processing",)
        if self.default_queue is None:
            self.default_queue = self.queue_names[0]
        if self.default_queue not in self.queue_names:
            self.queue_names = (*self.queue_names, self.default_queue)
        if self.job_timeout_seconds is None:
            self.job_timeout_seconds = self.ffmpeg_timeout_seconds + 60.0
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()

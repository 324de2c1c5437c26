"""Worker configuration, read from the environment or ``.env``."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    redis_url: str = Field(default="redis://queue:6379/0", alias="REDIS_URL")
    redis_queue_name: str = Field(default="tilecad:jobs", alias="REDIS_QUEUE_NAME")
    redis_status_prefix: str = Field(default="tilecad:job", alias="REDIS_STATUS_PREFIX")
    result_ttl_seconds: int = Field(default=86400, alias="RESULT_TTL_SECONDS")

    # blocking pop timeout and reconnect ceiling, in seconds
    poll_timeout: int = Field(default=5, ge=0, alias="POLL_TIMEOUT")
    max_backoff_seconds: int = Field(default=30, ge=1, alias="MAX_BACKOFF_SECONDS")

    artifact_root: Path = Field(default=Path("/app/artifacts"), alias="ARTIFACT_DIR")
    job_deadline_seconds: float | None = Field(default=None, gt=0, alias="JOB_DEADLINE_SECONDS")

    service_name: str = Field(default="tilecad-worker", alias="SERVICE_NAME")
    log_dir: Path | None = Field(default=None, alias="LOG_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

"""Configuration management for the tile job API."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven configuration."""

    redis_url: str = Field(default="redis://queue:6379/0", alias="REDIS_URL")
    redis_queue_name: str = Field(default="tilecad:jobs", alias="REDIS_QUEUE_NAME")
    redis_status_prefix: str = Field(default="tilecad:job", alias="REDIS_STATUS_PREFIX")
    log_dir: Path | None = Field(default=None, alias="LOG_DIR")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    service_name: str = Field(default="tilecad-api", alias="SERVICE_NAME")
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8000, alias="API_PORT")
    api_prefix: str = Field(default="/v1", alias="API_PREFIX")
    result_ttl_seconds: int = Field(default=86400, alias="RESULT_TTL_SECONDS")
    allowed_origins: list[str] = Field(default_factory=list, alias="ALLOWED_ORIGINS")
    max_images: int = Field(default=64, ge=0, alias="MAX_IMAGES")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()

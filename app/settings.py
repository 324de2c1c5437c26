"""Centralized APS settings using pydantic-settings."""
from __future__ import annotations

import math
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCOPES = [
    "bucket:create",
    "bucket:read",
    "bucket:delete",
    "data:read",
    "data:write",
    "data:create",
    "code:all",
]


class ApsSettings(BaseSettings):
    """Configuration for the APS Design Automation pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="APS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Credentials
    client_id: str = Field(default="", description="APS application client id")
    client_secret: str = Field(default="", description="APS application client secret")
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES), description="OAuth scopes")
    token_refresh_margin_seconds: int = Field(default=300, ge=0, description="Refresh tokens this long before expiry")

    # Endpoints
    region: str = Field(default="EMEA", description="OSS region sent as x-ads-region")
    auth_url: str = Field(default="https://developer.api.autodesk.com/authentication/v2/token")
    oss_base_url: str = Field(default="https://developer.api.autodesk.com/oss/v2")
    da_base_url: str = Field(default="https://developer.api.autodesk.com/da/us-east/v3")
    derivative_base_url: str = Field(default="https://developer.api.autodesk.com/modelderivative/v2/regions/eu")
    request_timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request HTTP timeout")

    # Design Automation
    nickname: str = Field(default="fossapp", description="Design Automation nickname")
    activity_name: str = Field(default="fossappTileAct2", description="Activity id without nickname")
    activity_alias: str = Field(default="production", description="Alias the work items run against")
    engine_version: str = Field(default="Autodesk.AutoCAD+25_1", description="Design Automation engine")
    output_parameter: str = Field(default="tile", description="Name of the DWG output parameter")

    # Processing limits
    processing_timeout_minutes: float = Field(default=8, gt=0, description="Overall work item timeout")
    max_polling_attempts: int = Field(default=240, ge=1, description="Status polls before giving up")
    poll_interval_seconds: float = Field(default=2.0, ge=0, description="Delay between status polls")

    # Storage
    bucket_prefix: str = Field(default="tile-processing", description="Prefix for temporary bucket names")
    bucket_policy: str = Field(default="transient", description="OSS retention policy for temporary buckets")
    bucket_create_attempts: int = Field(default=5, ge=1, description="Bucket name collisions tolerated")
    signed_url_minutes: int = Field(default=60, ge=1, le=60, description="Lifetime of signed URLs")
    upload_concurrency: int = Field(default=4, ge=1, description="Parallel image uploads")

    # Viewer
    enable_viewer_prep: bool = Field(default=True, description="Start an SVF2 translation after download")
    viewer_bucket: str = Field(default="fossapp-viewer-transient", description="Transient bucket for viewer uploads")

    @model_validator(mode="after")
    def check_polling_budget(self) -> "ApsSettings":
        budget = self.max_polling_attempts * self.poll_interval_seconds
        expected = self.processing_timeout_minutes * 60
        if not math.isclose(budget, expected, rel_tol=1e-6, abs_tol=1e-6):
            raise ValueError(
                "max_polling_attempts * poll_interval_seconds "
                f"({budget:g}s) must equal processing_timeout_minutes ({expected:g}s)"
            )
        return self

    @property
    def activity_id(self) -> str:
        """Fully qualified activity id used by work items."""
        return f"{self.nickname}.{self.activity_name}+{self.activity_alias}"


@lru_cache(maxsize=1)
def get_settings() -> ApsSettings:
    """Return cached settings instance."""

    return ApsSettings()

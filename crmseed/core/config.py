from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, NonNegativeInt, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_DENSITY_SHAPES = {"uniform", "front-loaded", "back-loaded", "bell-curve"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CRMSEED_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "crmseed"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    job_lock_ttl_seconds: PositiveInt = 300
    job_retry_base_seconds: PositiveInt = 5
    job_retry_max_seconds: PositiveInt = 3600
    job_default_max_attempts: PositiveInt = 3
    job_retention_days: PositiveInt = 30

    worker_poll_seconds: PositiveInt = 5
    worker_concurrency: PositiveInt = 2

    generation_batch_size: PositiveInt = 25
    default_page_size: PositiveInt = 100
    max_page_size: PositiveInt = 1000

    business_hours_start: NonNegativeInt = 9
    business_hours_end: PositiveInt = 17
    include_weekends: bool = False
    default_density_shape: str = "bell-curve"
    sales_cycle_days: PositiveInt = 90
    unknown_stage_remaining_days: NonNegativeInt = 30
    email_min_delay_hours: float = 2.0
    email_max_delay_hours: float = 48.0
    meeting_duration_minutes: PositiveInt = 30

    snapshot_before_injection: bool = False

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
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
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.job_retry_max_seconds < self.job_retry_base_seconds:
            raise ValueError("job_retry_max_seconds must be greater than or equal to job_retry_base_seconds")

        if self.business_hours_end > 24:
            raise ValueError("business_hours_end must be <= 24")
        if self.business_hours_start >= self.business_hours_end:
            raise ValueError("business_hours_start must be before business_hours_end")

        if self.email_min_delay_hours < 0:
            raise ValueError("email_min_delay_hours cannot be negative")
        if self.email_max_delay_hours < self.email_min_delay_hours:
            raise ValueError("email_max_delay_hours must be >= email_min_delay_hours")

        normalized_shape = self.default_density_shape.lower().strip()
        if normalized_shape not in SUPPORTED_DENSITY_SHAPES:
            raise ValueError(f"default_density_shape must be one of {sorted(SUPPORTED_DENSITY_SHAPES)}")
        self.default_density_shape = normalized_shape

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "crmseed.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

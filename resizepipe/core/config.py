from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_OUTPUT_FORMATS = {"jpeg", "webp"}
SUPPORTED_STORE_BACKENDS = {"memory", "filesystem", "s3"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RESIZEPIPE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "resizepipe"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None
    database_busy_timeout_ms: PositiveInt = 5000

    max_width: PositiveInt = 800
    max_height: PositiveInt = 800
    allow_upscale: bool = False
    allowed_content_types: set[str] = Field(default_factory=lambda: {"image/jpeg", "image/png", "image/webp"})
    output_format: str = "jpeg"
    output_quality: PositiveInt = 85
    derived_key_prefix: str = "resized/"
    output_collection: str | None = None
    verify_derived_collisions: bool = True

    max_concurrency: PositiveInt = 8
    queue_capacity: PositiveInt = 10000
    submit_block_seconds: float = Field(default=30.0, ge=0.0)
    worker_poll_seconds: PositiveFloat = 1.0
    shutdown_grace_seconds: float = Field(default=30.0, ge=0.0)

    max_attempts: PositiveInt = 5
    retry_base_seconds: PositiveFloat = 1.0
    retry_max_seconds: PositiveFloat = 300.0
    deferral_seconds: PositiveFloat = 5.0

    lease_duration_seconds: PositiveFloat = 300.0
    per_attempt_deadline_seconds: PositiveFloat = 120.0
    ledger_max_releases: PositiveInt = 10
    ledger_done_retention_seconds: PositiveInt | None = None

    store_backend: str = "filesystem"
    store_root: Path = Field(default=Path("/state/objects"))
    s3_region: str | None = None
    s3_endpoint_url: str | None = None

    @field_validator("state_root", "store_root", mode="before")
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
        self.store_root = self.store_root.resolve(strict=False)

        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.store_root.as_posix() == "/state/objects" and self.state_root.as_posix() != "/state":
            self.store_root = (self.state_root / "objects").resolve(strict=False)

        normalized_types = {item.strip().lower() for item in self.allowed_content_types if item.strip()}
        if not normalized_types:
            raise ValueError("allowed_content_types cannot be empty")
        self.allowed_content_types = normalized_types

        normalized_format = self.output_format.lower().strip()
        if normalized_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {sorted(SUPPORTED_OUTPUT_FORMATS)}")
        self.output_format = normalized_format

        if self.output_quality > 100:
            raise ValueError("output_quality must be <= 100")

        normalized_backend = self.store_backend.lower().strip()
        if normalized_backend not in SUPPORTED_STORE_BACKENDS:
            raise ValueError(f"store_backend must be one of {sorted(SUPPORTED_STORE_BACKENDS)}")
        self.store_backend = normalized_backend

        if not self.derived_key_prefix or self.derived_key_prefix.startswith("/"):
            raise ValueError("derived_key_prefix must be a non-empty relative prefix")

        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry_max_seconds must be >= retry_base_seconds")

        if self.per_attempt_deadline_seconds >= self.lease_duration_seconds:
            raise ValueError("per_attempt_deadline_seconds must be smaller than lease_duration_seconds")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "resizepipe.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

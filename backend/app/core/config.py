from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    env: str = Field(default="dev", validation_alias="ENV")
    database_url: str = Field(default="sqlite:///./dev.db", validation_alias="DATABASE_URL")
    cors_origins_raw: Optional[str] = Field(
        default=None,
        validation_alias="CORS_ORIGINS",
    )
    admin_key: str = Field(default="changeme-admin", validation_alias="ADMIN_KEY")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Cell shape
    cell_size_target: int = Field(default=5, ge=1, validation_alias="CELL_SIZE_TARGET")
    cell_size_min: int = Field(default=3, ge=1, validation_alias="CELL_SIZE_MIN")
    cell_size_max: int = Field(default=7, ge=1, validation_alias="CELL_SIZE_MAX")
    fcfs_voters_per_cell: int = Field(default=5, ge=1, validation_alias="FCFS_VOTERS_PER_CELL")

    # Voting and completion rules
    points_per_vote: int = Field(default=10, ge=1, validation_alias="POINTS_PER_VOTE")
    recycle_floor: int = Field(default=2, ge=0, validation_alias="RECYCLE_FLOOR")
    retry_cap: int = Field(default=3, ge=1, validation_alias="RETRY_CAP")
    min_force_votes: int = Field(default=2, ge=1, validation_alias="MIN_FORCE_VOTES")

    # Timing (seconds)
    reservation_seconds: int = Field(default=90, ge=1, validation_alias="RESERVATION_SECONDS")
    grace_period_seconds: int = Field(default=10, ge=0, validation_alias="GRACE_PERIOD_SECONDS")
    supermajority_ratio: float = Field(default=0.8, gt=0, le=1, validation_alias="SUPERMAJORITY_RATIO")
    supermajority_grace_seconds: int = Field(
        default=600,
        ge=0,
        validation_alias="SUPERMAJORITY_GRACE_SECONDS",
    )
    must_vote_extension_seconds: int = Field(
        default=30,
        ge=1,
        validation_alias="MUST_VOTE_EXTENSION_SECONDS",
    )
    final_vote_human_window_seconds: int = Field(
        default=60,
        ge=0,
        validation_alias="FINAL_VOTE_HUMAN_WINDOW_SECONDS",
    )
    accumulation_timeout_seconds: int = Field(
        default=24 * 60 * 60,
        ge=1,
        validation_alias="ACCUMULATION_TIMEOUT_SECONDS",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Optional[str]) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "INFO"
        return str(v).strip().upper()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @staticmethod
    def parse_cors_origins(raw: Optional[str]) -> List[str]:
        if not raw:
            # Default to local frontend for dev
            return ["http://localhost:5173"]
        return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    base = Settings()
    # Compute cors_origins property from raw env string.
    cors_list = Settings.parse_cors_origins(base.cors_origins_raw)
    # Pydantic models support model_copy(update=...)
    base = base.model_copy(update={"cors_origins": cors_list})
    return base

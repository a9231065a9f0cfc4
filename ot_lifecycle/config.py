"""Runtime configuration, read from the environment."""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
    database_url: str = "sqlite:///./ot_lifecycle.db"
    log_level: str = "INFO"

    # Hours to resolve per priority tier
    sla_hours_p1: float = 4
    sla_hours_p2: float = 24
    sla_hours_p3: float = 72
    sla_hours_p4: float = 168
    # Share of the SLA window, counted back from the due time, that is AT_RISK
    sla_at_risk_fraction: float = 0.25

    close_title_max_length: int = 100
    prior_solution_limit: int = 5

    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.05

    @field_validator("database_url")
    @classmethod
    def normalize_postgres_scheme(cls, v: str) -> str:
        """Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://"""
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("sla_hours_p1", "sla_hours_p2", "sla_hours_p3", "sla_hours_p4")
    @classmethod
    def positive_window(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive (got {v})")
        return v

    @field_validator("sla_at_risk_fraction")
    @classmethod
    def fraction_in_range(cls, v: float) -> float:
        if not 0 < v < 1:
            raise ValueError(f"sla_at_risk_fraction must be between 0 and 1 (got {v})")
        return v

    @field_validator("store_retry_attempts")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("store_retry_attempts must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3030, ge=1024, le=65535)
    debug: bool = Field(default=False)

    # Persistence
    persistence: Literal["memory", "database"] = Field(default="memory")
    database_url: str = Field(default="sqlite+aiosqlite:///./data/scheduler.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=20, ge=5, le=100)
    database_max_overflow: int = Field(default=30, ge=10, le=100)

    # Scheduler
    scheduler_poll_interval: float = Field(default=5.0, gt=0, le=3600)
    scheduler_autostart: bool = Field(default=True)
    max_concurrent_dispatches: int = Field(default=50, ge=1, le=1000)
    default_timezone: str = Field(default="UTC")
    upcoming_limit: int = Field(default=50, ge=1, le=500)

    # Execution
    execution_timeout: float = Field(default=300.0, gt=0)  # seconds
    execution_cancel_grace: float = Field(default=10.0, ge=0)  # seconds
    runner_url: Optional[str] = Field(default=None)

    # Conditional engine
    condition_cache_max_entries: int = Field(default=10000, ge=1)

    # Validation
    min_interval_warning_ms: int = Field(default=60_000, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("default_timezone")
    @classmethod
    def validate_default_timezone(cls, v):
        """Reject timezone names pytz does not know."""
        import pytz

        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def uses_database(self) -> bool:
        return self.persistence == "database"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }

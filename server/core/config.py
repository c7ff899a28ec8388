"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8010, ge=1024, le=65535)
    debug: bool = Field(default=False)
    cors_origins: List[str] = Field(default=["*"])

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/playbooks.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=3600, ge=60)
    run_state_ttl: int = Field(default=86400, ge=60)  # finished runs

    # Playbook Engine
    action_timeout: float = Field(default=30.0, gt=0, le=600)
    webhook_timeout: float = Field(default=15.0, gt=0, le=600)
    max_loop_iterations: int = Field(default=1000, ge=1)
    business_timezone: str = Field(default="America/Sao_Paulo")
    scheduler_timezone: str = Field(default="UTC")
    recovery_sweep_interval: int = Field(default=60, ge=5)

    # Simulator
    simulator_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split(":///", 1)[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level: {v}")
        return level

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "forbid",
        "env_parse_none_str": "none",
    }

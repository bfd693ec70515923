"""
Configuration management using Pydantic Settings
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# config.py is at: backend/dealroom/core/config.py
# Project root is: backend/dealroom/core/../../../
_current_file = Path(__file__).resolve()
_backend_dir = _current_file.parent.parent.parent
_project_root = _backend_dir.parent
ENV_FILE = _project_root / ".env"
# Fallback: try in backend/ directory if not found in project root
if not ENV_FILE.exists():
    ENV_FILE = _backend_dir / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "DealRoom Engine"
    app_env: str = Field(default="development", description="Application environment")
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:8000",
        description="Allowed CORS origins (comma-separated)"
    )
    create_tables_on_startup: bool = Field(
        default=False,
        description="Create missing tables at startup (development; production runs alembic)"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_sqlalchemy: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    log_module_levels: Optional[str] = Field(
        default=None,
        description='Module-specific log levels (JSON string, e.g., {"dealroom.services": "DEBUG"})'
    )
    log_format: str = Field(
        default="json",
        description="Log format: 'json' for structured logging, 'text' for plain text"
    )
    log_file_enabled: bool = Field(default=False, description="Enable file logging")
    log_file_path: str = Field(
        default="logs/dealroom.log",
        description="Path to log file (relative to the working directory)"
    )
    log_file_retention: int = Field(default=30, ge=1, description="Number of days to keep log files")
    log_sensitive_data: bool = Field(
        default=False,
        description="Enable logging of sensitive data (tokens, payment references) - NOT RECOMMENDED"
    )

    # Database
    database_dsn: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy URL; takes precedence over the POSTGRES_* group"
    )
    postgres_host: Optional[str] = Field(default=None, description="PostgreSQL host")
    postgres_db: Optional[str] = Field(default=None, description="PostgreSQL database name")
    postgres_user: Optional[str] = Field(default=None, description="PostgreSQL user")
    postgres_password: Optional[str] = Field(default=None, description="PostgreSQL password")
    postgres_port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    database_pool_size: int = Field(default=20, ge=1, description="Database pool size")
    database_max_overflow: int = Field(default=10, ge=0, description="Database max overflow")

    # Money and percentages
    default_currency: str = Field(default="USD", description="ISO 4217 code used when none is given")
    money_decimal_places: int = Field(default=2, ge=0, le=8, description="Precision of stored amounts")
    percentage_decimal_places: int = Field(default=4, ge=0, le=8, description="Precision of percentages")

    # Governance policy
    allow_vote_revision: bool = Field(
        default=True,
        description="Participants may change their vote until the proposal resolves"
    )
    allow_draft_activation_override: bool = Field(
        default=True,
        description="Deal admins may activate a draft formulation without review"
    )
    strict_ownership_on_review: bool = Field(
        default=False,
        description="Refuse review submission unless ownership totals exactly 100%"
    )
    block_activation_on_negative_review: bool = Field(
        default=True,
        description="Refuse activation while any review is rejected or requests changes"
    )
    reject_over_allocation: bool = Field(
        default=True,
        description="Fail payout calculation when active rules allocate more than 100%"
    )
    concurrency_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Re-read attempts after an optimistic version conflict"
    )
    event_replay_grace_seconds: int = Field(
        default=60,
        ge=0,
        description="Age after which a never-attempted domain event is picked up by replay"
    )
    event_max_replay_attempts: int = Field(
        default=5,
        ge=1,
        description="Processing attempts after which a failing domain event is left for an operator"
    )

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are stored upper-case"""
        v = (v or "").strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"invalid currency code: {v!r}")
        return v

    @field_validator("log_format")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        v = (v or "json").strip().lower()
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @property
    def database_url(self) -> str:
        """Construct database URL"""
        if self.database_dsn:
            return self.database_dsn
        if self.postgres_host and self.postgres_db and self.postgres_user:
            return (
                f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password or ''}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
            )
        return f"sqlite:///{_project_root / 'dealroom.db'}"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

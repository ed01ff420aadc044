from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "niya.db"


class AIFailureMode(str, Enum):
    strict = "strict"
    fallback = "fallback"


class Settings(BaseSettings):
    """Unified application settings for the Niya chat gateway.

    Loads from env with support for repo ".env" files. Avoids manual load_dotenv().
    """

    _app_env = (os.getenv("APP_ENV") or "").strip().lower()
    _env_files = (
        []
        if _app_env in {"test", "ci"}
        else [
            str((Path(__file__).resolve().parents[1] / ".env")),  # apps/niya/.env
            str((Path(__file__).resolve().parents[3] / ".env")),  # repo root .env
        ]
    )

    model_config = SettingsConfigDict(
        env_file=_env_files,
        case_sensitive=False,
        extra="ignore",
    )

    # --- App / Core ---
    app_env: str = Field(default="dev", alias="APP_ENV")

    cors_allow_origins: list[str] = Field(default=["*"], alias="CORS_ALLOW_ORIGINS")

    # Database
    database_url: str = Field(default=f"sqlite:///{DEFAULT_DB_PATH}", alias="DATABASE_URL")

    # --- Auth ---
    jwt_secret: SecretStr = Field(default=SecretStr("dev-secret"), alias="NIYA_JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="NIYA_JWT_ALGORITHM")

    # --- Upstream AI service ---
    ai_service_url: str = Field(default="http://localhost:1511", alias="NIYA_AI_SERVICE_URL")
    ai_timeout_seconds: float = Field(default=25.0, alias="NIYA_AI_TIMEOUT_SECONDS", gt=0)
    ai_max_attempts: int = Field(default=2, alias="NIYA_AI_MAX_ATTEMPTS", ge=1, le=10)
    ai_retry_delay_seconds: float = Field(
        default=2.0, alias="NIYA_AI_RETRY_DELAY_SECONDS", ge=0
    )
    ai_failure_mode: AIFailureMode = Field(
        default=AIFailureMode.strict,
        alias="NIYA_AI_FAILURE_MODE",
        description="strict propagates upstream failures; fallback uses the rule-based responder.",
    )

    # Context windows sent upstream
    history_context_limit: int = Field(default=20, alias="NIYA_HISTORY_CONTEXT_LIMIT", ge=0)
    upstream_context_limit: int = Field(default=6, alias="NIYA_UPSTREAM_CONTEXT_LIMIT", ge=1)

    # --- Realtime ---
    rate_limit_max_events: int = Field(default=100, alias="NIYA_RATE_LIMIT_MAX_EVENTS", ge=1)
    rate_limit_window_seconds: float = Field(
        default=60.0, alias="NIYA_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    keepalive_seconds: float = Field(
        default=30.0,
        alias="NIYA_KEEPALIVE_SECONDS",
        ge=0,
        description="0 disables the server-wide pong broadcast.",
    )

    # Reply pacing (seconds)
    reply_initial_delay: float = Field(default=0.5, alias="NIYA_REPLY_INITIAL_DELAY", ge=0)
    segment_delay_min: float = Field(default=1.0, alias="NIYA_SEGMENT_DELAY_MIN", ge=0)
    segment_delay_max: float = Field(default=3.0, alias="NIYA_SEGMENT_DELAY_MAX", ge=0)
    segment_typing_pause: float = Field(default=0.5, alias="NIYA_SEGMENT_TYPING_PAUSE", ge=0)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Convenience singleton for modules expecting a module-level "settings"
settings = get_settings()

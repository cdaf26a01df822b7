# app/config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.core.errors import ConfigError

# .env sits next to pyproject.toml (repo root)
ENV_FILE = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(ENV_FILE, override=False)  # pre-load into the process environment


class Settings(BaseSettings):
    # ---- App / Infra ----
    APP_VERSION: str = "0.1.0"
    # Not required at class level so dry runs and tests can import settings;
    # validated at runtime via require_database().
    DATABASE_URL: Optional[str] = Field(default_factory=lambda: os.getenv("DATABASE_URL"))

    # ---- OpenAI ----
    OPENAI_API_KEY: Optional[str] = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    OPENAI_MODEL: str = "gpt-4.1-mini"

    # ---- HTTP ----
    SCRAPER_USER_AGENT: str = "CardShowFinderBot/1.0 (+https://cardshowfinder.app/bot)"

    # ---- Nominatim ----
    NOMINATIM_BASE_URL: str = "https://nominatim.openstreetmap.org/search"
    NOMINATIM_USER_AGENT: str = "CardShowFinder/1.0 (contact: ops@cardshowfinder.app)"
    NOMINATIM_RATE_LIMIT_DELAY: float = 1.0

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # ignore unrelated .env keys
    )


settings = Settings()


def require_openai() -> str:
    """
    Runtime check with a clear message when the key is missing.
    """
    if not settings.OPENAI_API_KEY:
        raise ConfigError(
            "OPENAI_API_KEY is missing. Check .env "
            f"(tried loading from: {ENV_FILE})."
        )
    return settings.OPENAI_API_KEY


def require_database() -> str:
    if not settings.DATABASE_URL:
        raise ConfigError(
            "DATABASE_URL is missing. Check .env "
            f"(tried loading from: {ENV_FILE})."
        )
    return settings.DATABASE_URL

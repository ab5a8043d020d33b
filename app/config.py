"""Configuration management for the link resolver service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from app.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    capacity = settings.CLICK_QUEUE_CAPACITY

Key Behaviours
===============
- Settings are cached after first access.
- Environment variables override defaults automatically.
- ``code_length`` combines the configured floor with the length the
  birthday bound recommends for the expected link volume.

Classes:
    Settings:  Pydantic model for all configuration values.

"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.codec import recommend_code_length


class Settings(BaseSettings):
    APP_NAME: str = "link-resolver"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://urlshortener:urlshortener@db:5432/urlshortener"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis (link projection cache)
    REDIS_URL: str = "redis://redis:6379/0"
    LINK_CACHE_TTL_SECONDS: int = 300

    # Short code generation
    SHORT_CODE_MIN_LENGTH: int = 4
    EXPECTED_URL_COUNT: int = 100_000
    MAX_COLLISION_PROBABILITY: float = 0.01
    CODE_GENERATION_MAX_ATTEMPTS: int = 5
    CUSTOM_CODE_MIN_LENGTH: int = 3
    CUSTOM_CODE_MAX_LENGTH: int = 50

    # Click ingestion
    CLICK_QUEUE_CAPACITY: int = 10_000
    CLICK_WORKER_COUNT: int = 2
    CLICK_RETENTION_DAYS: int = 365
    SESSION_COOKIE_NAME: str = "sid"

    # Geolocation collaborator
    GEO_LOOKUP_ENABLED: bool = True
    GEO_API_URL: str = "https://ipapi.co/{ip}/json/"
    GEO_TIMEOUT_SECONDS: float = 2.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @property
    def code_length(self) -> int:
        """Minimum length for generated codes."""
        recommended = recommend_code_length(self.EXPECTED_URL_COUNT, self.MAX_COLLISION_PROBABILITY)
        return max(self.SHORT_CODE_MIN_LENGTH, recommended)


@lru_cache()
def get_settings() -> Settings:
    return Settings()

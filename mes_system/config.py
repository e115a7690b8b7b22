"""Application configuration (settings and environment).

Uses pydantic-settings with .env support. Every variable is read with the
``MES_`` prefix, e.g. ``MES_STORE_BACKEND=sqlite``.
"""

from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the flow engine and its HTTP boundary."""

    # App
    app_name: str = "Battery Pack MES"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Store: "memory" (process-local dict) or "sqlite" (database_path)
    store_backend: str = "memory"
    database_path: str = "mes.sqlite3"

    # Pilot data for demos; off in tests
    seed_demo_data: bool = False

    # Year embedded in generated serials; None = current year
    serial_year: Optional[int] = None

    model_config = SettingsConfigDict(
        env_prefix="MES_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_store_backend(self) -> "Settings":
        if self.store_backend not in ("memory", "sqlite"):
            raise ValueError(
                f"store_backend must be 'memory' or 'sqlite', got: {self.store_backend!r}"
            )
        if self.store_backend == "sqlite" and not self.database_path:
            raise ValueError("database_path is required when store_backend is 'sqlite'")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings (single instance per process).

    In tests, call ``get_settings.cache_clear()`` after changing the
    environment so the next call picks up the new values.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]

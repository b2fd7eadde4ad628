"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthByte"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_url: str
    supabase_anon_key: str  # client-side key; row access is scoped by RLS
    supabase_db_url: str | None = None  # direct postgres connection for asyncpg
    patient_table: str = "Patient"
    identity_column: str = "authId"

    # --- Aggregation ---
    timezone: str = "UTC"  # IANA zone that defines calendar-day boundaries
    window_days: int = 7
    health_export_path: str | None = None  # Apple Health export.xml to preload

    # --- HTTP ---
    http_timeout_seconds: float = 10.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]

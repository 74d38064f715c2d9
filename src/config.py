"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Nightscout Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/nightscout_sync"
    database_pool_min: int = 1
    database_pool_max: int = 5

    # --- Nightscout site (initial values, editable at runtime) ---
    nightscout_enabled: bool = False
    nightscout_is_master: bool = True
    nightscout_url: str | None = None
    nightscout_port: int = 0  # 0 = use the port from the URL
    nightscout_api_secret: str | None = None  # plain text, hashed before sending
    nightscout_token: str | None = None
    nightscout_upload_sensor_start: bool = True
    nightscout_use_schedule: bool = False

    # --- Sync state ---
    sync_state_path: str | None = None  # JSON file for watermarks; memory only if unset

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()

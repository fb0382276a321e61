"""Configuration and environment settings for the budget sync server and client."""

from pydantic_settings import BaseSettings, SettingsConfigDict

DAY_SECONDS = 60 * 60 * 24


class Settings(BaseSettings):
    """Server settings for the budget sync API."""

    data_dir: str = "data"
    session_ttl_seconds: int = 7 * DAY_SECONDS
    invitation_ttl_seconds: int = 7 * DAY_SECONDS
    sse_ping_interval: float = 30.0
    subscriber_queue_size: int = 100
    tombstone_horizon_days: int = 30
    api_prefixes: list[str] = ["money", "budget", "pwa-budget"]
    default_members: list[str] = ["Family", "Me", "Partner"]
    default_sources: list[str] = ["Main", "Salary", "Bonus", "Freelance"]
    server_host: str = "127.0.0.1"
    server_port: int = 8050
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


class ClientSettings(BaseSettings):
    """Settings for the device-side sync client."""

    api_url: str = "http://127.0.0.1:8050"
    local_db_url: str = "sqlite:///budget-local.db"
    pull_interval: float = 5.0
    push_debounce: float = 0.8
    push_max_attempts: int = 4
    push_backoff_base: float = 0.5
    request_timeout: float = 10.0
    default_member: str = "Family"
    default_source: str = "Main"

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_CLIENT_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


def get_settings() -> "Settings":
    """Return an instance of the application settings."""
    return Settings()


def get_client_settings() -> "ClientSettings":
    """Return an instance of the client settings."""
    return ClientSettings()

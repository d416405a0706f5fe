"""
Store configuration.
Every value can be overridden from the environment or a .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Local replica storage."""

    model_config = SettingsConfigDict(env_prefix="TENSAI_DB_", env_file=".env", extra="ignore")

    url: str = "sqlite+aiosqlite:///tensai.db"
    echo: bool = False
    # Drop bodies of superseded revisions after every write
    auto_compaction: bool = True


class ReviewConfig(BaseSettings):
    """Review scheduling."""

    model_config = SettingsConfigDict(env_prefix="TENSAI_REVIEW_", env_file=".env", extra="ignore")

    # Build view indexes eagerly when they are (re)registered
    prefetch_views: bool = True


class SyncConfig(BaseSettings):
    """Live replication against a remote replica."""

    model_config = SettingsConfigDict(env_prefix="TENSAI_SYNC_", env_file=".env", extra="ignore")

    batch_size: int = 100
    # Backoff between retries after a replication error (seconds)
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 600.0
    # How long a caught-up replication waits for new changes per poll (seconds)
    poll_timeout: float = 25.0
    request_timeout: float = 30.0
    allowed_schemes: str = "http://,https://"

    @property
    def allowed_schemes_list(self) -> list[str]:
        """Accepted URL prefixes for remote servers."""
        return [s.strip() for s in self.allowed_schemes.split(",") if s.strip()]


class LoggingConfig(BaseSettings):
    """Logging."""

    model_config = SettingsConfigDict(env_prefix="TENSAI_LOG_", env_file=".env", extra="ignore")

    level: str = "INFO"
    format: str = "console"


class AppConfig(BaseSettings):
    """General settings."""

    model_config = SettingsConfigDict(env_prefix="TENSAI_APP_", env_file=".env", extra="ignore")

    name: str = "tensai"
    debug: bool = False


class Settings:
    """Aggregates all configuration sections."""

    def __init__(self) -> None:
        self.db = DatabaseConfig()
        self.review = ReviewConfig()
        self.sync = SyncConfig()
        self.logging = LoggingConfig()
        self.app = AppConfig()


@lru_cache
def get_settings() -> Settings:
    """Get the settings singleton (cached)."""
    return Settings()


settings = get_settings()

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - any SQLAlchemy URL
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str

    # Signing key for the session cookie
    SESSION_SECRET: str

    # Minimum seconds between two accepted posts of the same session
    RATE_LIMIT_SECONDS: float = 1.0

    # Idle lifetime of a server-side session record
    SESSION_TTL_SECONDS: float = 86400.0

    # How long a SQLite connection waits for the database lock
    DB_BUSY_TIMEOUT_SECONDS: float = 30.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()

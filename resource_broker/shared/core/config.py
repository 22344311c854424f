from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_TOKEN_CACHE_DIR = "~/.resource-broker"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the broker settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Broker configuration.
    Uses Pydantic-Settings for environment variable parsing (BROKER_ prefix) from .env.
    """

    APP_NAME: str = "resource-broker"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    TESTING: bool = False

    # Resource configuration (multi-resource JSON, or the legacy flat fields)
    RESOURCES: Optional[str] = None
    RESOURCE_ENDPOINT: Optional[str] = None
    RESOURCE_KIND: str = "sql"
    RESOURCE_SUB_RESOURCE: Optional[str] = None
    RESOURCE_AUTH_MODE: Optional[str] = None
    RESOURCE_API_KEY: Optional[str] = None

    # Shared default credential
    DEFAULT_TENANT_ID: Optional[str] = None
    DEFAULT_CLIENT_ID: Optional[str] = None
    DEFAULT_CLIENT_SECRET: Optional[str] = None
    DEFAULT_API_KEY: Optional[str] = None

    # Authentication
    AUTHORITY_HOST: str = DEFAULT_AUTHORITY_HOST
    TOKEN_CACHE_DIR: str = DEFAULT_TOKEN_CACHE_DIR
    TOKEN_REFRESH_BUFFER_SECONDS: int = 300
    INTERACTIVE_AUTH_TIMEOUT_SECONDS: float = 300.0
    TOKEN_CACHE_KDF_SALT: str = "resource-broker-token-cache"

    # Connection pools
    POOL_MIN: int = 0
    POOL_MAX: int = 10
    POOL_CONNECTION_TIMEOUT_SECONDS: float = 15.0
    POOL_IDLE_TIMEOUT_SECONDS: float = 30.0

    # Read-only query execution
    QUERY_TIMEOUT_SECONDS: float = 30.0
    QUERY_MAX_ROWS: int = 1000
    QUERY_MAX_RESPONSE_BYTES: int = 10 * 1024 * 1024

    # Bounded retry
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_MIN_WAIT_SECONDS: float = 0.1
    RETRY_MAX_WAIT_SECONDS: float = 2.0

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        self._validate_pool_config()
        self._validate_timeouts()
        return self

    def _validate_pool_config(self) -> None:
        if self.POOL_MAX < 1:
            raise ValueError("POOL_MAX must be at least 1.")
        if self.POOL_MIN < 0:
            raise ValueError("POOL_MIN must not be negative.")
        if self.POOL_MIN > self.POOL_MAX:
            raise ValueError(
                f"POOL_MIN ({self.POOL_MIN}) must not exceed POOL_MAX ({self.POOL_MAX})."
            )

    def _validate_timeouts(self) -> None:
        positive = {
            "POOL_CONNECTION_TIMEOUT_SECONDS": self.POOL_CONNECTION_TIMEOUT_SECONDS,
            "INTERACTIVE_AUTH_TIMEOUT_SECONDS": self.INTERACTIVE_AUTH_TIMEOUT_SECONDS,
            "QUERY_TIMEOUT_SECONDS": self.QUERY_TIMEOUT_SECONDS,
            "RETRY_MAX_ATTEMPTS": self.RETRY_MAX_ATTEMPTS,
            "QUERY_MAX_ROWS": self.QUERY_MAX_ROWS,
            "QUERY_MAX_RESPONSE_BYTES": self.QUERY_MAX_RESPONSE_BYTES,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive.")
        if self.TOKEN_REFRESH_BUFFER_SECONDS < 0:
            raise ValueError("TOKEN_REFRESH_BUFFER_SECONDS must not be negative.")

    @property
    def has_legacy_resource(self) -> bool:
        return bool(self.RESOURCE_ENDPOINT)

    model_config = SettingsConfigDict(
        env_prefix="BROKER_", env_file=".env", env_ignore_empty=True, extra="ignore"
    )

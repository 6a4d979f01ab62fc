"""Configuration settings for billbooks."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Flat settings read from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Hosted database (PostgREST-style REST interface)
    datastore_url: str = Field(
        default="http://localhost:54321", validation_alias="DATASTORE_URL"
    )
    datastore_key: SecretStr = Field(..., validation_alias="DATASTORE_KEY")
    datastore_schema: str = Field(default="public", validation_alias="DATASTORE_SCHEMA")
    datastore_timeout: float = Field(default=30.0, validation_alias="DATASTORE_TIMEOUT")
    datastore_max_retries: int = Field(default=3, validation_alias="DATASTORE_MAX_RETRIES")

    # Identity provider
    identity_api_url: str = Field(
        default="https://api.clerk.com", validation_alias="IDENTITY_API_URL"
    )
    identity_secret_key: SecretStr = Field(..., validation_alias="IDENTITY_SECRET_KEY")
    identity_timeout: float = Field(default=15.0, validation_alias="IDENTITY_TIMEOUT")

    # Billing behavior
    default_payment_method: str = Field(
        default="cash", validation_alias="DEFAULT_PAYMENT_METHOD"
    )
    currency_symbol: str = Field(default="₹", validation_alias="CURRENCY_SYMBOL")
    summary_window_days: int = Field(default=30, validation_alias="SUMMARY_WINDOW_DAYS")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

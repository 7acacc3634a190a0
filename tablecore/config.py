"""
Configuration settings for tablecore.

Uses Pydantic Settings to load environment variables for the PostgreSQL
connection, logging, record-engine behaviour and cross-service dispatch.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("tablecore", alias="DB_NAME")
    db_schema: str = Field("public", alias="DB_SCHEMA")
    db_statement_timeout_ms: int = Field(30_000, alias="DB_STATEMENT_TIMEOUT_MS")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Record engine
    service_name: str = Field("db", alias="SERVICE_NAME")
    service_id: int = Field(1, alias="SERVICE_ID")
    max_records_returned: int = Field(1000, alias="MAX_RECORDS_RETURNED")
    allow_upsert: bool = Field(False, alias="ALLOW_UPSERT")
    restrict_fields_to_defined: bool = Field(True, alias="RESTRICT_FIELDS_TO_DEFINED")

    # Remote dispatch
    remote_base_url: Optional[str] = Field(None, alias="REMOTE_BASE_URL")
    remote_timeout_seconds: float = Field(30.0, alias="REMOTE_TIMEOUT_SECONDS")
    remote_retry_attempts: int = Field(3, alias="REMOTE_RETRY_ATTEMPTS")
    remote_api_key: Optional[str] = Field(None, alias="REMOTE_API_KEY")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a PostgreSQL DSN string from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


__all__ = ["Settings", "get_settings", "build_dsn"]

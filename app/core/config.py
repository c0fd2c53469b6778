# app/core/config.py
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///./document_storage.db"

    # Leave the keys unset to fall back on boto3's default credential chain
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"
    aws_s3_bucket_name: str = "document-storage"
    aws_s3_endpoint_url: Optional[str] = None

    blob_key_prefix: str = "document-storage"
    blob_delete_concurrency: int = 8
    blob_timeout_seconds: float = 10.0
    blob_max_attempts: int = 3

    max_upload_size_bytes: int = 250 * 1024 * 1024

    # Signs the session cookie; set SESSION_SECRET_KEY in production
    session_secret_key: str = "dev-only-change-me"
    session_max_age_seconds: int = 14 * 24 * 60 * 60

    log_level: str = "INFO"

    # Tell pydantic-settings to load from .env at project root
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # ignore any extra stuff in .env
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()

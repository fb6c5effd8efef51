import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="IPMA_DATABASE_URL")
    database_pool_size: int = Field(10, alias="IPMA_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="IPMA_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="IPMA_DATABASE_ECHO")
    cache_path: Optional[str] = Field(None, alias="IPMA_CACHE_PATH")
    outbox_max_attempts: int = Field(5, ge=1, alias="IPMA_OUTBOX_MAX_ATTEMPTS")
    outbox_base_delay_seconds: float = Field(1.0, ge=0.0, alias="IPMA_OUTBOX_BASE_DELAY")
    outbox_max_delay_seconds: float = Field(60.0, ge=0.0, alias="IPMA_OUTBOX_MAX_DELAY")
    outbox_poll_interval_seconds: float = Field(2.0, gt=0.0, alias="IPMA_OUTBOX_POLL_INTERVAL")
    trial_days: int = Field(60, ge=1, alias="IPMA_TRIAL_DAYS")
    email_endpoint: Optional[str] = Field(None, alias="IPMA_EMAIL_ENDPOINT")
    email_api_key: Optional[str] = Field(None, alias="IPMA_EMAIL_API_KEY")
    email_from: str = Field("no-reply@ipma-prep.local", alias="IPMA_EMAIL_FROM")
    email_timeout_seconds: float = Field(10.0, gt=0.0, alias="IPMA_EMAIL_TIMEOUT")
    seed_on_empty: bool = Field(True, alias="IPMA_SEED_ON_EMPTY")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[arg-type]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc

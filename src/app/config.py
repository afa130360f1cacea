"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Monitoring
    SENTRY_DSN: str = ""

    # Bitrix24 incoming webhook, e.g. https://example.bitrix24.com/rest/1/abc123
    BITRIX_WEBHOOK_BASE: str = ""
    BITRIX_TIMEOUT: float = 15.0

    # Deal pipelines (Bitrix CATEGORY_ID)
    BITRIX_CATEGORY_STOCK: int = 2
    BITRIX_CATEGORY_PREORDER: int = 8

    # SKU -> Bitrix catalog PRODUCT_ID; unknown SKUs become free-form rows
    BITRIX_SKU_PRODUCT_MAP: dict[str, int] = {}

    # Order tags routing a deal into the pre-order pipeline (case-insensitive)
    PREORDER_TAGS: list[str] = ["pre-order", "preorder-product-added"]

    # Deal lookup bounds
    DEAL_LOOKUP_LIMIT: int = 50
    DEAL_FALLBACK_SCAN_LIMIT: int = 100

    # Webhook intake
    EVENT_STORE_MAX_EVENTS: int = 500
    WEBHOOK_MAX_BODY_BYTES: int = 5 * 1024 * 1024


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()

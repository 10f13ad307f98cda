"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("APP_ENV", "dev").lower()

# Legacy bypass key (dev only)
DEV_API_KEY = os.getenv("DEV_API_KEY") or os.getenv("API_KEY")
DEV_API_KEY_ALLOWED = ENV in {"dev", "local", "test"}

GATEWAY_SECRET_FIELDS = ("VNPAY_HASH_SECRET", "MOMO_SECRET_KEY", "MOMO_ACCESS_KEY")


class Settings(BaseSettings):
    """Environment configuration for the payments backend."""

    app_env: str = Field(default=ENV, validation_alias=AliasChoices("APP_ENV", "app_env"))
    database_url: str = "sqlite:///payments.db"
    SECRET_KEY: str = "change-me"
    DEV_API_KEY: str | None = Field(
        default=DEV_API_KEY,
        validation_alias=AliasChoices("DEV_API_KEY", "API_KEY"),
    )
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    FRONTEND_URL: str = "http://localhost:3000"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_SESSION_TIMEOUT_MINUTES: int = 30
    # Late IPNs for a lapsed VNPay session are still accepted within this margin.
    PAYMENT_EXPIRY_GRACE_MINUTES: int = 30

    # --- VNPay ----------------------------------------------------------
    VNPAY_TMN_CODE: str = "VNPAY_TEST"
    VNPAY_HASH_SECRET: str | None = None
    VNPAY_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    VNPAY_RETURN_URL: str = "http://localhost:8000/payments/vnpay/callback"
    VNPAY_VERSION: str = "2.1.0"
    VNPAY_LOCALE: str = "vn"
    VNPAY_CURRENCY: str = "VND"
    VNPAY_DEFAULT_BANK_CODE: str = "VNBANK"

    # --- Momo -----------------------------------------------------------
    MOMO_PARTNER_CODE: str = "MOMO_PARTNER_CODE_TEST"
    MOMO_ACCESS_KEY: str | None = None
    MOMO_SECRET_KEY: str | None = None
    MOMO_ENDPOINT: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    MOMO_QUERY_ENDPOINT: str | None = None
    MOMO_RETURN_URL: str = "http://localhost:8000/payments/momo/callback"
    MOMO_IPN_URL: str = "http://localhost:8000/payments/momo/ipn"
    MOMO_REQUEST_TYPE: str = "captureWallet"
    MOMO_LANG: str = "vi"
    MOMO_PARTNER_NAME: str = "Shop"
    MOMO_STORE_ID: str = "ShopStore"

    # --- Scheduler ------------------------------------------------------
    SCHEDULER_ENABLED: bool = False
    PAYMENT_SWEEP_INTERVAL_MINUTES: int = 5

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("VNPAY_HASH_SECRET", "MOMO_ACCESS_KEY", "MOMO_SECRET_KEY", "SENTRY_DSN")
    @classmethod
    def _strip_empty_secret(cls, value: str | None) -> str | None:
        """Normalise empty secrets to ``None`` for easier validation."""

        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @property
    def momo_query_endpoint(self) -> str:
        if self.MOMO_QUERY_ENDPOINT:
            return self.MOMO_QUERY_ENDPOINT
        return self.MOMO_ENDPOINT.replace("/create", "/query")


class AppInfo(BaseModel):
    name: str = "payments-backend"
    version: str = "0.1.0"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return settings


__all__ = [
    "ENV",
    "DEV_API_KEY",
    "DEV_API_KEY_ALLOWED",
    "GATEWAY_SECRET_FIELDS",
    "Settings",
    "AppInfo",
    "settings",
    "get_settings",
]

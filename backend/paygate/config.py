"""Application configuration management using Pydantic Settings."""

from typing import List
from decimal import Decimal
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # API
    API_V1_PREFIX: str = "/api"

    # CORS
    CORS_ORIGINS: List[str] = ['http://localhost:3000']

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Transaction envelope and integrity keys (base64)
    PAYMENT_ENC_KEY: str = ""  # 32 bytes, AES-256-GCM
    PAYMENT_HMAC_KEY: str = ""  # 64 bytes, HMAC-SHA256

    # Realtime channel tokens
    REALTIME_TOKEN_SECRET: str = ""
    REALTIME_TOKEN_TTL_SECONDS: int = 300

    # Card provider (Stripe)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"

    # Mobile-money provider (OPay)
    OPAY_BASE_URL: str = "https://testapi.opaycheckout.com"
    OPAY_PUBLIC_KEY: str = ""
    OPAY_MERCHANT_ID: str = ""
    OPAY_SECRET_KEY: str = ""
    OPAY_CURRENCY: str = "NGN"
    OPAY_COUNTRY: str = "NG"
    OPAY_RETURN_URL: str = "http://localhost:3000/wallet"
    OPAY_CALLBACK_URL: str = "http://localhost:8000/api/payment/webhook/opay"

    DEFAULT_PAYMENT_PROVIDER: str = "stripe"
    ENABLED_PAYMENT_PROVIDERS: List[str] = ["stripe"]

    # Amount policy
    MAX_TRANSACTION_AMOUNT: Decimal = Decimal("1000000")
    PREMIUM_UPGRADE_THRESHOLD: Decimal = Decimal("50000")

    # Settlement housekeeping
    LOCK_STALE_AFTER_SECONDS: int = 300
    PENDING_TRANSACTION_TTL_SECONDS: int = 86400  # 0 disables the sweep
    PENDING_SWEEP_INTERVAL_SECONDS: int = 600

    # Feature flags
    REQUIRE_REALTIME_CHANNEL: bool = False
    ENABLE_MANUAL_CONFIRM: bool = False

    # HTTP capabilities, resolved once at startup
    ENABLE_SECURITY_HEADERS: bool = True
    ENABLE_REQUEST_LOGGING: bool = False
    ENABLE_RATE_LIMIT: bool = True
    RATE_LIMIT_PER_MINUTE: int = 120

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("CORS_ORIGINS", "ENABLED_PAYMENT_PROVIDERS", mode="before")
    @classmethod
    def parse_json_list(cls, v) -> List[str]:
        """Parse list settings from JSON strings."""
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("MAX_TRANSACTION_AMOUNT", "PREMIUM_UPGRADE_THRESHOLD", mode="before")
    @classmethod
    def parse_decimal(cls, v) -> Decimal:
        """Parse string to Decimal for precise arithmetic."""
        if isinstance(v, str):
            return Decimal(v)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def manual_confirm_allowed(self) -> bool:
        return self.ENABLE_MANUAL_CONFIRM and not self.is_production

    def missing_production_secrets(self) -> List[str]:
        """
        List required secrets that are not configured.

        Provider credentials are only required for enabled providers.
        """
        required = {
            "PAYMENT_ENC_KEY": self.PAYMENT_ENC_KEY,
            "PAYMENT_HMAC_KEY": self.PAYMENT_HMAC_KEY,
            "REALTIME_TOKEN_SECRET": self.REALTIME_TOKEN_SECRET,
        }
        if "stripe" in self.ENABLED_PAYMENT_PROVIDERS:
            required["STRIPE_SECRET_KEY"] = self.STRIPE_SECRET_KEY
            required["STRIPE_WEBHOOK_SECRET"] = self.STRIPE_WEBHOOK_SECRET
        if "opay" in self.ENABLED_PAYMENT_PROVIDERS:
            required["OPAY_PUBLIC_KEY"] = self.OPAY_PUBLIC_KEY
            required["OPAY_MERCHANT_ID"] = self.OPAY_MERCHANT_ID
            required["OPAY_SECRET_KEY"] = self.OPAY_SECRET_KEY
        return [name for name, value in required.items() if not value]


# Global settings instance
settings = Settings()

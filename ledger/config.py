from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./gift_registry.db"

    CURRENCY: str = "CLP"
    MIN_WITHDRAWAL: int = 5000
    PROCESSING_FEE_RATE: Decimal = Decimal("0.02")
    PLATFORM_FEE_RATE: Decimal = Decimal("0.10")
    BALANCE_CACHE_ENABLED: bool = True

    GATEWAY_BASE_URL: str = "https://sandbox.payouts.example.com/v1"
    GATEWAY_API_KEY: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    MAX_GATEWAY_ATTEMPTS: int = 5
    RECONCILE_AFTER_SECONDS: int = 900

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # console or json

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

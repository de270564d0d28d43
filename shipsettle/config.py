from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./shipsettle.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Shipping Settlement Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Billing cycles are cut on local calendar days
    BILLING_TIMEZONE: str = "Asia/Kolkata"

    # GST (18% for courier services in India, split 9/9 intra-state)
    GST_RATE: Decimal = Decimal("18")
    SAC_CODE: str = "996719"
    SELLER_GSTIN: str = "06AAPCS9575E1ZR"
    INVOICE_DUE_DAYS: int = 15

    # Carrier (Delhivery) Integration
    CARRIER_API_URL: str = "https://track.delhivery.com"
    CARRIER_API_TOKEN: str = ""
    CARRIER_TIMEOUT_SECONDS: float = 30.0

    # Shipment Tracking Sync Settings
    TRACKING_SYNC_INTERVAL_HOURS: int = 4  # How often to poll the carrier
    TRACKING_SYNC_BATCH_SIZE: int = 500  # Max records per sweep
    TRACKING_FAILURE_HISTORY: int = 10  # Failed polls kept per record

    # Billing Sweeps
    CYCLE_CLOSE_INTERVAL_MINUTES: int = 60
    INVOICE_SWEEP_INTERVAL_MINUTES: int = 60

    # Optional pincode used when the order has no pickup pincode on file
    DEFAULT_ORIGIN_PINCODE: Optional[str] = None

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()

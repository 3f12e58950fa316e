from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from LEDGER_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_", env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./commission_ledger.db"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    DEFAULT_CURRENCY: str = "usd"
    DEFAULT_TIMEZONE: str = "UTC"

    # Pending phone verifications advertise unclaimed earnings for this long
    PENDING_VERIFICATION_TTL_HOURS: int = 24

    SYSTEM_PARTNER_EMAIL_DOMAIN: str = "system.thereflist.com"

    CORS_ORIGINS: list[str] = ["*"]

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("PENDING_VERIFICATION_TTL_HOURS")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("PENDING_VERIFICATION_TTL_HOURS must be positive")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""
Configuration Management Module

Settings come from ``NGNASORO_*`` environment variables or a ``.env`` file.
List values such as the reminder lead days are given as JSON, e.g.
``NGNASORO_REMINDER_LEAD_DAYS='[7, 3, 1]'``.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class NgnaSoroConfig(BaseSettings):
    """N'GNA SÔRÔ! loan repayment service configuration"""

    # Storage
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "ngnasoro.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Repayment rules
    currency: str = "XOF"  # FCFA
    late_fee_grace_days: int = 7
    late_fee_rate: str = "0.05"  # Fraction of the installment total

    # Reminder sweep
    reminder_lead_days: List[int] = [7, 3, 1]
    reminder_cron: str = "0 8 * * *"  # minute hour * * *, UTC
    reminder_dedupe_enabled: bool = True
    scheduler_enabled: bool = False

    # Notification channels
    notification_webhook_url: Optional[str] = None
    notification_webhook_timeout: int = 10
    sms_enabled: bool = False  # Logged, not sent
    email_enabled: bool = False  # Logged, not sent

    class Config:
        env_prefix = "NGNASORO_"
        env_file = ".env"
        case_sensitive = False

    @field_validator("storage_backend")
    @classmethod
    def known_backend(cls, v: str) -> str:
        if v not in ("sqlite", "memory"):
            raise ValueError("storage_backend must be 'sqlite' or 'memory'")
        return v

    @field_validator("reminder_lead_days")
    @classmethod
    def distinct_positive_leads(cls, v: List[int]) -> List[int]:
        if not v or any(days < 1 for days in v):
            raise ValueError("reminder_lead_days must be a non-empty list of positive days")
        return sorted(set(v), reverse=True)

    @field_validator("late_fee_rate")
    @classmethod
    def fractional_rate(cls, v: str) -> str:
        try:
            rate = Decimal(v)
        except InvalidOperation:
            raise ValueError(f"late_fee_rate is not a number: {v}")
        if not Decimal('0') <= rate <= Decimal('1'):
            raise ValueError("late_fee_rate must be between 0 and 1")
        return v


# Global configuration instance
config = NgnaSoroConfig()


def get_config() -> NgnaSoroConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> NgnaSoroConfig:
    """Reload configuration from environment"""
    global config
    config = NgnaSoroConfig()
    return config

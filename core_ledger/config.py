"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Core ledger service configuration"""

    # Database configuration
    database_url: str = "sqlite:///ledger.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_size: int = 5
    database_echo: bool = False

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0  # Bounded row-lock wait, surfaces as Busy
    request_timeout_seconds: float = 15.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    # Security configuration (tokens are issued by the external auth service)
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_cookie_name: str = "token"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration (base currency units)
    business_timezone: str = "UTC"  # Daily transfer window is a calendar day here
    min_withdrawal: Decimal = Decimal("100")
    max_withdrawal: Decimal = Decimal("50000")
    max_single_transfer: Decimal = Decimal("20000")
    min_balance_after_transfer: Decimal = Decimal("1000")
    daily_transfer_limit: Decimal = Decimal("50000")
    step_up_threshold: Decimal = Decimal("10000")
    max_amount: Decimal = Decimal("9999999999999.99")  # Fits NUMERIC(15, 2) columns

    # One-time code configuration
    otp_ttl_seconds: int = 300
    otp_digits: int = 6
    otp_webhook_url: str = ""  # Empty = codes stay in the development outbox
    otp_webhook_timeout: float = 5.0
    otp_webhook_token: Optional[str] = None

    # History configuration
    history_default_page_size: int = 10
    history_max_page_size: int = 100

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config

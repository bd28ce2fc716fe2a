"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///:memory:"

    # Concurrency
    lock_timeout_seconds: float = 5.0

    # Currency rates
    quote_validity_seconds: int = 300  # 5 minutes
    rate_source_url: str = ""  # Empty = static table
    rate_source_timeout: float = 2.0
    rate_source_api_key: str = ""

    # Exchange fees
    exchange_fee_rate: str = "0.005"  # 0.5%
    exchange_min_fee: str = "0.50"
    fee_currency: str = "USD"

    # Limits (valued in limit_currency)
    limit_currency: str = "USD"
    daily_transfer_limit: str = "10000.00"
    daily_withdrawal_limit: str = "5000.00"

    # Top-ups
    topup_min_amount: str = "10.00"
    topup_max_amount: str = "5000.00"
    topup_daily_limit: str = "10000.00"
    topup_monthly_limit: str = "50000.00"

    # Loans
    loan_currency: str = "EUR"
    loan_min_amount: str = "50000.00"
    loan_max_amount: str = "1000000.00"
    loan_min_term_months: int = 6
    loan_max_term_months: int = 72
    loan_base_rate: str = "5.0"  # annual percent, before amount/term adjustments

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True

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

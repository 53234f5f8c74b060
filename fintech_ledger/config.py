"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger and transfer engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/ledger.db

    # Money configuration
    default_currency: str = "USD"

    # Transfer engine configuration
    max_transfer_attempts: int = Field(3, ge=1, description="Attempts per transfer before giving up")
    retry_backoff_seconds: float = Field(0.01, ge=0)
    lock_timeout_seconds: float = Field(5.0, gt=0, description="Seconds to wait for account locks")
    account_number_length: int = Field(12, ge=6, le=32)

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    class Config:
        env_prefix = "FINTECH_LEDGER_"
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

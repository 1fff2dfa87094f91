"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""
    
    model_config = SettingsConfigDict(
        env_prefix="LOAN_LEDGER_",
        env_file=".env",
        case_sensitive=False,
    )
    
    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # memory://, sqlite:///path or postgresql://...
    
    # Calendar used for every due-date comparison
    calendar_timezone: str = "UTC"
    money_precision: int = 2
    
    # Status sweep
    sweep_time: str = "06:00"  # HH:MM in calendar_timezone
    sweep_batch_size: int = 500
    run_sweep_on_startup: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Secondary systems
    enable_audit_logging: bool = True
    enable_asset_ledger: bool = True


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

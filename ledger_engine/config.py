"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""
    
    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "ledger.db"
    storage_timeout_seconds: float = 10.0
    
    # Table names
    accounts_table: str = "accounts"
    ledger_table: str = "ledger_entries"
    transactions_table: str = "transactions"
    
    # Tenancy
    default_tenant: str = "nil"  # Used for clients that predate tenants
    require_tenant: bool = False
    
    # Business rules
    default_currency: str = "SDG"
    transfer_comment: str = "Transfer credits"
    halt_on_inconsistency: bool = True
    reconcile_min_age_seconds: int = 60  # Pending records younger than this may still be in flight
    
    # Query configuration
    default_page_size: int = 25
    max_page_size: int = 500
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
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

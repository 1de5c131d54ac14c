"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class WalletConfig(BaseSettings):
    """E-wallet ledger configuration"""

    # Store configuration
    database_path: str = "ewallet.db"  # ":memory:" for a throwaway store
    store_timeout_seconds: float = 5.0  # Longest wait for the store's write lock

    # History configuration
    history_page_size: int = 100

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # API configuration
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    class Config:
        env_prefix = "EWALLET_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WalletConfig()


def get_config() -> WalletConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletConfig:
    """Reload configuration from environment"""
    global config
    config = WalletConfig()
    return config

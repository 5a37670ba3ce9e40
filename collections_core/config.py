"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CollectionsConfig(BaseSettings):
    """Collections assignment engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///collections.db"  # or memory:// for tests
    transaction_timeout: float = 30.0  # Seconds to wait for the store's transaction lock

    # Policy configuration
    rules_path: Optional[str] = None  # If None, the packaged rules.json is used

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_metrics: bool = True
    seed_demo_data: bool = False

    # Case detail configuration
    recent_decisions_limit: int = 10

    class Config:
        env_prefix = "COLLECTIONS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CollectionsConfig()


def get_config() -> CollectionsConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CollectionsConfig:
    """Reload configuration from environment"""
    global config
    config = CollectionsConfig()
    return config

"""
imgcache Configuration
Loads YAML configuration into validated pydantic models
"""

from imgcache.config.config_loader import (
    BucketOverride,
    CircuitBreakerSettings,
    Config,
    ConfigLoader,
    FetchSettings,
    StorageSettings,
    SystemSettings,
    get_config,
    setup_logging,
)

__all__ = [
    "BucketOverride",
    "CircuitBreakerSettings",
    "Config",
    "ConfigLoader",
    "FetchSettings",
    "StorageSettings",
    "SystemSettings",
    "get_config",
    "setup_logging",
]

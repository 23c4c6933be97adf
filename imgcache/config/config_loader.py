"""
Configuration Loader for imgcache
Loads and manages configuration from YAML files
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field
from loguru import logger


class SystemSettings(BaseModel):
    """System configuration."""
    name: str = "imgcache"
    version: str = "1.0.0"
    log_level: str = "INFO"
    log_file: Optional[str] = None


class StorageSettings(BaseModel):
    """
    Storage roots.

    - persistent_root: long-lived buckets (avatar, icon); not wiped by the OS
    - temporary_root: everything else; the OS may reclaim it under pressure
    """
    persistent_root: str = str(Path.home() / ".local" / "share" / "imgcache")
    temporary_root: str = str(Path(tempfile.gettempdir()) / "imgcache")


class FetchSettings(BaseModel):
    """Network fetch configuration shared by every bucket."""
    global_concurrency: int = 6
    user_agent: str = "imgcache/1.0 (Python)"
    dns_probe_timeout: float = 4.0
    drain_timeout: float = 5.0

    # Backoff: base * 2^attempt + random[0, jitter), capped
    backoff_base_ms: int = 500
    backoff_jitter_ms: int = 500
    backoff_cap_ms: int = 15000

    # Extra response timeout granted per attempt (seconds)
    attempt_timeout_step: float = 3.0

    # A 200 OK carrying one of these extensions is treated as a captive portal page.
    # Heuristic: some APIs legitimately proxy JSON through image endpoints.
    poisoned_extensions: List[str] = [".html", ".json", ".txt", ".xml"]

    # Sniff the first byte of each body for HTML/JSON signatures
    sniff_content: bool = True


class CircuitBreakerSettings(BaseModel):
    """Per-host circuit breaker configuration."""
    failure_threshold: int = 5
    reset_seconds: float = 30.0


class BucketOverride(BaseModel):
    """
    Optional per-bucket policy overrides (durations in seconds).

    Unset fields keep the built-in policy value.
    """
    versioned_key: Optional[str] = None
    stale_after: Optional[float] = None
    max_objects: Optional[int] = None
    min_fresh: Optional[float] = None
    max_fresh: Optional[float] = None
    max_concurrent_fetches: Optional[int] = None
    response_timeout: Optional[float] = None
    stream_timeout: Optional[float] = None
    max_retry_attempts: Optional[int] = None


class Config(BaseModel):
    """Main configuration model."""
    system: SystemSettings = Field(default_factory=SystemSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    buckets: Dict[str, BucketOverride] = Field(default_factory=dict)


class ConfigLoader:
    """Configuration loader and manager."""

    _instance: Optional['ConfigLoader'] = None
    _config: Optional[Config] = None

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._config is None:
            self._config_path = config_path or self._find_config_path()
            self._load_config()

    def _find_config_path(self) -> str:
        """Find configuration file path."""
        possible_paths = [
            os.environ.get("IMGCACHE_CONFIG_PATH", ""),
            "./config/config.yaml",
            "./config.yaml",
            str(Path(__file__).parent / "config.yaml"),
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        raise FileNotFoundError("Configuration file not found")

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            with open(self._config_path, 'r', encoding='utf-8') as f:
                raw_config = yaml.safe_load(f) or {}

            self._config = Config(**raw_config)
            logger.info(f"Configuration loaded from {self._config_path}")

        except Exception as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
            self._config = Config()

    @property
    def config(self) -> Config:
        """Get configuration."""
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key."""
        keys = key.split('.')
        value = self._config

        try:
            for k in keys:
                if hasattr(value, k):
                    value = getattr(value, k)
                elif isinstance(value, dict):
                    value = value[k]
                else:
                    return default
            return value
        except (KeyError, AttributeError):
            return default

    def reload(self) -> None:
        """Reload configuration."""
        self._load_config()

    @classmethod
    def reset(cls) -> None:
        """Reset singleton instance."""
        cls._instance = None
        cls._config = None


def get_config() -> Config:
    """Get global configuration instance."""
    return ConfigLoader().config


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route loguru output to stderr (and optionally a rotating file)."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
    )
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention=5)

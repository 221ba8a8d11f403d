"""
DsasCCA Configuration Module

Pydantic v2 configuration with file/env/CLI precedence.

Usage:
    from DsasCCA.config import load_config, AppConfig

    cfg = load_config("config.yaml")
    print(cfg.cache.concurrent_api_calls)
"""

from .loader import export_config_schema, load_config, validate_config_file
from .models import (
    ApiConfig,
    AppConfig,
    CacheConfig,
    EngageConfig,
    LoggingConfig,
    ObjectStoreConfig,
    RedisConfig,
)

__all__ = [
    "load_config",
    "validate_config_file",
    "export_config_schema",
    "AppConfig",
    "EngageConfig",
    "RedisConfig",
    "ObjectStoreConfig",
    "CacheConfig",
    "ApiConfig",
    "LoggingConfig",
]

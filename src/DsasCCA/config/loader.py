# === NAVMAP v1 ===
# {
#   "module": "DsasCCA.config.loader",
#   "purpose": "Configuration Loading with File/Env/CLI Precedence.",
#   "sections": [
#     {
#       "id": "read-file",
#       "name": "_read_file",
#       "anchor": "function-read-file",
#       "kind": "function"
#     },
#     {
#       "id": "assign-nested",
#       "name": "_assign_nested",
#       "anchor": "function-assign-nested",
#       "kind": "function"
#     },
#     {
#       "id": "coerce-env-value",
#       "name": "_coerce_env_value",
#       "anchor": "function-coerce-env-value",
#       "kind": "function"
#     },
#     {
#       "id": "merge-legacy-env",
#       "name": "_merge_legacy_env",
#       "anchor": "function-merge-legacy-env",
#       "kind": "function"
#     },
#     {
#       "id": "merge-env-overrides",
#       "name": "_merge_env_overrides",
#       "anchor": "function-merge-env-overrides",
#       "kind": "function"
#     },
#     {
#       "id": "merge-cli-overrides",
#       "name": "_merge_cli_overrides",
#       "anchor": "function-merge-cli-overrides",
#       "kind": "function"
#     },
#     {
#       "id": "load-config",
#       "name": "load_config",
#       "anchor": "function-load-config",
#       "kind": "function"
#     },
#     {
#       "id": "validate-config-file",
#       "name": "validate_config_file",
#       "anchor": "function-validate-config-file",
#       "kind": "function"
#     },
#     {
#       "id": "export-config-schema",
#       "name": "export_config_schema",
#       "anchor": "function-export-config-schema",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Configuration Loading with File/Env/CLI Precedence

Implements layered config composition:
1. **.env file**: loaded into the process environment (never overriding it)
2. **File level** (YAML/JSON): base configuration
3. **Deployment variables**: the flat names used by existing deployments
   (API_USERNAME, REDIS_URL, S3_BUCKET_NAME, ...)
4. **Environment level**: DSAS_* prefixed variables
5. **CLI level**: programmatic overrides win

Prefixed variables use double-underscore notation:
  DSAS_CACHE__CONCURRENT_API_CALLS=4  →  cache.concurrent_api_calls=4
  DSAS_API__ALLOWED_ORIGINS='["https://a.example"]'  →  api.allowed_origins=[...]
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import AppConfig

_LOGGER = logging.getLogger(__name__)

# Values that must stay strings even when they look numeric.
_STRING_FIELDS = {
    "engage.username",
    "engage.password",
    "engage.probe_activity_id",
    "object_store.access_key_id",
    "object_store.secret_access_key",
    "object_store.bucket",
    "cache.fixed_staff_activity_id",
}

_LEGACY_ENV: dict[str, str] = {
    "API_USERNAME": "engage.username",
    "API_PASSWORD": "engage.password",
    "REDIS_URL": "redis.url",
    "S3_ENDPOINT": "object_store.endpoint",
    "S3_REGION": "object_store.region",
    "S3_ACCESS_KEY_ID": "object_store.access_key_id",
    "S3_SECRET_ACCESS_KEY": "object_store.secret_access_key",
    "S3_BUCKET_NAME": "object_store.bucket",
    "S3_PUBLIC_URL_PREFIX": "object_store.public_url_prefix",
    "MIN_ACTIVITY_ID_SCAN": "cache.min_activity_id",
    "MAX_ACTIVITY_ID_SCAN": "cache.max_activity_id",
    "CONCURRENT_API_CALLS": "cache.concurrent_api_calls",
    "CLUB_UPDATE_INTERVAL_MINS": "cache.club_update_interval_mins",
    "STAFF_UPDATE_INTERVAL_MINS": "cache.staff_update_interval_mins",
    "FIXED_STAFF_ACTIVITY_ID": "cache.fixed_staff_activity_id",
    "CLUB_CHECK_INTERVAL_SECONDS": "cache.club_check_interval_s",
    "STAFF_CHECK_INTERVAL_SECONDS": "cache.staff_check_interval_s",
    "PORT": "api.port",
    "ALLOWED_ORIGINS": "api.allowed_origins",
    "LOG_LEVEL": "logging.level",
}

# ============================================================================
# Helpers
# ============================================================================


def _read_file(path: str) -> dict[str, Any]:
    """
    Read YAML or JSON config file.

    Args:
        path: File path (suffix determines format: .yaml/.yml or .json)

    Returns:
        Parsed config dictionary

    Raises:
        ValueError: If file cannot be read or parsed
    """
    p = Path(path)
    if not p.exists():
        raise ValueError(f"Config file not found: {path}")

    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}") from e

    suffix = p.suffix.lower()

    if suffix in (".yaml", ".yml"):
        try:
            return yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if suffix == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    raise ValueError(f"Unsupported file format: {suffix}. Use .yaml or .json")


def _assign_nested(data: dict[str, Any], dotted_key: str, value: Any) -> None:
    """
    Assign value to nested dict using dot notation.

    Example:
        _assign_nested(data, "redis.url", "redis://cache:6379")
        → data["redis"]["url"] = "redis://cache:6379"
    """
    keys = dotted_key.split(".")
    current = data

    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value


def _coerce_env_value(dotted_key: str, value: str) -> Any:
    """
    Attempt to coerce environment variable string to appropriate type.

    Tries JSON parsing first (handles lists, dicts, bools, numbers).
    Falls back to string if JSON fails. Credential-like fields are never coerced.

    Args:
        dotted_key: Target config path
        value: Environment variable string value

    Returns:
        Parsed/coerced value
    """
    if dotted_key in _STRING_FIELDS:
        return value

    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    if value.lower() in ("true", "false"):
        return value.lower() == "true"

    return value


def _merge_legacy_env(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay the flat deployment variables (API_USERNAME, REDIS_URL, ...)."""
    for env_key, dotted_key in _LEGACY_ENV.items():
        env_value = os.environ.get(env_key)
        if env_value is None or env_value == "":
            continue
        coerced_value = _coerce_env_value(dotted_key, env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug(f"Deployment variable: {env_key} → {dotted_key}")

    return data


def _merge_env_overrides(data: dict[str, Any], env_prefix: str = "DSAS_") -> dict[str, Any]:
    """
    Overlay environment variables onto config dict.

    Looks for DSAS_* prefixed variables and maps double-underscore
    notation to nested dicts.

    Args:
        data: Base config dict (will be modified)
        env_prefix: Environment variable prefix (default: DSAS_)

    Returns:
        Modified data dict
    """
    for env_key, env_value in os.environ.items():
        if not env_key.startswith(env_prefix):
            continue

        relative_key = env_key[len(env_prefix) :].lower()
        dotted_key = relative_key.replace("__", ".")

        coerced_value = _coerce_env_value(dotted_key, env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug(f"Environment override: {env_key} → {dotted_key}")

    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Mapping[str, Any] | None
) -> dict[str, Any]:
    """
    Recursively merge CLI overrides into base config dict.

    Args:
        data: Base config dict
        cli_overrides: CLI override dict (or None)

    Returns:
        Merged dict
    """
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            data[key] = _merge_cli_overrides(data[key], value)
        else:
            data[key] = dict(value) if isinstance(value, Mapping) else value
        _LOGGER.debug(f"CLI override: {key}")

    return data


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: str | None = None,
    env_prefix: str = "DSAS_",
    cli_overrides: Mapping[str, Any] | None = None,
    *,
    dotenv: bool = True,
) -> AppConfig:
    """
    Load AppConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < deployment variables < DSAS_* variables < CLI

    Args:
        path: Path to YAML/JSON config file (optional)
        env_prefix: Environment variable prefix (default: DSAS_)
        cli_overrides: CLI overrides dict (optional)
        dotenv: Load a ``.env`` file from the working directory first

    Returns:
        Validated AppConfig instance

    Raises:
        ValueError: If config is invalid or file cannot be read
    """
    if dotenv:
        load_dotenv(override=False)

    data: dict[str, Any] = {}

    if path:
        try:
            data = _read_file(path)
            _LOGGER.info(f"Loaded config from {path}")
        except ValueError as e:
            _LOGGER.error(f"Failed to load config: {e}")
            raise

    data = _merge_legacy_env(data)
    data = _merge_env_overrides(data, env_prefix)
    data = _merge_cli_overrides(data, cli_overrides)

    try:
        config = AppConfig.model_validate(data)
    except ValueError as e:
        _LOGGER.error(f"Configuration validation failed: {e}")
        raise

    _LOGGER.info(f"Configuration validated. Config hash: {config.config_hash()[:8]}...")
    return config


def validate_config_file(path: str) -> bool:
    """
    Validate a config file, including environment overlays.

    Args:
        path: Path to config file

    Returns:
        True if valid

    Raises:
        ValueError: If invalid
    """
    load_config(path=path, dotenv=False)
    return True


def export_config_schema() -> dict[str, Any]:
    """Export JSON Schema for AppConfig."""
    return AppConfig.model_json_schema()

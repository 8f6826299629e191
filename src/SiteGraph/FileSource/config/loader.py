# === NAVMAP v1 ===
# {
#   "module": "SiteGraph.FileSource.config.loader",
#   "purpose": "Configuration loading with file/env/CLI precedence.",
#   "sections": [
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "merge-env-overrides", "name": "_merge_env_overrides", "anchor": "function-merge-env-overrides", "kind": "function"},
#     {"id": "merge-legacy-env", "name": "_merge_legacy_env", "anchor": "function-merge-legacy-env", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"},
#     {"id": "export-config-schema", "name": "export_config_schema", "anchor": "function-export-config-schema", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Configuration Loading with File/Env/CLI Precedence

Implements three-level config composition:
1. **File level** (YAML/JSON): base configuration
2. **Environment level**: SITEGRAPH_FS_* prefixed variables override file
3. **CLI level**: programmatic overrides win

Environment variables use double-underscore notation:
  SITEGRAPH_FS_DOWNLOAD__STALL_TIMEOUT_S=10  →  download.stall_timeout_s=10
  SITEGRAPH_FS_FINGERPRINT__MODE=proxy       →  fingerprint.mode="proxy"

The operator tuning knobs of the build tool are also honoured (milliseconds
where the name says TIMEOUT):
  SITEGRAPH_CONCURRENT_DOWNLOAD, SITEGRAPH_STALL_RETRY_LIMIT,
  SITEGRAPH_STALL_TIMEOUT, SITEGRAPH_CONNECTION_TIMEOUT
They apply above the file and below the SITEGRAPH_FS_* variables.

The environment is read once, here. The rest of the package only ever sees
the resulting :class:`FileSourceConfig`.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import FileSourceConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "SITEGRAPH_FS_"

# legacy variable -> (dotted key, scale)
_LEGACY_ENV = {
    "SITEGRAPH_CONCURRENT_DOWNLOAD": ("download.max_concurrent_downloads", None),
    "SITEGRAPH_STALL_RETRY_LIMIT": ("download.stall_retry_limit", None),
    "SITEGRAPH_STALL_TIMEOUT": ("download.stall_timeout_s", 1000.0),
    "SITEGRAPH_CONNECTION_TIMEOUT": ("download.connect_timeout_s", 1000.0),
}

# ============================================================================
# Helpers
# ============================================================================


def _read_file(path: str) -> dict[str, Any]:
    """
    Read YAML or JSON config file.

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
    keys = dotted_key.split(".")
    current = data
    for key in keys[:-1]:
        current = current.setdefault(key, {})
    current[keys[-1]] = value


def _coerce_env_value(value: str) -> Any:
    """
    Attempt to coerce environment variable string to appropriate type.

    Tries JSON parsing first (handles lists, dicts, bools, numbers).
    Falls back to the raw string if JSON fails.
    """
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        pass

    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    return value


def _merge_env_overrides(
    data: dict[str, Any], env: Mapping[str, str], env_prefix: str
) -> dict[str, Any]:
    for env_key, env_value in env.items():
        if not env_key.startswith(env_prefix):
            continue

        relative_key = env_key[len(env_prefix) :].lower()
        dotted_key = relative_key.replace("__", ".")
        coerced_value = _coerce_env_value(env_value)
        _assign_nested(data, dotted_key, coerced_value)
        _LOGGER.debug("Environment override: %s → %s = %r", env_key, dotted_key, coerced_value)

    return data


def _merge_legacy_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    for env_key, (dotted_key, scale) in _LEGACY_ENV.items():
        raw = env.get(env_key)
        if raw is None or not raw.strip():
            continue
        try:
            value: Any = float(raw) / scale if scale else int(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {env_key}: {raw!r}") from e
        _assign_nested(data, dotted_key, value)
        _LOGGER.debug("Environment override: %s → %s = %r", env_key, dotted_key, value)
    return data


def _merge_cli_overrides(
    data: dict[str, Any], cli_overrides: Optional[Mapping[str, Any]]
) -> dict[str, Any]:
    """Recursively merge CLI overrides into the base config dict."""
    if not cli_overrides:
        return data

    for key, value in cli_overrides.items():
        if isinstance(value, Mapping) and isinstance(data.get(key), dict):
            data[key] = _merge_cli_overrides(data[key], value)
        else:
            data[key] = value
    return data


# ============================================================================
# Public API
# ============================================================================


def load_config(
    path: Optional[str] = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_overrides: Optional[Mapping[str, Any]] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> FileSourceConfig:
    """
    Load FileSourceConfig from file, environment, and CLI with proper precedence.

    **Precedence:** file < legacy operator variables < prefixed environment < CLI

    Args:
        path: Path to YAML/JSON config file (optional)
        env_prefix: Environment variable prefix (default: SITEGRAPH_FS_)
        cli_overrides: Nested override dict (optional)
        env: Environment mapping; defaults to ``os.environ``

    Raises:
        ValueError: If the file cannot be read or an override is malformed
        pydantic.ValidationError: If the merged configuration is invalid
    """
    environment = os.environ if env is None else env
    data: dict[str, Any] = {}

    if path:
        data = _read_file(path)
        _LOGGER.info("Loaded config from %s", path)

    data = _merge_legacy_env(data, environment)
    data = _merge_env_overrides(data, environment, env_prefix)
    data = _merge_cli_overrides(data, cli_overrides)

    config = FileSourceConfig.model_validate(data)
    _LOGGER.debug("Configuration validated. Config hash: %s...", config.config_hash()[:8])
    return config


def export_config_schema() -> dict[str, Any]:
    """Return the JSON schema of :class:`FileSourceConfig`."""

    return FileSourceConfig.model_json_schema()

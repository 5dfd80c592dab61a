"""
Flight Orchestrator - Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (config/orchestrator.yaml)
  2. Per-environment overlay files (config/{FO_ENV}.yaml merged over base)
  3. Environment variable overrides (FO_ prefixed)

Usage:
    from engine.config import load_config, get_config_value

    cfg = load_config(base_path="config/orchestrator.yaml", env="prod")
    seconds = get_config_value("dispatcher.timeout_seconds", cfg, default=10)

Environment variables:
    FO_ENV          - active profile (dev, staging, prod)
    FO_CONFIG_DIR   - directory for overlay files (default: config/)
    FO_*            - overrides, one underscore per nesting level
                      (FO_RUNTIME_WORKER_THREADS=8 -> runtime.worker_threads).
                      Keys that contain underscores themselves are matched
                      against the base config before splitting further.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("flight_orchestrator.config")

DEFAULT_BASE_PATH = "config/orchestrator.yaml"


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_scalar(value: str) -> Any:
    """Parse a raw string as YAML (numbers, booleans, lists)."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """Load config/{env}.yaml. Returns empty dict if not found."""
    env = env or os.environ.get("FO_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("FO_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            with open(path) as f:
                overlay = yaml.safe_load(f) or {}
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _split_env_key(parts: list[str], shape: Any) -> list[str]:
    """
    Split FO_ variable parts into a key path, joining parts whenever the
    joined name is a key of the known config shape (e.g. worker_threads).
    """
    if not parts:
        return []
    if isinstance(shape, dict):
        for n in range(len(parts), 0, -1):
            candidate = "_".join(parts[:n])
            if candidate in shape:
                return [candidate] + _split_env_key(parts[n:], shape[candidate])
    if isinstance(shape, dict) and len(parts) > 1:
        return [parts[0]] + _split_env_key(parts[1:], {})
    return ["_".join(parts)]


def _load_env_overrides(prefix: str = "FO_", shape: dict | None = None) -> dict[str, Any]:
    """
    Load FO_ prefixed environment variables as config overrides.
    FO_ENV, FO_CONFIG_DIR, FO_VERSION and the server settings
    (FO_CONFIG, FO_HOST, FO_PORT) are meta config and excluded.
    """
    excluded = {f"{prefix}{k}" for k in ("ENV", "CONFIG_DIR", "VERSION", "CONFIG", "HOST", "PORT")}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        parts = key[len(prefix):].lower().split("_")
        path = _split_env_key(parts, shape or {})
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = DEFAULT_BASE_PATH,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (FO_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides(shape=config)
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("FO_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("journey.turnaround_seconds", cfg, 1.0)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current

"""
OpenClaw - Configuration Loader

Tiered config loading with environment profile support:

  Tier 1: Base YAML (orchestrator.yaml)
  Tier 2: Per-environment overlay files (config/{env}.yaml merged over base)
  Tier 3: Environment variable overrides (OC_* prefix)

Active environment is set via OC_ENV (default: "dev").
Config is loaded once and cached for the process lifetime.

Usage:
    from engine.config_loader import load_config, get_config

    config = load_config(env="prod", project_root=".")
    timeout = config.get("engine.run_timeout_seconds", 3600)
"""

from __future__ import annotations

import copy
import logging
import os
import yaml
from pathlib import Path
from typing import Any

from engine.exceptions import ConfigUnavailable

logger = logging.getLogger("openclaw.config")


class ConfigLoader:
    """
    Hierarchical config loader with deep merge.

    Merge order (later overrides earlier):
      1. Base YAML (orchestrator.yaml)
      2. Environment overlay (config/{env}.yaml)
      3. Environment variable overrides (OC_* prefix)
    """

    def __init__(
        self,
        env: str = "dev",
        project_root: str | Path = ".",
        base_files: list[str] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = base_files or ["orchestrator.yaml"]
        self._data: dict[str, Any] = {}
        self._source_log: list[str] = []
        self._loaded = False

    def load(self) -> dict[str, Any]:
        """Load and merge all config tiers. Returns merged dict."""
        self._data = {}
        self._source_log = []

        for base_file in self.base_files:
            base_path = self.project_root / base_file
            if base_path.exists():
                self._data = _deep_merge(self._data, _read_yaml(base_path))
                self._source_log.append(f"base:{base_file}")

        overlay_path = self.project_root / "config" / f"{self.env}.yaml"
        if overlay_path.exists():
            self._data = _deep_merge(self._data, _read_yaml(overlay_path))
            self._source_log.append(f"overlay:config/{self.env}.yaml")

        env_overrides = _load_env_overrides()
        if env_overrides:
            self._data = _deep_merge(self._data, env_overrides)
            self._source_log.append(f"env_vars({len(env_overrides)} keys)")

        self._data["_config_meta"] = {
            "env": self.env,
            "sources": self._source_log,
            "project_root": str(self.project_root),
        }

        self._loaded = True
        logger.info(
            "Config loaded: env=%s sources=%s",
            self.env, self._source_log,
        )
        return self._data

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """
        Get a value by dotted key path.

        Example: config.get("retry.backoff_base_seconds", 0.5)
        """
        if not self._loaded:
            self.load()

        current = self._data
        for k in dotted_key.split("."):
            if isinstance(current, dict) and k in current:
                current = current[k]
            else:
                return default
        return current

    def get_all(self) -> dict[str, Any]:
        """Return the full merged config dict."""
        if not self._loaded:
            self.load()
        return copy.deepcopy(self._data)

    @property
    def sources(self) -> list[str]:
        """Which config sources were loaded."""
        return list(self._source_log)

    def reload(self) -> dict[str, Any]:
        """Force reload from all tiers."""
        self._loaded = False
        return self.load()


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigUnavailable(str(path), e) from e
    if not isinstance(data, dict):
        raise ConfigUnavailable(str(path), ValueError("top-level YAML must be a mapping"))
    return data


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def _deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep merge overlay into base. Overlay values win.
    Dicts are merged recursively. Lists and scalars are replaced.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

# Mapping from OC_* env vars to config dotted paths
_ENV_MAPPINGS: dict[str, str] = {
    "OC_RETRY_BACKOFF_BASE": "retry.backoff_base_seconds",
    "OC_RETRY_BACKOFF_MAX": "retry.backoff_max_seconds",
    "OC_RETRY_JITTER": "retry.jitter",
    "OC_RUN_TIMEOUT_SECONDS": "engine.run_timeout_seconds",
    "OC_ENGINE_MAX_WORKERS": "engine.max_workers",
    "OC_ENGINE_INVOKE_WORKERS": "engine.invoke_workers",
    "OC_RUN_DB_PATH": "storage.run_db_path",
    "OC_BUDGET_DB_PATH": "storage.budget_db_path",
    "OC_CONFIG_ROOT": "storage.config_root",
    "OC_EVENT_QUEUE_SIZE": "events.queue_size",
    "OC_LOG_LEVEL": "logging.level",
    "OC_LOG_FORMAT": "logging.format",
}


def _load_env_overrides() -> dict[str, Any]:
    """
    Load OC_* environment variables and map to config paths.
    Also supports arbitrary OC_CONFIG__path__to__key for unmapped overrides.
    """
    result: dict[str, Any] = {}

    for env_key, config_path in _ENV_MAPPINGS.items():
        value = os.environ.get(env_key)
        if value is not None:
            _set_path(result, config_path, _auto_convert(value))

    # Double underscores map to dots in the config path
    for key, value in os.environ.items():
        if key.startswith("OC_CONFIG__"):
            config_path = key[len("OC_CONFIG__"):].lower().replace("__", ".")
            _set_path(result, config_path, _auto_convert(value))

    return result


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    current = target
    for k in keys[:-1]:
        current = current.setdefault(k, {})
    current[keys[-1]] = value


def _auto_convert(value: str) -> Any:
    """Convert string values to appropriate types."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


# ═══════════════════════════════════════════════════════════════════
# Singleton / Module-level Access
# ═══════════════════════════════════════════════════════════════════

_instance: ConfigLoader | None = None


def get_config(
    env: str | None = None,
    project_root: str | None = None,
) -> ConfigLoader:
    """
    Get or create the singleton config loader.
    First call initializes; subsequent calls return cached instance.
    """
    global _instance
    if _instance is None:
        _env = env or os.environ.get("OC_ENV", "dev")
        _root = project_root or os.environ.get("OC_PROJECT_ROOT", ".")
        _instance = ConfigLoader(env=_env, project_root=_root)
        _instance.load()
    return _instance


def load_config(
    env: str = "dev",
    project_root: str | Path = ".",
    base_files: list[str] | None = None,
) -> ConfigLoader:
    """Create a fresh (non-singleton) config loader."""
    loader = ConfigLoader(env=env, project_root=project_root, base_files=base_files)
    loader.load()
    return loader


def reset_config():
    """Reset singleton for testing."""
    global _instance
    _instance = None

"""
Entitlement engine runtime settings.

Loads operational knobs (cache TTL, retry budget) from
config/entitlements.yml, then applies environment variable overrides.
The tier feature table is NOT configurable here; it lives in
invow.entitlements.catalog.

Usage:
    from invow.config.entitlements import get_entitlement_settings

    settings = get_entitlement_settings()
    settings.max_retries        # 3
    settings.cache_ttl_seconds  # 300
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_CACHE_MAX_SIZE = 10000
DEFAULT_MAX_RETRIES = 3

# Environment variable -> settings field
_ENV_OVERRIDES = {
    "ENTITLEMENT_CACHE_TTL": "cache_ttl_seconds",
    "ENTITLEMENT_CACHE_MAX_SIZE": "cache_max_size",
    "ENTITLEMENT_MAX_RETRIES": "max_retries",
}


@dataclass(frozen=True)
class EntitlementSettings:
    """Immutable runtime settings for the entitlement engine."""

    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    cache_max_size: int = DEFAULT_CACHE_MAX_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES

    def __post_init__(self):
        if self.cache_ttl_seconds < 0:
            raise ValueError("cache_ttl_seconds must be >= 0")
        if self.cache_max_size < 1:
            raise ValueError("cache_max_size must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "EntitlementSettings":
        """Build settings from a dict, ignoring unknown keys."""
        known = {name: values[name] for name in cls.__dataclass_fields__ if name in values}
        return cls(**{name: _as_int(name, value) for name, value in known.items()})

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None) -> "EntitlementSettings":
        """
        Build settings from the environment, layered over base values.

        Raises:
            ValueError: If an override is not a valid integer
        """
        values = dict(base or {})
        for env_var, field_name in _ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if raw is not None and raw.strip():
                values[field_name] = _as_int(env_var, raw)
        return cls.from_mapping(values)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "EntitlementSettings":
        """
        Load settings from YAML (if present) and the environment.

        A missing file is not an error: defaults and environment apply.
        """
        path = _resolve_path(config_path)
        file_values: Dict[str, Any] = {}
        if path is not None:
            logger.info("Loading entitlement settings from %s", path)
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
            file_values = raw.get("entitlements", raw)
        return cls.from_env(file_values)


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Entitlement settings not found: {path}")
        return path

    env_path = os.getenv("ENTITLEMENT_CONFIG_PATH")
    candidates = [Path(env_path)] if env_path else []
    candidates += [
        # From backend/ directory (typical working dir)
        Path(__file__).parent.parent.parent.parent / "config" / "entitlements.yml",
        Path(os.getcwd()) / "config" / "entitlements.yml",
        Path(os.getcwd()) / ".." / "config" / "entitlements.yml",
    ]
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved.exists():
            return resolved
    return None


# Module-level singleton
_settings: Optional[EntitlementSettings] = None
_settings_lock = Lock()


def get_entitlement_settings() -> EntitlementSettings:
    """Get the process-wide EntitlementSettings, loading on first use."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = EntitlementSettings.load()
    return _settings


def reset_entitlement_settings() -> None:
    """Forget loaded settings so the next call re-reads file and environment."""
    global _settings
    with _settings_lock:
        _settings = None

"""
Configuration management and loading.

Handles application settings from YAML and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from auth_billing.core.aggregation import SUCCESS_CODE
from auth_billing.core.statements import (
    DEFAULT_VALID_CODES,
    MAX_PAGE_SIZE,
    THREE_FACTOR_MODE,
    TWO_FACTOR_MODE,
)
from auth_billing.storage.db import DEFAULT_DB_PATH
from auth_billing.storage.repository import ALLOWED_EVENT_TABLES

VALID_CODES_ENV = "AUTH_BILLING_VALID_RESULT_CODES"


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the authentication log store."""
    path: str = DEFAULT_DB_PATH
    events_table: str = "t_service_log"

    def __post_init__(self):
        """Validate the events table against the allow-list."""
        if not self.path:
            raise ValueError("database path cannot be empty")
        if self.events_table not in ALLOWED_EVENT_TABLES:
            raise ValueError(
                f"events_table must be one of: {sorted(ALLOWED_EVENT_TABLES)}"
            )


@dataclass(frozen=True)
class ResultCodeConfig:
    """Result code classification shared by every view."""
    success: str = SUCCESS_CODE
    valid: Tuple[str, ...] = DEFAULT_VALID_CODES

    def __post_init__(self):
        """Validate the allow-list is non-empty."""
        if not self.valid:
            raise ValueError("valid result codes cannot be empty")


@dataclass(frozen=True)
class AuthModeConfig:
    """Auth mode values identifying the two billing tiers."""
    two_factor: str = TWO_FACTOR_MODE
    three_factor: str = THREE_FACTOR_MODE

    def __post_init__(self):
        """Validate the tiers are distinct."""
        if self.two_factor == self.three_factor:
            raise ValueError("two_factor and three_factor auth modes must differ")


@dataclass(frozen=True)
class CacheConfig:
    """Time-to-live per cached view, in milliseconds. ``0`` disables caching."""
    billing_ttl_ms: int = 60 * 60 * 1000
    reconciliation_ttl_ms: int = 30 * 60 * 1000
    org_stats_ttl_ms: int = 0
    call_stats_ttl_ms: int = 0
    query_ttl_ms: int = 0
    single_flight: bool = False
    slow_query_ms: int = 1000

    def __post_init__(self):
        """Validate TTL values are not negative."""
        for name in (
            "billing_ttl_ms",
            "reconciliation_ttl_ms",
            "org_stats_ttl_ms",
            "call_stats_ttl_ms",
            "query_ttl_ms",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.slow_query_ms <= 0:
            raise ValueError("slow_query_ms must be > 0")


@dataclass(frozen=True)
class PaginationConfig:
    """Reconciliation page size defaults and bounds."""
    default_page_size: int = 20
    max_page_size: int = MAX_PAGE_SIZE

    def __post_init__(self):
        """Validate the default falls within the bounds."""
        if self.max_page_size < 1:
            raise ValueError("max_page_size must be >= 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            raise ValueError("default_page_size must be between 1 and max_page_size")


@dataclass(frozen=True)
class Settings:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    result_codes: ResultCodeConfig = field(default_factory=ResultCodeConfig)
    auth_modes: AuthModeConfig = field(default_factory=AuthModeConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    pagination: PaginationConfig = field(default_factory=PaginationConfig)


_SECTIONS = {
    "database": (DatabaseConfig, {"path": str, "events_table": str}),
    "result_codes": (ResultCodeConfig, {"success": str, "valid": list}),
    "auth_modes": (AuthModeConfig, {"two_factor": str, "three_factor": str}),
    "cache": (CacheConfig, {
        "billing_ttl_ms": int,
        "reconciliation_ttl_ms": int,
        "org_stats_ttl_ms": int,
        "call_stats_ttl_ms": int,
        "query_ttl_ms": int,
        "single_flight": bool,
        "slow_query_ms": int,
    }),
    "pagination": (PaginationConfig, {"default_page_size": int, "max_page_size": int}),
}


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional; omitted values fall back to defaults. Unknown
    keys are rejected so typos never silently change billing behavior.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return _apply_env_overrides(Settings())

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config[name])
        for name in _SECTIONS
        if name in raw_config
    }
    return _apply_env_overrides(Settings(**sections))


def _parse_section(name: str, data: Any):
    """Parse one configuration section into its dataclass.

    Args:
        name: Section name, used in error messages
        data: Raw section data

    Returns:
        The section's frozen dataclass

    Raises:
        ValueError: If the section is malformed
    """
    cls, schema = _SECTIONS[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        expected = schema[key]
        if expected is str:
            # YAML reads bare codes such as 0 as integers
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                raise ValueError(f"'{key}' in {name} must be a string")
            values[key] = str(value)
        elif expected is list:
            if not isinstance(value, list):
                raise ValueError(f"'{key}' in {name} must be a list")
            values[key] = tuple(str(item).strip() for item in value)
        elif expected is bool:
            if not isinstance(value, bool):
                raise ValueError(f"'{key}' in {name} must be true or false")
            values[key] = value
        else:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{key}' in {name} must be an integer")
            values[key] = value

    return cls(**values)


def _apply_env_overrides(settings: Settings) -> Settings:
    """Override the valid result codes from the environment if set."""
    raw = os.environ.get(VALID_CODES_ENV)
    if not raw:
        return settings
    codes = tuple(code.strip() for code in raw.split(",") if code.strip())
    return replace(settings, result_codes=replace(settings.result_codes, valid=codes))

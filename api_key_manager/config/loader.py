"""
Configuration management and loading.

Handles storage, billing, aggregation and lifecycle settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..storage.db import DEFAULT_DB_PATH

BUCKET_WIDTHS = {
    "1m": timedelta(minutes=1),
    "1h": timedelta(hours=1),
    "1d": timedelta(days=1),
}

GROUP_BY_FIELDS = ("workspace_id", "api_key_id", "description")


@dataclass(frozen=True)
class StorageConfig:
    """Where persisted state lives."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class BillingConfig:
    """Connection settings for the remote billing API."""
    base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    timeout_seconds: float = 30.0
    page_limit: int = 31
    group_by: Tuple[str, ...] = ("workspace_id", "description")

    def __post_init__(self):
        """Validate billing values."""
        if self.timeout_seconds <= 0:
            raise ValueError("billing.timeout_seconds must be > 0")
        if not 1 <= self.page_limit <= 31:
            raise ValueError("billing.page_limit must be between 1 and 31")
        unknown = set(self.group_by) - set(GROUP_BY_FIELDS)
        if unknown:
            raise ValueError(f"billing.group_by has unknown fields: {sorted(unknown)}")
        if "description" not in self.group_by:
            raise ValueError("billing.group_by must include 'description'")


@dataclass(frozen=True)
class AggregationConfig:
    """Cost polling cadence and retry budget."""
    interval_seconds: float = 3600.0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    lookback_days: int = 31
    bucket_width: str = "1d"
    min_manual_interval_seconds: float = 0.0

    def __post_init__(self):
        """Validate aggregation values."""
        if self.interval_seconds <= 0:
            raise ValueError("aggregation.interval_seconds must be > 0")
        if self.max_attempts < 1:
            raise ValueError("aggregation.max_attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ValueError("aggregation.backoff_base_seconds must be >= 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("aggregation.backoff_max_seconds must be >= backoff_base_seconds")
        if self.lookback_days < 1:
            raise ValueError("aggregation.lookback_days must be >= 1")
        if self.bucket_width not in BUCKET_WIDTHS:
            raise ValueError(f"aggregation.bucket_width must be one of: {list(BUCKET_WIDTHS)}")
        if self.min_manual_interval_seconds < 0:
            raise ValueError("aggregation.min_manual_interval_seconds must be >= 0")

    @property
    def bucket(self) -> timedelta:
        return BUCKET_WIDTHS[self.bucket_width]


@dataclass(frozen=True)
class LifecycleConfig:
    """Retirement and deletion policy.

    ``None`` disables the corresponding automatic transition; there are
    no built-in TTLs.
    """
    retirement_ttl_seconds: Optional[float] = None
    deletion_grace_seconds: Optional[float] = None
    scan_interval_seconds: Optional[float] = None

    def __post_init__(self):
        """Validate lifecycle values."""
        if self.retirement_ttl_seconds is not None and self.retirement_ttl_seconds < 0:
            raise ValueError("lifecycle.retirement_ttl_seconds must be >= 0")
        if self.deletion_grace_seconds is not None and self.deletion_grace_seconds < 0:
            raise ValueError("lifecycle.deletion_grace_seconds must be >= 0")
        if self.scan_interval_seconds is not None and self.scan_interval_seconds <= 0:
            raise ValueError("lifecycle.scan_interval_seconds must be > 0")


@dataclass(frozen=True)
class ManagerConfig:
    """Complete manager configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)

    @classmethod
    def defaults(cls) -> "ManagerConfig":
        return cls()


_SECTION_KEYS = {
    "storage": {"db_path"},
    "billing": {"base_url", "api_version", "timeout_seconds", "page_limit", "group_by"},
    "aggregation": {
        "interval_seconds",
        "max_attempts",
        "backoff_base_seconds",
        "backoff_max_seconds",
        "lookback_days",
        "bucket_width",
        "min_manual_interval_seconds",
    },
    "lifecycle": {"retirement_ttl_seconds", "deletion_grace_seconds", "scan_interval_seconds"},
}

_INT_KEYS = {"page_limit", "max_attempts", "lookback_days"}
_STR_KEYS = {"db_path", "base_url", "api_version", "bucket_width"}
_NULLABLE_KEYS = {"retirement_ttl_seconds", "deletion_grace_seconds", "scan_interval_seconds"}


def load_manager_config(path: Optional[str] = None) -> ManagerConfig:
    """Load and validate manager configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys
    and wrongly typed values are rejected.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated ManagerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return ManagerConfig.defaults()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Manager config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(raw_config.get(name) or {}, name)
        for name in _SECTION_KEYS
    }

    billing = dict(sections["billing"])
    if "group_by" in billing:
        billing["group_by"] = tuple(billing["group_by"])

    return ManagerConfig(
        storage=StorageConfig(**sections["storage"]),
        billing=BillingConfig(**billing),
        aggregation=AggregationConfig(**sections["aggregation"]),
        lifecycle=LifecycleConfig(**sections["lifecycle"]),
    )


def _parse_section(data: Any, section: str) -> Dict[str, Any]:
    """Type-check one configuration section.

    Args:
        data: Raw section data
        section: Section name for error messages

    Returns:
        Keyword arguments for the section's dataclass

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{section}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[section]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {section}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        where = f"{section}.{key}"
        if value is None:
            if key not in _NULLABLE_KEYS:
                raise ValueError(f"'{where}' must not be null")
            parsed[key] = None
        elif key in _STR_KEYS:
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"'{where}' must be a non-empty string")
            parsed[key] = value
        elif key == "group_by":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"'{where}' must be a list of strings")
            parsed[key] = value
        elif key in _INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"'{where}' must be an integer")
            parsed[key] = value
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{where}' must be a number")
            parsed[key] = float(value)
    return parsed

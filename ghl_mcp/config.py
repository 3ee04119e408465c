from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

CONFIG_ENV_VAR = "GHL_MCP_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "locations.yaml"
ENV_PREFIX = "ENV:"


def config_path_from_env() -> Path:
    return Path(os.getenv(CONFIG_ENV_VAR, str(DEFAULT_CONFIG_PATH)))


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    path = Path(path) if path is not None else config_path_from_env()
    if not path.exists():
        raise ConfigError(f"GHL MCP config not found at {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping")
    return data


def resolve_env_value(value: Any) -> Any:
    """Resolve ``ENV:NAME`` markers from the process environment."""
    if isinstance(value, str) and value.startswith(ENV_PREFIX):
        key = value[len(ENV_PREFIX):]
        resolved = os.getenv(key)
        if not resolved:
            raise ConfigError(f"Environment variable {key} not set")
        return resolved
    return value


@dataclass(frozen=True)
class Thresholds:
    stale_lead_hours: float = 48
    stuck_opportunity_days: float = 7
    slow_response_minutes: float = 30

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Thresholds":
        data = data or {}
        values: Dict[str, float] = {}
        for f in fields(cls):
            raw = data.get(f.name, f.default)
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise ConfigError(f"Threshold {f.name} must be a number, got {raw!r}") from None
            if value < 0:
                raise ConfigError(f"Threshold {f.name} must not be negative")
            values[f.name] = value
        return cls(**values)


@dataclass(frozen=True)
class LocationConfig:
    name: str
    alias: str
    token: str
    location_id: str
    thresholds: Thresholds = field(default_factory=Thresholds)

    @classmethod
    def from_dict(cls, alias: str, data: Dict[str, Any]) -> "LocationConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"Location '{alias}' must be a mapping")
        token = resolve_env_value(data.get("token"))
        location_id = resolve_env_value(data.get("locationId") or data.get("location_id"))
        if not token:
            raise ConfigError(f"Location '{alias}' is missing a token")
        if not location_id:
            raise ConfigError(f"Location '{alias}' is missing a locationId")
        return cls(
            name=str(data.get("name") or alias),
            alias=str(data.get("alias") or alias),
            token=str(token),
            location_id=str(location_id),
            thresholds=Thresholds.from_dict(data.get("thresholds")),
        )


def get_location(config: Dict[str, Any], alias: str = "main") -> LocationConfig:
    locations = config.get("locations") or {}
    if alias not in locations:
        raise ConfigError(f"Location '{alias}' not found in config")
    return LocationConfig.from_dict(alias, locations[alias])

"""
Engine configuration.

Resolution order (later wins):
1. Built-in defaults
2. YAML file named by OFFICE_OPS_CONFIG (if it exists)
3. OFFICE_OPS_* environment variables

Example YAML:

    retention_window_days: 90
    guest_access_days: 30
    expiry_tick_interval_seconds: 86400
    expiry_tick_timeout_seconds: 60
    client_cascade: detach
    state_dir: data/office_ops
    notification_webhook_url: https://hooks.example.com/notify
    scanner_enabled: true
"""

import logging
import os
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

logger = logging.getLogger("policy_config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_RETENTION_WINDOW_DAYS = 90
DEFAULT_GUEST_ACCESS_DAYS = 30
DEFAULT_EXPIRY_TICK_INTERVAL_SECONDS = 24 * 60 * 60
DEFAULT_EXPIRY_TICK_TIMEOUT_SECONDS = 60.0

CONFIG_PATH_ENV = "OFFICE_OPS_CONFIG"

ENV_OVERRIDES = {
    "OFFICE_OPS_RETENTION_DAYS": "retention_window_days",
    "OFFICE_OPS_GUEST_ACCESS_DAYS": "guest_access_days",
    "OFFICE_OPS_EXPIRY_INTERVAL_SECONDS": "expiry_tick_interval_seconds",
    "OFFICE_OPS_EXPIRY_TIMEOUT_SECONDS": "expiry_tick_timeout_seconds",
    "OFFICE_OPS_CLIENT_CASCADE": "client_cascade",
    "OFFICE_OPS_STATE_DIR": "state_dir",
    "OFFICE_OPS_NOTIFICATION_WEBHOOK": "notification_webhook_url",
    "OFFICE_OPS_SCANNER_ENABLED": "scanner_enabled",
}


class ClientCascade(str, Enum):
    """What happens to a guest client's tasks when the client is deleted."""
    DETACH = "detach"
    DELETE = "delete"


@dataclass(frozen=True)
class EngineConfig:
    retention_window_days: int = DEFAULT_RETENTION_WINDOW_DAYS
    guest_access_days: int = DEFAULT_GUEST_ACCESS_DAYS
    expiry_tick_interval_seconds: int = DEFAULT_EXPIRY_TICK_INTERVAL_SECONDS
    expiry_tick_timeout_seconds: float = DEFAULT_EXPIRY_TICK_TIMEOUT_SECONDS
    client_cascade: ClientCascade = ClientCascade.DETACH
    state_dir: Optional[Path] = None
    notification_webhook_url: Optional[str] = None
    scanner_enabled: bool = True

    def __post_init__(self):
        if self.retention_window_days < 0:
            raise ValueError(f"retention_window_days cannot be negative: {self.retention_window_days}")
        if self.guest_access_days <= 0:
            raise ValueError(f"guest_access_days must be positive: {self.guest_access_days}")
        if self.expiry_tick_interval_seconds <= 0:
            raise ValueError(f"expiry_tick_interval_seconds must be positive: {self.expiry_tick_interval_seconds}")
        if self.expiry_tick_timeout_seconds <= 0:
            raise ValueError(f"expiry_tick_timeout_seconds must be positive: {self.expiry_tick_timeout_seconds}")

    @property
    def retention_window(self) -> timedelta:
        return timedelta(days=self.retention_window_days)

    @property
    def guest_access_window(self) -> timedelta:
        return timedelta(days=self.guest_access_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retention_window_days": self.retention_window_days,
            "guest_access_days": self.guest_access_days,
            "expiry_tick_interval_seconds": self.expiry_tick_interval_seconds,
            "expiry_tick_timeout_seconds": self.expiry_tick_timeout_seconds,
            "client_cascade": self.client_cascade.value,
            "state_dir": str(self.state_dir) if self.state_dir else None,
            "notification_webhook_url": self.notification_webhook_url,
            "scanner_enabled": self.scanner_enabled,
        }


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    """Convert raw YAML/env values to the types EngineConfig expects."""
    coerced: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            coerced[key] = None
        elif key in ("retention_window_days", "guest_access_days", "expiry_tick_interval_seconds"):
            coerced[key] = int(value)
        elif key == "expiry_tick_timeout_seconds":
            coerced[key] = float(value)
        elif key == "client_cascade":
            coerced[key] = ClientCascade(str(value).strip().lower())
        elif key == "state_dir":
            coerced[key] = Path(value)
        elif key == "scanner_enabled":
            coerced[key] = _parse_bool(value)
        else:
            coerced[key] = value
    return coerced


def read_yaml_config(path: Path) -> Dict[str, Any]:
    """Read a YAML config file. Unknown keys are rejected."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = set(EngineConfig.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {sorted(unknown)}")
    return data


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> EngineConfig:
    """Build the engine config from defaults, YAML file, and environment."""
    env = os.environ if environ is None else environ
    config = EngineConfig()

    config_path = path or (Path(env[CONFIG_PATH_ENV]) if env.get(CONFIG_PATH_ENV) else None)
    if config_path is not None:
        if config_path.exists():
            config = replace(config, **_coerce(read_yaml_config(config_path)))
            logger.info(f"Loaded engine config from {config_path}")
        else:
            logger.warning(f"Config file not found, using defaults: {config_path}")

    overrides = {
        field_name: env[env_name]
        for env_name, field_name in ENV_OVERRIDES.items()
        if env.get(env_name)
    }
    if overrides:
        config = replace(config, **_coerce(overrides))

    return config

"""
Configuration Marshal
=====================

Serializes the application options and the device list to YAML and back.
The serialized form is stored as versioned snapshots in the repository
(``etc/<appname>.conf.<n>``), so every configuration change is kept.

Features:
- AppConfig runtime options with clone-on-read access (Options)
- Per-device persisted record (DevConfig) including dialog attributes
- Round-trippable YAML dump/load with PyYAML
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import yaml

from .error_handling import ConfigError
from .models import DevAttributes

# Configure logging
logger = logging.getLogger(__name__)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.isoformat()


def _parse_time(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ConfigError(f"bad timestamp '{value}': {e}") from e


@dataclass
class ChangeMeta:
    """Who changed a record, from where and when."""
    by: str = ""
    source: str = ""
    when: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"by": self.by, "from": self.source, "when": _format_time(self.when)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChangeMeta":
        data = data or {}
        return cls(by=str(data.get("by", "") or ""),
                   source=str(data.get("from", "") or ""),
                   when=_parse_time(data.get("when")))

    @classmethod
    def now(cls, by: str, source: str) -> "ChangeMeta":
        return cls(by=by, source=source, when=datetime.now(timezone.utc))


@dataclass
class AppConfig:
    """Runtime options. Durations in seconds."""
    scan_interval: float = 600.0
    holdtime: float = 3600.0
    max_config_files: int = 120
    max_concurrency: int = 20
    last_change: ChangeMeta = field(default_factory=ChangeMeta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_interval": float(self.scan_interval),
            "holdtime": float(self.holdtime),
            "max_config_files": int(self.max_config_files),
            "max_concurrency": int(self.max_concurrency),
            "last_change": self.last_change.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AppConfig":
        data = data or {}
        default = cls()
        try:
            return cls(
                scan_interval=float(data.get("scan_interval", default.scan_interval)),
                holdtime=float(data.get("holdtime", default.holdtime)),
                max_config_files=int(data.get("max_config_files", default.max_config_files)),
                max_concurrency=int(data.get("max_concurrency", default.max_concurrency)),
                last_change=ChangeMeta.from_dict(data.get("last_change")),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"bad options: {e}") from e


class Options:
    """Thread-safe holder for AppConfig; every get returns a private copy."""

    def __init__(self, config: Optional[AppConfig] = None):
        self._options = copy.deepcopy(config) if config else AppConfig()
        self._lock = threading.Lock()

    def get(self) -> AppConfig:
        with self._lock:
            return copy.deepcopy(self._options)

    def set(self, config: AppConfig):
        with self._lock:
            self._options = copy.deepcopy(config)


@dataclass
class DevConfig:
    """Persisted part of a device."""
    model: str
    id: str
    host_port: str
    transports: str = "ssh,telnet"
    login_user: str = ""
    login_password: str = ""
    enable_password: str = ""
    debug: bool = False
    deleted: bool = False
    last_change: ChangeMeta = field(default_factory=ChangeMeta)
    attr: DevAttributes = field(default_factory=DevAttributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "id": self.id,
            "host_port": self.host_port,
            "transports": self.transports,
            "login_user": self.login_user,
            "login_password": self.login_password,
            "enable_password": self.enable_password,
            "debug": self.debug,
            "deleted": self.deleted,
            "last_change": self.last_change.to_dict(),
            "attr": self.attr.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevConfig":
        try:
            return cls(
                model=str(data["model"]),
                id=str(data["id"]),
                host_port=str(data.get("host_port", "")),
                transports=str(data.get("transports", "")),
                login_user=str(data.get("login_user", "") or ""),
                login_password=str(data.get("login_password", "") or ""),
                enable_password=str(data.get("enable_password", "") or ""),
                debug=bool(data.get("debug", False)),
                deleted=bool(data.get("deleted", False)),
                last_change=ChangeMeta.from_dict(data.get("last_change")),
                attr=DevAttributes.from_dict(data.get("attr")),
            )
        except KeyError as e:
            raise ConfigError(f"device record missing field: {e}") from e
        except TypeError as e:
            raise ConfigError(f"bad device record: {e}") from e


@dataclass
class ConfigFile:
    """Whole configuration: options plus device list."""
    options: AppConfig = field(default_factory=AppConfig)
    devices: List[DevConfig] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "options": self.options.to_dict(),
            "devices": [d.to_dict() for d in self.devices],
        }

    def dump(self) -> str:
        """Serialize to YAML text."""
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False,
                              allow_unicode=True)

    @classmethod
    def load(cls, text: str) -> "ConfigFile":
        """Parse YAML text produced by dump."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"config load: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"config load: top level must be a mapping, got {type(data).__name__}")

        devices = data.get("devices") or []
        if not isinstance(devices, list):
            raise ConfigError("config load: 'devices' must be a list")

        return cls(
            options=AppConfig.from_dict(data.get("options")),
            devices=[DevConfig.from_dict(d) for d in devices],
        )

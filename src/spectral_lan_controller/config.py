"""Configuration loading for the Spectral LAN controller."""

from __future__ import annotations

import argparse
import ipaddress
import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple


CONFIG_ENV_PREFIX = "SPECTRAL_LAN_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Fixture paths tried in order when a room needs its profile downloaded.
DEFAULT_PROFILE_PATHS = ("/data/profile.json", "/data/data.xlsx")
DEFAULT_DISCOVERY_MODEL_KEYWORDS = ("FluorTronix", "ESP8266")


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "spectral-lan-controller" / "controller.sqlite3"


@dataclass(frozen=True)
class ManualDevice:
    """User-specified fixture to pair at startup."""

    id: str
    ip: str
    name: Optional[str] = None
    model: Optional[str] = None


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_port: int = 8000
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    db_path: Path = _default_db_path()
    manual_devices: Sequence[ManualDevice] = ()
    device_http_port: int = 80
    device_connect_timeout: float = 5.0
    device_read_timeout: float = 10.0
    device_command_timeout: float = 12.0
    slider_debounce_seconds: float = 0.3
    slider_send_retries: int = 1
    slider_retry_delay: float = 0.1
    monitor_enabled: bool = True
    monitor_interval: float = 5.0
    monitor_offline_interval: float = 10.0
    restore_default_pwm: int = 128
    profile_paths: Sequence[str] = DEFAULT_PROFILE_PATHS
    discovery_subnets: Sequence[str] = ()
    discovery_on_start: bool = False
    discovery_concurrency: int = 32
    discovery_timeout: float = 1.5
    discovery_max_hosts: int = 254
    discovery_model_keywords: Sequence[str] = DEFAULT_DISCOVERY_MODEL_KEYWORDS
    repair_interval: float = 60.0
    repair_backoff_base: float = 1.0
    repair_backoff_factor: float = 2.0
    repair_backoff_max: float = 60.0
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    link_log_level: Optional[str] = None
    rooms_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        masked_keys = {
            "api_key": "***REDACTED***" if self.api_key else None,
            "api_bearer_token": "***REDACTED***" if self.api_bearer_token else None,
        }
        manual_devices = [
            {"id": device.id, "ip": device.ip, "name": device.name, "model": device.model}
            for device in self.manual_devices
        ]
        base: Dict[str, Any] = {
            "config_version": self.config_version,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "db_path": str(self.db_path),
            "manual_devices": manual_devices,
            "device_http_port": self.device_http_port,
            "device_connect_timeout": self.device_connect_timeout,
            "device_read_timeout": self.device_read_timeout,
            "device_command_timeout": self.device_command_timeout,
            "slider_debounce_seconds": self.slider_debounce_seconds,
            "slider_send_retries": self.slider_send_retries,
            "slider_retry_delay": self.slider_retry_delay,
            "monitor_enabled": self.monitor_enabled,
            "monitor_interval": self.monitor_interval,
            "monitor_offline_interval": self.monitor_offline_interval,
            "restore_default_pwm": self.restore_default_pwm,
            "profile_paths": list(self.profile_paths),
            "discovery_subnets": list(self.discovery_subnets),
            "discovery_on_start": self.discovery_on_start,
            "discovery_concurrency": self.discovery_concurrency,
            "discovery_timeout": self.discovery_timeout,
            "discovery_max_hosts": self.discovery_max_hosts,
            "discovery_model_keywords": list(self.discovery_model_keywords),
            "repair_interval": self.repair_interval,
            "repair_backoff_base": self.repair_backoff_base,
            "repair_backoff_factor": self.repair_backoff_factor,
            "repair_backoff_max": self.repair_backoff_max,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "link_log_level": self.link_log_level,
            "rooms_log_level": self.rooms_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
            "dry_run": self.dry_run,
        }
        base.update(masked_keys)
        return base

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        config_path: Optional[Path] = args.config
        env_path = os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG")
        if config_path is None and env_path:
            config_path = _coerce_path(env_path)
        file_config = _load_file_config(config_path)
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("device_http_port", config.device_http_port, 1, 65535)
    _validate_range("device_connect_timeout", config.device_connect_timeout, 0.1, 120.0)
    _validate_range("device_read_timeout", config.device_read_timeout, 0.1, 300.0)
    _validate_range("device_command_timeout", config.device_command_timeout, 0.1, 600.0)
    _validate_range("slider_debounce_seconds", config.slider_debounce_seconds, 0.0, 10.0)
    _validate_range("slider_send_retries", config.slider_send_retries, 0, 5)
    _validate_range("slider_retry_delay", config.slider_retry_delay, 0.0, 5.0)
    _validate_range("monitor_interval", config.monitor_interval, 0.01, 3600.0)
    _validate_range("monitor_offline_interval", config.monitor_offline_interval, 0.01, 3600.0)
    _validate_range("restore_default_pwm", config.restore_default_pwm, 0, 255)
    _validate_range("discovery_concurrency", config.discovery_concurrency, 1, 256)
    _validate_range("discovery_timeout", config.discovery_timeout, 0.1, 30.0)
    _validate_range("discovery_max_hosts", config.discovery_max_hosts, 1, 65536)
    _validate_range("repair_interval", config.repair_interval, 0.0, 86400.0)
    _validate_range("repair_backoff_base", config.repair_backoff_base, 0.0, 300.0)
    _validate_range("repair_backoff_factor", config.repair_backoff_factor, 1.0, 10.0)
    _validate_range("repair_backoff_max", config.repair_backoff_max, 0.1, 3600.0)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("link_log_level", config.link_log_level),
        ("rooms_log_level", config.rooms_log_level),
        ("api_log_level", config.api_log_level),
    ):
        _validate_log_level_value(value, field_name)
    for path in config.profile_paths:
        if not path.startswith("/"):
            raise ValueError(f"profile_paths entries must be absolute paths; got {path}.")
    for subnet in config.discovery_subnets:
        try:
            ipaddress.ip_network(subnet, strict=False)
        except ValueError as exc:
            raise ValueError(f"discovery_subnets contains an invalid network {subnet}: {exc}.") from exc
    seen_ids = set()
    for device in config.manual_devices:
        if device.id in seen_ids:
            raise ValueError(f"manual_devices contains duplicate id {device.id}.")
        seen_ids.add(device.id)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the controller."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="spectral-lan-controller",
        description="Run the Spectral LAN controller service.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP/API server.")
    parser.add_argument(
        "--api-key",
        type=str,
        help="API key required via X-API-Key or Authorization: ApiKey <key>.",
    )
    parser.add_argument(
        "--api-bearer-token",
        type=str,
        help="Bearer token required via Authorization: Bearer <token>.",
    )
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument(
        "--manual-device",
        action="append",
        dest="manual_devices",
        help="Pair a fixture at startup as id=<id>,ip=<ip>,name=<name>,model=<model>",
    )
    parser.add_argument(
        "--device-http-port",
        type=int,
        help="Port of the HTTP API exposed by fixtures.",
    )
    parser.add_argument(
        "--device-connect-timeout",
        type=float,
        help="Seconds to wait when opening a connection to a fixture.",
    )
    parser.add_argument(
        "--device-read-timeout",
        type=float,
        help="Seconds to wait for a fixture response.",
    )
    parser.add_argument(
        "--device-command-timeout",
        type=float,
        help="Upper bound in seconds for any single fixture operation.",
    )
    parser.add_argument(
        "--slider-debounce-seconds",
        type=float,
        help="Quiet period before coalesced slider edits are sent.",
    )
    parser.add_argument(
        "--slider-send-retries",
        type=int,
        help="Extra attempts for a single-channel slider command.",
    )
    parser.add_argument(
        "--slider-retry-delay",
        type=float,
        help="Seconds between single-channel retries.",
    )
    parser.add_argument(
        "--no-monitor",
        action="store_true",
        help="Disable background status monitoring of fixtures.",
    )
    parser.add_argument(
        "--monitor-interval",
        type=float,
        help="Seconds between status polls of a reachable fixture.",
    )
    parser.add_argument(
        "--monitor-offline-interval",
        type=float,
        help="Seconds to wait after a failed status poll.",
    )
    parser.add_argument(
        "--restore-default-pwm",
        type=int,
        help="PWM value used on power-on when no channel snapshot exists.",
    )
    parser.add_argument(
        "--profile-path",
        action="append",
        dest="profile_paths",
        help="Fixture path of a spectral profile to try when downloading (repeatable, tried in order).",
    )
    parser.add_argument(
        "--discovery-subnet",
        action="append",
        dest="discovery_subnets",
        help="Network in CIDR form to scan for unpaired fixtures (repeatable).",
    )
    parser.add_argument(
        "--discover-on-start",
        action="store_true",
        help="Scan the discovery subnets once after startup and pair what answers.",
    )
    parser.add_argument(
        "--discovery-concurrency",
        type=int,
        help="Maximum number of addresses probed at the same time.",
    )
    parser.add_argument(
        "--discovery-timeout",
        type=float,
        help="Seconds to wait for one address to answer during a scan.",
    )
    parser.add_argument(
        "--repair-interval",
        type=float,
        help="Seconds between background repair passes (0 disables).",
    )
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before subsystem attempts are temporarily suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds to pause a subsystem after repeated failures.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=_LOG_LEVELS, help="Log verbosity level.")
    parser.add_argument(
        "--link-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for fixture communication.",
    )
    parser.add_argument(
        "--rooms-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for room orchestration and repair.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for API server.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run without fixture network IO while still emitting logs.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        help="Run database migrations and exit without starting services.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    skipped = {"config", "no_api_docs", "no_monitor", "dry_run", "migrate_only", "discover_on_start"}
    mapping = {k: v for k, v in vars(args).items() if k not in skipped and v is not None}
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_monitor:
        mapping["monitor_enabled"] = False
    if args.dry_run:
        mapping["dry_run"] = True
    if args.migrate_only:
        mapping["migrate_only"] = True
    if args.discover_on_start:
        mapping["discovery_on_start"] = True
    return mapping


_INT_FIELDS = {
    "api_port",
    "device_http_port",
    "slider_send_retries",
    "restore_default_pwm",
    "subsystem_failure_threshold",
    "discovery_concurrency",
    "discovery_max_hosts",
    "config_version",
}
_FLOAT_FIELDS = {
    "device_connect_timeout",
    "device_read_timeout",
    "device_command_timeout",
    "slider_debounce_seconds",
    "slider_retry_delay",
    "monitor_interval",
    "monitor_offline_interval",
    "repair_interval",
    "repair_backoff_base",
    "repair_backoff_factor",
    "repair_backoff_max",
    "subsystem_failure_cooldown",
    "discovery_timeout",
}
_BOOL_FIELDS = {"api_docs", "monitor_enabled", "migrate_only", "dry_run", "discovery_on_start"}
_LIST_FIELDS = {"profile_paths", "discovery_subnets", "discovery_model_keywords"}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key == "db_path":
            data[key] = _coerce_path(value)
        elif key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key in {"log_level", "link_log_level", "rooms_log_level", "api_log_level"}:
            data[key] = str(value).upper()
        elif key == "manual_devices":
            data[key] = _coerce_manual_devices(value)
        elif key in _LIST_FIELDS:
            data[key] = _coerce_str_list(value)
        else:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_str_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, Iterable):
        items = value
    else:
        raise ValueError(f"Expected a list of strings; got {value!r}")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _coerce_manual_devices(value: Any) -> Sequence[ManualDevice]:
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return (_manual_from_str(value),)
        return _coerce_manual_devices(parsed)
    if isinstance(value, ManualDevice):
        return (value,)
    if isinstance(value, Mapping):
        return (_manual_from_mapping(value),)
    if isinstance(value, Iterable):
        devices: List[ManualDevice] = []
        for item in value:
            if isinstance(item, ManualDevice):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_manual_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_manual_devices(item))
            else:
                raise ValueError("Unsupported manual device entry")
        return tuple(devices)
    raise ValueError("Unsupported manual_devices configuration")


def _manual_from_mapping(value: Mapping[str, Any]) -> ManualDevice:
    if "id" not in value or "ip" not in value:
        raise ValueError("Manual devices require 'id' and 'ip' fields")
    return ManualDevice(
        id=str(value["id"]),
        ip=str(value["ip"]),
        name=str(value["name"]) if value.get("name") is not None else None,
        model=str(value["model"]) if value.get("model") is not None else None,
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.+)")


def _manual_from_str(value: str) -> ManualDevice:
    mapping: Dict[str, Any] = {}
    for part in (part.strip() for part in value.split(",")):
        if not part:
            continue
        match = _PAIR.match(part)
        if not match:
            raise ValueError(
                "Manual device arguments must be key=value pairs separated by commas"
            )
        mapping[match.group("key").strip()] = match.group("value").strip()
    return _manual_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - surfaced before logging exists
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise

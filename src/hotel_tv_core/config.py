"""Configuration loading for the hotel TV coordination core."""

from __future__ import annotations

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Tuple


CONFIG_ENV_PREFIX = "HOTEL_TV_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_LOG_FORMATS = frozenset({"plain", "json"})
_JWT_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})
_LEVEL_FIELDS = frozenset({"log_level", "pms_log_level", "api_log_level", "realtime_log_level"})
_SECRET_FIELDS = frozenset({"jwt_secret"})

# Inclusive bounds for numeric settings.
_BOUNDS: Dict[str, Tuple[float, float]] = {
    "api_port": (1, 65535),
    "jwt_expires_in": (60.0, 31536000.0),
    "pms_request_timeout": (0.1, 300.0),
    "pms_test_timeout": (0.1, 300.0),
    "pms_cache_ttl": (1, 86400),
    "device_sync_cache_ttl": (1, 86400),
    "pms_sync_interval": (0.01, 86400.0),
    "notification_interval": (0.01, 86400.0),
    "cleanup_interval": (0.01, 604800.0),
    "device_status_interval": (0.01, 86400.0),
    "health_check_interval": (0.01, 604800.0),
    "notification_retention_days": (1, 3650),
    "welcome_dedup_hours": (1, 720),
    "farewell_lead_minutes": (0, 1440),
    "device_offline_after": (1.0, 604800.0),
    "offline_alert_threshold": (1, 100000),
    "health_offline_device_threshold": (0, 100000),
    "stuck_notification_age": (1.0, 604800.0),
    "stuck_notification_threshold": (0, 100000),
    "realtime_ping_interval": (0.01, 3600.0),
    "realtime_stale_multiplier": (1.0, 100.0),
}


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "hotel-tv-core" / "hotel.sqlite3"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_docs: bool = True
    db_path: Path = _default_db_path()
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_expires_in: float = 86400.0
    pms_request_timeout: float = 30.0
    pms_test_timeout: float = 10.0
    pms_cache_ttl: int = 120
    device_sync_cache_ttl: int = 300
    scheduler_enabled: bool = True
    pms_sync_interval: float = 300.0
    notification_interval: float = 60.0
    cleanup_interval: float = 86400.0
    device_status_interval: float = 600.0
    health_check_interval: float = 3600.0
    notification_retention_days: int = 7
    welcome_dedup_hours: int = 24
    farewell_lead_minutes: int = 15
    device_offline_after: float = 600.0
    offline_alert_threshold: int = 5
    health_offline_device_threshold: int = 10
    stuck_notification_age: float = 7200.0
    stuck_notification_threshold: int = 5
    realtime_ping_interval: float = 60.0
    realtime_stale_multiplier: float = 2.0
    log_format: str = "plain"
    log_level: str = "INFO"
    pms_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    realtime_log_level: Optional[str] = None
    migrate_only: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return every setting as a log-safe mapping, secrets masked."""

        values: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name in _SECRET_FIELDS:
                value = "***REDACTED***" if value else None
            elif isinstance(value, Path):
                value = str(value)
            values[item.name] = value
        return values

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_optional_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    for name, (minimum, maximum) in _BOUNDS.items():
        value = getattr(config, name)
        if not minimum <= value <= maximum:
            raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")
    if config.log_format not in _LOG_FORMATS:
        raise ValueError(
            f"log_format must be one of {sorted(_LOG_FORMATS)}; got {config.log_format}."
        )
    if config.jwt_algorithm not in _JWT_ALGORITHMS:
        raise ValueError(
            f"jwt_algorithm must be one of {sorted(_JWT_ALGORITHMS)}; got {config.jwt_algorithm}."
        )
    for name in sorted(_LEVEL_FIELDS):
        level = getattr(config, name)
        if level is not None and level.upper() not in _LOG_LEVELS:
            raise ValueError(f"{name} must be one of {list(_LOG_LEVELS)}; got {level}.")


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade."
        )


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hotel-tv-core",
        description="Run the hotel TV coordination service.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface for the HTTP/API server.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP/API server.")
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument(
        "--jwt-secret",
        type=str,
        help="Secret used to verify admin tokens (REST and realtime channel).",
    )
    parser.add_argument(
        "--pms-request-timeout",
        type=float,
        help="Seconds before a PMS request is treated as failed.",
    )
    parser.add_argument(
        "--pms-sync-interval",
        type=float,
        help="Seconds between PMS reconciliation sweeps.",
    )
    parser.add_argument(
        "--notification-interval",
        type=float,
        help="Seconds between scheduled notification promotion sweeps.",
    )
    parser.add_argument(
        "--device-offline-after",
        type=float,
        help="Seconds without a sync before a device is considered offline.",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not start the recurring background jobs.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument("--log-level", choices=list(_LOG_LEVELS), help="Log verbosity level.")
    parser.add_argument(
        "--pms-log-level",
        choices=list(_LOG_LEVELS),
        help="Log verbosity for PMS reconciliation.",
    )
    parser.add_argument(
        "--api-log-level",
        choices=list(_LOG_LEVELS),
        help="Log verbosity for the API server.",
    )
    parser.add_argument(
        "--realtime-log-level",
        choices=list(_LOG_LEVELS),
        help="Log verbosity for the realtime broadcast hub.",
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
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "no_api_docs", "no_scheduler", "migrate_only") and v is not None
    }
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_scheduler:
        mapping["scheduler_enabled"] = False
    if args.migrate_only:
        mapping["migrate_only"] = True
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        data[key] = _coerce(key, value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Path:
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_optional_path(value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    return _coerce_path(value)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "Path": _coerce_path,
    "int": int,
    "float": float,
    "bool": _coerce_bool,
}


def _coerce(name: str, value: Any) -> Any:
    # Field annotations are strings under postponed evaluation.
    coercer = _COERCERS.get(str(Config.__dataclass_fields__[name].type))
    if coercer is not None:
        return coercer(value)
    if name in _LEVEL_FIELDS:
        return str(value).upper()
    if name == "log_format":
        return str(value).lower()
    return value


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - startup error path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise

"""Configuration loading for the Tibbo barcode label service."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

from dotenv import find_dotenv, load_dotenv

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "TIBBO_BARCODE_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

DEDUP_KEYS = ("address", "raw_id")
RECORD_POLICIES = ("on_success", "always")

# Unprefixed variable names understood by earlier deployments. Values are
# (field, scale) where scale converts the raw value into the field's unit.
LEGACY_ENV_ALIASES: Mapping[str, tuple[str, Optional[float]]] = {
    "APP_PORT": ("api_port", None),
    "INTERVAL": ("scan_interval", 0.001),
    "SCAN_TIMEOUT": ("scan_timeout", 0.001),
    "PRINTER": ("printer", None),
    "ALLOW_DUPLICATES": ("allow_duplicates", None),
}

_INT_FIELDS = {
    "api_port",
    "discovery_port",
    "subsystem_failure_threshold",
    "config_version",
}
_FLOAT_FIELDS = {
    "scan_interval",
    "scan_timeout",
    "label_width",
    "label_height",
    "print_timeout",
    "subsystem_failure_cooldown",
    "discovery_backoff_base",
    "discovery_backoff_factor",
    "discovery_backoff_max",
}
_BOOL_FIELDS = {"allow_duplicates", "dry_run", "migrate_only", "api_docs"}
_PATH_FIELDS = {"db_path", "label_dir", "lpr_command"}
_LEVEL_FIELDS = {"log_level", "discovery_log_level", "printer_log_level", "api_log_level"}


def _default_db_path() -> Path:
    base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))
    return base / "tibbo-barcode" / "devices.sqlite3"


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 8118
    api_docs: bool = True
    scan_interval: float = 10.0
    scan_timeout: float = 5.0
    printer: str = "ZPL"
    allow_duplicates: bool = False
    dedup_key: str = "address"
    record_policy: str = "on_success"
    db_path: Path = _default_db_path()
    label_dir: Path = Path("generated")
    label_width: float = 1.0
    label_height: float = 0.75
    lpr_command: Path = Path("/usr/bin/lpr")
    print_timeout: float = 30.0
    discovery_broadcast_address: str = "255.255.255.255"
    discovery_port: int = 65535
    discovery_probe_payload: str = "_?"
    discovery_backoff_base: float = 1.0
    discovery_backoff_factor: float = 2.0
    discovery_backoff_max: float = 30.0
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    printer_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    migrate_only: bool = False
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "scan_interval": self.scan_interval,
            "scan_timeout": self.scan_timeout,
            "printer": self.printer,
            "allow_duplicates": self.allow_duplicates,
            "dedup_key": self.dedup_key,
            "record_policy": self.record_policy,
            "db_path": str(self.db_path),
            "label_dir": str(self.label_dir),
            "label_width": self.label_width,
            "label_height": self.label_height,
            "lpr_command": str(self.lpr_command),
            "print_timeout": self.print_timeout,
            "discovery_broadcast_address": self.discovery_broadcast_address,
            "discovery_port": self.discovery_port,
            "discovery_probe_payload": self.discovery_probe_payload,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "printer_log_level": self.printer_log_level,
            "api_log_level": self.api_log_level,
            "migrate_only": self.migrate_only,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, .env, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        env_path = os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG")
        file_config = _load_file_config(
            args.config or (_coerce_path(env_path) if env_path else None)
        )
        load_dotenv(args.env_file or find_dotenv(usecwd=True), override=False)
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
    _validate_range("scan_interval", config.scan_interval, 1.0, 86400.0)
    _validate_range("scan_timeout", config.scan_timeout, 0.1, 600.0)
    _validate_range("label_width", config.label_width, 0.1, 20.0)
    _validate_range("label_height", config.label_height, 0.1, 20.0)
    _validate_range("print_timeout", config.print_timeout, 0.1, 600.0)
    _validate_range("discovery_port", config.discovery_port, 1, 65535)
    _validate_range("discovery_backoff_base", config.discovery_backoff_base, 0.0, 300.0)
    _validate_range("discovery_backoff_factor", config.discovery_backoff_factor, 1.0, 10.0)
    _validate_range("discovery_backoff_max", config.discovery_backoff_max, 0.1, 3600.0)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    _validate_choice("dedup_key", config.dedup_key, DEDUP_KEYS)
    _validate_choice("record_policy", config.record_policy, RECORD_POLICIES)
    _validate_choice("log_format", config.log_format, ("plain", "json"))
    if not config.printer:
        raise ValueError("printer must not be empty.")
    for field_name in sorted(_LEVEL_FIELDS):
        _validate_log_level_value(getattr(config, field_name), field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_choice(name: str, value: str, allowed: Iterable[str]) -> None:
    allowed = tuple(allowed)
    if value not in allowed:
        raise ValueError(f"{name} must be one of {list(allowed)}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tibbo-barcode",
        description="Discover Tibbo devices and print a barcode label for each new one.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (defaults to ./.env when present).",
    )
    parser.add_argument("--api-host", type=str, help="Interface the HTTP server binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP server.")
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument(
        "--scan-interval",
        type=float,
        help="Seconds between discovery scans.",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        help="Seconds to collect discovery replies per scan.",
    )
    parser.add_argument("--printer", type=str, help="Printer queue passed to lpr -P.")
    parser.add_argument(
        "--allow-duplicates",
        action="store_true",
        default=None,
        help="Print a label on every scan, even for devices already labeled.",
    )
    parser.add_argument(
        "--dedup-key",
        choices=list(DEDUP_KEYS),
        help="Field used to decide whether a device was already labeled.",
    )
    parser.add_argument(
        "--record-policy",
        choices=list(RECORD_POLICIES),
        help="Record devices only after a successful print, or as soon as printing starts.",
    )
    parser.add_argument("--db-path", type=Path, help="Path to the SQLite database file.")
    parser.add_argument("--label-dir", type=Path, help="Directory for rendered label PDFs.")
    parser.add_argument("--label-width", type=float, help="Label width in inches.")
    parser.add_argument("--label-height", type=float, help="Label height in inches.")
    parser.add_argument("--lpr-command", type=Path, help="Path to the lpr executable.")
    parser.add_argument(
        "--print-timeout",
        type=float,
        help="Seconds to wait for lpr to accept a job.",
    )
    parser.add_argument(
        "--discovery-broadcast-address",
        type=str,
        help="Broadcast address used for discovery probes.",
    )
    parser.add_argument(
        "--discovery-port",
        type=int,
        help="UDP port Tibbo devices listen on for discovery probes.",
    )
    parser.add_argument(
        "--discovery-probe-payload",
        type=str,
        help="Raw payload sent in discovery probes.",
    )
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before a subsystem is temporarily suppressed.",
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
    for name, scope in (
        ("--log-level", "Log verbosity level."),
        ("--discovery-log-level", "Log verbosity for discovery."),
        ("--printer-log-level", "Log verbosity for rendering and printing."),
        ("--api-log-level", "Log verbosity for the HTTP server."),
    ):
        parser.add_argument(
            name,
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help=scope,
        )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Render labels without opening sockets or submitting print jobs.",
    )
    parser.add_argument(
        "--migrate-only",
        action="store_true",
        default=None,
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
    for env_key, (field, scale) in LEGACY_ENV_ALIASES.items():
        if env_key in os.environ:
            value: Any = os.environ[env_key]
            if scale is not None:
                value = float(value) * scale
            mapping[field] = value
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    mapping = {
        k: v
        for k, v in vars(args).items()
        if k not in ("config", "env_file", "no_api_docs") and v is not None
    }
    if args.no_api_docs:
        mapping["api_docs"] = False
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in _PATH_FIELDS:
            data[key] = _coerce_path(value)
        elif key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key in {"log_format", "dedup_key", "record_policy"}:
            data[key] = str(value).lower()
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


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise

"""
Settings file loading, field validation helpers, on-disk layout and logging setup.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from upkeep.errors import ConfigError

CONFIG_FILE_NAME = "upkeep.yaml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARN", "WARNING", "ERROR", "CRITICAL"}
VALID_SAFETY_LEVELS = {"conservative", "standard", "aggressive"}

DEFAULT_HISTORY_RETENTION_DAYS = 90
DEFAULT_NOTIFICATION_RETENTION_DAYS = 30
DEFAULT_BACKUP_RETENTION = 10
DEFAULT_GRACE_SECONDS = 5.0
DEFAULT_SAMPLE_INTERVAL = 1.0
DEFAULT_LOG_RETENTION_DAYS = 30
DEFAULT_STATUS_HISTORY = 100


def setup_logging(log_file: Optional[Path] = None, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger("upkeep")
    if logger.handlers:
        return logger
    logger.setLevel(log_level_number(level))
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    return logger


def log_level_number(name: str) -> int:
    normalized = name.strip().upper()
    if normalized == "WARN":
        normalized = "WARNING"
    return getattr(logging, normalized, logging.INFO)


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_float(value: Any, field_path: str, default: float, minimum: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_str_list(value: Any, field_path: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"Error: {field_path} must be a list of strings.")
    return [ensure_str(item, f"{field_path}[{idx}]") for idx, item in enumerate(value)]


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return value


def ensure_log_level(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    level = ensure_str(value, field_path).upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f'Error: {field_path} must be one of {sorted(VALID_LOG_LEVELS)}, got "{level}".')
    return "WARN" if level == "WARNING" else level


def reject_unknown_keys(raw: Dict[str, Any], allowed: set, field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown key(s) in {field_path}: {sorted(unknown)}")


def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Error: Config file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level content of {path} must be a mapping.")
    return payload


def home_dir() -> Path:
    override = os.environ.get("UPKEEP_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home()


@dataclass(frozen=True)
class Paths:
    data_dir: Path
    config_dir: Path
    user_profiles_dir: Path
    system_profiles_dir: Path
    unit_dir: Path

    @staticmethod
    def default(home: Optional[Path] = None) -> "Paths":
        base = home if home is not None else home_dir()
        data_dir = base / ".local" / "share" / "upkeep"
        config_dir = base / ".config" / "upkeep"
        return Paths(
            data_dir=data_dir,
            config_dir=config_dir,
            user_profiles_dir=config_dir / "profiles",
            system_profiles_dir=data_dir / "profiles",
            unit_dir=base / ".config" / "systemd" / "user",
        )

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "history"

    @property
    def locks_dir(self) -> Path:
        return self.data_dir / "locks"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def log_file(self) -> Path:
        return self.logs_dir / "upkeep.log"

    @property
    def snapshots_dir(self) -> Path:
        return self.data_dir / "snapshots"

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / "staging"

    @property
    def reports_dir(self) -> Path:
        return self.data_dir / "reports"


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = True
    level: str = "INFO"
    desktop_enabled: bool = True
    email_enabled: bool = False
    email_to: str = ""
    email_from: str = "upkeep@localhost"
    smtp_host: str = ""
    smtp_port: int = 25
    smtp_starttls: bool = False
    journal_enabled: bool = False


@dataclass(frozen=True)
class HistorySettings:
    retention_days: int = DEFAULT_HISTORY_RETENTION_DAYS
    notification_retention_days: int = DEFAULT_NOTIFICATION_RETENTION_DAYS


@dataclass(frozen=True)
class BackupSettings:
    enabled: bool = True
    retention: int = DEFAULT_BACKUP_RETENTION
    config_paths: List[Path] = field(default_factory=list)
    user_data_paths: List[Path] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    user_services: bool = True
    package_state: bool = True


@dataclass(frozen=True)
class SafetySettings:
    level: str = "standard"
    skip_backup: bool = False
    dry_run: bool = False
    essential_paths: List[Path] = field(default_factory=list)
    essential_commands: List[str] = field(default_factory=lambda: ["sh"])
    critical_services: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutorSettings:
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    sample_interval: float = DEFAULT_SAMPLE_INTERVAL
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    status_history: int = DEFAULT_STATUS_HISTORY


@dataclass(frozen=True)
class Settings:
    paths: Paths
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    operations: Dict[str, str] = field(default_factory=dict)
    config_path: Optional[Path] = None

    @staticmethod
    def default(home: Optional[Path] = None) -> "Settings":
        paths = Paths.default(home)
        return Settings(
            paths=paths,
            backup=BackupSettings(config_paths=[paths.config_dir]),
        )


def default_config_path() -> Path:
    override = os.environ.get("UPKEEP_CONFIG")
    if override:
        return Path(override).expanduser()
    return Paths.default().config_dir / CONFIG_FILE_NAME


def _resolve_path(value: Any, field_path: str, base_dir: Path) -> Path:
    path = Path(ensure_str(value, field_path)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def _parse_paths(raw: Dict[str, Any], defaults: Paths, base_dir: Path) -> Paths:
    reject_unknown_keys(
        raw,
        {"data_dir", "user_profiles_dir", "system_profiles_dir", "unit_dir", "config_dir"},
        "paths",
    )
    data_dir = _resolve_path(raw["data_dir"], "paths.data_dir", base_dir) if "data_dir" in raw else defaults.data_dir
    config_dir = (
        _resolve_path(raw["config_dir"], "paths.config_dir", base_dir) if "config_dir" in raw else defaults.config_dir
    )
    return Paths(
        data_dir=data_dir,
        config_dir=config_dir,
        user_profiles_dir=(
            _resolve_path(raw["user_profiles_dir"], "paths.user_profiles_dir", base_dir)
            if "user_profiles_dir" in raw
            else config_dir / "profiles"
        ),
        system_profiles_dir=(
            _resolve_path(raw["system_profiles_dir"], "paths.system_profiles_dir", base_dir)
            if "system_profiles_dir" in raw
            else data_dir / "profiles"
        ),
        unit_dir=_resolve_path(raw["unit_dir"], "paths.unit_dir", base_dir) if "unit_dir" in raw else defaults.unit_dir,
    )


def _parse_notifications(raw: Dict[str, Any]) -> NotificationSettings:
    reject_unknown_keys(
        raw,
        {
            "enabled",
            "level",
            "desktop_enabled",
            "email_enabled",
            "email_to",
            "email_from",
            "smtp_host",
            "smtp_port",
            "smtp_starttls",
            "journal_enabled",
        },
        "notifications",
    )
    defaults = NotificationSettings()
    email_enabled = ensure_bool(raw.get("email_enabled"), "notifications.email_enabled", defaults.email_enabled)
    email_to = str(raw.get("email_to") or "").strip()
    if email_enabled and not email_to:
        raise ConfigError("Error: notifications.email_to is required when notifications.email_enabled is true.")
    return NotificationSettings(
        enabled=ensure_bool(raw.get("enabled"), "notifications.enabled", defaults.enabled),
        level=ensure_log_level(raw.get("level"), "notifications.level", defaults.level),
        desktop_enabled=ensure_bool(raw.get("desktop_enabled"), "notifications.desktop_enabled", defaults.desktop_enabled),
        email_enabled=email_enabled,
        email_to=email_to,
        email_from=str(raw.get("email_from") or defaults.email_from).strip(),
        smtp_host=str(raw.get("smtp_host") or "").strip(),
        smtp_port=ensure_int(raw.get("smtp_port"), "notifications.smtp_port", defaults.smtp_port),
        smtp_starttls=ensure_bool(raw.get("smtp_starttls"), "notifications.smtp_starttls", defaults.smtp_starttls),
        journal_enabled=ensure_bool(raw.get("journal_enabled"), "notifications.journal_enabled", defaults.journal_enabled),
    )


def _parse_history(raw: Dict[str, Any]) -> HistorySettings:
    reject_unknown_keys(raw, {"retention_days", "notification_retention_days"}, "history")
    return HistorySettings(
        retention_days=ensure_int(raw.get("retention_days"), "history.retention_days", DEFAULT_HISTORY_RETENTION_DAYS),
        notification_retention_days=ensure_int(
            raw.get("notification_retention_days"),
            "history.notification_retention_days",
            DEFAULT_NOTIFICATION_RETENTION_DAYS,
        ),
    )


def _parse_backup(raw: Dict[str, Any], paths: Paths, base_dir: Path) -> BackupSettings:
    reject_unknown_keys(
        raw,
        {"enabled", "retention", "config_paths", "user_data_paths", "services", "user_services", "package_state"},
        "backup",
    )
    config_paths = [
        _resolve_path(item, f"backup.config_paths[{idx}]", base_dir)
        for idx, item in enumerate(ensure_str_list(raw.get("config_paths"), "backup.config_paths"))
    ]
    user_data_paths = [
        _resolve_path(item, f"backup.user_data_paths[{idx}]", base_dir)
        for idx, item in enumerate(ensure_str_list(raw.get("user_data_paths"), "backup.user_data_paths"))
    ]
    return BackupSettings(
        enabled=ensure_bool(raw.get("enabled"), "backup.enabled", True),
        retention=ensure_int(raw.get("retention"), "backup.retention", DEFAULT_BACKUP_RETENTION),
        config_paths=config_paths if "config_paths" in raw else [paths.config_dir],
        user_data_paths=user_data_paths,
        services=ensure_str_list(raw.get("services"), "backup.services"),
        user_services=ensure_bool(raw.get("user_services"), "backup.user_services", True),
        package_state=ensure_bool(raw.get("package_state"), "backup.package_state", True),
    )


def _parse_safety(raw: Dict[str, Any], base_dir: Path) -> SafetySettings:
    reject_unknown_keys(
        raw,
        {"level", "skip_backup", "dry_run", "essential_paths", "essential_commands", "critical_services"},
        "safety",
    )
    defaults = SafetySettings()
    level = defaults.level
    if raw.get("level") is not None:
        level = ensure_str(raw.get("level"), "safety.level").lower()
        if level not in VALID_SAFETY_LEVELS:
            raise ConfigError(
                f'Error: safety.level must be one of {sorted(VALID_SAFETY_LEVELS)}, got "{level}".'
            )
    return SafetySettings(
        level=level,
        skip_backup=ensure_bool(raw.get("skip_backup"), "safety.skip_backup", False),
        dry_run=ensure_bool(raw.get("dry_run"), "safety.dry_run", False),
        essential_paths=[
            _resolve_path(item, f"safety.essential_paths[{idx}]", base_dir)
            for idx, item in enumerate(ensure_str_list(raw.get("essential_paths"), "safety.essential_paths"))
        ],
        essential_commands=(
            ensure_str_list(raw.get("essential_commands"), "safety.essential_commands")
            if "essential_commands" in raw
            else list(defaults.essential_commands)
        ),
        critical_services=ensure_str_list(raw.get("critical_services"), "safety.critical_services"),
    )


def _parse_executor(raw: Dict[str, Any]) -> ExecutorSettings:
    reject_unknown_keys(raw, {"grace_seconds", "sample_interval", "log_retention_days", "status_history"}, "executor")
    return ExecutorSettings(
        grace_seconds=ensure_float(raw.get("grace_seconds"), "executor.grace_seconds", DEFAULT_GRACE_SECONDS),
        sample_interval=ensure_float(raw.get("sample_interval"), "executor.sample_interval", DEFAULT_SAMPLE_INTERVAL),
        log_retention_days=ensure_int(
            raw.get("log_retention_days"), "executor.log_retention_days", DEFAULT_LOG_RETENTION_DAYS
        ),
        status_history=ensure_int(raw.get("status_history"), "executor.status_history", DEFAULT_STATUS_HISTORY),
    )


def parse_settings(payload: Dict[str, Any], config_path: Optional[Path] = None, home: Optional[Path] = None) -> Settings:
    reject_unknown_keys(
        payload,
        {"version", "paths", "notifications", "history", "backup", "safety", "executor", "operations"},
        "config",
    )
    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError("Error: version must be 1.")
    base_dir = config_path.parent if config_path is not None else Path.cwd()
    paths = _parse_paths(ensure_mapping(payload.get("paths"), "paths"), Paths.default(home), base_dir)

    operations: Dict[str, str] = {}
    for key, command in ensure_mapping(payload.get("operations"), "operations").items():
        operations[ensure_str(key, "operations key")] = ensure_str(command, f"operations.{key}")

    return Settings(
        paths=paths,
        notifications=_parse_notifications(ensure_mapping(payload.get("notifications"), "notifications")),
        history=_parse_history(ensure_mapping(payload.get("history"), "history")),
        backup=_parse_backup(ensure_mapping(payload.get("backup"), "backup"), paths, base_dir),
        safety=_parse_safety(ensure_mapping(payload.get("safety"), "safety"), base_dir),
        executor=_parse_executor(ensure_mapping(payload.get("executor"), "executor")),
        operations=operations,
        config_path=config_path,
    )


def load_settings(config_path: Optional[Path] = None, required: bool = False) -> Settings:
    """Load settings from YAML; a missing file yields defaults unless ``required``."""
    path = config_path if config_path is not None else default_config_path()
    if not path.exists():
        if required:
            raise ConfigError(f"Error: Config file not found: {path}")
        return replace(Settings.default(), config_path=None)
    return parse_settings(load_yaml_mapping(path), config_path=path)

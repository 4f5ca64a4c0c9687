"""
Profile definitions, the registered operation kinds and the two-tier profile registry.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil
import yaml

from upkeep import storage
from upkeep.config import (
    ensure_bool,
    ensure_int,
    ensure_log_level,
    ensure_str,
    load_yaml_mapping,
    reject_unknown_keys,
)
from upkeep.errors import ConfigError, ProfileError, ProfileNotFound
from upkeep.limits import ResourceLimits, parse_resource_limits
from upkeep.preconditions import (
    COMPILER_PROCESSES,
    EDITOR_PROCESSES,
    Precondition,
    parse_preconditions,
    precondition_payload,
    running_process_names,
)
from upkeep.schedule import CompiledSchedule, compile_schedule

logger = logging.getLogger("upkeep.profiles")

PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
PROFILE_SUFFIX = ".yaml"
TIER_USER = "user"
TIER_SYSTEM = "system"
CUSTOM_KIND = "custom"
PROFILE_KEYS = {
    "name",
    "description",
    "schedule",
    "operations",
    "resource_limits",
    "conditions",
    "preconditions",
    "notifications",
    "notify_threshold",
    "log_level",
    "continue_on_error",
}


@dataclass(frozen=True)
class OperationKind:
    key: str
    command: str
    description: str = ""
    touches_packages: bool = False
    touches_dev_dirs: bool = False


DEFAULT_OPERATION_KINDS: Dict[str, OperationKind] = {
    kind.key: kind
    for kind in [
        OperationKind(
            "temp",
            'find "${TMPDIR:-/tmp}" -xdev -user "$(id -u)" -type f -atime +7 -delete 2>/dev/null; exit 0',
            "Remove week-old temporary files owned by the user",
        ),
        OperationKind(
            "cache",
            'if [ -d "$HOME/.cache" ]; then find "$HOME/.cache" -xdev -type f -atime +30 -delete; fi',
            "Remove user cache files unused for 30 days",
        ),
        OperationKind(
            "thumbnails",
            'if [ -d "$HOME/.cache/thumbnails" ]; then find "$HOME/.cache/thumbnails" -type f -atime +30 -delete; fi',
            "Remove stale thumbnails",
        ),
        OperationKind("logs", "journalctl --user --vacuum-time=14d", "Vacuum the user journal"),
        OperationKind(
            "browser_cache",
            'for d in "$HOME/.cache/mozilla" "$HOME/.cache/chromium" "$HOME/.cache/google-chrome"; do '
            'if [ -d "$d" ]; then find "$d" -type f -path "*Cache*" -atime +14 -delete; fi; done',
            "Trim browser caches",
        ),
        OperationKind(
            "build_cache",
            'find "$HOME" -xdev -maxdepth 5 -type d \\( -name __pycache__ -o -name .pytest_cache \\) '
            "-prune -exec rm -rf {} +",
            "Remove Python build caches",
            touches_dev_dirs=True,
        ),
        OperationKind("npm_cache", "npm cache clean --force", "Clean the npm cache", touches_dev_dirs=True),
        OperationKind("docker_cache", "docker builder prune -f", "Prune docker build cache", touches_dev_dirs=True),
        OperationKind("apt_cache", "sudo -n apt-get clean", "Clean the APT package cache", touches_packages=True),
        OperationKind(
            "kernels",
            "sudo -n apt-get -y autoremove --purge",
            "Remove unused kernel packages",
            touches_packages=True,
        ),
    ]
}


def operation_kinds(overrides: Optional[Dict[str, str]] = None) -> Dict[str, OperationKind]:
    kinds = dict(DEFAULT_OPERATION_KINDS)
    for key, command in (overrides or {}).items():
        if key in kinds:
            kinds[key] = replace(kinds[key], command=command)
        else:
            kinds[key] = OperationKind(key, command, "Configured operation")
    return kinds


@dataclass(frozen=True)
class OperationSpec:
    name: str
    kind: OperationKind
    command: str
    timeout: Optional[int] = None

    def to_payload(self) -> Any:
        if self.kind.key != CUSTOM_KIND and self.command == self.kind.command and self.timeout is None:
            return self.name
        payload: Dict[str, Any] = {"name": self.name}
        if self.kind.key == CUSTOM_KIND or self.command != self.kind.command:
            payload["command"] = self.command
        if self.kind.key not in (CUSTOM_KIND, self.name):
            payload["kind"] = self.kind.key
        if self.timeout is not None:
            payload["timeout"] = self.timeout
        return payload


@dataclass(frozen=True)
class Profile:
    name: str
    description: str
    schedule: str
    operations: Tuple[OperationSpec, ...]
    resource_limits: ResourceLimits
    preconditions: Tuple[Precondition, ...]
    notifications: bool = True
    notify_threshold: str = "INFO"
    log_level: str = "INFO"
    continue_on_error: bool = True
    tier: str = field(default=TIER_USER, compare=False)
    source: Optional[Path] = field(default=None, compare=False)

    @property
    def compiled_schedule(self) -> CompiledSchedule:
        return compile_schedule(self.schedule, f"{self.name}.schedule")

    @property
    def touches_packages(self) -> bool:
        return any(op.kind.touches_packages for op in self.operations)

    @property
    def touches_dev_dirs(self) -> bool:
        return any(op.kind.touches_dev_dirs for op in self.operations)

    def requires_ac_power(self) -> bool:
        return any(p.name == "on_ac_power" and p.threshold is True for p in self.preconditions)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "schedule": self.schedule,
            "operations": [op.to_payload() for op in self.operations],
            "continue_on_error": self.continue_on_error,
            "notifications": self.notifications,
            "notify_threshold": self.notify_threshold,
            "log_level": self.log_level,
            "resource_limits": self.resource_limits.to_payload(),
            "conditions": precondition_payload(self.preconditions),
        }


def validate_profile_name(name: Any, field_path: str = "name") -> str:
    text = ensure_str(name, field_path)
    if not PROFILE_NAME_RE.match(text):
        raise ConfigError(f'Error: {field_path} "{text}" may only contain letters, digits, "_" and "-".')
    return text


def parse_operations(raw: Any, field_path: str, kinds: Dict[str, OperationKind]) -> Tuple[OperationSpec, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError(f"Error: {field_path} must be a non-empty list.")
    specs: List[OperationSpec] = []
    seen = set()
    for idx, item in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if isinstance(item, str):
            key = item.strip()
            if key not in kinds:
                raise ConfigError(f'Error: Unknown operation "{key}" at {item_path}. Known: {sorted(kinds)}')
            spec = OperationSpec(name=key, kind=kinds[key], command=kinds[key].command)
        elif isinstance(item, dict):
            reject_unknown_keys(item, {"name", "kind", "command", "timeout"}, item_path)
            name = ensure_str(item.get("name"), f"{item_path}.name")
            if not PROFILE_NAME_RE.match(name):
                raise ConfigError(f'Error: {item_path}.name "{name}" may only contain letters, digits, "_" and "-".')
            kind_key = item.get("kind") or (name if name in kinds else None)
            if kind_key is not None and kind_key not in kinds:
                raise ConfigError(f'Error: Unknown operation kind "{kind_key}" at {item_path}.kind.')
            if kind_key is None:
                if "command" not in item:
                    raise ConfigError(f"Error: {item_path} needs a command or a known kind.")
                kind = OperationKind(CUSTOM_KIND, "", "Custom command")
            else:
                kind = kinds[kind_key]
            command = ensure_str(item["command"], f"{item_path}.command") if "command" in item else kind.command
            timeout = ensure_int(item.get("timeout"), f"{item_path}.timeout", 0) or None
            spec = OperationSpec(name=name, kind=kind, command=command, timeout=timeout)
        else:
            raise ConfigError(f"Error: {item_path} must be an operation name or mapping.")
        if spec.name in seen:
            raise ConfigError(f'Error: Duplicate operation "{spec.name}" at {item_path}.')
        seen.add(spec.name)
        specs.append(spec)
    return tuple(specs)


def parse_profile(
    raw: Dict[str, Any],
    kinds: Dict[str, OperationKind],
    expected_name: Optional[str] = None,
    tier: str = TIER_USER,
    source: Optional[Path] = None,
) -> Profile:
    if not isinstance(raw, dict):
        raise ConfigError("Error: Profile must be a mapping.")
    reject_unknown_keys(raw, PROFILE_KEYS, "profile")
    name = validate_profile_name(raw.get("name", expected_name), "profile.name")
    if expected_name is not None and name != expected_name:
        raise ConfigError(f'Error: profile.name "{name}" does not match file name "{expected_name}".')
    if "conditions" in raw and "preconditions" in raw:
        raise ConfigError(f'Error: {name} sets both "conditions" and "preconditions".')
    schedule = compile_schedule(ensure_str(raw.get("schedule"), f"{name}.schedule"), f"{name}.schedule")
    log_level = ensure_log_level(raw.get("log_level"), f"{name}.log_level", "INFO")
    return Profile(
        name=name,
        description=str(raw.get("description") or "").strip(),
        schedule=schedule.expression,
        operations=parse_operations(raw.get("operations"), f"{name}.operations", kinds),
        resource_limits=parse_resource_limits(raw.get("resource_limits"), f"{name}.resource_limits"),
        preconditions=parse_preconditions(raw.get("conditions", raw.get("preconditions")), f"{name}.conditions"),
        notifications=ensure_bool(raw.get("notifications"), f"{name}.notifications", True),
        notify_threshold=ensure_log_level(raw.get("notify_threshold"), f"{name}.notify_threshold", log_level),
        log_level=log_level,
        continue_on_error=ensure_bool(raw.get("continue_on_error"), f"{name}.continue_on_error", True),
        tier=tier,
        source=source,
    )


DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    "desktop": {
        "name": "desktop",
        "description": "Desktop workstation: daily evening cleanup while plugged in and idle",
        "schedule": "daily 18:00",
        "operations": ["temp", "cache", "thumbnails"],
        "notifications": True,
        "log_level": "INFO",
        "resource_limits": {"memory": "512M", "cpu": "50%", "io_priority": 7, "nice": 10},
        "conditions": {"on_ac_power": True, "idle_time": 300},
    },
    "server": {
        "name": "server",
        "description": "Server: nightly cleanup under low load",
        "schedule": "daily 02:00",
        "operations": ["temp", "cache", "logs"],
        "notifications": False,
        "log_level": "WARN",
        "resource_limits": {"memory": "256M", "cpu": "30%", "io_priority": 7, "nice": 15},
        "conditions": {"system_load": "< 0.8"},
    },
    "developer": {
        "name": "developer",
        "description": "Developer machine: hourly build-cache cleanup outside active work",
        "schedule": "hourly",
        "operations": ["temp", "build_cache", "npm_cache", "docker_cache"],
        "notifications": True,
        "log_level": "INFO",
        "resource_limits": {"memory": "1G", "cpu": "60%", "io_priority": 7, "nice": 10},
        "conditions": {"no_git_operations": True, "no_active_compilation": True},
    },
    "minimal": {
        "name": "minimal",
        "description": "Minimal: weekly temp-file sweep",
        "schedule": "weekly",
        "operations": ["temp"],
        "notifications": False,
        "log_level": "ERROR",
        "resource_limits": {"memory": "128M", "cpu": "20%", "io_priority": 7, "nice": 19},
        "conditions": {"min_free_disk_gb": 1},
    },
}


class ProfileRegistry:
    def __init__(
        self,
        user_dir: Path,
        system_dir: Path,
        kinds: Optional[Dict[str, OperationKind]] = None,
        is_active: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.user_dir = user_dir
        self.system_dir = system_dir
        self.kinds = kinds if kinds is not None else operation_kinds()
        self.is_active = is_active or (lambda name: False)

    def _path(self, name: str, tier: str) -> Path:
        base = self.user_dir if tier == TIER_USER else self.system_dir
        return base / f"{name}{PROFILE_SUFFIX}"

    def _load(self, path: Path, tier: str) -> Profile:
        name = path.name[: -len(PROFILE_SUFFIX)]
        return parse_profile(load_yaml_mapping(path), self.kinds, expected_name=name, tier=tier, source=path)

    def names(self) -> List[str]:
        found = set()
        for directory in (self.system_dir, self.user_dir):
            if directory.is_dir():
                found.update(p.name[: -len(PROFILE_SUFFIX)] for p in directory.glob("*" + PROFILE_SUFFIX))
        return sorted(name for name in found if PROFILE_NAME_RE.match(name))

    def exists(self, name: str) -> bool:
        return any(self._path(name, tier).is_file() for tier in (TIER_USER, TIER_SYSTEM))

    def get(self, name: str) -> Profile:
        validate_profile_name(name, "profile name")
        for tier in (TIER_USER, TIER_SYSTEM):
            path = self._path(name, tier)
            if path.is_file():
                return self._load(path, tier)
        raise ProfileNotFound(f"Profile not found: {name}")

    def list(self) -> List[Profile]:
        profiles = []
        for name in self.names():
            try:
                profiles.append(self.get(name))
            except ConfigError as exc:
                logger.warning("Skipping invalid profile %s: %s", name, exc)
        return profiles

    def save(self, profile: Any, tier: str = TIER_USER) -> Profile:
        """Validate and write a profile (``Profile`` or raw mapping) atomically."""
        payload = profile.to_payload() if isinstance(profile, Profile) else dict(profile)
        parsed = parse_profile(payload, self.kinds, tier=tier)
        path = self._path(parsed.name, tier)
        storage.atomic_write_text(path, yaml.safe_dump(parsed.to_payload(), sort_keys=False))
        logger.info("Saved %s profile %s to %s", tier, parsed.name, path)
        return replace(parsed, source=path)

    def update(self, name: str, **changes: Any) -> Profile:
        current = self.get(name)
        payload = current.to_payload()
        payload.update(changes)
        payload["name"] = name
        return self.save(payload, tier=TIER_USER)

    def delete(self, name: str, tier: str = TIER_USER) -> None:
        validate_profile_name(name, "profile name")
        if tier == TIER_SYSTEM and name in DEFAULT_PROFILES:
            raise ProfileError(f"Default profile {name} cannot be deleted.")
        path = self._path(name, tier)
        if not path.is_file():
            if tier == TIER_USER and name in DEFAULT_PROFILES:
                raise ProfileError(f"Default profile {name} cannot be deleted.")
            raise ProfileNotFound(f"Profile not found: {name}")
        if self.is_active(name):
            raise ProfileError(f"Profile {name} is active; disable it before deleting.")
        path.unlink()
        logger.info("Deleted %s profile %s", tier, name)

    def bootstrap_defaults(self) -> List[str]:
        written = []
        for name, payload in DEFAULT_PROFILES.items():
            path = self._path(name, TIER_SYSTEM)
            if path.exists():
                continue
            parse_profile(payload, self.kinds, tier=TIER_SYSTEM)
            storage.atomic_write_text(path, yaml.safe_dump(payload, sort_keys=False))
            written.append(name)
        if written:
            logger.info("Installed default profiles: %s", ", ".join(written))
        return written


def suggest_profile(
    environ: Optional[Dict[str, str]] = None,
    process_names: Optional[set] = None,
    total_memory_bytes: Optional[int] = None,
    available_tools: Optional[List[str]] = None,
) -> Tuple[str, str]:
    """Pick a default profile for this host; returns (name, reason)."""
    env = environ if environ is not None else dict(os.environ)
    names = process_names if process_names is not None else running_process_names()
    memory = total_memory_bytes if total_memory_bytes is not None else psutil.virtual_memory().total

    if memory < 2 * 1024 ** 3:
        return "minimal", "less than 2 GiB of memory"
    dev_tools = (
        available_tools
        if available_tools is not None
        else [tool for tool in ("git", "docker", "npm", "cargo", "go") if shutil.which(tool)]
    )
    if names & (EDITOR_PROCESSES | COMPILER_PROCESSES) or len(dev_tools) >= 3:
        return "developer", "development tools detected"
    if env.get("XDG_CURRENT_DESKTOP") or env.get("DISPLAY") or env.get("WAYLAND_DISPLAY"):
        return "desktop", "graphical session detected"
    return "server", "no graphical session"

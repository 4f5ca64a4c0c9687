"""
Precondition evaluation against live system sensors.

A predicate whose sensor is unavailable passes, except free disk space which
fails closed.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import psutil

from upkeep.errors import ConfigError

logger = logging.getLogger("upkeep.preconditions")

THRESHOLD_RE = re.compile(r"^(<=|>=|==|<|>|=)?\s*(-?\d+(?:\.\d+)?)\s*(%|s|gb|g)?$", re.IGNORECASE)
OPERATORS = {"<", "<=", ">", ">=", "="}
POWER_SUPPLY_DIR = Path("/sys/class/power_supply")

GIT_PROCESSES = {"git", "git-remote-http", "git-remote-https"}
COMPILER_PROCESSES = {
    "cc1",
    "cc1plus",
    "gcc",
    "g++",
    "clang",
    "clang++",
    "rustc",
    "cargo",
    "make",
    "ninja",
    "javac",
    "gradle",
    "mvn",
    "tsc",
}
EDITOR_PROCESSES = {"code", "nvim", "vim", "emacs", "idea", "pycharm", "clion", "goland", "webstorm"}
PACKAGE_MANAGER_PROCESSES = {
    "apt",
    "apt-get",
    "aptitude",
    "dpkg",
    "unattended-upgr",
    "dnf",
    "yum",
    "pacman",
    "zypper",
}


@dataclass(frozen=True)
class PredicateDef:
    kind: str  # bool | number | absence
    operator: str
    sensor: str
    fail_closed: bool = False


PREDICATES: Dict[str, PredicateDef] = {
    "on_ac_power": PredicateDef("bool", "=", "on_ac_power"),
    "system_load": PredicateDef("number", "<", "load_average"),
    "idle_time": PredicateDef("number", ">=", "idle_seconds"),
    "min_free_disk_gb": PredicateDef("number", ">=", "free_disk_gb", fail_closed=True),
    "battery_level": PredicateDef("number", ">=", "battery_percent"),
    "memory_usage": PredicateDef("number", "<", "memory_percent"),
    "no_git_operations": PredicateDef("absence", "=", "git_active"),
    "no_active_compilation": PredicateDef("absence", "=", "compilation_active"),
    "no_package_manager": PredicateDef("absence", "=", "package_manager_active"),
}


@dataclass(frozen=True)
class Precondition:
    name: str
    operator: str
    threshold: Any

    def describe(self) -> str:
        definition = PREDICATES[self.name]
        if definition.kind == "absence":
            return self.name
        if definition.kind == "bool":
            return f"{self.name} = {str(self.threshold).lower()}"
        return f"{self.name} {self.operator} {self.threshold:g}"


@dataclass
class Evaluation:
    passed: bool
    reason: str = ""
    failed: Optional[Precondition] = None
    observations: Dict[str, Any] = field(default_factory=dict)


def parse_precondition(name: Any, raw: Any, field_path: str) -> Precondition:
    if not isinstance(name, str) or name not in PREDICATES:
        raise ConfigError(f'Error: Unknown precondition "{name}" at {field_path}. Known: {sorted(PREDICATES)}')
    definition = PREDICATES[name]
    if definition.kind in ("bool", "absence"):
        if raw is None:
            raw = True
        if not isinstance(raw, bool):
            raise ConfigError(f"Error: {field_path}.{name} must be true or false.")
        if definition.kind == "absence" and raw is False:
            raise ConfigError(f"Error: {field_path}.{name} only accepts true.")
        return Precondition(name=name, operator="=", threshold=raw)

    operator = definition.operator
    if isinstance(raw, bool) or raw is None:
        raise ConfigError(f"Error: {field_path}.{name} needs a numeric threshold.")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        match = THRESHOLD_RE.match(str(raw).strip())
        if not match:
            raise ConfigError(f'Error: {field_path}.{name} threshold "{raw}" is not understood.')
        operator = match.group(1) or operator
        if operator == "==":
            operator = "="
        value = float(match.group(2))
    return Precondition(name=name, operator=operator, threshold=value)


def parse_preconditions(raw: Any, field_path: str) -> Tuple[Precondition, ...]:
    """Accept a mapping or a list of single-key mappings / bare names."""
    if raw is None:
        return ()
    items: List[Tuple[Any, Any]] = []
    if isinstance(raw, dict):
        items = list(raw.items())
    elif isinstance(raw, list):
        for idx, entry in enumerate(raw):
            if isinstance(entry, str):
                items.append((entry, None))
            elif isinstance(entry, dict) and len(entry) == 1:
                items.extend(entry.items())
            else:
                raise ConfigError(f"Error: {field_path}[{idx}] must be a name or a single-key mapping.")
    else:
        raise ConfigError(f"Error: {field_path} must be a mapping or a list.")
    seen: Set[str] = set()
    parsed: List[Precondition] = []
    for name, value in items:
        if name in seen:
            raise ConfigError(f'Error: Duplicate precondition "{name}" at {field_path}.')
        seen.add(name)
        parsed.append(parse_precondition(name, value, field_path))
    return tuple(parsed)


def precondition_payload(preconditions: Iterable[Precondition]) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for item in preconditions:
        definition = PREDICATES[item.name]
        if definition.kind == "number" and item.operator != definition.operator:
            payload[item.name] = f"{item.operator} {item.threshold:g}"
        else:
            payload[item.name] = item.threshold
    return payload


def running_process_names() -> Set[str]:
    names: Set[str] = set()
    for proc in psutil.process_iter(["name"]):
        name = proc.info.get("name")
        if name:
            names.add(name)
    return names


class SystemSensors:
    """Live readings; every method returns None when its sensor is unavailable."""

    def __init__(self, disk_path: Path = Path("/")) -> None:
        self.disk_path = disk_path

    def on_ac_power(self) -> Optional[bool]:
        sensors_battery = getattr(psutil, "sensors_battery", None)
        battery = sensors_battery() if sensors_battery is not None else None
        if battery is not None and battery.power_plugged is not None:
            return bool(battery.power_plugged)
        if POWER_SUPPLY_DIR.is_dir():
            for supply in sorted(POWER_SUPPLY_DIR.iterdir()):
                type_file = supply / "type"
                online_file = supply / "online"
                try:
                    if type_file.read_text().strip() == "Mains" and online_file.exists():
                        return online_file.read_text().strip() == "1"
                except OSError:
                    continue
        return None

    def load_average(self) -> Optional[float]:
        try:
            return float(psutil.getloadavg()[0])
        except (OSError, AttributeError):
            return None

    def idle_seconds(self) -> Optional[float]:
        if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
            return None
        if shutil.which("xprintidle") is None:
            return None
        try:
            result = subprocess.run(["xprintidle"], capture_output=True, text=True, timeout=5, check=False)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0 or not result.stdout.strip().isdigit():
            return None
        return int(result.stdout.strip()) / 1000.0

    def free_disk_gb(self) -> Optional[float]:
        try:
            return psutil.disk_usage(str(self.disk_path)).free / (1024 ** 3)
        except OSError:
            return None

    def battery_percent(self) -> Optional[float]:
        sensors_battery = getattr(psutil, "sensors_battery", None)
        battery = sensors_battery() if sensors_battery is not None else None
        if battery is None:
            return None
        return float(battery.percent)

    def memory_percent(self) -> Optional[float]:
        return float(psutil.virtual_memory().percent)

    def git_active(self) -> Optional[bool]:
        return bool(running_process_names() & GIT_PROCESSES)

    def compilation_active(self) -> Optional[bool]:
        return bool(running_process_names() & COMPILER_PROCESSES)

    def package_manager_active(self) -> Optional[bool]:
        return bool(running_process_names() & PACKAGE_MANAGER_PROCESSES)

    def dev_session_active(self) -> Optional[bool]:
        return bool(running_process_names() & (EDITOR_PROCESSES | COMPILER_PROCESSES | GIT_PROCESSES))


def _compare(observed: float, operator: str, threshold: float) -> bool:
    if operator == "<":
        return observed < threshold
    if operator == "<=":
        return observed <= threshold
    if operator == ">":
        return observed > threshold
    if operator == ">=":
        return observed >= threshold
    return observed == threshold


class PreconditionEvaluator:
    def __init__(self, sensors: Optional[Any] = None) -> None:
        self.sensors = sensors if sensors is not None else SystemSensors()

    def check(self, precondition: Precondition) -> Tuple[bool, Any]:
        definition = PREDICATES[precondition.name]
        reader = getattr(self.sensors, definition.sensor, None)
        observed = reader() if reader is not None else None
        if observed is None:
            if definition.fail_closed:
                return False, None
            logger.debug("Sensor %s unavailable; %s passes.", definition.sensor, precondition.name)
            return True, None
        if definition.kind == "bool":
            return bool(observed) == bool(precondition.threshold), observed
        if definition.kind == "absence":
            return not observed, observed
        return _compare(float(observed), precondition.operator, float(precondition.threshold)), observed

    def evaluate(self, preconditions: Iterable[Precondition]) -> Evaluation:
        observations: Dict[str, Any] = {}
        for precondition in preconditions:
            ok, observed = self.check(precondition)
            observations[precondition.name] = observed
            if not ok:
                if observed is None:
                    reason = f"{precondition.describe()} not met (sensor unavailable)"
                elif isinstance(observed, float):
                    reason = f"{precondition.describe()} not met (observed {observed:.2f})"
                else:
                    reason = f"{precondition.describe()} not met (observed {observed})"
                return Evaluation(passed=False, reason=reason, failed=precondition, observations=observations)
        return Evaluation(passed=True, observations=observations)

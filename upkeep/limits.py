"""
Best-effort resource limits applied to a spawned operation.
"""

from __future__ import annotations

import logging
import os
import re
import resource
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import psutil

from upkeep.config import ensure_int, reject_unknown_keys
from upkeep.errors import ConfigError

logger = logging.getLogger("upkeep.limits")

MEMORY_RE = re.compile(r"^(\d+)\s*([KMGT]?)B?$", re.IGNORECASE)
CPU_RE = re.compile(r"^(\d+)\s*%?$")
MEMORY_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}

DEFAULT_MEMORY = "512M"
DEFAULT_CPU = "50%"
DEFAULT_IO_PRIORITY = 7
DEFAULT_NICE = 10
DEFAULT_TIMEOUT_SECONDS = 1800
DEFAULT_MAX_OPEN_FILES = 4096


def parse_memory(value: Any, field_path: str) -> Optional[int]:
    if value is None or value is False:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    match = MEMORY_RE.match(str(value).strip())
    if not match:
        raise ConfigError(f'Error: {field_path} must look like 512M or 1G, got "{value}".')
    return int(match.group(1)) * MEMORY_UNITS[match.group(2).upper()]


def parse_cpu(value: Any, field_path: str) -> Optional[int]:
    if value is None or value is False:
        return None
    match = CPU_RE.match(str(value).strip())
    if not match or not 1 <= int(match.group(1)) <= 100:
        raise ConfigError(f'Error: {field_path} must be a percentage between 1% and 100%, got "{value}".')
    return int(match.group(1))


def format_memory(value: Optional[int]) -> str:
    if value is None:
        return "unlimited"
    for unit in ("T", "G", "M", "K"):
        if value % MEMORY_UNITS[unit] == 0:
            return f"{value // MEMORY_UNITS[unit]}{unit}"
    return str(value)


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: Optional[int]
    cpu_percent: Optional[int]
    io_priority: Optional[int]
    nice: Optional[int]
    timeout: int
    max_open_files: Optional[int]

    @staticmethod
    def default() -> "ResourceLimits":
        return ResourceLimits(
            memory_bytes=parse_memory(DEFAULT_MEMORY, "memory"),
            cpu_percent=parse_cpu(DEFAULT_CPU, "cpu"),
            io_priority=DEFAULT_IO_PRIORITY,
            nice=DEFAULT_NICE,
            timeout=DEFAULT_TIMEOUT_SECONDS,
            max_open_files=DEFAULT_MAX_OPEN_FILES,
        )

    @staticmethod
    def unlimited(timeout: int = DEFAULT_TIMEOUT_SECONDS) -> "ResourceLimits":
        return ResourceLimits(None, None, None, None, timeout, None)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "memory": format_memory(self.memory_bytes) if self.memory_bytes else None,
            "cpu": f"{self.cpu_percent}%" if self.cpu_percent else None,
            "io_priority": self.io_priority,
            "nice": self.nice,
            "timeout": self.timeout,
            "max_open_files": self.max_open_files,
        }

    def describe(self) -> str:
        return (
            f"memory={format_memory(self.memory_bytes)} cpu={self.cpu_percent or '-'}% "
            f"io_priority={self.io_priority} nice={self.nice} timeout={self.timeout}s"
        )


def parse_resource_limits(raw: Any, field_path: str) -> ResourceLimits:
    defaults = ResourceLimits.default()
    if raw is None:
        return defaults
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    reject_unknown_keys(raw, {"memory", "cpu", "io_priority", "nice", "timeout", "max_open_files"}, field_path)
    io_priority = raw.get("io_priority", defaults.io_priority)
    if io_priority is not None:
        io_priority = ensure_int(io_priority, f"{field_path}.io_priority", DEFAULT_IO_PRIORITY, minimum=0)
        if io_priority > 7:
            raise ConfigError(f"Error: {field_path}.io_priority must be between 0 and 7.")
    nice = raw.get("nice", defaults.nice)
    if nice is not None:
        nice = ensure_int(nice, f"{field_path}.nice", DEFAULT_NICE, minimum=0)
        if nice > 19:
            raise ConfigError(f"Error: {field_path}.nice must be between 0 and 19.")
    max_open_files = raw.get("max_open_files", defaults.max_open_files)
    if max_open_files is not None:
        max_open_files = ensure_int(max_open_files, f"{field_path}.max_open_files", DEFAULT_MAX_OPEN_FILES, minimum=16)
    return ResourceLimits(
        memory_bytes=parse_memory(raw.get("memory", DEFAULT_MEMORY), f"{field_path}.memory"),
        cpu_percent=parse_cpu(raw.get("cpu", DEFAULT_CPU), f"{field_path}.cpu"),
        io_priority=io_priority,
        nice=nice,
        timeout=ensure_int(raw.get("timeout"), f"{field_path}.timeout", DEFAULT_TIMEOUT_SECONDS),
        max_open_files=max_open_files,
    )


class ResourceLimiter:
    """Applies niceness, I/O priority, address-space and fd ceilings to a running pid.

    ``preexec`` applies the limits inside the forked child before the shell is
    exec'd. ``apply`` re-asserts them on the spawned pid and reports which hold.
    """

    def preexec(self, limits: ResourceLimits) -> Callable[[], None]:
        def _limit_child() -> None:
            # runs between fork and exec: no logging, failures are reported by apply()
            if limits.nice is not None:
                _quietly(lambda: os.setpriority(os.PRIO_PROCESS, 0, limits.nice))
            io_class = getattr(psutil, "IOPRIO_CLASS_BE", None)
            if limits.io_priority is not None and io_class is not None:
                _quietly(lambda: psutil.Process(os.getpid()).ionice(io_class, value=limits.io_priority))
            if limits.max_open_files is not None:
                _quietly(lambda: _lower_rlimit(resource.RLIMIT_NOFILE, limits.max_open_files))
            if limits.memory_bytes is not None:
                _quietly(lambda: _lower_rlimit(resource.RLIMIT_AS, limits.memory_bytes))

        return _limit_child

    def apply(self, pid: int, limits: ResourceLimits) -> List[str]:
        applied: List[str] = []
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            logger.warning("Process %s exited before limits could be applied.", pid)
            return applied

        if limits.nice is not None:
            if self._attempt("nice", lambda: proc.nice(limits.nice)):
                applied.append(f"nice={limits.nice}")

        if limits.io_priority is not None:
            io_class = getattr(psutil, "IOPRIO_CLASS_BE", None)
            if io_class is None or not hasattr(proc, "ionice"):
                logger.warning("I/O priority is not supported on this host; skipping.")
            elif self._attempt("ionice", lambda: proc.ionice(io_class, value=limits.io_priority)):
                applied.append(f"ionice=best-effort:{limits.io_priority}")

        if limits.memory_bytes is not None:
            if self._set_rlimit(proc, "RLIMIT_AS", limits.memory_bytes):
                applied.append(f"memory={format_memory(limits.memory_bytes)}")

        if limits.max_open_files is not None:
            if self._set_rlimit(proc, "RLIMIT_NOFILE", limits.max_open_files):
                applied.append(f"nofile={limits.max_open_files}")

        if limits.cpu_percent is not None:
            logger.debug("CPU share %s%% is enforced by the timer unit's CPUQuota.", limits.cpu_percent)
        return applied

    def _set_rlimit(self, proc: psutil.Process, name: str, value: int) -> bool:
        resource_id = getattr(psutil, name, None)
        if resource_id is None or not hasattr(proc, "rlimit"):
            logger.warning("%s is not supported on this host; skipping.", name)
            return False

        def _apply() -> None:
            _soft, hard = proc.rlimit(resource_id)
            ceiling = value if hard in (-1, psutil.RLIM_INFINITY) else min(value, hard)
            proc.rlimit(resource_id, (ceiling, ceiling))

        return self._attempt(name, _apply)

    def _attempt(self, label: str, action: Any) -> bool:
        try:
            action()
            return True
        except (psutil.Error, OSError, ValueError) as exc:
            logger.warning("Could not apply %s limit: %s", label, exc)
            return False


def _lower_rlimit(resource_id: int, value: int) -> None:
    _soft, hard = resource.getrlimit(resource_id)
    ceiling = value if hard == resource.RLIM_INFINITY else min(value, hard)
    resource.setrlimit(resource_id, (ceiling, ceiling))


def _quietly(action: Callable[[], None]) -> None:
    try:
        action()
    except (psutil.Error, OSError, ValueError):
        pass

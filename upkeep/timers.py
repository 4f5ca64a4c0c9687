"""
Binds profiles to systemd user timers.

Each active profile owns ``upkeep-<name>.service`` (a oneshot running
``python -m upkeep run <name> --trigger scheduled``) and ``upkeep-<name>.timer``.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from upkeep import storage
from upkeep.errors import TimerError
from upkeep.limits import format_memory
from upkeep.profiles import Profile
from upkeep.schedule import compile_schedule, next_fire

logger = logging.getLogger("upkeep.timers")

UNIT_PREFIX = "upkeep-"
CONFLICTING_UNITS = ("apt-daily.service", "apt-daily-upgrade.service", "unattended-upgrades.service")
UNSET_VALUES = {"", "n/a", "0"}


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SystemctlRunner:
    def __init__(self, timeout: int = 60) -> None:
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which("systemctl") is not None

    def run(self, args: Sequence[str], system: bool = False) -> CommandResult:
        return self._capture(["systemctl"] + ([] if system else ["--user"]) + list(args))

    def journal(self, unit: str, lines: int = 50) -> CommandResult:
        return self._capture(["journalctl", "--user", "-u", unit, "-n", str(lines), "--no-pager"])

    def _capture(self, argv: List[str]) -> CommandResult:
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            return CommandResult(127, "", str(exc))
        return CommandResult(result.returncode, result.stdout or "", result.stderr or "")


@dataclass
class TimerStatus:
    profile: str
    installed: bool
    enabled: bool = False
    active: bool = False
    next_fire: Optional[str] = None
    last_trigger: Optional[str] = None
    last_result: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "installed": self.installed,
            "enabled": self.enabled,
            "active": self.active,
            "next_fire": self.next_fire,
            "last_trigger": self.last_trigger,
            "last_result": self.last_result,
        }


def service_unit_name(profile_name: str) -> str:
    return f"{UNIT_PREFIX}{profile_name}.service"


def timer_unit_name(profile_name: str) -> str:
    return f"{UNIT_PREFIX}{profile_name}.timer"


def _parse_show(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip()
    return values


def _quote(arg: str) -> str:
    if arg and all(ch.isalnum() or ch in "-_./:=@+" for ch in arg):
        return arg
    return '"' + arg.replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_service_unit(
    profile: Profile,
    python: str,
    config_path: Optional[Path] = None,
    environment: Optional[Dict[str, str]] = None,
) -> str:
    limits = profile.resource_limits
    argv = [python, "-m", "upkeep"]
    if config_path is not None:
        argv += ["--config", str(config_path)]
    argv += ["run", profile.name, "--trigger", "scheduled"]
    lines = [
        "[Unit]",
        f"Description=upkeep maintenance profile {profile.name}",
        "After=network-online.target",
    ]
    if profile.requires_ac_power():
        lines.append("ConditionACPower=true")
    lines += ["", "[Service]", "Type=oneshot", "ExecStart=" + " ".join(_quote(arg) for arg in argv)]
    for key, value in sorted((environment or {}).items()):
        lines.append(f"Environment={_quote(f'{key}={value}')}")
    if limits.nice is not None:
        lines.append(f"Nice={limits.nice}")
    if limits.io_priority is not None:
        lines += ["IOSchedulingClass=best-effort", f"IOSchedulingPriority={limits.io_priority}"]
    if limits.memory_bytes:
        lines.append(f"MemoryMax={format_memory(limits.memory_bytes)}")
    if limits.cpu_percent:
        lines.append(f"CPUQuota={limits.cpu_percent}%")
    lines.append("TimeoutStopSec=300")
    if limits.max_open_files:
        lines.append(f"LimitNOFILE={limits.max_open_files}")
    lines += ["StandardOutput=journal", "StandardError=journal", ""]
    return "\n".join(lines)


def render_timer_unit(profile: Profile) -> str:
    compiled = compile_schedule(profile.schedule, f"{profile.name}.schedule")
    lines = [
        "[Unit]",
        f"Description=upkeep timer for {profile.name} ({compiled.description})",
        "",
        "[Timer]",
    ]
    lines += [f"{key}={value}" for key, value in compiled.timer_directives()]
    lines += [
        "Persistent=true",
        "AccuracySec=1min",
        "RandomizedDelaySec=5min",
        f"Unit={service_unit_name(profile.name)}",
        "",
        "[Install]",
        "WantedBy=timers.target",
        "",
    ]
    return "\n".join(lines)


class TimerBinder:
    def __init__(
        self,
        unit_dir: Path,
        runner: Optional[Any] = None,
        python: Optional[str] = None,
        config_path: Optional[Path] = None,
        event_log: Optional[Any] = None,
    ) -> None:
        self.unit_dir = unit_dir
        self.runner = runner or SystemctlRunner()
        self.python = python or sys.executable
        self.config_path = config_path
        self.event_log = event_log

    def _environment(self) -> Dict[str, str]:
        env = {}
        if os.environ.get("UPKEEP_HOME"):
            env["UPKEEP_HOME"] = os.environ["UPKEEP_HOME"]
        return env

    def _systemctl(self, *args: str) -> CommandResult:
        result = self.runner.run(list(args))
        if not result.ok:
            raise TimerError(f"systemctl --user {' '.join(args)} failed: {result.stderr.strip() or result.returncode}")
        return result

    def unit_paths(self, profile_name: str) -> List[Path]:
        return [self.unit_dir / service_unit_name(profile_name), self.unit_dir / timer_unit_name(profile_name)]

    def is_installed(self, profile_name: str) -> bool:
        return (self.unit_dir / timer_unit_name(profile_name)).is_file()

    def activate(self, profile: Profile) -> List[Path]:
        if not profile.schedule:
            raise TimerError(f"Profile {profile.name} has no schedule.")
        timer_text = render_timer_unit(profile)
        service_text = render_service_unit(profile, self.python, self.config_path, self._environment())
        service_path, timer_path = self.unit_paths(profile.name)
        storage.atomic_write_text(service_path, service_text)
        storage.atomic_write_text(timer_path, timer_text)
        try:
            self._systemctl("daemon-reload")
            self._systemctl("enable", "--now", timer_unit_name(profile.name))
        except TimerError:
            for path in (service_path, timer_path):
                path.unlink(missing_ok=True)
            self.runner.run(["daemon-reload"])
            raise
        logger.info("Activated timer %s (%s)", timer_unit_name(profile.name), profile.schedule)
        self._record("ACTIVATE", profile.name)
        return [service_path, timer_path]

    def deactivate(self, profile_name: str) -> None:
        result = self.runner.run(["disable", "--now", timer_unit_name(profile_name)])
        if not result.ok:
            logger.warning("Could not disable %s: %s", timer_unit_name(profile_name), result.stderr.strip())
        for path in self.unit_paths(profile_name):
            path.unlink(missing_ok=True)
        self._systemctl("daemon-reload")
        logger.info("Deactivated timer %s", timer_unit_name(profile_name))
        self._record("DEACTIVATE", profile_name)

    def _record(self, action: str, profile_name: str) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.record_profile_event(action, profile_name)
        except OSError as exc:
            logger.error("Could not record %s of %s: %s", action, profile_name, exc)

    def status(self, profile: Profile) -> TimerStatus:
        status = TimerStatus(profile=profile.name, installed=self.is_installed(profile.name))
        if status.installed:
            timer = self.runner.run(
                [
                    "show",
                    timer_unit_name(profile.name),
                    "-p",
                    "UnitFileState,ActiveState,NextElapseUSecRealtime,LastTriggerUSec",
                ]
            )
            if timer.ok:
                values = _parse_show(timer.stdout)
                status.enabled = values.get("UnitFileState") == "enabled"
                status.active = values.get("ActiveState") == "active"
                if values.get("NextElapseUSecRealtime", "") not in UNSET_VALUES:
                    status.next_fire = values["NextElapseUSecRealtime"]
                if values.get("LastTriggerUSec", "") not in UNSET_VALUES:
                    status.last_trigger = values["LastTriggerUSec"]
            service = self.runner.run(["show", service_unit_name(profile.name), "-p", "Result"])
            if service.ok:
                status.last_result = _parse_show(service.stdout).get("Result") or None
        if status.next_fire is None:
            preview = next_fire(profile.compiled_schedule)
            if preview is not None:
                status.next_fire = preview.strftime("%Y-%m-%d %H:%M %Z") + " (estimated)"
        return status

    def list(self) -> List[str]:
        if not self.unit_dir.is_dir():
            return []
        suffix = ".timer"
        return sorted(
            path.name[len(UNIT_PREFIX) : -len(suffix)] for path in self.unit_dir.glob(f"{UNIT_PREFIX}*{suffix}")
        )

    def logs(self, profile_name: str, lines: int = 50) -> str:
        unit = service_unit_name(profile_name)
        result = self.runner.journal(unit, lines)
        if not result.ok:
            raise TimerError(f"journalctl --user -u {unit} failed: {result.stderr.strip() or result.returncode}")
        return result.stdout

    def reset_failed(self) -> List[str]:
        result = self.runner.run(["list-units", "--state=failed", "--type=service", "--plain", "--no-legend"])
        if not result.ok:
            return []
        reset = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if not fields or not fields[0].startswith(UNIT_PREFIX):
                continue
            if self.runner.run(["reset-failed", fields[0]]).ok:
                reset.append(fields[0])
        if reset:
            logger.info("Reset failed units: %s", ", ".join(reset))
        return reset

    def check_conflicts(self) -> List[str]:
        """System maintenance units that are running right now."""
        return [
            unit for unit in CONFLICTING_UNITS if self.runner.run(["is-active", "--quiet", unit], system=True).ok
        ]


def describe_next_fire(profile: Profile, after: Optional[datetime] = None) -> Optional[str]:
    preview = next_fire(profile.compiled_schedule, after)
    return preview.strftime("%Y-%m-%d %H:%M") if preview is not None else None

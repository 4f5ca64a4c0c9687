from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import pytest

from upkeep.config import (
    BackupSettings,
    ExecutorSettings,
    NotificationSettings,
    Paths,
    SafetySettings,
    Settings,
)
from upkeep.scheduler import Scheduler
from upkeep.timers import CommandResult, TimerBinder


class FakeSensors:
    """Sensor readings keyed by method name; a missing key reads as unavailable."""

    def __init__(self, **readings: Any) -> None:
        self.readings: Dict[str, Any] = {
            "load_average": 0.1,
            "memory_percent": 20.0,
            "package_manager_active": False,
            "dev_session_active": False,
        }
        self.readings.update(readings)

    def __getattr__(self, name: str) -> Callable[[], Any]:
        readings = self.__dict__.get("readings", {})
        if name in readings:
            return lambda: readings[name]
        raise AttributeError(name)


class FakeServiceController:
    def __init__(self, states: Optional[Dict[str, str]] = None, active: Optional[Set[str]] = None) -> None:
        self.states = dict(states or {})
        self.active = set(active or ())

    def is_enabled(self, unit: str) -> str:
        return self.states.get(unit, "not-found")

    def is_active(self, unit: str) -> bool:
        return unit in self.active

    def set_state(self, unit: str, state: str) -> None:
        self.states[unit] = state


class FakeSystemctl:
    def __init__(self) -> None:
        self.calls: List[Tuple[Tuple[str, ...], bool]] = []
        self.failures: Set[str] = set()
        self.outputs: Dict[Tuple[str, str], str] = {}
        self.active_system_units: Set[str] = set()
        self.journal_output: Dict[str, str] = {}

    def available(self) -> bool:
        return True

    def run(self, args: Sequence[str], system: bool = False) -> CommandResult:
        argv = tuple(args)
        self.calls.append((argv, system))
        verb = argv[0]
        if verb in self.failures:
            return CommandResult(1, "", f"{verb} failed")
        if verb == "is-active":
            return CommandResult(0 if argv[-1] in self.active_system_units else 3)
        key = (verb, argv[1] if len(argv) > 1 else "")
        return CommandResult(0, self.outputs.get(key, ""), "")

    def journal(self, unit: str, lines: int = 50) -> CommandResult:
        self.calls.append((("journal", unit, str(lines)), False))
        if unit not in self.journal_output:
            return CommandResult(1, "", "No journal files were found.")
        return CommandResult(0, self.journal_output[unit], "")

    def verbs(self) -> List[str]:
        return [argv[0] for argv, _system in self.calls]


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("UPKEEP_HOME", str(tmp_path / "home"))
    for name in ("UPKEEP_CONFIG", "UPKEEP_RUN_ID", "UPKEEP_JOB_NAME", "UPKEEP_PROFILE", "UPKEEP_METRICS_FILE"):
        monkeypatch.delenv(name, raising=False)
    yield
    logger = logging.getLogger("upkeep")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def app_config(home: Path) -> Path:
    """A tracked configuration directory with a nested file."""
    path = home / ".config" / "app"
    (path / "conf.d").mkdir(parents=True)
    (path / "settings.ini").write_text("[main]\nvalue = 1\n", encoding="utf-8")
    (path / "conf.d" / "extra.conf").write_text("extra = yes\n", encoding="utf-8")
    return path


@pytest.fixture
def settings(home: Path, app_config: Path) -> Settings:
    return Settings(
        paths=Paths.default(home),
        notifications=NotificationSettings(desktop_enabled=False),
        backup=BackupSettings(config_paths=[app_config], package_state=False, retention=5),
        safety=SafetySettings(),
        executor=ExecutorSettings(grace_seconds=1.0, sample_interval=0.05),
    )


@pytest.fixture
def sensors() -> FakeSensors:
    return FakeSensors()


@pytest.fixture
def services() -> FakeServiceController:
    return FakeServiceController()


@pytest.fixture
def systemctl() -> FakeSystemctl:
    return FakeSystemctl()


@pytest.fixture
def make_scheduler(
    settings: Settings,
    sensors: FakeSensors,
    services: FakeServiceController,
    systemctl: FakeSystemctl,
) -> Callable[..., Scheduler]:
    def _make(custom: Optional[Settings] = None, **collaborators: Any) -> Scheduler:
        effective = custom or settings
        collaborators.setdefault("binder", TimerBinder(effective.paths.unit_dir, runner=systemctl, python="/usr/bin/python3"))
        collaborators.setdefault("service_controller", services)
        collaborators.setdefault("sensors", sensors)
        scheduler = Scheduler(effective, **collaborators)
        if scheduler.binder.event_log is None:
            scheduler.binder.event_log = scheduler.history
        scheduler.bootstrap()
        return scheduler

    return _make

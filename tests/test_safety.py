from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

from upkeep.config import NotificationSettings, Settings
from upkeep.errors import IntegrityCheckFailed, LockBusy, PostVerificationFailed, PreconditionNotMet, RollbackFailed
from upkeep.history import HistoryStore
from upkeep.notify import NotificationDispatcher
from upkeep.profiles import Profile
from upkeep.safety import GuardResult, GuardState, InvalidTransition
from upkeep.scheduler import Scheduler

UTC = timezone.utc


def _save_profile(scheduler: Scheduler, name: str, operations: List[Any], **extra: Any) -> Profile:
    payload: Dict[str, Any] = {
        "name": name,
        "schedule": "daily 03:00",
        "operations": operations,
        "resource_limits": {"memory": None, "cpu": None, "timeout": 30},
    }
    payload.update(extra)
    return scheduler.registry.save(payload)


def _with_safety(settings: Settings, **changes: Any) -> Settings:
    return replace(settings, safety=replace(settings.safety, **changes))


def _states(result: GuardResult) -> List[str]:
    return [state.value for state in result.transitions]


def test_successful_run_walks_every_phase(make_scheduler: Callable[..., Scheduler], tmp_path: Path) -> None:
    scheduler = make_scheduler()
    marker = tmp_path / "ran.txt"
    profile = _save_profile(scheduler, "tidy", [{"name": "touch", "command": f"touch {marker}"}])

    result = scheduler.guard.execute(profile)

    assert _states(result) == ["idle", "pre_checking", "snapshotting", "running", "post_verifying", "committed"]
    assert result.status == "success"
    assert result.exit_code == 0
    assert marker.exists()
    assert result.snapshot_id is not None
    assert scheduler.backup.get(result.snapshot_id).metadata["profile"] == "tidy"
    assert [outcome.job_name for outcome in result.outcomes] == ["tidy.touch"]
    assert scheduler.locks.list() == []


def test_invalid_transition_is_rejected() -> None:
    result = GuardResult(profile="tidy", trigger="manual", started_at=datetime.now(tz=UTC))
    with pytest.raises(InvalidTransition, match="idle -> running"):
        result.advance(GuardState.RUNNING)
    result.advance(GuardState.PRE_CHECKING)
    result.advance(GuardState.SKIPPED)
    with pytest.raises(InvalidTransition):
        result.advance(GuardState.RUNNING)
    assert result.finished


def test_held_profile_lock_skips_run(make_scheduler: Callable[..., Scheduler]) -> None:
    scheduler = make_scheduler()
    profile = _save_profile(scheduler, "tidy", [{"name": "noop", "command": "true"}])
    handle = scheduler.locks.acquire("tidy")
    try:
        result = scheduler.guard.execute(profile)
    finally:
        scheduler.locks.release(handle)

    assert _states(result) == ["idle", "skipped"]
    assert isinstance(result.error, LockBusy)
    assert result.exit_code == 0


def test_missing_essential_command_aborts(make_scheduler: Callable[..., Scheduler], settings: Settings, tmp_path: Path) -> None:
    scheduler = make_scheduler(_with_safety(settings, essential_commands=["sh", "upkeep-no-such-command"]))
    marker = tmp_path / "ran.txt"
    profile = _save_profile(scheduler, "tidy", [{"name": "touch", "command": f"touch {marker}"}])

    result = scheduler.guard.execute(profile)

    assert _states(result) == ["idle", "pre_checking", "aborted"]
    assert isinstance(result.error, IntegrityCheckFailed)
    assert "essential command missing: upkeep-no-such-command" in result.reason
    assert result.exit_code == 1
    assert not marker.exists()
    assert scheduler.backup.list() == []


def test_inactive_critical_service_aborts(make_scheduler: Callable[..., Scheduler], settings: Settings, services: Any) -> None:
    scheduler = make_scheduler(_with_safety(settings, critical_services=["db.service"]))
    profile = _save_profile(scheduler, "tidy", [{"name": "noop", "command": "true"}])

    aborted = scheduler.guard.execute(profile)
    assert aborted.state == GuardState.ABORTED
    assert "critical service inactive: db.service" in aborted.reason

    services.active.add("db.service")
    assert scheduler.guard.execute(profile).state == GuardState.COMMITTED


def test_load_ceiling_follows_safety_level(
    make_scheduler: Callable[..., Scheduler], settings: Settings, sensors: Any
) -> None:
    sensors.readings["load_average"] = 3.0
    standard = make_scheduler()
    profile = _save_profile(standard, "tidy", [{"name": "noop", "command": "true"}])

    skipped = standard.guard.execute(profile)
    assert skipped.state == GuardState.SKIPPED
    assert isinstance(skipped.error, PreconditionNotMet)
    assert "exceeds the standard ceiling 2.0" in skipped.reason
    assert skipped.exit_code == 0

    aggressive = make_scheduler(_with_safety(settings, level="aggressive"))
    assert aggressive.guard.execute(profile).state == GuardState.COMMITTED


def test_package_operations_wait_for_package_manager(make_scheduler: Callable[..., Scheduler], sensors: Any) -> None:
    scheduler = make_scheduler()
    profile = _save_profile(scheduler, "pkgs", [{"name": "apt_cache", "command": "true"}])
    assert profile.touches_packages
    sensors.readings["package_manager_active"] = True

    result = scheduler.guard.execute(profile)

    assert result.state == GuardState.SKIPPED
    assert result.reason == "a package manager is running"


def test_development_operations_wait_for_idle_session(make_scheduler: Callable[..., Scheduler], sensors: Any) -> None:
    scheduler = make_scheduler()
    profile = _save_profile(scheduler, "dev", [{"name": "build_cache", "command": "true"}])
    sensors.readings["dev_session_active"] = True

    assert scheduler.guard.execute(profile).reason == "an interactive development session is active"


def test_dry_run_performs_checks_only(make_scheduler: Callable[..., Scheduler], settings: Settings, tmp_path: Path) -> None:
    scheduler = make_scheduler(_with_safety(settings, dry_run=True))
    marker = tmp_path / "ran.txt"
    profile = _save_profile(
        scheduler,
        "tidy",
        [{"name": "touch", "command": f"touch {marker}"}, {"name": "noop", "command": "true"}],
    )

    result = scheduler.guard.execute(profile)

    assert _states(result) == ["idle", "pre_checking", "committed"]
    assert result.status == "skipped"
    assert result.exit_code == 0
    assert result.reason == "dry run: touch, noop"
    assert result.outcomes == []
    assert not marker.exists()
    assert scheduler.backup.list() == []


def test_dry_run_is_recorded_as_skipped(make_scheduler: Callable[..., Scheduler], settings: Settings) -> None:
    scheduler = make_scheduler(_with_safety(settings, dry_run=True))
    _save_profile(scheduler, "tidy", [{"name": "noop", "command": "true"}])

    run = scheduler.run("tidy")

    assert (run.exit_code, run.status) == (0, "skipped")
    [record] = scheduler.history_records(profile="tidy")
    assert record.status == "skipped"
    assert record.snapshot_id is None
    assert record.details == "dry run: noop"
    stats, _trend, _notifications = scheduler.stats(30)
    assert stats.total_runs == 0
    assert stats.skipped == 1
    assert stats.success_rate == 0.0


def test_busy_operation_is_skipped_not_failed(make_scheduler: Callable[..., Scheduler]) -> None:
    scheduler = make_scheduler()
    _save_profile(scheduler, "tidy", [{"name": "held", "command": "true"}, {"name": "noop", "command": "true"}])
    handle = scheduler.locks.acquire("tidy.held")
    try:
        run = scheduler.run("tidy")
    finally:
        scheduler.locks.release(handle)

    assert run.guard.skipped_operations == ["held"]
    assert run.guard.failed_operations == []
    assert (run.status, run.exit_code) == ("success", 0)
    statuses = {r.operation_type: r.status for r in scheduler.history_records(profile="tidy")}
    assert statuses == {"held": "skipped", "noop": "success", "profile_run": "success"}


def test_skip_backup_goes_straight_to_running(make_scheduler: Callable[..., Scheduler], settings: Settings) -> None:
    scheduler = make_scheduler(_with_safety(settings, skip_backup=True))
    profile = _save_profile(scheduler, "tidy", [{"name": "noop", "command": "true"}])

    result = scheduler.guard.execute(profile)

    assert _states(result) == ["idle", "pre_checking", "running", "post_verifying", "committed"]
    assert result.snapshot_id is None


def test_failure_stops_remaining_operations_without_continue_on_error(
    make_scheduler: Callable[..., Scheduler], tmp_path: Path
) -> None:
    scheduler = make_scheduler()
    marker = tmp_path / "second.txt"
    profile = _save_profile(
        scheduler,
        "strict",
        [{"name": "first", "command": "exit 4"}, {"name": "second", "command": f"touch {marker}"}],
        continue_on_error=False,
    )

    result = scheduler.guard.execute(profile)

    assert result.state == GuardState.COMMITTED
    assert result.status == "failed"
    assert result.failed_operations == ["first"]
    assert result.reason == "first: exit code 4"
    assert result.exit_code == 1
    assert not marker.exists()


def test_continue_on_error_runs_everything(make_scheduler: Callable[..., Scheduler], tmp_path: Path) -> None:
    scheduler = make_scheduler()
    marker = tmp_path / "second.txt"
    profile = _save_profile(
        scheduler,
        "lenient",
        [{"name": "first", "command": "exit 4"}, {"name": "second", "command": f"touch {marker}"}],
    )

    result = scheduler.guard.execute(profile)

    assert result.status == "failed"
    assert result.failed_operations == ["first"]
    assert result.exit_code == 0
    assert marker.exists()


def test_post_verification_failure_rolls_back(
    make_scheduler: Callable[..., Scheduler], settings: Settings, app_config: Path
) -> None:
    history = HistoryStore(settings.paths.history_dir)
    notifier = NotificationDispatcher(settings.notifications, [], event_log=history)
    scheduler = make_scheduler(history=history, notifier=notifier)
    tracked = app_config / "settings.ini"
    _save_profile(scheduler, "breaker", [{"name": "remove", "command": f"rm {tracked}"}])

    run = scheduler.run("breaker")

    guard = run.guard
    assert guard is not None
    assert _states(guard)[-3:] == ["post_verifying", "rolling_back", "rolled_back"]
    assert isinstance(guard.error, PostVerificationFailed)
    assert guard.restore is not None and guard.restore.snapshot_id == guard.snapshot_id
    assert tracked.read_text(encoding="utf-8") == "[main]\nvalue = 1\n"
    assert run.exit_code == 1

    record = history.last_run("breaker")
    assert record is not None
    assert record.status == "failed"
    assert record.details.startswith("rolled_back: tracked configuration missing")
    events = history.events()
    assert [event["level"] for event in events] == ["ERROR"]
    assert events[0]["delivered"] == []


def test_rollback_failure_escalates_critical(
    make_scheduler: Callable[..., Scheduler], settings: Settings, tmp_path: Path
) -> None:
    flag = tmp_path / "essential.flag"
    flag.write_text("present\n", encoding="utf-8")
    quiet = replace(
        _with_safety(settings, essential_paths=[flag]),
        notifications=NotificationSettings(enabled=False, desktop_enabled=False),
    )
    scheduler = make_scheduler(quiet)
    _save_profile(scheduler, "breaker", [{"name": "remove", "command": f"rm {flag}"}])

    run = scheduler.run("breaker")

    guard = run.guard
    assert guard is not None
    assert guard.state == GuardState.ROLLBACK_FAILED
    assert isinstance(guard.error, RollbackFailed)
    assert guard.emergency_snapshot_id is not None
    assert guard.snapshot_id in [point.id for point in scheduler.backup.list()]
    assert run.exit_code == 1
    events = scheduler.history.events()
    assert [event["level"] for event in events] == ["CRITICAL"]
    assert "Operator intervention required" in events[0]["message"]
    log_text = (settings.paths.logs_dir / "notifications.log").read_text(encoding="utf-8")
    assert "[CRITICAL] [breaker] Rollback failed for breaker" in log_text


def test_rollback_without_snapshot_fails(make_scheduler: Callable[..., Scheduler], settings: Settings, tmp_path: Path) -> None:
    flag = tmp_path / "essential.flag"
    flag.write_text("present\n", encoding="utf-8")
    scheduler = make_scheduler(_with_safety(settings, essential_paths=[flag], skip_backup=True))
    profile = _save_profile(scheduler, "breaker", [{"name": "remove", "command": f"rm {flag}"}])

    result = scheduler.guard.execute(profile)

    assert result.state == GuardState.ROLLBACK_FAILED
    assert "no snapshot available to restore" in result.reason
    assert result.restore is None

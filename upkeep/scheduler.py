"""
Entry point composing the registry, timers, safety guard, history and notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from upkeep.backup import BackupManager, RestoreResult, SnapshotPoint, SystemctlServiceController
from upkeep.config import Settings, log_level_number
from upkeep.errors import ProfileError, UpkeepError
from upkeep.executor import BackgroundJobExecutor, ExecutionOutcome
from upkeep.history import (
    RUN_OPERATION,
    VALID_TRIGGERS,
    ExecutionRecord,
    HistoryStore,
    Statistics,
    Suggestion,
    Trend,
)
from upkeep.limits import ResourceLimiter
from upkeep.locks import JobLockManager
from upkeep.notify import Level, NotificationDispatcher, NotificationEvent, build_channels
from upkeep.preconditions import PreconditionEvaluator
from upkeep.profiles import Profile, ProfileRegistry, operation_kinds, suggest_profile
from upkeep.safety import GuardResult, GuardState, SafetyGuard
from upkeep.state import SchedulerState, StateStore
from upkeep.timers import TimerBinder, TimerStatus, timer_unit_name

logger = logging.getLogger("upkeep.scheduler")
UTC = timezone.utc

OUTCOME_STATUS = {"busy": "skipped"}
NOTIFY_LEVELS = {
    "success": Level.INFO,
    "skipped": Level.INFO,
    "stopped": Level.WARN,
    "failed": Level.ERROR,
    "crashed": Level.ERROR,
}


@dataclass
class RunResult:
    profile: str
    exit_code: int
    status: str
    reason: str = ""
    guard: Optional[GuardResult] = None


@dataclass
class StatusReport:
    state: SchedulerState
    profiles: List[Dict[str, Any]] = field(default_factory=list)
    timers: List[TimerStatus] = field(default_factory=list)
    locks: List[Dict[str, Any]] = field(default_factory=list)
    recent_runs: List[ExecutionRecord] = field(default_factory=list)
    snapshots: List[SnapshotPoint] = field(default_factory=list)


@dataclass
class MaintenanceReport:
    reclaimed_locks: List[Dict[str, Any]] = field(default_factory=list)
    reset_units: List[str] = field(default_factory=list)
    compacted: Dict[str, int] = field(default_factory=dict)
    pruned_logs: int = 0
    pruned_snapshots: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)


class Scheduler:
    def __init__(
        self,
        settings: Settings,
        state: Optional[StateStore] = None,
        history: Optional[HistoryStore] = None,
        registry: Optional[ProfileRegistry] = None,
        binder: Optional[TimerBinder] = None,
        locks: Optional[JobLockManager] = None,
        evaluator: Optional[PreconditionEvaluator] = None,
        executor: Optional[BackgroundJobExecutor] = None,
        backup: Optional[BackupManager] = None,
        notifier: Optional[NotificationDispatcher] = None,
        service_controller: Optional[Any] = None,
        sensors: Optional[Any] = None,
    ) -> None:
        paths = settings.paths
        self.settings = settings
        self.state = state or StateStore(paths.state_file)
        self.history = history or HistoryStore(
            paths.history_dir,
            settings.history.retention_days,
            settings.history.notification_retention_days,
            reports_dir=paths.reports_dir,
        )
        self.history.init()
        self.registry = registry or ProfileRegistry(
            paths.user_profiles_dir,
            paths.system_profiles_dir,
            kinds=operation_kinds(settings.operations),
            is_active=self.is_active,
        )
        self.binder = binder or TimerBinder(paths.unit_dir, config_path=settings.config_path, event_log=self.history)
        self.locks = locks or JobLockManager(paths.locks_dir)
        self.evaluator = evaluator or PreconditionEvaluator(sensors)
        self.executor = executor or BackgroundJobExecutor(
            self.locks,
            self.evaluator,
            paths.logs_dir,
            limiter=ResourceLimiter(),
            settings=settings.executor,
        )
        self.service_controller = service_controller or SystemctlServiceController(user=settings.backup.user_services)
        if backup is not None:
            self.backup: Optional[BackupManager] = backup
        elif settings.backup.enabled:
            self.backup = BackupManager(
                paths.snapshots_dir,
                paths.staging_dir,
                config_paths=settings.backup.config_paths,
                user_data_paths=settings.backup.user_data_paths,
                services=settings.backup.services,
                retention=settings.backup.retention,
                package_state=settings.backup.package_state,
                service_controller=self.service_controller,
                installation_paths=self._installation_paths,
                tracked_units=self._tracked_units,
            )
        else:
            self.backup = None
        self.notifier = notifier or NotificationDispatcher(
            settings.notifications,
            build_channels(settings.notifications, paths.logs_dir / "notifications.log"),
            event_log=self.history,
        )
        self.guard = SafetyGuard(
            settings.safety,
            self.locks,
            self.evaluator,
            self.executor,
            self.backup,
            self.notifier,
            self.service_controller,
        )

    def _installation_paths(self) -> List[Path]:
        paths: List[Path] = []
        for name in self.binder.list():
            paths.extend(self.binder.unit_paths(name))
        return paths

    def _tracked_units(self) -> List[str]:
        return [timer_unit_name(name) for name in self.binder.list()]

    def is_active(self, name: str) -> bool:
        return self.state.load().is_active(name)

    # -- profiles ---------------------------------------------------------

    def bootstrap(self) -> List[str]:
        return self.registry.bootstrap_defaults()

    def profiles(self) -> List[Profile]:
        return self.registry.list()

    def enable(self, name: str) -> Profile:
        profile = self.registry.get(name)
        self.binder.activate(profile)
        self.state.set_active(name, True)
        logger.info("Enabled profile %s (%s)", name, profile.schedule)
        return profile

    def disable(self, name: str) -> None:
        if not self.is_active(name) and not self.binder.is_installed(name):
            raise ProfileError(f"Profile {name} is not enabled.")
        self.binder.deactivate(name)
        self.state.set_active(name, False)
        logger.info("Disabled profile %s", name)

    def delete(self, name: str) -> None:
        self.registry.delete(name)

    # -- runs -------------------------------------------------------------

    def run(self, name: str, force: bool = False, trigger: str = "manual") -> RunResult:
        if trigger not in VALID_TRIGGERS:
            raise UpkeepError(f"Invalid trigger: {trigger}")
        profile = self.registry.get(name)
        if trigger == "scheduled" and not self.is_active(name):
            reason = f"profile {name} is not enabled; refusing scheduled run"
            logger.error(reason)
            return RunResult(name, 1, "refused", reason)

        self.state.touch_check()
        upkeep_logger = logging.getLogger("upkeep")
        previous_level = upkeep_logger.level
        upkeep_logger.setLevel(log_level_number(profile.log_level))
        try:
            guard = self.guard.execute(profile, force=force, trigger=trigger)
        finally:
            upkeep_logger.setLevel(previous_level)

        self._record(profile, guard)
        self._notify(profile, guard)
        return RunResult(name, guard.exit_code, guard.status, guard.reason, guard)

    def _operation_record(self, profile: Profile, guard: GuardResult, outcome: ExecutionOutcome) -> ExecutionRecord:
        status = OUTCOME_STATUS.get(outcome.status, outcome.status)
        details = outcome.reason
        if outcome.log_path is not None:
            details = f"{details} (log: {outcome.log_path})" if details else f"log: {outcome.log_path}"
        return ExecutionRecord(
            timestamp=outcome.started_at,
            operation_type=outcome.job_name.split(".", 1)[-1],
            profile=profile.name,
            status=status,
            trigger=guard.trigger,
            duration_seconds=round(outcome.duration_seconds, 3),
            space_freed_bytes=outcome.space_freed_bytes,
            files_processed=outcome.files_processed,
            error_count=outcome.error_count,
            snapshot_id=guard.snapshot_id,
            details=details,
        )

    def _record(self, profile: Profile, guard: GuardResult) -> None:
        records = [self._operation_record(profile, guard, outcome) for outcome in guard.outcomes]
        details = guard.reason or guard.state.value
        if guard.state not in (GuardState.COMMITTED, GuardState.SKIPPED):
            details = f"{guard.state.value}: {details}"
        records.append(
            ExecutionRecord(
                timestamp=guard.started_at,
                operation_type=RUN_OPERATION,
                profile=profile.name,
                status=guard.status,
                trigger=guard.trigger,
                duration_seconds=round(guard.duration_seconds, 3),
                space_freed_bytes=guard.space_freed_bytes,
                files_processed=guard.files_processed,
                error_count=guard.error_count,
                system_load_at_start=guard.load_at_start,
                memory_usage_at_start=guard.memory_at_start,
                snapshot_id=guard.snapshot_id,
                details=details,
            )
        )
        self.history.record_many(records)

    def _notify(self, profile: Profile, guard: GuardResult) -> None:
        if guard.state == GuardState.ROLLBACK_FAILED:
            return  # already escalated as CRITICAL by the guard
        level = NOTIFY_LEVELS.get(guard.status, Level.ERROR)
        threshold = profile.notify_threshold if profile.notifications else "ERROR"
        if guard.state == GuardState.ROLLED_BACK:
            title = f"{profile.name} maintenance rolled back"
            message = f"{guard.reason}. Restored snapshot {guard.snapshot_id}."
        elif guard.status == "success":
            title = f"{profile.name} maintenance completed"
            message = (
                f"{len(guard.outcomes)} operation(s) in {guard.duration_seconds:.1f}s, "
                f"{guard.space_freed_bytes} bytes freed"
            )
        else:
            title = f"{profile.name} maintenance {guard.status}"
            message = guard.reason or guard.state.value
        self.notifier.send(level, title, message, operation=profile.name, threshold=threshold)

    def stop(self, name: str) -> str:
        result = self.executor.stop(name)
        logger.info("Stop %s: %s", name, result)
        return result

    def timer_logs(self, name: str, lines: int = 50) -> str:
        self.registry.get(name)
        return self.binder.logs(name, lines)

    def test_notifications(self) -> Optional[NotificationEvent]:
        return self.notifier.test()

    # -- reporting --------------------------------------------------------

    def status(self) -> StatusReport:
        state = self.state.load()
        report = StatusReport(state=state)
        for profile in self.registry.list():
            last = self.history.last_run(profile.name)
            report.profiles.append(
                {
                    "name": profile.name,
                    "tier": profile.tier,
                    "schedule": profile.schedule,
                    "active": state.is_active(profile.name),
                    "operations": [op.name for op in profile.operations],
                    "last_run": last.timestamp.isoformat() if last else None,
                    "last_status": last.status if last else None,
                }
            )
            if state.is_active(profile.name) or self.binder.is_installed(profile.name):
                report.timers.append(self.binder.status(profile))
        report.locks = self.locks.list()
        report.recent_runs = self.history.query(operation_type=RUN_OPERATION)[-10:]
        report.snapshots = self.backup.list() if self.backup is not None else []
        return report

    def history_records(
        self,
        profile: Optional[str] = None,
        days: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[ExecutionRecord]:
        return self.history.query(days=days, profile=profile, status=status)

    def stats(self, days: int = 30) -> Tuple[Statistics, Trend, Dict[str, Dict[str, int]]]:
        return self.history.statistics(days), self.history.trend(), self.notifier.stats(days)

    def report(self, days: int = 30, save: bool = False) -> Tuple[str, Optional[Path]]:
        if save:
            path = self.history.write_report(days)
            return path.read_text(encoding="utf-8"), path
        return self.history.report(days), None

    def suggest(self, days: int = 30) -> Tuple[Tuple[str, str], List[Suggestion]]:
        return suggest_profile(), self.history.suggestions(days)

    def export(self, path: Path, fmt: str = "json", days: Optional[int] = None) -> int:
        return self.history.export(path, fmt, days)

    # -- snapshots --------------------------------------------------------

    def _require_backup(self) -> BackupManager:
        if self.backup is None:
            raise UpkeepError("Backups are disabled (backup.enabled: false).")
        return self.backup

    def snapshots(self) -> List[SnapshotPoint]:
        return self._require_backup().list()

    def snapshot(self, label: str = "manual", description: str = "") -> SnapshotPoint:
        return self._require_backup().snapshot(label, description or "Manual snapshot")

    def rollback(self, snapshot_id: str) -> RestoreResult:
        result = self._require_backup().restore(snapshot_id)
        self.notifier.send(
            Level.WARN,
            f"Restored snapshot {snapshot_id}",
            f"{len(result.manual_steps)} manual step(s) listed in {result.staging_dir / 'RESTORE.txt'}",
            operation="rollback",
        )
        return result

    # -- housekeeping -----------------------------------------------------

    def maintenance(self) -> MaintenanceReport:
        report = MaintenanceReport()
        report.reclaimed_locks = self.locks.sweep()
        crashed = []
        now = datetime.now(tz=UTC)
        for record in report.reclaimed_locks:
            job_name = str(record.get("job_name", ""))
            if not job_name or "." in job_name:
                continue
            crashed.append(
                ExecutionRecord(
                    timestamp=now,
                    operation_type=RUN_OPERATION,
                    profile=job_name,
                    status="crashed",
                    trigger="manual",
                    details=f"stale lock from {record.get('owner_id')} acquired {record.get('acquired_at')}",
                )
            )
        if crashed:
            self.history.record_many(crashed)
            for record in crashed:
                self.notifier.send(
                    Level.ERROR,
                    f"{record.profile} run crashed",
                    record.details,
                    operation=record.profile,
                )
        report.reset_units = self.binder.reset_failed()
        report.compacted = self.history.compact()
        report.pruned_logs = self.executor.prune_logs()
        if self.backup is not None:
            report.pruned_snapshots = self.backup.prune()
        report.conflicts = self.binder.check_conflicts()
        if report.conflicts:
            logger.warning("System maintenance units active: %s", ", ".join(report.conflicts))
        self.state.record_maintenance()
        return report

"""
Safety envelope around one profile run.

The guard walks a validated state machine: pre-checks, snapshot, operations,
post-verification, and restore from the snapshot when verification fails.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from upkeep import reporting
from upkeep.backup import BackupManager, RestoreResult, SnapshotPoint
from upkeep.config import SafetySettings
from upkeep.errors import (
    IntegrityCheckFailed,
    LockBusy,
    OperationFailed,
    PostVerificationFailed,
    PreconditionNotMet,
    RollbackFailed,
    SnapshotFailed,
    UpkeepError,
)
from upkeep.executor import STATUS_BUSY, BackgroundJobExecutor, ExecutionOutcome, make_run_id
from upkeep.locks import JobLockManager
from upkeep.notify import Level
from upkeep.preconditions import PreconditionEvaluator
from upkeep.profiles import Profile

logger = logging.getLogger("upkeep.safety")
UTC = timezone.utc

# (max load average, max memory percent) before a run is deferred
SAFETY_LEVELS: Dict[str, Tuple[float, float]] = {
    "conservative": (1.0, 80.0),
    "standard": (2.0, 90.0),
    "aggressive": (4.0, 95.0),
}


class GuardState(str, Enum):
    IDLE = "idle"
    PRE_CHECKING = "pre_checking"
    SNAPSHOTTING = "snapshotting"
    RUNNING = "running"
    POST_VERIFYING = "post_verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"


TRANSITIONS: Dict[GuardState, Tuple[GuardState, ...]] = {
    GuardState.IDLE: (GuardState.PRE_CHECKING, GuardState.SKIPPED, GuardState.ABORTED),
    GuardState.PRE_CHECKING: (
        GuardState.SNAPSHOTTING,
        GuardState.RUNNING,
        GuardState.COMMITTED,
        GuardState.SKIPPED,
        GuardState.ABORTED,
    ),
    GuardState.SNAPSHOTTING: (GuardState.RUNNING, GuardState.ABORTED),
    GuardState.RUNNING: (GuardState.POST_VERIFYING, GuardState.ABORTED),
    GuardState.POST_VERIFYING: (GuardState.COMMITTED, GuardState.ROLLING_BACK, GuardState.ABORTED),
    GuardState.ROLLING_BACK: (GuardState.ROLLED_BACK, GuardState.ROLLBACK_FAILED, GuardState.ABORTED),
}
TERMINAL_STATES = {
    GuardState.COMMITTED,
    GuardState.ROLLED_BACK,
    GuardState.ROLLBACK_FAILED,
    GuardState.SKIPPED,
    GuardState.ABORTED,
}


class InvalidTransition(UpkeepError):
    pass


@dataclass
class GuardResult:
    profile: str
    trigger: str
    started_at: datetime
    state: GuardState = GuardState.IDLE
    transitions: List[GuardState] = field(default_factory=lambda: [GuardState.IDLE])
    status: str = "success"
    reason: str = ""
    error: Optional[UpkeepError] = None
    snapshot_id: Optional[str] = None
    emergency_snapshot_id: Optional[str] = None
    restore: Optional[RestoreResult] = None
    outcomes: List[ExecutionOutcome] = field(default_factory=list)
    failed_operations: List[str] = field(default_factory=list)
    skipped_operations: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    load_at_start: Optional[float] = None
    memory_at_start: Optional[float] = None
    dry_run: bool = False
    continue_on_error: bool = True
    run_id: str = ""

    def advance(self, target: GuardState) -> None:
        if target not in TRANSITIONS.get(self.state, ()):
            raise InvalidTransition(f"Invalid safety transition {self.state.value} -> {target.value}")
        logger.debug("[%s] %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.transitions.append(target)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def exit_code(self) -> int:
        if self.state == GuardState.SKIPPED:
            return 0
        if self.state != GuardState.COMMITTED:
            return 1
        if self.failed_operations and not self.continue_on_error:
            return 1
        return 0

    @property
    def space_freed_bytes(self) -> int:
        return sum(outcome.space_freed_bytes for outcome in self.outcomes)

    @property
    def files_processed(self) -> int:
        return sum(outcome.files_processed for outcome in self.outcomes)

    @property
    def error_count(self) -> int:
        return sum(outcome.error_count for outcome in self.outcomes)


def _sensor(sensors: Any, name: str) -> Any:
    reader = getattr(sensors, name, None)
    if reader is None:
        return None
    try:
        return reader()
    except Exception as exc:
        logger.warning("Sensor %s failed: %s", name, exc)
        return None


class SafetyGuard:
    def __init__(
        self,
        settings: SafetySettings,
        locks: JobLockManager,
        evaluator: PreconditionEvaluator,
        executor: BackgroundJobExecutor,
        backup: Optional[BackupManager],
        notifier: Any,
        service_controller: Any,
    ) -> None:
        self.settings = settings
        self.locks = locks
        self.evaluator = evaluator
        self.executor = executor
        self.backup = backup
        self.notifier = notifier
        self.service_controller = service_controller

    @property
    def sensors(self) -> Any:
        return self.evaluator.sensors

    # -- checks -----------------------------------------------------------

    def integrity_problems(self) -> List[str]:
        problems: List[str] = []
        for path in self.settings.essential_paths:
            if not Path(path).exists():
                problems.append(f"essential path missing: {path}")
        for command in self.settings.essential_commands:
            if shutil.which(command) is None:
                problems.append(f"essential command missing: {command}")
        return problems

    def service_problems(self) -> List[str]:
        return [
            f"critical service inactive: {unit}"
            for unit in self.settings.critical_services
            if not self.service_controller.is_active(unit)
        ]

    def domain_conflict(self, profile: Profile) -> Optional[str]:
        if profile.touches_packages and _sensor(self.sensors, "package_manager_active"):
            return "a package manager is running"
        if profile.touches_dev_dirs and _sensor(self.sensors, "dev_session_active"):
            return "an interactive development session is active"
        max_load, max_memory = SAFETY_LEVELS.get(self.settings.level, SAFETY_LEVELS["standard"])
        load = _sensor(self.sensors, "load_average")
        if load is not None and load > max_load:
            return f"system load {load:.2f} exceeds the {self.settings.level} ceiling {max_load}"
        memory = _sensor(self.sensors, "memory_percent")
        if memory is not None and memory > max_memory:
            return f"memory usage {memory:.0f}% exceeds the {self.settings.level} ceiling {max_memory:.0f}%"
        return None

    def post_problems(self, snapshot: Optional[SnapshotPoint]) -> List[str]:
        problems = self.integrity_problems() + self.service_problems()
        if snapshot is None:
            return problems
        for entry in snapshot.config_entries():
            target = Path(entry["source"])
            kind = entry.get("type")
            if kind == "absent":
                continue
            if not (target.exists() or target.is_symlink()):
                problems.append(f"tracked configuration missing: {target}")
                continue
            for rel in entry.get("files", {}):
                path = target / rel
                if not (path.exists() or path.is_symlink()):
                    problems.append(f"tracked configuration missing: {path}")
        for unit, state in snapshot.service_state().items():
            if state != "enabled":
                continue
            current = self.service_controller.is_enabled(unit)
            if current != "enabled":
                problems.append(f"unit {unit} was enabled and is now {current}")
        return problems

    # -- run --------------------------------------------------------------

    def execute(
        self,
        profile: Profile,
        force: bool = False,
        trigger: str = "manual",
        dry_run: Optional[bool] = None,
    ) -> GuardResult:
        started = datetime.now(tz=UTC)
        result = GuardResult(
            profile=profile.name,
            trigger=trigger,
            started_at=started,
            dry_run=self.settings.dry_run if dry_run is None else dry_run,
            continue_on_error=profile.continue_on_error,
            run_id=make_run_id(profile.name, started),
        )
        result.load_at_start = _sensor(self.sensors, "load_average")
        result.memory_at_start = _sensor(self.sensors, "memory_percent")
        monotonic_start = time.monotonic()

        handle = self.locks.acquire(profile.name)
        if handle is None:
            record = self.locks.read(profile.name) or {}
            self._skip(result, LockBusy(profile.name, str(record.get("owner_id", ""))))
            result.duration_seconds = time.monotonic() - monotonic_start
            return result
        try:
            self._guarded(profile, force, result)
        except Exception as exc:
            logger.exception("[%s] Unexpected error while running %s", result.run_id, profile.name)
            self._crash(result, exc)
        finally:
            self.locks.release(handle)
            result.duration_seconds = time.monotonic() - monotonic_start
        logger.info(
            "[%s] Safety guard finished in state %s (%s)",
            result.run_id,
            result.state.value,
            " -> ".join(state.value for state in result.transitions),
        )
        return result

    def _skip(self, result: GuardResult, error: UpkeepError) -> None:
        result.advance(GuardState.SKIPPED)
        result.status = "skipped"
        result.error = error
        result.reason = str(error)
        logger.info("[%s] Skipping %s: %s", result.run_id, result.profile, error)

    def _abort(self, result: GuardResult, error: UpkeepError) -> None:
        result.advance(GuardState.ABORTED)
        result.status = "failed"
        result.error = error
        result.reason = str(error)
        logger.error("[%s] Aborting %s: %s", result.run_id, result.profile, error)

    def _crash(self, result: GuardResult, exc: Exception) -> None:
        if not result.finished:
            result.advance(GuardState.ABORTED)
        error = UpkeepError(f"unexpected {type(exc).__name__}: {exc}")
        result.status = "failed"
        result.error = error
        result.reason = f"{result.reason}; {error}" if result.reason else str(error)

    def _guarded(self, profile: Profile, force: bool, result: GuardResult) -> None:
        if profile.preconditions and not force:
            evaluation = self.evaluator.evaluate(profile.preconditions)
            if not evaluation.passed:
                self._skip(result, PreconditionNotMet(evaluation.reason))
                return
        elif profile.preconditions:
            logger.info("[%s] Force mode: preconditions not evaluated", result.run_id)

        result.advance(GuardState.PRE_CHECKING)
        problems = self.integrity_problems() + self.service_problems()
        if problems:
            self._abort(result, IntegrityCheckFailed("; ".join(problems)))
            return
        conflict = self.domain_conflict(profile)
        if conflict is not None:
            self._skip(result, PreconditionNotMet(conflict))
            return

        if result.dry_run:
            planned = ", ".join(op.name for op in profile.operations)
            result.advance(GuardState.COMMITTED)
            # nothing ran, so the run must not count as a success
            result.status = "skipped"
            result.reason = f"dry run: {planned}"
            logger.info("[%s] Dry run for %s; would run %s", result.run_id, profile.name, planned)
            return

        snapshot: Optional[SnapshotPoint] = None
        if self.backup is not None and not self.settings.skip_backup:
            result.advance(GuardState.SNAPSHOTTING)
            try:
                snapshot = self.backup.snapshot(
                    f"pre-{profile.name}",
                    f"Before {profile.name} maintenance",
                    metadata={"profile": profile.name, "trigger": result.trigger, "run_id": result.run_id},
                )
            except SnapshotFailed as exc:
                self._abort(result, exc)
                return
            result.snapshot_id = snapshot.id
        else:
            logger.warning("[%s] Backups skipped for %s", result.run_id, profile.name)

        result.advance(GuardState.RUNNING)
        self._run_operations(profile, result)

        result.advance(GuardState.POST_VERIFYING)
        problems = self.post_problems(snapshot)
        if not problems:
            result.advance(GuardState.COMMITTED)
            return

        failure = PostVerificationFailed("; ".join(problems))
        logger.error("[%s] Post-verification failed: %s", result.run_id, failure)
        result.error = failure
        result.status = "failed"
        result.reason = str(failure)
        result.advance(GuardState.ROLLING_BACK)
        self._roll_back(snapshot, result)

    def _run_operations(self, profile: Profile, result: GuardResult) -> None:
        for index, operation in enumerate(profile.operations):
            outcome = self.executor.execute(
                f"{profile.name}.{operation.name}",
                operation.command,
                limits=profile.resource_limits,
                timeout=operation.timeout,
                force=True,
                env={reporting.ENV_PROFILE: profile.name},
                run_id=f"{result.run_id}/{operation.name}",
            )
            result.outcomes.append(outcome)
            if outcome.status == "stopped":
                result.status = "stopped"
                result.reason = outcome.reason or "stopped"
                remaining = [op.name for op in profile.operations[index + 1 :]]
                if remaining:
                    logger.warning("[%s] Stopped; not running %s", result.run_id, ", ".join(remaining))
                return
            if outcome.status == STATUS_BUSY:
                result.skipped_operations.append(operation.name)
                logger.warning("[%s] %s is already running elsewhere; skipped", result.run_id, outcome.job_name)
                continue
            if outcome.succeeded:
                continue
            result.failed_operations.append(operation.name)
            result.status = "failed"
            result.error = OperationFailed(f"{operation.name}: {outcome.reason or outcome.status}")
            result.reason = "; ".join(
                f"{o.job_name.split('.', 1)[-1]}: {o.reason or o.status}" for o in result.outcomes if not o.succeeded
            )
            if not profile.continue_on_error:
                remaining = [op.name for op in profile.operations[index + 1 :]]
                if remaining:
                    logger.error("[%s] Aborting remaining operations: %s", result.run_id, ", ".join(remaining))
                return

    def _roll_back(self, snapshot: Optional[SnapshotPoint], result: GuardResult) -> None:
        if snapshot is None or self.backup is None:
            self._rollback_failed(result, RollbackFailed("no snapshot available to restore"))
            return
        try:
            result.restore = self.backup.restore(snapshot.id)
        except RollbackFailed as exc:
            self._rollback_failed(result, exc)
            return
        problems = self.post_problems(snapshot)
        if problems:
            self._rollback_failed(result, RollbackFailed("still failing after restore: " + "; ".join(problems)))
            return
        result.advance(GuardState.ROLLED_BACK)
        logger.warning("[%s] Rolled back to snapshot %s", result.run_id, snapshot.id)

    def _rollback_failed(self, result: GuardResult, error: RollbackFailed) -> None:
        result.advance(GuardState.ROLLBACK_FAILED)
        result.status = "failed"
        result.error = error
        result.reason = f"{result.reason}; {error}" if result.reason else str(error)
        logger.critical("[%s] Rollback failed for %s: %s", result.run_id, result.profile, error)
        if self.backup is not None:
            try:
                emergency = self.backup.snapshot(
                    "emergency",
                    f"State after failed rollback of {result.profile}",
                    metadata={"profile": result.profile, "run_id": result.run_id},
                    protect={result.snapshot_id} if result.snapshot_id else (),
                )
                result.emergency_snapshot_id = emergency.id
            except SnapshotFailed as exc:
                logger.error("[%s] Emergency snapshot failed: %s", result.run_id, exc)
        detail = f"{error}. Snapshot: {result.snapshot_id or 'none'}"
        if result.emergency_snapshot_id:
            detail += f". Emergency snapshot: {result.emergency_snapshot_id}"
        self.notifier.send(
            Level.CRITICAL,
            f"Rollback failed for {result.profile}",
            detail + ". Operator intervention required.",
            operation=result.profile,
            force=True,
        )

"""
Background job execution: lock, precondition gate, resource limits, timeout
and cancellation around one opaque shell command.
"""

from __future__ import annotations

import json
import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psutil

from upkeep import reporting, storage
from upkeep.config import ExecutorSettings
from upkeep.limits import ResourceLimiter, ResourceLimits
from upkeep.locks import JobLockManager, LockHandle, owner_is_live
from upkeep.preconditions import Precondition, PreconditionEvaluator

logger = logging.getLogger("upkeep.executor")
UTC = timezone.utc
POLL_SECONDS = 0.2
STATUS_FILE = "status.jsonl"
UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_STOPPED = "stopped"
STATUS_CRASHED = "crashed"
STATUS_BUSY = "busy"
STATUS_SKIPPED = "skipped"


def make_run_id(name: str, started: Optional[datetime] = None) -> str:
    started = started or datetime.now(tz=UTC)
    return f"{name}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "stop requested") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


@dataclass
class ExecutionOutcome:
    job_name: str
    status: str
    started_at: datetime
    duration_seconds: float = 0.0
    return_code: Optional[int] = None
    log_path: Optional[Path] = None
    reason: str = ""
    space_freed_bytes: int = 0
    files_processed: int = 0
    error_count: int = 0
    peak_memory_bytes: int = 0
    avg_cpu_percent: float = 0.0
    limits_applied: List[str] = field(default_factory=list)
    reclaimed_lock: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "started_at": self.started_at.astimezone(UTC).isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "return_code": self.return_code,
            "log_path": str(self.log_path) if self.log_path else None,
            "reason": self.reason,
            "space_freed_bytes": self.space_freed_bytes,
            "files_processed": self.files_processed,
            "error_count": self.error_count,
            "peak_memory_bytes": self.peak_memory_bytes,
        }


class ResourceSampler:
    """Samples CPU and RSS of a process tree until stopped; always joined by the caller."""

    def __init__(self, pid: int, interval: float) -> None:
        self.pid = pid
        self.interval = max(0.05, interval)
        self.peak_rss = 0
        self.cpu_samples: List[float] = []
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True, name=f"upkeep-sampler-{pid}")

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._thread.join(timeout=timeout)

    @property
    def avg_cpu(self) -> float:
        if not self.cpu_samples:
            return 0.0
        return sum(self.cpu_samples) / len(self.cpu_samples)

    def _run(self) -> None:
        try:
            root = psutil.Process(self.pid)
            root.cpu_percent(None)
        except psutil.Error:
            return
        while not self._stop_event.wait(self.interval):
            try:
                tree = [root] + root.children(recursive=True)
                rss = 0
                cpu = 0.0
                for proc in tree:
                    try:
                        rss += proc.memory_info().rss
                        if proc is root:
                            cpu += proc.cpu_percent(None)
                    except psutil.Error:
                        continue
            except psutil.Error:
                return
            self.peak_rss = max(self.peak_rss, rss)
            self.cpu_samples.append(cpu)


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("Not permitted to signal process group %s", pid)
        return False


class BackgroundJobExecutor:
    def __init__(
        self,
        locks: JobLockManager,
        evaluator: PreconditionEvaluator,
        logs_dir: Path,
        limiter: Optional[ResourceLimiter] = None,
        settings: Optional[ExecutorSettings] = None,
    ) -> None:
        self.locks = locks
        self.evaluator = evaluator
        self.limiter = limiter or ResourceLimiter()
        self.logs_dir = logs_dir
        self.settings = settings or ExecutorSettings()
        self._active: Dict[str, CancelToken] = {}
        self._active_guard = threading.Lock()

    @property
    def status_file(self) -> Path:
        return self.logs_dir / STATUS_FILE

    def execute(
        self,
        job_name: str,
        command: str,
        preconditions: Iterable[Precondition] = (),
        limits: Optional[ResourceLimits] = None,
        timeout: Optional[int] = None,
        force: bool = False,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
        run_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        limits = limits or ResourceLimits.default()
        started = datetime.now(tz=UTC)
        run_id = run_id or make_run_id(job_name, started)

        handle = self.locks.acquire(job_name)
        if handle is None:
            logger.info("[%s] %s is already running; skipping.", run_id, job_name)
            return ExecutionOutcome(job_name, STATUS_BUSY, started, reason="lock busy")

        try:
            checks = list(preconditions)
            if checks and not force:
                evaluation = self.evaluator.evaluate(checks)
                if not evaluation.passed:
                    logger.info("[%s] Skipping %s: %s", run_id, job_name, evaluation.reason)
                    return ExecutionOutcome(
                        job_name,
                        STATUS_SKIPPED,
                        started,
                        reason=evaluation.reason,
                        reclaimed_lock=handle.reclaimed,
                    )
            elif checks:
                logger.info("[%s] Force mode: skipping preconditions for %s", run_id, job_name)
            outcome = self._run(handle, command, limits, timeout or limits.timeout, env, cwd, run_id, started)
            outcome.reclaimed_lock = handle.reclaimed
        finally:
            self.locks.release(handle)

        self._record_status(outcome)
        return outcome

    def _log_path(self, job_name: str, started: datetime) -> Path:
        base = f"{UNSAFE_CHARS_RE.sub('_', job_name)}.{started.astimezone().strftime('%Y%m%d_%H%M%S')}"
        path = self.logs_dir / f"{base}.log"
        counter = 1
        while path.exists():
            path = self.logs_dir / f"{base}_{counter}.log"
            counter += 1
        return path

    def _run(
        self,
        handle: LockHandle,
        command: str,
        limits: ResourceLimits,
        timeout: int,
        env_overrides: Optional[Dict[str, str]],
        cwd: Optional[Path],
        run_id: str,
        started: datetime,
    ) -> ExecutionOutcome:
        job_name = handle.job_name
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self._log_path(job_name, started)
        metrics_path = log_path.with_name(log_path.stem + ".metrics.json")

        env = os.environ.copy()
        env.update(
            {
                reporting.ENV_RUN_ID: run_id,
                reporting.ENV_JOB_NAME: job_name,
                reporting.ENV_METRICS_FILE: str(metrics_path),
            }
        )
        if env_overrides:
            env.update({k: v for k, v in env_overrides.items() if v is not None})

        token = CancelToken()
        with self._active_guard:
            self._active[job_name] = token

        monotonic_start = time.monotonic()
        try:
            with open(log_path, "w", encoding="utf-8") as log:
                log.write(f"# run_id: {run_id}\n")
                log.write(f"# started: {started.astimezone().isoformat()}\n")
                log.write(f"# command: {command}\n")
                log.write(f"# limits: {limits.describe()}\n")
                log.write("---\n")
                log.flush()
                try:
                    proc = subprocess.Popen(
                        command,
                        shell=True,
                        stdin=subprocess.DEVNULL,
                        stdout=log,
                        stderr=subprocess.STDOUT,
                        cwd=str(cwd) if cwd else None,
                        env=env,
                        start_new_session=True,
                        preexec_fn=self.limiter.preexec(limits),
                    )
                except OSError as exc:
                    log.write(f"---\n# spawn failed: {exc}\n")
                    logger.error("[%s] Could not start %s: %s", run_id, job_name, exc)
                    return ExecutionOutcome(
                        job_name,
                        STATUS_CRASHED,
                        started,
                        duration_seconds=time.monotonic() - monotonic_start,
                        log_path=log_path,
                        reason=str(exc),
                    )

            logger.info("[%s] Started %s (pid=%s)", run_id, job_name, proc.pid)
            self.locks.set_child_pid(handle, proc.pid)
            applied = self.limiter.apply(proc.pid, limits)
            sampler = ResourceSampler(proc.pid, self.settings.sample_interval)
            sampler.start()
            try:
                return_code, interruption = self._wait(proc, timeout, token)
            finally:
                sampler.stop()
        finally:
            with self._active_guard:
                self._active.pop(job_name, None)

        duration = time.monotonic() - monotonic_start
        if interruption == "stopped":
            status = STATUS_STOPPED
            reason = token.reason
        elif interruption == "timeout":
            status = STATUS_FAILED
            reason = f"timed out after {timeout}s"
        elif return_code == 0:
            status = STATUS_SUCCESS
            reason = ""
        else:
            status = STATUS_FAILED
            reason = f"exit code {return_code}"

        with open(log_path, "a", encoding="utf-8") as log:
            log.write("---\n")
            log.write(f"# completed: {datetime.now().astimezone().isoformat()}\n")
            log.write(f"# duration: {duration:.2f}s\n")
            log.write(f"# exit_code: {return_code}\n")
            if reason:
                log.write(f"# reason: {reason}\n")

        metrics = reporting.read_metrics(metrics_path)
        metrics_path.unlink(missing_ok=True)
        outcome = ExecutionOutcome(
            job_name,
            status,
            started,
            duration_seconds=duration,
            return_code=return_code,
            log_path=log_path,
            reason=reason,
            space_freed_bytes=metrics.get("space_freed_bytes", 0),
            files_processed=metrics.get("files_processed", 0),
            error_count=metrics.get("error_count", 0 if status == STATUS_SUCCESS else 1),
            peak_memory_bytes=sampler.peak_rss,
            avg_cpu_percent=sampler.avg_cpu,
            limits_applied=applied,
        )
        if outcome.succeeded:
            logger.info("[%s] %s succeeded (%.2fs)", run_id, job_name, duration)
        else:
            logger.error("[%s] %s %s: %s (%.2fs, log=%s)", run_id, job_name, status, reason, duration, log_path)
        return outcome

    def _wait(self, proc: subprocess.Popen, timeout: int, token: CancelToken) -> Tuple[Optional[int], Optional[str]]:
        deadline = time.monotonic() + timeout
        while True:
            try:
                return proc.wait(timeout=POLL_SECONDS), None
            except subprocess.TimeoutExpired:
                pass
            if token.cancelled:
                return self._terminate(proc), "stopped"
            if time.monotonic() >= deadline:
                logger.warning("Process %s exceeded its %ss timeout; terminating.", proc.pid, timeout)
                return self._terminate(proc), "timeout"

    def _terminate(self, proc: subprocess.Popen) -> Optional[int]:
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            return proc.wait(timeout=self.settings.grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s ignored SIGTERM for %ss; sending SIGKILL.", proc.pid, self.settings.grace_seconds)
        _signal_group(proc.pid, signal.SIGKILL)
        return proc.wait()

    def running(self) -> List[str]:
        with self._active_guard:
            return sorted(self._active)

    def cancel_all(self, reason: str = "stop requested") -> int:
        with self._active_guard:
            tokens = list(self._active.values())
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    def stop(self, job_name: str, grace: Optional[float] = None) -> str:
        """Stop a running job: ``cancelled`` | ``terminated`` | ``killed`` | ``not_running``."""
        grace = self.settings.grace_seconds if grace is None else grace
        with self._active_guard:
            tokens = [
                token
                for name, token in self._active.items()
                if name == job_name or name.startswith(job_name + ".")
            ]
        if tokens:
            for token in tokens:
                token.cancel(f"stop requested for {job_name}")
            return "cancelled"

        record = self.locks.read(job_name)
        if not record or not owner_is_live(record):
            return "not_running"
        owner_pid = int(record["pid"])
        if owner_pid == os.getpid():
            return "not_running"

        logger.info("Sending SIGTERM to %s owner pid %s", job_name, owner_pid)
        try:
            os.kill(owner_pid, signal.SIGTERM)
        except ProcessLookupError:
            return "terminated"
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not owner_is_live(record):
                return "terminated"
            time.sleep(POLL_SECONDS)

        logger.warning("Owner pid %s of %s still alive after %ss; killing.", owner_pid, job_name, grace)
        child_pid = record.get("child_pid")
        if child_pid:
            _signal_group(int(child_pid), signal.SIGKILL)
        try:
            os.kill(owner_pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return "killed"

    def _record_status(self, outcome: ExecutionOutcome) -> None:
        path = self.status_file
        limit = self.settings.status_history
        with storage.exclusive(path):
            rows = storage.read_jsonl(path)
            rows.append(outcome.to_payload())
            storage.atomic_write_text(path, "".join(json.dumps(row, sort_keys=True) + "\n" for row in rows[-limit:]))

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        return storage.read_jsonl(self.status_file)[-limit:]

    def prune_logs(self, days: Optional[int] = None) -> int:
        days = self.settings.log_retention_days if days is None else days
        if not self.logs_dir.is_dir():
            return 0
        cutoff = time.time() - timedelta(days=days).total_seconds()
        removed = 0
        for path in self.logs_dir.glob("*.log"):
            if path.name == "upkeep.log":
                continue
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

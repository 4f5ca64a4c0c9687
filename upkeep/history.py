"""
Append-only run history with retention compaction and derived statistics.

Records are versioned JSON lines. Statistics, trends and suggestions are pure
functions over the records so they can be computed for any window.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from upkeep import storage
from upkeep.errors import UpkeepError

logger = logging.getLogger("upkeep.history")
UTC = timezone.utc
SCHEMA_VERSION = 1

RUN_OPERATION = "profile_run"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_STOPPED = "stopped"
STATUS_CRASHED = "crashed"
STATUS_SKIPPED = "skipped"
VALID_STATUSES = {STATUS_SUCCESS, STATUS_FAILED, STATUS_STOPPED, STATUS_CRASHED, STATUS_SKIPPED}
VALID_TRIGGERS = {"scheduled", "manual", "emergency"}

TREND_RECENT_DAYS = 7
TREND_PREVIOUS_DAYS = 14
SUGGESTION_WINDOW_DAYS = 30
UTILIZATION_WINDOW_DAYS = 14
REPEATED_FAILURE_COUNT = 3
SLOW_RUN_SECONDS = 300
SLOW_RUN_COUNT = 3
LOW_UTILIZATION_RUNS = 3
HIGH_LOAD = 1.0
HIGH_LOAD_COUNT = 2


def _parse_ts(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_bytes(value: float) -> str:
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass(frozen=True)
class ExecutionRecord:
    timestamp: datetime
    operation_type: str
    profile: str
    status: str
    trigger: str = "manual"
    duration_seconds: float = 0.0
    space_freed_bytes: int = 0
    files_processed: int = 0
    error_count: int = 0
    system_load_at_start: Optional[float] = None
    memory_usage_at_start: Optional[float] = None
    snapshot_id: Optional[str] = None
    details: str = ""

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.astimezone(UTC).isoformat()
        payload["schema"] = SCHEMA_VERSION
        payload["kind"] = "execution"
        return payload

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> Optional["ExecutionRecord"]:
        timestamp = _parse_ts(payload.get("timestamp"))
        if timestamp is None or payload.get("status") not in VALID_STATUSES:
            return None
        return ExecutionRecord(
            timestamp=timestamp,
            operation_type=str(payload.get("operation_type", RUN_OPERATION)),
            profile=str(payload.get("profile", "")),
            status=str(payload["status"]),
            trigger=str(payload.get("trigger", "manual")),
            duration_seconds=float(payload.get("duration_seconds") or 0.0),
            space_freed_bytes=int(payload.get("space_freed_bytes") or 0),
            files_processed=int(payload.get("files_processed") or 0),
            error_count=int(payload.get("error_count") or 0),
            system_load_at_start=payload.get("system_load_at_start"),
            memory_usage_at_start=payload.get("memory_usage_at_start"),
            snapshot_id=payload.get("snapshot_id"),
            details=str(payload.get("details") or ""),
        )

    @property
    def is_run(self) -> bool:
        return self.operation_type == RUN_OPERATION


@dataclass
class Aggregate:
    count: int = 0
    successes: int = 0
    failures: int = 0
    total_duration: float = 0.0
    total_space_freed: int = 0
    total_files_processed: int = 0
    error_count: int = 0
    slow_runs: int = 0
    high_load_runs: int = 0
    recent_runs: int = 0

    @property
    def avg_duration(self) -> float:
        return self.total_duration / self.count if self.count else 0.0

    def add(self, record: ExecutionRecord, now: datetime) -> None:
        self.count += 1
        if record.status == STATUS_SUCCESS:
            self.successes += 1
            if record.duration_seconds > SLOW_RUN_SECONDS:
                self.slow_runs += 1
        elif record.status in (STATUS_FAILED, STATUS_CRASHED):
            self.failures += 1
        self.total_duration += record.duration_seconds
        self.total_space_freed += record.space_freed_bytes
        self.total_files_processed += record.files_processed
        self.error_count += record.error_count
        if record.system_load_at_start is not None and record.system_load_at_start > HIGH_LOAD:
            self.high_load_runs += 1
        if record.timestamp >= now - timedelta(days=UTILIZATION_WINDOW_DAYS):
            self.recent_runs += 1


@dataclass
class Statistics:
    window_days: int
    total_runs: int = 0
    successful: int = 0
    failed: int = 0
    stopped: int = 0
    crashed: int = 0
    skipped: int = 0
    average_duration: float = 0.0
    total_space_freed: int = 0
    total_files_processed: int = 0
    per_operation: Dict[str, Aggregate] = field(default_factory=dict)
    per_profile: Dict[str, Aggregate] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return (self.successful / self.total_runs * 100.0) if self.total_runs else 0.0

    def to_payload(self) -> Dict[str, Any]:
        def _agg(agg: Aggregate) -> Dict[str, Any]:
            return {
                "count": agg.count,
                "successes": agg.successes,
                "failures": agg.failures,
                "avg_duration": round(agg.avg_duration, 2),
                "total_space_freed": agg.total_space_freed,
                "error_count": agg.error_count,
            }

        return {
            "window_days": self.window_days,
            "total_runs": self.total_runs,
            "successful": self.successful,
            "failed": self.failed,
            "stopped": self.stopped,
            "crashed": self.crashed,
            "skipped": self.skipped,
            "success_rate": round(self.success_rate, 1),
            "average_duration": round(self.average_duration, 2),
            "total_space_freed": self.total_space_freed,
            "total_files_processed": self.total_files_processed,
            "per_operation": {k: _agg(v) for k, v in sorted(self.per_operation.items())},
            "per_profile": {k: _agg(v) for k, v in sorted(self.per_profile.items())},
        }


@dataclass
class Trend:
    recent_avg: Optional[float]
    previous_avg: Optional[float]
    delta_percent: Optional[float]
    direction: str


@dataclass(frozen=True)
class Suggestion:
    severity: str  # info | warning
    title: str
    detail: str


def compute_statistics(records: Iterable[ExecutionRecord], window_days: int, now: Optional[datetime] = None) -> Statistics:
    now = now or datetime.now(tz=UTC)
    cutoff = now - timedelta(days=window_days)
    stats = Statistics(window_days=window_days)
    durations: List[float] = []
    for record in records:
        if record.timestamp < cutoff:
            continue
        if not record.is_run:
            stats.per_operation.setdefault(record.operation_type, Aggregate()).add(record, now)
            stats.total_files_processed += record.files_processed
            continue
        if record.status == STATUS_SKIPPED:
            stats.skipped += 1
            continue
        stats.total_runs += 1
        if record.status == STATUS_SUCCESS:
            stats.successful += 1
        elif record.status == STATUS_FAILED:
            stats.failed += 1
        elif record.status == STATUS_STOPPED:
            stats.stopped += 1
        elif record.status == STATUS_CRASHED:
            stats.crashed += 1
        durations.append(record.duration_seconds)
        stats.total_space_freed += record.space_freed_bytes
        stats.per_profile.setdefault(record.profile, Aggregate()).add(record, now)
    stats.average_duration = sum(durations) / len(durations) if durations else 0.0
    return stats


def compute_trend(records: Iterable[ExecutionRecord], now: Optional[datetime] = None) -> Trend:
    now = now or datetime.now(tz=UTC)
    recent_start = now - timedelta(days=TREND_RECENT_DAYS)
    previous_start = recent_start - timedelta(days=TREND_PREVIOUS_DAYS)
    recent: List[float] = []
    previous: List[float] = []
    for record in records:
        if not record.is_run or record.status != STATUS_SUCCESS:
            continue
        if recent_start <= record.timestamp <= now:
            recent.append(record.duration_seconds)
        elif previous_start <= record.timestamp < recent_start:
            previous.append(record.duration_seconds)
    recent_avg = sum(recent) / len(recent) if recent else None
    previous_avg = sum(previous) / len(previous) if previous else None
    if recent_avg is None or previous_avg is None or previous_avg == 0:
        return Trend(recent_avg, previous_avg, None, "insufficient data")
    delta = (recent_avg - previous_avg) / previous_avg * 100.0
    if abs(delta) < 5.0:
        direction = "stable"
    elif delta > 0:
        direction = "slower"
    else:
        direction = "faster"
    return Trend(recent_avg, previous_avg, delta, direction)


def generate_suggestions(stats: Statistics) -> List[Suggestion]:
    """Derive suggestions from statistics computed over the suggestion window."""
    suggestions: List[Suggestion] = []
    for name, agg in sorted(stats.per_operation.items()):
        if agg.failures >= REPEATED_FAILURE_COUNT:
            suggestions.append(
                Suggestion(
                    "warning",
                    f"Review operation {name}",
                    f"{name} failed {agg.failures} times in the last {stats.window_days} days.",
                )
            )
        if agg.slow_runs >= SLOW_RUN_COUNT:
            suggestions.append(
                Suggestion(
                    "info",
                    f"Optimise operation {name}",
                    f"{name} took longer than {SLOW_RUN_SECONDS}s on {agg.slow_runs} successful runs.",
                )
            )
    for name, agg in sorted(stats.per_profile.items()):
        if agg.recent_runs < LOW_UTILIZATION_RUNS:
            suggestions.append(
                Suggestion(
                    "info",
                    f"Low utilisation of profile {name}",
                    f"{name} ran {agg.recent_runs} time(s) in the last {UTILIZATION_WINDOW_DAYS} days; "
                    "check its schedule and preconditions.",
                )
            )
        if agg.high_load_runs >= HIGH_LOAD_COUNT:
            suggestions.append(
                Suggestion(
                    "info",
                    f"Schedule profile {name} off-peak",
                    f"{name} started under load above {HIGH_LOAD} on {agg.high_load_runs} runs.",
                )
            )
    if stats.total_runs and stats.success_rate < 80.0:
        suggestions.append(
            Suggestion(
                "warning",
                "Low success rate",
                f"Only {stats.success_rate:.1f}% of runs succeeded in the last {stats.window_days} days.",
            )
        )
    return suggestions


def render_report(
    stats: Statistics,
    trend: Trend,
    suggestions: List[Suggestion],
    failures: List[ExecutionRecord],
    generated_at: Optional[datetime] = None,
) -> str:
    generated_at = generated_at or datetime.now(tz=UTC)
    lines = [
        "upkeep maintenance report",
        f"Generated: {generated_at.astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')}",
        f"Window: last {stats.window_days} days",
        "",
        "Summary",
        f"  Runs: {stats.total_runs} (success {stats.successful}, failed {stats.failed}, "
        f"stopped {stats.stopped}, crashed {stats.crashed}, skipped {stats.skipped})",
        f"  Success rate: {stats.success_rate:.1f}%",
        f"  Average duration: {format_duration(stats.average_duration)}",
        f"  Space freed: {format_bytes(stats.total_space_freed)}",
        f"  Files processed: {stats.total_files_processed}",
        "",
        "Profiles",
    ]
    if not stats.per_profile:
        lines.append("  (no runs)")
    for name, agg in sorted(stats.per_profile.items()):
        lines.append(
            f"  {name}: {agg.count} runs, avg {format_duration(agg.avg_duration)}, "
            f"freed {format_bytes(agg.total_space_freed)}"
        )
    lines.extend(["", "Operations"])
    if not stats.per_operation:
        lines.append("  (no operations)")
    for name, agg in sorted(stats.per_operation.items()):
        lines.append(
            f"  {name}: {agg.count} runs, {agg.failures} failed, avg {format_duration(agg.avg_duration)}, "
            f"freed {format_bytes(agg.total_space_freed)}, {agg.error_count} errors"
        )
    lines.extend(["", "Trend (last 7 days vs previous 14)"])
    if trend.delta_percent is None:
        lines.append(f"  {trend.direction}")
    else:
        lines.append(
            f"  {format_duration(trend.recent_avg or 0)} vs {format_duration(trend.previous_avg or 0)} "
            f"({trend.delta_percent:+.1f}%, {trend.direction})"
        )
    top_space = sorted(stats.per_operation.items(), key=lambda item: item[1].total_space_freed, reverse=True)
    top_space = [item for item in top_space if item[1].total_space_freed > 0][:5]
    lines.extend(["", "Top space savers"])
    if not top_space:
        lines.append("  (none reported)")
    for name, agg in top_space:
        lines.append(f"  {name}: {format_bytes(agg.total_space_freed)}")
    lines.extend(["", "Recent failures (7 days)"])
    if not failures:
        lines.append("  (none)")
    for record in failures:
        stamp = record.timestamp.astimezone().strftime("%Y-%m-%d %H:%M")
        lines.append(f"  {stamp} {record.profile}/{record.operation_type}: {record.details or record.status}")
    lines.extend(["", "Suggestions"])
    if not suggestions:
        lines.append("  (none)")
    for item in suggestions:
        lines.append(f"  [{item.severity}] {item.title}: {item.detail}")
    return "\n".join(lines) + "\n"


class HistoryStore:
    def __init__(
        self,
        history_dir: Path,
        retention_days: int = 90,
        notification_retention_days: int = 30,
        reports_dir: Optional[Path] = None,
    ) -> None:
        self.history_dir = history_dir
        self.retention_days = retention_days
        self.notification_retention_days = notification_retention_days
        self.reports_dir = reports_dir or history_dir.parent / "reports"

    @property
    def records_path(self) -> Path:
        return self.history_dir / "history.jsonl"

    @property
    def events_path(self) -> Path:
        return self.history_dir / "notifications.jsonl"

    @property
    def profile_events_path(self) -> Path:
        return self.history_dir / "profile_events.jsonl"

    def init(self, now: Optional[datetime] = None) -> Dict[str, int]:
        self.history_dir.mkdir(parents=True, exist_ok=True)
        return self.compact(now)

    def compact(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(tz=UTC)

        def _keeper(days: int) -> Any:
            cutoff = now - timedelta(days=days)

            def keep(row: Dict[str, Any]) -> bool:
                stamp = _parse_ts(row.get("timestamp"))
                return stamp is not None and stamp >= cutoff

            return keep

        removed = {
            "records": storage.rewrite_jsonl(self.records_path, _keeper(self.retention_days)),
            "notifications": storage.rewrite_jsonl(self.events_path, _keeper(self.notification_retention_days)),
            "profile_events": storage.rewrite_jsonl(self.profile_events_path, _keeper(self.retention_days)),
        }
        if any(removed.values()):
            logger.info("History compaction removed %s", removed)
        return removed

    def record(self, record: ExecutionRecord) -> ExecutionRecord:
        if record.status not in VALID_STATUSES:
            raise UpkeepError(f"Invalid execution status: {record.status}")
        if record.trigger not in VALID_TRIGGERS:
            raise UpkeepError(f"Invalid trigger: {record.trigger}")
        storage.append_jsonl(self.records_path, [record.to_payload()])
        return record

    def record_many(self, records: Iterable[ExecutionRecord]) -> None:
        rows = []
        for record in records:
            if record.status not in VALID_STATUSES or record.trigger not in VALID_TRIGGERS:
                raise UpkeepError(f"Invalid execution record: {record}")
            rows.append(record.to_payload())
        storage.append_jsonl(self.records_path, rows)

    def record_event(self, payload: Dict[str, Any]) -> None:
        storage.append_jsonl(self.events_path, [{**payload, "kind": "notification"}])

    def record_profile_event(self, action: str, profile: str, now: Optional[datetime] = None) -> None:
        stamp = (now or datetime.now(tz=UTC)).astimezone(UTC).isoformat()
        storage.append_jsonl(
            self.profile_events_path,
            [{"schema": SCHEMA_VERSION, "kind": "profile", "timestamp": stamp, "action": action, "profile": profile}],
        )

    def query(
        self,
        days: Optional[int] = None,
        profile: Optional[str] = None,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        now = now or datetime.now(tz=UTC)
        cutoff = now - timedelta(days=days) if days else None
        selected: List[ExecutionRecord] = []
        for row in storage.read_jsonl(self.records_path):
            record = ExecutionRecord.from_payload(row)
            if record is None:
                continue
            if cutoff is not None and record.timestamp < cutoff:
                continue
            if profile and record.profile != profile:
                continue
            if status and record.status != status:
                continue
            if operation_type and record.operation_type != operation_type:
                continue
            selected.append(record)
        return sorted(selected, key=lambda record: record.timestamp)

    def _window(self, rows: List[Dict[str, Any]], days: Optional[int]) -> List[Dict[str, Any]]:
        if not days:
            return rows
        cutoff = datetime.now(tz=UTC) - timedelta(days=days)
        return [row for row in rows if (_parse_ts(row.get("timestamp")) or cutoff) >= cutoff]

    def events(self, days: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._window(storage.read_jsonl(self.events_path), days)

    def profile_events(self, days: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._window(storage.read_jsonl(self.profile_events_path), days)

    def last_run(self, profile: str) -> Optional[ExecutionRecord]:
        runs = self.query(profile=profile, operation_type=RUN_OPERATION)
        return runs[-1] if runs else None

    def statistics(self, days: int = 30, now: Optional[datetime] = None) -> Statistics:
        return compute_statistics(self.query(days=days, now=now), days, now)

    def trend(self, now: Optional[datetime] = None) -> Trend:
        return compute_trend(self.query(days=TREND_RECENT_DAYS + TREND_PREVIOUS_DAYS, now=now), now)

    def suggestions(self, days: int = SUGGESTION_WINDOW_DAYS, now: Optional[datetime] = None) -> List[Suggestion]:
        return generate_suggestions(self.statistics(days, now))

    def report(self, days: int = 30, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(tz=UTC)
        failures = [
            record
            for record in self.query(days=7, now=now)
            if record.status in (STATUS_FAILED, STATUS_CRASHED)
        ][-10:]
        return render_report(
            self.statistics(days, now),
            self.trend(now),
            self.suggestions(now=now),
            failures,
            generated_at=now,
        )

    def write_report(self, days: int = 30, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now(tz=UTC)
        path = self.reports_dir / f"report_{now.astimezone().strftime('%Y%m%d_%H%M%S')}.txt"
        storage.atomic_write_text(path, self.report(days, now))
        return path

    def export(self, path: Path, fmt: str = "json", days: Optional[int] = None) -> int:
        records = self.query(days=days)
        rows = [record.to_payload() for record in records]
        if fmt == "json":
            storage.atomic_write_text(path, json.dumps(rows, indent=2) + "\n")
        elif fmt == "csv":
            buffer = io.StringIO()
            columns = [name for name in ExecutionRecord.__dataclass_fields__]
            writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
            writer.writeheader()
            writer.writerows(rows)
            storage.atomic_write_text(path, buffer.getvalue())
        else:
            raise UpkeepError(f"Unsupported export format: {fmt}")
        return len(rows)

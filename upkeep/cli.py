"""
Command line interface for upkeep.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
from pathlib import Path
from typing import Any, List, Optional

from upkeep.config import load_settings, setup_logging
from upkeep.errors import UpkeepError
from upkeep.history import VALID_STATUSES, VALID_TRIGGERS, format_bytes, format_duration
from upkeep.scheduler import Scheduler
from upkeep.timers import describe_next_fire

logger = logging.getLogger("upkeep")

DEFAULT_DAYS = 30


def build_scheduler(config: Optional[str], log_level: str) -> Scheduler:
    settings = load_settings(Path(config).expanduser() if config else None)
    setup_logging(settings.paths.log_file, log_level)
    scheduler = Scheduler(settings)
    scheduler.bootstrap()
    return scheduler


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def command_enable(scheduler: Scheduler, name: str) -> int:
    profile = scheduler.enable(name)
    print(f"Enabled {profile.name}: {profile.compiled_schedule.description}")
    upcoming = describe_next_fire(profile)
    if upcoming:
        print(f"Next run: {upcoming}")
    return 0


def command_disable(scheduler: Scheduler, name: str) -> int:
    scheduler.disable(name)
    print(f"Disabled {name}")
    return 0


def command_run(scheduler: Scheduler, name: str, force: bool, trigger: str) -> int:
    def _cancel(signum: int, _frame: Any) -> None:
        count = scheduler.executor.cancel_all(f"signal {signum}")
        logger.warning("Received signal %s; cancelling %s running job(s)", signum, count)

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        result = scheduler.run(name, force=force, trigger=trigger)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    print(f"{result.profile}: {result.status}" + (f" ({result.reason})" if result.reason else ""))
    guard = result.guard
    if guard is not None:
        for outcome in guard.outcomes:
            print(f"  - {outcome.job_name}: {outcome.status} in {format_duration(outcome.duration_seconds)}")
        if guard.snapshot_id:
            print(f"  snapshot: {guard.snapshot_id}")
        if guard.restore is not None:
            print(f"  restored from {guard.restore.snapshot_id}; see {guard.restore.staging_dir / 'RESTORE.txt'}")
    return result.exit_code


def command_stop(scheduler: Scheduler, name: str) -> int:
    result = scheduler.stop(name)
    print(f"{name}: {result}")
    return 0


def command_logs(scheduler: Scheduler, name: str, lines: int) -> int:
    text = scheduler.timer_logs(name, lines)
    print(text.rstrip("\n") if text.strip() else f"No journal entries for {name}.")
    return 0


def command_notify_test(scheduler: Scheduler) -> int:
    event = scheduler.test_notifications()
    delivered = event.delivered if event is not None else []
    configured = [channel.name for channel in scheduler.notifier.channels]
    print(f"Delivered via: {', '.join(delivered) or '(none)'}")
    missed = [name for name in configured if name not in delivered]
    if missed:
        print(f"Not delivered: {', '.join(missed)}")
    return 0 if delivered else 1


def command_status(scheduler: Scheduler, as_json: bool) -> int:
    report = scheduler.status()
    if as_json:
        _print_json(
            {
                "state": report.state.to_payload(),
                "profiles": report.profiles,
                "timers": [timer.to_payload() for timer in report.timers],
                "locks": report.locks,
                "recent_runs": [record.to_payload() for record in report.recent_runs],
                "snapshots": [point.id for point in report.snapshots],
            }
        )
        return 0
    state = report.state
    print("=" * 80)
    print(f"Active profiles: {', '.join(state.active_profiles) or '(none)'}")
    print(f"Last check: {state.last_check or 'never'}")
    print(f"Maintenance runs: {state.maintenance_count} (last: {state.last_maintenance or 'never'})")
    print("Profiles:")
    for item in report.profiles:
        marker = "*" if item["active"] else " "
        last = f"{item['last_status']} at {item['last_run']}" if item["last_run"] else "never run"
        print(f" {marker} {item['name']} [{item['tier']}] {item['schedule']} | {last}")
    if report.timers:
        print("Timers:")
        for timer in report.timers:
            print(
                f"- {timer.profile}: installed={timer.installed} enabled={timer.enabled} active={timer.active} "
                f"next={timer.next_fire or '-'} last_result={timer.last_result or '-'}"
            )
    if report.locks:
        print("Locks:")
        for lock in report.locks:
            state_text = "live" if lock["live"] else "stale"
            print(f"- {lock.get('job_name')}: {state_text} owner={lock.get('owner_id')} since {lock.get('acquired_at')}")
    print(f"Snapshots: {len(report.snapshots)}" + (f" (latest {report.snapshots[-1].id})" if report.snapshots else ""))
    print("=" * 80)
    return 0


def command_history(
    scheduler: Scheduler,
    profile: Optional[str],
    days: Optional[int],
    status: Optional[str],
    as_json: bool,
) -> int:
    records = scheduler.history_records(profile=profile, days=days, status=status)
    if as_json:
        _print_json([record.to_payload() for record in records])
        return 0
    if not records:
        print("No history records.")
        return 0
    for record in records:
        stamp = record.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(
            f"{stamp} {record.profile:<12} {record.operation_type:<14} {record.status:<8} "
            f"{format_duration(record.duration_seconds):>8} {format_bytes(record.space_freed_bytes):>8} "
            f"{record.trigger} {record.details}".rstrip()
        )
    return 0


def command_stats(scheduler: Scheduler, days: int, as_json: bool) -> int:
    stats, trend, notifications = scheduler.stats(days)
    if as_json:
        _print_json(
            {
                "statistics": stats.to_payload(),
                "trend": {
                    "recent_avg": trend.recent_avg,
                    "previous_avg": trend.previous_avg,
                    "delta_percent": trend.delta_percent,
                    "direction": trend.direction,
                },
                "notifications": notifications,
            }
        )
        return 0
    print(f"Last {days} days")
    print(f"Runs: {stats.total_runs} | success rate {stats.success_rate:.1f}% | skipped {stats.skipped}")
    print(f"Average duration: {format_duration(stats.average_duration)}")
    print(f"Space freed: {format_bytes(stats.total_space_freed)} | files processed: {stats.total_files_processed}")
    if trend.delta_percent is None:
        print(f"Trend: {trend.direction}")
    else:
        print(f"Trend: {trend.delta_percent:+.1f}% ({trend.direction})")
    for name, agg in sorted(stats.per_profile.items()):
        print(f"- {name}: {agg.count} runs, {agg.successes} ok, avg {format_duration(agg.avg_duration)}")
    if notifications["by_level"]:
        levels = ", ".join(f"{level}={count}" for level, count in sorted(notifications["by_level"].items()))
        print(f"Notifications: {levels}")
    return 0


def command_report(scheduler: Scheduler, days: int, save: bool) -> int:
    text, path = scheduler.report(days, save=save)
    print(text, end="")
    if path is not None:
        print(f"Saved to {path}")
    return 0


def command_suggest(scheduler: Scheduler, days: int) -> int:
    (profile, reason), suggestions = scheduler.suggest(days)
    print(f"Recommended profile: {profile} ({reason})")
    if not suggestions:
        print("No suggestions.")
    for item in suggestions:
        print(f"[{item.severity}] {item.title}: {item.detail}")
    return 0


def command_profiles(scheduler: Scheduler) -> int:
    for profile in scheduler.profiles():
        marker = "*" if scheduler.is_active(profile.name) else " "
        ops = ", ".join(op.name for op in profile.operations)
        print(f"{marker} {profile.name:<12} [{profile.tier}] {profile.schedule:<16} {ops}")
        if profile.description:
            print(f"    {profile.description}")
    return 0


def command_show(scheduler: Scheduler, name: str) -> int:
    profile = scheduler.registry.get(name)
    compiled = profile.compiled_schedule
    print("=" * 80)
    print(f"Profile: {profile.name} ({profile.tier}: {profile.source})")
    print(compiled.description)
    for key, value in compiled.timer_directives():
        print(f"{key}={value}")
    if compiled.cron_expr:
        print(f"Cron equivalent: {compiled.cron_expr}")
    print(f"Limits: {profile.resource_limits.describe()}")
    print(f"Conditions: {', '.join(p.describe() for p in profile.preconditions) or '(none)'}")
    print(f"Notifications: {profile.notifications} (threshold {profile.notify_threshold}), log level {profile.log_level}")
    print(f"Continue on error: {profile.continue_on_error}")
    print("Operations:")
    for op in profile.operations:
        timeout = op.timeout or profile.resource_limits.timeout
        print(f"- {op.name} [{op.kind.key}] timeout={timeout}s | {op.command}")
    upcoming = describe_next_fire(profile)
    print(f"Next run: {upcoming or 'determined by systemd'}")
    print("=" * 80)
    return 0


def command_delete(scheduler: Scheduler, name: str) -> int:
    scheduler.delete(name)
    print(f"Deleted {name}")
    return 0


def command_snapshots(scheduler: Scheduler) -> int:
    points = scheduler.snapshots()
    if not points:
        print("No snapshots.")
    for point in points:
        stamp = point.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        print(f"{point.id} | {stamp} | {format_bytes(point.size_bytes)} | {point.description}")
    return 0


def command_snapshot(scheduler: Scheduler, label: str, description: str) -> int:
    point = scheduler.snapshot(label, description)
    print(f"Created snapshot {point.id} ({format_bytes(point.size_bytes)})")
    return 0


def command_rollback(scheduler: Scheduler, snapshot_id: str) -> int:
    result = scheduler.rollback(snapshot_id)
    print(f"Restored {result.snapshot_id} (pre-rollback snapshot {result.pre_restore_id})")
    for step in result.steps:
        mode = "auto" if step.automatic else "manual"
        print(f"- {step.subsystem} [{mode}] {step.status}: {step.detail}")
    if result.manual_steps:
        print(f"Manual steps: {result.staging_dir / 'RESTORE.txt'}")
    return 0


def command_maintenance(scheduler: Scheduler) -> int:
    report = scheduler.maintenance()
    print(f"Reclaimed locks: {len(report.reclaimed_locks)}")
    print(f"Reset failed units: {', '.join(report.reset_units) or '(none)'}")
    print(f"Compacted: {report.compacted}")
    print(f"Pruned logs: {report.pruned_logs}")
    print(f"Pruned snapshots: {len(report.pruned_snapshots)}")
    if report.conflicts:
        print(f"Conflicting system maintenance active: {', '.join(report.conflicts)}")
    return 0


def command_export(scheduler: Scheduler, path: str, fmt: str, days: Optional[int]) -> int:
    count = scheduler.export(Path(path).expanduser(), fmt, days)
    print(f"Exported {count} record(s) to {path}")
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="upkeep",
        description="upkeep scheduled maintenance orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Path to upkeep YAML config (default: ~/.config/upkeep/upkeep.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Console and file log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    enable_parser = subparsers.add_parser("enable", help="Install and start the timer for a profile")
    enable_parser.add_argument("profile")

    disable_parser = subparsers.add_parser("disable", help="Stop and remove the timer for a profile")
    disable_parser.add_argument("profile")

    run_parser = subparsers.add_parser("run", help="Run a profile now through the safety guard")
    run_parser.add_argument("profile")
    run_parser.add_argument("--force", action="store_true", help="Skip precondition checks")
    run_parser.add_argument("--trigger", choices=sorted(VALID_TRIGGERS), default="manual")

    stop_parser = subparsers.add_parser("stop", help="Stop a running profile")
    stop_parser.add_argument("profile")

    status_parser = subparsers.add_parser("status", help="Show scheduler, timer and lock status")
    status_parser.add_argument("--json", action="store_true")

    history_parser = subparsers.add_parser("history", help="Show execution history")
    history_parser.add_argument("--profile")
    history_parser.add_argument("--days", type=int)
    history_parser.add_argument("--status", choices=sorted(VALID_STATUSES))
    history_parser.add_argument("--json", action="store_true")

    stats_parser = subparsers.add_parser("stats", help="Show run statistics")
    stats_parser.add_argument("--days", type=int, default=DEFAULT_DAYS)
    stats_parser.add_argument("--json", action="store_true")

    report_parser = subparsers.add_parser("report", help="Print a maintenance report")
    report_parser.add_argument("--days", type=int, default=DEFAULT_DAYS)
    report_parser.add_argument("--save", action="store_true", help="Also write the report to the reports directory")

    suggest_parser = subparsers.add_parser("suggest", help="Suggest a profile and tuning changes")
    suggest_parser.add_argument("--days", type=int, default=DEFAULT_DAYS)

    subparsers.add_parser("profiles", help="List profiles")

    show_parser = subparsers.add_parser("show", help="Show one profile")
    show_parser.add_argument("profile")

    delete_parser = subparsers.add_parser("delete", help="Delete a user profile")
    delete_parser.add_argument("profile")

    subparsers.add_parser("snapshots", help="List snapshots")

    snapshot_parser = subparsers.add_parser("snapshot", help="Create a snapshot now")
    snapshot_parser.add_argument("--label", default="manual")
    snapshot_parser.add_argument("--description", default="")

    rollback_parser = subparsers.add_parser("rollback", help="Restore a snapshot")
    rollback_parser.add_argument("snapshot_id")

    logs_parser = subparsers.add_parser("logs", help="Show recent journal output of a profile's timer service")
    logs_parser.add_argument("profile")
    logs_parser.add_argument("--lines", type=int, default=50)

    subparsers.add_parser("notify-test", help="Send a test notification through every channel")

    subparsers.add_parser("maintenance", help="Sweep stale locks, compact history and prune old data")

    export_parser = subparsers.add_parser("export", help="Export history records")
    export_parser.add_argument("path")
    export_parser.add_argument("--format", choices=["json", "csv"], default="json")
    export_parser.add_argument("--days", type=int)

    return parser.parse_args(argv)


def _dispatch(scheduler: Scheduler, args: argparse.Namespace) -> int:
    if getattr(args, "days", None) is not None and args.days <= 0:
        raise UpkeepError("--days must be >= 1")
    if args.command == "enable":
        return command_enable(scheduler, args.profile)
    if args.command == "disable":
        return command_disable(scheduler, args.profile)
    if args.command == "run":
        return command_run(scheduler, args.profile, force=args.force, trigger=args.trigger)
    if args.command == "stop":
        return command_stop(scheduler, args.profile)
    if args.command == "status":
        return command_status(scheduler, as_json=args.json)
    if args.command == "history":
        return command_history(scheduler, args.profile, args.days, args.status, as_json=args.json)
    if args.command == "stats":
        return command_stats(scheduler, args.days, as_json=args.json)
    if args.command == "report":
        return command_report(scheduler, args.days, save=args.save)
    if args.command == "suggest":
        return command_suggest(scheduler, args.days)
    if args.command == "profiles":
        return command_profiles(scheduler)
    if args.command == "show":
        return command_show(scheduler, args.profile)
    if args.command == "delete":
        return command_delete(scheduler, args.profile)
    if args.command == "snapshots":
        return command_snapshots(scheduler)
    if args.command == "snapshot":
        return command_snapshot(scheduler, args.label, args.description)
    if args.command == "rollback":
        return command_rollback(scheduler, args.snapshot_id)
    if args.command == "logs":
        return command_logs(scheduler, args.profile, args.lines)
    if args.command == "notify-test":
        return command_notify_test(scheduler)
    if args.command == "maintenance":
        return command_maintenance(scheduler)
    if args.command == "export":
        return command_export(scheduler, args.path, args.format, args.days)
    raise UpkeepError(f"Unsupported command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        scheduler = build_scheduler(args.config, args.log_level)
        return _dispatch(scheduler, args)
    except UpkeepError as exc:
        setup_logging(level=args.log_level)
        logger.error(str(exc))
        return 1
    except Exception as exc:
        setup_logging(level=args.log_level)
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import csv
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List

import pytest

from upkeep import storage
from upkeep.config import NotificationSettings
from upkeep.errors import UpkeepError
from upkeep.history import RUN_OPERATION, ExecutionRecord, HistoryStore
from upkeep.notify import (
    DesktopChannel,
    EmailChannel,
    JournalChannel,
    Level,
    LogFileChannel,
    NotificationDispatcher,
    NotificationEvent,
    build_channels,
)

UTC = timezone.utc
NOW = datetime(2026, 6, 15, 12, 0, tzinfo=UTC)


class _Collecting:
    name = "collect"

    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def available(self) -> bool:
        return True

    def deliver(self, event: NotificationEvent) -> None:
        self.events.append(event)


class _Broken:
    name = "broken"

    def available(self) -> bool:
        return True

    def deliver(self, event: NotificationEvent) -> None:
        raise RuntimeError("channel down")


class _Offline(_Collecting):
    name = "offline"

    def available(self) -> bool:
        return False


def _run(days_ago: float, status: str = "success", profile: str = "desktop", **fields: Any) -> ExecutionRecord:
    return ExecutionRecord(
        timestamp=NOW - timedelta(days=days_ago),
        operation_type=fields.pop("operation_type", RUN_OPERATION),
        profile=profile,
        status=status,
        **fields,
    )


# -- notifications --------------------------------------------------------


def test_threshold_filters_but_critical_always_sends() -> None:
    collector = _Collecting()
    dispatcher = NotificationDispatcher(NotificationSettings(level="WARN"), [collector])

    assert dispatcher.send(Level.INFO, "routine", "ignored") is None
    assert dispatcher.send("warning", "disk", "almost full", operation="desktop") is not None
    assert dispatcher.send(Level.WARN, "quiet profile", "dropped", threshold="ERROR") is None
    assert [event.title for event in collector.events] == ["disk"]

    disabled = NotificationDispatcher(NotificationSettings(enabled=False), [collector])
    assert not disabled.should_send(Level.ERROR)
    assert disabled.send(Level.CRITICAL, "rollback failed", "help") is not None
    assert collector.events[-1].level == Level.CRITICAL


def test_failing_channel_does_not_block_others(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    collector = _Collecting()
    dispatcher = NotificationDispatcher(NotificationSettings(), [_Broken(), _Offline(), collector], event_log=history)

    event = dispatcher.send(Level.ERROR, "server maintenance failed", "exit code 2", operation="server")

    assert event is not None
    assert event.delivered == ["collect"]
    stored = history.events()
    assert len(stored) == 1
    assert stored[0]["level"] == "ERROR"
    assert stored[0]["delivered"] == ["collect"]
    assert stored[0]["kind"] == "notification"


def test_log_file_channel_line_format(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "notifications.log"
    dispatcher = NotificationDispatcher(NotificationSettings(), [LogFileChannel(log_path)])

    dispatcher.send(Level.WARN, "desktop maintenance stopped", "stop requested", operation="desktop")
    dispatcher.send(Level.INFO, "snapshot", "taken")

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("[")
    assert lines[0].endswith("] [WARN] [desktop] desktop maintenance stopped: stop requested")
    assert lines[1].endswith("[INFO] [-] snapshot: taken")


def test_desktop_channel_needs_a_display() -> None:
    assert not DesktopChannel(environ={}).available()


def test_test_notification_ignores_thresholds(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    collect = _Collecting()
    settings = NotificationSettings(enabled=False, level="CRITICAL", desktop_enabled=False)
    dispatcher = NotificationDispatcher(settings, [LogFileChannel(tmp_path / "n.log"), collect], event_log=history)

    event = dispatcher.test()

    assert event is not None
    assert event.delivered == ["log", "collect"]
    assert event.message == "Test notification via log, collect."
    assert [row["operation"] for row in history.events()] == ["test"]


def test_journal_channel_maps_priority(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[Any] = []
    monkeypatch.setattr("upkeep.notify.subprocess.run", lambda argv, **kwargs: calls.append((argv, kwargs["input"])))

    JournalChannel().deliver(NotificationEvent(NOW, Level.ERROR, "Cleanup failed", "exit code 1", "server"))

    assert calls == [(["systemd-cat", "-t", "upkeep", "-p", "err"], "Cleanup failed: exit code 1")]


def test_email_channel_sends_through_smtp(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: List[Any] = []

    class _SMTP:
        def __init__(self, host: str, port: int, timeout: float) -> None:
            sent.append(("connect", host, port))

        def __enter__(self) -> "_SMTP":
            return self

        def __exit__(self, *exc: Any) -> None:
            return None

        def starttls(self) -> None:
            sent.append(("starttls",))

        def send_message(self, msg: Any) -> None:
            sent.append(("message", msg["Subject"], msg["To"]))

    monkeypatch.setattr("upkeep.notify.smtplib.SMTP", _SMTP)
    settings = NotificationSettings(
        email_enabled=True,
        email_to="ops@example.com",
        smtp_host="mail.example.com",
        smtp_port=587,
        smtp_starttls=True,
        desktop_enabled=False,
    )
    channels = build_channels(settings, Path("/unused/notifications.log"))
    assert [channel.name for channel in channels] == ["log", "email"]

    email = channels[1]
    assert isinstance(email, EmailChannel) and email.available()
    event = NotificationDispatcher(settings, [email]).send(Level.ERROR, "Backup failed", "disk full")

    assert event is not None and event.delivered == ["email"]
    assert sent == [
        ("connect", "mail.example.com", 587),
        ("starttls",),
        ("message", "[upkeep ERROR] Backup failed", "ops@example.com"),
    ]


def test_notification_stats_group_by_level_and_operation(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    dispatcher = NotificationDispatcher(NotificationSettings(), [], event_log=history)
    dispatcher.send(Level.INFO, "done", "ok", operation="desktop")
    dispatcher.send(Level.INFO, "done", "ok", operation="server")
    dispatcher.send(Level.ERROR, "failed", "boom", operation="desktop")

    stats = dispatcher.stats()

    assert stats["by_level"] == {"INFO": 2, "ERROR": 1}
    assert stats["by_operation"] == {"desktop": 2, "server": 1}


# -- history --------------------------------------------------------------


def test_compaction_drops_records_past_retention(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history", retention_days=30, notification_retention_days=7)
    storage.append_jsonl(history.records_path, [_run(31).to_payload(), _run(29).to_payload()])
    history.record_event({"timestamp": (NOW - timedelta(days=8)).isoformat(), "level": "INFO"})
    history.record_event({"timestamp": (NOW - timedelta(days=1)).isoformat(), "level": "WARN"})
    history.record_profile_event("ACTIVATE", "desktop", now=NOW - timedelta(days=40))

    removed = history.init(now=NOW)

    assert removed == {"records": 1, "notifications": 1, "profile_events": 1}
    remaining = history.query(now=NOW)
    assert len(remaining) == 1
    assert remaining[0].timestamp == NOW - timedelta(days=29)
    assert [row["level"] for row in storage.read_jsonl(history.events_path)] == ["WARN"]


def test_invalid_records_are_rejected(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    with pytest.raises(UpkeepError, match="Invalid execution status"):
        history.record(_run(0, status="exploded"))
    with pytest.raises(UpkeepError, match="Invalid trigger"):
        history.record(_run(0, trigger="cron"))
    with pytest.raises(UpkeepError):
        history.record_many([_run(0), _run(0, status="unknown")])
    assert history.query(now=NOW) == []


def test_query_filters(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    history.record_many(
        [
            _run(1, profile="desktop"),
            _run(2, status="failed", profile="server"),
            _run(3, profile="desktop", operation_type="temp"),
            _run(40, profile="desktop"),
        ]
    )

    assert len(history.query(now=NOW)) == 4
    assert len(history.query(days=30, now=NOW)) == 3
    assert [r.profile for r in history.query(status="failed", now=NOW)] == ["server"]
    assert [r.operation_type for r in history.query(profile="desktop", operation_type="temp", now=NOW)] == ["temp"]


def test_statistics_exclude_skipped_runs(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    history.record_many(
        [
            _run(1, duration_seconds=10.0, space_freed_bytes=1000),
            _run(2, duration_seconds=30.0, space_freed_bytes=500),
            _run(3, status="failed", duration_seconds=20.0),
            _run(4, status="skipped"),
            _run(1, operation_type="temp", files_processed=7, space_freed_bytes=1500),
        ]
    )

    stats = history.statistics(days=30, now=NOW)

    assert stats.total_runs == 3
    assert stats.successful == 2
    assert stats.failed == 1
    assert stats.skipped == 1
    assert stats.success_rate == pytest.approx(66.666, rel=1e-3)
    assert stats.average_duration == pytest.approx(20.0)
    assert stats.total_space_freed == 1500
    assert stats.total_files_processed == 7
    assert stats.per_operation["temp"].count == 1
    assert stats.per_profile["desktop"].count == 3
    assert stats.to_payload()["success_rate"] == 66.7


def test_trend_compares_recent_and_previous_windows(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    assert history.trend(now=NOW).direction == "insufficient data"

    history.record_many(
        [
            _run(1, duration_seconds=10.0),
            _run(3, duration_seconds=10.0),
            _run(10, duration_seconds=20.0),
            _run(12, status="failed", duration_seconds=500.0),
        ]
    )
    trend = history.trend(now=NOW)
    assert trend.direction == "faster"
    assert trend.delta_percent == pytest.approx(-50.0)

    for _ in range(3):
        history.record(_run(2, duration_seconds=40.0))
    assert history.trend(now=NOW).direction == "slower"


def test_suggestions_from_patterns(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    history.record_many(
        [_run(day, status="failed", operation_type="logs", profile="server") for day in (1, 2, 3)]
        + [_run(day, operation_type="cache", duration_seconds=400.0) for day in (1, 2, 3)]
        + [_run(day, status="failed", profile="server", system_load_at_start=2.5) for day in (1, 2)]
        + [_run(20)]
    )

    titles = [item.title for item in history.suggestions(now=NOW)]

    assert "Review operation logs" in titles
    assert "Optimise operation cache" in titles
    assert "Low utilisation of profile desktop" in titles
    assert "Schedule profile server off-peak" in titles
    assert "Low success rate" in titles


def test_report_sections_and_saved_copy(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history", reports_dir=tmp_path / "reports")
    history.record_many(
        [
            _run(1, space_freed_bytes=2048),
            _run(1, operation_type="temp", space_freed_bytes=2048),
            _run(2, status="failed", profile="server", details="logs: exit code 1"),
        ]
    )

    text = history.report(days=30, now=NOW)

    assert text.startswith("upkeep maintenance report\n")
    for heading in ("Summary", "Profiles", "Operations", "Top space savers", "Recent failures (7 days)", "Suggestions"):
        assert f"\n{heading}\n" in text
    assert "Runs: 2 (success 1, failed 1" in text
    assert "  temp: 2.0KB" in text
    assert "server/profile_run: logs: exit code 1" in text

    path = history.write_report(days=30, now=NOW)
    assert path.parent == tmp_path / "reports"
    assert path.name.startswith("report_") and path.suffix == ".txt"
    assert path.read_text(encoding="utf-8") == text


def test_export_json_and_csv(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    history.record_many([_run(0, trigger="scheduled", space_freed_bytes=10), _run(0, status="failed")])

    json_path = tmp_path / "out" / "history.json"
    assert history.export(json_path, "json") == 2
    rows = json.loads(json_path.read_text(encoding="utf-8"))
    assert [row["status"] for row in rows] == ["success", "failed"]
    assert rows[0]["trigger"] == "scheduled"

    csv_path = tmp_path / "out" / "history.csv"
    assert history.export(csv_path, "csv") == 2
    with open(csv_path, encoding="utf-8", newline="") as handle:
        parsed = list(csv.DictReader(handle))
    assert parsed[0]["space_freed_bytes"] == "10"
    assert "schema" not in parsed[0]

    with pytest.raises(UpkeepError, match="Unsupported export format: xml"):
        history.export(tmp_path / "out" / "history.xml", "xml")


def test_unreadable_lines_are_skipped(tmp_path: Path) -> None:
    history = HistoryStore(tmp_path / "history")
    history.record(_run(0))
    with open(history.records_path, "a", encoding="utf-8") as handle:
        handle.write("{not json\n")
        handle.write(json.dumps({"timestamp": NOW.isoformat(), "status": "mystery"}) + "\n")
    history.record(_run(0, status="failed"))

    assert [r.status for r in history.query(now=NOW)] == ["success", "failed"]
    assert history.last_run("desktop").status == "failed"

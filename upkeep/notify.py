"""
Severity-levelled notifications delivered to independent channels.
"""

from __future__ import annotations

import logging
import os
import shutil
import smtplib
import subprocess
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from upkeep.config import NotificationSettings

logger = logging.getLogger("upkeep.notify")
UTC = timezone.utc
SCHEMA_VERSION = 1


class Level(IntEnum):
    DEBUG = 0
    INFO = 1
    WARN = 2
    ERROR = 3
    CRITICAL = 4

    @staticmethod
    def parse(value: Any) -> "Level":
        if isinstance(value, Level):
            return value
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        try:
            return Level[name]
        except KeyError as exc:
            raise ValueError(f"Unknown notification level: {value}") from exc


DESKTOP_URGENCY = {
    Level.DEBUG: "low",
    Level.INFO: "low",
    Level.WARN: "normal",
    Level.ERROR: "critical",
    Level.CRITICAL: "critical",
}
JOURNAL_PRIORITY = {
    Level.DEBUG: "debug",
    Level.INFO: "info",
    Level.WARN: "warning",
    Level.ERROR: "err",
    Level.CRITICAL: "crit",
}


@dataclass
class NotificationEvent:
    timestamp: datetime
    level: Level
    title: str
    message: str
    operation: str = ""
    delivered: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "schema": SCHEMA_VERSION,
            "timestamp": self.timestamp.astimezone(UTC).isoformat(),
            "level": self.level.name,
            "title": self.title,
            "message": self.message,
            "operation": self.operation,
            "delivered": list(self.delivered),
        }

    def log_line(self) -> str:
        stamp = self.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        return f"[{stamp}] [{self.level.name}] [{self.operation or '-'}] {self.title}: {self.message}"


class LogFileChannel:
    name = "log"

    def __init__(self, path: Path) -> None:
        self.path = path

    def available(self) -> bool:
        return True

    def deliver(self, event: NotificationEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write(event.log_line() + "\n")


class JournalChannel:
    name = "journal"

    def available(self) -> bool:
        return shutil.which("systemd-cat") is not None

    def deliver(self, event: NotificationEvent) -> None:
        subprocess.run(
            ["systemd-cat", "-t", "upkeep", "-p", JOURNAL_PRIORITY[event.level]],
            input=f"{event.title}: {event.message}",
            text=True,
            timeout=10,
            check=True,
        )


class DesktopChannel:
    name = "desktop"

    def __init__(self, environ: Optional[Dict[str, str]] = None) -> None:
        self.environ = environ

    def available(self) -> bool:
        env = self.environ if self.environ is not None else os.environ
        if not (env.get("DISPLAY") or env.get("WAYLAND_DISPLAY")):
            return False
        return shutil.which("notify-send") is not None

    def deliver(self, event: NotificationEvent) -> None:
        subprocess.run(
            ["notify-send", "-a", "upkeep", "-u", DESKTOP_URGENCY[event.level], event.title, event.message],
            capture_output=True,
            timeout=10,
            check=True,
        )


class EmailChannel:
    name = "email"

    def __init__(self, settings: NotificationSettings) -> None:
        self.settings = settings

    def available(self) -> bool:
        return bool(self.settings.email_to and self.settings.smtp_host)

    def deliver(self, event: NotificationEvent) -> None:
        msg = MIMEText(f"{event.message}\n\nOperation: {event.operation or '-'}\nTime: {event.timestamp.isoformat()}")
        msg["Subject"] = f"[upkeep {event.level.name}] {event.title}"
        msg["From"] = self.settings.email_from
        msg["To"] = self.settings.email_to
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=15) as server:
            if self.settings.smtp_starttls:
                server.starttls()
            server.send_message(msg)


def build_channels(settings: NotificationSettings, log_path: Path) -> List[Any]:
    channels: List[Any] = [LogFileChannel(log_path)]
    if settings.journal_enabled:
        channels.append(JournalChannel())
    if settings.desktop_enabled:
        channels.append(DesktopChannel())
    if settings.email_enabled:
        channels.append(EmailChannel(settings))
    return channels


class NotificationDispatcher:
    def __init__(self, settings: NotificationSettings, channels: Sequence[Any], event_log: Optional[Any] = None) -> None:
        self.settings = settings
        self.channels = list(channels)
        self.event_log = event_log

    def should_send(self, level: Level, threshold: Optional[str] = None) -> bool:
        if level == Level.CRITICAL:
            return True
        if not self.settings.enabled:
            return False
        minimum = max(Level.parse(self.settings.level), Level.parse(threshold or "DEBUG"))
        return level >= minimum

    def send(
        self,
        level: Any,
        title: str,
        message: str,
        operation: str = "",
        threshold: Optional[str] = None,
        force: bool = False,
    ) -> Optional[NotificationEvent]:
        lvl = Level.parse(level)
        if not force and not self.should_send(lvl, threshold):
            logger.debug("Dropping %s notification below threshold: %s", lvl.name, title)
            return None

        event = NotificationEvent(
            timestamp=datetime.now(tz=UTC),
            level=lvl,
            title=title,
            message=message,
            operation=operation,
        )
        for channel in self.channels:
            try:
                if not channel.available():
                    logger.debug("Notification channel %s unavailable; skipping.", channel.name)
                    continue
                channel.deliver(event)
                event.delivered.append(channel.name)
            except Exception as exc:
                logger.warning("Notification channel %s failed: %s", channel.name, exc)

        if self.event_log is not None:
            try:
                self.event_log.record_event(event.to_payload())
            except OSError as exc:
                logger.error("Could not append notification to the event log: %s", exc)
        return event

    def stats(self, days: int = 30) -> Dict[str, Dict[str, int]]:
        events = self.event_log.events(days=days) if self.event_log is not None else []
        return {
            "by_level": dict(Counter(str(row.get("level", "")) for row in events)),
            "by_operation": dict(Counter(str(row.get("operation") or "-") for row in events)),
        }

    def test(self) -> Optional[NotificationEvent]:
        """Send an INFO event through every configured channel, ignoring thresholds."""
        return self.send(
            Level.INFO,
            "upkeep test notification",
            f"Test notification via {', '.join(channel.name for channel in self.channels) or 'no channels'}.",
            operation="test",
            force=True,
        )

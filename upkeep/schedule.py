"""
Schedule expressions: the accepted grammar, compilation to systemd timer
directives and a croniter-backed next-fire preview.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from croniter import croniter

from upkeep.errors import ScheduleError

UTC = timezone.utc

NAMED_SCHEDULES: Dict[str, Tuple[str, str]] = {
    "hourly": ("hourly", "0 * * * *"),
    "daily": ("daily", "0 0 * * *"),
    "weekly": ("weekly", "0 0 * * 1"),
    "monthly": ("monthly", "0 0 1 * *"),
    "yearly": ("yearly", "0 0 1 1 *"),
    "annually": ("yearly", "0 0 1 1 *"),
}
DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
DAY_ABBREVIATIONS = {name[:3]: num for name, num in DAY_NAME_TO_CRON.items()}
CRON_TO_CALENDAR_DAY = {0: "Sun", 1: "Mon", 2: "Tue", 3: "Wed", 4: "Thu", 5: "Fri", 6: "Sat", 7: "Sun"}
MONTH_ABBREVIATIONS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
INTERVAL_RE = re.compile(r"^(\d+)([mhd])$")
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
CALENDAR_RE = re.compile(r"^[A-Za-z0-9*,./:~ \-]+$")
CALENDAR_WORD_RE = re.compile(r"[A-Za-z]+")
CALENDAR_WORDS = set(DAY_NAME_TO_CRON) | set(DAY_ABBREVIATIONS)
CRON_BOUNDS = [("minute", 0, 59), ("hour", 0, 23), ("day_of_month", 1, 31), ("month", 1, 12), ("day_of_week", 0, 7)]


@dataclass(frozen=True)
class CompiledSchedule:
    expression: str
    kind: str  # calendar | interval
    on_calendar: Optional[str]
    interval: Optional[timedelta]
    cron_expr: Optional[str]
    description: str

    def timer_directives(self) -> List[Tuple[str, str]]:
        if self.kind == "interval" and self.interval is not None:
            seconds = int(self.interval.total_seconds())
            return [("OnBootSec", f"{seconds}s"), ("OnUnitActiveSec", f"{seconds}s")]
        return [("OnCalendar", self.on_calendar or "")]


def parse_hhmm(value: str, field_path: str) -> Tuple[int, int]:
    match = HHMM_RE.match(value.strip())
    if not match:
        raise ScheduleError(f'Error: {field_path} must use HH:MM (24h), got "{value}".')
    return int(match.group(1)), int(match.group(2))


def parse_interval(value: str, field_path: str) -> timedelta:
    match = INTERVAL_RE.match(value.strip().lower())
    if not match:
        raise ScheduleError(f'Error: {field_path} must be in format every <number><m|h|d>, got "{value}".')
    amount = int(match.group(1))
    if amount <= 0:
        raise ScheduleError(f"Error: {field_path} interval must be > 0.")
    unit = match.group(2)
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    return timedelta(days=amount)


def normalize_weekday_token(token: str, field_path: str) -> int:
    key = token.strip().lower()
    if key in DAY_NAME_TO_CRON:
        return DAY_NAME_TO_CRON[key]
    if key in DAY_ABBREVIATIONS:
        return DAY_ABBREVIATIONS[key]
    raise ScheduleError(f'Error: Invalid weekday "{token}" at {field_path}.')


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        key = token if token in mapping else token[:3]
        if key not in mapping:
            raise ScheduleError(f'Error: Invalid token "{token}" at {field_path}.')
        return str(mapping[key])

    return re.sub(r"[A-Za-z]+", repl, raw)


def validate_cron_token(token: str, field_path: str, min_value: int, max_value: int) -> str:
    token = token.strip()
    if not token:
        raise ScheduleError(f"Error: {field_path} cannot be empty.")
    if not CRON_FIELD_RE.match(token):
        raise ScheduleError(f'Error: Invalid cron token "{token}" at {field_path}.')
    for part in token.split(","):
        if not part:
            raise ScheduleError(f'Error: Invalid cron token "{token}" at {field_path}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise ScheduleError(f'Error: Invalid step "{part}" at {field_path}.')
            if base != "*":
                _validate_range_or_single(base, field_path, min_value, max_value)
            continue
        _validate_range_or_single(part, field_path, min_value, max_value)
    return token


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit() or int(left) > int(right):
            raise ScheduleError(f'Error: Invalid range "{token}" at {field_path}.')
        if int(left) < min_value or int(right) > max_value:
            raise ScheduleError(
                f'Error: Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.'
            )
        return
    if not token.isdigit():
        raise ScheduleError(f'Error: Invalid token "{token}" at {field_path}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise ScheduleError(f'Error: Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.')


def _calendar_field(token: str) -> str:
    """Translate one numeric cron field into systemd calendar syntax."""
    parts = []
    for part in token.split(","):
        if part.startswith("*/"):
            parts.append("0/" + part[2:])
        elif "/" in part:
            base, step = part.split("/", 1)
            parts.append(base.replace("-", "..") + "/" + step)
        else:
            parts.append(part.replace("-", ".."))
    return ",".join(parts)


def _calendar_weekday(token: str) -> str:
    if token == "*":
        return ""
    parts = []
    for part in token.split(","):
        if "/" in part:
            raise ScheduleError(f'Error: Stepped weekday "{part}" has no calendar equivalent.')
        if "-" in part:
            left, right = part.split("-", 1)
            parts.append(f"{CRON_TO_CALENDAR_DAY[int(left)]}..{CRON_TO_CALENDAR_DAY[int(right)]}")
        else:
            parts.append(CRON_TO_CALENDAR_DAY[int(part)])
    return ",".join(parts)


def cron_to_calendar(cron_expr: str) -> str:
    minute, hour, dom, month, dow = cron_expr.split()
    weekday = _calendar_weekday(dow)
    date_part = f"*-{_calendar_field(month)}-{_calendar_field(dom)}"
    time_part = f"{_calendar_field(hour)}:{_calendar_field(minute)}:00"
    return f"{weekday} {date_part} {time_part}".strip()


def _compile_cron(expression: str, field_path: str) -> CompiledSchedule:
    fields = expression.split()
    normalized: List[str] = []
    for raw, (name, low, high) in zip(fields, CRON_BOUNDS):
        token = raw
        if name == "day_of_week":
            token = replace_named_tokens(raw, DAY_ABBREVIATIONS, f"{field_path}.{name}")
        elif name == "month":
            token = replace_named_tokens(raw, MONTH_ABBREVIATIONS, f"{field_path}.{name}")
        normalized.append(validate_cron_token(token, f"{field_path}.{name}", low, high))
    cron_expr = " ".join(normalized)
    if not croniter.is_valid(cron_expr):
        raise ScheduleError(f'Error: {field_path} is not a valid cron expression: "{expression}".')
    return CompiledSchedule(
        expression=expression,
        kind="calendar",
        on_calendar=cron_to_calendar(cron_expr),
        interval=None,
        cron_expr=cron_expr,
        description=f"Cron: {cron_expr}",
    )


def _compile_calendar_pattern(expression: str, field_path: str) -> CompiledSchedule:
    if not CALENDAR_RE.match(expression) or not any(marker in expression for marker in ("..", "-", "~", ":")):
        raise ScheduleError(f'Error: {field_path} is not an accepted schedule expression: "{expression}".')
    for word in CALENDAR_WORD_RE.findall(expression):
        if word.lower() not in CALENDAR_WORDS:
            raise ScheduleError(f'Error: Invalid calendar token "{word}" at {field_path}.')
    return CompiledSchedule(
        expression=expression,
        kind="calendar",
        on_calendar=expression,
        interval=None,
        cron_expr=None,
        description=f"Calendar: {expression}",
    )


def _interval_cron(interval: timedelta) -> Optional[str]:
    minutes = int(interval.total_seconds() // 60)
    if minutes < 60 and 60 % minutes == 0:
        return f"*/{minutes} * * * *"
    if minutes % 60 == 0 and minutes < 24 * 60 and (24 * 60) % minutes == 0:
        return f"0 */{minutes // 60} * * *"
    if minutes == 24 * 60:
        return "0 0 * * *"
    return None


def compile_schedule(expression: str, field_path: str = "schedule") -> CompiledSchedule:
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleError(f"Error: {field_path} must be a non-empty string.")
    text = " ".join(expression.split())
    lowered = text.lower()
    tokens = lowered.split(" ")

    if lowered in NAMED_SCHEDULES:
        calendar, cron_expr = NAMED_SCHEDULES[lowered]
        return CompiledSchedule(text, "calendar", calendar, None, cron_expr, f"Runs {calendar}")

    if tokens[0] == "every" and len(tokens) == 2:
        interval = parse_interval(tokens[1], field_path)
        return CompiledSchedule(
            expression=text,
            kind="interval",
            on_calendar=None,
            interval=interval,
            cron_expr=_interval_cron(interval),
            description=f"Runs every {tokens[1]}",
        )

    if tokens[0] in ("daily", "weekdays", "weekends") and len(tokens) == 2:
        hour, minute = parse_hhmm(tokens[1], field_path)
        dow = {"daily": "*", "weekdays": "1-5", "weekends": "0,6"}[tokens[0]]
        prefix = {"daily": "", "weekdays": "Mon..Fri ", "weekends": "Sat,Sun "}[tokens[0]]
        return CompiledSchedule(
            expression=text,
            kind="calendar",
            on_calendar=f"{prefix}*-*-* {hour:02d}:{minute:02d}:00",
            interval=None,
            cron_expr=f"{minute} {hour} * * {dow}",
            description=f"Runs {tokens[0]} at {hour:02d}:{minute:02d}",
        )

    if tokens[0] == "weekly" and len(tokens) == 3:
        day = normalize_weekday_token(tokens[1], field_path)
        hour, minute = parse_hhmm(tokens[2], field_path)
        return CompiledSchedule(
            expression=text,
            kind="calendar",
            on_calendar=f"{CRON_TO_CALENDAR_DAY[day]} *-*-* {hour:02d}:{minute:02d}:00",
            interval=None,
            cron_expr=f"{minute} {hour} * * {day}",
            description=f"Runs weekly on {CRON_TO_CALENDAR_DAY[day]} at {hour:02d}:{minute:02d}",
        )

    if tokens[0] == "monthly" and len(tokens) == 3:
        if not tokens[1].isdigit() or not 1 <= int(tokens[1]) <= 28:
            raise ScheduleError(f"Error: {field_path} day of month must be between 1 and 28.")
        day_of_month = int(tokens[1])
        hour, minute = parse_hhmm(tokens[2], field_path)
        return CompiledSchedule(
            expression=text,
            kind="calendar",
            on_calendar=f"*-*-{day_of_month:02d} {hour:02d}:{minute:02d}:00",
            interval=None,
            cron_expr=f"{minute} {hour} {day_of_month} * *",
            description=f"Runs monthly on day {day_of_month} at {hour:02d}:{minute:02d}",
        )

    if len(tokens) == 5 and all(CRON_FIELD_RE.match(tok) or tok.isalpha() or "-" in tok for tok in tokens):
        if not any(":" in tok or ".." in tok or "~" in tok for tok in tokens):
            return _compile_cron(text, field_path)

    return _compile_calendar_pattern(text, field_path)


def validate_schedule(expression: str, field_path: str = "schedule") -> str:
    return compile_schedule(expression, field_path).expression


def next_fire(compiled: CompiledSchedule, after: Optional[datetime] = None) -> Optional[datetime]:
    """Next local fire time strictly after ``after``; None when only systemd can tell."""
    reference = (after or datetime.now(tz=UTC)).astimezone()
    if compiled.cron_expr:
        return croniter(compiled.cron_expr, reference).get_next(datetime)
    if compiled.interval is not None:
        return reference + compiled.interval
    return None


def next_fire_times(compiled: CompiledSchedule, count: int, after: Optional[datetime] = None) -> List[datetime]:
    times: List[datetime] = []
    cursor = after
    for _ in range(count):
        nxt = next_fire(compiled, cursor)
        if nxt is None:
            break
        times.append(nxt)
        cursor = nxt
    return times

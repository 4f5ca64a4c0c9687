from __future__ import annotations

import subprocess
from typing import Any

import pytest

from upkeep.errors import ConfigError
from upkeep.limits import ResourceLimiter, ResourceLimits, format_memory, parse_resource_limits
from upkeep.preconditions import (
    PreconditionEvaluator,
    parse_preconditions,
    precondition_payload,
)


class _Sensors:
    def __init__(self, **readings: Any) -> None:
        self.readings = readings

    def __getattr__(self, name: str) -> Any:
        readings = self.__dict__.get("readings", {})
        if name in readings:
            return lambda: readings[name]
        raise AttributeError(name)


def test_parse_mapping_and_list_forms() -> None:
    from_mapping = parse_preconditions({"on_ac_power": True, "system_load": "< 0.8", "idle_time": 300}, "p")
    assert [(p.name, p.operator, p.threshold) for p in from_mapping] == [
        ("on_ac_power", "=", True),
        ("system_load", "<", 0.8),
        ("idle_time", ">=", 300.0),
    ]

    from_list = parse_preconditions(["no_git_operations", {"memory_usage": "<= 75%"}], "p")
    assert from_list[0].name == "no_git_operations"
    assert (from_list[1].operator, from_list[1].threshold) == ("<=", 75.0)
    assert precondition_payload(from_list) == {"no_git_operations": True, "memory_usage": "<= 75"}


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"moon_phase": "full"}, 'Unknown precondition "moon_phase"'),
        ({"no_git_operations": False}, "only accepts true"),
        ({"system_load": True}, "needs a numeric threshold"),
        ({"system_load": "low"}, 'threshold "low" is not understood'),
        (["no_git_operations", "no_git_operations"], 'Duplicate precondition "no_git_operations"'),
        ("on_ac_power", "must be a mapping or a list"),
    ],
)
def test_invalid_preconditions_rejected(raw: Any, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_preconditions(raw, "profile.conditions")


def test_evaluate_reports_first_failing_predicate() -> None:
    preconditions = parse_preconditions({"on_ac_power": True, "system_load": 0.8, "idle_time": 300}, "p")

    passing = PreconditionEvaluator(_Sensors(on_ac_power=True, load_average=0.2, idle_seconds=900.0))
    assert passing.evaluate(preconditions).passed

    evaluator = PreconditionEvaluator(_Sensors(on_ac_power=True, load_average=1.7, idle_seconds=900.0))
    evaluation = evaluator.evaluate(preconditions)
    assert not evaluation.passed
    assert evaluation.failed is not None and evaluation.failed.name == "system_load"
    assert evaluation.reason == "system_load < 0.8 not met (observed 1.70)"
    assert "idle_time" not in evaluation.observations


def test_unavailable_sensor_passes_except_free_disk() -> None:
    evaluator = PreconditionEvaluator(_Sensors())
    assert evaluator.evaluate(parse_preconditions({"on_ac_power": True, "idle_time": 60}, "p")).passed

    evaluation = evaluator.evaluate(parse_preconditions({"min_free_disk_gb": 1}, "p"))
    assert not evaluation.passed
    assert "sensor unavailable" in evaluation.reason


def test_absence_predicates() -> None:
    preconditions = parse_preconditions(["no_package_manager"], "p")
    assert PreconditionEvaluator(_Sensors(package_manager_active=False)).evaluate(preconditions).passed
    busy = PreconditionEvaluator(_Sensors(package_manager_active=True)).evaluate(preconditions)
    assert not busy.passed
    assert busy.reason == "no_package_manager not met (observed True)"


def test_resource_limits_parsing() -> None:
    defaults = parse_resource_limits(None, "limits")
    assert defaults == ResourceLimits.default()
    assert format_memory(defaults.memory_bytes) == "512M"

    limits = parse_resource_limits({"memory": "1G", "cpu": "30%", "nice": 15, "timeout": 60}, "limits")
    assert limits.memory_bytes == 1024 ** 3
    assert limits.cpu_percent == 30
    assert limits.nice == 15
    assert limits.timeout == 60
    assert limits.to_payload()["memory"] == "1G"

    unlimited = parse_resource_limits({"memory": None, "cpu": None}, "limits")
    assert unlimited.memory_bytes is None and unlimited.cpu_percent is None


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"memory": "lots"}, "must look like 512M"),
        ({"cpu": "150%"}, "between 1% and 100%"),
        ({"nice": 25}, "nice must be between 0 and 19"),
        ({"io_priority": 9}, "io_priority must be between 0 and 7"),
        ({"timeout": 0}, "timeout must be >= 1"),
        ({"swap": "1G"}, "Unknown key"),
    ],
)
def test_invalid_resource_limits_rejected(raw: Any, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_resource_limits(raw, "limits")


def test_limiter_applies_to_running_process() -> None:
    proc = subprocess.Popen(["sleep", "5"])
    try:
        limits = ResourceLimits(
            memory_bytes=256 * 1024 ** 2,
            cpu_percent=50,
            io_priority=None,
            nice=19,
            timeout=10,
            max_open_files=256,
        )
        applied = ResourceLimiter().apply(proc.pid, limits)
    finally:
        proc.kill()
        proc.wait()
    assert "nice=19" in applied
    assert "nofile=256" in applied
    assert "memory=256M" in applied


def test_limiter_tolerates_exited_process() -> None:
    proc = subprocess.Popen(["true"])
    proc.wait()
    assert ResourceLimiter().apply(proc.pid, ResourceLimits.default()) == []

#!/usr/bin/env python3
"""
Operation-facing client for reporting maintenance metrics back to the executor.

The executor exports the run context through ``UPKEEP_*`` environment
variables. A Python operation may call ``reporter.report(...)``; the figures
are merged into the metrics file and folded into the ExecutionRecord.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

ENV_RUN_ID = "UPKEEP_RUN_ID"
ENV_JOB_NAME = "UPKEEP_JOB_NAME"
ENV_PROFILE = "UPKEEP_PROFILE"
ENV_METRICS_FILE = "UPKEEP_METRICS_FILE"
METRIC_KEYS = ("space_freed_bytes", "files_processed", "error_count")


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


@dataclass
class RunContext:
    run_id: Optional[str]
    job_name: Optional[str]
    profile: Optional[str]
    metrics_file: Optional[str]

    @staticmethod
    def from_env() -> "RunContext":
        return RunContext(
            run_id=_non_empty(os.getenv(ENV_RUN_ID)),
            job_name=_non_empty(os.getenv(ENV_JOB_NAME)),
            profile=_non_empty(os.getenv(ENV_PROFILE)),
            metrics_file=_non_empty(os.getenv(ENV_METRICS_FILE)),
        )


def read_metrics(path: Path) -> Dict[str, int]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(payload, dict):
        return {}
    metrics: Dict[str, int] = {}
    for key in METRIC_KEYS:
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            metrics[key] = int(value)
    return metrics


class MetricsReporter:
    def __init__(self, metrics_file: Optional[str] = None) -> None:
        self.context = RunContext.from_env()
        self.metrics_file = _non_empty(metrics_file) or self.context.metrics_file

    @property
    def enabled(self) -> bool:
        return bool(self.metrics_file)

    def report(self, space_freed_bytes: int = 0, files_processed: int = 0, error_count: int = 0) -> bool:
        """Add to the running totals for this run; False outside an upkeep run."""
        if not self.metrics_file:
            return False
        path = Path(self.metrics_file)
        totals: Dict[str, Any] = dict(read_metrics(path))
        totals["space_freed_bytes"] = totals.get("space_freed_bytes", 0) + max(0, int(space_freed_bytes))
        totals["files_processed"] = totals.get("files_processed", 0) + max(0, int(files_processed))
        totals["error_count"] = totals.get("error_count", 0) + max(0, int(error_count))
        if self.context.run_id:
            totals["run_id"] = self.context.run_id
        try:
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(json.dumps(totals), encoding="utf-8")
            os.replace(tmp, path)
        except OSError:
            return False
        return True


reporter = MetricsReporter()

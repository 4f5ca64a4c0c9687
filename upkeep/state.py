"""Persisted scheduler state, mutated only through read-modify-write under a file lock."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from upkeep import storage

UTC = timezone.utc
STATE_VERSION = 1


@dataclass
class SchedulerState:
    version: int = STATE_VERSION
    initialized_at: Optional[str] = None
    last_check: Optional[str] = None
    maintenance_count: int = 0
    last_maintenance: Optional[str] = None
    active_profiles: List[str] = field(default_factory=list)

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "SchedulerState":
        return SchedulerState(
            version=int(payload.get("version", STATE_VERSION)),
            initialized_at=payload.get("initialized_at"),
            last_check=payload.get("last_check"),
            maintenance_count=int(payload.get("maintenance_count", 0)),
            last_maintenance=payload.get("last_maintenance"),
            active_profiles=sorted(set(payload.get("active_profiles") or [])),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "initialized_at": self.initialized_at,
            "last_check": self.last_check,
            "maintenance_count": self.maintenance_count,
            "last_maintenance": self.last_maintenance,
            "active_profiles": sorted(set(self.active_profiles)),
        }

    def is_active(self, profile: str) -> bool:
        return profile in self.active_profiles


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class StateStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> SchedulerState:
        payload = storage.read_json(self.path, default={}) or {}
        return SchedulerState.from_payload(payload)

    def update(self, mutate: Callable[[SchedulerState], None]) -> SchedulerState:
        """Apply ``mutate`` to the current state and persist the result atomically."""
        result: Dict[str, SchedulerState] = {}

        def _apply(payload: Dict[str, Any]) -> Dict[str, Any]:
            state = SchedulerState.from_payload(payload)
            if state.initialized_at is None:
                state.initialized_at = now_iso()
            mutate(state)
            result["state"] = state
            return state.to_payload()

        storage.locked_update(self.path, _apply)
        return result["state"]

    def set_active(self, profile: str, active: bool) -> SchedulerState:
        def _mutate(state: SchedulerState) -> None:
            names = set(state.active_profiles)
            if active:
                names.add(profile)
            else:
                names.discard(profile)
            state.active_profiles = sorted(names)

        return self.update(_mutate)

    def touch_check(self) -> SchedulerState:
        def _mutate(state: SchedulerState) -> None:
            state.last_check = now_iso()

        return self.update(_mutate)

    def record_maintenance(self) -> SchedulerState:
        def _mutate(state: SchedulerState) -> None:
            stamp = now_iso()
            state.maintenance_count += 1
            state.last_maintenance = stamp
            state.last_check = stamp

        return self.update(_mutate)

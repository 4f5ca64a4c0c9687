"""
Per-job-name mutual exclusion with liveness-checked owner tokens.
"""

from __future__ import annotations

import logging
import os
import re
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from upkeep import storage
from upkeep.errors import LockBusy

logger = logging.getLogger("upkeep.locks")
UTC = timezone.utc
LOCK_SUFFIX = ".lock"
UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]")


def process_identity(pid: int) -> str:
    try:
        started = psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return f"{pid}:0"
    return f"{pid}:{started:.3f}"


def owner_is_live(record: Dict[str, Any]) -> bool:
    try:
        pid = int(record.get("pid", 0))
    except (TypeError, ValueError):
        return False
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        owner_id = str(record.get("owner_id", ""))
        if ":" in owner_id:
            recorded_start = owner_id.split(":", 1)[1]
            if recorded_start != "0" and recorded_start != f"{proc.create_time():.3f}":
                return False
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return True


@dataclass
class LockHandle:
    job_name: str
    owner_id: str
    token: str
    path: Path
    acquired_at: str
    reclaimed: Optional[Dict[str, Any]] = None
    released: bool = field(default=False, compare=False)


class JobLockManager:
    def __init__(self, locks_dir: Path) -> None:
        self.locks_dir = locks_dir

    def lock_path(self, job_name: str) -> Path:
        return self.locks_dir / (UNSAFE_CHARS_RE.sub("_", job_name) + LOCK_SUFFIX)

    def read(self, job_name: str) -> Optional[Dict[str, Any]]:
        return storage.read_json(self.lock_path(job_name))

    def acquire(self, job_name: str) -> Optional[LockHandle]:
        """Return a handle, or None when a live owner holds the lock."""
        path = self.lock_path(job_name)
        with storage.exclusive(path):
            existing = storage.read_json(path)
            reclaimed = None
            if existing is not None:
                if owner_is_live(existing):
                    logger.info(
                        "Lock for %s is held by %s since %s",
                        job_name,
                        existing.get("owner_id"),
                        existing.get("acquired_at"),
                    )
                    return None
                logger.warning(
                    "Reclaiming stale lock for %s (owner %s is not running)",
                    job_name,
                    existing.get("owner_id"),
                )
                reclaimed = existing

            pid = os.getpid()
            handle = LockHandle(
                job_name=job_name,
                owner_id=process_identity(pid),
                token=uuid.uuid4().hex,
                path=path,
                acquired_at=datetime.now(tz=UTC).isoformat(),
                reclaimed=reclaimed,
            )
            storage.atomic_write_json(
                path,
                {
                    "job_name": job_name,
                    "owner_id": handle.owner_id,
                    "pid": pid,
                    "host": socket.gethostname(),
                    "token": handle.token,
                    "acquired_at": handle.acquired_at,
                    "child_pid": None,
                },
            )
        return handle

    def try_acquire(self, job_name: str) -> LockHandle:
        handle = self.acquire(job_name)
        if handle is None:
            record = self.read(job_name) or {}
            raise LockBusy(job_name, str(record.get("owner_id", "")))
        return handle

    def _owned_by(self, record: Optional[Dict[str, Any]], handle: LockHandle) -> bool:
        return (
            record is not None
            and record.get("owner_id") == handle.owner_id
            and record.get("token") == handle.token
        )

    def set_child_pid(self, handle: LockHandle, child_pid: Optional[int]) -> None:
        with storage.exclusive(handle.path):
            record = storage.read_json(handle.path)
            if not self._owned_by(record, handle):
                return
            record["child_pid"] = child_pid
            storage.atomic_write_json(handle.path, record)

    def release(self, handle: LockHandle) -> bool:
        if handle.released:
            return False
        with storage.exclusive(handle.path):
            record = storage.read_json(handle.path)
            handle.released = True
            if not self._owned_by(record, handle):
                logger.warning("Not releasing lock for %s: ownership changed.", handle.job_name)
                return False
            handle.path.unlink()
        return True

    def list(self) -> List[Dict[str, Any]]:
        if not self.locks_dir.is_dir():
            return []
        records = []
        for path in sorted(self.locks_dir.glob("*" + LOCK_SUFFIX)):
            record = storage.read_json(path)
            if not isinstance(record, dict):
                continue
            records.append({**record, "live": owner_is_live(record)})
        return records

    def sweep(self) -> List[Dict[str, Any]]:
        """Remove every lock whose owner is gone; returns the reclaimed records."""
        reclaimed: List[Dict[str, Any]] = []
        if not self.locks_dir.is_dir():
            return reclaimed
        for path in sorted(self.locks_dir.glob("*" + LOCK_SUFFIX)):
            with storage.exclusive(path):
                record = storage.read_json(path)
                if not isinstance(record, dict):
                    path.unlink(missing_ok=True)
                    continue
                if owner_is_live(record):
                    continue
                logger.warning("Removing stale lock %s (owner %s)", path.name, record.get("owner_id"))
                path.unlink(missing_ok=True)
                reclaimed.append(record)
        return reclaimed

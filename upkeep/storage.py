"""
Persistence primitives shared by the state file, the history logs and the lock files.

Every writer goes through write-temp-then-rename so readers never observe a
partial record. Read-modify-write sequences are serialised with an advisory
``flock`` on a sidecar ``.guard`` file.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=True) + "\n")


def read_json(path: Path, default: Any = None) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default


@contextmanager
def exclusive(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock guarding ``path`` for the duration of the block."""
    guard = path.with_name(path.name + ".guard")
    guard.parent.mkdir(parents=True, exist_ok=True)
    with open(guard, "a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def locked_update(path: Path, mutate: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]) -> Dict[str, Any]:
    with exclusive(path):
        current = read_json(path, default={}) or {}
        updated = mutate(current)
        if updated is None:
            updated = current
        atomic_write_json(path, updated)
        return updated


def read_jsonl(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        return []
    rows: List[Dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(row, dict):
            rows.append(row)
    return rows


def _render_jsonl(rows: Iterable[Dict[str, Any]]) -> str:
    return "".join(json.dumps(row, sort_keys=True) + "\n" for row in rows)


def append_jsonl(path: Path, rows: Iterable[Dict[str, Any]]) -> None:
    new_rows = list(rows)
    if not new_rows:
        return
    with exclusive(path):
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        atomic_write_text(path, existing + _render_jsonl(new_rows))


def rewrite_jsonl(path: Path, keep: Callable[[Dict[str, Any]], bool]) -> int:
    """Drop rows for which ``keep`` is false; returns the number removed."""
    with exclusive(path):
        rows = read_jsonl(path)
        kept = [row for row in rows if keep(row)]
        removed = len(rows) - len(kept)
        if removed:
            atomic_write_text(path, _render_jsonl(kept))
        return removed

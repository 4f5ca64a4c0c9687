"""
Snapshots of mutable system state and their restoration.

A snapshot is a tar.gz archive plus a JSON metadata record written last
(sealing). Configuration files and service enablement are restored
automatically; packages, installation files and user data are staged with
the commands an operator runs to finish the restore.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import shutil
import stat
import subprocess
import tarfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from upkeep import storage
from upkeep.errors import RollbackFailed, SnapshotFailed

logger = logging.getLogger("upkeep.backup")
UTC = timezone.utc
ARCHIVE_SUFFIX = ".tar.gz"
METADATA_SUFFIX = ".json"
MANIFEST_NAME = "manifest.json"
SERVICE_STATE_NAME = "services/state.json"

PACKAGE_COMMANDS: Dict[str, List[str]] = {
    "dpkg-selections.txt": ["dpkg", "--get-selections"],
    "apt-manual.txt": ["apt-mark", "showmanual"],
    "apt-hold.txt": ["apt-mark", "showhold"],
    "snap-list.txt": ["snap", "list"],
    "flatpak-list.txt": ["flatpak", "list", "--app", "--columns=application"],
}
RESTORABLE_UNIT_STATES = {"enabled", "disabled", "masked"}


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def run_capture(argv: Sequence[str], timeout: int = 60) -> Optional[str]:
    """stdout of a successful command, None when the tool is missing or fails."""
    if shutil.which(argv[0]) is None:
        return None
    try:
        result = subprocess.run(list(argv), capture_output=True, text=True, timeout=timeout, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Could not run %s: %s", argv[0], exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


class SystemctlServiceController:
    """Reads and sets unit enablement through systemctl."""

    def __init__(self, user: bool = True) -> None:
        self.user = user

    def _base(self) -> List[str]:
        return ["systemctl", "--user"] if self.user else ["systemctl"]

    def is_enabled(self, unit: str) -> str:
        try:
            result = subprocess.run(
                self._base() + ["is-enabled", unit], capture_output=True, text=True, timeout=30, check=False
            )
        except (OSError, subprocess.TimeoutExpired):
            return "unknown"
        lines = (result.stdout or "").strip().splitlines()
        return lines[0].strip() if lines else "not-found"

    def is_active(self, unit: str) -> bool:
        try:
            result = subprocess.run(
                self._base() + ["is-active", "--quiet", unit], capture_output=True, timeout=30, check=False
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def set_state(self, unit: str, state: str) -> None:
        current = self.is_enabled(unit)
        commands: List[List[str]] = []
        if current == "masked" and state != "masked":
            commands.append(["unmask", unit])
        if state == "enabled":
            commands.append(["enable", unit])
        elif state == "disabled":
            commands.append(["disable", unit])
        elif state == "masked":
            commands.append(["mask", unit])
        for args in commands:
            result = subprocess.run(self._base() + args, capture_output=True, text=True, timeout=60, check=False)
            if result.returncode != 0:
                raise RollbackFailed(f"systemctl {' '.join(args)} failed: {result.stderr.strip()}")


@dataclass(frozen=True)
class SnapshotPoint:
    id: str
    created_at: datetime
    label: str
    description: str
    archive: Path
    sha256: str
    size_bytes: int
    contents: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.astimezone(UTC).isoformat(),
            "label": self.label,
            "description": self.description,
            "archive": self.archive.name,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "contents": self.contents,
            "metadata": self.metadata,
        }

    @staticmethod
    def from_payload(payload: Dict[str, Any], directory: Path) -> "SnapshotPoint":
        return SnapshotPoint(
            id=payload["id"],
            created_at=datetime.fromisoformat(payload["created_at"]),
            label=payload.get("label", ""),
            description=payload.get("description", ""),
            archive=directory / payload["archive"],
            sha256=payload["sha256"],
            size_bytes=int(payload.get("size_bytes", 0)),
            contents=payload.get("contents", {}),
            metadata=payload.get("metadata", {}),
        )

    def config_entries(self) -> List[Dict[str, Any]]:
        return list(self.contents.get("config_files", []))

    def service_state(self) -> Dict[str, str]:
        return dict(self.contents.get("service_state", {}))


@dataclass
class RestoreStep:
    subsystem: str
    automatic: bool
    status: str  # restored | manual | skipped | failed
    detail: str = ""
    commands: List[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    snapshot_id: str
    pre_restore_id: Optional[str]
    staging_dir: Path
    steps: List[RestoreStep] = field(default_factory=list)

    @property
    def manual_steps(self) -> List[RestoreStep]:
        return [step for step in self.steps if step.status == "manual"]


class BackupManager:
    def __init__(
        self,
        snapshots_dir: Path,
        staging_dir: Path,
        config_paths: Iterable[Path] = (),
        user_data_paths: Iterable[Path] = (),
        services: Iterable[str] = (),
        retention: int = 10,
        package_state: bool = True,
        service_controller: Optional[Any] = None,
        installation_paths: Optional[Callable[[], List[Path]]] = None,
        tracked_units: Optional[Callable[[], List[str]]] = None,
        command_runner: Callable[[Sequence[str]], Optional[str]] = run_capture,
    ) -> None:
        self.snapshots_dir = snapshots_dir
        self.staging_dir = staging_dir
        self.config_paths = [Path(p) for p in config_paths]
        self.user_data_paths = [Path(p) for p in user_data_paths]
        self.services = list(services)
        self.retention = max(1, retention)
        self.package_state = package_state
        self.service_controller = service_controller or SystemctlServiceController()
        self.installation_paths = installation_paths or (lambda: [])
        self.tracked_units = tracked_units or (lambda: [])
        self.command_runner = command_runner

    # -- snapshot ---------------------------------------------------------

    def _excluded(self) -> Set[Path]:
        return {self.snapshots_dir.resolve(), self.staging_dir.resolve()}

    def units(self) -> List[str]:
        seen: List[str] = []
        for unit in list(self.services) + list(self.tracked_units()):
            if unit not in seen:
                seen.append(unit)
        return seen

    def snapshot(
        self,
        label: str,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        protect: Iterable[str] = (),
    ) -> SnapshotPoint:
        created = datetime.now(tz=UTC)
        snapshot_id = f"{label}-{created.strftime('%Y%m%d_%H%M%S_%f')}"
        archive = self.snapshots_dir / (snapshot_id + ARCHIVE_SUFFIX)
        partial = archive.with_name(archive.name + ".partial")
        logger.info("Creating snapshot %s", snapshot_id)

        try:
            self.snapshots_dir.mkdir(parents=True, exist_ok=True)
            with tarfile.open(partial, "w:gz") as tar:
                contents: Dict[str, Any] = {
                    "config_files": self._add_paths(tar, "config", self.config_paths),
                    "user_data": self._add_paths(tar, "user_data", self.user_data_paths),
                    "installation_files": self._add_paths(tar, "installation", self.installation_paths()),
                    "package_state": self._add_package_state(tar),
                    "service_state": self._capture_service_state(),
                }
                self._add_bytes(tar, SERVICE_STATE_NAME, json.dumps(contents["service_state"], indent=2).encode())
                self._add_bytes(tar, MANIFEST_NAME, json.dumps(contents, indent=2, sort_keys=True).encode())
            os.replace(partial, archive)
            digest = sha256_file(archive)
            self._verify_archive(archive, digest)
            point = SnapshotPoint(
                id=snapshot_id,
                created_at=created,
                label=label,
                description=description,
                archive=archive,
                sha256=digest,
                size_bytes=archive.stat().st_size,
                contents=contents,
                metadata=dict(metadata or {}),
            )
            storage.atomic_write_json(self._metadata_path(snapshot_id), point.to_payload())
        except (OSError, tarfile.TarError, ValueError) as exc:
            for leftover in (partial, archive):
                if leftover.exists():
                    leftover.unlink()
            raise SnapshotFailed(f"Snapshot {snapshot_id} failed: {exc}") from exc

        logger.info("Snapshot %s sealed (%s bytes, sha256=%s)", snapshot_id, point.size_bytes, digest[:12])
        self.prune(self.retention, protect={snapshot_id, *protect})
        return point

    def _add_bytes(self, tar: tarfile.TarFile, name: str, data: bytes) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mtime = int(datetime.now(tz=UTC).timestamp())
        info.mode = 0o600
        tar.addfile(info, io.BytesIO(data))

    def _add_paths(self, tar: tarfile.TarFile, prefix: str, paths: Iterable[Path]) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        excluded = self._excluded()
        for index, raw_path in enumerate(paths):
            path = Path(raw_path).expanduser()
            arcname = f"{prefix}/{index}"
            entry: Dict[str, Any] = {"source": str(path), "arcname": arcname}
            if path.is_symlink():
                entry.update(type="symlink", target=os.readlink(path))
                tar.add(str(path), arcname=arcname, recursive=False)
            elif path.is_file():
                entry.update(type="file", sha256=sha256_file(path), mode=stat.S_IMODE(path.stat().st_mode))
                tar.add(str(path), arcname=arcname, recursive=False)
            elif path.is_dir():
                files: Dict[str, Dict[str, Any]] = {}
                dirs: List[str] = []
                for root, dirnames, filenames in os.walk(path):
                    root_path = Path(root)
                    walk_into: List[str] = []
                    for dirname in sorted(dirnames):
                        dir_path = root_path / dirname
                        rel = str(dir_path.relative_to(path))
                        if dir_path.is_symlink():
                            files[rel] = {"type": "symlink", "target": os.readlink(dir_path)}
                            tar.add(str(dir_path), arcname=f"{arcname}/{rel}", recursive=False)
                        elif dir_path.resolve() not in excluded:
                            dirs.append(rel)
                            walk_into.append(dirname)
                    dirnames[:] = walk_into
                    for filename in sorted(filenames):
                        file_path = root_path / filename
                        rel = str(file_path.relative_to(path))
                        if file_path.is_symlink():
                            files[rel] = {"type": "symlink", "target": os.readlink(file_path)}
                        elif file_path.is_file():
                            files[rel] = {
                                "type": "file",
                                "sha256": sha256_file(file_path),
                                "mode": stat.S_IMODE(file_path.stat().st_mode),
                            }
                        else:
                            continue
                        tar.add(str(file_path), arcname=f"{arcname}/{rel}", recursive=False)
                entry.update(type="dir", files=files, dirs=dirs, mode=stat.S_IMODE(path.stat().st_mode))
            else:
                entry.update(type="absent")
            entries.append(entry)
        return entries

    def _add_package_state(self, tar: tarfile.TarFile) -> List[str]:
        captured: List[str] = []
        if not self.package_state:
            return captured
        for name, argv in PACKAGE_COMMANDS.items():
            output = self.command_runner(argv)
            if output is None:
                continue
            self._add_bytes(tar, f"packages/{name}", output.encode("utf-8"))
            captured.append(name)
        return captured

    def _capture_service_state(self) -> Dict[str, str]:
        return {unit: self.service_controller.is_enabled(unit) for unit in self.units()}

    def _verify_archive(self, archive: Path, expected_sha256: str) -> None:
        if sha256_file(archive) != expected_sha256:
            raise SnapshotFailed(f"Checksum mismatch for {archive.name}")
        with tarfile.open(archive, "r:gz") as tar:
            names = set()
            for member in tar:
                names.add(member.name)
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is None:
                        raise SnapshotFailed(f"Unreadable member {member.name} in {archive.name}")
                    while extracted.read(1024 * 1024):
                        pass
        if MANIFEST_NAME not in names:
            raise SnapshotFailed(f"{archive.name} has no manifest")

    # -- catalogue --------------------------------------------------------

    def _metadata_path(self, snapshot_id: str) -> Path:
        return self.snapshots_dir / (snapshot_id + METADATA_SUFFIX)

    def list(self) -> List[SnapshotPoint]:
        if not self.snapshots_dir.is_dir():
            return []
        points: List[SnapshotPoint] = []
        for meta in self.snapshots_dir.glob("*" + METADATA_SUFFIX):
            payload = storage.read_json(meta)
            if not isinstance(payload, dict) or "id" not in payload:
                continue
            points.append(SnapshotPoint.from_payload(payload, self.snapshots_dir))
        return sorted(points, key=lambda point: point.created_at)

    def get(self, snapshot_id: str) -> SnapshotPoint:
        payload = storage.read_json(self._metadata_path(snapshot_id))
        if not isinstance(payload, dict):
            raise RollbackFailed(f"Unknown snapshot: {snapshot_id}")
        return SnapshotPoint.from_payload(payload, self.snapshots_dir)

    def verify(self, snapshot_id: str) -> bool:
        point = self.get(snapshot_id)
        try:
            self._verify_archive(point.archive, point.sha256)
        except (SnapshotFailed, OSError, tarfile.TarError) as exc:
            logger.error("Snapshot %s failed verification: %s", snapshot_id, exc)
            return False
        return True

    def delete(self, snapshot_id: str) -> None:
        self._metadata_path(snapshot_id).unlink(missing_ok=True)
        (self.snapshots_dir / (snapshot_id + ARCHIVE_SUFFIX)).unlink(missing_ok=True)

    def prune(self, keep: Optional[int] = None, protect: Iterable[str] = ()) -> List[str]:
        keep = self.retention if keep is None else max(1, keep)
        protected = set(protect)
        points = self.list()
        removable = [point for point in points if point.id not in protected]
        excess = len(points) - keep
        removed: List[str] = []
        for point in removable:
            if excess <= 0:
                break
            logger.info("Removing old snapshot %s", point.id)
            self.delete(point.id)
            removed.append(point.id)
            excess -= 1
        return removed

    # -- restore ----------------------------------------------------------

    def restore(self, snapshot_id: str) -> RestoreResult:
        point = self.get(snapshot_id)
        try:
            self._verify_archive(point.archive, point.sha256)
        except (SnapshotFailed, OSError, tarfile.TarError) as exc:
            raise RollbackFailed(f"Snapshot {snapshot_id} cannot be restored: {exc}") from exc

        staging = self.staging_dir / snapshot_id
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        try:
            with tarfile.open(point.archive, "r:gz") as tar:
                tar.extractall(staging, filter=_staging_filter)
        except (OSError, tarfile.TarError) as exc:
            raise RollbackFailed(f"Could not extract {point.archive.name}: {exc}") from exc

        try:
            pre_restore = self.snapshot(
                "pre-rollback",
                f"Automatic snapshot before restoring {snapshot_id}",
                protect={snapshot_id},
            )
        except SnapshotFailed as exc:
            raise RollbackFailed(f"Could not capture pre-rollback state: {exc}") from exc

        result = RestoreResult(snapshot_id=snapshot_id, pre_restore_id=pre_restore.id, staging_dir=staging)
        logger.info("Restoring snapshot %s (staging=%s)", snapshot_id, staging)

        try:
            result.steps.append(self._restore_config(point, staging))
            result.steps.append(self._restore_services(point))
        except OSError as exc:
            raise RollbackFailed(f"Restore of {snapshot_id} failed: {exc}") from exc
        result.steps.append(self._package_steps(point, staging))
        result.steps.append(self._copy_steps("installation", point.contents.get("installation_files", []), staging))
        result.steps.append(self._copy_steps("user_data", point.contents.get("user_data", []), staging))
        self._write_instructions(result)
        return result

    def _restore_config(self, point: SnapshotPoint, staging: Path) -> RestoreStep:
        entries = point.config_entries()
        if not entries:
            return RestoreStep("configuration", True, "skipped", "no configuration paths tracked")
        for entry in entries:
            _restore_entry(entry, staging, self._excluded())
        mismatches = config_differences(entries, self._excluded())
        if mismatches:
            raise RollbackFailed(f"Configuration differs after restore: {', '.join(mismatches[:5])}")
        return RestoreStep("configuration", True, "restored", f"{len(entries)} path(s) restored")

    def _restore_services(self, point: SnapshotPoint) -> RestoreStep:
        wanted = point.service_state()
        if not wanted:
            return RestoreStep("services", True, "skipped", "no units tracked")
        changed: List[str] = []
        for unit, state in wanted.items():
            if state not in RESTORABLE_UNIT_STATES:
                continue
            if self.service_controller.is_enabled(unit) != state:
                self.service_controller.set_state(unit, state)
                changed.append(f"{unit}={state}")
        drift = service_differences(wanted, self.service_controller)
        if drift:
            raise RollbackFailed(f"Service enablement differs after restore: {', '.join(drift)}")
        detail = f"changed {', '.join(changed)}" if changed else "already matching"
        return RestoreStep("services", True, "restored", detail)

    def _package_steps(self, point: SnapshotPoint, staging: Path) -> RestoreStep:
        captured = point.contents.get("package_state", [])
        if not captured:
            return RestoreStep("packages", False, "skipped", "no package state captured")
        base = staging / "packages"
        commands: List[str] = []
        if "dpkg-selections.txt" in captured:
            commands.append(f"sudo dpkg --set-selections < {base / 'dpkg-selections.txt'}")
            commands.append("sudo apt-get dselect-upgrade")
        if "apt-manual.txt" in captured:
            commands.append(f"xargs -a {base / 'apt-manual.txt'} sudo apt-mark manual")
        if "apt-hold.txt" in captured:
            commands.append(f"xargs -r -a {base / 'apt-hold.txt'} sudo apt-mark hold")
        if "flatpak-list.txt" in captured:
            commands.append(f"xargs -r -a {base / 'flatpak-list.txt'} flatpak install -y")
        if "snap-list.txt" in captured:
            commands.append(f"# review {base / 'snap-list.txt'} and reinstall snaps as needed")
        return RestoreStep("packages", False, "manual", "package selections staged for review", commands)

    def _copy_steps(self, subsystem: str, entries: List[Dict[str, Any]], staging: Path) -> RestoreStep:
        commands = []
        for entry in entries:
            if entry.get("type") == "absent":
                continue
            source = staging / entry["arcname"]
            if entry.get("type") == "dir":
                commands.append(f"cp -a {source}/. {entry['source']}/")
            else:
                commands.append(f"cp -a {source} {entry['source']}")
        if not commands:
            return RestoreStep(subsystem, False, "skipped", "nothing captured")
        return RestoreStep(subsystem, False, "manual", f"{len(commands)} path(s) staged", commands)

    def _write_instructions(self, result: RestoreResult) -> None:
        lines = [
            f"# Restore instructions for snapshot {result.snapshot_id}",
            f"# Pre-rollback snapshot: {result.pre_restore_id}",
            "",
        ]
        for step in result.steps:
            mode = "automatic" if step.automatic else "manual"
            lines.append(f"## {step.subsystem} ({mode}, {step.status}): {step.detail}")
            lines.extend(step.commands)
            lines.append("")
        (result.staging_dir / "RESTORE.txt").write_text("\n".join(lines), encoding="utf-8")


def _staging_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    # links are recreated from the manifest, not from staging
    if member.issym() or member.islnk():
        return None
    return tarfile.data_filter(member, dest_path)


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _write_file(target: Path, source: Path, mode: int) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink() or target.is_dir():
        _remove_path(target)
    tmp = target.with_name(f".{target.name}.restore")
    shutil.copyfile(source, tmp)
    os.chmod(tmp, mode)
    os.replace(tmp, target)


def _write_symlink(target: Path, link_target: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists() or target.is_symlink():
        _remove_path(target)
    os.symlink(link_target, target)


def _restore_entry(entry: Dict[str, Any], staging: Path, excluded: Set[Path]) -> None:
    target = Path(entry["source"])
    kind = entry.get("type")
    staged = staging / entry.get("arcname", "")
    if kind == "absent":
        if target.exists() or target.is_symlink():
            _remove_path(target)
        return
    if kind == "symlink":
        _write_symlink(target, entry["target"])
        return
    if kind == "file":
        _write_file(target, staged, int(entry["mode"]))
        return

    if target.exists() and not target.is_dir():
        _remove_path(target)
    target.mkdir(parents=True, exist_ok=True)
    files: Dict[str, Dict[str, Any]] = entry.get("files", {})
    dirs = set(entry.get("dirs", []))
    for root, dirnames, filenames in os.walk(target, topdown=False):
        root_path = Path(root)
        if any(parent in excluded for parent in [root_path.resolve(), *root_path.resolve().parents]):
            continue
        for filename in filenames:
            rel = str((root_path / filename).relative_to(target))
            if rel not in files:
                (root_path / filename).unlink()
        for dirname in dirnames:
            dir_path = root_path / dirname
            rel = str(dir_path.relative_to(target))
            if dir_path.is_symlink():
                if rel not in files:
                    dir_path.unlink()
                continue
            if rel not in dirs and dir_path.resolve() not in excluded and not any(
                name.startswith(rel + os.sep) for name in files
            ):
                shutil.rmtree(dir_path)
    for rel in sorted(dirs):
        (target / rel).mkdir(parents=True, exist_ok=True)
    for rel, info in files.items():
        if info.get("type") == "symlink":
            _write_symlink(target / rel, info["target"])
        else:
            _write_file(target / rel, staged / rel, int(info["mode"]))
    os.chmod(target, int(entry.get("mode", 0o755)))


def config_differences(entries: List[Dict[str, Any]], excluded: Optional[Set[Path]] = None) -> List[str]:
    """Paths whose current content differs from the captured manifest."""
    excluded = excluded or set()
    differences: List[str] = []
    for entry in entries:
        target = Path(entry["source"])
        kind = entry.get("type")
        if kind == "absent":
            if target.exists() or target.is_symlink():
                differences.append(f"{target} (unexpected)")
        elif kind == "symlink":
            if not target.is_symlink() or os.readlink(target) != entry["target"]:
                differences.append(str(target))
        elif kind == "file":
            if not target.is_file() or sha256_file(target) != entry["sha256"]:
                differences.append(str(target))
            elif stat.S_IMODE(target.stat().st_mode) != int(entry["mode"]):
                differences.append(f"{target} (mode)")
        elif kind == "dir":
            if not target.is_dir():
                differences.append(str(target))
                continue
            files: Dict[str, Dict[str, Any]] = entry.get("files", {})
            current: Set[str] = set()
            for root, dirnames, filenames in os.walk(target):
                root_path = Path(root)
                dirnames[:] = [d for d in dirnames if (root_path / d).resolve() not in excluded]
                for filename in filenames:
                    current.add(str((root_path / filename).relative_to(target)))
                for dirname in dirnames:
                    if (root_path / dirname).is_symlink():
                        current.add(str((root_path / dirname).relative_to(target)))
            for rel in sorted(current - set(files)):
                differences.append(f"{target / rel} (unexpected)")
            for rel, info in files.items():
                path = target / rel
                if info.get("type") == "symlink":
                    if not path.is_symlink() or os.readlink(path) != info["target"]:
                        differences.append(str(path))
                elif not path.is_file() or sha256_file(path) != info["sha256"]:
                    differences.append(str(path))
                elif stat.S_IMODE(path.stat().st_mode) != int(info["mode"]):
                    differences.append(f"{path} (mode)")
    return differences


def service_differences(wanted: Dict[str, str], controller: Any) -> List[str]:
    drift = []
    for unit, state in wanted.items():
        if state not in RESTORABLE_UNIT_STATES:
            continue
        current = controller.is_enabled(unit)
        if current != state:
            drift.append(f"{unit} is {current}, expected {state}")
    return drift

from __future__ import annotations

import os
import tarfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from upkeep.backup import BackupManager, config_differences
from upkeep.errors import RollbackFailed, SnapshotFailed


class _Packages:
    def __init__(self, outputs: Dict[str, str]) -> None:
        self.outputs = outputs
        self.calls: List[str] = []

    def __call__(self, argv: Sequence[str]) -> Optional[str]:
        self.calls.append(argv[0])
        return self.outputs.get(argv[0])


def _manager(tmp_path: Path, config: Path, services, **overrides) -> BackupManager:
    options = dict(
        config_paths=[config],
        services=["backup.timer"],
        retention=5,
        package_state=False,
        service_controller=services,
    )
    options.update(overrides)
    return BackupManager(tmp_path / "data" / "snapshots", tmp_path / "data" / "staging", **options)


def test_snapshot_is_sealed_with_manifest(tmp_path: Path, app_config: Path, services) -> None:
    services.states["backup.timer"] = "enabled"
    manager = _manager(tmp_path, app_config, services)

    point = manager.snapshot("manual", "before testing", metadata={"profile": "desktop"})

    assert point.archive.exists()
    assert manager.get(point.id) == point
    assert manager.verify(point.id)
    assert point.service_state() == {"backup.timer": "enabled"}
    entry = point.config_entries()[0]
    assert entry["type"] == "dir"
    assert sorted(entry["files"]) == ["conf.d/extra.conf", "settings.ini"]
    with tarfile.open(point.archive, "r:gz") as tar:
        names = tar.getnames()
    assert "manifest.json" in names
    assert "services/state.json" in names
    assert "config/0/settings.ini" in names


def test_restore_round_trip(tmp_path: Path, app_config: Path, services) -> None:
    services.states["backup.timer"] = "enabled"
    os.symlink("settings.ini", app_config / "current.ini")
    manager = _manager(tmp_path, app_config, services)
    point = manager.snapshot("pre-desktop")
    entries = point.config_entries()

    (app_config / "settings.ini").write_text("[main]\nvalue = 2\n", encoding="utf-8")
    (app_config / "conf.d" / "extra.conf").unlink()
    (app_config / "stray.conf").write_text("stray\n", encoding="utf-8")
    (app_config / "current.ini").unlink()
    services.states["backup.timer"] = "disabled"
    assert config_differences(entries)

    result = manager.restore(point.id)

    assert config_differences(entries) == []
    assert (app_config / "settings.ini").read_text(encoding="utf-8") == "[main]\nvalue = 1\n"
    assert (app_config / "conf.d" / "extra.conf").exists()
    assert not (app_config / "stray.conf").exists()
    assert os.readlink(app_config / "current.ini") == "settings.ini"
    assert services.states["backup.timer"] == "enabled"
    steps = {step.subsystem: step for step in result.steps}
    assert steps["configuration"].status == "restored"
    assert steps["services"].status == "restored"
    assert steps["packages"].status == "skipped"
    assert result.pre_restore_id in [p.id for p in manager.list()]
    assert (result.staging_dir / "RESTORE.txt").exists()


def test_package_and_user_data_restore_is_manual(tmp_path: Path, app_config: Path, services) -> None:
    documents = tmp_path / "documents"
    documents.mkdir()
    (documents / "notes.txt").write_text("keep me\n", encoding="utf-8")
    packages = _Packages({"dpkg": "bash\tinstall\n", "apt-mark": "bash\n"})
    manager = _manager(
        tmp_path,
        app_config,
        services,
        user_data_paths=[documents],
        package_state=True,
        command_runner=packages,
    )
    point = manager.snapshot("manual")
    assert "dpkg-selections.txt" in point.contents["package_state"]

    result = manager.restore(point.id)

    manual = {step.subsystem: step for step in result.manual_steps}
    assert set(manual) == {"packages", "user_data"}
    assert any("dpkg --set-selections" in command for command in manual["packages"].commands)
    assert manual["user_data"].commands == [f"cp -a {result.staging_dir / 'user_data/0'}/. {documents}/"]
    instructions = (result.staging_dir / "RESTORE.txt").read_text(encoding="utf-8")
    assert "## packages (manual, manual)" in instructions
    assert (result.staging_dir / "packages" / "dpkg-selections.txt").read_text(encoding="utf-8") == "bash\tinstall\n"


def test_retention_keeps_newest_snapshots(tmp_path: Path, app_config: Path, services) -> None:
    manager = _manager(tmp_path, app_config, services, retention=3)
    created = [manager.snapshot(f"run{index}").id for index in range(4)]

    remaining = [point.id for point in manager.list()]
    assert remaining == created[1:]
    assert not (manager.snapshots_dir / f"{created[0]}.tar.gz").exists()


def test_restore_keeps_pre_rollback_snapshot_at_minimum_retention(
    tmp_path: Path, app_config: Path, services
) -> None:
    manager = _manager(tmp_path, app_config, services, retention=1)
    point = manager.snapshot("manual")
    (app_config / "settings.ini").write_text("[main]\nvalue = 3\n", encoding="utf-8")

    result = manager.restore(point.id)

    remaining = [p.id for p in manager.list()]
    assert result.pre_restore_id in remaining
    assert point.id in remaining
    assert (app_config / "settings.ini").read_text(encoding="utf-8") == "[main]\nvalue = 1\n"


def test_prune_respects_protected_snapshots(tmp_path: Path, app_config: Path, services) -> None:
    manager = _manager(tmp_path, app_config, services, retention=10)
    created = [manager.snapshot(f"run{index}").id for index in range(3)]

    removed = manager.prune(keep=2, protect={created[0]})

    assert removed == [created[1]]
    assert [point.id for point in manager.list()] == [created[0], created[2]]


def test_tampered_archive_cannot_be_restored(tmp_path: Path, app_config: Path, services) -> None:
    manager = _manager(tmp_path, app_config, services)
    point = manager.snapshot("manual")
    with open(point.archive, "ab") as handle:
        handle.write(b"garbage")

    assert not manager.verify(point.id)
    with pytest.raises(RollbackFailed, match="cannot be restored"):
        manager.restore(point.id)
    with pytest.raises(RollbackFailed, match="Unknown snapshot"):
        manager.restore("missing-snapshot")


def test_snapshot_failure_leaves_nothing_behind(tmp_path: Path, app_config: Path, services) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory\n", encoding="utf-8")
    manager = BackupManager(blocker / "snapshots", tmp_path / "staging", config_paths=[app_config], service_controller=services)

    with pytest.raises(SnapshotFailed):
        manager.snapshot("manual")
    assert manager.list() == []


def test_snapshot_excludes_its_own_directories(tmp_path: Path, services) -> None:
    data_dir = tmp_path / "data"
    (data_dir / "state").mkdir(parents=True)
    (data_dir / "state" / "state.json").write_text("{}\n", encoding="utf-8")
    manager = BackupManager(
        data_dir / "snapshots",
        data_dir / "staging",
        config_paths=[data_dir],
        package_state=False,
        service_controller=services,
    )
    first = manager.snapshot("first")
    second = manager.snapshot("second")

    files = second.config_entries()[0]["files"]
    assert sorted(files) == ["state/state.json"]
    assert first.id != second.id

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict

import pytest
import yaml

from upkeep.config import (
    Paths,
    default_config_path,
    load_settings,
    log_level_number,
    parse_settings,
    setup_logging,
)
from upkeep.errors import ConfigError
from upkeep.state import StateStore


def _write_config(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


# -- state ----------------------------------------------------------------


def test_state_starts_empty_and_initializes_on_first_update(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    state = store.load()
    assert state.initialized_at is None
    assert state.active_profiles == []

    updated = store.touch_check()
    assert updated.initialized_at is not None
    assert updated.last_check is not None
    assert store.load().initialized_at == updated.initialized_at


def test_active_profiles_are_a_sorted_set(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    store.set_active("server", True)
    store.set_active("desktop", True)
    store.set_active("desktop", True)
    assert store.load().active_profiles == ["desktop", "server"]

    store.set_active("server", False)
    store.set_active("ghost", False)
    assert store.load().active_profiles == ["desktop"]
    assert store.load().is_active("desktop")


def test_concurrent_updates_are_not_lost(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.json")
    threads = [threading.Thread(target=store.record_maintenance) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    state = store.load()
    assert state.maintenance_count == 8
    assert state.last_maintenance == state.last_check


# -- settings -------------------------------------------------------------


def test_missing_config_yields_defaults_under_home(home: Path) -> None:
    settings = load_settings()

    assert settings.config_path is None
    assert settings.paths.data_dir == home / ".local" / "share" / "upkeep"
    assert settings.paths.unit_dir == home / ".config" / "systemd" / "user"
    assert settings.backup.config_paths == [home / ".config" / "upkeep"]
    assert settings.safety.level == "standard"
    assert settings.safety.essential_commands == ["sh"]
    assert settings.history.retention_days == 90
    assert default_config_path() == home / ".config" / "upkeep" / "upkeep.yaml"


def test_required_config_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_settings(tmp_path / "absent.yaml", required=True)


def test_config_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "elsewhere.yaml"
    _write_config(config, {"version": 1, "safety": {"level": "conservative"}})
    monkeypatch.setenv("UPKEEP_CONFIG", str(config))

    settings = load_settings()

    assert settings.config_path == config
    assert settings.safety.level == "conservative"


def test_relative_paths_resolve_against_config_dir(tmp_path: Path) -> None:
    config = tmp_path / "conf" / "upkeep.yaml"
    _write_config(
        config,
        {
            "version": 1,
            "paths": {"data_dir": "data", "unit_dir": "/srv/units"},
            "backup": {"config_paths": ["app", "/etc/app"], "retention": 3, "package_state": False},
            "safety": {"essential_paths": ["bin/tool"], "essential_commands": []},
            "executor": {"grace_seconds": 2.5, "status_history": 20},
            "operations": {"flatpak": "flatpak uninstall --unused -y"},
        },
    )

    settings = load_settings(config)

    base = tmp_path / "conf"
    assert settings.paths.data_dir == base / "data"
    assert settings.paths.system_profiles_dir == base / "data" / "profiles"
    assert settings.paths.unit_dir == Path("/srv/units")
    assert settings.backup.config_paths == [base / "app", Path("/etc/app")]
    assert settings.backup.retention == 3
    assert not settings.backup.package_state
    assert settings.safety.essential_paths == [base / "bin" / "tool"]
    assert settings.safety.essential_commands == []
    assert settings.executor.grace_seconds == 2.5
    assert settings.operations == {"flatpak": "flatpak uninstall --unused -y"}


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"verison": 1}, r"Unknown key\(s\) in config: \['verison'\]"),
        ({"version": 2}, "version must be 1"),
        ({"notifications": {"email_enabled": True}}, "email_to is required"),
        ({"notifications": {"level": "LOUD"}}, "notifications.level must be one of"),
        ({"safety": {"level": "reckless"}}, "safety.level must be one of"),
        ({"backup": {"retention": 0}}, "backup.retention must be >= 1"),
        ({"executor": {"grace_seconds": "soon"}}, "executor.grace_seconds must be a number"),
        ({"history": {"retention_days": True}}, "history.retention_days must be an integer"),
        ({"operations": {"flatpak": ""}}, "operations.flatpak must be a non-empty string"),
        ({"paths": []}, "paths must be a mapping"),
    ],
)
def test_invalid_settings_rejected(payload: Dict[str, Any], message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_settings(payload, Path("/etc/upkeep/upkeep.yaml"))


def test_invalid_yaml_is_a_config_error(tmp_path: Path) -> None:
    config = tmp_path / "upkeep.yaml"
    config.write_text("safety: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_settings(config)

    config.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must be a mapping"):
        load_settings(config)


def test_paths_layout(tmp_path: Path) -> None:
    paths = Paths.default(tmp_path)
    assert paths.state_file == tmp_path / ".local" / "share" / "upkeep" / "state.json"
    assert paths.log_file.name == "upkeep.log"
    assert paths.user_profiles_dir == tmp_path / ".config" / "upkeep" / "profiles"


def test_setup_logging_writes_file_once(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "upkeep.log"
    logger = setup_logging(log_file, "WARN")
    assert setup_logging(log_file, "DEBUG") is logger
    assert len(logger.handlers) == 2
    assert logger.level == logging.WARNING

    logging.getLogger("upkeep.test").warning("disk nearly full")
    for handler in logger.handlers:
        handler.flush()
    assert "WARNING disk nearly full" in log_file.read_text(encoding="utf-8")
    assert log_level_number("nonsense") == logging.INFO

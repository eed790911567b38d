from __future__ import annotations

from pathlib import Path

import pytest

from config import DEFAULT_APP_ID, load_config, parse_bool, parse_list


@pytest.mark.parametrize("raw, expected", [("1", True), ("Yes", True), ("off", False), ("", False)])
def test_parse_bool(raw: str, expected: bool) -> None:
    assert parse_bool(raw) is expected


def test_parse_list_splits_commas_and_whitespace() -> None:
    assert parse_list(" 1, 2\n3 ,,") == ["1", "2", "3"]
    assert parse_list(None) == []


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("WORKSHOP_APP_ID", "WORKSHOP_MODS_DIR", "STEAMCMD_DIR", "WORKSHOP_BATCH_SIZE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)

    config = load_config()

    assert config.app_id == DEFAULT_APP_ID
    assert config.mods_dir is None
    assert config.steamcmd_dir == tmp_path / "steamcmd"
    assert config.batch_size == 50
    assert config.watch_timeout == 300.0


def test_load_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WORKSHOP_APP_ID", "-3")
    monkeypatch.setenv("WORKSHOP_MODS_DIR", str(tmp_path / "mods"))
    monkeypatch.setenv("WORKSHOP_BATCH_SIZE", "0")
    monkeypatch.setenv("WORKSHOP_API_BASE", "http://localhost:8080/")
    monkeypatch.setenv("WORKSHOP_IGNORED_MODS", "10,20")
    monkeypatch.setenv("STEAMCMD_WATCH_TIMEOUT", "not a number")

    config = load_config()

    assert config.app_id == DEFAULT_APP_ID
    assert config.mods_dir == tmp_path / "mods"
    assert config.batch_size == 1
    assert config.api_base == "http://localhost:8080"
    assert config.ignored_mods == ["10", "20"]
    assert config.watch_timeout == 300.0

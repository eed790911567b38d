from __future__ import annotations

from pathlib import Path

import pytest

from errors import (
    BackupNotFoundError,
    BackupPathError,
    CorruptedModConflictError,
    SourceNotFoundError,
)
from installer import (
    ConflictResolution,
    ModInstaller,
    check_backup,
    restore_backup,
    restore_backups,
    sanitize_folder_name,
)


def _stage(root: Path, mod_id: str, name: str = "file.txt", text: str = "data") -> Path:
    path = root / mod_id
    path.mkdir(parents=True)
    (path / name).write_text(text, encoding="utf-8")
    return path


def _snapshot(root: Path) -> dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Example Mod", "Example Mod"),
        ('Bad<>:"/\\|?*Name', "BadName"),
        ("Tabs\tand\nnew\x01lines", "Tabsandnewlines"),
        ("  spaced    out  ", "spaced out"),
        ("...dots...", "dots"),
        ("", "Mod"),
        ("???", "Mod"),
    ],
)
def test_sanitize_folder_name(raw: str, expected: str) -> None:
    assert sanitize_folder_name(raw) == expected


@pytest.mark.parametrize(
    "raw", ["Example Mod", " a . b . ", "x" * 250, "a" * 199 + ". b", "Mod: [1.5] <beta>"]
)
def test_sanitize_is_idempotent(raw: str) -> None:
    once = sanitize_folder_name(raw)

    assert sanitize_folder_name(once) == once
    assert len(once) <= 200


def test_title_collision_gets_id_suffix(tmp_path: Path) -> None:
    stage = tmp_path / "stage"
    mods = tmp_path / "mods"
    installer = ModInstaller()

    first = installer.install("123", _stage(stage, "123"), mods, title="Example Mod")
    second = installer.install("456", _stage(stage, "456"), mods, title="Example Mod")

    assert first == mods / "Example Mod"
    assert (first / "file.txt").read_text() == "data"
    assert second == mods / "Example Mod (456)"
    assert (second / "file.txt").exists()


def test_existing_folder_for_id_is_reused(tmp_path: Path, mod_factory) -> None:
    mods = tmp_path / "mods"
    mod_factory(mods, "My Folder", "123")
    source = _stage(tmp_path / "stage", "123", name="new.txt")

    installed = ModInstaller().install("123", source, mods, title="Renamed Upstream")

    assert installed == mods / "My Folder"
    assert (installed / "new.txt").exists()
    assert not (installed / "About").exists()


def test_missing_source_raises(tmp_path: Path) -> None:
    with pytest.raises(SourceNotFoundError):
        ModInstaller().install("1", tmp_path / "nope", tmp_path / "mods", title="X")


def test_backup_replaces_previous(tmp_path: Path, mod_factory) -> None:
    mods = tmp_path / "mods"
    backups = tmp_path / "backups"
    current = mod_factory(mods, "Mod", "1")
    (current / "v1.txt").write_text("v1", encoding="utf-8")
    old_backup = backups / "Mod"
    old_backup.mkdir(parents=True)
    (old_backup / "ancient.txt").write_text("old", encoding="utf-8")

    ModInstaller().install(
        "1",
        _stage(tmp_path / "stage", "1", name="v2.txt"),
        mods,
        create_backup=True,
        backup_dir=backups,
    )

    assert (backups / "Mod" / "v1.txt").read_text() == "v1"
    assert not (backups / "Mod" / "ancient.txt").exists()
    assert (mods / "Mod" / "v2.txt").exists()
    assert not (mods / "Mod" / "v1.txt").exists()


def test_backup_drops_stale_copy_for_new_install(tmp_path: Path) -> None:
    mods = tmp_path / "mods"
    backups = tmp_path / "backups"
    stale = backups / "Fresh Mod"
    stale.mkdir(parents=True)
    (stale / "ancient.txt").write_text("old", encoding="utf-8")

    installed = ModInstaller().install(
        "8",
        _stage(tmp_path / "stage", "8"),
        mods,
        title="Fresh Mod",
        create_backup=True,
        backup_dir=backups,
    )

    assert installed == mods / "Fresh Mod"
    assert not stale.exists()
    assert not check_backup(installed, backups).has_backup


def test_backup_failure_does_not_block_install(tmp_path: Path, mod_factory) -> None:
    mods = tmp_path / "mods"
    mod_factory(mods, "Mod", "1")

    installed = ModInstaller().install(
        "1",
        _stage(tmp_path / "stage", "1"),
        mods,
        create_backup=True,
        backup_dir=mods / "Mod" / "backups",
    )

    assert (installed / "file.txt").exists()


def test_corrupted_folder_conflict(tmp_path: Path) -> None:
    mods = tmp_path / "mods"
    broken = mods / "Broken"
    broken.mkdir(parents=True)
    (broken / "junk.txt").write_text("junk", encoding="utf-8")
    source = _stage(tmp_path / "stage", "9")
    installer = ModInstaller()

    with pytest.raises(CorruptedModConflictError) as excinfo:
        installer.install("9", source, mods, folder_name="Broken", title="Nine")
    assert excinfo.value.folder_name == "Broken"
    assert excinfo.value.mod_id == "9"
    assert excinfo.value.title == "Nine"
    assert (broken / "junk.txt").exists()

    renamed = installer.install(
        "9", source, mods, folder_name="Broken", resolution=ConflictResolution.RENAME
    )
    assert renamed == mods / "Broken (9)"
    assert (broken / "junk.txt").exists()

    overwritten = installer.install(
        "9", source, mods, folder_name="Broken", resolution=ConflictResolution.OVERWRITE
    )
    assert overwritten == broken
    assert not (broken / "junk.txt").exists()
    assert (broken / "file.txt").exists()


def test_restore_same_path_rejected_without_changes(tmp_path: Path, mod_factory) -> None:
    mod_path = mod_factory(tmp_path / "mods", "Mod", "1")
    (mod_path / "content.bin").write_bytes(b"\x00\x01payload")
    before = _snapshot(tmp_path)

    with pytest.raises(BackupPathError):
        restore_backup(mod_path, mod_path)

    assert _snapshot(tmp_path) == before


def test_restore_nested_paths_rejected(tmp_path: Path, mod_factory) -> None:
    mods = tmp_path / "mods"
    mod_path = mod_factory(mods, "Mod", "1")
    before = _snapshot(tmp_path)

    with pytest.raises(BackupPathError):
        restore_backup(mod_path, mod_path / "backups")
    with pytest.raises(BackupPathError):
        restore_backup(mod_path, tmp_path)

    assert _snapshot(tmp_path) == before


def test_restore_round_trip(tmp_path: Path, mod_factory) -> None:
    mods = tmp_path / "mods"
    backups = tmp_path / "backups"
    mod_path = mod_factory(mods, "Mod", "1")
    (mod_path / "new.txt").write_text("new", encoding="utf-8")
    backup = mod_factory(backups, "Mod", "1")
    (backup / "old.txt").write_text("old", encoding="utf-8")

    info = check_backup(mod_path, backups)
    assert info.has_backup
    assert info.backup_path == backup
    assert info.backup_date is not None

    assert restore_backup(mod_path, backups) == mod_path
    assert (mod_path / "old.txt").read_text() == "old"
    assert not (mod_path / "new.txt").exists()
    assert not backup.exists()
    assert not check_backup(mod_path, backups).has_backup


def test_restore_missing_backup(tmp_path: Path, mod_factory) -> None:
    mod_path = mod_factory(tmp_path / "mods", "Mod", "1")

    with pytest.raises(BackupNotFoundError):
        restore_backup(mod_path, tmp_path / "backups")

    results = restore_backups([mod_path], tmp_path / "backups")
    assert [(r.mod_path, r.ok) for r in results] == [(mod_path, False)]
    assert results[0].reason
    assert mod_path.exists()

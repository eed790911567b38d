from __future__ import annotations

import os
from pathlib import Path

import pytest

from errors import ModsPathError
from mod_scanner import (
    ACCESS_TEST_FILE,
    check_directory_access,
    find_mod_folders,
    is_valid_mod,
    last_synced_at,
    read_timestamp_marker,
    scan_mods,
    write_ignored_update,
    write_last_updated,
)


def test_scan_skips_folders_without_id(mods_dir: Path, mod_factory) -> None:
    mod_factory(mods_dir, "Alpha", "100", last_updated="1700000000")
    mod_factory(mods_dir, "Local only")
    empty = mod_factory(mods_dir, "Empty id")
    (empty / "About" / "PublishedFileId.txt").write_text("  \n", encoding="utf-8")
    (mods_dir / "loose.txt").write_text("not a folder", encoding="utf-8")

    mods = scan_mods(mods_dir)

    assert [mod.mod_id for mod in mods] == ["100"]
    assert mods[0].folder == "Alpha"
    assert mods[0].last_synced_at == 1_700_000_000


def test_scan_rejects_missing_or_file_root(tmp_path: Path) -> None:
    with pytest.raises(ModsPathError):
        scan_mods(tmp_path / "missing")
    file_root = tmp_path / "file"
    file_root.write_text("x", encoding="utf-8")
    with pytest.raises(ModsPathError):
        scan_mods(file_root)


@pytest.mark.parametrize("content", ["", "abc", "0", "-5"])
def test_invalid_marker_is_deleted(tmp_path: Path, content: str) -> None:
    marker = tmp_path / ".lastupdated"
    marker.write_text(content, encoding="utf-8")

    assert read_timestamp_marker(marker) is None
    assert not marker.exists()


def test_last_synced_falls_back_to_id_file_creation_time(mods_dir: Path, mod_factory) -> None:
    path = mod_factory(mods_dir, "Beta", "200", last_updated="garbage")
    id_file = path / "About" / "PublishedFileId.txt"
    os.utime(id_file, (1_600_000_000, 1_600_000_000))
    stat = id_file.stat()
    expected = int(getattr(stat, "st_birthtime", None) or stat.st_mtime)

    assert last_synced_at(path) == expected
    assert not (path / "About" / ".lastupdated").exists()
    if not getattr(stat, "st_birthtime", None):
        assert expected == 1_600_000_000


def test_ignored_marker_becomes_baseline(mods_dir: Path, mod_factory) -> None:
    mod_factory(mods_dir, "Gamma", "300", last_updated="100", ignored="500")

    mod = scan_mods(mods_dir)[0]

    assert mod.last_synced_at == 100
    assert mod.ignored_update_at == 500
    assert mod.baseline == 500


def test_markers_written_to_every_folder_sharing_id(mods_dir: Path, mod_factory) -> None:
    first = mod_factory(mods_dir, "Copy A", "400", ignored="10")
    second = mod_factory(mods_dir, "Copy B", "400")
    third = mod_factory(mods_dir, "Copy C", "400")
    other = mod_factory(mods_dir, "Other", "401")

    written = write_last_updated(mods_dir, "400", 1_700_000_123)

    assert written == [first, second, third]
    for folder in (first, second, third):
        assert (folder / "About" / ".lastupdated").read_text() == "1700000123"
    assert not (first / "About" / ".ignoredupdate").exists()
    assert not (other / "About" / ".lastupdated").exists()

    assert write_ignored_update(mods_dir, "400", 1_700_000_999) == [first, second, third]
    assert len(find_mod_folders(mods_dir, "400")) == 3


def test_is_valid_mod(mods_dir: Path, mod_factory) -> None:
    assert is_valid_mod(mod_factory(mods_dir, "With xml"))
    assert is_valid_mod(mod_factory(mods_dir, "With id", "1", about_xml=False))
    broken = mods_dir / "Broken"
    broken.mkdir()
    (broken / "readme.txt").write_text("x", encoding="utf-8")
    assert not is_valid_mod(broken)


def test_directory_access_leaves_no_trace(mods_dir: Path, mod_factory) -> None:
    mod_factory(mods_dir, "Alpha", "1")

    assert check_directory_access(mods_dir) == mods_dir
    assert sorted(child.name for child in mods_dir.iterdir()) == ["Alpha"]


def test_directory_access_rejects_missing_root(tmp_path: Path) -> None:
    with pytest.raises(ModsPathError):
        check_directory_access(tmp_path / "missing")


def test_directory_access_rejects_unwritable_root(
    mods_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def refuse(self: Path, data: bytes) -> int:
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "write_bytes", refuse)

    with pytest.raises(ModsPathError, match="Cannot write"):
        check_directory_access(mods_dir)
    assert not (mods_dir / ACCESS_TEST_FILE).exists()

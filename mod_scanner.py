from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from errors import ModsPathError
from utils import ensure_dir, list_subdirs, read_text, safe_unlink
from workshop_api import WorkshopItem

ABOUT_DIR = "About"
ABOUT_XML = "About.xml"
ID_FILE = "PublishedFileId.txt"
LAST_UPDATED_FILE = ".lastupdated"
IGNORED_UPDATE_FILE = ".ignoredupdate"
ACCESS_TEST_FILE = ".access_test_temp_file"


@dataclass
class LocalMod:
    mod_id: str
    folder: str
    path: Path
    last_synced_at: int
    ignored_update_at: Optional[int] = None
    details: Optional[WorkshopItem] = None
    updated: Optional[bool] = None

    @property
    def baseline(self) -> int:
        """Timestamp staleness is measured against."""
        if self.ignored_update_at is not None:
            return self.ignored_update_at
        return self.last_synced_at

    @property
    def title(self) -> str:
        if self.details is not None and self.details.title:
            return self.details.title
        return self.folder


def validate_mods_dir(mods_dir: Path) -> Path:
    if not mods_dir.exists():
        raise ModsPathError(mods_dir, "Mods folder does not exist")
    if not mods_dir.is_dir():
        raise ModsPathError(mods_dir, "Mods path is not a directory")
    return mods_dir


def check_directory_access(mods_dir: Path) -> Path:
    """Fail with ``ModsPathError`` unless ``mods_dir`` can be listed and written to."""
    validate_mods_dir(mods_dir)
    try:
        next(mods_dir.iterdir(), None)
    except OSError as exc:
        raise ModsPathError(mods_dir, f"Cannot read mods folder ({exc})") from exc
    test_file = mods_dir / ACCESS_TEST_FILE
    try:
        test_file.write_bytes(b"test")
    except OSError as exc:
        raise ModsPathError(mods_dir, f"Cannot write to mods folder ({exc})") from exc
    finally:
        safe_unlink(test_file)
    return mods_dir


def read_mod_id(mod_path: Path) -> Optional[str]:
    content = read_text(mod_path / ABOUT_DIR / ID_FILE)
    if content is None:
        return None
    mod_id = content.strip()
    return mod_id or None


def read_timestamp_marker(marker: Path) -> Optional[int]:
    """Read a Unix-seconds marker; invalid content is deleted and reads as absent."""
    content = read_text(marker)
    if content is None:
        return None
    value = content.strip()
    try:
        timestamp = int(value)
    except ValueError:
        timestamp = 0
    if timestamp <= 0:
        logging.info("Removing invalid marker %s (content=%r)", marker, value[:32])
        safe_unlink(marker)
        return None
    return timestamp


def _created_at(path: Path) -> Optional[int]:
    # st_birthtime is missing on most Linux filesystems; mtime stands in there.
    try:
        stat = path.stat()
    except OSError:
        return None
    return int(getattr(stat, "st_birthtime", None) or stat.st_mtime)


def last_synced_at(mod_path: Path) -> int:
    marker = read_timestamp_marker(mod_path / ABOUT_DIR / LAST_UPDATED_FILE)
    if marker is not None:
        return marker
    fallback = _created_at(mod_path / ABOUT_DIR / ID_FILE)
    if fallback is None:
        fallback = _created_at(mod_path)
    return fallback or 0


def ignored_update_at(mod_path: Path) -> Optional[int]:
    return read_timestamp_marker(mod_path / ABOUT_DIR / IGNORED_UPDATE_FILE)


def is_valid_mod(mod_path: Path) -> bool:
    about = mod_path / ABOUT_DIR
    if not about.is_dir():
        return False
    return (about / ABOUT_XML).is_file() or (about / ID_FILE).is_file()


def load_mod(mod_path: Path) -> Optional[LocalMod]:
    mod_id = read_mod_id(mod_path)
    if mod_id is None:
        return None
    return LocalMod(
        mod_id=mod_id,
        folder=mod_path.name,
        path=mod_path,
        last_synced_at=last_synced_at(mod_path),
        ignored_update_at=ignored_update_at(mod_path),
    )


def scan_mods(mods_dir: Path) -> List[LocalMod]:
    validate_mods_dir(mods_dir)
    mods: List[LocalMod] = []
    for child in list_subdirs(mods_dir):
        mod = load_mod(child)
        if mod is not None:
            mods.append(mod)
    logging.info("Scanned %s: %s mod(s) with workshop ids", mods_dir, len(mods))
    return mods


def find_mod_folders(mods_dir: Path, mod_id: str) -> List[Path]:
    if not mods_dir.is_dir():
        return []
    mod_id = str(mod_id)
    return [child for child in list_subdirs(mods_dir) if read_mod_id(child) == mod_id]


def find_mod_folder(mods_dir: Path, mod_id: str) -> Optional[Path]:
    folders = find_mod_folders(mods_dir, mod_id)
    return folders[0] if folders else None


def _write_marker(mod_path: Path, name: str, timestamp: int) -> bool:
    about = mod_path / ABOUT_DIR
    try:
        ensure_dir(about)
        (about / name).write_text(str(int(timestamp)), encoding="utf-8")
    except OSError as exc:
        logging.warning("Failed to write %s for %s: %s", name, mod_path, exc)
        return False
    return True


def write_last_updated(
    mods_dir: Path, mod_id: str, timestamp: int, extra: Iterable[Path] = ()
) -> List[Path]:
    """Record ``timestamp`` as synced in every folder carrying ``mod_id``.

    ``extra`` folders are marked too, even without an id file. An
    ignored-update marker in those folders is cleared: the version it
    skipped has now been applied.
    """
    folders = find_mod_folders(mods_dir, mod_id)
    for path in extra:
        if path.is_dir() and path not in folders:
            folders.append(path)
    written: List[Path] = []
    for folder in folders:
        if _write_marker(folder, LAST_UPDATED_FILE, timestamp):
            written.append(folder)
        safe_unlink(folder / ABOUT_DIR / IGNORED_UPDATE_FILE)
    return written


def write_ignored_update(mods_dir: Path, mod_id: str, timestamp: int) -> List[Path]:
    written: List[Path] = []
    for folder in find_mod_folders(mods_dir, mod_id):
        if _write_marker(folder, IGNORED_UPDATE_FILE, timestamp):
            written.append(folder)
    return written


def remove_ignored_update(mods_dir: Path, mod_id: str) -> List[Path]:
    removed: List[Path] = []
    for folder in find_mod_folders(mods_dir, mod_id):
        marker = folder / ABOUT_DIR / IGNORED_UPDATE_FILE
        if marker.exists():
            safe_unlink(marker)
            removed.append(folder)
    return removed

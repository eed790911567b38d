from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from errors import (
    BackupError,
    BackupNotFoundError,
    BackupPathError,
    CorruptedModConflictError,
    SourceNotFoundError,
)
from mod_scanner import find_mod_folder, is_valid_mod, read_mod_id
from utils import copy_tree, ensure_dir, is_nested, remove_tree

MAX_FOLDER_NAME = 200
FALLBACK_FOLDER_NAME = "Mod"

_INVALID_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_folder_name(name: str) -> str:
    cleaned = _INVALID_CHARS_RE.sub("", name or "")
    cleaned = " ".join(cleaned.split()).strip(". ")
    if len(cleaned) > MAX_FOLDER_NAME:
        cleaned = cleaned[:MAX_FOLDER_NAME].strip(". ")
    return cleaned or FALLBACK_FOLDER_NAME


def disambiguate(folder_name: str, mod_id: str) -> str:
    return f"{folder_name} ({mod_id})"


class ConflictResolution(enum.Enum):
    OVERWRITE = "overwrite"
    RENAME = "rename"


@dataclass(frozen=True)
class BackupInfo:
    has_backup: bool
    backup_path: Optional[Path]
    backup_date: Optional[int] = None


@dataclass(frozen=True)
class RestoreResult:
    mod_path: Path
    ok: bool
    reason: Optional[str] = None


class ModInstaller:
    """Moves downloaded mods into the mods folder, keeping optional backups."""

    def resolve_folder_name(
        self,
        mods_dir: Path,
        mod_id: str,
        *,
        folder_name: str | None = None,
        title: str | None = None,
        resolution: ConflictResolution | None = None,
    ) -> str:
        mod_id = str(mod_id)
        if not folder_name:
            existing = find_mod_folder(mods_dir, mod_id)
            if existing is not None:
                return existing.name
            base = sanitize_folder_name(title or mod_id)
            if (mods_dir / base).exists() and read_mod_id(mods_dir / base) != mod_id:
                chosen = disambiguate(base, mod_id)
                logging.info(
                    "Folder %r belongs to another mod, using %r for %s", base, chosen, mod_id
                )
                return chosen
            return base

        # An explicitly chosen folder is expected to hold this mod already.
        destination = mods_dir / folder_name
        if not destination.exists() or is_valid_mod(destination):
            return folder_name
        if resolution is None:
            raise CorruptedModConflictError(folder_name, mod_id, title)
        if resolution is ConflictResolution.RENAME:
            chosen = disambiguate(folder_name, mod_id)
            logging.info("Installing %s as %r next to corrupted folder", mod_id, chosen)
            return chosen
        logging.info("Overwriting corrupted folder %r with %s", folder_name, mod_id)
        return folder_name

    def backup(self, mod_path: Path, backup_dir: Path) -> Optional[Path]:
        """Copy ``mod_path`` into ``backup_dir``, replacing any earlier backup.

        The earlier backup is dropped even when ``mod_path`` does not exist,
        in which case nothing is copied and ``None`` is returned.
        """
        if is_nested(mod_path, backup_dir):
            raise BackupError(f"Backup directory {backup_dir} overlaps {mod_path}")
        backup_path = backup_path_for(mod_path, backup_dir)
        try:
            ensure_dir(backup_dir)
            if remove_tree(backup_path):
                logging.info("Removed previous backup %s", backup_path)
            if not mod_path.exists():
                return None
            copy_tree(mod_path, backup_path)
        except OSError as exc:
            raise BackupError(f"Failed to back up {mod_path}: {exc}") from exc
        logging.info("Created backup of %s at %s", mod_path.name, backup_path)
        return backup_path

    def install(
        self,
        mod_id: str,
        source: Path,
        mods_dir: Path,
        *,
        folder_name: str | None = None,
        title: str | None = None,
        create_backup: bool = False,
        backup_dir: Path | None = None,
        resolution: ConflictResolution | None = None,
    ) -> Path:
        """Replace the mod's folder under ``mods_dir`` with the staged ``source``.

        Raises ``CorruptedModConflictError`` when the destination exists but
        is not a mod and no ``resolution`` was given, and
        ``SourceNotFoundError`` when the staging folder is gone. Backup
        failures are logged and do not stop the install.
        """
        mod_id = str(mod_id)
        if not source.is_dir():
            raise SourceNotFoundError(mod_id, source)
        ensure_dir(mods_dir)
        chosen = self.resolve_folder_name(
            mods_dir, mod_id, folder_name=folder_name, title=title, resolution=resolution
        )
        destination = mods_dir / chosen

        if create_backup and backup_dir is not None:
            try:
                self.backup(destination, backup_dir)
            except BackupError as exc:
                logging.warning("Backup skipped for %s: %s", mod_id, exc)

        remove_tree(destination)
        copy_tree(source, destination)
        logging.info("Installed mod %s to %s", mod_id, destination)
        return destination


def backup_path_for(mod_path: Path, backup_dir: Path) -> Path:
    return backup_dir / mod_path.name


def check_backup(mod_path: Path, backup_dir: Path | None) -> BackupInfo:
    if backup_dir is None:
        return BackupInfo(False, None)
    backup_path = backup_path_for(mod_path, backup_dir)
    if not backup_path.exists():
        return BackupInfo(False, backup_path)
    try:
        backup_date = int(backup_path.stat().st_mtime)
    except OSError:
        backup_date = None
    return BackupInfo(True, backup_path, backup_date)


def restore_backup(mod_path: Path, backup_dir: Path) -> Path:
    """Put the backup of ``mod_path`` back in place and delete the backup.

    Path checks run before anything on disk is touched.
    """
    if is_nested(mod_path, backup_dir):
        raise BackupPathError(
            "Backup directory cannot be inside the mod path or vice versa: "
            f"{backup_dir} / {mod_path}"
        )
    backup_path = backup_path_for(mod_path, backup_dir)
    if is_nested(backup_path, mod_path):
        raise BackupPathError(f"Backup path {backup_path} overlaps {mod_path}")
    if not backup_path.exists():
        raise BackupNotFoundError(backup_path)

    remove_tree(mod_path)
    copy_tree(backup_path, mod_path)
    if not backup_path.exists():
        logging.warning("Backup %s vanished after restoring %s", backup_path, mod_path)
    else:
        remove_tree(backup_path)
    logging.info("Restored %s from %s", mod_path, backup_path)
    return mod_path


def restore_backups(mod_paths: Iterable[Path], backup_dir: Path) -> List[RestoreResult]:
    results: List[RestoreResult] = []
    for mod_path in mod_paths:
        try:
            restore_backup(mod_path, backup_dir)
        except (BackupError, OSError) as exc:
            logging.error("Restore failed for %s: %s", mod_path, exc)
            results.append(RestoreResult(mod_path, False, str(exc)))
            continue
        results.append(RestoreResult(mod_path, True))
    return results

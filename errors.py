from __future__ import annotations

from pathlib import Path


class WorkshopSyncError(RuntimeError):
    """Base class for engine errors that carry a human readable reason."""


class ModsPathError(WorkshopSyncError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"{reason}: {path}")
        self.path = path


class ToolNotFoundError(WorkshopSyncError):
    def __init__(self, searched: list[Path]) -> None:
        locations = ", ".join(str(p) for p in searched) or "-"
        super().__init__(
            f"steamcmd not found in resources, local paths ({locations}) or PATH"
        )
        self.searched = list(searched)


class SourceNotFoundError(WorkshopSyncError):
    def __init__(self, mod_id: str, source: Path) -> None:
        super().__init__(f"Source mod folder not found for {mod_id}: {source}")
        self.mod_id = mod_id
        self.source = source


class AlreadyDownloadingError(WorkshopSyncError):
    def __init__(self, mod_id: str) -> None:
        super().__init__(f"Mod {mod_id} is already being downloaded")
        self.mod_id = mod_id


class CatalogUnavailableError(WorkshopSyncError):
    def __init__(self, ids: list[str]) -> None:
        super().__init__(f"Workshop catalog unavailable for {len(ids)} item(s)")
        self.ids = list(ids)


class BackupError(WorkshopSyncError):
    pass


class BackupNotFoundError(BackupError):
    def __init__(self, backup_path: Path) -> None:
        super().__init__(f"Backup not found: {backup_path}")
        self.backup_path = backup_path


class BackupPathError(BackupError):
    pass


class CorruptedModConflictError(WorkshopSyncError):
    """A destination folder exists but does not look like a valid mod.

    The affected mod stays suspended until the caller decides between
    overwriting the folder and installing under a disambiguated name.
    """

    def __init__(self, folder_name: str, mod_id: str, title: str | None = None) -> None:
        super().__init__(
            f"Folder {folder_name!r} exists but is not a valid mod (needed for {mod_id})"
        )
        self.folder_name = folder_name
        self.mod_id = mod_id
        self.title = title or mod_id

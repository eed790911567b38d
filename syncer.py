from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from errors import (
    CorruptedModConflictError,
    SourceNotFoundError,
    WorkshopSyncError,
)
from installer import ConflictResolution, ModInstaller, sanitize_folder_name
from mod_scanner import (
    LocalMod,
    check_directory_access,
    find_mod_folder,
    is_valid_mod,
    write_last_updated,
)
from steamcmd import DownloadedMod, DownloadJob, SteamCmdDownloader
from telemetry import start_span
from utils import now_ts
from workshop_api import WorkshopClient, WorkshopItem


class ModState(str, enum.Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncListener:
    """Receives lifecycle signals. Methods are called synchronously, in order."""

    def on_state_change(self, mod_id: str, state: ModState) -> None:
        pass

    def on_finished(self, mod_id: str, success: bool, reason: Optional[str]) -> None:
        pass


class LoggingListener(SyncListener):
    def on_state_change(self, mod_id: str, state: ModState) -> None:
        logging.info("Mod %s: %s", mod_id, state.value)

    def on_finished(self, mod_id: str, success: bool, reason: Optional[str]) -> None:
        if success:
            logging.info("Mod %s finished", mod_id)
        else:
            logging.warning("Mod %s not updated: %s", mod_id, reason)


@dataclass
class UpdateOutcome:
    mod_id: str
    state: ModState
    path: Optional[Path] = None
    reason: Optional[str] = None
    conflict: Optional[CorruptedModConflictError] = None

    @property
    def ok(self) -> bool:
        return self.state is ModState.COMPLETED


@dataclass
class _Pending:
    mod_id: str
    mods_dir: Path
    folder_name: Optional[str] = None
    title: Optional[str] = None
    timestamp: Optional[int] = None
    mod: Optional[LocalMod] = None


ConflictResolver = Callable[
    [CorruptedModConflictError], Awaitable[Optional[ConflictResolution]]
]


class ModSyncer:
    def __init__(
        self,
        downloader: SteamCmdDownloader,
        installer: ModInstaller | None = None,
        client: WorkshopClient | None = None,
        *,
        listener: SyncListener | None = None,
        resolver: ConflictResolver | None = None,
    ) -> None:
        self.downloader = downloader
        self.installer = installer or ModInstaller()
        self.client = client
        self.listener = listener or LoggingListener()
        self.resolver = resolver
        self.tracker = downloader.tracker
        self.pending_conflicts: Dict[str, _Pending] = {}
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _emit(self, mod_id: str, state: ModState) -> None:
        self.listener.on_state_change(mod_id, state)

    def _finish(
        self,
        entry: _Pending,
        state: ModState,
        *,
        path: Optional[Path] = None,
        reason: Optional[str] = None,
        conflict: Optional[CorruptedModConflictError] = None,
    ) -> UpdateOutcome:
        self._emit(entry.mod_id, state)
        success = state is ModState.COMPLETED
        if entry.mod is not None:
            entry.mod.updated = success
        self.listener.on_finished(entry.mod_id, success, reason)
        return UpdateOutcome(entry.mod_id, state, path, reason, conflict)

    async def update_mods(
        self,
        mods: Iterable[LocalMod],
        *,
        create_backup: bool = False,
        backup_dir: Path | None = None,
    ) -> List[UpdateOutcome]:
        """Download and reinstall installed mods, one outcome per distinct id."""
        entries: List[_Pending] = []
        seen = set()
        for mod in mods:
            if mod.mod_id in seen:
                continue
            seen.add(mod.mod_id)
            details = mod.details
            entries.append(
                _Pending(
                    mod_id=mod.mod_id,
                    mods_dir=mod.path.parent,
                    folder_name=mod.folder,
                    title=details.title if details is not None else None,
                    timestamp=_remote_timestamp(details),
                    mod=mod,
                )
            )
        return await self._run_batch(entries, create_backup, backup_dir)

    async def download_mods(
        self,
        mod_ids: Iterable[str],
        mods_dir: Path,
        *,
        expand: bool = True,
        create_backup: bool = False,
        backup_dir: Path | None = None,
    ) -> List[UpdateOutcome]:
        ids = [str(mod_id) for mod_id in mod_ids]
        if expand and self.client is not None:
            ids = await self.client.expand_ids(ids)
        entries = await self._entries_from_catalog(ids, mods_dir)
        return await self._run_batch(entries, create_backup, backup_dir)

    async def download_mod(
        self, mod_id: str, mods_path: Path, title: str | None = None
    ) -> UpdateOutcome:
        entries = await self._entries_from_catalog([str(mod_id)], mods_path)
        if title:
            entries[0].title = title
        outcomes = await self._run_batch(entries, False, None)
        return outcomes[0]

    async def _entries_from_catalog(self, mod_ids: List[str], mods_dir: Path) -> List[_Pending]:
        details: Dict[str, Optional[WorkshopItem]] = {}
        if self.client is not None and mod_ids:
            details = await self.client.fetch_batch(mod_ids) or {}
        entries = []
        for mod_id in dict.fromkeys(mod_ids):
            item = details.get(mod_id)
            entries.append(
                _Pending(
                    mod_id=mod_id,
                    mods_dir=mods_dir,
                    title=item.title if item is not None and item.title else None,
                    timestamp=_remote_timestamp(item),
                )
            )
        return entries

    async def _run_batch(
        self,
        entries: List[_Pending],
        create_backup: bool,
        backup_dir: Path | None,
    ) -> List[UpdateOutcome]:
        """Download ``entries`` in one steamcmd run, then install them in order.

        Root folder problems and duplicate requests raise before any signal.
        A ``cancel()`` made before the call cancels the whole batch; the flag
        is cleared once the batch ends.
        """
        if not entries:
            return []
        for mods_dir in dict.fromkeys(entry.mods_dir for entry in entries):
            check_directory_access(mods_dir)
        ids = [entry.mod_id for entry in entries]
        self.tracker.claim(ids)
        try:
            with start_span(
                "sync.batch",
                {"mods.count": len(entries), "mods.backup": bool(create_backup)},
            ) as span:
                for entry in entries:
                    self._emit(entry.mod_id, ModState.QUEUED)
                if self._cancelled:
                    logging.info("Batch cancelled before download")
                    return [self._cancel(entry) for entry in entries]
                for entry in entries:
                    self._emit(entry.mod_id, ModState.DOWNLOADING)

                jobs = [DownloadJob(entry.mod_id, entry.title, entry.mods_dir) for entry in entries]
                try:
                    downloaded = await self.downloader.download_all(jobs, track=False)
                except (WorkshopSyncError, OSError) as exc:
                    logging.error("Download batch failed: %s", exc)
                    span.record_exception(exc)
                    for entry in entries:
                        self._finish(entry, ModState.FAILED, reason=str(exc))
                    raise
                arrived = {mod.mod_id: mod for mod in downloaded}

                outcomes: List[UpdateOutcome] = []
                for index, entry in enumerate(entries):
                    if self._cancelled:
                        outcomes.extend(self._cancel(rest) for rest in entries[index:])
                        break
                    outcomes.append(
                        await self._install_entry(
                            entry, arrived.get(entry.mod_id), create_backup, backup_dir
                        )
                    )

                completed = sum(1 for outcome in outcomes if outcome.ok)
                span.set_attribute("mods.completed", completed)
                logging.info("Batch finished: %s/%s mod(s) installed", completed, len(entries))
                return outcomes
        finally:
            self._cancelled = False
            self.tracker.release(ids)

    def _cancel(self, entry: _Pending) -> UpdateOutcome:
        return self._finish(entry, ModState.CANCELLED, reason="Cancelled")

    async def _install_entry(
        self,
        entry: _Pending,
        downloaded: Optional[DownloadedMod],
        create_backup: bool,
        backup_dir: Path | None,
    ) -> UpdateOutcome:
        if downloaded is None:
            return self._finish(
                entry, ModState.FAILED, reason="SteamCMD did not deliver the mod"
            )
        if downloaded.mods_path is not None:
            entry.mods_dir = downloaded.mods_path
        self._emit(entry.mod_id, ModState.INSTALLING)
        try:
            path = await self._install(entry, downloaded.path, create_backup, backup_dir, None)
        except CorruptedModConflictError as conflict:
            resolution = await self._resolve(conflict)
            if resolution is None:
                self.pending_conflicts[entry.mod_id] = entry
                return self._finish(
                    entry, ModState.FAILED, reason=str(conflict), conflict=conflict
                )
            try:
                path = await self._install(
                    entry, downloaded.path, create_backup, backup_dir, resolution
                )
            except (WorkshopSyncError, OSError) as exc:
                return self._finish(entry, ModState.FAILED, reason=str(exc))
        except (WorkshopSyncError, OSError) as exc:
            logging.error("Install failed for %s: %s", entry.mod_id, exc)
            return self._finish(entry, ModState.FAILED, reason=str(exc))
        return await self._complete(entry, path)

    async def _resolve(
        self, conflict: CorruptedModConflictError
    ) -> Optional[ConflictResolution]:
        if self.resolver is None:
            return None
        return await self.resolver(conflict)

    async def _install(
        self,
        entry: _Pending,
        source: Path,
        create_backup: bool,
        backup_dir: Path | None,
        resolution: Optional[ConflictResolution],
    ) -> Path:
        with start_span("mod.install", {"steam.item_id": entry.mod_id}):
            return await asyncio.to_thread(
                self.installer.install,
                entry.mod_id,
                source,
                entry.mods_dir,
                folder_name=entry.folder_name,
                title=entry.title,
                create_backup=create_backup,
                backup_dir=backup_dir,
                resolution=resolution,
            )

    async def _complete(self, entry: _Pending, path: Path) -> UpdateOutcome:
        timestamp = entry.timestamp or now_ts()
        await asyncio.to_thread(
            write_last_updated, entry.mods_dir, entry.mod_id, timestamp, [path]
        )
        self.pending_conflicts.pop(entry.mod_id, None)
        return self._finish(entry, ModState.COMPLETED, path=path)

    async def continue_with_decision(
        self, mod_id: str, mods_path: Path, overwrite: bool
    ) -> UpdateOutcome:
        """Finish a mod suspended by a corrupted-folder conflict from its staging folder."""
        mod_id = str(mod_id)
        check_directory_access(mods_path)
        entry = self.pending_conflicts.get(mod_id)
        if entry is None or entry.mods_dir != mods_path:
            entry = (await self._entries_from_catalog([mod_id], mods_path))[0]
        if entry.folder_name is None:
            # The decision targets the folder a fresh install would land in.
            existing = find_mod_folder(mods_path, mod_id)
            if existing is not None:
                entry.folder_name = existing.name
            else:
                candidate = sanitize_folder_name(entry.title or mod_id)
                target = mods_path / candidate
                if target.exists() and not is_valid_mod(target):
                    entry.folder_name = candidate
        source = self.downloader.staging_path(mod_id)
        if not source.is_dir():
            raise SourceNotFoundError(mod_id, source)
        resolution = ConflictResolution.OVERWRITE if overwrite else ConflictResolution.RENAME

        self._emit(mod_id, ModState.INSTALLING)
        try:
            path = await self._install(entry, source, False, None, resolution)
        except (WorkshopSyncError, OSError) as exc:
            logging.error("Install failed for %s: %s", mod_id, exc)
            return self._finish(entry, ModState.FAILED, reason=str(exc))
        return await self._complete(entry, path)


def _remote_timestamp(item: Optional[WorkshopItem]) -> Optional[int]:
    if item is None or item.time_updated <= 0:
        return None
    return item.time_updated

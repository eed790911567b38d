from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from mod_scanner import (
    LocalMod,
    find_mod_folders,
    ignored_update_at,
    remove_ignored_update,
    scan_mods,
    write_ignored_update,
)
from telemetry import start_span
from utils import now_ts
from workshop_api import (
    RESULT_FILE_NOT_FOUND,
    RESULT_OK,
    VISIBILITY_PUBLIC,
    WorkshopClient,
    WorkshopItem,
)

DEFAULT_APP_ID = 294100


def is_stale(remote_updated: int, baseline: int, epsilon: float = 1.0) -> bool:
    return (remote_updated - baseline) > epsilon


def chunked(values: List[str], size: int) -> List[List[str]]:
    size = max(1, int(size))
    return [values[i : i + size] for i in range(0, len(values), size)]


class UpdateDetector:
    def __init__(
        self,
        client: WorkshopClient,
        *,
        app_id: int = DEFAULT_APP_ID,
        batch_size: int = 50,
        batch_delay: float = 0.25,
        stale_epsilon: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.app_id = int(app_id)
        self.batch_size = max(1, int(batch_size))
        self.batch_delay = max(0.0, float(batch_delay))
        self.stale_epsilon = float(stale_epsilon)
        self._sleep = sleep

    async def fetch_details(self, mod_ids: Iterable[str]) -> Dict[str, Optional[WorkshopItem]]:
        """Fetch catalog entries in concurrent batches.

        Ids of a batch the catalog could not answer are left out of the
        result entirely; ids the catalog answered without an entry map to
        ``None``.
        """
        unique_ids = list(dict.fromkeys(str(mod_id) for mod_id in mod_ids))
        batches = chunked(unique_ids, self.batch_size)
        tasks: List[asyncio.Task] = []
        for index, batch in enumerate(batches):
            if index and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            tasks.append(asyncio.create_task(self.client.fetch_batch(batch)))
        results = await asyncio.gather(*tasks)

        details: Dict[str, Optional[WorkshopItem]] = {}
        for batch, result in zip(batches, results):
            if result is None:
                logging.warning(
                    "Update status unknown for %s mod(s): catalog unavailable", len(batch)
                )
                continue
            details.update(result)
        return details

    def is_eligible(self, mod: LocalMod, item: Optional[WorkshopItem]) -> bool:
        if item is None:
            return False
        if item.result == RESULT_FILE_NOT_FOUND:
            logging.warning("Mod %s (%s) is no longer on the workshop", mod.mod_id, mod.folder)
            return False
        if item.result != RESULT_OK:
            logging.warning(
                "Mod %s (%s) returned catalog result %s", mod.mod_id, mod.folder, item.result
            )
            if item.time_updated <= 0:
                return False
        if item.visibility != VISIBILITY_PUBLIC:
            logging.debug("Skip %s: visibility=%s", mod.mod_id, item.visibility)
            return False
        if item.banned:
            logging.debug("Skip %s: banned", mod.mod_id)
            return False
        if item.creator_app_id != self.app_id:
            logging.debug("Skip %s: creator_app_id=%s", mod.mod_id, item.creator_app_id)
            return False
        return True

    def needs_update(self, mod: LocalMod) -> bool:
        if mod.details is None:
            return False
        return is_stale(mod.details.time_updated, mod.baseline, self.stale_epsilon)

    async def query(
        self, mods_dir: Path, ignored: Optional[Iterable[str]] = None
    ) -> List[LocalMod]:
        """Return installed mods whose catalog entry is newer than the local copy."""
        ignored_ids = {str(mod_id) for mod_id in (ignored or ())}
        with start_span("updates.query", {"mods.dir": str(mods_dir)}) as span:
            mods = scan_mods(mods_dir)
            if not mods:
                return []
            details = await self.fetch_details(mod.mod_id for mod in mods)

            stale: List[LocalMod] = []
            seen = set()
            for mod in mods:
                item = details.get(mod.mod_id)
                if not self.is_eligible(mod, item):
                    continue
                mod.details = item
                if not self.needs_update(mod):
                    continue
                if mod.mod_id in ignored_ids or mod.mod_id in seen:
                    continue
                seen.add(mod.mod_id)
                stale.append(mod)

            span.set_attribute("mods.scanned", len(mods))
            span.set_attribute("mods.stale", len(stale))
            logging.info("Update check: scanned=%s stale=%s", len(mods), len(stale))
            return stale

    async def ignore_updates(
        self, mods_dir: Path, mods: Iterable[Union[LocalMod, str]]
    ) -> Dict[str, int]:
        """Skip the current remote version of each mod.

        Returns the timestamp written per mod id. Only ids with at least one
        local folder are included.
        """
        timestamps: Dict[str, int] = {}
        missing: List[str] = []
        for entry in mods:
            if isinstance(entry, LocalMod):
                mod_id = entry.mod_id
                if entry.details is not None and entry.details.time_updated > 0:
                    timestamps.setdefault(mod_id, entry.details.time_updated)
                    continue
            else:
                mod_id = str(entry)
            if mod_id not in missing:
                missing.append(mod_id)
        missing = [mod_id for mod_id in missing if mod_id not in timestamps]

        if missing:
            fetched = await self.client.fetch_times_updated(missing)
            fallback = now_ts()
            for mod_id in missing:
                timestamps[mod_id] = fetched.get(mod_id, fallback)

        written: Dict[str, int] = {}
        for mod_id, timestamp in timestamps.items():
            folders = write_ignored_update(mods_dir, mod_id, timestamp)
            if folders:
                written[mod_id] = timestamp
                logging.info(
                    "Ignoring update %s for mod %s in %s folder(s)", timestamp, mod_id, len(folders)
                )
            else:
                logging.warning("No local folder found for mod %s", mod_id)
        return written

    def undo_ignore_updates(self, mods_dir: Path, mod_ids: Iterable[str]) -> Dict[str, int]:
        removed: Dict[str, int] = {}
        for mod_id in dict.fromkeys(str(mod_id) for mod_id in mod_ids):
            folders = remove_ignored_update(mods_dir, mod_id)
            removed[mod_id] = len(folders)
        return removed

    def check_ignored_updates(self, mods_dir: Path, mod_ids: Iterable[str]) -> Dict[str, bool]:
        status: Dict[str, bool] = {}
        for mod_id in dict.fromkeys(str(mod_id) for mod_id in mod_ids):
            status[mod_id] = any(
                ignored_update_at(folder) is not None
                for folder in find_mod_folders(mods_dir, mod_id)
            )
        return status

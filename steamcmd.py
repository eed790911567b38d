from __future__ import annotations

import asyncio
import logging
import platform
import re
import shutil
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional, Union

from errors import AlreadyDownloadingError, ToolNotFoundError, WorkshopSyncError
from telemetry import start_span
from utils import ensure_dir, has_files, remove_tree, safe_unlink

DEFAULT_APP_ID = 294100
SCRIPT_NAME = "run.txt"

OutputSink = Callable[[str, str], None]
Locator = Callable[[Path], Path]


@dataclass(frozen=True)
class DownloadJob:
    mod_id: str
    title: Optional[str] = None
    mods_path: Optional[Path] = None


@dataclass(frozen=True)
class DownloadedMod:
    mod_id: str
    path: Path
    folder: str
    title: Optional[str] = None
    mods_path: Optional[Path] = None


class DownloadTracker:
    """Ids with a download in flight. Shared by every downloader given the same instance."""

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def is_downloading(self, mod_id: str) -> bool:
        with self._lock:
            return str(mod_id) in self._active

    def busy(self, mod_ids: Iterable[str]) -> List[str]:
        with self._lock:
            return [str(mod_id) for mod_id in mod_ids if str(mod_id) in self._active]

    def claim(self, mod_ids: Iterable[str]) -> None:
        ids = [str(mod_id) for mod_id in mod_ids]
        with self._lock:
            for mod_id in ids:
                if mod_id in self._active:
                    raise AlreadyDownloadingError(mod_id)
            self._active.update(ids)

    def release(self, mod_ids: Iterable[str]) -> None:
        with self._lock:
            for mod_id in mod_ids:
                self._active.discard(str(mod_id))

    def active(self) -> set[str]:
        with self._lock:
            return set(self._active)


_ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")


def _strip_ansi(value: str) -> str:
    return _ANSI_RE.sub("", value)


def _extract_steamcmd_error(output: str) -> str | None:
    cleaned = _strip_ansi(output or "").replace("\r", "\n")
    specific_match = re.search(
        r"(ERROR!\s+Download item\s+\d+\s+failed\s+\([^)]+\)\.)",
        cleaned,
        flags=re.IGNORECASE | re.DOTALL,
    )
    if specific_match:
        return " ".join(specific_match.group(1).split())
    for raw_line in cleaned.splitlines():
        line = raw_line.strip()
        if line and "ERROR!" in line:
            return " ".join(line.split())
    return None


def _read_tail_lines(path: Path, max_bytes: int = 256 * 1024) -> list[str]:
    if not path.is_file():
        return []
    try:
        with path.open("rb") as fh:
            fh.seek(0, 2)
            size = fh.tell()
            fh.seek(max(0, size - max_bytes))
            data = fh.read().decode("utf-8", errors="ignore")
    except OSError:
        return []
    return [line.strip() for line in data.splitlines() if line.strip()]


def _workshop_log_result(log_dir: Path, mod_id: str) -> str | None:
    """Last ``Download item <id> result`` line from steamcmd's workshop log."""
    needle = f"Download item {mod_id} result :"
    for line in reversed(_read_tail_lines(log_dir / "workshop_log.txt")):
        if needle in line:
            return line
    return None


def target_triple(system: str | None = None, machine: str | None = None) -> str:
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    if system == "windows":
        return "x86_64-pc-windows-msvc"
    if system == "darwin":
        if machine in {"arm64", "aarch64"}:
            return "aarch64-apple-darwin"
        return "x86_64-apple-darwin"
    return "x86_64-unknown-linux-gnu"


def _is_windows(system: str | None) -> bool:
    return (system or platform.system()).lower() == "windows"


def steamcmd_candidates(
    install_dir: Path,
    *,
    exe_dir: Path | None = None,
    cwd: Path | None = None,
    system: str | None = None,
    machine: str | None = None,
) -> list[Path]:
    """Filesystem locations probed for steamcmd, in priority order."""
    windows = _is_windows(system)
    bundled = f"steamcmd-{target_triple(system, machine)}"
    if windows:
        bundled += ".exe"
    local_names = ["steamcmd.exe"] if windows else ["steamcmd", "steamcmd.sh"]
    exe_dir = exe_dir or Path(sys.executable).resolve().parent
    cwd = cwd or Path.cwd()

    candidates = [
        exe_dir / bundled,
        exe_dir / "resources" / bundled,
        exe_dir.parent / bundled,
        exe_dir.parent / "resources" / bundled,
    ]
    candidates.extend(cwd / "bin" / "steamcmd" / name for name in local_names)
    candidates.extend(install_dir / name for name in local_names)
    return candidates


def locate_steamcmd(
    install_dir: Path,
    *,
    exe_dir: Path | None = None,
    cwd: Path | None = None,
    system: str | None = None,
    machine: str | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> Path:
    candidates = steamcmd_candidates(
        install_dir, exe_dir=exe_dir, cwd=cwd, system=system, machine=machine
    )
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    found = which("steamcmd")
    if found:
        return Path(found)
    raise ToolNotFoundError(candidates)


def build_script(install_dir: Path, app_id: int, mod_ids: Iterable[str]) -> str:
    lines = [f'force_install_dir "{install_dir}"', "login anonymous"]
    lines.extend(f"workshop_download_item {app_id} {mod_id}" for mod_id in mod_ids)
    lines.append("quit")
    return "\n".join(lines) + "\n"


def log_output(stream: str, line: str) -> None:
    logging.info("steamcmd %s: %s", stream, line)


class SteamCmdDownloader:
    def __init__(
        self,
        install_dir: Path,
        *,
        app_id: int = DEFAULT_APP_ID,
        tracker: DownloadTracker | None = None,
        output: OutputSink | None = None,
        locate: Locator = locate_steamcmd,
        poll_interval: float = 1.0,
        watch_timeout: float = 300.0,
        settle_delay: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.install_dir = Path(install_dir).expanduser().resolve()
        self.app_id = int(app_id)
        self.tracker = tracker or DownloadTracker()
        self.output = output or log_output
        self.locate = locate
        self.poll_interval = max(0.0, float(poll_interval))
        self.watch_timeout = max(0.0, float(watch_timeout))
        self.settle_delay = max(0.0, float(settle_delay))
        self._clock = clock
        self._sleep = sleep

    @property
    def workshop_dir(self) -> Path:
        return self.install_dir / "steamapps" / "workshop"

    @property
    def content_dir(self) -> Path:
        return self.workshop_dir / "content" / str(self.app_id)

    @property
    def manifest_path(self) -> Path:
        return self.workshop_dir / f"appworkshop_{self.app_id}.acf"

    def staging_path(self, mod_id: str) -> Path:
        return self.content_dir / str(mod_id)

    def prepare(self, mod_ids: Iterable[str] = ()) -> None:
        """Reset steamcmd state and drop stale staging folders for ``mod_ids``."""
        safe_unlink(self.manifest_path)
        ensure_dir(self.content_dir)
        for mod_id in mod_ids:
            path = self.staging_path(mod_id)
            try:
                if remove_tree(path):
                    logging.info("Removed stale staging folder %s", path)
            except OSError as exc:
                logging.warning("Failed to clear staging folder %s: %s", path, exc)

    def write_script(self, mod_ids: List[str]) -> Path:
        script_path = self.install_dir / SCRIPT_NAME
        script_path.write_text(
            build_script(self.install_dir, self.app_id, mod_ids), encoding="utf-8"
        )
        return script_path

    async def wait_for_download(
        self, job: DownloadJob, finished: asyncio.Event | None = None
    ) -> DownloadedMod | None:
        """Poll until the staging folder for ``job`` exists and holds content.

        Returns ``None`` on timeout, or once ``finished`` is set and a last
        check still finds nothing.
        """
        path = self.staging_path(job.mod_id)
        deadline = self._clock() + self.watch_timeout
        while True:
            process_done = finished is not None and finished.is_set()
            if has_files(path):
                logging.info("Download detected for %s at %s", job.mod_id, path)
                return DownloadedMod(job.mod_id, path, path.name, job.title, job.mods_path)
            if process_done:
                return None
            if self._clock() >= deadline:
                logging.warning(
                    "Timed out after %.0fs waiting for %s at %s",
                    self.watch_timeout,
                    job.mod_id,
                    path,
                )
                return None
            await self._sleep(self.poll_interval)

    async def _run_process(self, executable: Path, script_path: Path) -> tuple[int, list[str]]:
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable),
                "+runscript",
                str(script_path),
                cwd=str(self.install_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=1024 * 1024,
            )
        except OSError as exc:
            raise WorkshopSyncError(f"Failed to start steamcmd at {executable}: {exc}") from exc

        lines: list[str] = []

        async def pump(stream: asyncio.StreamReader | None, name: str) -> None:
            if stream is None:
                return
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                line = _strip_ansi(raw.decode("utf-8", errors="ignore")).strip()
                if not line:
                    continue
                lines.append(line)
                self.output(name, line)

        await asyncio.gather(pump(process.stdout, "stdout"), pump(process.stderr, "stderr"))
        returncode = await process.wait()
        return returncode, lines

    async def download_all(
        self, jobs: Iterable[Union[DownloadJob, str]], *, track: bool = True
    ) -> List[DownloadedMod]:
        """Run one steamcmd process for every job and report the mods that arrived.

        With ``track`` the ids are claimed in the tracker for the duration of
        the call; callers that hold the claim themselves pass ``False``.
        """
        job_list: List[DownloadJob] = []
        for job in jobs:
            if not isinstance(job, DownloadJob):
                job = DownloadJob(str(job))
            if job.mod_id not in {existing.mod_id for existing in job_list}:
                job_list.append(job)
        if not job_list:
            return []
        mod_ids = [job.mod_id for job in job_list]

        if track:
            self.tracker.claim(mod_ids)
        try:
            with start_span(
                "steamcmd.download_all",
                {"steam.app_id": self.app_id, "steam.items": len(mod_ids)},
            ) as span:
                downloaded = await self._download(job_list)
                span.set_attribute("steam.downloaded", len(downloaded))
                return downloaded
        finally:
            if track:
                self.tracker.release(mod_ids)

    async def _download(self, job_list: List[DownloadJob]) -> List[DownloadedMod]:
        mod_ids = [job.mod_id for job in job_list]
        ensure_dir(self.install_dir)
        self.prepare(mod_ids)
        executable = self.locate(self.install_dir)
        script_path = self.write_script(mod_ids)
        logging.info(
            "SteamCMD download: app_id=%s items=%s executable=%s",
            self.app_id,
            len(mod_ids),
            executable,
        )

        finished = asyncio.Event()
        watchers = [
            asyncio.create_task(self.wait_for_download(job, finished)) for job in job_list
        ]
        try:
            returncode, lines = await self._run_process(executable, script_path)
        except BaseException:
            for watcher in watchers:
                watcher.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
            raise
        finally:
            safe_unlink(script_path)

        if returncode != 0:
            logging.error("SteamCMD exited with code %s", returncode)
        parsed_error = _extract_steamcmd_error("\n".join(lines))
        if parsed_error:
            logging.error("SteamCMD reported: %s", parsed_error)

        if self.settle_delay > 0:
            await self._sleep(self.settle_delay)
        finished.set()

        results = await asyncio.gather(*watchers)
        downloaded = [result for result in results if result is not None]
        arrived = {mod.mod_id for mod in downloaded}
        for mod_id in mod_ids:
            if mod_id in arrived:
                continue
            detail = _workshop_log_result(self.install_dir / "logs", mod_id)
            if detail:
                logging.error("SteamCMD did not deliver %s: %s", mod_id, detail)
            else:
                logging.error("SteamCMD did not deliver %s", mod_id)
        logging.info("SteamCMD delivered %s/%s item(s)", len(downloaded), len(mod_ids))
        return downloaded

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from config import Config, load_config
from errors import CorruptedModConflictError, WorkshopSyncError
from http_utils import RetryPolicy
from installer import ConflictResolution, check_backup, restore_backups
from rate_limiter import RateLimiter
from steamcmd import SteamCmdDownloader
from syncer import ModSyncer, UpdateOutcome
from telemetry import init_telemetry, shutdown_telemetry
from update_detector import UpdateDetector
from workshop_api import WorkshopClient

__version__ = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workshop-mod-updater",
        description="Keep a local mods folder in sync with the Steam Workshop.",
    )
    parser.add_argument("--mods-dir", type=Path, help="mods folder (WORKSHOP_MODS_DIR)")
    parser.add_argument("--backup-dir", type=Path, help="backup folder (WORKSHOP_BACKUP_DIR)")
    parser.add_argument("--steamcmd-dir", type=Path, help="steamcmd install dir (STEAMCMD_DIR)")
    parser.add_argument("--log-level", help="logging level (WORKSHOP_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="list installed mods with a newer workshop version")

    update = sub.add_parser("update", help="download and install outdated mods")
    update.add_argument("ids", nargs="*", help="limit the update to these workshop ids")
    update.add_argument("--backup", action="store_true", help="back up mods before replacing")
    update.add_argument(
        "--on-conflict",
        choices=["skip", "overwrite", "rename", "ask"],
        default="skip",
        help="what to do when a mod folder is corrupted",
    )

    download = sub.add_parser("download", help="download workshop items or collections")
    download.add_argument("ids", nargs="+")
    download.add_argument("--no-expand", action="store_true", help="do not expand collections")
    download.add_argument(
        "--on-conflict",
        choices=["skip", "overwrite", "rename", "ask"],
        default="skip",
    )

    for name, text in (
        ("ignore", "skip the current workshop version of mods"),
        ("unignore", "stop skipping workshop versions of mods"),
        ("ignored", "show which mods have a skipped version"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("ids", nargs="+")

    restore = sub.add_parser("restore", help="restore mod folders from their backups")
    restore.add_argument("folders", nargs="+", help="mod folder names or paths")

    backups = sub.add_parser("backups", help="show backup status of mod folders")
    backups.add_argument("folders", nargs="+", help="mod folder names or paths")
    return parser


def _apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    if args.mods_dir:
        config.mods_dir = args.mods_dir.expanduser()
    if args.backup_dir:
        config.backup_dir = args.backup_dir.expanduser()
    if args.steamcmd_dir:
        config.steamcmd_dir = args.steamcmd_dir.expanduser()
    if args.log_level:
        config.log_level = args.log_level
    return config


def _require(value: Optional[Path], name: str) -> Path:
    if value is None:
        raise SystemExit(f"{name} is not configured")
    return value


def _resolve_folder(mods_dir: Path, folder: str) -> Path:
    path = Path(folder).expanduser()
    if path.is_absolute() or path.exists():
        return path
    return mods_dir / folder


def build_client(config: Config) -> WorkshopClient:
    return WorkshopClient(
        api_base=config.api_base,
        community_base=config.community_base,
        timeout=config.timeout,
        policy=RetryPolicy(config.http_retries, config.http_retry_backoff),
        scrape_limiter=RateLimiter(config.scrape_delay),
        cache_ttl=config.cache_ttl,
    )


def build_downloader(config: Config) -> SteamCmdDownloader:
    return SteamCmdDownloader(
        config.steamcmd_dir,
        app_id=config.app_id,
        poll_interval=config.poll_interval,
        watch_timeout=config.watch_timeout,
        settle_delay=config.settle_delay,
    )


def _conflict_resolver(mode: str):
    async def resolve(conflict: CorruptedModConflictError) -> Optional[ConflictResolution]:
        if mode == "overwrite":
            return ConflictResolution.OVERWRITE
        if mode == "rename":
            return ConflictResolution.RENAME
        if mode == "ask":
            prompt = (
                f"Folder '{conflict.folder_name}' for {conflict.title} is not a valid mod. "
                "[o]verwrite / [r]ename / [s]kip: "
            )
            answer = (await asyncio.to_thread(input, prompt)).strip().lower()
            if answer.startswith("o"):
                return ConflictResolution.OVERWRITE
            if answer.startswith("r"):
                return ConflictResolution.RENAME
        return None

    return resolve


def _report(outcomes: list[UpdateOutcome]) -> int:
    failed = 0
    for outcome in outcomes:
        if outcome.ok:
            print(f"{outcome.mod_id}\t{outcome.state.value}\t{outcome.path}")
        else:
            if outcome.state.value == "failed":
                failed += 1
            print(f"{outcome.mod_id}\t{outcome.state.value}\t{outcome.reason}")
    return 1 if failed else 0


async def run(args: argparse.Namespace, config: Config) -> int:
    mods_dir = config.mods_dir
    async with build_client(config) as client:
        detector = UpdateDetector(
            client,
            app_id=config.app_id,
            batch_size=config.batch_size,
            batch_delay=config.batch_delay,
            stale_epsilon=config.stale_epsilon,
        )

        if args.command == "check":
            stale = await detector.query(_require(mods_dir, "Mods folder"), config.ignored_mods)
            for mod in stale:
                print(f"{mod.mod_id}\t{mod.folder}\t{mod.title}")
            return 0

        if args.command in {"update", "download"}:
            syncer = ModSyncer(
                build_downloader(config),
                client=client,
                resolver=_conflict_resolver(args.on_conflict),
            )
            if args.command == "download":
                outcomes = await syncer.download_mods(
                    args.ids,
                    _require(mods_dir, "Mods folder"),
                    expand=not args.no_expand,
                )
                return _report(outcomes)
            stale = await detector.query(_require(mods_dir, "Mods folder"), config.ignored_mods)
            if args.ids:
                wanted = set(args.ids)
                stale = [mod for mod in stale if mod.mod_id in wanted]
            if not stale:
                print("All mods are up to date")
                return 0
            outcomes = await syncer.update_mods(
                stale,
                create_backup=args.backup or config.backup_mods,
                backup_dir=config.backup_dir,
            )
            return _report(outcomes)

        if args.command == "ignore":
            written = await detector.ignore_updates(_require(mods_dir, "Mods folder"), args.ids)
            for mod_id, timestamp in written.items():
                print(f"{mod_id}\tignored\t{timestamp}")
            return 0 if written else 1

        if args.command == "unignore":
            removed = detector.undo_ignore_updates(_require(mods_dir, "Mods folder"), args.ids)
            for mod_id, count in removed.items():
                print(f"{mod_id}\t{count} folder(s)")
            return 0

        if args.command == "ignored":
            status = detector.check_ignored_updates(_require(mods_dir, "Mods folder"), args.ids)
            for mod_id, ignored in status.items():
                print(f"{mod_id}\t{'ignored' if ignored else '-'}")
            return 0

    root = _require(mods_dir, "Mods folder")
    backup_dir = _require(config.backup_dir, "Backup folder")
    paths = [_resolve_folder(root, folder) for folder in args.folders]
    if args.command == "backups":
        for path in paths:
            info = check_backup(path, backup_dir)
            print(f"{path.name}\t{'yes' if info.has_backup else 'no'}\t{info.backup_date or '-'}")
        return 0

    results = restore_backups(paths, backup_dir)
    for result in results:
        print(f"{result.mod_path.name}\t{'restored' if result.ok else result.reason}")
    return 0 if all(result.ok for result in results) else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = _apply_overrides(load_config(), args)
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    init_telemetry(__version__)
    try:
        return asyncio.run(run(args, config))
    except WorkshopSyncError as exc:
        logging.error("%s", exc)
        return 2
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    sys.exit(main())

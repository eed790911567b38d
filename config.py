from dataclasses import dataclass
import os
import re
from pathlib import Path

DEFAULT_APP_ID = 294100
DEFAULT_API_BASE = "https://api.steampowered.com"
DEFAULT_COMMUNITY_BASE = "https://steamcommunity.com"
DEFAULT_TIMEOUT = 30
DEFAULT_HTTP_RETRIES = 3
DEFAULT_HTTP_RETRY_BACKOFF = 1.0
DEFAULT_BATCH_SIZE = 50
DEFAULT_BATCH_DELAY = 0.25
DEFAULT_SCRAPE_DELAY = 2.0
DEFAULT_CACHE_TTL = 3600
DEFAULT_STALE_EPSILON = 1.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_WATCH_TIMEOUT = 300.0
DEFAULT_SETTLE_DELAY = 2.0
DEFAULT_LOG_LEVEL = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_list(value: str | None) -> list[str]:
    if not value:
        return []
    parts = re.split(r"[,\s]+", value.strip())
    return [part for part in (p.strip() for p in parts) if part]


@dataclass
class Config:
    app_id: int
    mods_dir: Path | None
    backup_dir: Path | None
    backup_mods: bool
    steamcmd_dir: Path
    api_base: str
    community_base: str
    timeout: int
    http_retries: int
    http_retry_backoff: float
    batch_size: int
    batch_delay: float
    scrape_delay: float
    cache_ttl: int
    stale_epsilon: float
    poll_interval: float
    watch_timeout: float
    settle_delay: float
    log_level: str
    ignored_mods: list[str]


def _optional_path(value: str | None) -> Path | None:
    if not value or not value.strip():
        return None
    return Path(value.strip()).expanduser()


def load_config() -> Config:
    app_id = parse_int(os.environ.get("WORKSHOP_APP_ID"), DEFAULT_APP_ID)
    if app_id <= 0:
        app_id = DEFAULT_APP_ID

    steamcmd_dir = _optional_path(os.environ.get("STEAMCMD_DIR"))
    if steamcmd_dir is None:
        steamcmd_dir = Path.cwd() / "steamcmd"

    return Config(
        app_id=app_id,
        mods_dir=_optional_path(os.environ.get("WORKSHOP_MODS_DIR")),
        backup_dir=_optional_path(os.environ.get("WORKSHOP_BACKUP_DIR")),
        backup_mods=parse_bool(os.environ.get("WORKSHOP_BACKUP_MODS"), False),
        steamcmd_dir=steamcmd_dir,
        api_base=os.environ.get("WORKSHOP_API_BASE", DEFAULT_API_BASE).rstrip("/"),
        community_base=os.environ.get(
            "WORKSHOP_COMMUNITY_BASE", DEFAULT_COMMUNITY_BASE
        ).rstrip("/"),
        timeout=parse_int(os.environ.get("WORKSHOP_HTTP_TIMEOUT"), DEFAULT_TIMEOUT),
        http_retries=max(
            0, parse_int(os.environ.get("WORKSHOP_HTTP_RETRIES"), DEFAULT_HTTP_RETRIES)
        ),
        http_retry_backoff=parse_float(
            os.environ.get("WORKSHOP_HTTP_RETRY_BACKOFF"), DEFAULT_HTTP_RETRY_BACKOFF
        ),
        batch_size=max(1, parse_int(os.environ.get("WORKSHOP_BATCH_SIZE"), DEFAULT_BATCH_SIZE)),
        batch_delay=parse_float(os.environ.get("WORKSHOP_BATCH_DELAY"), DEFAULT_BATCH_DELAY),
        scrape_delay=parse_float(os.environ.get("WORKSHOP_SCRAPE_DELAY"), DEFAULT_SCRAPE_DELAY),
        cache_ttl=parse_int(os.environ.get("WORKSHOP_CACHE_TTL"), DEFAULT_CACHE_TTL),
        stale_epsilon=parse_float(
            os.environ.get("WORKSHOP_STALE_EPSILON"), DEFAULT_STALE_EPSILON
        ),
        poll_interval=parse_float(
            os.environ.get("STEAMCMD_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL
        ),
        watch_timeout=parse_float(
            os.environ.get("STEAMCMD_WATCH_TIMEOUT"), DEFAULT_WATCH_TIMEOUT
        ),
        settle_delay=parse_float(
            os.environ.get("STEAMCMD_SETTLE_DELAY"), DEFAULT_SETTLE_DELAY
        ),
        log_level=os.environ.get("WORKSHOP_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        ignored_mods=parse_list(os.environ.get("WORKSHOP_IGNORED_MODS")),
    )

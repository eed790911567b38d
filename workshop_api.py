from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp
from selectolax.parser import HTMLParser

from http_utils import HTML_HEADERS, JSON_HEADERS, RetryPolicy, is_dns_error
from rate_limiter import RateLimiter
from telemetry import start_span
from ttl_cache import MISS, TTLCache

DEFAULT_API_BASE = "https://api.steampowered.com"
DEFAULT_COMMUNITY_BASE = "https://steamcommunity.com"
DETAILS_PATH = "/ISteamRemoteStorage/GetPublishedFileDetails/v1/"

RESULT_OK = 1
RESULT_FILE_NOT_FOUND = 9
VISIBILITY_PUBLIC = 0
FILE_TYPE_COLLECTION = 2

_ITEM_LINK_RE = re.compile(r"sharedfiles/filedetails/\?id=(\d+)")
_COLLECTION_SELECTORS = ("#mainContentsCollection", ".collectionHeader")
_COLLECTION_MARKERS = (
    "SubscribeCollectionBtn",
    "SubscribeAllBtn",
    "Subscribe to Collection",
    "Subscribe to all",
)


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


@dataclass
class WorkshopItem:
    publishedfileid: str
    result: int = 0
    creator_app_id: int = 0
    consumer_app_id: int = 0
    visibility: int = 0
    banned: bool = False
    file_size: int = 0
    title: str = ""
    time_created: int = 0
    time_updated: int = 0
    file_type: Optional[int] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WorkshopItem":
        tags: List[str] = []
        for tag in payload.get("tags") or []:
            name = tag.get("tag") if isinstance(tag, dict) else tag
            if name:
                tags.append(str(name))
        file_type = payload.get("file_type")
        return cls(
            publishedfileid=str(payload.get("publishedfileid") or ""),
            result=_as_int(payload.get("result")),
            creator_app_id=_as_int(payload.get("creator_app_id")),
            consumer_app_id=_as_int(payload.get("consumer_app_id")),
            visibility=_as_int(payload.get("visibility")),
            banned=_as_bool(payload.get("banned")),
            file_size=_as_int(payload.get("file_size")),
            title=str(payload.get("title") or ""),
            time_created=_as_int(payload.get("time_created")),
            time_updated=_as_int(payload.get("time_updated")),
            file_type=None if file_type is None else _as_int(file_type),
            tags=tags,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HttpStatusError(Exception):
    def __init__(self, status: int, url: str) -> None:
        super().__init__(f"HTTP {status} for {url}")
        self.status = status


def _dedupe_keep_order(values: Iterable[str]) -> List[str]:
    seen = set()
    result: List[str] = []
    for value in values:
        value = str(value).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def extract_item_ids(html_text: str, exclude: str | None = None) -> List[str]:
    """Return workshop ids linked from a page, first-seen order, without ``exclude``."""
    parser = HTMLParser(html_text)
    scope = parser.css_first(".collectionChildren")
    text = scope.html if scope is not None and scope.html else html_text
    ids = [match for match in _ITEM_LINK_RE.findall(text) if match != exclude]
    return _dedupe_keep_order(ids)


def looks_like_collection(html_text: str) -> bool:
    parser = HTMLParser(html_text)
    for selector in _COLLECTION_SELECTORS:
        if parser.css_first(selector) is not None:
            return True
    return any(marker in html_text for marker in _COLLECTION_MARKERS)


class WorkshopClient:
    def __init__(
        self,
        *,
        api_base: str = DEFAULT_API_BASE,
        community_base: str = DEFAULT_COMMUNITY_BASE,
        timeout: int = 30,
        policy: RetryPolicy | None = None,
        scrape_limiter: RateLimiter | None = None,
        cache_ttl: float = 3600,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.community_base = community_base.rstrip("/")
        self.timeout = int(timeout)
        self.policy = policy or RetryPolicy(retries=3, backoff=1.0)
        self.scrape_limiter = scrape_limiter or RateLimiter(2.0, clock=clock, sleep=sleep)
        self.item_cache = TTLCache(cache_ttl, clock=clock)
        self.collection_cache = TTLCache(cache_ttl, clock=clock)
        self.children_cache = TTLCache(cache_ttl, clock=clock)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self) -> "WorkshopClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout_cfg = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout_cfg)
        return self._session

    def item_url(self, mod_id: str) -> str:
        return f"{self.community_base}/sharedfiles/filedetails/?id={mod_id}"

    async def _post_form(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        session = self._get_session()
        async with session.post(url, data=data, headers=JSON_HEADERS) as response:
            if response.status >= 400:
                raise HttpStatusError(response.status, url)
            return await response.json(content_type=None)

    async def _get_text(self, url: str) -> str:
        session = self._get_session()
        async with session.get(url, headers=HTML_HEADERS) as response:
            if response.status != 200:
                raise HttpStatusError(response.status, url)
            return await response.text()

    async def fetch_batch(
        self, mod_ids: Iterable[str]
    ) -> Optional[Dict[str, Optional[WorkshopItem]]]:
        """Fetch catalog entries for ``mod_ids`` in one request.

        Returns a map with every requested id (``None`` for ids the catalog
        did not return), or ``None`` for the whole batch once retries are
        exhausted. ``None`` means unknown, not missing.
        """
        unique_ids = _dedupe_keep_order(mod_ids)
        if not unique_ids:
            return {}
        data = {"itemcount": str(len(unique_ids)), "format": "json"}
        for index, mod_id in enumerate(unique_ids):
            data[f"publishedfileids[{index}]"] = mod_id
        url = f"{self.api_base}{DETAILS_PATH}"

        with start_span("workshop.fetch_batch", {"workshop.items": len(unique_ids)}) as span:
            attempts = self.policy.attempts
            for attempt in range(1, attempts + 1):
                try:
                    payload = await self._post_form(url, data)
                except (aiohttp.ClientError, asyncio.TimeoutError, HttpStatusError, ValueError) as exc:
                    if is_dns_error(exc):
                        logging.warning("Workshop API DNS error: %s", exc)
                    if attempt >= attempts:
                        logging.warning(
                            "Workshop catalog unavailable for batch of %s item(s) after %s attempt(s): %s",
                            len(unique_ids),
                            attempts,
                            exc,
                        )
                        span.set_attribute("workshop.unavailable", True)
                        return None
                    delay = self.policy.delay_for_attempt(attempt)
                    logging.warning(
                        "Workshop batch of %s item(s) failed, retry %s/%s in %.1fs: %s",
                        len(unique_ids),
                        attempt,
                        self.policy.retries,
                        delay,
                        exc,
                    )
                    if delay > 0:
                        await self._sleep(delay)
                    continue
                if attempt > 1:
                    logging.info(
                        "Got batch of %s item(s) after %s retries", len(unique_ids), attempt - 1
                    )
                return self._parse_batch(unique_ids, payload)
        return None

    def _parse_batch(
        self, unique_ids: List[str], payload: Dict[str, Any]
    ) -> Dict[str, Optional[WorkshopItem]]:
        response = payload.get("response") if isinstance(payload, dict) else None
        details = (response or {}).get("publishedfiledetails") or []
        found: Dict[str, WorkshopItem] = {}
        for entry in details:
            if not isinstance(entry, dict):
                continue
            item = WorkshopItem.from_payload(entry)
            if item.publishedfileid:
                found[item.publishedfileid] = item
        results: Dict[str, Optional[WorkshopItem]] = {}
        for mod_id in unique_ids:
            item = found.get(mod_id)
            results[mod_id] = item
            if item is not None and item.result == RESULT_OK:
                self.item_cache.set(mod_id, item)
        return results

    async def fetch_item(self, mod_id: str) -> Optional[WorkshopItem]:
        mod_id = str(mod_id)
        cached = self.item_cache.get(mod_id)
        if cached is not MISS:
            return cached
        batch = await self.fetch_batch([mod_id])
        if not batch:
            return None
        return batch.get(mod_id)

    async def fetch_times_updated(self, mod_ids: Iterable[str]) -> Dict[str, int]:
        batch = await self.fetch_batch(mod_ids)
        if not batch:
            return {}
        return {
            mod_id: item.time_updated
            for mod_id, item in batch.items()
            if item is not None and item.time_updated > 0
        }

    async def _fetch_page(self, mod_id: str) -> str | None:
        url = self.item_url(mod_id)
        try:
            return await self.scrape_limiter.execute(self._get_text, url)
        except (aiohttp.ClientError, asyncio.TimeoutError, HttpStatusError) as exc:
            logging.warning("Workshop page fetch failed for %s: %s", mod_id, exc)
            return None

    async def is_collection(self, mod_id: str) -> bool:
        mod_id = str(mod_id)
        cached = self.collection_cache.get(mod_id)
        if cached is not MISS:
            return cached
        item = await self.fetch_item(mod_id)
        if item is not None and item.file_type == FILE_TYPE_COLLECTION:
            flag = True
        elif item is not None and item.file_type not in (None, 0):
            flag = False
        else:
            page = await self._fetch_page(mod_id)
            if page is None:
                return False
            flag = looks_like_collection(page)
        self.collection_cache.set(mod_id, flag)
        return flag

    async def collection_children(self, collection_id: str) -> List[str]:
        collection_id = str(collection_id)
        cached = self.children_cache.get(collection_id)
        if cached is not MISS:
            return list(cached)
        page = await self._fetch_page(collection_id)
        if page is None:
            return []
        children = extract_item_ids(page, exclude=collection_id)
        self.children_cache.set(collection_id, children)
        logging.info("Collection %s lists %s item(s)", collection_id, len(children))
        return list(children)

    async def collection_details(self, collection_id: str) -> List[WorkshopItem]:
        children = await self.collection_children(collection_id)
        if not children:
            return []
        batch = await self.fetch_batch(children)
        if batch is None:
            return []
        return [item for item in batch.values() if item is not None]

    async def expand_ids(self, mod_ids: Iterable[str]) -> List[str]:
        expanded: List[str] = []
        for mod_id in _dedupe_keep_order(mod_ids):
            if await self.is_collection(mod_id):
                children = await self.collection_children(mod_id)
                logging.info("Expanding collection %s into %s item(s)", mod_id, len(children))
                expanded.extend(children)
            else:
                expanded.append(mod_id)
        return _dedupe_keep_order(expanded)

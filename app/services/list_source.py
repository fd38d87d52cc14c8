"""Scraping of public list pages into ordered title identifiers."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, TypeVar

import httpx
from bs4 import BeautifulSoup

from ..cache import TTLCache
from ..config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

BROWSER_HEADERS = {
    "Accept": "text/html,*/*",
    "Accept-Language": "en,en-GB;q=0.9",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120 Safari/537.36"
    ),
}

_TITLE_PATH_RE = re.compile(r"/title/(tt\d+)\b", re.IGNORECASE)
_TCONST_RE = re.compile(r"^tt\d+$", re.IGNORECASE)
_IMDB_SUFFIX_RE = re.compile(r"\s*-\s*IMDb.*$", re.IGNORECASE)


@dataclass(slots=True)
class ParsedPage:
    """Identifiers and title extracted from one list page."""

    title: str | None
    ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ListSource:
    """All identifiers of a list in first-seen order plus its display title."""

    title: str
    ids: list[str]
    fetched: bool = True


@dataclass(frozen=True, slots=True)
class PageStrategy:
    """One way of retrieving a numbered list page."""

    name: str
    build_url: Callable[[str, int], str]


async def first_success(
    attempts: Iterable[Callable[[], Awaitable[T | None]]],
) -> T | None:
    """Run ``attempts`` in order and return the first truthy result."""

    for attempt in attempts:
        result = await attempt()
        if result:
            return result
    return None


def parse_list_html(html: str) -> ParsedPage:
    """Extract ``tt`` identifiers (first-seen order) and a title from a page.

    Row markers (``data-tconst``) come first, then title links. Relayed pages
    arrive as plain text, so any remaining ``/title/tt...`` paths in the raw
    body are picked up last.
    """

    soup = BeautifulSoup(html, "html.parser")
    ids: list[str] = []
    seen: set[str] = set()

    def _add(candidate: str | None) -> None:
        if not candidate:
            return
        title_id = candidate.strip().lower()
        if _TCONST_RE.match(title_id) and title_id not in seen:
            seen.add(title_id)
            ids.append(title_id)

    for row in soup.select("[data-tconst]"):
        _add(row.get("data-tconst"))
    for link in soup.find_all("a", href=True):
        match = _TITLE_PATH_RE.search(link["href"])
        if match:
            _add(match.group(1))
    for match in _TITLE_PATH_RE.finditer(html):
        _add(match.group(1))

    title: str | None = None
    heading = soup.find("h1")
    if heading is not None:
        title = " ".join(heading.get_text(" ", strip=True).split()) or None
    if not title:
        og_title = soup.find("meta", property="og:title")
        content = og_title.get("content") if og_title is not None else None
        if content:
            title = _IMDB_SUFFIX_RE.sub("", " ".join(content.split())) or None
    return ParsedPage(title=title, ids=ids)


class ListSourceClient:
    """Fetches list pages using a fixed priority of site variants."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        cache: TTLCache | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._cache = cache if cache is not None else TTLCache(
            default_ttl=settings.cache_ttl_seconds
        )
        self._strategies = self.build_strategies(settings)

    @property
    def strategies(self) -> tuple[PageStrategy, ...]:
        return self._strategies

    @staticmethod
    def build_strategies(settings: Settings) -> tuple[PageStrategy, ...]:
        site = str(settings.list_site_url).rstrip("/")
        mobile = str(settings.list_mobile_url).rstrip("/")

        def primary(list_id: str, page: int) -> str:
            return f"{site}/list/{list_id}/?st_dt=&mode=detail&page={page}"

        def mobile_variant(list_id: str, page: int) -> str:
            return f"{mobile}/list/{list_id}/?page={page}"

        strategies = [
            PageStrategy("primary", primary),
            PageStrategy("mobile", mobile_variant),
        ]
        if settings.list_proxy_url is not None:
            proxy = str(settings.list_proxy_url).rstrip("/")
            plain_site = site.replace("https://", "http://", 1)
            plain_mobile = mobile.replace("https://", "http://", 1)
            strategies.append(
                PageStrategy(
                    "proxy-primary",
                    lambda list_id, page: f"{proxy}/{plain_site}/list/{list_id}/?st_dt=&mode=detail&page={page}",
                )
            )
            strategies.append(
                PageStrategy(
                    "proxy-mobile",
                    lambda list_id, page: f"{proxy}/{plain_mobile}/list/{list_id}/?page={page}",
                )
            )
        return tuple(strategies)

    async def fetch_list(self, list_id: str) -> ListSource:
        """Return the list title and ids; never raises.

        On total failure the id list is empty and the title is synthesised
        from the identifier.
        """

        cache_key = f"ls:{list_id}"
        cached = self._cache.get(cache_key)
        if isinstance(cached, ListSource):
            return cached

        title: str | None = None
        ids: list[str] = []
        seen: set[str] = set()
        for page in range(1, self._settings.list_pages_max + 1):
            parsed = await self._fetch_page(list_id, page)
            if parsed is None:
                break
            if title is None and parsed.title:
                title = parsed.title
            fresh = [title_id for title_id in parsed.ids if title_id not in seen]
            seen.update(fresh)
            ids.extend(fresh)
            if not fresh:
                break
            if len(parsed.ids) < self._settings.list_full_page_size:
                break

        source = ListSource(
            title=title or f"IMDb List {list_id}",
            ids=ids,
            fetched=bool(ids),
        )
        if ids:
            self._cache.set(cache_key, source)
        else:
            logger.warning("No titles could be scraped for list %s", list_id)
        return source

    async def _fetch_page(self, list_id: str, page: int) -> ParsedPage | None:
        def _attempt(strategy: PageStrategy) -> Callable[[], Awaitable[ParsedPage | None]]:
            async def _run() -> ParsedPage | None:
                html = await self._get_html(strategy.build_url(list_id, page))
                if not html:
                    return None
                parsed = parse_list_html(html)
                if not parsed.ids:
                    logger.debug(
                        "Strategy %s found no titles on page %s of %s",
                        strategy.name,
                        page,
                        list_id,
                    )
                    return None
                return parsed

            return _run

        return await first_success(_attempt(strategy) for strategy in self._strategies)

    async def _get_html(self, url: str) -> str | None:
        try:
            response = await self._client.get(
                url, headers=BROWSER_HEADERS, follow_redirects=True
            )
        except httpx.HTTPError as exc:
            logger.warning("List page request to %s failed: %s", url, exc)
            return None
        if response.status_code >= 400:
            logger.info("List page %s answered %s", url, response.status_code)
            return None
        return response.text

    def forget(self, list_id: str) -> None:
        """Drop the cached scrape of ``list_id`` so the next fetch is fresh."""

        self._cache.delete(f"ls:{list_id}")

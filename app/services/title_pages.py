"""Title detail page probing for episode parents and title-type labels."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import httpx
from bs4 import BeautifulSoup

from ..cache import LRUCache, TTLCache
from ..config import Settings
from ..utils import normalize_title_id
from .list_source import BROWSER_HEADERS

logger = logging.getLogger(__name__)

_TITLE_LINK_RE = re.compile(r"/title/(tt\d+)/", re.IGNORECASE)
_ID_RE = re.compile(r"tt\d+", re.IGNORECASE)

_JSON_LD_TYPES = {
    "movie": "movie",
    "tvseries": "tv series",
    "tvminiseries": "tv mini series",
    "tvepisode": "tv episode",
    "episode": "tv episode",
    "videogame": "video game",
    "musicvideoobject": "music video",
    "podcastseries": "podcast series",
    "podcastepisode": "podcast episode",
}

# Visible type labels, keyed by their lowercased, dash-free spelling.
_PAGE_LABELS = {
    "tv mini series": "tv mini series",
    "tv miniseries": "tv mini series",
    "tv series": "tv series",
    "tv movie": "tv movie",
    "tv special": "tv special",
    "tv short": "tv short",
    "tv episode": "tv episode",
    "episode": "episode",
    "short": "short",
    "music video": "music video",
    "video game": "video game",
    "podcast series": "podcast series",
    "podcast episode": "podcast episode",
    "video": "video",
}

ParentStrategy = Callable[[BeautifulSoup, str], "str | None"]


@dataclass(slots=True)
class TitleProbe:
    """What a title detail page reveals about a title."""

    parent_id: str | None = None
    label: str | None = None


def parse_page(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def json_ld_blocks(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """Return every JSON-LD object embedded in the page; bad blocks are skipped."""

    blocks: list[dict[str, Any]] = []
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.get_text().strip()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except ValueError:
            continue
        candidates = parsed if isinstance(parsed, list) else [parsed]
        blocks.extend(item for item in candidates if isinstance(item, dict))
    return blocks


def _reference_id(node: Any) -> str | None:
    if not isinstance(node, dict):
        return None
    for key in ("@id", "url"):
        value = node.get(key)
        if isinstance(value, str):
            match = _ID_RE.search(value)
            if match:
                return match.group(0).lower()
    return None


def parent_from_json_ld(soup: BeautifulSoup, title_id: str) -> str | None:
    for block in json_ld_blocks(soup):
        kind = str(block.get("@type") or "").lower()
        if kind not in {"tvepisode", "episode"}:
            continue
        season = block.get("partOfSeason")
        for node in (
            block.get("partOfSeries"),
            season.get("partOfSeries") if isinstance(season, dict) else None,
            block.get("isPartOf"),
        ):
            parent = _reference_id(node)
            if parent and parent != title_id:
                return parent
    return None


def parent_from_attribute(soup: BeautifulSoup, title_id: str) -> str | None:
    for node in soup.select("[data-parent-tconst]"):
        candidate = normalize_title_id(node.get("data-parent-tconst"))
        if candidate and candidate != title_id:
            return candidate
    return None


def parent_from_link(soup: BeautifulSoup, title_id: str) -> str | None:
    for link in soup.find_all("a", href=True):
        match = _TITLE_LINK_RE.search(link["href"])
        if match and match.group(1).lower() != title_id:
            return match.group(1).lower()
    return None


PARENT_STRATEGIES: tuple[ParentStrategy, ...] = (
    parent_from_json_ld,
    parent_from_attribute,
    parent_from_link,
)


def find_parent(
    soup: BeautifulSoup,
    title_id: str,
    strategies: Sequence[ParentStrategy] = PARENT_STRATEGIES,
) -> str | None:
    """Return the parent series id using the first strategy that finds one."""

    return next(
        (parent for parent in (strategy(soup, title_id) for strategy in strategies) if parent),
        None,
    )


def find_label(soup: BeautifulSoup) -> str | None:
    """Return a lowercased title-type label such as ``"tv series"``."""

    for block in json_ld_blocks(soup):
        kind = str(block.get("@type") or "").strip().lower()
        if kind in _JSON_LD_TYPES:
            return _JSON_LD_TYPES[kind]
        if "miniseries" in kind:
            return "tv mini series"
    for text in soup.stripped_strings:
        key = " ".join(text.lower().replace("-", " ").split())
        if key in _PAGE_LABELS:
            return _PAGE_LABELS[key]
    return None


def is_episode_label(label: str | None) -> bool:
    return bool(label) and "episode" in label and "podcast" not in label


class TitlePageClient:
    """Fetches title detail pages and extracts classification hints."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        parent_cache: LRUCache[str] | None = None,
        label_cache: TTLCache | None = None,
    ) -> None:
        self._base_url = str(settings.list_site_url).rstrip("/")
        self._client = http_client
        self._parents: LRUCache[str] = parent_cache if parent_cache is not None else LRUCache(
            max_size=settings.episode_parent_max,
            ttl=settings.episode_parent_ttl_seconds,
        )
        self._labels = label_cache if label_cache is not None else TTLCache(
            default_ttl=settings.cache_ttl_seconds
        )

    async def probe(self, title_id: str) -> TitleProbe:
        """Fetch the detail page once and extract the parent id and label.

        A known episode parent is served from the bounded LRU without a fetch.
        """

        normalized = normalize_title_id(title_id)
        if normalized is None:
            return TitleProbe()

        parent = self._parents.get(normalized)
        if parent:
            return TitleProbe(parent_id=parent, label="tv episode")

        cached = self._labels.get(f"probe:{normalized}")
        if isinstance(cached, TitleProbe):
            return cached

        html = await self._fetch_html(normalized)
        if html is None:
            return TitleProbe()

        soup = parse_page(html)
        label = find_label(soup)
        parent = find_parent(soup, normalized) if label is None or is_episode_label(label) else None
        result = TitleProbe(parent_id=parent, label=label)
        if parent:
            self._parents.set(normalized, parent)
        else:
            self._labels.set(f"probe:{normalized}", result)
        return result

    async def _fetch_html(self, title_id: str) -> str | None:
        url = f"{self._base_url}/title/{title_id}/"
        try:
            response = await self._client.get(
                url, headers=BROWSER_HEADERS, follow_redirects=True
            )
        except httpx.HTTPError as exc:
            logger.warning("Title page request for %s failed: %s", title_id, exc)
            return None
        if response.status_code >= 400:
            logger.info("Title page for %s answered %s", title_id, response.status_code)
            return None
        return response.text


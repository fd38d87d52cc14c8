"""Tests for title detail page probing."""

from __future__ import annotations

import json

import httpx
import pytest

from app.cache import LRUCache
from app.config import Settings
from app.services.title_pages import (
    TitlePageClient,
    find_label,
    find_parent,
    parent_from_attribute,
    parent_from_link,
    parse_page,
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def _ld(payload: dict) -> str:
    return f'<script type="application/ld+json">{json.dumps(payload)}</script>'


def test_find_parent_reads_json_ld_series_reference() -> None:
    html = _ld(
        {
            "@type": "TVEpisode",
            "partOfSeries": {"@type": "TVSeries", "url": "/title/tt0903747/"},
        }
    ) + '<div data-parent-tconst="tt9999999"></div>'

    assert find_parent(parse_page(html), "tt0959621") == "tt0903747"


def test_find_parent_reads_nested_season_reference() -> None:
    html = _ld(
        {
            "@type": "Episode",
            "partOfSeason": {"partOfSeries": {"@id": "https://www.imdb.com/title/tt0944947/"}},
        }
    )

    assert find_parent(parse_page(html), "tt1480055") == "tt0944947"


def test_find_parent_falls_back_to_attribute_then_link() -> None:
    attribute_html = '<div data-parent-tconst="tt0903747"></div><a href="/title/tt1111111/">x</a>'
    link_html = '<a href="/title/tt0959621/">self</a><a href="/title/tt0903747/">show</a>'

    assert find_parent(parse_page(attribute_html), "tt0959621") == "tt0903747"
    assert parent_from_attribute(parse_page(link_html), "tt0959621") is None
    assert parent_from_link(parse_page(link_html), "tt0959621") == "tt0903747"


def test_broken_json_ld_is_ignored() -> None:
    html = '<script type="application/ld+json">{not json</script><span>TV Series</span>'

    assert find_label(parse_page(html)) == "tv series"


def test_find_label_prefers_json_ld_type() -> None:
    assert find_label(parse_page(_ld({"@type": "TVMiniSeries"}))) == "tv mini series"
    assert find_label(parse_page(_ld({"@type": "Movie"}))) == "movie"
    assert find_label(parse_page("<li>Podcast Episode</li>")) == "podcast episode"
    assert find_label(parse_page("<li>Video Game</li>")) == "video game"
    assert find_label(parse_page("<span class=\"meta\">TV Mini-Series</span>")) == "tv mini series"
    assert find_label(parse_page("<p>A short story about video</p>")) is None


@pytest.mark.anyio("asyncio")
async def test_probe_caches_episode_parents() -> None:
    """A resolved parent should be served from the LRU on the next probe."""

    calls = 0
    html = _ld({"@type": "TVEpisode", "partOfSeries": {"url": "/title/tt0903747/"}})

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        assert request.url.path == "/title/tt0959621/"
        return httpx.Response(200, text=html)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        parents: LRUCache[str] = LRUCache(max_size=10, ttl=60)
        client = TitlePageClient(Settings(_env_file=None), http_client, parent_cache=parents)
        first = await client.probe("tt0959621")
        second = await client.probe("tt0959621")

    assert first.parent_id == "tt0903747"
    assert first.label == "tv episode"
    assert second.parent_id == "tt0903747"
    assert parents.get("tt0959621") == "tt0903747"
    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_probe_returns_empty_result_on_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        client = TitlePageClient(Settings(_env_file=None), http_client)
        probe = await client.probe("tt0000001")

    assert probe.parent_id is None
    assert probe.label is None

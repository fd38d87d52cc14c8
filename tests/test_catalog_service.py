from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from app.config import Settings
from app.database import Database
from app.db_models import ListReport
from app.models import ListPatch
from app.services.catalog_service import CatalogService
from app.services.classifier import TypeClassifier
from app.services.list_source import ListSource, ListSourceClient
from app.services.metadata_addon import MetadataAddonClient, MetadataRecord
from app.services.query import CatalogExtras
from app.services.title_pages import TitlePageClient, TitleProbe

LIST_ID = "ls4103816671"
UID = "user1"

RECORDS = {
    ("movie", "tt0000001"): {"id": "tt0000001", "name": "Only Movie", "genres": ["Comedy"]},
    ("series", "tt0000002"): {"id": "tt0000002", "name": "Only Series", "genres": ["Drama"]},
    ("movie", "tt0000003"): {"id": "tt0000003", "name": "Both Movie"},
    ("series", "tt0000003"): {
        "id": "tt0000003",
        "name": "Both Series",
        "genres": ["Sci-Fi & Fantasy"],
    },
    ("series", "tt0903747"): {"id": "tt0903747", "name": "Parent Show", "genres": ["Crime"]},
    ("movie", "tt0000004"): {"id": "tt0000004", "name": "Untagged Movie"},
}


class StubListSource(ListSourceClient):
    """Serves canned list pages without touching the network."""

    def __init__(self, lists: dict[str, ListSource]) -> None:
        # Deliberately skip super().__init__ to avoid touching external systems.
        self.lists = lists
        self.fetches = 0

    async def fetch_list(self, list_id):  # type: ignore[override]
        self.fetches += 1
        return self.lists.get(list_id, ListSource(title=f"IMDb List {list_id}", ids=[], fetched=False))

    def forget(self, list_id):  # type: ignore[override]
        return None


class StubMetadataClient(MetadataAddonClient):
    def __init__(self, records) -> None:
        self.records = records

    async def get_meta(self, bucket, title_id):  # type: ignore[override]
        payload = self.records.get((bucket, title_id))
        if payload is None:
            return None
        return MetadataRecord(id=title_id, type=bucket, name=payload["name"], payload=payload)


class StubTitlePages(TitlePageClient):
    def __init__(self, probes) -> None:
        self.probes = probes

    async def probe(self, title_id):  # type: ignore[override]
        return self.probes.get(title_id, TitleProbe())


def _build_service(
    database: Database,
    ids: list[str],
    service_class: type[CatalogService] = CatalogService,
) -> tuple[CatalogService, StubListSource]:
    settings = Settings(_env_file=None)
    list_source = StubListSource({LIST_ID: ListSource(title="Split Me", ids=ids)})
    classifier = TypeClassifier(
        StubMetadataClient(RECORDS),
        StubTitlePages({"tt0959621": TitleProbe(parent_id="tt0903747", label="tv episode")}),
    )
    service = service_class(settings, list_source, classifier, database.session_factory)
    return service, list_source


async def _database(tmp_path, name: str) -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / name}")
    await database.create_all()
    return database


async def _drain(service: CatalogService) -> None:
    jobs = list(service._refresh_jobs.values())
    if jobs:
        await asyncio.gather(*jobs)


def _catalog_id(kind: str) -> str:
    return f"imdb-{UID}-{LIST_ID}-{kind}"


def test_adding_list_extracts_id_and_persists_split(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "add.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000002", "tt0000003"])

        entry = await service.add_list(UID, "https://example.com/list/ls4103816671/?foo=bar")
        await _drain(service)

        assert entry.id == LIST_ID
        assert [item.id for item in await service.get_lists(UID)] == [LIST_ID]
        movies = await service.load_items(UID, LIST_ID, "movie")
        series = await service.load_items(UID, LIST_ID, "series")
        assert [item.id for item in movies] == ["tt0000001"]
        assert [item.id for item in series] == ["tt0000002", "tt0000003"]

        await service.stop()
        await database.dispose()

    asyncio.run(runner())


def test_adding_malformed_list_raises_value_error(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "bad.db")
        service, _ = _build_service(database, [])

        with pytest.raises(ValueError, match="Invalid IMDb list id or URL"):
            await service.add_list(UID, "https://www.imdb.com/chart/top")

        await database.dispose()

    asyncio.run(runner())


def test_snapshot_is_preferred_over_fresh_scrapes(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "snapshot.db")
        service, list_source = _build_service(database, ["tt0000001"])
        await service.refresh_list(UID, LIST_ID)

        list_source.lists[LIST_ID] = ListSource(title="Changed", ids=["tt0000002"])
        fetches = list_source.fetches

        movies = await service.load_items(UID, LIST_ID, "movie")

        assert [item.id for item in movies] == ["tt0000001"]
        assert list_source.fetches == fetches
        await database.dispose()

    asyncio.run(runner())


def test_failed_refresh_keeps_previous_snapshot(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "keep.db")
        service, list_source = _build_service(database, ["tt0000001"])
        await service.refresh_list(UID, LIST_ID)

        list_source.lists.clear()
        report = await service.refresh_list(UID, LIST_ID)

        assert report["moviesCount"] == 1
        movies = await service.load_items(UID, LIST_ID, "movie")
        assert [item.id for item in movies] == ["tt0000001"]
        await database.dispose()

    asyncio.run(runner())


def test_load_items_classifies_on_demand_without_snapshot(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "ondemand.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000002"])

        series = await service.load_items(UID, LIST_ID, "series")
        assert [item.id for item in series] == ["tt0000002"]
        assert f"{UID}:{LIST_ID}" in service._refresh_jobs

        await _drain(service)
        assert await service.type_report(UID, LIST_ID) is not None
        await database.dispose()

    asyncio.run(runner())


def test_home_only_catalog_serves_only_top_view(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "home.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000002", "tt0000003"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)
        await service.update_list(
            UID,
            LIST_ID,
            ListPatch.model_validate({"visibility": {"movie": {"discover": False, "home": True}}}),
        )

        filtered = await service.get_catalog_payload(
            "movie", _catalog_id("movies"), CatalogExtras(genre="Comedy")
        )
        top = await service.get_catalog_payload("movie", _catalog_id("movies"), CatalogExtras())

        assert filtered == {"metas": []}
        assert [meta["id"] for meta in top["metas"]] == ["tt0000001"]
        await database.dispose()

    asyncio.run(runner())


def test_genre_filter_matches_compound_series_genres(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "genre.db")
        service, _ = _build_service(database, ["tt0000002", "tt0000003"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        payload = await service.get_catalog_payload(
            "series", _catalog_id("series"), CatalogExtras(genre="Fantasy")
        )

        assert [meta["id"] for meta in payload["metas"]] == ["tt0000003"]
        assert payload["metas"][0]["type"] == "series"
        await database.dispose()

    asyncio.run(runner())


def test_unknown_or_disabled_catalogs_are_empty(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "empty.db")
        service, _ = _build_service(database, ["tt0000001"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        unknown = await service.get_catalog_payload(
            "movie", "imdb-nobody-ls0000000001-movies", CatalogExtras()
        )
        mismatched = await service.get_catalog_payload(
            "series", _catalog_id("movies"), CatalogExtras()
        )
        await service.update_list(
            UID,
            LIST_ID,
            ListPatch.model_validate({"visibility": {"movie": {"discover": False, "home": False}}}),
        )
        disabled = await service.get_catalog_payload(
            "movie", _catalog_id("movies"), CatalogExtras()
        )

        assert unknown == mismatched == disabled == {"metas": []}
        await database.dispose()

    asyncio.run(runner())


def test_default_sort_applies_to_catalog_requests(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "sort.db")
        service, _ = _build_service(database, ["tt0000002", "tt0000003"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)
        await service.update_list(
            UID, LIST_ID, ListPatch.model_validate({"defaultSort": {"key": "added", "order": "desc"}})
        )

        default = await service.get_catalog_payload("series", _catalog_id("series"), CatalogExtras())
        explicit = await service.get_catalog_payload(
            "series", _catalog_id("series"), CatalogExtras(order="asc")
        )

        assert [meta["id"] for meta in default["metas"]] == ["tt0000003", "tt0000002"]
        assert [meta["id"] for meta in explicit["metas"]] == ["tt0000002", "tt0000003"]
        await database.dispose()

    asyncio.run(runner())


def test_stats_are_monotonic(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "stats.db")
        service, list_source = _build_service(database, ["tt0000001"])

        service.bump_stats(LIST_ID, "series", 5)
        service.bump_stats(LIST_ID, "series", 2)

        assert service.stats_for(LIST_ID).get("series") == 5
        assert await service.has_type(UID, LIST_ID, "series") is True
        assert list_source.fetches == 0
        await database.dispose()

    asyncio.run(runner())


def test_has_type_samples_raw_ids_without_snapshot(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "sample.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000009"])

        assert await service.has_type(UID, LIST_ID, "movie") is True
        assert await service.has_type(UID, LIST_ID, "series") is False
        assert service.stats_for(LIST_ID).get("series") == 0
        await database.dispose()

    asyncio.run(runner())


def test_manifest_lists_visible_catalogs_with_genre_options(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "manifest.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000002", "tt0000003"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)
        await service.update_list(
            UID,
            LIST_ID,
            ListPatch.model_validate(
                {"name": "Mixed", "visibility": {"series": {"home": True}}}
            ),
        )

        catalogs = await service.list_manifest_catalogs(UID)

        by_type = {catalog["type"]: catalog for catalog in catalogs}
        assert by_type["movie"]["id"] == _catalog_id("movies")
        assert by_type["movie"]["name"] == "Mixed (Movies)"
        assert by_type["movie"]["genres"] == ["Top", "Comedy"]
        movie_genre = next(e for e in by_type["movie"]["extra"] if e["name"] == "genre")
        assert movie_genre["isRequired"] is True
        series_genre = next(e for e in by_type["series"]["extra"] if e["name"] == "genre")
        assert series_genre["options"] == ["Top", "Drama", "Fantasy", "Sci-Fi"]
        assert series_genre["isRequired"] is False
        await database.dispose()

    asyncio.run(runner())


def test_manifest_skips_types_without_items(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "skip.db")
        service, _ = _build_service(database, ["tt0000001"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        catalogs = await service.list_manifest_catalogs(UID)

        assert [catalog["type"] for catalog in catalogs] == ["movie"]
        assert catalogs[0]["name"] == "Split Me (Movies)"
        await database.dispose()

    asyncio.run(runner())


def test_type_report_records_mapped_episodes(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "report.db")
        service, _ = _build_service(database, ["tt0959621", "tt0000001", "tt0000404"])

        report = await service.refresh_list(UID, LIST_ID)

        assert report["title"] == "Split Me"
        assert report["moviesCount"] == 1
        assert report["seriesCount"] == 1
        assert report["allIdsCount"] == 3
        assert report["unknownCount"] == 1
        assert report["mappedEpisodes"] == [{"episode": "tt0959621", "series": "tt0903747"}]
        assert report["updatedAt"]
        await database.dispose()

    asyncio.run(runner())


def test_update_and_remove_unknown_lists_raise_key_error(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "missing.db")
        service, _ = _build_service(database, [])

        with pytest.raises(KeyError):
            await service.update_list(UID, LIST_ID, ListPatch())
        with pytest.raises(KeyError):
            await service.remove_list(UID, LIST_ID)
        await database.dispose()

    asyncio.run(runner())


def test_remove_list_drops_snapshots(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "remove.db")
        service, _ = _build_service(database, ["tt0000001"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        await service.remove_list(UID, LIST_ID)

        assert await service.get_lists(UID) == []
        assert await service.type_report(UID, LIST_ID) is None
        await database.dispose()

    asyncio.run(runner())


def test_replace_lists_normalises_legacy_entries(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "replace.db")
        service, _ = _build_service(database, [])

        entries = await service.replace_lists(
            UID,
            [
                "LS0000000123",
                {"lsid": "ls0000000456", "showIn": "home", "title": "Legacy"},
                {"id": "https://www.imdb.com/list/ls0000000789/"},
                {"id": "not-a-list"},
                "ls0000000123",
                17,
            ],
        )
        await service.stop()

        assert [entry.id for entry in entries] == ["ls0000000123", "ls0000000456", "ls0000000789"]
        stored = await service.get_lists(UID)
        assert [entry.id for entry in stored] == ["ls0000000123", "ls0000000456", "ls0000000789"]
        assert stored[1].name == "Legacy"
        assert stored[1].visibility_for("movie").home_only
        await database.dispose()

    asyncio.run(runner())


def test_discover_only_catalog_offers_unfiltered_top_option(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "discover.db")
        service, _ = _build_service(database, ["tt0000001", "tt0000004"])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        catalogs = await service.list_manifest_catalogs(UID)
        genre_extra = next(e for e in catalogs[0]["extra"] if e["name"] == "genre")
        top = await service.get_catalog_payload(
            "movie", _catalog_id("movies"), CatalogExtras(genre="Top")
        )

        assert genre_extra == {"name": "genre", "options": ["Top", "Comedy"], "isRequired": True}
        assert [meta["id"] for meta in top["metas"]] == ["tt0000001", "tt0000004"]
        await database.dispose()

    asyncio.run(runner())


def test_unscrapable_list_is_not_refetched_every_poll(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "dead.db")
        service, list_source = _build_service(database, [])
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        for _ in range(3):
            await service._refresh_due_lists()
            await _drain(service)

        assert list_source.fetches == 1
        report = await service.type_report(UID, LIST_ID)
        assert report is not None
        assert report["allIdsCount"] == 0
        assert report["updatedAt"] is None
        assert report["checkedAt"] is not None

        async with database.session() as session:
            await session.execute(
                update(ListReport).values(checked_at=datetime.utcnow() - timedelta(days=2))
            )
            await session.commit()
        await service._refresh_due_lists()
        await _drain(service)

        assert list_source.fetches == 2
        await database.dispose()

    asyncio.run(runner())


class RacingCatalogService(CatalogService):
    """Misses an existing registration once, as a concurrent add would."""

    hide_next_lookup = False

    async def _find_row(self, session, uid, list_id):  # type: ignore[override]
        if self.hide_next_lookup:
            self.hide_next_lookup = False
            return None
        return await CatalogService._find_row(session, uid, list_id)


def test_duplicate_add_race_returns_existing_entry(tmp_path) -> None:
    async def runner() -> None:
        database = await _database(tmp_path, "race.db")
        service, _ = _build_service(database, ["tt0000001"], RacingCatalogService)
        await service.add_list(UID, LIST_ID)
        await _drain(service)

        service.hide_next_lookup = True
        entry = await service.add_list(UID, LIST_ID)
        await _drain(service)

        assert entry.id == LIST_ID
        assert [item.id for item in await service.get_lists(UID)] == [LIST_ID]
        await database.dispose()

    asyncio.run(runner())

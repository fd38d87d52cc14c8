"""Service orchestrating list scraping, classification and catalog serving."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..cache import TTLCache
from ..config import Settings
from ..db_models import CatalogSnapshot, ListReport, User, UserList
from ..genres import TOP_GENRE, observed_taxonomy
from ..models import (
    CONTENT_TYPES,
    SORT_KEYS,
    SORT_ORDERS,
    CatalogRef,
    ClassifiedItem,
    ContentType,
    ListPatch,
    UserListEntry,
)
from ..utils import extract_list_id
from .classifier import ClassificationResult, TypeClassifier
from .list_source import ListSource, ListSourceClient
from .query import CatalogExtras, is_servable, query_items

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TypeStats:
    """Known item counts per bucket of a list; ``None`` means not probed yet."""

    movie: int | None = None
    series: int | None = None

    def get(self, content_type: str) -> int | None:
        return self.series if content_type == "series" else self.movie

    def bumped(self, content_type: str, count: int) -> "TypeStats":
        current = self.get(content_type)
        value = max(current or 0, count)
        if content_type == "series":
            return TypeStats(movie=self.movie, series=value)
        return TypeStats(movie=value, series=self.series)


class CatalogService:
    """Coordinates list ingestion, durable snapshots and catalog queries."""

    def __init__(
        self,
        settings: Settings,
        list_source: ListSourceClient,
        classifier: TypeClassifier,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cache: TTLCache | None = None,
    ):
        self._settings = settings
        self._list_source = list_source
        self._classifier = classifier
        self._session_factory = session_factory
        self._cache = cache if cache is not None else TTLCache(
            default_ttl=settings.cache_ttl_seconds,
            sweep_threshold=settings.cache_sweep_threshold,
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._refresh_task: asyncio.Task[None] | None = None
        self._refresh_poll_seconds = 60
        self._refresh_jobs: dict[str, asyncio.Task[None]] = {}

    async def start(self) -> None:
        """Launch the background refresh loop."""

        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop the refresh loop and any in-flight background refreshes."""

        jobs = list(self._refresh_jobs.values())
        for job in jobs:
            job.cancel()
        for job in jobs:
            with suppress(asyncio.CancelledError):
                await job
        self._refresh_jobs.clear()
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._refresh_task
        self._refresh_task = None

    # ------------------------------------------------------------------
    # User list registry

    async def get_lists(self, uid: str) -> list[UserListEntry]:
        async with self._session_factory() as session:
            rows = await self._list_rows(session, uid)
        return [entry for entry in map(self._row_to_entry, rows) if entry is not None]

    async def get_list(self, uid: str, list_id: str) -> UserListEntry | None:
        async with self._session_factory() as session:
            row = await self._find_row(session, uid, list_id)
            return self._row_to_entry(row) if row is not None else None

    async def add_list(self, uid: str, source: str | None) -> UserListEntry:
        """Register a list from a raw URL or bare id and warm it in the background.

        Raises ``ValueError`` for input that carries no list identifier.
        """

        list_id = extract_list_id(source)
        async with self._session_factory() as session:
            await self._ensure_user(session, uid)
            row = await self._find_row(session, uid, list_id)
            if row is None:
                position = await session.scalar(
                    select(func.count(UserList.id)).where(UserList.uid == uid)
                )
                row = UserList(uid=uid, list_id=list_id, position=int(position or 0))
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent add registered the same list first.
                    await session.rollback()
                    row = await self._find_row(session, uid, list_id)
                else:
                    logger.info("User %s added list %s", uid, list_id)
            entry = self._row_to_entry(row) if row is not None else None
        self._schedule_refresh(uid, list_id)
        return entry or UserListEntry(id=list_id)

    async def replace_lists(self, uid: str, raw_entries: Iterable[object]) -> list[UserListEntry]:
        """Replace a user's registry from stored or legacy list references."""

        entries: list[UserListEntry] = []
        seen: set[str] = set()
        for raw in raw_entries:
            entry = UserListEntry.coerce(raw)
            if entry is None:
                continue
            try:
                list_id = extract_list_id(entry.id)
            except ValueError:
                logger.warning("Skipping malformed list reference %r for %s", raw, uid)
                continue
            if list_id in seen:
                continue
            seen.add(list_id)
            entries.append(entry.model_copy(update={"id": list_id}))

        async with self._session_factory() as session:
            await self._ensure_user(session, uid)
            await session.execute(delete(UserList).where(UserList.uid == uid))
            for position, entry in enumerate(entries):
                row = UserList(uid=uid, list_id=entry.id, position=position)
                self._apply_entry(row, entry)
                session.add(row)
            await session.commit()
        for entry in entries:
            self._schedule_refresh(uid, entry.id)
        return entries

    async def update_list(self, uid: str, list_id: str, patch: ListPatch) -> UserListEntry:
        async with self._session_factory() as session:
            row = await self._find_row(session, uid, list_id)
            entry = self._row_to_entry(row) if row is not None else None
            if row is None or entry is None:
                raise KeyError(f"List {list_id} is not registered for {uid}")
            updated = patch.apply(entry)
            self._apply_entry(row, updated)
            await session.commit()
        return updated

    async def remove_list(self, uid: str, list_id: str) -> None:
        async with self._session_factory() as session:
            row = await self._find_row(session, uid, list_id)
            if row is None:
                raise KeyError(f"List {list_id} is not registered for {uid}")
            await session.delete(row)
            await session.execute(
                delete(CatalogSnapshot).where(
                    CatalogSnapshot.uid == uid, CatalogSnapshot.list_id == list_id
                )
            )
            await session.execute(
                delete(ListReport).where(
                    ListReport.uid == uid, ListReport.list_id == list_id
                )
            )
            await session.commit()
        logger.info("User %s removed list %s", uid, list_id)

    # ------------------------------------------------------------------
    # Refresh pipeline

    async def refresh_list(self, uid: str, list_id: str) -> dict[str, Any]:
        """Fetch, classify and persist a list; return its type report."""

        lock = self._locks.setdefault(f"{uid}:{list_id}", asyncio.Lock())
        async with lock:
            self._list_source.forget(list_id)
            source = await self._list_source.fetch_list(list_id)
            if not source.ids:
                logger.warning(
                    "Keeping previous snapshot for %s/%s: list yielded no titles",
                    uid,
                    list_id,
                )
                await self._mark_checked(uid, list_id, source)
            else:
                result = await self._classifier.split(source.ids)
                await self._store_snapshot(uid, list_id, source, result)
                self._after_refresh(list_id, result)
                logger.info(
                    "Refreshed %s/%s: %d movies, %d series, %d excluded, %d mapped episodes",
                    uid,
                    list_id,
                    len(result.movies),
                    len(result.series),
                    len(result.excluded),
                    len(result.episode_map),
                )
        return await self.type_report(uid, list_id) or {"uid": uid, "lsid": list_id}

    def _schedule_refresh(self, uid: str, list_id: str) -> None:
        key = f"{uid}:{list_id}"
        existing = self._refresh_jobs.get(key)
        if existing and not existing.done():
            return

        async def _runner() -> None:
            try:
                await self.refresh_list(uid, list_id)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background refresh for %s failed: %s", key, exc)
            finally:
                self._refresh_jobs.pop(key, None)

        self._refresh_jobs[key] = asyncio.create_task(_runner())

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_poll_seconds)
            try:
                self._cache.sweep()
                await self._refresh_due_lists()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled refresh failed: %s", exc)

    async def _refresh_due_lists(self) -> None:
        cutoff = datetime.utcnow() - timedelta(
            seconds=self._settings.snapshot_refresh_seconds
        )
        async with self._session_factory() as session:
            stmt = (
                select(UserList.uid, UserList.list_id)
                .outerjoin(
                    ListReport,
                    (ListReport.uid == UserList.uid)
                    & (ListReport.list_id == UserList.list_id),
                )
                .where(
                    (ListReport.id.is_(None))
                    | (func.coalesce(ListReport.checked_at, ListReport.updated_at) <= cutoff)
                )
            )
            due = (await session.execute(stmt)).all()
        for uid, list_id in due:
            self._schedule_refresh(uid, list_id)

    async def _store_snapshot(
        self,
        uid: str,
        list_id: str,
        source: ListSource,
        result: ClassificationResult,
    ) -> None:
        now = datetime.utcnow()
        async with self._session_factory() as session:
            await session.execute(
                delete(CatalogSnapshot).where(
                    CatalogSnapshot.uid == uid, CatalogSnapshot.list_id == list_id
                )
            )
            await session.execute(
                delete(ListReport).where(
                    ListReport.uid == uid, ListReport.list_id == list_id
                )
            )
            for content_type in CONTENT_TYPES:
                items = result.bucket(content_type)
                session.add(
                    CatalogSnapshot(
                        uid=uid,
                        list_id=list_id,
                        bucket=content_type,
                        items=[item.model_dump(mode="json") for item in items],
                        item_count=len(items),
                        generated_at=now,
                    )
                )
            session.add(
                ListReport(
                    uid=uid,
                    list_id=list_id,
                    title=source.title,
                    ids=list(source.ids),
                    movie_count=len(result.movies),
                    series_count=len(result.series),
                    excluded_count=len(result.excluded),
                    episode_map=result.episode_map,
                    updated_at=now,
                    checked_at=now,
                )
            )
            await session.commit()

    async def _mark_checked(self, uid: str, list_id: str, source: ListSource) -> None:
        """Record a fruitless scrape so the refresh loop waits before retrying."""

        now = datetime.utcnow()
        async with self._session_factory() as session:
            stmt = select(ListReport).where(
                ListReport.uid == uid, ListReport.list_id == list_id
            )
            report = (await session.execute(stmt)).scalar_one_or_none()
            if report is None:
                session.add(
                    ListReport(
                        uid=uid,
                        list_id=list_id,
                        title=source.title,
                        ids=[],
                        movie_count=0,
                        series_count=0,
                        excluded_count=0,
                        episode_map=[],
                        updated_at=None,
                        checked_at=now,
                    )
                )
            else:
                report.checked_at = now
            await session.commit()

    def _after_refresh(self, list_id: str, result: ClassificationResult) -> None:
        self._cache.delete(f"split:{list_id}")
        self._cache.delete_prefix(f"genres:{list_id}:")
        for content_type in CONTENT_TYPES:
            self.bump_stats(list_id, content_type, len(result.bucket(content_type)))

    # ------------------------------------------------------------------
    # Read path

    async def load_items(
        self, uid: str, list_id: str, content_type: ContentType
    ) -> list[ClassifiedItem]:
        """Return a bucket's items, preferring the durable snapshot.

        Without a snapshot the list is classified on demand; that result is
        kept in memory only and a background refresh persists it later.
        """

        snapshot = await self._load_snapshot(uid, list_id, content_type)
        if snapshot is not None:
            return snapshot

        cache_key = f"split:{list_id}"
        result = self._cache.get(cache_key)
        if not isinstance(result, ClassificationResult):
            source = await self._list_source.fetch_list(list_id)
            result = await self._classifier.split(source.ids)
            self._cache.set(cache_key, result)
            self._schedule_refresh(uid, list_id)
        return list(result.bucket(content_type))

    async def _load_snapshot(
        self, uid: str, list_id: str, content_type: str
    ) -> list[ClassifiedItem] | None:
        async with self._session_factory() as session:
            stmt = select(CatalogSnapshot).where(
                CatalogSnapshot.uid == uid,
                CatalogSnapshot.list_id == list_id,
                CatalogSnapshot.bucket == content_type,
            )
            record = (await session.execute(stmt)).scalar_one_or_none()
            if record is None:
                return None
            payload = list(record.items or [])
        items: list[ClassifiedItem] = []
        for raw in payload:
            try:
                items.append(ClassifiedItem.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "Stored item in %s/%s/%s is invalid: %s", uid, list_id, content_type, exc
                )
        return items

    async def _snapshot_counts(self, uid: str, list_id: str) -> dict[str, int] | None:
        async with self._session_factory() as session:
            stmt = select(CatalogSnapshot.bucket, CatalogSnapshot.item_count).where(
                CatalogSnapshot.uid == uid, CatalogSnapshot.list_id == list_id
            )
            rows = (await session.execute(stmt)).all()
        if not rows:
            return None
        return {bucket: int(count or 0) for bucket, count in rows}

    def stats_for(self, list_id: str) -> TypeStats:
        cached = self._cache.get(f"stats:{list_id}")
        return cached if isinstance(cached, TypeStats) else TypeStats()

    def bump_stats(self, list_id: str, content_type: str, count: int) -> TypeStats:
        """Raise the known count for a bucket; counts never decrease."""

        stats = self.stats_for(list_id).bumped(content_type, max(0, int(count)))
        self._cache.set(f"stats:{list_id}", stats, ttl=self._settings.stats_ttl_seconds)
        return stats

    async def has_type(self, uid: str, list_id: str, content_type: ContentType) -> bool:
        """Whether a list has any items of ``content_type``.

        Checks known stats, then the durable snapshot, then samples a prefix of
        the raw ids and stops at the first hit.
        """

        known = self.stats_for(list_id).get(content_type)
        if known is not None:
            return known > 0

        counts = await self._snapshot_counts(uid, list_id)
        if counts is not None:
            count = counts.get(content_type, 0)
        else:
            source = await self._list_source.fetch_list(list_id)
            found = await self._classifier.has_any(
                source.ids, content_type, sample=self._settings.has_type_sample
            )
            count = 1 if found else 0
        self.bump_stats(list_id, content_type, count)
        return count > 0

    async def list_genres(self, uid: str, list_id: str, content_type: ContentType) -> list[str]:
        """Taxonomy genres observed across the bucket, cached for hours."""

        cache_key = f"genres:{list_id}:{content_type}"
        cached = self._cache.get(cache_key)
        if isinstance(cached, list):
            return list(cached)
        items = await self.load_items(uid, list_id, content_type)
        genres = observed_taxonomy(item.genres for item in items)
        self._cache.set(cache_key, genres, ttl=self._settings.genres_ttl_seconds)
        return list(genres)

    async def list_manifest_catalogs(self, uid: str) -> list[dict[str, Any]]:
        """Return manifest catalog entries for every visible (list, type)."""

        entries = await self.get_lists(uid)
        titles = await self._report_titles(uid, [entry.id for entry in entries])
        catalogs: list[dict[str, Any]] = []
        for entry in entries:
            name = entry.name or titles.get(entry.id) or entry.display_name
            for content_type in CONTENT_TYPES:
                visibility = entry.visibility_for(content_type)
                if not visibility.enabled:
                    continue
                if not await self.has_type(uid, entry.id, content_type):
                    continue
                genres = await self.list_genres(uid, entry.id, content_type)
                catalogs.append(
                    self._manifest_entry(
                        CatalogRef(uid=uid, list_id=entry.id, content_type=content_type),
                        name=name,
                        genres=genres,
                        home_enabled=bool(visibility.home),
                    )
                )
        return catalogs

    def _manifest_entry(
        self,
        ref: CatalogRef,
        *,
        name: str,
        genres: Sequence[str],
        home_enabled: bool,
    ) -> dict[str, Any]:
        options = [TOP_GENRE, *genres]
        suffix = "Movies" if ref.content_type == "movie" else "Series"
        return {
            "type": ref.content_type,
            "id": ref.to_catalog_id(self._settings.catalog_prefix),
            "name": f"{name} ({suffix})",
            "genres": options,
            "extra": [
                {"name": "search", "isRequired": False},
                {"name": "skip", "isRequired": False},
                {"name": "limit", "isRequired": False},
                {"name": "sort", "options": list(SORT_KEYS), "isRequired": False},
                {"name": "order", "options": list(SORT_ORDERS), "isRequired": False},
                {"name": "genre", "options": options, "isRequired": not home_enabled},
            ],
        }

    async def get_catalog_payload(
        self,
        content_type: str,
        catalog_id: str,
        extras: CatalogExtras,
    ) -> dict[str, Any]:
        """Return one page of a catalog; unknown or gated catalogs are empty."""

        ref = CatalogRef.parse(catalog_id, prefix=self._settings.catalog_prefix)
        if ref is None or ref.content_type != content_type:
            return {"metas": []}
        entry = await self.get_list(ref.uid, ref.list_id)
        if entry is None:
            return {"metas": []}
        if not is_servable(entry.visibility_for(ref.content_type), extras):
            return {"metas": []}

        effective = extras.with_default_sort(entry.default_sort)
        items = await self.load_items(ref.uid, ref.list_id, ref.content_type)
        page = query_items(
            items,
            effective,
            limit_max=self._settings.catalog_limit_max,
            limit_default=self._settings.effective_limit_default,
        )
        if page:
            self.bump_stats(ref.list_id, ref.content_type, len(page))
        return {"metas": [item.to_meta_preview() for item in page]}

    # ------------------------------------------------------------------
    # Reports

    async def type_report(self, uid: str, list_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            stmt = select(ListReport).where(
                ListReport.uid == uid, ListReport.list_id == list_id
            )
            report = (await session.execute(stmt)).scalar_one_or_none()
            if report is None:
                return None
            return {
                "uid": uid,
                "lsid": list_id,
                "title": report.title,
                "moviesCount": report.movie_count,
                "seriesCount": report.series_count,
                "allIdsCount": len(report.ids or []),
                "unknownCount": report.excluded_count,
                "mappedEpisodes": list(report.episode_map or []),
                "updatedAt": report.updated_at.isoformat() if report.updated_at else None,
                "checkedAt": report.checked_at.isoformat() if report.checked_at else None,
            }

    async def _report_titles(self, uid: str, list_ids: Sequence[str]) -> dict[str, str]:
        if not list_ids:
            return {}
        async with self._session_factory() as session:
            stmt = select(ListReport.list_id, ListReport.title).where(
                ListReport.uid == uid, ListReport.list_id.in_(list_ids)
            )
            rows = (await session.execute(stmt)).all()
        return {list_id: title for list_id, title in rows if title}

    # ------------------------------------------------------------------
    # Row helpers

    @staticmethod
    async def _ensure_user(session: AsyncSession, uid: str) -> User:
        user = await session.get(User, uid)
        if user is None:
            user = User(uid=uid)
            session.add(user)
            await session.flush()
        return user

    @staticmethod
    async def _list_rows(session: AsyncSession, uid: str) -> list[UserList]:
        stmt = (
            select(UserList)
            .where(UserList.uid == uid)
            .order_by(UserList.position, UserList.id)
        )
        return list((await session.execute(stmt)).scalars().all())

    @staticmethod
    async def _find_row(session: AsyncSession, uid: str, list_id: str) -> UserList | None:
        stmt = select(UserList).where(
            UserList.uid == uid, UserList.list_id == list_id.lower()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _row_to_entry(row: UserList) -> UserListEntry | None:
        return UserListEntry.coerce(
            {
                "id": row.list_id,
                "name": row.name,
                "showIn": row.show_in,
                "visibility": row.visibility,
                "defaultSort": row.default_sort,
            }
        )

    @staticmethod
    def _apply_entry(row: UserList, entry: UserListEntry) -> None:
        row.name = entry.name
        row.show_in = entry.show_in
        row.visibility = (
            entry.visibility.model_dump(exclude_none=True) if entry.visibility else None
        )
        row.default_sort = (
            entry.default_sort.model_dump(exclude_none=True) if entry.default_sort else None
        )

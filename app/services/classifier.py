"""Movie/series classification of list titles with episode up-mapping."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Literal, Sequence

from ..models import ClassifiedItem, ContentType
from ..utils import normalize_title_id
from .metadata_addon import MetadataAddonClient, MetadataRecord
from .title_pages import TitlePageClient

logger = logging.getLogger(__name__)

LabelOutcome = Literal["movie", "series", "episode", "exclude", "unknown"]

# Checked in order; the first needle contained in the label decides.
LABEL_OUTCOMES: tuple[tuple[str, LabelOutcome], ...] = (
    ("video game", "exclude"),
    ("podcast", "exclude"),
    ("episode", "episode"),
    ("tv movie", "movie"),
    ("tv special", "movie"),
    ("short", "movie"),
    ("video", "movie"),
    ("movie", "movie"),
    ("mini series", "series"),
    ("miniseries", "series"),
    ("tv series", "series"),
)


def map_label(label: str | None, *, include_music_video: bool = False) -> LabelOutcome:
    """Map a title-type label onto a classification outcome."""

    if not label:
        return "unknown"
    lowered = " ".join(label.lower().replace("-", " ").split())
    if "music video" in lowered:
        return "movie" if include_music_video else "exclude"
    for needle, outcome in LABEL_OUTCOMES:
        if needle in lowered:
            return outcome
    return "unknown"


@dataclass(slots=True)
class Classification:
    """Decision for one raw list id."""

    title_id: str
    bucket: ContentType | None = None
    record: MetadataRecord | None = None
    parent_id: str | None = None
    reason: str = ""

    @property
    def committed_id(self) -> str:
        return self.parent_id or self.title_id

    @property
    def excluded(self) -> bool:
        return self.bucket is None or self.record is None


@dataclass(slots=True)
class ClassificationResult:
    """Ordered, deduplicated bucket contents for one list."""

    movies: list[ClassifiedItem] = field(default_factory=list)
    series: list[ClassifiedItem] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)
    episode_map: list[dict[str, str]] = field(default_factory=list)

    def bucket(self, content_type: str) -> list[ClassifiedItem]:
        return self.series if content_type == "series" else self.movies


class TypeClassifier:
    """Decides the bucket for list ids using metadata and title pages."""

    def __init__(
        self,
        metadata_client: MetadataAddonClient,
        title_pages: TitlePageClient,
        *,
        include_music_video: bool = False,
        concurrency: int = 6,
    ) -> None:
        self._metadata = metadata_client
        self._titles = title_pages
        self._include_music_video = include_music_video
        self._concurrency = max(1, min(int(concurrency), 8))

    async def classify(self, title_id: str) -> Classification:
        """Classify a single id; never raises for upstream failures."""

        normalized = normalize_title_id(title_id)
        if normalized is None:
            return Classification(title_id=str(title_id), reason="invalid id")

        movie, series = await asyncio.gather(
            self._metadata.get_meta("movie", normalized),
            self._metadata.get_meta("series", normalized),
        )
        # A series record always wins, even when movie metadata also exists.
        if series is not None:
            return Classification(normalized, "series", series, reason="series metadata")
        if movie is not None:
            return Classification(normalized, "movie", movie, reason="movie metadata")

        probe = await self._titles.probe(normalized)
        if probe.parent_id:
            mapped = await self._map_to_parent(normalized, probe.parent_id)
            if mapped is not None:
                return mapped

        outcome = map_label(probe.label, include_music_video=self._include_music_video)
        if outcome in ("movie", "series"):
            record = await self._metadata.get_meta(outcome, normalized)
            if record is not None:
                return Classification(normalized, outcome, record, reason=f"label {probe.label}")
            return Classification(normalized, reason=f"label {probe.label} without metadata")
        if outcome == "episode" and not probe.parent_id:
            return Classification(normalized, reason="episode without parent")
        return Classification(normalized, reason=f"label {probe.label or 'missing'}")

    async def _map_to_parent(self, title_id: str, parent_id: str) -> Classification | None:
        record = await self._metadata.get_meta("series", parent_id)
        if record is None:
            return None
        return Classification(
            title_id,
            "series",
            record,
            parent_id=parent_id,
            reason="episode of series",
        )

    async def classify_many(self, ids: Sequence[str]) -> list[Classification]:
        """Classify ``ids`` with a bounded pool, returning results in input order."""

        slots: list[Classification | None] = [None] * len(ids)
        cursor = 0

        async def _worker() -> None:
            nonlocal cursor
            while cursor < len(ids):
                index = cursor
                cursor += 1
                try:
                    slots[index] = await self.classify(ids[index])
                except Exception:  # pragma: no cover - clients swallow upstream errors
                    logger.exception("Classification of %s failed", ids[index])
                    slots[index] = Classification(ids[index], reason="error")

        workers = min(self._concurrency, len(ids))
        await asyncio.gather(*(_worker() for _ in range(workers)))
        return [slot or Classification(ids[i], reason="unclaimed") for i, slot in enumerate(slots)]

    async def split(self, ids: Sequence[str]) -> ClassificationResult:
        """Classify a list and partition it into movie and series buckets."""

        decisions = await self.classify_many(ids)
        return build_result(decisions)

    async def has_any(self, ids: Sequence[str], content_type: ContentType, *, sample: int) -> bool:
        """Classify a prefix of ``ids`` until one lands in ``content_type``."""

        candidates = list(ids[: max(0, sample)])
        cursor = 0
        found = False

        async def _worker() -> None:
            nonlocal cursor, found
            while not found and cursor < len(candidates):
                index = cursor
                cursor += 1
                decision = await self.classify(candidates[index])
                if decision.bucket == content_type and not decision.excluded:
                    found = True

        workers = min(self._concurrency, len(candidates))
        await asyncio.gather(*(_worker() for _ in range(workers)))
        return found


def build_result(decisions: Sequence[Classification]) -> ClassificationResult:
    """Turn ordered decisions into deduplicated, mutually exclusive buckets."""

    result = ClassificationResult()
    seen: dict[str, set[str]] = {"movie": set(), "series": set()}
    for position, decision in enumerate(decisions):
        if decision.excluded:
            result.excluded.append(decision.title_id)
            continue
        if decision.parent_id:
            result.episode_map.append(
                {"episode": decision.title_id, "series": decision.parent_id}
            )
        item = ClassifiedItem.from_metadata(
            decision.record.payload,
            bucket=decision.bucket,
            added_order=position,
            fallback_id=decision.committed_id,
        )
        if item.id in seen[decision.bucket]:
            continue
        seen[decision.bucket].add(item.id)
        result.bucket(decision.bucket).append(item)

    if seen["series"] & seen["movie"]:
        result.movies = [item for item in result.movies if item.id not in seen["series"]]
    return result

"""Search, genre filtering, sorting and pagination over classified items."""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, field_validator

from ..genres import is_unfiltered, matches_genre
from ..models import (
    ClassifiedItem,
    DefaultSort,
    SortKey,
    SortOrder,
    SurfaceVisibility,
    normalize_order,
    normalize_sort_key,
)
from ..utils import first_number

_ARTICLE_RE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)


class CatalogExtras(BaseModel):
    """Per-request catalog options from path segments and the query string."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    search: str | None = None
    genre: str | None = None
    sort: SortKey | None = None
    order: SortOrder | None = None
    skip: int = 0
    limit: int | None = None

    @field_validator("search", "genre", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("sort", mode="before")
    @classmethod
    def _parse_sort(cls, value: object) -> object:
        return normalize_sort_key(value)

    @field_validator("order", mode="before")
    @classmethod
    def _parse_order(cls, value: object) -> object:
        return normalize_order(value)

    @field_validator("skip", mode="before")
    @classmethod
    def _parse_skip(cls, value: object) -> int:
        try:
            number = int(str(value).strip())
        except ValueError:
            number = int(first_number(value))
        return max(number, 0)

    @field_validator("limit", mode="before")
    @classmethod
    def _parse_limit(cls, value: object) -> int | None:
        if value is None or value == "":
            return None
        number = int(first_number(value))
        return number if number > 0 else None

    @classmethod
    def from_sources(
        cls,
        path_extra: str | None = None,
        query_params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
    ) -> "CatalogExtras":
        """Merge ``genre=X&skip=20`` style path extras with query parameters.

        Query parameters win when both carry the same key.
        """

        merged: dict[str, Any] = {}
        if path_extra:
            raw = path_extra[:-5] if path_extra.endswith(".json") else path_extra
            for key, value in parse_qsl(raw.replace("/", "&"), keep_blank_values=True):
                merged[key] = value
        if query_params:
            pairs = query_params.items() if isinstance(query_params, Mapping) else query_params
            for key, value in pairs:
                merged[key] = value
        return cls.model_validate(merged)

    @property
    def is_filtered(self) -> bool:
        """Whether the request asks for a Discover-style filtered view."""

        return bool(self.search) or not is_unfiltered(self.genre)

    def with_default_sort(self, default_sort: DefaultSort | None) -> "CatalogExtras":
        if default_sort is None:
            return self
        updates: dict[str, Any] = {}
        if self.sort is None and default_sort.key:
            updates["sort"] = default_sort.key
        if self.order is None and default_sort.order:
            updates["order"] = default_sort.order
        return self.model_copy(update=updates) if updates else self


def is_servable(visibility: SurfaceVisibility, extras: CatalogExtras) -> bool:
    """Apply surface gating before the query pipeline runs.

    Disabled catalogs serve nothing; home-only catalogs serve only the
    unfiltered view.
    """

    if not visibility.enabled:
        return False
    if visibility.home_only and extras.is_filtered:
        return False
    return True


def name_sort_key(item: ClassifiedItem) -> tuple[str, str, str]:
    stripped = _ARTICLE_RE.sub("", item.name.strip()).lower()
    return stripped, item.name, item.id


def numeric_value(item: ClassifiedItem, key: str) -> float:
    if key == "year":
        return float(item.year or first_number(item.release_info))
    if key == "rating":
        return first_number(item.rating)
    if key == "runtime":
        return float(item.runtime_minutes or first_number(item.runtime))
    return 0.0


def sort_items(
    items: Sequence[ClassifiedItem], key: str | None, order: str | None
) -> list[ClassifiedItem]:
    descending = order == "desc"
    sort_key = key or "added"
    if sort_key == "added":
        ordered = sorted(items, key=lambda item: item.added_order)
        return list(reversed(ordered)) if descending else ordered
    # Ties stay ascending by name then id; only the primary key follows the order.
    tie_ordered = sorted(items, key=name_sort_key)
    if sort_key == "name":
        return sorted(
            tie_ordered, key=lambda item: name_sort_key(item)[0], reverse=descending
        )
    return sorted(
        tie_ordered,
        key=lambda item: numeric_value(item, sort_key),
        reverse=descending,
    )


def query_items(
    items: Sequence[ClassifiedItem],
    extras: CatalogExtras,
    *,
    limit_max: int = 80,
    limit_default: int = 50,
) -> list[ClassifiedItem]:
    """Run search, genre filter, sort and pagination in that order."""

    selected: Iterable[ClassifiedItem] = items
    if extras.search:
        needle = extras.search.lower()
        selected = [item for item in selected if needle in item.name.lower()]
    if not is_unfiltered(extras.genre):
        selected = [item for item in selected if matches_genre(item.genres, extras.genre)]

    ordered = sort_items(list(selected), extras.sort, extras.order)

    limit = extras.limit if extras.limit is not None else limit_default
    limit = max(1, min(limit, limit_max))
    skip = max(0, extras.skip)
    return ordered[skip : skip + limit]

"""Pydantic models describing lists, classified titles and catalog payloads."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .utils import first_number, is_http_url, normalize_title_id

ContentType = Literal["movie", "series"]
SortKey = Literal["added", "name", "year", "rating", "runtime"]
SortOrder = Literal["asc", "desc"]
ShowIn = Literal["discover", "home", "both"]

CONTENT_TYPES: tuple[ContentType, ...] = ("movie", "series")
SORT_KEYS: tuple[str, ...] = ("added", "name", "year", "rating", "runtime")
SORT_ORDERS: tuple[str, ...] = ("asc", "desc")

_SORT_ALIASES = {
    "alpha": "name",
    "alphabetical": "name",
    "title": "name",
    "name": "name",
    "year": "year",
    "date": "year",
    "released": "year",
    "imdb": "rating",
    "score": "rating",
    "rating": "rating",
    "vote": "rating",
    "votes": "rating",
    "popularity": "rating",
    "popular": "rating",
    "trending": "rating",
    "hot": "rating",
    "runtime": "runtime",
    "duration": "runtime",
    "length": "runtime",
    "added": "added",
    "recent": "added",
    "new": "added",
    "updated": "added",
}
_DESC_ALIASES = {"-1", "desc", "descending", "reverse", "rev"}


def normalize_sort_key(value: object) -> str | None:
    """Map client sort spellings onto a supported key; ``None`` if unknown."""

    if value is None:
        return None
    key = str(value).strip().lower()
    if not key:
        return None
    return _SORT_ALIASES.get(key)


def _parse_show_in(value: object) -> str | None:
    if value is None:
        return None
    lowered = str(value).strip().lower()
    return lowered if lowered in {"discover", "home", "both"} else None


def normalize_order(value: object) -> str | None:
    if value is None:
        return None
    order = str(value).strip().lower()
    if not order:
        return None
    return "desc" if order in _DESC_ALIASES else "asc"


class ClassifiedItem(BaseModel):
    """A title that has been committed to exactly one bucket of a list."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    bucket: ContentType = Field(validation_alias=AliasChoices("bucket", "type"))
    name: str = Field(validation_alias=AliasChoices("name", "title", "displayName"))
    poster: str | None = None
    poster_shape: str | None = Field(
        default=None, validation_alias=AliasChoices("poster_shape", "posterShape")
    )
    background: str | None = None
    logo: str | None = None
    release_info: str | None = Field(
        default=None, validation_alias=AliasChoices("release_info", "releaseInfo")
    )
    year: int | None = None
    genres: list[str] = Field(default_factory=list)
    rating: float | None = Field(
        default=None, validation_alias=AliasChoices("rating", "imdbRating")
    )
    runtime: str | None = None
    runtime_minutes: int | None = Field(
        default=None, validation_alias=AliasChoices("runtime_minutes", "runtimeMinutes")
    )
    description: str | None = None
    cast: list[str] = Field(default_factory=list)
    director: list[str] = Field(default_factory=list)
    added_order: int = Field(
        default=0, validation_alias=AliasChoices("added_order", "addedOrder", "addedAt")
    )

    @field_validator("id")
    @classmethod
    def _lowercase_id(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("year", mode="before")
    @classmethod
    def _parse_year(cls, value: object) -> object:
        if value is None or value == "":
            return None
        if isinstance(value, int):
            return value
        match = re.search(r"\d{4}", str(value))
        return int(match.group(0)) if match else None

    @field_validator("rating", mode="before")
    @classmethod
    def _parse_rating(cls, value: object) -> object:
        if value is None or value == "":
            return None
        number = first_number(value)
        return number or None

    @field_validator("runtime", "release_info", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("genres", "cast", "director", mode="before")
    @classmethod
    def _as_string_list(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(part).strip() for part in value if str(part).strip()]
        return []

    def to_meta_preview(self) -> dict[str, Any]:
        """Return a Stremio-compatible meta preview for catalog responses."""

        meta: dict[str, Any] = {
            "id": self.id,
            "type": self.bucket,
            "name": self.name,
        }
        optional: dict[str, Any] = {
            "poster": self.poster,
            "posterShape": self.poster_shape,
            "background": self.background,
            "logo": self.logo,
            "releaseInfo": self.release_info,
            "year": self.year,
            "genres": self.genres or None,
            "imdbRating": self.rating,
            "runtime": self.runtime,
            "description": self.description,
            "cast": self.cast or None,
            "director": self.director or None,
        }
        meta.update({key: value for key, value in optional.items() if value is not None})
        return meta

    @classmethod
    def from_metadata(
        cls,
        meta: Mapping[str, Any],
        *,
        bucket: ContentType,
        added_order: int,
        fallback_id: str,
    ) -> "ClassifiedItem":
        """Build an item from a raw metadata add-on ``meta`` object."""

        item_id = normalize_title_id(meta.get("imdb_id")) or normalize_title_id(
            meta.get("id")
        ) or fallback_id
        poster = meta.get("poster") if is_http_url(meta.get("poster")) else None
        background = (
            meta.get("background") if is_http_url(meta.get("background")) else None
        )
        poster_shape = meta.get("posterShape") if poster else None
        if poster is None and background is not None:
            poster, poster_shape = background, "landscape"
        runtime = meta.get("runtime")
        minutes = int(first_number(runtime)) or None
        cast = meta.get("cast")
        if isinstance(cast, list):
            cast = cast[:8]
        director = meta.get("director") or meta.get("directors")
        return cls(
            id=item_id,
            bucket=bucket,
            name=str(meta.get("name") or meta.get("title") or item_id),
            poster=poster,
            poster_shape=poster_shape or ("poster" if poster else None),
            background=background,
            logo=meta.get("logo") if is_http_url(meta.get("logo")) else None,
            release_info=meta.get("releaseInfo"),
            year=meta.get("year") or meta.get("releaseInfo"),
            genres=meta.get("genres") or meta.get("genre"),
            rating=meta.get("imdbRating") or meta.get("rating"),
            runtime=runtime,
            runtime_minutes=minutes,
            description=meta.get("description") or meta.get("overview"),
            cast=cast,
            director=director,
            added_order=added_order,
        )


class SurfaceVisibility(BaseModel):
    """Discover/home switches for one content type of a list."""

    discover: bool | None = None
    home: bool | None = None

    def resolve(self, base: "SurfaceVisibility") -> "SurfaceVisibility":
        return SurfaceVisibility(
            discover=self.discover if self.discover is not None else bool(base.discover),
            home=self.home if self.home is not None else bool(base.home),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.discover) or bool(self.home)

    @property
    def home_only(self) -> bool:
        return bool(self.home) and not self.discover


class ListVisibility(BaseModel):
    movie: SurfaceVisibility | None = None
    series: SurfaceVisibility | None = None


class DefaultSort(BaseModel):
    key: SortKey | None = None
    order: SortOrder | None = None

    @field_validator("key", mode="before")
    @classmethod
    def _normalise_key(cls, value: object) -> object:
        return normalize_sort_key(value)

    @field_validator("order", mode="before")
    @classmethod
    def _normalise_order(cls, value: object) -> object:
        return normalize_order(value)


class UserListEntry(BaseModel):
    """A list registered by a user, with its surface preferences."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str | None = Field(
        default=None, validation_alias=AliasChoices("name", "title")
    )
    show_in: ShowIn | None = Field(
        default=None, validation_alias=AliasChoices("show_in", "showIn")
    )
    visibility: ListVisibility | None = None
    default_sort: DefaultSort | None = Field(
        default=None, validation_alias=AliasChoices("default_sort", "defaultSort")
    )

    @field_validator("id")
    @classmethod
    def _lowercase_id(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("show_in", mode="before")
    @classmethod
    def _parse_show_in(cls, value: object) -> object:
        return _parse_show_in(value)

    @classmethod
    def coerce(cls, raw: object) -> "UserListEntry | None":
        """Normalise a stored or legacy list reference into an entry.

        Accepts a bare identifier string, a mapping keyed by ``id`` or
        ``lsid``, or an existing entry. Returns ``None`` for anything else.
        """

        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            return cls(id=raw) if raw.strip() else None
        if not isinstance(raw, Mapping):
            return None
        payload = dict(raw)
        identifier = payload.get("id") or payload.get("lsid")
        if not isinstance(identifier, str) or not identifier.strip():
            return None
        payload["id"] = identifier
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return cls(id=identifier)

    @property
    def display_name(self) -> str:
        return self.name or f"IMDb List {self.id}"

    def legacy_surfaces(self) -> SurfaceVisibility:
        show_in = self.show_in or "discover"
        return SurfaceVisibility(
            discover=show_in in {"discover", "both"},
            home=show_in in {"home", "both"},
        )

    def visibility_for(self, content_type: str) -> SurfaceVisibility:
        """Resolve visibility for a type; explicit settings beat ``showIn``."""

        base = self.legacy_surfaces()
        explicit = None
        if self.visibility is not None:
            explicit = self.visibility.series if content_type == "series" else self.visibility.movie
        if explicit is None:
            return base
        return explicit.resolve(base)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.display_name,
            "showIn": self.show_in or "discover",
            "visibility": {
                content_type: self.visibility_for(content_type).model_dump()
                for content_type in CONTENT_TYPES
            },
        }
        if self.default_sort and (self.default_sort.key or self.default_sort.order):
            payload["defaultSort"] = self.default_sort.model_dump(exclude_none=True)
        return payload


class ListPatch(BaseModel):
    """Partial update accepted by the list-management API."""

    name: str | None = None
    show_in: ShowIn | None = Field(
        default=None, validation_alias=AliasChoices("show_in", "showIn")
    )
    visibility: ListVisibility | None = None
    default_sort: DefaultSort | None = Field(
        default=None, validation_alias=AliasChoices("default_sort", "defaultSort")
    )

    @field_validator("name", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("show_in", mode="before")
    @classmethod
    def _parse_show_in(cls, value: object) -> object:
        return _parse_show_in(value)

    def apply(self, entry: UserListEntry) -> UserListEntry:
        updates: dict[str, Any] = {}
        if self.name is not None:
            updates["name"] = self.name
        if self.show_in is not None:
            updates["show_in"] = self.show_in
        if self.visibility is not None:
            current = entry.visibility or ListVisibility()
            merged: dict[str, SurfaceVisibility | None] = {}
            for content_type in CONTENT_TYPES:
                incoming = getattr(self.visibility, content_type)
                existing = entry.visibility_for(content_type)
                if incoming is None:
                    merged[content_type] = getattr(current, content_type)
                else:
                    merged[content_type] = incoming.resolve(existing)
            updates["visibility"] = ListVisibility(**merged)
        if self.default_sort is not None:
            updates["default_sort"] = self.default_sort
        if not updates:
            return entry
        return entry.model_copy(update=updates)


_CATALOG_ID_RE = re.compile(
    r"^(?P<prefix>[^-]+)-(?P<uid>.+?)-(?P<list_id>ls\d+)-(?P<kind>movies|series)$",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class CatalogRef:
    """The (user, list, type) triple encoded in a public catalog id."""

    uid: str
    list_id: str
    content_type: ContentType

    def to_catalog_id(self, prefix: str) -> str:
        kind = "movies" if self.content_type == "movie" else "series"
        return f"{prefix}-{self.uid}-{self.list_id}-{kind}"

    @classmethod
    def parse(cls, catalog_id: str, *, prefix: str) -> "CatalogRef | None":
        match = _CATALOG_ID_RE.match(catalog_id or "")
        if not match or match.group("prefix").lower() != prefix.lower():
            return None
        kind = match.group("kind").lower()
        return cls(
            uid=match.group("uid"),
            list_id=match.group("list_id").lower(),
            content_type="movie" if kind == "movies" else "series",
        )

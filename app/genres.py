"""Genre taxonomy and canonicalisation helpers used for catalog faceting."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable


TOP_GENRE = "Top"

GENRE_TAXONOMY: tuple[str, ...] = (
    "Action",
    "Adventure",
    "Animation",
    "Biography",
    "Comedy",
    "Crime",
    "Documentary",
    "Drama",
    "Family",
    "Fantasy",
    "History",
    "Horror",
    "Music",
    "Musical",
    "Mystery",
    "Romance",
    "Sci-Fi",
    "Sport",
    "Thriller",
    "War",
    "Western",
)


@dataclass(frozen=True)
class CompoundGenre:
    """A combined label that stands for several canonical genres."""

    label: str
    members: tuple[str, ...]


COMPOUND_GENRES: tuple[CompoundGenre, ...] = (
    CompoundGenre(label="Action & Adventure", members=("Action", "Adventure")),
    CompoundGenre(label="Sci-Fi & Fantasy", members=("Sci-Fi", "Fantasy")),
)

_COMPOUND_MAP = {compound.label: compound.members for compound in COMPOUND_GENRES}

_SEPARATOR_RE = re.compile(r"[\s._\-]+")
_SPLIT_RE = re.compile(r"[,&/]|\band\b", re.IGNORECASE)


def _normalise_key(value: str) -> str:
    return _SEPARATOR_RE.sub(" ", value.lower()).strip()


GENRE_ALIASES: dict[str, str] = {
    "sci fi": "Sci-Fi",
    "scifi": "Sci-Fi",
    "science fiction": "Sci-Fi",
    "doc": "Documentary",
    "docs": "Documentary",
    "documentaries": "Documentary",
    "biopic": "Biography",
    "bio": "Biography",
    "tvmovie": "TV Movie",
    "tv movie": "TV Movie",
    "reality tv": "Reality-TV",
    "talk show": "Talk-Show",
    "game show": "Game-Show",
    "film noir": "Film-Noir",
    "kids": "Family",
    "children": "Family",
    "childrens": "Family",
    "sports": "Sport",
}
# Canonical labels always map onto themselves so canonicalisation is idempotent.
for _label in (*GENRE_TAXONOMY, *_COMPOUND_MAP):
    GENRE_ALIASES.setdefault(_normalise_key(_label), _label)


def canonicalize(label: str | None) -> str | None:
    """Return the canonical spelling of ``label`` or ``None`` for blank input."""

    if not label or not isinstance(label, str):
        return None
    key = _normalise_key(label)
    if not key:
        return None
    aliased = GENRE_ALIASES.get(key)
    if aliased:
        return aliased
    return " ".join(word[:1].upper() + word[1:] for word in key.split(" "))


def _expand(canonical: str) -> tuple[str, ...]:
    return _COMPOUND_MAP.get(canonical, (canonical,))


def explode(raw: str | Iterable[str] | None) -> set[str]:
    """Split a raw genre field into its set of canonical genres.

    Compound labels never appear in the result; they are replaced by their
    members so a filter on either half matches.
    """

    if not raw:
        return set()
    if isinstance(raw, str):
        values: list[str] = [raw]
    else:
        values = [value for value in raw if isinstance(value, str)]

    result: set[str] = set()
    for value in values:
        whole = canonicalize(value)
        if whole in _COMPOUND_MAP:
            result.update(_COMPOUND_MAP[whole])
            continue
        for part in _SPLIT_RE.split(value):
            canonical = canonicalize(part)
            if canonical:
                result.update(_expand(canonical))
    return result


def is_unfiltered(genre: str | None) -> bool:
    """Return whether ``genre`` requests the unfiltered "Top" view."""

    if genre is None:
        return True
    cleaned = genre.strip()
    return not cleaned or cleaned.lower() == TOP_GENRE.lower()


def wanted_genres(genre: str | None) -> set[str]:
    """Return the canonical set a catalog genre filter should match."""

    if is_unfiltered(genre):
        return set()
    canonical = canonicalize(genre)
    if not canonical:
        return set()
    return set(_expand(canonical))


def matches_genre(raw: str | Iterable[str] | None, genre: str | None) -> bool:
    """Return whether an item's raw genres satisfy the requested filter."""

    wanted = wanted_genres(genre)
    if not wanted:
        return True
    return bool(explode(raw) & wanted)


def observed_taxonomy(raw_fields: Iterable[str | Iterable[str] | None]) -> list[str]:
    """Return taxonomy genres present across ``raw_fields`` in taxonomy order."""

    seen: set[str] = set()
    for raw in raw_fields:
        seen.update(explode(raw))
    return [genre for genre in GENRE_TAXONOMY if genre in seen]

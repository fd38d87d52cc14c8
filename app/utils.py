"""Utility helpers for the IMDbStream service."""

from __future__ import annotations

import math
import re
from typing import Any


LIST_ID_RE = re.compile(r"ls\d{6,}", re.IGNORECASE)
STRICT_LIST_ID_RE = re.compile(r"^ls\d{6,}$", re.IGNORECASE)
TITLE_ID_RE = re.compile(r"^tt\d{6,}$", re.IGNORECASE)
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")


def extract_list_id(source: str | None) -> str:
    """Return the canonical list identifier embedded in a URL or bare id.

    Raises ``ValueError`` when no identifier of the form ``ls`` + digits can be
    found.
    """

    raw = (source or "").strip()
    if not raw:
        raise ValueError("Missing list source")
    match = LIST_ID_RE.search(raw)
    candidate = (match.group(0) if match else raw).lower()
    if not STRICT_LIST_ID_RE.match(candidate):
        raise ValueError("Invalid IMDb list id or URL")
    return candidate


def normalize_title_id(value: Any) -> str | None:
    """Lowercase a ``tt`` identifier, returning ``None`` for anything else."""

    if not isinstance(value, str):
        return None
    cleaned = value.strip().lower()
    if TITLE_ID_RE.match(cleaned):
        return cleaned
    return None


def first_number(value: Any) -> float:
    """Extract the first numeric token (``"101 min"`` → 101); 0 when absent."""

    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    match = NUMBER_RE.search(str(value))
    if not match:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:  # pragma: no cover - regex guarantees a float literal
        return 0.0


def coerce_bool(value: object, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith(("http://", "https://"))

"""Helper client for fetching metadata from Cinemeta-compatible add-ons."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..cache import TTLCache
from ..models import ContentType
from ..utils import normalize_title_id

logger = logging.getLogger(__name__)

_NOT_FOUND = object()


@dataclass(slots=True)
class MetadataRecord:
    """A metadata add-on ``meta`` object for one (bucket, id) pair."""

    id: str
    type: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class MetadataAddonClient:
    """Typed ``/meta`` lookups against a Cinemeta-compatible add-on."""

    _META_PATH = "/meta/{type}/{id}.json"
    _RETRY_STATUSES = {402, 429, 500, 502, 503, 504}

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        default_base_url: str | None = None,
        *,
        cache: TTLCache | None = None,
        max_concurrency: int = 8,
    ) -> None:
        self._client = http_client
        self._default_base_url = self._normalize_base_url(default_base_url)
        self._cache = cache if cache is not None else TTLCache(default_ttl=1_800)
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._inflight: dict[str, asyncio.Task[MetadataRecord | None]] = {}

    @property
    def default_base_url(self) -> str | None:
        """Return the default metadata add-on URL, if configured."""

        return self._default_base_url

    async def get_meta(self, bucket: ContentType, title_id: str) -> MetadataRecord | None:
        """Return metadata for ``title_id`` in ``bucket`` or ``None``.

        Results, including definitive misses, are cached per (bucket, id).
        Concurrent callers for the same pair share a single request.
        """

        normalized = normalize_title_id(title_id)
        if normalized is None or not self._default_base_url:
            return None

        key = f"meta:{bucket}:{normalized}"
        cached = self._cache.get(key)
        if cached is _NOT_FOUND:
            return None
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(bucket, normalized, key))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _fetch(
        self, bucket: ContentType, title_id: str, key: str
    ) -> MetadataRecord | None:
        url = f"{self._default_base_url}{self._META_PATH.format(type=bucket, id=title_id)}"

        response: httpx.Response | None = None
        max_attempts = 2
        for attempt in range(1, max_attempts + 1):
            try:
                async with self._semaphore:
                    response = await self._client.get(
                        url, headers={"Accept": "application/json"}
                    )
                response.raise_for_status()
                break
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response else None
                if status in self._RETRY_STATUSES and attempt < max_attempts:
                    await asyncio.sleep(0.1)
                    continue
                if status is not None and 400 <= status < 500 and status not in self._RETRY_STATUSES:
                    self._cache.set(key, _NOT_FOUND)
                    return None
                logger.warning(
                    "Metadata lookup failed for %s %s via %s: %s",
                    bucket,
                    title_id,
                    self._default_base_url,
                    exc,
                )
                return None
            except httpx.HTTPError as exc:
                logger.warning(
                    "Metadata lookup failed for %s %s via %s: %s",
                    bucket,
                    title_id,
                    self._default_base_url,
                    exc,
                )
                return None
        else:  # pragma: no cover - loop always breaks or returns
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Metadata add-on returned non-JSON for %s %s", bucket, title_id)
            return None

        record = self._parse_meta(payload, bucket)
        self._cache.set(key, record if record is not None else _NOT_FOUND)
        return record

    @staticmethod
    def _parse_meta(payload: Any, bucket: ContentType) -> MetadataRecord | None:
        if not isinstance(payload, dict):
            return None
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            return None
        meta_id = str(meta.get("id") or "").strip()
        if not meta_id:
            return None
        return MetadataRecord(
            id=meta_id,
            type=str(meta.get("type") or bucket),
            name=str(meta.get("name") or meta.get("title") or meta_id),
            payload=meta,
        )

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        normalized = normalized.split("?", 1)[0].rstrip("/")
        lowered = normalized.lower()
        for suffix in ("/manifest.json", "/manifest"):
            if lowered.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip("/")
                break
        return normalized or None

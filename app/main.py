"""Entry point for the FastAPI-powered Stremio addon."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .cache import LRUCache, TTLCache
from .config import settings
from .database import Database
from .models import CONTENT_TYPES, ListPatch
from .services.catalog_service import CatalogService
from .services.classifier import TypeClassifier
from .services.list_source import ListSourceClient
from .services.metadata_addon import MetadataAddonClient
from .services.query import CatalogExtras
from .services.title_pages import TitlePageClient
from .utils import extract_list_id

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MANIFEST_ID = "com.imdbstream.local"
DEFAULT_UID = "default"

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    scrape_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
    )
    metadata_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    database = Database(settings.database_url)
    await database.create_all()

    cache = TTLCache(
        default_ttl=settings.cache_ttl_seconds,
        sweep_threshold=settings.cache_sweep_threshold,
    )
    metadata_client = MetadataAddonClient(
        metadata_http_client, str(settings.metadata_addon_url), cache=cache
    )
    title_pages = TitlePageClient(
        settings,
        scrape_http_client,
        parent_cache=LRUCache(
            max_size=settings.episode_parent_max,
            ttl=settings.episode_parent_ttl_seconds,
        ),
        label_cache=cache,
    )
    classifier = TypeClassifier(
        metadata_client,
        title_pages,
        include_music_video=settings.include_music_video,
        concurrency=settings.classify_concurrency,
    )
    list_source = ListSourceClient(settings, scrape_http_client, cache=cache)
    catalog_service = CatalogService(
        settings, list_source, classifier, database.session_factory, cache=cache
    )

    app.state.catalog_service = catalog_service
    app.state.database = database
    await catalog_service.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await catalog_service.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Split IMDb lists into movie and series catalogs for Stremio",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def build_manifest(catalogs: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "id": MANIFEST_ID,
        "version": "1.0.0",
        "name": settings.app_name,
        "description": "Your IMDb lists split into movie and series catalogs.",
        "resources": ["catalog"],
        "types": list(CONTENT_TYPES),
        "idPrefixes": ["tt"],
        "catalogs": catalogs,
        "behaviorHints": {"configurable": True, "configurationRequired": False},
    }


def register_routes(fastapi_app: FastAPI) -> None:
    async def _manifest_endpoint(uid: str | None) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        resolved_uid = (uid or "").strip() or DEFAULT_UID
        try:
            catalogs = await service.list_manifest_catalogs(resolved_uid)
        except Exception:
            logger.exception("Manifest build failed for %s", resolved_uid)
            catalogs = []
        return build_manifest(catalogs)

    async def _catalog_endpoint(
        request: Request,
        content_type: str,
        catalog_id: str,
        extra: str | None = None,
    ) -> JSONResponse:
        if content_type not in CONTENT_TYPES:
            return JSONResponse({"metas": []})
        service = get_catalog_service(fastapi_app)
        try:
            extras = CatalogExtras.from_sources(extra, request.query_params.multi_items())
            payload = await service.get_catalog_payload(content_type, catalog_id, extras)
        except Exception:
            logger.exception("Catalog %s/%s failed", content_type, catalog_id)
            payload = {"metas": []}
        return JSONResponse(payload)

    async def _json_body(request: Request) -> Any:
        try:
            return await request.json()
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail="Invalid payload") from exc

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/manifest.json")
    async def manifest(uid: str | None = None) -> dict[str, Any]:
        return await _manifest_endpoint(uid)

    @fastapi_app.get("/u/{uid}/manifest.json")
    async def manifest_for_user(uid: str) -> dict[str, Any]:
        return await _manifest_endpoint(uid)

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}.json")
    async def catalog(
        request: Request, content_type: str, catalog_id: str
    ) -> JSONResponse:
        return await _catalog_endpoint(request, content_type, catalog_id)

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}/{extra:path}")
    async def catalog_with_extra(
        request: Request, content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(request, content_type, catalog_id, extra)

    @fastapi_app.get("/u/{uid}/catalog/{content_type}/{catalog_id}.json")
    async def catalog_for_user(
        request: Request, uid: str, content_type: str, catalog_id: str
    ) -> JSONResponse:
        return await _catalog_endpoint(request, content_type, catalog_id)

    @fastapi_app.get("/u/{uid}/catalog/{content_type}/{catalog_id}/{extra:path}")
    async def catalog_for_user_with_extra(
        request: Request, uid: str, content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(request, content_type, catalog_id, extra)

    @fastapi_app.get("/api/user/{uid}/lists")
    async def list_user_lists(uid: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        entries = await service.get_lists(uid)
        return {"lists": [entry.to_payload() for entry in entries]}

    @fastapi_app.post("/api/user/{uid}/lists")
    async def add_user_list(uid: str, request: Request) -> JSONResponse:
        body = await _json_body(request)
        source = body.get("src") if isinstance(body, dict) else None
        if not isinstance(source, str) or not source.strip():
            raise HTTPException(status_code=400, detail="Missing src")
        service = get_catalog_service(fastapi_app)
        try:
            entry = await service.add_list(uid, source)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"ok": True, "list": entry.to_payload()})

    @fastapi_app.put("/api/user/{uid}/lists")
    async def replace_user_lists(uid: str, request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        raw_lists = body.get("lists") if isinstance(body, dict) else body
        if not isinstance(raw_lists, list):
            raise HTTPException(status_code=400, detail="Expected a list of lists")
        service = get_catalog_service(fastapi_app)
        entries = await service.replace_lists(uid, raw_lists)
        return {"lists": [entry.to_payload() for entry in entries]}

    @fastapi_app.patch("/api/user/{uid}/lists/{list_id}")
    async def patch_user_list(uid: str, list_id: str, request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        try:
            patch = ListPatch.model_validate(body if isinstance(body, dict) else {})
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        service = get_catalog_service(fastapi_app)
        try:
            entry = await service.update_list(uid, list_id.lower(), patch)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True, "list": entry.to_payload()}

    @fastapi_app.delete("/api/user/{uid}/lists/{list_id}")
    async def delete_user_list(uid: str, list_id: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        try:
            await service.remove_list(uid, list_id.lower())
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True}

    @fastapi_app.post("/api/user/{uid}/lists/{list_id}/refresh")
    async def refresh_user_list(uid: str, list_id: str) -> dict[str, Any]:
        service = get_catalog_service(fastapi_app)
        entry = await service.get_list(uid, list_id.lower())
        if entry is None:
            raise HTTPException(status_code=404, detail=f"List {list_id} is not registered")
        return await service.refresh_list(uid, entry.id)

    @fastapi_app.get("/debug/types")
    async def debug_types(uid: str = DEFAULT_UID, lsid: str | None = None) -> dict[str, Any]:
        try:
            list_id = extract_list_id(lsid)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        service = get_catalog_service(fastapi_app)
        report = await service.type_report(uid, list_id)
        if report is None:
            raise HTTPException(status_code=404, detail=f"No report for {list_id}")
        return report

    @fastapi_app.get("/debug/install-url")
    async def debug_install_url(request: Request, uid: str = DEFAULT_UID) -> dict[str, str]:
        _, base = _resolve_external_base(request)
        manifest_url = f"{base}/u/{quote(uid, safe='')}/manifest.json"
        return {
            "manifestUrl": manifest_url,
            "installUrl": f"stremio:///install-addon?addon={quote(manifest_url, safe='')}",
        }


def _resolve_external_base(request: Request) -> tuple[str, str]:
    headers = request.headers
    scheme = _first_forwarded_value(headers.get("x-forwarded-proto")) or request.url.scheme

    host = _first_forwarded_value(headers.get("x-forwarded-host"))
    if not host:
        host_header = headers.get("host")
        host = _first_forwarded_value(host_header) if host_header else None
    if not host:
        host = request.url.netloc

    port = _first_forwarded_value(headers.get("x-forwarded-port"))
    if port and ":" not in host:
        default_port = "443" if scheme == "https" else "80"
        if port != default_port:
            host = f"{host}:{port}"

    origin = f"{scheme}://{host}".rstrip("/")

    prefix = (
        _first_forwarded_value(headers.get("x-forwarded-prefix"))
        or request.scope.get("root_path")
        or ""
    )
    if prefix and not prefix.startswith("/"):
        prefix = f"/{prefix}"
    prefix = prefix.rstrip("/")

    base = f"{origin}{prefix}" if prefix else origin
    return origin, base


def _first_forwarded_value(header_value: str | None) -> str | None:
    if not header_value:
        return None
    return header_value.split(",", 1)[0].strip()


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )

"""Entry point for the FastAPI-powered CineScope catalog backend."""

from __future__ import annotations

import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import ValidationError

from .config import settings
from .database import Database
from .models import BrowseFilters, ContentKind
from .services.browse import BrowseService
from .services.catalog import CatalogService
from .services.content_cache import ContentCache
from .services.identity import (
    IdentityVerifier,
    InvalidTokenError,
    VerifiedIdentity,
    bearer_token,
    get_identity_verifier,
)
from .services.kv_cache import RedisCache
from .services.tmdb import (
    RATE_LIMIT_MESSAGE,
    TMDBClient,
    TMDBError,
    TMDBNotFoundError,
    TMDBRateLimitError,
)
from .utils import parse_page

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

INVALID_KIND_MESSAGE = 'Invalid type parameter. Must be "movie" or "tv"'
BROWSE_TYPES = ("all", "movie", "tv", "anime")
MIN_SEARCH_LENGTH = 2

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url).rstrip("/"),
            timeout=httpx.Timeout(15.0, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()
    kv_cache = RedisCache.from_url(settings.redis_url)

    tmdb = TMDBClient(settings, tmdb_http_client)
    content_cache = ContentCache(
        settings,
        tmdb,
        database.session_factory,
        kv_cache,
        dialect_name=database.dialect_name,
    )
    catalog_service = CatalogService(
        tmdb, content_cache, image_base=settings.tmdb_image_url
    )
    browse_service = BrowseService(
        tmdb,
        timeout=settings.browse_timeout_seconds,
        image_base=settings.tmdb_image_url,
    )

    identity_verifier = get_identity_verifier()
    if identity_verifier is not None:
        identity_verifier.initialise()

    fastapi_app.state.catalog_service = catalog_service
    fastapi_app.state.browse_service = browse_service
    fastapi_app.state.identity_verifier = identity_verifier
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await content_cache.drain()
        await kv_cache.close()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Movie, series and anime discovery backed by TMDB",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    fastapi_app.state.started_at = time.monotonic()

    register_routes(fastapi_app)
    return fastapi_app


def get_catalog_service(app: FastAPI) -> CatalogService:
    service = getattr(app.state, "catalog_service", None)
    if not isinstance(service, CatalogService):
        raise RuntimeError("Catalog service not initialised")
    return service


def get_browse_service(app: FastAPI) -> BrowseService:
    service = getattr(app.state, "browse_service", None)
    if not isinstance(service, BrowseService):
        raise RuntimeError("Browse service not initialised")
    return service


def upstream_error_response(
    exc: TMDBError,
    *,
    not_found: str,
    failure: str,
    envelope: bool,
) -> JSONResponse:
    """Map a TMDB failure onto the route's error envelope and status."""

    if isinstance(exc, TMDBNotFoundError):
        status_code, message = 404, not_found
    elif isinstance(exc, TMDBRateLimitError):
        status_code, message = 429, RATE_LIMIT_MESSAGE
    else:
        status_code, message = exc.status_code or 500, failure
    body: dict[str, Any] = {"error": message}
    # Throttling is reported the same way on every route.
    if envelope or isinstance(exc, TMDBRateLimitError):
        body = {"success": False, **body}
    return JSONResponse(body, status_code=status_code)


def _describe_validation_error(exc: ValidationError | RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request parameters"
    first = errors[0]
    location = first.get("loc") or ("request",)
    return f"Invalid {location[-1]} parameter. {first.get('msg', '')}".strip()


def _uses_bare_error_envelope(path: str) -> bool:
    """Movie and series routes answer failures with ``{error}`` only."""

    return path.startswith(("/movies", "/series"))


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(RequestValidationError)
    async def request_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        body: dict[str, Any] = {"error": _describe_validation_error(exc)}
        if not _uses_bare_error_envelope(request.url.path):
            body = {"success": False, **body}
        return JSONResponse(body, status_code=400)

    def _catalog() -> CatalogService:
        return get_catalog_service(fastapi_app)

    async def _list_response(
        kind: ContentKind,
        category: str,
        page: int,
        *,
        label: str,
        envelope: bool,
    ) -> JSONResponse:
        service = _catalog()
        handlers = {
            "trending": service.trending,
            "popular": service.popular,
            "now_playing": service.now_playing,
        }
        try:
            payload = await handlers[category](kind, page)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found=f"{label} not found",
                failure=f"Failed to fetch {label.lower()}",
                envelope=envelope,
            )
        return JSONResponse(payload)

    async def _detail_response(
        kind: ContentKind, tmdb_id: int, *, label: str, envelope: bool
    ) -> JSONResponse:
        try:
            lookup = await _catalog().detail(kind, tmdb_id)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found=f"{label} not found",
                failure=f"Failed to fetch {label.lower()} with ID {tmdb_id}",
                envelope=envelope,
            )
        return JSONResponse(
            {"success": True, "data": lookup.payload, "fromCache": lookup.from_cache}
        )

    async def _recommendations_response(
        kind: ContentKind, tmdb_id: int, page: int, *, label: str, envelope: bool
    ) -> JSONResponse:
        try:
            payload = await _catalog().recommendations(kind, tmdb_id, page)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found=f"{label} recommendations not found",
                failure=f"Failed to fetch recommendations for {label.lower()} {tmdb_id}",
                envelope=envelope,
            )
        return JSONResponse(payload)

    async def _browse_response(params: dict[str, str], *, failure: str) -> JSONResponse:
        try:
            filters = BrowseFilters.from_query(params)
        except ValidationError as exc:
            return JSONResponse(
                {"success": False, "error": _describe_validation_error(exc)},
                status_code=400,
            )

        try:
            page = await get_browse_service(fastapi_app).browse(filters)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found="Content not found",
                failure=failure,
                envelope=True,
            )

        return JSONResponse(
            {
                "success": True,
                "results": [result.to_response() for result in page.results],
                "page": filters.page,
                "totalPages": page.total_pages,
                "totalResults": page.total_results,
                "appliedFilters": filters.applied(),
            }
        )

    def _kind_or_none(value: str | None) -> ContentKind | None:
        kind = value or "movie"
        if kind not in ("movie", "tv"):
            return None
        return kind  # type: ignore[return-value]

    def _invalid_kind() -> JSONResponse:
        return JSONResponse({"error": INVALID_KIND_MESSAGE}, status_code=400)

    @fastapi_app.get("/")
    async def index() -> PlainTextResponse:
        return PlainTextResponse("CineScope backend is running!")

    @fastapi_app.get("/health")
    async def healthcheck() -> dict[str, Any]:
        started_at = getattr(fastapi_app.state, "started_at", time.monotonic())
        return {
            "uptime": time.monotonic() - started_at,
            "message": "OK",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @fastapi_app.get("/browse")
    async def browse(request: Request) -> Response:
        params = dict(request.query_params)
        search = params.get("search") or ""
        if len(search) >= MIN_SEARCH_LENGTH:
            query = urlencode(
                {
                    "q": search,
                    "type": params.get("type") or "all",
                    "page": params.get("page") or "1",
                },
                quote_via=quote,
            )
            return RedirectResponse(f"/search?{query}", status_code=302)

        return await _browse_response(params, failure="Failed to fetch browse content")

    @fastapi_app.get("/browse/genres")
    async def browse_genres(type: str = "movie") -> JSONResponse:
        if type not in ("movie", "tv"):
            return JSONResponse(
                {"success": False, "error": INVALID_KIND_MESSAGE}, status_code=400
            )
        try:
            genres = await _catalog().genres(type)  # type: ignore[arg-type]
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found="Genres not found",
                failure="Failed to fetch genres",
                envelope=True,
            )
        return JSONResponse({"success": True, "genres": genres})

    @fastapi_app.get("/search")
    async def search(
        q: str = "", type: str = "all", page: str | None = None
    ) -> JSONResponse:
        if len(q) < MIN_SEARCH_LENGTH:
            return JSONResponse(
                {
                    "success": False,
                    "error": 'Query parameter "q" must be at least 2 characters long',
                },
                status_code=400,
            )
        if type not in BROWSE_TYPES:
            return JSONResponse(
                {
                    "success": False,
                    "error": 'Invalid type parameter. Must be "all", "movie", "tv" or "anime"',
                },
                status_code=400,
            )
        page_number = parse_page(page)
        try:
            results, data = await _catalog().search(type, q, page_number)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found="No results found",
                failure="Failed to search content",
                envelope=True,
            )
        return JSONResponse(
            {
                "success": True,
                "results": [result.to_response() for result in results],
                "page": data.get("page", page_number),
                "totalPages": data.get("total_pages", 0),
                "totalResults": data.get("total_results", 0),
            }
        )

    # Movies. A ``type`` query parameter lets these routes serve series too.

    @fastapi_app.get("/movies/trending")
    async def movies_trending(type: str | None = None, page: str | None = None) -> JSONResponse:
        kind = _kind_or_none(type)
        if kind is None:
            return _invalid_kind()
        label = "Trending movies" if kind == "movie" else "Trending series"
        return await _list_response(
            kind, "trending", parse_page(page), label=label, envelope=False
        )

    @fastapi_app.get("/movies/popular")
    async def movies_popular(type: str | None = None, page: str | None = None) -> JSONResponse:
        kind = _kind_or_none(type)
        if kind is None:
            return _invalid_kind()
        label = "Popular movies" if kind == "movie" else "Popular series"
        return await _list_response(
            kind, "popular", parse_page(page), label=label, envelope=False
        )

    @fastapi_app.get("/movies/now-playing")
    async def movies_now_playing(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "movie",
            "now_playing",
            parse_page(page),
            label="Now playing movies",
            envelope=False,
        )

    @fastapi_app.get("/movies/search")
    async def movies_search(
        q: str = "", type: str | None = None, page: str | None = None
    ) -> JSONResponse:
        if len(q) < MIN_SEARCH_LENGTH:
            return JSONResponse(
                {"error": 'Query parameter "q" must be at least 2 characters long'},
                status_code=400,
            )
        kind = _kind_or_none(type)
        if kind is None:
            return _invalid_kind()
        page_number = parse_page(page)
        try:
            _, data = await _catalog().search(kind, q, page_number)
        except TMDBError as exc:
            return upstream_error_response(
                exc,
                not_found="No results found",
                failure="Failed to search content",
                envelope=False,
            )
        return JSONResponse(
            {
                "results": data.get("results") or [],
                "page": data.get("page", page_number),
                "total_pages": data.get("total_pages", 0),
            }
        )

    @fastapi_app.get("/movies/content/{content_type}/{tmdb_id}")
    async def movies_content(content_type: str, tmdb_id: int) -> JSONResponse:
        kind = _kind_or_none(content_type)
        if kind is None:
            return _invalid_kind()
        label = "Movie" if kind == "movie" else "Series"
        return await _detail_response(kind, tmdb_id, label=label, envelope=False)

    @fastapi_app.get("/movies/{tmdb_id}")
    async def movie_detail(tmdb_id: int, type: str | None = None) -> JSONResponse:
        kind = _kind_or_none(type)
        if kind is None:
            return _invalid_kind()
        label = "Movie" if kind == "movie" else "Series"
        return await _detail_response(kind, tmdb_id, label=label, envelope=False)

    @fastapi_app.get("/movies/{tmdb_id}/recommendations")
    async def movie_recommendations(
        tmdb_id: int, type: str | None = None, page: str | None = None
    ) -> JSONResponse:
        kind = _kind_or_none(type)
        if kind is None:
            return _invalid_kind()
        label = "Movie" if kind == "movie" else "Series"
        return await _recommendations_response(
            kind, tmdb_id, parse_page(page), label=label, envelope=False
        )

    # Series

    @fastapi_app.get("/series/trending")
    async def series_trending(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "tv", "trending", parse_page(page), label="Trending series", envelope=False
        )

    @fastapi_app.get("/series/popular")
    async def series_popular(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "tv", "popular", parse_page(page), label="Popular series", envelope=False
        )

    @fastapi_app.get("/series/{tmdb_id}")
    async def series_detail(tmdb_id: int) -> JSONResponse:
        return await _detail_response("tv", tmdb_id, label="Series", envelope=False)

    @fastapi_app.get("/series/{tmdb_id}/recommendations")
    async def series_recommendations(tmdb_id: int, page: str | None = None) -> JSONResponse:
        return await _recommendations_response(
            "tv", tmdb_id, parse_page(page), label="Series", envelope=False
        )

    # Anime (Japanese animated TV)

    @fastapi_app.get("/anime")
    async def anime_browse(request: Request) -> JSONResponse:
        params = {**request.query_params, "type": "anime"}
        return await _browse_response(params, failure="Failed to fetch anime content")

    @fastapi_app.get("/anime/trending")
    async def anime_trending(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "anime", "trending", parse_page(page), label="Trending anime", envelope=True
        )

    @fastapi_app.get("/anime/popular")
    async def anime_popular(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "anime", "popular", parse_page(page), label="Popular anime", envelope=True
        )

    @fastapi_app.get("/anime/now-playing")
    async def anime_now_playing(page: str | None = None) -> JSONResponse:
        return await _list_response(
            "anime",
            "now_playing",
            parse_page(page),
            label="Now playing anime",
            envelope=True,
        )

    @fastapi_app.get("/anime/{tmdb_id}")
    async def anime_detail(tmdb_id: int) -> JSONResponse:
        return await _detail_response("anime", tmdb_id, label="Anime", envelope=True)

    @fastapi_app.get("/anime/{tmdb_id}/recommendations")
    async def anime_recommendations(tmdb_id: int, page: str | None = None) -> JSONResponse:
        return await _recommendations_response(
            "anime", tmdb_id, parse_page(page), label="Anime", envelope=True
        )

    @fastapi_app.get("/recommendations/personalized")
    async def personalized(request: Request) -> JSONResponse:
        verifier = getattr(fastapi_app.state, "identity_verifier", None)
        if verifier is None:
            return JSONResponse(
                {"error": "Authentication is not configured"}, status_code=503
            )
        try:
            identity = await _authenticate(verifier, request)
        except InvalidTokenError:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            results = await _catalog().personalized()
        except LookupError as exc:
            logger.warning("Personalized feed for %s is empty: %s", identity.uid, exc)
            return JSONResponse({"error": str(exc)}, status_code=500)

        return JSONResponse(
            {
                "success": True,
                "data": {"results": [result.to_response() for result in results]},
                "page": 1,
                "totalPages": 1,
                "totalResults": len(results),
            }
        )


async def _authenticate(verifier: IdentityVerifier, request: Request) -> VerifiedIdentity:
    token = bearer_token(request.headers.get("Authorization"))
    return await verifier.verify(token)


app = create_app()

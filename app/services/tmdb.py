"""Client for The Movie Database (TMDB) catalog API."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..models import StoredKind

logger = logging.getLogger(__name__)

ANIMATION_GENRE_ID = 16
ANIME_ORIGIN_COUNTRY = "JP"
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."


class TMDBError(Exception):
    """Raised when TMDB answers with an error or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TMDBNotFoundError(TMDBError):
    """TMDB reported that the requested resource does not exist."""


class TMDBRateLimitError(TMDBError):
    """TMDB throttled the request."""


class TMDBClient:
    """Thin wrapper around the TMDB v3 HTTP API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def fetch(
        self,
        endpoint: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Issue a GET against ``endpoint`` and return the decoded JSON body."""

        query: dict[str, Any] = {"api_key": self._settings.tmdb_api_key}
        if params:
            query.update({key: value for key, value in params.items() if value is not None})

        request_kwargs: dict[str, Any] = {"params": query}
        if timeout is not None:
            request_kwargs["timeout"] = timeout

        try:
            response = await self._client.get(endpoint, **request_kwargs)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request to %s failed: %s", endpoint, exc)
            raise TMDBError(f"TMDB request to {endpoint} failed") from exc

        if response.status_code >= 400:
            logger.warning(
                "TMDB request to %s returned %s: %s",
                endpoint,
                response.status_code,
                response.text,
            )
            status = response.status_code
            if status == 404:
                raise TMDBNotFoundError(f"TMDB resource {endpoint} not found", status)
            if status == 429:
                raise TMDBRateLimitError(RATE_LIMIT_MESSAGE, status)
            raise TMDBError(f"TMDB request to {endpoint} failed", status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TMDBError(f"TMDB returned invalid JSON for {endpoint}") from exc
        if not isinstance(payload, dict):
            raise TMDBError(f"Unexpected TMDB response structure for {endpoint}")
        return payload

    async def trending(
        self, kind: StoredKind, window: str = "week", page: int = 1, **kwargs: Any
    ) -> dict[str, Any]:
        return await self.fetch(f"/trending/{kind}/{window}", {"page": page}, **kwargs)

    async def popular(self, kind: StoredKind, page: int = 1, **kwargs: Any) -> dict[str, Any]:
        return await self.fetch(f"/{kind}/popular", {"page": page}, **kwargs)

    async def now_playing(self, kind: StoredKind, page: int = 1) -> dict[str, Any]:
        """Movies in theatres, or series currently on the air."""

        endpoint = "/movie/now_playing" if kind == "movie" else "/tv/on_the_air"
        return await self.fetch(endpoint, {"page": page})

    async def discover(
        self, kind: StoredKind, params: Mapping[str, Any], **kwargs: Any
    ) -> dict[str, Any]:
        return await self.fetch(f"/discover/{kind}", params, **kwargs)

    async def discover_anime(
        self, params: Mapping[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Discover TV restricted to Japanese animation."""

        query = dict(params or {})
        query["with_genres"] = merge_genre_ids(ANIMATION_GENRE_ID, query.get("with_genres"))
        query["with_origin_country"] = ANIME_ORIGIN_COUNTRY
        return await self.discover("tv", query, **kwargs)

    async def details(self, kind: StoredKind, tmdb_id: int) -> dict[str, Any]:
        return await self.fetch(f"/{kind}/{tmdb_id}", {"append_to_response": "credits"})

    async def recommendations(
        self, kind: StoredKind, tmdb_id: int, page: int = 1
    ) -> dict[str, Any]:
        return await self.fetch(f"/{kind}/{tmdb_id}/recommendations", {"page": page})

    async def search(
        self, kind: StoredKind | str, query: str, page: int = 1
    ) -> dict[str, Any]:
        """Search one kind, or every kind when ``kind`` is ``"multi"``."""

        params = {"query": query, "page": page, "include_adult": "false"}
        return await self.fetch(f"/search/{kind}", params)

    async def genres(self, kind: StoredKind) -> list[dict[str, Any]]:
        payload = await self.fetch(f"/genre/{kind}/list")
        genres = payload.get("genres") or []
        return [genre for genre in genres if isinstance(genre, dict)]


def list_envelope(data: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap a paginated TMDB list in the response envelope used by list routes."""

    return {
        "success": True,
        "data": data,
        "page": data.get("page"),
        "totalPages": data.get("total_pages"),
        "totalResults": data.get("total_results"),
    }


def merge_genre_ids(forced: int, extra: object) -> str:
    """Combine a forced genre id with an optional user selected one.

    TMDB treats comma separated ``with_genres`` values as an AND filter, so the
    forced genre keeps applying alongside the user's choice.
    """

    ids = [str(forced)]
    if extra not in (None, ""):
        for part in str(extra).split(","):
            part = part.strip()
            if part and part not in ids:
                ids.append(part)
    return ",".join(ids)

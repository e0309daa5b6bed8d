"""Browse aggregation over TMDB list and discover endpoints."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import ANY, BrowseFilters, ContentKind, NormalizedResult, stored_kind
from .normalizer import DEFAULT_IMAGE_BASE, genre_id_for, normalize_many
from .tmdb import ANIME_ORIGIN_COUNTRY, ANIMATION_GENRE_ID, TMDBClient, merge_genre_ids

logger = logging.getLogger(__name__)

RESULTS_PER_PAGE = 24
RATING_VOTE_FLOOR = 10
TOP_RATED_VOTE_FLOOR: dict[str, int] = {"movie": 100, "tv": 50}
SORT_PARAMS: dict[str, dict[str, str | None]] = {
    "popular": {"movie": "popularity.desc", "tv": "popularity.desc"},
    "top_rated": {"movie": "vote_average.desc", "tv": "vote_average.desc"},
    "newest": {"movie": "primary_release_date.desc", "tv": "first_air_date.desc"},
    "trending": {"movie": None, "tv": None},
}


@dataclass(slots=True)
class UpstreamQuery:
    """The TMDB call chosen for one content kind."""

    endpoint: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BrowsePage:
    """Aggregated browse results ready for serialization."""

    results: list[NormalizedResult]
    total_results: int = 0
    total_pages: int = 0


def _sort_params(kind: ContentKind, sort_by: str) -> dict[str, Any]:
    target = stored_kind(kind)
    params: dict[str, Any] = {}
    sort_value = SORT_PARAMS[sort_by][target]
    if sort_value:
        params["sort_by"] = sort_value
    if sort_by == "top_rated":
        params["vote_count.gte"] = TOP_RATED_VOTE_FLOOR[target]
    return params


def _filter_params(kind: ContentKind, filters: BrowseFilters) -> dict[str, Any]:
    params: dict[str, Any] = {}
    if filters.genre != ANY:
        genre_id = genre_id_for(filters.genre, kind)
        if genre_id is not None:
            params["with_genres"] = genre_id
    if filters.year != ANY:
        year_key = "primary_release_year" if kind == "movie" else "first_air_date_year"
        params[year_key] = filters.year
    if filters.min_rating is not None:
        params["vote_average.gte"] = filters.min_rating
        params["vote_count.gte"] = RATING_VOTE_FLOOR
    if filters.language_code:
        params["with_original_language"] = filters.language_code
    return params


def _merge_vote_floor(params: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = {**params, **extra}
    if "vote_count.gte" in params and "vote_count.gte" in extra:
        merged["vote_count.gte"] = max(params["vote_count.gte"], extra["vote_count.gte"])
    return merged


def build_query(kind: ContentKind, filters: BrowseFilters, page: int) -> UpstreamQuery:
    """Choose the TMDB endpoint and parameters for one kind of browse request."""

    sort_params = _sort_params(kind, filters.sort_by)
    filter_params = _filter_params(kind, filters)

    if kind == "anime":
        params = _merge_vote_floor({"page": page, **sort_params}, filter_params)
        params["with_genres"] = merge_genre_ids(
            ANIMATION_GENRE_ID, filter_params.get("with_genres")
        )
        params["with_origin_country"] = ANIME_ORIGIN_COUNTRY
        return UpstreamQuery("/discover/tv", params)

    if filters.sort_by == "trending":
        return UpstreamQuery(f"/trending/{kind}/day", {"page": page})

    if not filters.has_active_filters:
        if filters.sort_by == "popular":
            return UpstreamQuery(f"/{kind}/popular", {"page": page})
        if filters.sort_by == "top_rated":
            return UpstreamQuery(f"/{kind}/top_rated", {"page": page, **sort_params})

    params = _merge_vote_floor({"page": page, **sort_params}, filter_params)
    return UpstreamQuery(f"/discover/{kind}", params)


def interleave(
    first: list[NormalizedResult],
    second: list[NormalizedResult],
    limit: int = RESULTS_PER_PAGE,
) -> list[NormalizedResult]:
    """Alternate ``first`` and ``second`` starting with ``first``, up to ``limit``."""

    combined: list[NormalizedResult] = []
    for index in range(max(len(first), len(second))):
        if index < len(first):
            combined.append(first[index])
        if index < len(second):
            combined.append(second[index])
        if len(combined) >= limit:
            break
    return combined[:limit]


def _as_int(value: object) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class BrowseService:
    """Translate browse filters into TMDB calls and aggregate the results."""

    def __init__(
        self,
        tmdb: TMDBClient,
        *,
        timeout: float = 5.0,
        image_base: str = DEFAULT_IMAGE_BASE,
    ) -> None:
        self._tmdb = tmdb
        self._timeout = timeout
        self._image_base = image_base

    async def browse(self, filters: BrowseFilters) -> BrowsePage:
        if filters.type == "all":
            return await self._browse_all(filters)
        data = await self._fetch(filters.type, filters)
        results = normalize_many(
            data.get("results"), filters.type, image_base=self._image_base
        )
        return BrowsePage(
            results=results[:RESULTS_PER_PAGE],
            total_results=_as_int(data.get("total_results")),
            total_pages=_as_int(data.get("total_pages")),
        )

    async def _fetch(self, kind: ContentKind, filters: BrowseFilters) -> dict[str, Any]:
        query = build_query(kind, filters, filters.page)
        logger.debug("Browse %s via %s with %s", kind, query.endpoint, query.params)
        return await self._tmdb.fetch(query.endpoint, query.params, timeout=self._timeout)

    async def _browse_all(self, filters: BrowseFilters) -> BrowsePage:
        movie_outcome, tv_outcome = await asyncio.gather(
            self._fetch("movie", filters),
            self._fetch("tv", filters),
            return_exceptions=True,
        )
        if isinstance(movie_outcome, BaseException) and isinstance(tv_outcome, BaseException):
            raise movie_outcome

        pages: dict[str, dict[str, Any]] = {}
        for kind, outcome in (("movie", movie_outcome), ("tv", tv_outcome)):
            if isinstance(outcome, BaseException):
                logger.warning("Browse %s fetch failed, serving the other kind only: %s", kind, outcome)
                continue
            pages[kind] = outcome

        movies = normalize_many(
            pages.get("movie", {}).get("results"), "movie", image_base=self._image_base
        )
        series = normalize_many(
            pages.get("tv", {}).get("results"), "tv", image_base=self._image_base
        )
        return BrowsePage(
            results=interleave(movies, series),
            total_results=sum(_as_int(page.get("total_results")) for page in pages.values()),
            total_pages=max(
                (_as_int(page.get("total_pages")) for page in pages.values()), default=0
            ),
        )

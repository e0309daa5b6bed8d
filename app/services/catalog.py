"""Per-kind catalog operations backing the movie, series and anime routes."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Mapping

from ..models import ContentKind, NormalizedResult
from .content_cache import ContentCache, DetailLookup
from .normalizer import DEFAULT_IMAGE_BASE, is_anime, normalize, normalize_many
from .tmdb import TMDBClient, list_envelope

logger = logging.getLogger(__name__)

PERSONALIZED_PER_KIND = 4
PERSONALIZED_LIMIT = 12
ANIME_TOP_RATED_VOTE_FLOOR = 50


class CatalogService:
    """High level catalog reads shared by the HTTP routes."""

    def __init__(
        self,
        tmdb: TMDBClient,
        content_cache: ContentCache,
        *,
        image_base: str = DEFAULT_IMAGE_BASE,
        rng: random.Random | None = None,
    ) -> None:
        self._tmdb = tmdb
        self._content_cache = content_cache
        self._image_base = image_base
        self._rng = rng or random.Random()

    async def trending(self, kind: ContentKind, page: int = 1) -> dict[str, Any]:
        """Weekly trending titles; anime has no trending feed so uses popularity."""

        if kind == "anime":
            data = await self._tmdb.discover_anime(
                {"page": page, "sort_by": "popularity.desc"}
            )
            self._content_cache.schedule_upserts(data.get("results"), kind)
            return list_envelope(data)
        return await self._content_cache.trending(kind, "week", page)

    async def popular(self, kind: ContentKind, page: int = 1) -> dict[str, Any]:
        if kind == "anime":
            data = await self._tmdb.discover_anime(
                {
                    "page": page,
                    "sort_by": "vote_average.desc",
                    "vote_count.gte": ANIME_TOP_RATED_VOTE_FLOOR,
                }
            )
        else:
            data = await self._tmdb.popular(kind, page)
        return list_envelope(data)

    async def now_playing(self, kind: ContentKind, page: int = 1) -> dict[str, Any]:
        if kind == "anime":
            data = await self._tmdb.discover_anime(
                {"page": page, "sort_by": "first_air_date.desc"}
            )
        else:
            data = await self._tmdb.now_playing(kind, page)
        return list_envelope(data)

    async def detail(self, kind: ContentKind, tmdb_id: int) -> DetailLookup:
        return await self._content_cache.get_or_fetch_detail(kind, tmdb_id)

    async def recommendations(
        self, kind: ContentKind, tmdb_id: int, page: int = 1
    ) -> dict[str, Any]:
        target = "movie" if kind == "movie" else "tv"
        data = await self._tmdb.recommendations(target, tmdb_id, page)
        return list_envelope(data)

    async def genres(self, kind: ContentKind) -> list[dict[str, Any]]:
        return await self._tmdb.genres("movie" if kind == "movie" else "tv")

    async def search(
        self, kind: str, query: str, page: int = 1
    ) -> tuple[list[NormalizedResult], dict[str, Any]]:
        """Search TMDB and return normalized results plus the raw page info.

        Anime results are filtered from a TV search page, so the page counts
        in the raw data describe the unfiltered search.
        """

        if kind == "all":
            data = await self._tmdb.search("multi", query, page)
            results = [
                normalize(item, item["media_type"], image_base=self._image_base)
                for item in data.get("results") or []
                if isinstance(item, Mapping)
                and item.get("id") is not None
                and item.get("media_type") in ("movie", "tv")
            ]
            return results, data

        if kind == "anime":
            data = await self._tmdb.search("tv", query, page)
            matches = [
                item
                for item in data.get("results") or []
                if isinstance(item, Mapping) and is_anime(item)
            ]
            return normalize_many(matches, "anime", image_base=self._image_base), data

        data = await self._tmdb.search(kind, query, page)
        return normalize_many(data.get("results"), kind, image_base=self._image_base), data

    async def personalized(self) -> list[NormalizedResult]:
        """Return a shuffled mix of trending and popular titles of every kind."""

        sources: list[tuple[ContentKind, str]] = [
            ("movie", "trending"),
            ("tv", "trending"),
            ("anime", "trending"),
            ("movie", "popular"),
            ("tv", "popular"),
            ("anime", "popular"),
        ]
        outcomes = await asyncio.gather(
            *(
                self.trending(kind) if category == "trending" else self.popular(kind)
                for kind, category in sources
            ),
            return_exceptions=True,
        )

        by_kind: dict[str, list[NormalizedResult]] = {"movie": [], "tv": [], "anime": []}
        seen: set[str] = set()
        for (kind, category), outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Skipping %s %s for personalized feed: %s", category, kind, outcome)
                continue
            data = outcome.get("data") or {}
            for result in normalize_many(data.get("results"), kind, image_base=self._image_base):
                if result.unique_id in seen:
                    continue
                seen.add(result.unique_id)
                by_kind[kind].append(result)

        if not any(by_kind.values()):
            raise LookupError("Failed to fetch any content")

        mixed: list[NormalizedResult] = []
        for items in by_kind.values():
            self._rng.shuffle(items)
            mixed.extend(items[:PERSONALIZED_PER_KIND])
        self._rng.shuffle(mixed)
        return mixed[:PERSONALIZED_LIMIT]

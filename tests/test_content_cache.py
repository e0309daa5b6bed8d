from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app.config import Settings
from app.database import Database
from app.db_models import ContentRecord
from app.services.content_cache import ContentCache
from app.services.kv_cache import RedisCache
from app.services.tmdb import TMDBClient, TMDBNotFoundError
from app.utils import utcnow

BASE_URL = "https://api.example.com/3"

HEAT = {
    "id": 5,
    "title": "Heat",
    "overview": "A heist goes wrong.",
    "poster_path": "/heat.jpg",
    "backdrop_path": "/heat-bg.jpg",
    "release_date": "1995-12-15",
    "genres": [{"id": 28, "name": "Action"}, {"id": 80, "name": "Crime"}],
    "vote_average": 8.0,
}


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the cache uses."""

    def __init__(self, *, fail: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail
        self.closed = False

    async def get(self, key: str) -> str | None:
        if self.fail:
            raise RedisConnectionError("redis is down")
        return self.values.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        if self.fail:
            raise RedisConnectionError("redis is down")
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def aclose(self) -> None:
        self.closed = True


class Upstream:
    """Records TMDB requests and answers them from a path map."""

    def __init__(self, responses: dict[str, dict[str, Any]]) -> None:
        self.responses = responses
        self.paths: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        payload = self.responses.get(request.url.path)
        if payload is None:
            return httpx.Response(404, json={"status_message": "not found"})
        return httpx.Response(200, json=payload)


@asynccontextmanager
async def _content_cache(
    settings: Settings,
    tmp_path: Path,
    upstream: Upstream,
    *,
    redis_client: FakeRedis | None = None,
    dialect_name: str | None = None,
    create_tables: bool = True,
    cache_class: type[ContentCache] = ContentCache,
) -> AsyncIterator[tuple[ContentCache, Database]]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    if create_tables:
        await database.create_all()
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(upstream), base_url=BASE_URL
    )
    cache = cache_class(
        settings,
        TMDBClient(settings, http_client),
        database.session_factory,
        RedisCache(redis_client),  # type: ignore[arg-type]
        dialect_name=dialect_name or database.dialect_name,
    )
    try:
        yield cache, database
    finally:
        await cache.drain()
        await http_client.aclose()
        await database.dispose()


async def _row_count(database: Database) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count(ContentRecord.id)))).scalar_one()


@pytest.mark.anyio("asyncio")
async def test_detail_miss_fetches_and_mirrors(settings: Settings, tmp_path: Path) -> None:
    upstream = Upstream({"/3/movie/5": HEAT})

    async with _content_cache(settings, tmp_path, upstream) as (cache, database):
        first = await cache.get_or_fetch_detail("movie", 5)
        second = await cache.get_or_fetch_detail("movie", 5)
        rows = await _row_count(database)

    assert upstream.paths == ["/3/movie/5"]
    assert first.from_cache is False
    assert first.payload == HEAT
    assert second.from_cache is True
    assert second.item.title == "Heat"
    assert second.item.genres == ["Action", "Crime"]
    assert second.payload["title"] == "Heat"
    assert second.payload["release_date"] == "1995-12-15"
    assert second.payload["genres"] == [{"name": "Action"}, {"name": "Crime"}]
    assert rows == 1


@pytest.mark.anyio("asyncio")
async def test_stale_detail_is_refetched(settings: Settings, tmp_path: Path) -> None:
    upstream = Upstream({"/3/movie/5": {**HEAT, "title": "Heat (Remastered)"}})

    async with _content_cache(settings, tmp_path, upstream) as (cache, database):
        await cache.upsert(
            {
                "tmdb_id": 5,
                "content_type": "movie",
                "title": "Heat",
                "genres": ["Action"],
                "rating": 7.0,
            }
        )
        async with database.session() as session:
            await session.execute(
                update(ContentRecord).values(last_fetched=utcnow() - timedelta(days=8))
            )
            await session.commit()

        lookup = await cache.get_or_fetch_detail("movie", 5)
        record = await cache.load(5, "movie")

    assert upstream.paths == ["/3/movie/5"]
    assert lookup.from_cache is False
    assert record is not None
    assert record.title == "Heat (Remastered)"
    assert utcnow() - record.last_fetched < timedelta(minutes=5)


@pytest.mark.anyio("asyncio")
async def test_anime_details_are_mirrored_as_tv(settings: Settings, tmp_path: Path) -> None:
    upstream = Upstream(
        {"/3/tv/99": {"id": 99, "name": "Frieren", "first_air_date": "2023-09-29"}}
    )

    async with _content_cache(settings, tmp_path, upstream) as (cache, _):
        lookup = await cache.get_or_fetch_detail("anime", 99)
        cached = await cache.get_or_fetch_detail("tv", 99)

    assert lookup.item.content_type == "tv"
    assert cached.from_cache is True
    assert cached.payload["name"] == "Frieren"
    assert cached.payload["first_air_date"] == "2023-09-29"


@pytest.mark.anyio("asyncio")
async def test_missing_detail_propagates_not_found(settings: Settings, tmp_path: Path) -> None:
    async with _content_cache(settings, tmp_path, Upstream({})) as (cache, database):
        with pytest.raises(TMDBNotFoundError):
            await cache.get_or_fetch_detail("movie", 404)
        rows = await _row_count(database)

    assert rows == 0


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("dialect_name", [None, "mysql"])
async def test_upsert_overwrites_existing_row(
    settings: Settings, tmp_path: Path, dialect_name: str | None
) -> None:
    """Both the native upsert and the select-then-update path keep one row."""

    async with _content_cache(
        settings, tmp_path, Upstream({}), dialect_name=dialect_name
    ) as (cache, database):
        await cache.upsert({"tmdb_id": 1, "content_type": "tv", "title": "Old", "rating": 5.0})
        await cache.upsert({"tmdb_id": 1, "content_type": "tv", "title": "New", "rating": 6.5})
        await cache.upsert({"tmdb_id": 1, "content_type": "movie", "title": "Film"})
        series = await cache.load(1, "tv")
        rows = await _row_count(database)

    assert rows == 2
    assert series is not None
    assert series.title == "New"
    assert series.rating == 6.5


@pytest.mark.anyio("asyncio")
async def test_movie_trending_is_cached_in_redis(settings: Settings, tmp_path: Path) -> None:
    trending = {
        "page": 1,
        "total_pages": 3,
        "total_results": 60,
        "results": [{"id": 5, "title": "Heat"}, {"id": 6, "title": "Ronin"}],
    }
    upstream = Upstream({"/3/trending/movie/week": trending})
    redis_client = FakeRedis()

    async with _content_cache(
        settings, tmp_path, upstream, redis_client=redis_client
    ) as (cache, database):
        first = await cache.trending("movie", "week", 1)
        second = await cache.trending("movie", "week", 1)
        await cache.drain()
        rows = await _row_count(database)

    assert upstream.paths == ["/3/trending/movie/week"]
    assert first == second
    assert first["totalPages"] == 3
    assert redis_client.ttls == {"trending:movie:week:1": settings.trending_cache_seconds}
    assert json.loads(redis_client.values["trending:movie:week:1"]) == first
    assert rows == 2


@pytest.mark.anyio("asyncio")
async def test_cached_trending_is_returned_verbatim(settings: Settings, tmp_path: Path) -> None:
    cached = {"success": True, "data": {"results": []}, "page": 2}
    redis_client = FakeRedis()
    redis_client.values["trending:movie:week:2"] = json.dumps(cached)
    upstream = Upstream({})

    async with _content_cache(
        settings, tmp_path, upstream, redis_client=redis_client
    ) as (cache, _):
        payload = await cache.trending("movie", "week", 2)

    assert payload == cached
    assert upstream.paths == []


@pytest.mark.anyio("asyncio")
async def test_series_trending_bypasses_redis(settings: Settings, tmp_path: Path) -> None:
    upstream = Upstream({"/3/trending/tv/week": {"page": 1, "results": [{"id": 7, "name": "Dark"}]}})
    redis_client = FakeRedis()

    async with _content_cache(
        settings, tmp_path, upstream, redis_client=redis_client
    ) as (cache, _):
        await cache.trending("tv", "week", 1)
        await cache.trending("tv", "week", 1)
        await cache.drain()
        record = await cache.load(7, "tv")

    assert upstream.paths == ["/3/trending/tv/week", "/3/trending/tv/week"]
    assert redis_client.values == {}
    assert record is not None
    assert record.title == "Dark"


@pytest.mark.anyio("asyncio")
async def test_redis_failures_fall_back_to_upstream(settings: Settings, tmp_path: Path) -> None:
    upstream = Upstream({"/3/trending/movie/week": {"page": 1, "results": []}})

    async with _content_cache(
        settings, tmp_path, upstream, redis_client=FakeRedis(fail=True)
    ) as (cache, _):
        payload = await cache.trending("movie", "week", 1)

    assert payload["success"] is True
    assert upstream.paths == ["/3/trending/movie/week"]


@pytest.mark.anyio("asyncio")
async def test_schedule_upserts_skips_entries_without_ids(
    settings: Settings, tmp_path: Path
) -> None:
    async with _content_cache(settings, tmp_path, Upstream({})) as (cache, database):
        assert cache.schedule_upserts([{"title": "No id"}, "junk"], "movie") is None
        task = cache.schedule_upserts([{"id": 3, "title": "Ok"}], "movie")
        assert task is not None
        await cache.drain()
        rows = await _row_count(database)

    assert rows == 1


class UnwritableContentCache(ContentCache):
    """Reads the mirror normally but every write fails."""

    async def upsert(self, values):  # type: ignore[override]
        raise SQLAlchemyError("database is read-only")


@pytest.mark.anyio("asyncio")
async def test_failed_background_writes_do_not_fail_trending(
    settings: Settings, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    upstream = Upstream({"/3/trending/tv/week": {"page": 1, "results": [{"id": 7, "name": "Dark"}]}})

    async with _content_cache(
        settings, tmp_path, upstream, create_tables=False
    ) as (cache, _):
        payload = await cache.trending("tv", "week", 1)
        await cache.drain()

    assert payload["success"] is True
    assert payload["data"]["results"][0]["name"] == "Dark"
    assert "Background cache write for tv 7 failed" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_store_errors_while_checking_freshness_propagate(
    settings: Settings, tmp_path: Path
) -> None:
    upstream = Upstream({"/3/tv/1": {"id": 1, "name": "Dark"}})

    async with _content_cache(
        settings, tmp_path, upstream, create_tables=False
    ) as (cache, _):
        with pytest.raises(OperationalError):
            await cache.get_or_fetch_detail("tv", 1)

    assert upstream.paths == []


@pytest.mark.anyio("asyncio")
async def test_detail_is_served_when_the_mirror_write_fails(
    settings: Settings, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    upstream = Upstream({"/3/movie/5": HEAT})

    async with _content_cache(
        settings, tmp_path, upstream, cache_class=UnwritableContentCache
    ) as (cache, database):
        lookup = await cache.get_or_fetch_detail("movie", 5)
        rows = await _row_count(database)

    assert lookup.from_cache is False
    assert lookup.payload == HEAT
    assert lookup.item.title == "Heat"
    assert rows == 0
    assert "Failed to cache movie 5 after detail fetch" in caplog.text

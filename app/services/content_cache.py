"""Local mirror of TMDB content with freshness checks and write-through."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import ContentRecord
from ..models import ContentItem, ContentKind, StoredKind, stored_kind
from ..utils import utcnow
from .kv_cache import RedisCache
from .normalizer import to_content_values
from .tmdb import TMDBClient, list_envelope

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ("tmdb_id", "content_type")
_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


@dataclass(slots=True)
class DetailLookup:
    """Result of a detail lookup and whether it was served from the mirror."""

    item: ContentItem
    payload: dict[str, Any]
    from_cache: bool


class ContentCache:
    """Serve detail and trending data through the local store and Redis."""

    def __init__(
        self,
        settings: Settings,
        tmdb: TMDBClient,
        session_factory: async_sessionmaker[AsyncSession],
        kv_cache: RedisCache,
        *,
        dialect_name: str = "sqlite",
    ) -> None:
        self._settings = settings
        self._tmdb = tmdb
        self._session_factory = session_factory
        self._kv_cache = kv_cache
        self._dialect_name = dialect_name
        self._max_age = timedelta(days=settings.detail_cache_days)
        self._semaphore = asyncio.Semaphore(settings.upsert_concurrency)
        self._pending: set[asyncio.Task[None]] = set()

    async def get_or_fetch_detail(self, kind: ContentKind, tmdb_id: int) -> DetailLookup:
        """Return the mirrored row when fresh, otherwise fetch and store it.

        Errors raised while reading the mirror propagate: without the row we
        cannot tell whether serving from cache is allowed.
        """

        target = stored_kind(kind)
        record = await self.load(tmdb_id, target)
        if record is not None and self._is_fresh(record):
            item = ContentItem.model_validate(record)
            return DetailLookup(item=item, payload=item.to_tmdb_payload(), from_cache=True)

        payload = await self._tmdb.details(target, tmdb_id)
        values = to_content_values(payload, kind)
        try:
            item = await self.upsert(values)
        except Exception as exc:
            logger.warning("Failed to cache %s %s after detail fetch: %s", target, tmdb_id, exc)
            item = ContentItem.model_validate({**values, "last_fetched": utcnow()})
        return DetailLookup(item=item, payload=payload, from_cache=False)

    async def trending(
        self, kind: StoredKind, window: str = "week", page: int = 1
    ) -> dict[str, Any]:
        """Return the trending list envelope, consulting Redis for movies."""

        cache_key = f"trending:{kind}:{window}:{page}"
        if kind == "movie":
            cached = await self._kv_cache.get(cache_key)
            if cached is not None:
                try:
                    return json.loads(cached)
                except ValueError:
                    logger.warning("Ignoring undecodable cache entry %s", cache_key)

        data = await self._tmdb.trending(kind, window, page)
        envelope = list_envelope(data)
        if kind == "movie":
            await self._kv_cache.set(
                cache_key, json.dumps(envelope), self._settings.trending_cache_seconds
            )
        self.schedule_upserts(data.get("results"), kind)
        return envelope

    async def load(self, tmdb_id: int, content_type: StoredKind) -> ContentRecord | None:
        async with self._session_factory() as session:
            stmt = select(ContentRecord).where(
                ContentRecord.tmdb_id == tmdb_id,
                ContentRecord.content_type == content_type,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def upsert(self, values: Mapping[str, Any]) -> ContentItem:
        """Insert or overwrite the row keyed by ``(tmdb_id, content_type)``."""

        row = {**values, "last_fetched": utcnow()}
        insert = _UPSERT_INSERTS.get(self._dialect_name)
        async with self._session_factory() as session:
            if insert is not None:
                stmt = insert(ContentRecord).values(**row)
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(_KEY_COLUMNS),
                    set_={
                        column: stmt.excluded[column]
                        for column in row
                        if column not in _KEY_COLUMNS
                    },
                )
                await session.execute(stmt)
                await session.commit()
            else:
                await self._merge_row(session, row)
        return ContentItem.model_validate(row)

    def schedule_upserts(
        self, items: Iterable[Any] | None, kind: ContentKind
    ) -> asyncio.Task[None] | None:
        """Mirror list results in the background without delaying the caller."""

        batch: list[dict[str, Any]] = []
        for item in items or []:
            if not isinstance(item, Mapping) or item.get("id") is None:
                continue
            try:
                batch.append(to_content_values(item, kind))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed %s result %r: %s", kind, item.get("id"), exc)
        if not batch:
            return None

        task = asyncio.create_task(self._persist_batch(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background upserts to settle."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _persist_batch(self, batch: list[dict[str, Any]]) -> None:
        await asyncio.gather(*(self._persist_one(values) for values in batch))

    async def _persist_one(self, values: dict[str, Any]) -> None:
        async with self._semaphore:
            try:
                await self.upsert(values)
            except Exception as exc:  # best-effort mirror write
                logger.warning(
                    "Background cache write for %s %s failed: %s",
                    values.get("content_type"),
                    values.get("tmdb_id"),
                    exc,
                )

    def _is_fresh(self, record: ContentRecord) -> bool:
        if record.last_fetched is None:
            return False
        return utcnow() - record.last_fetched < self._max_age

    @staticmethod
    async def _merge_row(session: AsyncSession, row: dict[str, Any]) -> None:
        stmt = select(ContentRecord).where(
            ContentRecord.tmdb_id == row["tmdb_id"],
            ContentRecord.content_type == row["content_type"],
        )
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing is None:
            session.add(ContentRecord(**row))
            try:
                await session.commit()
                return
            except IntegrityError:
                # Lost an insert race; overwrite the winner's row instead.
                await session.rollback()
                existing = (await session.execute(stmt)).scalar_one()
        for column, value in row.items():
            setattr(existing, column, value)
        await session.commit()

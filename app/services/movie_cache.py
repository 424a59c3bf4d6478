"""Durable per-item copy of catalog detail responses."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import dialect_insert
from ..db_models import MovieCache
from ..utils import utcnow


class MovieCacheStore:
    """Read/overwrite access to the ``movie_cache`` table.

    Rows older than ``max_age`` are ignored by :meth:`get` but kept, so
    :meth:`get_stale` can still serve them when the catalog is unreachable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_age: timedelta = timedelta(days=7),
    ) -> None:
        self._session_factory = session_factory
        self._max_age = max_age

    async def get(self, tmdb_id: int, media_type: str) -> dict[str, Any] | None:
        """Return the cached payload written within the validity window."""

        cutoff = utcnow() - self._max_age
        async with self._session_factory() as session:
            stmt = select(MovieCache.data).where(
                MovieCache.tmdb_id == tmdb_id,
                MovieCache.media_type == media_type,
                MovieCache.updated_at > cutoff,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_stale(self, tmdb_id: int, media_type: str) -> dict[str, Any] | None:
        """Return the cached payload regardless of its age."""

        async with self._session_factory() as session:
            stmt = select(MovieCache.data).where(
                MovieCache.tmdb_id == tmdb_id,
                MovieCache.media_type == media_type,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def set(self, tmdb_id: int, media_type: str, data: dict[str, Any]) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            stmt = dialect_insert(session, MovieCache).values(
                tmdb_id=tmdb_id, media_type=media_type, data=data, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[MovieCache.tmdb_id, MovieCache.media_type],
                set_={"data": stmt.excluded.data, "updated_at": now},
            )
            await session.execute(stmt)
            await session.commit()

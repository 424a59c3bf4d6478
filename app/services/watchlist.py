"""Watchlist reads and writes, including the read-triggered snapshot backfill."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import dialect_insert
from ..db_models import Rating, WatchlistEntry
from ..errors import AppError, CatalogError
from ..models import CatalogItem, ImageConfig, MediaType, SortKey
from ..utils import title_sort_key, utcnow
from .enrichment import (
    EnrichedItem,
    ItemKey,
    Snapshot,
    SnapshotPatch,
    WatchlistRow,
    attach_partner_ratings,
    merge_row,
    serialize_item,
    unwatched_intersection,
)
from .pairs import PairService
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = (
    "title",
    "release_date",
    "poster_path",
    "overview",
    "genre",
    "runtime",
    "vote_average",
)


@dataclass(slots=True)
class BackfillReport:
    updated: int = 0
    failed: int = 0
    skipped: int = 0


def _row_from(entry: WatchlistEntry, rating: int | None) -> WatchlistRow:
    return WatchlistRow(
        movie_id=entry.movie_id,
        media_type=entry.media_type,
        added_at=entry.added_at,
        snapshot=Snapshot(
            title=entry.title,
            release_date=entry.release_date,
            poster_path=entry.poster_path,
            overview=entry.overview,
            genre=entry.genre,
            runtime=entry.runtime,
            vote_average=entry.vote_average,
        ),
        rating=rating,
    )


def _snapshot_values(detail: CatalogItem) -> dict[str, Any]:
    values = {
        "title": detail.title or None,
        "release_date": detail.release_date,
        "poster_path": detail.poster_path,
        "overview": detail.overview,
        "genre": detail.genre_summary,
        "runtime": detail.runtime,
        "vote_average": detail.vote_average,
    }
    return {column: value for column, value in values.items() if value is not None}


def _entry_key_clause(user_id: str, movie_id: int, media_type: str):
    return and_(
        WatchlistEntry.user_id == user_id,
        WatchlistEntry.movie_id == movie_id,
        WatchlistEntry.media_type == media_type,
    )


class WatchlistService:
    """Lists the caller's, the partner's and the shared watchlist views."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tmdb: TMDBClient,
        pairs: PairService,
        *,
        concurrency: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self._tmdb = tmdb
        self._pairs = pairs
        self._concurrency = max(1, concurrency)
        self._backfills: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    async def list_mine(
        self, user_id: str, sort: SortKey = "added_at"
    ) -> list[dict[str, Any]]:
        rows = await self._load_rows(user_id, order_by_rating=sort == "rating")
        if not rows:
            return []

        image_config = await self._tmdb.image_config_or_default()
        items = await self._enrich(user_id, rows)

        partner_id = await self._optional_partner(user_id)
        if partner_id:
            partner_ratings = await self._partner_ratings(
                partner_id, [row.key for row in rows]
            )
            attach_partner_ratings(items, partner_ratings)

        if sort == "title":
            items.sort(key=lambda item: title_sort_key(item.title))
        return [
            serialize_item(item, image_config, include_partner=True) for item in items
        ]

    async def list_partner(self, user_id: str) -> list[dict[str, Any]]:
        """The partner's still-unwatched items, flagged when the caller saved them too."""

        partner_id = await self._pairs.partner_id(user_id)
        if partner_id is None:
            return []

        rows = [
            row
            for row in await self._load_rows(partner_id)
            if row.rating is None
        ]
        if not rows:
            return []

        my_keys = set(await self._load_keys(user_id))
        image_config = await self._tmdb.image_config_or_default()
        items = await self._enrich(partner_id, rows)
        payload: list[dict[str, Any]] = []
        for item in items:
            entry = serialize_item(item, image_config, include_ratings=False)
            entry["in_my_list"] = item.key in my_keys
            payload.append(entry)
        return payload

    async def list_intersections(self, user_id: str) -> list[dict[str, Any]]:
        """Items both partners saved that neither of them has rated."""

        partner_id = await self._pairs.partner_id(user_id)
        if partner_id is None:
            return []

        mine = await self._load_rows(user_id)
        if not mine:
            return []
        partner_keys = {
            row.key: row.rating for row in await self._load_rows(partner_id)
        }
        shared = unwatched_intersection(mine, partner_keys)
        if not shared:
            return []

        image_config = await self._tmdb.image_config_or_default()
        items = await self._enrich(user_id, shared)
        return [
            serialize_item(item, image_config, include_ratings=False) for item in items
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def add(self, user_id: str, movie_id: int, media_type: MediaType) -> bool:
        """Save an item; returns ``False`` when it was already on the list."""

        async with self._session_factory() as session:
            stmt = (
                dialect_insert(session, WatchlistEntry)
                .values(
                    user_id=user_id,
                    movie_id=movie_id,
                    media_type=media_type,
                    added_at=utcnow(),
                )
                .on_conflict_do_nothing(
                    index_elements=[
                        WatchlistEntry.user_id,
                        WatchlistEntry.movie_id,
                        WatchlistEntry.media_type,
                    ]
                )
            )
            result = await session.execute(stmt)
            await session.commit()
        created = result.rowcount == 1

        try:
            detail = await self._tmdb.get_detail(movie_id, media_type)
        except CatalogError as exc:
            logger.warning(
                "Could not enrich %s %s on add: %s", media_type, movie_id, exc.kind.value
            )
            return created

        values = _snapshot_values(detail)
        if values:
            await self._apply_patches(
                user_id, [SnapshotPatch(movie_id, media_type, values)]
            )
        return created

    async def remove(self, user_id: str, movie_id: int, media_type: MediaType) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(Rating).where(
                    Rating.user_id == user_id,
                    Rating.movie_id == movie_id,
                    Rating.media_type == media_type,
                )
            )
            result = await session.execute(
                delete(WatchlistEntry).where(
                    _entry_key_clause(user_id, movie_id, media_type)
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                raise AppError(404, "Фильм не найден в списке", "NOT_FOUND")
            await session.commit()

    async def rate(
        self, user_id: str, movie_id: int, media_type: MediaType, rating: int
    ) -> None:
        async with self._session_factory() as session:
            exists = await session.execute(
                select(WatchlistEntry.movie_id).where(
                    _entry_key_clause(user_id, movie_id, media_type)
                )
            )
            if exists.first() is None:
                raise AppError(
                    400,
                    "Оценку можно поставить только фильму из своего списка",
                    "NOT_IN_WATCHLIST",
                )
            now = utcnow()
            stmt = dialect_insert(session, Rating).values(
                user_id=user_id,
                movie_id=movie_id,
                media_type=media_type,
                rating=rating,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Rating.user_id, Rating.movie_id, Rating.media_type],
                set_={"rating": stmt.excluded.rating, "updated_at": now},
            )
            await session.execute(stmt)
            await session.commit()

    async def unrate(self, user_id: str, movie_id: int, media_type: MediaType) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(Rating).where(
                    Rating.user_id == user_id,
                    Rating.movie_id == movie_id,
                    Rating.media_type == media_type,
                )
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def backfill_missing(self, *, concurrency: int = 5) -> BackfillReport:
        """Fill missing snapshot fields on every watchlist row from the catalog."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(WatchlistEntry.movie_id, WatchlistEntry.media_type)
                .where(
                    or_(
                        WatchlistEntry.title.is_(None),
                        WatchlistEntry.genre.is_(None),
                        WatchlistEntry.runtime.is_(None),
                        WatchlistEntry.vote_average.is_(None),
                    )
                )
                .distinct()
            )
            keys: list[ItemKey] = [(row[0], row[1]) for row in result.all()]

        report = BackfillReport()
        if not keys:
            return report

        logger.info("Backfilling %s catalog items", len(keys))
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _fill(key: ItemKey) -> bool:
            movie_id, media_type = key
            async with semaphore:
                detail = await self._tmdb.get_detail(movie_id, media_type)  # type: ignore[arg-type]
            values = _snapshot_values(detail)
            if not values:
                return False
            async with self._session_factory() as session:
                await session.execute(
                    update(WatchlistEntry)
                    .where(
                        WatchlistEntry.movie_id == movie_id,
                        WatchlistEntry.media_type == media_type,
                    )
                    .values(**self._coalesce(values))
                )
                await session.commit()
            return True

        results = await asyncio.gather(
            *(_fill(key) for key in keys), return_exceptions=True
        )
        for key, outcome in zip(keys, results):
            if isinstance(outcome, Exception):
                logger.warning("Backfill of %s %s failed: %s", key[1], key[0], outcome)
                report.failed += 1
            elif outcome:
                report.updated += 1
            else:
                report.skipped += 1
        return report

    async def drain_backfills(self) -> None:
        """Wait for write-backs scheduled by earlier reads."""

        while self._backfills:
            await asyncio.gather(*list(self._backfills), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _optional_partner(self, user_id: str) -> str | None:
        try:
            return await self._pairs.partner_id(user_id)
        except AppError as exc:
            if exc.code == "NO_PAIR":
                return None
            raise

    async def _load_rows(
        self, user_id: str, *, order_by_rating: bool = False
    ) -> list[WatchlistRow]:
        stmt = (
            select(WatchlistEntry, Rating.rating)
            .outerjoin(
                Rating,
                and_(
                    Rating.user_id == WatchlistEntry.user_id,
                    Rating.movie_id == WatchlistEntry.movie_id,
                    Rating.media_type == WatchlistEntry.media_type,
                ),
            )
            .where(WatchlistEntry.user_id == user_id)
        )
        if order_by_rating:
            stmt = stmt.order_by(
                Rating.rating.desc().nulls_last(), WatchlistEntry.added_at.desc()
            )
        else:
            stmt = stmt.order_by(WatchlistEntry.added_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_row_from(entry, rating) for entry, rating in result.all()]

    async def _load_keys(self, user_id: str) -> list[ItemKey]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WatchlistEntry.movie_id, WatchlistEntry.media_type).where(
                    WatchlistEntry.user_id == user_id
                )
            )
            return [(row[0], row[1]) for row in result.all()]

    async def _partner_ratings(
        self, partner_id: str, keys: Sequence[ItemKey]
    ) -> dict[ItemKey, int]:
        """Fetch the partner's scores for ``keys`` with a single query."""

        wanted = set(keys)
        if not wanted:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(Rating.movie_id, Rating.media_type, Rating.rating).where(
                    Rating.user_id == partner_id,
                    Rating.movie_id.in_({movie_id for movie_id, _ in wanted}),
                    Rating.media_type.in_({media_type for _, media_type in wanted}),
                )
            )
            ratings: dict[ItemKey, int] = {}
            for movie_id, media_type, rating in result.all():
                key = (movie_id, media_type)
                if key in wanted:
                    ratings[key] = rating
            return ratings

    async def _enrich(
        self, owner_id: str, rows: Sequence[WatchlistRow]
    ) -> list[EnrichedItem]:
        """Merge snapshots with catalog detail for the rows that need it."""

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _resolve(
            row: WatchlistRow,
        ) -> tuple[CatalogItem | None, CatalogItem | None]:
            async with semaphore:
                try:
                    return await self._tmdb.get_detail(row.movie_id, row.media_type), None  # type: ignore[arg-type]
                except CatalogError as exc:
                    logger.warning(
                        "Catalog detail for %s %s unavailable: %s",
                        row.media_type,
                        row.movie_id,
                        exc.kind.value,
                    )
                fallback = await self._tmdb.get_stale_detail(row.movie_id, row.media_type)  # type: ignore[arg-type]
                return None, fallback

        pending = [row for row in rows if not row.snapshot.is_complete]
        resolved: dict[ItemKey, tuple[CatalogItem | None, CatalogItem | None]] = {}
        if pending:
            results = await asyncio.gather(
                *(_resolve(row) for row in pending), return_exceptions=True
            )
            for row, outcome in zip(pending, results):
                if isinstance(outcome, Exception):
                    logger.warning(
                        "Enrichment of %s %s failed: %s",
                        row.media_type,
                        row.movie_id,
                        outcome,
                    )
                    continue
                resolved[row.key] = outcome

        items: list[EnrichedItem] = []
        patches: list[SnapshotPatch] = []
        for row in rows:
            detail, fallback = resolved.get(row.key, (None, None))
            item, patch = merge_row(row, detail, fallback)
            items.append(item)
            if patch is not None:
                patches.append(patch)

        if patches:
            self._schedule_backfill(owner_id, patches)
        return items

    def _schedule_backfill(self, owner_id: str, patches: list[SnapshotPatch]) -> None:
        async def _runner() -> None:
            try:
                await self._apply_patches(owner_id, patches)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception(
                    "Snapshot backfill for user %s failed: %s", owner_id, exc
                )

        task = asyncio.create_task(_runner())
        self._backfills.add(task)
        task.add_done_callback(self._backfills.discard)

    async def _apply_patches(
        self, owner_id: str, patches: Iterable[SnapshotPatch]
    ) -> None:
        async with self._session_factory() as session:
            for patch in patches:
                if not patch.values:
                    continue
                await session.execute(
                    update(WatchlistEntry)
                    .where(
                        _entry_key_clause(owner_id, patch.movie_id, patch.media_type)
                    )
                    .values(**self._coalesce(patch.values))
                )
            await session.commit()

    @staticmethod
    def _coalesce(values: dict[str, Any]) -> dict[str, Any]:
        """Build ``SET column = COALESCE(column, value)`` assignments."""

        return {
            column: func.coalesce(getattr(WatchlistEntry, column), value)
            for column, value in values.items()
            if column in SNAPSHOT_COLUMNS
        }

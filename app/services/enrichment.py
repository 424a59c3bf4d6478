"""Merging of stored watchlist snapshots with live catalog detail.

Every watchlist row carries a snapshot of catalog fields taken when the item
was first enriched. Reads trust that snapshot whenever it is complete; rows
that were never enriched, or that predate the derived fields (genre, runtime,
vote average), are refreshed from the catalog once and the missing values are
written back with a coalescing update. That write is the only side effect of
listing a watchlist and it can never overwrite a stored value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from ..models import CatalogItem, ImageConfig

ItemKey = tuple[int, str]

POSTER_SIZE = "w500"


@dataclass(slots=True)
class Snapshot:
    """Catalog fields frozen on a watchlist row."""

    title: str | None = None
    release_date: str | None = None
    poster_path: str | None = None
    overview: str | None = None
    genre: str | None = None
    runtime: int | None = None
    vote_average: float | None = None

    @property
    def is_enriched(self) -> bool:
        return self.title is not None or self.poster_path is not None

    @property
    def needs_backfill(self) -> bool:
        return self.is_enriched and (
            self.genre is None or self.runtime is None or self.vote_average is None
        )

    @property
    def is_complete(self) -> bool:
        return self.is_enriched and not self.needs_backfill


@dataclass(slots=True)
class WatchlistRow:
    movie_id: int
    media_type: str
    added_at: datetime | None
    snapshot: Snapshot
    rating: int | None = None

    @property
    def key(self) -> ItemKey:
        return (self.movie_id, self.media_type)


@dataclass(slots=True)
class SnapshotPatch:
    """Values to coalesce into a watchlist row; ``None`` fields are left alone."""

    movie_id: int
    media_type: str
    values: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> ItemKey:
        return (self.movie_id, self.media_type)


@dataclass(slots=True)
class EnrichedItem:
    movie_id: int
    media_type: str
    added_at: datetime | None
    title: str | None
    release_date: str | None
    poster_path: str | None
    overview: str | None
    genre: str | None
    runtime: int | None
    vote_average: float | None
    rating: int | None = None
    partner_rating: int | None = None

    @property
    def key(self) -> ItemKey:
        return (self.movie_id, self.media_type)

    @property
    def watched(self) -> bool:
        return self.rating is not None

    @property
    def average_rating(self) -> float | None:
        if self.rating is None or self.partner_rating is None:
            return None
        return round((self.rating + self.partner_rating) / 2, 1)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def merge_row(
    row: WatchlistRow,
    detail: CatalogItem | None = None,
    fallback: CatalogItem | None = None,
) -> tuple[EnrichedItem, SnapshotPatch | None]:
    """Resolve the displayed fields of one row and the write-back it warrants.

    ``detail`` is a fresh catalog response (``None`` when not fetched or when
    the fetch failed). ``fallback`` is an older catalog copy used only for
    title, release date and poster. Complete snapshots are returned verbatim.
    """

    snapshot = row.snapshot
    if snapshot.is_complete:
        return _from_snapshot(row), None

    fresh_genre = detail.genre_summary if detail else None
    fresh_runtime = detail.runtime if detail else None
    fresh_vote = detail.vote_average if detail else None
    fresh_title = (detail.title or None) if detail else None
    fresh_release = detail.release_date if detail else None
    fresh_poster = detail.poster_path if detail else None
    fresh_overview = detail.overview if detail else None

    item = EnrichedItem(
        movie_id=row.movie_id,
        media_type=row.media_type,
        added_at=row.added_at,
        title=_first(
            fresh_title, snapshot.title, (fallback.title or None) if fallback else None
        ),
        release_date=_first(
            fresh_release, snapshot.release_date, fallback.release_date if fallback else None
        ),
        poster_path=_first(
            fresh_poster, snapshot.poster_path, fallback.poster_path if fallback else None
        ),
        overview=_first(fresh_overview, snapshot.overview),
        genre=_first(fresh_genre, snapshot.genre),
        runtime=_first(fresh_runtime, snapshot.runtime),
        vote_average=_first(fresh_vote, snapshot.vote_average),
        rating=row.rating,
    )

    if detail is None:
        return item, None

    values: dict[str, Any] = {}
    if snapshot.needs_backfill:
        candidates = {
            "genre": (snapshot.genre, fresh_genre),
            "runtime": (snapshot.runtime, fresh_runtime),
            "vote_average": (snapshot.vote_average, fresh_vote),
        }
    else:
        # Never enriched: the whole snapshot is filled the same coalescing way.
        candidates = {
            "title": (snapshot.title, fresh_title),
            "release_date": (snapshot.release_date, fresh_release),
            "poster_path": (snapshot.poster_path, fresh_poster),
            "overview": (snapshot.overview, fresh_overview),
            "genre": (snapshot.genre, fresh_genre),
            "runtime": (snapshot.runtime, fresh_runtime),
            "vote_average": (snapshot.vote_average, fresh_vote),
        }
    for column, (stored, fresh) in candidates.items():
        if stored is None and fresh is not None:
            values[column] = fresh

    if not values:
        return item, None
    return item, SnapshotPatch(row.movie_id, row.media_type, values)


def _from_snapshot(row: WatchlistRow) -> EnrichedItem:
    snapshot = row.snapshot
    return EnrichedItem(
        movie_id=row.movie_id,
        media_type=row.media_type,
        added_at=row.added_at,
        title=snapshot.title,
        release_date=snapshot.release_date,
        poster_path=snapshot.poster_path,
        overview=snapshot.overview,
        genre=snapshot.genre,
        runtime=snapshot.runtime,
        vote_average=snapshot.vote_average,
        rating=row.rating,
    )


def attach_partner_ratings(
    items: Iterable[EnrichedItem], partner_ratings: Mapping[ItemKey, int]
) -> None:
    """Join the partner's scores onto the caller's items by (id, kind)."""

    for item in items:
        item.partner_rating = partner_ratings.get(item.key)


def unwatched_intersection(
    mine: Iterable[WatchlistRow], partner_keys: Mapping[ItemKey, int | None]
) -> list[WatchlistRow]:
    """Rows saved by both users that neither has rated yet.

    ``partner_keys`` maps every item on the partner's list to the partner's
    rating for it (``None`` when unrated).
    """

    shared: list[WatchlistRow] = []
    for row in mine:
        if row.key not in partner_keys:
            continue
        if row.rating is not None or partner_keys[row.key] is not None:
            continue
        shared.append(row)
    return shared


def serialize_item(
    item: EnrichedItem,
    image_config: ImageConfig,
    *,
    include_ratings: bool = True,
    include_partner: bool = False,
) -> dict[str, Any]:
    """Render an item for the JSON API."""

    payload: dict[str, Any] = {
        "movie_id": item.movie_id,
        "media_type": item.media_type,
        "added_at": item.added_at.isoformat() if item.added_at else None,
        "title": item.title or "",
        "release_date": item.release_date,
        "poster_path": image_config.poster_url(item.poster_path, POSTER_SIZE),
        "overview": item.overview,
        "genre": item.genre,
        "runtime": item.runtime,
        "vote_average": item.vote_average,
    }
    if include_ratings:
        payload["rating"] = item.rating
        payload["watched"] = item.watched
    if include_partner:
        payload["partner_rating"] = item.partner_rating
        payload["average_rating"] = item.average_rating
    return payload

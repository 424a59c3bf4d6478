"""Pydantic models for catalog payloads and request bodies."""

from __future__ import annotations

import re
from typing import Any, Literal, Mapping

from pydantic import BaseModel, EmailStr, Field, field_validator

MediaType = Literal["movie", "tv"]
MEDIA_TYPES: tuple[str, ...] = ("movie", "tv")
SortKey = Literal["added_at", "rating", "title"]

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")
_PAIR_CODE_RE = re.compile(r"[0-9]{6}")


class CatalogItem(BaseModel):
    """Movie or series metadata normalised into one internal shape."""

    id: int
    media_type: MediaType
    title: str = ""
    overview: str | None = None
    release_date: str | None = None
    poster_path: str | None = None
    vote_average: float | None = None
    genres: list[str] = Field(default_factory=list)
    runtime: int | None = None

    @property
    def genre_summary(self) -> str | None:
        """Comma-joined genre names as stored on watchlist entries."""

        return ", ".join(self.genres) if self.genres else None

    @classmethod
    def from_tmdb(cls, payload: Mapping[str, Any], media_type: MediaType) -> "CatalogItem":
        """Map a movie or TV payload from the catalog service onto ``CatalogItem``."""

        if media_type == "movie":
            title = payload.get("title") or payload.get("name")
            release_date = payload.get("release_date") or payload.get("first_air_date")
            runtime = payload.get("runtime")
        else:
            title = payload.get("name") or payload.get("title")
            release_date = payload.get("first_air_date") or payload.get("release_date")
            # Series only report per-episode run times; runtime stays movie-only.
            runtime = None

        genres = [
            str(genre["name"])
            for genre in payload.get("genres") or []
            if isinstance(genre, Mapping) and genre.get("name")
        ]
        vote_average = payload.get("vote_average")
        return cls(
            id=int(payload["id"]),
            media_type=media_type,
            title=str(title or ""),
            overview=payload.get("overview") or None,
            release_date=release_date or None,
            poster_path=payload.get("poster_path") or None,
            vote_average=float(vote_average) if isinstance(vote_average, (int, float)) else None,
            genres=genres,
            runtime=runtime if isinstance(runtime, int) and runtime > 0 else None,
        )


class SearchPage(BaseModel):
    page: int = 1
    results: list[CatalogItem] = Field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0

    @classmethod
    def from_tmdb(cls, payload: Mapping[str, Any]) -> "SearchPage":
        """Keep only movie and TV hits from a multi-search response."""

        results: list[CatalogItem] = []
        for entry in payload.get("results") or []:
            if not isinstance(entry, Mapping):
                continue
            media_type = entry.get("media_type")
            if media_type not in MEDIA_TYPES or entry.get("id") is None:
                continue
            results.append(CatalogItem.from_tmdb(entry, media_type))
        return cls(
            page=int(payload.get("page") or 1),
            results=results,
            total_pages=int(payload.get("total_pages") or 0),
            total_results=int(payload.get("total_results") or 0),
        )


class ImageConfig(BaseModel):
    base_url: str
    poster_sizes: list[str] = Field(default_factory=list)

    @classmethod
    def from_tmdb(cls, payload: Mapping[str, Any]) -> "ImageConfig":
        images = payload.get("images") or {}
        return cls(
            base_url=str(images.get("secure_base_url") or images.get("base_url") or ""),
            poster_sizes=[str(size) for size in images.get("poster_sizes") or []],
        )

    def poster_url(self, path: str | None, size: str) -> str | None:
        if not path:
            return None
        if path.startswith("http"):
            return path
        return f"{self.base_url}{size}{path}"


PAIR_CODE_MESSAGE = "Код пары должен состоять из 6 цифр"
RATING_MESSAGE = "Оценка от 1 до 10"
MOVIE_ID_MESSAGE = "Некорректный movie_id"
MEDIA_TYPE_MESSAGE = "Тип должен быть movie или tv"

# Messages used for any validation failure on these fields, whatever its cause.
FIELD_MESSAGES: dict[str, str] = {
    "email": "Некорректный email",
    "code": PAIR_CODE_MESSAGE,
    "rating": RATING_MESSAGE,
    "movie_id": MOVIE_ID_MESSAGE,
    "media_type": MEDIA_TYPE_MESSAGE,
    "type": MEDIA_TYPE_MESSAGE,
}


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str
    name: str = Field(default="", max_length=255)

    @field_validator("password")
    @classmethod
    def _check_password_policy(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("Минимум 8 символов")
        if not (_LETTER_RE.search(value) and _DIGIT_RE.search(value)):
            raise ValueError("Нужна минимум одна буква и одна цифра")
        return value


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class JoinPairRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        if not _PAIR_CODE_RE.fullmatch(value):
            raise ValueError(PAIR_CODE_MESSAGE)
        return value


class AddWatchlistRequest(BaseModel):
    movie_id: int
    media_type: MediaType = "movie"

    @field_validator("movie_id")
    @classmethod
    def _check_movie_id(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(MOVIE_ID_MESSAGE)
        return value


class RateRequest(BaseModel):
    rating: int

    @field_validator("rating")
    @classmethod
    def _check_rating(cls, value: int) -> int:
        if not 1 <= value <= 10:
            raise ValueError(RATING_MESSAGE)
        return value

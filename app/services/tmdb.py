"""Client for The Movie Database (TMDB) catalog service."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..cache import TTLCache
from ..config import Settings
from ..errors import CatalogError, CatalogErrorKind
from ..models import CatalogItem, ImageConfig, MediaType, SearchPage
from .movie_cache import MovieCacheStore

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/"


class TMDBClient:
    """Read-through cached access to search, item detail and image configuration."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        cache: TTLCache,
        movie_cache: MovieCacheStore | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._cache = cache
        self._movie_cache = movie_cache

    async def search(self, query: str, page: int = 1) -> SearchPage:
        """Search movies and series; blank queries never reach the network."""

        normalized = query.strip()
        if not normalized:
            return SearchPage()
        page = max(1, page)
        cache_key = f"tmdb:search:{quote(normalized, safe='')}:{page}"
        payload = await self._fetch(
            "/search/multi",
            {"query": normalized, "page": page, "include_adult": "false"},
            cache_key=cache_key,
            ttl=self._settings.search_cache_seconds,
        )
        return SearchPage.from_tmdb(payload)

    async def get_detail(self, tmdb_id: int, media_type: MediaType) -> CatalogItem:
        """Return item detail, preferring the durable cache over the network."""

        if self._movie_cache is not None:
            cached = await self._movie_cache.get(tmdb_id, media_type)
            if cached:
                return CatalogItem.from_tmdb(cached, media_type)

        payload = await self._fetch(
            f"/{media_type}/{tmdb_id}",
            {},
            cache_key=f"tmdb:{media_type}:{tmdb_id}",
            ttl=self._settings.detail_cache_seconds,
        )
        if self._movie_cache is not None:
            try:
                await self._movie_cache.set(tmdb_id, media_type, payload)
            except Exception as exc:
                logger.warning(
                    "Could not persist %s %s to the movie cache: %s",
                    media_type,
                    tmdb_id,
                    exc,
                )
        return CatalogItem.from_tmdb(payload, media_type)

    async def get_stale_detail(
        self, tmdb_id: int, media_type: MediaType
    ) -> CatalogItem | None:
        """Return the last durable copy of an item even if it has expired."""

        if self._movie_cache is None:
            return None
        payload = await self._movie_cache.get_stale(tmdb_id, media_type)
        if not payload:
            return None
        return CatalogItem.from_tmdb(payload, media_type)

    async def get_image_config(self) -> ImageConfig:
        payload = await self._fetch(
            "/configuration",
            {},
            cache_key="tmdb:configuration",
            ttl=self._settings.config_cache_seconds,
        )
        return ImageConfig.from_tmdb(payload)

    async def image_config_or_default(self) -> ImageConfig:
        """Image configuration for list views, which must render without it."""

        try:
            config = await self.get_image_config()
        except CatalogError as exc:
            logger.warning("Image configuration unavailable: %s", exc.kind.value)
            config = None
        if config is None or not config.base_url:
            return ImageConfig(base_url=DEFAULT_IMAGE_BASE_URL)
        return config

    async def _fetch(
        self,
        path: str,
        params: dict[str, Any],
        *,
        cache_key: str,
        ttl: int,
    ) -> dict[str, Any]:
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return cached

        request_params = {
            **params,
            "api_key": self._settings.tmdb_api_key or "",
            "language": self._settings.tmdb_language,
            "region": self._settings.tmdb_region,
        }
        try:
            response = await self._client.get(path, params=request_params)
        except httpx.TimeoutException as exc:
            logger.warning("TMDB request %s timed out", path)
            raise CatalogError(CatalogErrorKind.TIMEOUT) from exc
        except httpx.HTTPError as exc:
            logger.warning("TMDB request %s failed: %s", path, exc)
            raise CatalogError(CatalogErrorKind.NETWORK) from exc

        status = response.status_code
        if status == 429:
            raise CatalogError(CatalogErrorKind.RATE_LIMITED, status)
        if status == 404:
            raise CatalogError(CatalogErrorKind.NOT_FOUND, status)
        if status == 504:
            raise CatalogError(CatalogErrorKind.TIMEOUT, status)
        if status >= 300:
            logger.warning("TMDB request %s returned %s", path, status)
            raise CatalogError(CatalogErrorKind.UNAVAILABLE, status)

        try:
            data = response.json()
        except ValueError as exc:
            raise CatalogError(CatalogErrorKind.UNAVAILABLE, status) from exc
        if not isinstance(data, dict):
            raise CatalogError(CatalogErrorKind.UNAVAILABLE, status)

        await self._cache.set(cache_key, data, ttl)
        return data

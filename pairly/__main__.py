"""Module executed when running ``python -m pairly``."""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import timedelta

import httpx
import uvicorn

from app.cache import create_cache
from app.config import Settings, get_settings
from app.database import Database
from app.services.movie_cache import MovieCacheStore
from app.services.pairs import PairService
from app.services.tmdb import TMDBClient
from app.services.watchlist import BackfillReport, WatchlistService

logger = logging.getLogger("pairly")

BACKFILL_CONCURRENCY = 5


def serve(settings: Settings) -> None:
    """Start the uvicorn server using the configured settings."""

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )


async def run_backfill(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BackfillReport:
    """Fill missing snapshot fields on every stored watchlist row."""

    database = Database(settings.database_url)
    await database.create_all()
    cache = create_cache(settings.cache_url)
    client_kwargs = {"transport": transport} if transport else {}
    try:
        async with httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
            **client_kwargs,
        ) as http_client:
            movie_cache = MovieCacheStore(
                database.session_factory,
                max_age=timedelta(days=settings.movie_cache_days),
            )
            tmdb = TMDBClient(settings, http_client, cache, movie_cache)
            service = WatchlistService(
                database.session_factory,
                tmdb,
                PairService(database.session_factory),
            )
            return await service.backfill_missing(concurrency=BACKFILL_CONCURRENCY)
    finally:
        await cache.close()
        await database.dispose()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="pairly", description="Pairly backend")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("serve", "backfill"),
        default="serve",
        help="run the HTTP server (default) or backfill watchlist metadata",
    )
    args = parser.parse_args(argv)
    settings = get_settings()

    if args.command == "backfill":
        logging.basicConfig(level=logging.INFO)
        if not settings.tmdb_api_key:
            logger.error("TMDB_API_KEY is not set")
            return 1
        report = asyncio.run(run_backfill(settings))
        logger.info(
            "Backfill finished: %s updated, %s unchanged, %s failed",
            report.updated,
            report.skipped,
            report.failed,
        )
        return 1 if report.failed else 0

    serve(settings)
    return 0


if __name__ == "__main__":  # pragma: no cover - runtime entrypoint
    raise SystemExit(main())

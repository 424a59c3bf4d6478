from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from app.database import Database


def _initialise_legacy_schema(database_path: str) -> None:
    """Create tables from before series and derived fields existed."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE users (
                        id VARCHAR(36) NOT NULL PRIMARY KEY,
                        email VARCHAR(255) NOT NULL UNIQUE,
                        password_hash TEXT,
                        apple_id VARCHAR(255) UNIQUE,
                        name VARCHAR(255) NOT NULL,
                        avatar_url VARCHAR(512),
                        created_at DATETIME NOT NULL,
                        updated_at DATETIME NOT NULL
                    )
                    """
                )
            )
            connection.execute(
                text(
                    """
                    CREATE TABLE watchlist (
                        user_id VARCHAR(36) NOT NULL,
                        movie_id INTEGER NOT NULL,
                        added_at DATETIME,
                        title VARCHAR(512),
                        release_date VARCHAR(32),
                        poster_path VARCHAR(255),
                        PRIMARY KEY (user_id, movie_id)
                    )
                    """
                )
            )
            connection.execute(
                text(
                    """
                    CREATE TABLE ratings (
                        user_id VARCHAR(36) NOT NULL,
                        movie_id INTEGER NOT NULL,
                        rating INTEGER NOT NULL,
                        PRIMARY KEY (user_id, movie_id)
                    )
                    """
                )
            )
            connection.execute(
                text(
                    "INSERT INTO users (id, email, name, created_at, updated_at) "
                    "VALUES ('u1', 'anna@example.com', 'Анна', "
                    "'2023-01-01 10:00:00', '2023-01-01 10:00:00')"
                )
            )
            connection.execute(
                text(
                    "INSERT INTO watchlist (user_id, movie_id, added_at, title) VALUES "
                    "('u1', 603, '2023-02-01 10:00:00', 'Матрица'), "
                    "('u1', 13, NULL, 'Форрест Гамп'), "
                    "('ghost', 550, NULL, 'Бойцовский клуб')"
                )
            )
            connection.execute(
                text("INSERT INTO ratings (user_id, movie_id, rating) VALUES ('u1', 603, 9)")
            )
    finally:
        engine.dispose()


def test_create_all_rebuilds_legacy_watchlist(tmp_path) -> None:
    """Old tables are rebuilt with the media type in their keys and keep their rows."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(engine)
        columns = {column["name"] for column in inspector.get_columns("watchlist")}
        watchlist_key = inspector.get_pk_constraint("watchlist")["constrained_columns"]
        ratings_key = inspector.get_pk_constraint("ratings")["constrained_columns"]
        tables = set(inspector.get_table_names())
        with engine.begin() as connection:
            rows = connection.execute(
                text(
                    "SELECT movie_id, media_type, title, added_at IS NOT NULL "
                    "FROM watchlist ORDER BY movie_id"
                )
            ).all()
            ratings = connection.execute(
                text("SELECT movie_id, media_type, rating FROM ratings")
            ).all()
            # A series sharing the movie's id is a separate entry.
            connection.execute(
                text(
                    "INSERT INTO watchlist (user_id, movie_id, media_type, added_at) "
                    "VALUES ('u1', 603, 'tv', '2023-03-01 10:00:00')"
                )
            )
            saved = connection.execute(
                text("SELECT COUNT(*) FROM watchlist WHERE movie_id = 603")
            ).scalar_one()
    finally:
        engine.dispose()

    assert {"media_type", "overview", "genre", "runtime", "vote_average"} <= columns
    assert set(watchlist_key) == {"user_id", "movie_id", "media_type"}
    assert set(ratings_key) == {"user_id", "movie_id", "media_type"}
    assert {"users", "pairs", "ratings", "movie_cache"} <= tables
    assert not {"watchlist_legacy", "ratings_legacy"} & tables
    assert [tuple(row) for row in rows] == [
        (13, "movie", "Форрест Гамп", 1),
        (603, "movie", "Матрица", 1),
    ]
    assert [tuple(row) for row in ratings] == [(603, "movie", 9)]
    assert saved == 2


def test_create_all_adds_missing_snapshot_columns(tmp_path) -> None:
    database_path = tmp_path / "partial.db"
    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE watchlist (
                        user_id VARCHAR(36) NOT NULL,
                        movie_id INTEGER NOT NULL,
                        media_type VARCHAR(8) NOT NULL,
                        added_at DATETIME NOT NULL,
                        title VARCHAR(512),
                        release_date VARCHAR(32),
                        poster_path VARCHAR(255),
                        PRIMARY KEY (user_id, movie_id, media_type)
                    )
                    """
                )
            )
    finally:
        engine.dispose()

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        columns = {column["name"] for column in inspect(engine).get_columns("watchlist")}
    finally:
        engine.dispose()

    assert {"overview", "genre", "runtime", "vote_average"} <= columns


def test_create_all_is_idempotent(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")

    async def _run() -> None:
        await database.create_all()
        await database.create_all()
        await database.dispose()

    asyncio.run(_run())

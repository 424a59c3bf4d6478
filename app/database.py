"""Database utilities for the Pairly service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


# Tables keyed by ``media_type``, parents before dependants.
REBUILT_TABLES = ("watchlist", "ratings")

# SQL used for columns missing from, or null in, rows of a stashed table.
LEGACY_FILL_VALUES = {
    "media_type": "'movie'",
    "added_at": "CURRENT_TIMESTAMP",
    "created_at": "CURRENT_TIMESTAMP",
    "updated_at": "CURRENT_TIMESTAMP",
}


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            event.listen(
                self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys
            )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Register the mapped tables on the shared metadata.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            stashed = await connection.run_sync(self._stash_legacy_tables)
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._restore_legacy_rows, stashed)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _stash_legacy_tables(sync_connection) -> list[str]:
        """Move aside tables whose primary key predates ``media_type``.

        The key cannot be widened in place, so such tables are renamed to
        ``<name>_legacy`` and rebuilt by ``create_all``.
        """

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())
        stashed: list[str] = []
        for name in REBUILT_TABLES:
            if name not in table_names:
                continue
            columns = {column["name"] for column in inspector.get_columns(name)}
            if "media_type" in columns:
                continue
            sync_connection.execute(text(f"ALTER TABLE {name} RENAME TO {name}_legacy"))
            stashed.append(name)
        return stashed

    @staticmethod
    def _restore_legacy_rows(sync_connection, stashed: list[str]) -> None:
        """Copy rows from stashed tables into their rebuilt versions."""

        if not stashed:
            return

        inspector = inspect(sync_connection)
        for name in REBUILT_TABLES:
            if name not in stashed:
                continue
            legacy = f"{name}_legacy"
            legacy_columns = {
                column["name"] for column in inspector.get_columns(legacy)
            }
            targets: list[str] = []
            sources: list[str] = []
            for column in Base.metadata.tables[name].columns:
                fill = LEGACY_FILL_VALUES.get(column.name)
                if column.name in legacy_columns:
                    sources.append(
                        f"COALESCE({column.name}, {fill})" if fill else column.name
                    )
                elif fill:
                    sources.append(fill)
                else:
                    continue
                targets.append(column.name)

            # Rows whose parent no longer exists would violate the new keys.
            if name == "watchlist":
                condition = "user_id IN (SELECT id FROM users)"
            else:
                condition = (
                    "rating BETWEEN 1 AND 10 AND EXISTS ("
                    "SELECT 1 FROM watchlist AS entry"
                    f" WHERE entry.user_id = {legacy}.user_id"
                    f" AND entry.movie_id = {legacy}.movie_id"
                    " AND entry.media_type = 'movie')"
                )
            sync_connection.execute(
                text(
                    f"INSERT INTO {name} ({', '.join(targets)}) "
                    f"SELECT {', '.join(sources)} FROM {legacy} WHERE {condition}"
                )
            )

        # Dependants first so nothing references a table being dropped.
        for name in reversed(REBUILT_TABLES):
            if name in stashed:
                sync_connection.execute(text(f"DROP TABLE {name}_legacy"))

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = inspector.get_table_names()
        if "watchlist" not in table_names:
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("watchlist")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "overview",
            "ALTER TABLE watchlist ADD COLUMN overview TEXT",
        )
        _ensure_column(
            "genre",
            "ALTER TABLE watchlist ADD COLUMN genre VARCHAR(512)",
        )
        _ensure_column(
            "runtime",
            "ALTER TABLE watchlist ADD COLUMN runtime INTEGER",
        )
        _ensure_column(
            "vote_average",
            "ALTER TABLE watchlist ADD COLUMN vote_average FLOAT",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session


def dialect_insert(session: AsyncSession, model: Any):
    """Return an ``INSERT`` construct supporting ``ON CONFLICT`` for the bound dialect."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"Upserts are not supported for the {dialect} dialect")

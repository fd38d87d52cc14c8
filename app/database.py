"""Database utilities for the IMDbStream service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Register the ORM tables on the shared metadata before creating them.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = inspector.get_table_names()

        if "user_lists" in table_names:
            existing_columns = {
                column["name"] for column in inspector.get_columns("user_lists")
            }

            def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
                if name in existing_columns:
                    return
                sync_connection.execute(text(ddl))
                if init_sql:
                    sync_connection.execute(text(init_sql))
                existing_columns.add(name)

            _ensure_column(
                "show_in",
                "ALTER TABLE user_lists ADD COLUMN show_in VARCHAR(16)",
                "UPDATE user_lists SET show_in = 'discover' WHERE show_in IS NULL",
            )
            _ensure_column(
                "visibility",
                "ALTER TABLE user_lists ADD COLUMN visibility JSON",
            )
            _ensure_column(
                "default_sort",
                "ALTER TABLE user_lists ADD COLUMN default_sort JSON",
            )

        if "list_reports" in table_names:
            report_columns = {
                column["name"] for column in inspector.get_columns("list_reports")
            }
            for name, ddl in (
                ("episode_map", "ALTER TABLE list_reports ADD COLUMN episode_map JSON"),
                ("checked_at", "ALTER TABLE list_reports ADD COLUMN checked_at DATETIME"),
            ):
                if name not in report_columns:
                    sync_connection.execute(text(ddl))

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session

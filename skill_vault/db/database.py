"""
Database connection management for Skill Vault.

Uses SQLAlchemy 2.0 async API (asyncpg for PostgreSQL in production).
The engine lives on a ``Database`` instance built once by the app factory
and passed explicitly, so tests can point it at an in-memory SQLite store.
"""

import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterator, Optional

from fastapi import Request
from sqlalchemy import event, inspect
from sqlalchemy.exc import (
    IntegrityError,
    NoResultFound,
    OperationalError,
    ProgrammingError,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from skill_vault.config import Settings
from skill_vault.errors import ConflictError, FeatureUnavailableError, VERSIONING_NOT_READY_MESSAGE

logger = logging.getLogger(__name__)

VERSIONING_TABLES = ("skill_versions", "skill_publications")


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


@dataclass(frozen=True)
class Capabilities:
    """Feature flags resolved once at startup."""
    versioning: bool = False


class StorageErrorKind(str, enum.Enum):
    """Closed set of storage failure kinds callers are allowed to branch on."""
    UNIQUE_VIOLATION = "unique_violation"
    NOT_FOUND = "not_found"
    SCHEMA_MISSING = "schema_missing"
    OTHER = "other"


_UNIQUE_SQLSTATE = "23505"
_UNDEFINED_TABLE_SQLSTATES = {"42P01", "42703"}


def classify_storage_error(exc: BaseException) -> StorageErrorKind:
    """Map a SQLAlchemy/driver exception onto ``StorageErrorKind``."""
    if isinstance(exc, NoResultFound):
        return StorageErrorKind.NOT_FOUND

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig if orig is not None else exc).lower()

    if isinstance(exc, IntegrityError):
        if sqlstate == _UNIQUE_SQLSTATE:
            return StorageErrorKind.UNIQUE_VIOLATION
        # sqlite reports no sqlstate
        if "unique constraint failed" in message or "duplicate key" in message:
            return StorageErrorKind.UNIQUE_VIOLATION
        return StorageErrorKind.OTHER

    if isinstance(exc, (ProgrammingError, OperationalError)):
        if sqlstate in _UNDEFINED_TABLE_SQLSTATES or "no such table" in message:
            return StorageErrorKind.SCHEMA_MISSING

    return StorageErrorKind.OTHER


class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        versioning_enabled: bool = True,
    ):
        self.url = url
        self.versioning_enabled = versioning_enabled
        self.capabilities = Capabilities(versioning=False)

        if url.startswith("sqlite"):
            # In-memory databases must share one connection across sessions
            self.engine: AsyncEngine = create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        else:
            self.engine = create_async_engine(
                url,
                echo=echo,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_pre_ping=True,  # Verify connections before use
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(
            settings.effective_database_url,
            echo=settings.database_echo,
            versioning_enabled=settings.versioning_enabled,
        )

    async def init_db(self, create_tables: bool = True) -> Capabilities:
        """
        Create tables (optionally) and resolve capabilities.

        Should be called once on application startup. The versioning
        capability is on only when the operator has not disabled it and
        both versioning tables are present.
        """
        # Import models to ensure they are registered with Base
        from skill_vault.db import models  # noqa: F401

        if create_tables:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        async with self.engine.connect() as conn:
            present = await conn.run_sync(_existing_tables)

        has_tables = all(name in present for name in VERSIONING_TABLES)
        if self.versioning_enabled and not has_tables:
            logger.warning(
                "Versioning tables missing (%s); versioning disabled",
                ", ".join(t for t in VERSIONING_TABLES if t not in present),
            )
        self.capabilities = Capabilities(versioning=self.versioning_enabled and has_tables)
        logger.info("Database ready (versioning=%s)", self.capabilities.versioning)
        return self.capabilities

    async def dispose(self):
        await self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _existing_tables(sync_conn) -> set:
    return set(inspect(sync_conn).get_table_names())


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Usage in FastAPI:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.db
    async with database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_capabilities(request: Request) -> Capabilities:
    database: Optional[Database] = getattr(request.app.state, "db", None)
    if database is None:
        return Capabilities()
    return database.capabilities


@asynccontextmanager
async def atomic(
    session: AsyncSession,
    conflict_message: str = "Resource already exists",
) -> AsyncIterator[AsyncSession]:
    """
    Run a block as one transaction: commit on success, roll back on any error.

    Unique violations become ``ConflictError`` and missing versioning tables
    become ``FeatureUnavailableError``; everything else propagates unchanged.
    """
    try:
        yield session
        await session.commit()
    except Exception as exc:
        await session.rollback()
        kind = classify_storage_error(exc)
        if kind is StorageErrorKind.UNIQUE_VIOLATION:
            raise ConflictError(conflict_message) from exc
        if kind is StorageErrorKind.SCHEMA_MISSING:
            raise FeatureUnavailableError(VERSIONING_NOT_READY_MESSAGE) from exc
        raise

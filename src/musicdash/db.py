import os
import sys
import subprocess
import contextlib
import functools
import traceback
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import URL, make_url, text, event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from rapidfuzz.distance import Levenshtein

import logging
LOGGER = logging.getLogger(__name__)

from musicdash.errors import MusicdashError
from musicdash.models import Base

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def create_database_url(database_url: str | None = None) -> URL:
    """Explicit URL first, then MUSICDASH_DATABASE_URL, then the POSTGRES_* parts."""
    if database_url := database_url or os.environ.get("MUSICDASH_DATABASE_URL"):
        return make_url(database_url)

    if test_db := os.environ.get("TEST_DATABASE_NAME"):
        database_name = test_db
    elif os.getenv("TEST_MODE"):
        database_name = "test_db"
    else:
        database_name = os.environ.get("POSTGRES_DB", "db")

    LOGGER.info(f"Using database '{database_name}' (PID: {os.getpid()}).")

    return URL.create(
        drivername='postgresql+asyncpg',
        username=os.environ["POSTGRES_USER"],
        password=os.environ["POSTGRES_PASSWORD"],
        host=os.environ["POSTGRES_HOST"],
        port=int(os.environ["DB_PORT"]),
        database=database_name
    )


def _levenshtein(a: str | None, b: str | None) -> int:
    return Levenshtein.distance(a or "", b or "")


def dialect_insert(session: AsyncSession):
    """insert() of the session's dialect, the one with on_conflict_do_*."""
    match session.get_bind().dialect.name:
        case "postgresql": return pg_insert
        case "sqlite": return sqlite_insert
        case name: raise NotImplementedError(f"No upsert support for dialect '{name}'.")


def pass_session_capable(func):
    """For methods of objects holding a DatabaseManager as self.db: reuse session= if passed, else open one."""
    @functools.wraps(func)
    async def inner(self, *args, **kwargs):
        if kwargs.get("session") is not None:
            return await func(self, *args, **kwargs)

        async with self.db.get_session() as s:
            kwargs["session"] = s
            return await func(self, *args, **kwargs)

    return inner


class DatabaseManager:
    """
    Engine + session factory for one database.

    Built once at startup and handed to whatever needs the store,
    there is no module level instance.
    """

    def __init__(self, url: URL | str | None = None, echo: bool = False):
        self.url = make_url(url) if url is not None else create_database_url()
        self.echo = echo

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker | None = None
        self._initialized = False

    @property
    def dialect_name(self) -> str:
        return self.url.get_backend_name()

    def _engine_kwargs(self) -> dict:
        if self.dialect_name == "sqlite":
            kwargs = {"connect_args": {"check_same_thread": False}}
            if self.url.database in (None, "", ":memory:"):
                # One shared connection, otherwise every checkout sees its own empty database.
                kwargs["poolclass"] = StaticPool
            return kwargs

        return {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
            "pool_timeout": 30,
            "connect_args": {
                "server_settings": {
                    "application_name": f"musicdash_pid_{os.getpid()}",
                    "jit": "off"
                },
                "command_timeout": 60,
            }
        }

    async def initialize(self) -> None:
        if self._initialized:
            LOGGER.debug(f"Database already initialized for PID {os.getpid()}")
            return

        LOGGER.info(f"Initializing DB engine ({self.dialect_name}) for PID {os.getpid()}")
        try:
            self._engine = create_async_engine(self.url, echo=self.echo, **self._engine_kwargs())

            @event.listens_for(self._engine.sync_engine, "connect")
            def receive_connect(dbapi_connection, connection_record):
                LOGGER.debug(f"New database connection established (PID: {os.getpid()})")
                if self.dialect_name == "sqlite":
                    # PostgreSQL gets this from fuzzystrmatch.
                    dbapi_connection.create_function("levenshtein", 2, _levenshtein, deterministic=True)

                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()

            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                LOGGER.info(f"Database connection test to '{self.url.database}' successful (PID: {os.getpid()})")

            self._session_factory = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=True,
            )

            self._initialized = True
            LOGGER.info(f"Database engine and session factory initialized (PID: {os.getpid()})")

        except Exception as e:
            LOGGER.error(f"Could not initialize database (PID: {os.getpid()}): {traceback.format_exc()}")
            await self.cleanup()
            raise MusicdashError(f"Database initialization failed: {e}") from e

    @contextlib.asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One session, one transaction: commits on exit, rolls back on any error."""
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except MusicdashError as e:
            await session.rollback()
            LOGGER.debug(f"Session rolled back (PID: {os.getpid()}): {e}")
            raise
        except Exception:
            await session.rollback()
            LOGGER.error(f"Session error, rolling back (PID: {os.getpid()}): {traceback.format_exc()}")
            raise
        finally:
            await session.close()

    async def get_engine(self) -> AsyncEngine:
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()
        return self._engine

    async def cleanup(self) -> None:
        if self._engine:
            await self._engine.dispose()
            LOGGER.info(f"Database engine disposed (PID: {os.getpid()})")

        self._engine = None
        self._session_factory = None
        self._initialized = False

    async def create_tables(self, drop_first: bool = False) -> None:
        """Create the schema straight from the models, for tests and SQLite setups."""
        engine = await self.get_engine()

        async with engine.begin() as conn:
            if self.dialect_name == "postgresql":
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS fuzzystrmatch;"))
            if drop_first:
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

        LOGGER.info(f"Tables created on '{self.url.database}'.")

    async def create_tables_with_alembic(self) -> None:
        await self.initialize()

        env = {**os.environ, "MUSICDASH_DATABASE_URL": self.url.render_as_string(hide_password=False)}
        try:
            result = subprocess.run([
                sys.executable, "-m", "alembic", "upgrade", "head"
            ], check=True, capture_output=True, text=True, cwd=PROJECT_ROOT, env=env)
            LOGGER.info(f"Alembic upgrade completed: {result.stdout}")
        except subprocess.CalledProcessError as e:
            LOGGER.error(f"Alembic upgrade failed: {e.stderr}")
            raise

    async def setup_tables(self) -> None:
        """Migrate to head. FORCE_RECREATE_TABLES wipes everything first."""
        await self.initialize()

        if os.getenv("FORCE_RECREATE_TABLES"):
            LOGGER.warning("FORCE_RECREATE_TABLES set, dropping all tables.")
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
                await conn.execute(text("DROP TABLE IF EXISTS alembic_version"))

        await self.create_tables_with_alembic()

        LOGGER.info(f"Database setup completed (PID: {os.getpid()})")

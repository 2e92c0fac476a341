import os
import contextlib

import pytest
from sqlalchemy import select, func

os.environ["TEST_MODE"] = "true"

from musicdash import models
from musicdash.db import DatabaseManager
from musicdash.preserve import Preserver
from musicdash.providers.local import LocalProvider
from musicdash.providers.spotify import SpotifyProvider
from musicdash.users import UserStore

from tests.mocks.spotify import can_catalog

# In-memory SQLite unless pointed at a real (throwaway!) database, tables get dropped.
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@contextlib.asynccontextmanager
async def fresh_db():
    """A DatabaseManager over freshly created tables. Usable inside hypothesis examples."""
    db = DatabaseManager(TEST_DATABASE_URL)
    await db.initialize()
    await db.create_tables(drop_first=True)
    try:
        yield db
    finally:
        await db.cleanup()

async def count_rows(db: DatabaseManager, model, *where) -> int:
    async with db.get_session() as s:
        stmt = select(func.count()).select_from(model)
        if where:
            stmt = stmt.where(*where)
        return (await s.execute(stmt)).scalar_one()

async def table_counts(db: DatabaseManager) -> dict[str, int]:
    return {m.__tablename__: await count_rows(db, m)
            for m in (models.Artist, models.Album, models.Track, models.Image,
                      models.TrackArtist, models.AlbumArtist, models.PlayRecord)}


@pytest.fixture
async def db():
    async with fresh_db() as manager:
        yield manager

@pytest.fixture
def preserver(db):
    return Preserver(db)

@pytest.fixture
def local(db):
    return LocalProvider(db)

@pytest.fixture
def users(db):
    return UserStore(db)

@pytest.fixture
def spotifake():
    return can_catalog()

@pytest.fixture
def spotify(spotifake):
    return SpotifyProvider(spotifake, timeout=5)

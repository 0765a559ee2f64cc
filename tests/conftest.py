"""
Shared fixtures: a fresh in-memory SQLite database per test, a session for
seeding it, and an HTTP client bound to an app using that database.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings
from skill_vault.db.database import Database
from skill_vault.db.models import SkillDB, SkillVersionDB, TagDB
from skill_vault.main import create_app
from tests.factories import (
    make_skill,
    make_skill_tag,
    make_skill_version,
    make_snapshot,
    make_tag,
)

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url=TEST_DATABASE_URL, log_level="WARNING")


@pytest_asyncio.fixture
async def database(settings: Settings):
    db = Database(settings.effective_database_url, versioning_enabled=True)
    await db.init_db()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def db_session(database: Database):
    async with database.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(settings: Settings, database: Database):
    # ASGITransport does not run the lifespan; the database fixture already did
    app = create_app(settings=settings, database=database)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def unversioned_client(settings: Settings):
    """Client for a deployment where versioning has been switched off."""
    db = Database(settings.effective_database_url, versioning_enabled=False)
    await db.init_db()
    app = create_app(settings=settings, database=db)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await db.dispose()


@pytest_asyncio.fixture
async def sample_tag(db_session: AsyncSession) -> TagDB:
    tag = make_tag("support")
    db_session.add(tag)
    await db_session.commit()
    return tag


@pytest_asyncio.fixture
async def sample_skill(db_session: AsyncSession, sample_tag: TagDB) -> SkillDB:
    """A skill tagged ``support`` with a single recorded version."""
    skill = make_skill(title="Test Skill", slug="test-skill")
    db_session.add(skill)
    await db_session.flush()
    db_session.add(make_skill_tag(skill.id, sample_tag.id))
    db_session.add(
        make_skill_version(skill.id, 1, make_snapshot(slug="test-skill", tags=["support"]))
    )
    await db_session.commit()
    return skill


@pytest_asyncio.fixture
async def sample_version(db_session: AsyncSession, sample_skill: SkillDB) -> SkillVersionDB:
    result = await db_session.execute(
        select(SkillVersionDB).where(SkillVersionDB.skill_id == sample_skill.id)
    )
    return result.scalar_one()

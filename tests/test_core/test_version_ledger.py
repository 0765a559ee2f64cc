"""
Tests for VersionLedger numbering and snapshot isolation.
"""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from skill_vault.config import Settings
from skill_vault.db.database import Capabilities, Database
from skill_vault.db.models import SkillDB, SkillVersionDB
from skill_vault.schemas import SkillSnapshot
from skill_vault.services.records import require_skill
from skill_vault.services.versioning import VersionLedger, to_snapshot
from tests.factories import make_skill_version, make_snapshot

VERSIONED = Capabilities(versioning=True)


async def _numbers(database: Database, skill_id: str) -> list:
    async with database.session_factory() as session:
        result = await session.execute(
            select(SkillVersionDB.version)
            .where(SkillVersionDB.skill_id == skill_id)
            .order_by(SkillVersionDB.version)
        )
        return list(result.scalars().all())


class TestNumbering:

    async def test_back_to_back_writers_get_distinct_numbers(
        self, database: Database, settings: Settings, sample_skill: SkillDB
    ):
        snapshot = SkillSnapshot.model_validate(make_snapshot())

        async with database.session_factory() as first, database.session_factory() as second:
            a = await VersionLedger(first, VERSIONED, settings).create_if_available(
                sample_skill.id, snapshot
            )
            await first.commit()
            b = await VersionLedger(second, VERSIONED, settings).create_if_available(
                sample_skill.id, snapshot
            )
            await second.commit()

        assert (a.version, b.version) == (2, 3)
        assert await _numbers(database, sample_skill.id) == [1, 2, 3]

    async def test_unique_constraint_rejects_a_reused_number(
        self, database: Database, sample_skill: SkillDB
    ):
        async with database.session_factory() as session:
            session.add(make_skill_version(sample_skill.id, 1))
            with pytest.raises(IntegrityError):
                await session.commit()
            await session.rollback()

        assert await _numbers(database, sample_skill.id) == [1]

    async def test_nothing_recorded_when_versioning_is_off(
        self, db_session, settings: Settings, sample_skill: SkillDB
    ):
        ledger = VersionLedger(db_session, Capabilities(versioning=False), settings)
        snapshot = SkillSnapshot.model_validate(make_snapshot())

        assert await ledger.create_if_available(sample_skill.id, snapshot) is None


class TestSnapshotIsolation:

    async def test_stored_snapshot_survives_later_edits(
        self, database: Database, settings: Settings, sample_skill: SkillDB
    ):
        async with database.session_factory() as session:
            skill = await require_skill(session, sample_skill.id)
            recorded = await VersionLedger(session, VERSIONED, settings).create_if_available(
                skill.id, to_snapshot(skill)
            )
            await session.commit()
            recorded_id = recorded.id

        async with database.session_factory() as session:
            skill = await require_skill(session, sample_skill.id)
            skill.title = "Edited Later"
            skill.steps = ["only", "new", "steps", "here"]
            await session.commit()

        async with database.session_factory() as session:
            stored = await session.get(SkillVersionDB, recorded_id)
            assert stored.snapshot["title"] == "Test Skill"
            assert stored.snapshot["steps"] == ["one", "two", "three"]
            assert stored.snapshot["tags"] == ["support"]

    async def test_snapshot_does_not_share_lists_with_the_record(
        self, db_session, sample_skill: SkillDB
    ):
        skill = await require_skill(db_session, sample_skill.id)
        snapshot = to_snapshot(skill)

        skill.steps.append("four")
        skill.triggers.clear()

        assert snapshot.steps == ["one", "two", "three"]
        assert snapshot.triggers == ["a", "b", "c"]

"""Loading and materializing skill rows shared by the services."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from skill_vault.db.models import SkillDB, SkillTagDB
from skill_vault.errors import NotFoundError
from skill_vault.schemas import Guardrails, SkillOut, SkillTestCase


async def load_skill(
    db: AsyncSession,
    skill_id: str,
    for_update: bool = False,
) -> Optional[SkillDB]:
    """Re-read a skill with its tags from storage (never from the identity map)."""
    query = (
        select(SkillDB)
        .where(SkillDB.id == skill_id)
        .options(selectinload(SkillDB.tag_links).joinedload(SkillTagDB.tag))
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def require_skill(
    db: AsyncSession,
    skill_id: str,
    for_update: bool = False,
) -> SkillDB:
    skill = await load_skill(db, skill_id, for_update=for_update)
    if not skill:
        raise NotFoundError("Skill not found")
    return skill


def parse_guardrails(raw) -> Guardrails:
    if isinstance(raw, dict):
        return Guardrails.model_validate(raw)
    return Guardrails()


def parse_tests(raw) -> list:
    if not isinstance(raw, list):
        return []
    return [SkillTestCase.model_validate(item) for item in raw]


def materialize_skill(skill: SkillDB) -> dict:
    """JSON-ready skill with tag names flattened to a plain list."""
    out = SkillOut(
        id=skill.id,
        slug=skill.slug,
        title=skill.title,
        status=skill.status,
        summary=skill.summary,
        inputs=skill.inputs,
        outputs=skill.outputs,
        steps=[str(step) for step in (skill.steps or [])],
        risks=skill.risks,
        triggers=[str(t) for t in (skill.triggers or [])],
        guardrails=parse_guardrails(skill.guardrails),
        tests=parse_tests(skill.tests),
        tags=skill.tag_names,
        createdAt=skill.created_at,
        updatedAt=skill.updated_at,
    )
    return out.model_dump(mode="json")

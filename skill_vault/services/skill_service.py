"""
Skill records: CRUD, duplication and batch operations.

Every content-changing operation records a version through the ledger in
the same transaction as the change itself.
"""

import copy
import logging
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Capabilities, atomic
from skill_vault.db.models import SkillDB, SkillDraftDB, SkillFileDB, SkillTagDB, TagDB
from skill_vault.errors import ConflictError, ValidationError
from skill_vault.schemas import SkillCreate, SkillUpdate
from skill_vault.services.records import materialize_skill, require_skill
from skill_vault.services.slugify import SLUG_MAX_LENGTH, slugify
from skill_vault.services.tag_service import TagService, normalize_tag_names
from skill_vault.services.versioning import VersionLedger, to_snapshot

logger = logging.getLogger(__name__)

SLUG_ATTEMPTS = 200
BATCH_ACTIONS = ("bulk-delete", "bulk-add-tags")


def parse_skill_ids(raw) -> List[str]:
    """Non-empty string ids from ``raw``, trimmed and de-duplicated in order."""
    if not isinstance(raw, list):
        return []
    ids = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
    return list(dict.fromkeys(ids))


class SkillService:
    """Skill operations over one database session."""

    def __init__(
        self,
        db: AsyncSession,
        capabilities: Capabilities,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.tags = TagService(db, self.settings)
        self.ledger = VersionLedger(db, capabilities, self.settings)

    # ---------- Reads ----------

    async def get(self, skill_id: str) -> dict:
        return materialize_skill(await require_skill(self.db, skill_id))

    async def list(self, query: str = "", tags: Optional[List[str]] = None) -> dict:
        stmt = select(SkillDB).options(
            selectinload(SkillDB.tag_links).joinedload(SkillTagDB.tag)
        )
        needle = (query or "").strip()
        if needle:
            stmt = stmt.where(
                or_(
                    SkillDB.title.icontains(needle, autoescape=True),
                    SkillDB.summary.icontains(needle, autoescape=True),
                )
            )
        names = normalize_tag_names(tags)
        if names:
            tagged = (
                select(SkillTagDB.skill_id)
                .join(TagDB, TagDB.id == SkillTagDB.tag_id)
                .where(TagDB.name.in_(names))
            )
            stmt = stmt.where(SkillDB.id.in_(tagged))

        result = await self.db.execute(stmt.order_by(SkillDB.updated_at.desc()))
        items = [materialize_skill(skill) for skill in result.scalars().all()]
        return {"items": items, "total": len(items)}

    # ---------- Writes ----------

    async def _slug_taken(self, slug: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(SkillDB.id).where(SkillDB.slug == slug)
        if exclude_id:
            stmt = stmt.where(SkillDB.id != exclude_id)
        return (await self.db.execute(stmt)).first() is not None

    async def _slug_for_title(self, title: str, exclude_id: Optional[str] = None) -> str:
        slug = slugify(title)
        if not slug:
            raise ValidationError("Cannot generate a valid slug from title")
        if await self._slug_taken(slug, exclude_id):
            raise ConflictError("Slug already exists")
        return slug

    async def _record_version(self, skill_id: str) -> SkillDB:
        skill = await require_skill(self.db, skill_id)
        await self.ledger.create_if_available(skill.id, to_snapshot(skill))
        return skill

    async def create(self, data: SkillCreate) -> dict:
        slug = await self._slug_for_title(data.title)

        async with atomic(self.db, "Slug already exists"):
            skill = SkillDB(
                title=data.title,
                slug=slug,
                status="draft",
                summary=data.summary,
                inputs=data.inputs,
                outputs=data.outputs,
                steps=list(data.steps),
                risks=data.risks,
                triggers=list(data.triggers),
                guardrails=data.guardrails.model_dump(),
                tests=[case.model_dump() for case in data.tests],
            )
            self.db.add(skill)
            await self.db.flush()
            await self.tags.replace_skill_tags(skill.id, data.tags)
            skill = await self._record_version(skill.id)

        logger.info("Created skill %s (%s)", skill.id, skill.slug)
        return materialize_skill(skill)

    async def update(self, skill_id: str, data: SkillUpdate) -> dict:
        await require_skill(self.db, skill_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        slug = None
        if "title" in changes:
            slug = await self._slug_for_title(data.title, exclude_id=skill_id)

        async with atomic(self.db, "Slug already exists"):
            skill = await require_skill(self.db, skill_id, for_update=True)
            if slug:
                skill.title = data.title
                skill.slug = slug
            for name in ("summary", "inputs", "outputs", "risks", "steps", "triggers"):
                if name in changes:
                    setattr(skill, name, changes[name])
            if data.guardrails is not None:
                skill.guardrails = data.guardrails.model_dump()
            if data.tests is not None:
                skill.tests = [case.model_dump() for case in data.tests]
            await self.db.flush()
            if data.tags is not None:
                await self.tags.replace_skill_tags(skill.id, data.tags)
            skill = await self._record_version(skill.id)

        logger.info("Updated skill %s", skill_id)
        return materialize_skill(skill)

    async def _detach_drafts(self, skill_ids: List[str]):
        await self.db.execute(
            update(SkillDraftDB)
            .where(SkillDraftDB.skill_id.in_(skill_ids))
            .values(skill_id=None)
            .execution_options(synchronize_session=False)
        )

    async def delete(self, skill_id: str):
        skill = await require_skill(self.db, skill_id)
        async with atomic(self.db):
            await self._detach_drafts([skill_id])
            await self.db.delete(skill)
        logger.info("Deleted skill %s", skill_id)

    # ---------- Batch ----------

    async def _existing_ids(self, skill_ids: List[str]) -> List[str]:
        result = await self.db.execute(select(SkillDB.id).where(SkillDB.id.in_(skill_ids)))
        found = set(result.scalars().all())
        return [skill_id for skill_id in skill_ids if skill_id in found]

    async def bulk_delete(self, skill_ids: List[str]) -> dict:
        """Delete every listed skill in one transaction. Unknown ids are skipped."""
        async with atomic(self.db):
            existing = await self._existing_ids(skill_ids)
            if existing:
                await self._detach_drafts(existing)
            for skill_id in existing:
                await self.db.delete(await require_skill(self.db, skill_id))

        logger.info("Bulk deleted %d of %d skills", len(existing), len(skill_ids))
        return {"requested": len(skill_ids), "affected": len(existing)}

    async def bulk_add_tags(self, skill_ids: List[str], raw_tags) -> dict:
        """
        Add tags to every listed skill in one transaction.

        Links a skill already has are left alone, so no link is duplicated.
        Skills whose tag set changed get a new version.
        """
        names = normalize_tag_names(raw_tags)
        if not names:
            raise ValidationError("tags must contain at least one valid tag")

        async with atomic(self.db, "Tag name already exists"):
            existing = await self._existing_ids(skill_ids)
            changed = await self.tags.add_to_skills(existing, names)
            for skill_id in existing:
                if skill_id in changed:
                    await self._record_version(skill_id)

        logger.info(
            "Bulk tagged %d of %d skills with %s", len(existing), len(skill_ids), names
        )
        return {"requested": len(skill_ids), "affected": len(existing), "tags": names}

    async def _unique_copy_slug(self, title: str, source_slug: str) -> Optional[str]:
        base = slugify(title) or slugify(f"{source_slug}-copy")
        if not base:
            return None
        for attempt in range(SLUG_ATTEMPTS):
            candidate = base if attempt == 0 else f"{base}-{attempt}"
            if len(candidate) > SLUG_MAX_LENGTH:
                suffix = "" if attempt == 0 else f"-{attempt}"
                candidate = base[: SLUG_MAX_LENGTH - len(suffix)].rstrip("-") + suffix
            if not await self._slug_taken(candidate):
                return candidate
        return None

    async def duplicate(self, skill_id: str, title: Optional[str] = None) -> dict:
        """
        Copy a skill with its tags and files under a fresh unique slug.

        The copy starts as a draft with its own version 1.
        """
        source = await require_skill(self.db, skill_id)
        next_title = (title or "").strip() or f"{source.title} copy"
        slug = await self._unique_copy_slug(next_title, source.slug)
        if not slug:
            raise ValidationError("Cannot generate a unique slug for the copy")

        files = (
            await self.db.execute(select(SkillFileDB).where(SkillFileDB.skill_id == source.id))
        ).scalars().all()

        async with atomic(self.db, "Slug already exists"):
            copied = SkillDB(
                title=next_title,
                slug=slug,
                status="draft",
                summary=source.summary,
                inputs=source.inputs,
                outputs=source.outputs,
                steps=copy.deepcopy(source.steps),
                risks=source.risks,
                triggers=copy.deepcopy(source.triggers),
                guardrails=copy.deepcopy(source.guardrails),
                tests=copy.deepcopy(source.tests),
            )
            self.db.add(copied)
            await self.db.flush()
            await self.tags.replace_skill_tags(copied.id, source.tag_names)
            for item in files:
                self.db.add(
                    SkillFileDB(
                        skill_id=copied.id,
                        path=item.path,
                        mime=item.mime,
                        is_binary=item.is_binary,
                        content_text=item.content_text,
                        content_bytes=item.content_bytes,
                        source_path=item.source_path,
                        source_sha=item.source_sha,
                    )
                )
            await self.db.flush()
            copied = await self._record_version(copied.id)

        logger.info("Duplicated skill %s as %s (%s)", skill_id, copied.id, copied.slug)
        return {**materialize_skill(copied), "duplicatedFromId": source.id}

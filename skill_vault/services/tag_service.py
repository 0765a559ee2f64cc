"""
Tag reconciliation: normalized, unique tag names and their links to skills.

Rename, delete and merge keep the (skill, tag) link set free of duplicates.
``normalize_all`` is the administrative batch that folds historical tags
whose names differ only by case or whitespace.
"""

import logging
import math
import re
from dataclasses import dataclass
from itertools import groupby
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import atomic
from skill_vault.db.models import SkillDB, SkillTagDB, TagDB
from skill_vault.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TAG_NAME_MAX_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


def normalize_tag_name(value: str) -> str:
    """Trim, case-fold and collapse inner whitespace."""
    return _WHITESPACE.sub(" ", str(value or "").strip().casefold())


def normalize_tag_names(values: Optional[Iterable[str]]) -> List[str]:
    """Normalize a list of names, dropping empties and duplicates (order kept)."""
    if not values or isinstance(values, (str, bytes)):
        return []
    normalized: List[str] = []
    seen = set()
    for value in values:
        name = normalize_tag_name(value)
        if not name or name in seen:
            continue
        seen.add(name)
        normalized.append(name)
    return normalized


def validate_tag_name(name: str) -> Optional[str]:
    """Return an error message for an (already normalized) name, or None."""
    if not name:
        return "Tag name is required"
    if len(name) > TAG_NAME_MAX_LENGTH:
        return f"Tag name too long (max {TAG_NAME_MAX_LENGTH} characters)"
    return None


@dataclass
class NormalizeReport:
    renamed: int = 0
    merged: int = 0
    removed_empty: int = 0

    def to_dict(self) -> dict:
        return {"renamed": self.renamed, "merged": self.merged, "removedEmpty": self.removed_empty}


class TagService:
    """Tag operations over one database session."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    # ---------- Queries ----------

    async def _get(self, tag_id: str) -> Optional[TagDB]:
        result = await self.db.execute(select(TagDB).where(TagDB.id == tag_id))
        return result.scalar_one_or_none()

    async def _linked_skill_ids(self, tag_id: str) -> List[str]:
        result = await self.db.execute(
            select(SkillTagDB.skill_id).where(SkillTagDB.tag_id == tag_id)
        )
        return [row[0] for row in result.all()]

    async def list_tags(self, query: str = "", page: int = 1, limit: Optional[int] = None) -> dict:
        """Paged tag list with link counts, optionally filtered by name substring."""
        page = page if page and page > 0 else 1
        if not limit or limit < 1:
            limit = self.settings.tag_page_default
        limit = min(limit, self.settings.tag_page_max)
        needle = normalize_tag_name(query)

        counts = (
            select(SkillTagDB.tag_id, func.count().label("count"))
            .group_by(SkillTagDB.tag_id)
            .subquery()
        )
        stmt = select(TagDB, func.coalesce(counts.c.count, 0)).outerjoin(
            counts, counts.c.tag_id == TagDB.id
        )
        total_stmt = select(func.count()).select_from(TagDB)
        if needle:
            stmt = stmt.where(TagDB.name.contains(needle, autoescape=True))
            total_stmt = total_stmt.where(TagDB.name.contains(needle, autoescape=True))

        rows = await self.db.execute(
            stmt.order_by(TagDB.name).offset((page - 1) * limit).limit(limit)
        )
        total = (await self.db.execute(total_stmt)).scalar_one()

        return {
            "items": [
                {
                    "id": tag.id,
                    "name": tag.name,
                    "count": count,
                    "updatedAt": tag.updated_at.isoformat(),
                }
                for tag, count in rows.all()
            ],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": max(1, math.ceil(total / limit)),
        }

    async def linked_skills(self, tag_id: str) -> dict:
        tag = await self._get(tag_id)
        if not tag:
            raise NotFoundError("Tag not found")

        result = await self.db.execute(
            select(SkillDB)
            .join(SkillTagDB, SkillTagDB.skill_id == SkillDB.id)
            .where(SkillTagDB.tag_id == tag_id)
            .order_by(SkillDB.updated_at.desc())
        )
        return {
            "tag": {"id": tag.id, "name": tag.name},
            "skills": [
                {
                    "id": skill.id,
                    "title": skill.title,
                    "slug": skill.slug,
                    "updatedAt": skill.updated_at.isoformat(),
                }
                for skill in result.scalars().all()
            ],
        }

    # ---------- Create / link ----------

    async def create_or_get(self, raw_name: str) -> TagDB:
        name = normalize_tag_name(raw_name)
        error = validate_tag_name(name)
        if error:
            raise ValidationError(error)

        async with atomic(self.db, "Tag name already exists"):
            tags = await self.upsert_tags([name])
        return tags[0]

    async def upsert_tags(self, raw_names: Iterable[str]) -> List[TagDB]:
        """Create-if-absent for every normalized name. Does not commit."""
        names = normalize_tag_names(raw_names)
        if not names:
            return []

        invalid = [error for error in map(validate_tag_name, names) if error]
        if invalid:
            raise ValidationError(invalid[0], errors=invalid)

        result = await self.db.execute(select(TagDB).where(TagDB.name.in_(names)))
        existing = {tag.name: tag for tag in result.scalars().all()}

        tags = []
        for name in names:
            tag = existing.get(name)
            if tag is None:
                tag = TagDB(name=name)
                self.db.add(tag)
            tags.append(tag)
        await self.db.flush()
        return tags

    async def replace_skill_tags(self, skill_id: str, raw_names: Iterable[str]) -> List[TagDB]:
        """Replace a skill's whole association set (delete all, recreate)."""
        tags = await self.upsert_tags(raw_names)
        await self.db.execute(
            delete(SkillTagDB.__table__).where(SkillTagDB.__table__.c.skill_id == skill_id)
        )
        if tags:
            await self.db.execute(
                insert(SkillTagDB.__table__),
                [{"skill_id": skill_id, "tag_id": tag.id} for tag in tags],
            )
        return tags

    async def _link_missing(self, tag_id: str, skill_ids: Iterable[str]) -> List[str]:
        """Link ``tag_id`` to each skill that is not linked yet. Returns those skills."""
        already = set(await self._linked_skill_ids(tag_id))
        missing = [sid for sid in dict.fromkeys(skill_ids) if sid not in already]
        if missing:
            await self.db.execute(
                insert(SkillTagDB.__table__),
                [{"skill_id": sid, "tag_id": tag_id} for sid in missing],
            )
        return missing

    async def add_to_skills(self, skill_ids: List[str], raw_names: Iterable[str]) -> set:
        """
        Give every skill every named tag, keeping links it already has.

        Does not commit. Returns the ids of skills that gained a link.
        """
        changed = set()
        for tag in await self.upsert_tags(raw_names):
            changed.update(await self._link_missing(tag.id, skill_ids))
        return changed

    async def _drop_tag(self, tag_id: str):
        await self.db.execute(
            delete(SkillTagDB.__table__).where(SkillTagDB.__table__.c.tag_id == tag_id)
        )
        await self.db.execute(delete(TagDB.__table__).where(TagDB.__table__.c.id == tag_id))

    # ---------- Reconciliation ----------

    async def rename(self, tag_id: str, raw_name: str) -> TagDB:
        current = await self._get(tag_id)
        if not current:
            raise NotFoundError("Tag not found")

        name = normalize_tag_name(raw_name)
        error = validate_tag_name(name)
        if error:
            raise ValidationError(error)

        if name == current.name:
            return current

        result = await self.db.execute(select(TagDB).where(TagDB.name == name))
        conflict = result.scalar_one_or_none()
        if conflict and conflict.id != tag_id:
            logger.warning("Tag rename conflict: %s -> %r held by %s", tag_id, name, conflict.id)
            raise ConflictError("Tag name already exists", conflictTagId=conflict.id)

        async with atomic(self.db, "Tag name already exists"):
            current.name = name
        logger.info("Renamed tag %s to %r", tag_id, name)
        return current

    async def delete(self, tag_id: str) -> dict:
        current = await self._get(tag_id)
        if not current:
            raise NotFoundError("Tag not found")

        detached = len(await self._linked_skill_ids(tag_id))
        deleted = {"id": current.id, "name": current.name, "detachedSkills": detached}
        async with atomic(self.db):
            await self._drop_tag(tag_id)
        self.db.expunge(current)

        logger.info("Deleted tag %s (%r), detached %d skills", tag_id, deleted["name"], detached)
        return deleted

    async def merge(self, source_id: str, target_id: str) -> dict:
        """Move every link of ``source_id`` onto ``target_id`` and delete the source."""
        if source_id == target_id:
            raise ValidationError("Source and target tags cannot be the same")

        source = await self._get(source_id)
        if not source:
            raise NotFoundError("Source tag not found")
        target = await self._get(target_id)
        if not target:
            raise NotFoundError("Target tag not found")

        source_skill_ids = await self._linked_skill_ids(source_id)
        merged = {
            "sourceId": source.id,
            "targetId": target.id,
            "sourceName": source.name,
            "targetName": target.name,
            "movedSkills": len(source_skill_ids),
        }

        async with atomic(self.db):
            await self._link_missing(target_id, source_skill_ids)
            await self._drop_tag(source_id)
        self.db.expunge(source)

        logger.info(
            "Merged tag %r into %r (%d skills)",
            merged["sourceName"], merged["targetName"], merged["movedSkills"],
        )
        return merged

    async def normalize_all(self) -> NormalizeReport:
        """
        Fold tags whose names normalize to the same value.

        Tags normalizing to "" are deleted. In each remaining group the first
        tag (by creation time) is kept; the others' links move onto it and they
        are deleted, then the keeper is renamed if needed. Every group commits
        on its own, so a failure leaves earlier groups applied and the failing
        group untouched.
        """
        result = await self.db.execute(
            select(TagDB.id, TagDB.name).order_by(TagDB.created_at, TagDB.id)
        )
        tags = [(tag_id, name, normalize_tag_name(name)) for tag_id, name in result.all()]
        report = NormalizeReport()
        if not tags:
            logger.info("No tags found. Nothing to normalize.")
            return report

        # stable sort keeps creation order inside each group
        ordered = sorted(tags, key=lambda item: item[2])
        for normalized, members in groupby(ordered, key=lambda item: item[2]):
            members = list(members)
            try:
                async with atomic(self.db, "Tag name already exists"):
                    renamed = await self._fold_group(normalized, members)
            except Exception:
                logger.exception("Tag normalization failed for group %r", normalized)
                raise

            if not normalized:
                report.removed_empty += len(members)
            else:
                report.merged += len(members) - 1
                report.renamed += int(renamed)

        logger.info(
            "Tag normalization completed: renamed=%d, merged=%d, removed_empty=%d",
            report.renamed, report.merged, report.removed_empty,
        )
        return report

    async def _fold_group(self, normalized: str, members: list) -> bool:
        """Fold one normalized-name group onto its first member. Returns True if renamed."""
        if not normalized:
            for tag_id, _, _ in members:
                await self._drop_tag(tag_id)
            return False

        keeper_id, keeper_name, _ = members[0]
        for dup_id, _, _ in members[1:]:
            await self._link_missing(keeper_id, await self._linked_skill_ids(dup_id))
            await self._drop_tag(dup_id)

        # duplicates are gone, so the rename cannot collide with them
        if keeper_name == normalized:
            return False
        keeper = await self._get(keeper_id)
        keeper.name = normalized
        await self.db.flush()
        return True

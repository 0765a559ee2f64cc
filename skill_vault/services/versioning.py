"""
Version ledger: append-only, per-skill numbered snapshots.

Numbers are assigned under a row lock on the parent skill; the unique
``(skill_id, version)`` constraint backs that up, so a lost race surfaces as
``ConflictError`` instead of a duplicate number.
"""

import logging
import math
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Capabilities, atomic
from skill_vault.db.models import SkillDB, SkillVersionDB
from skill_vault.errors import (
    ConflictError,
    FeatureUnavailableError,
    InvalidSnapshotError,
    NotFoundError,
    VERSIONING_NOT_READY_MESSAGE,
)
from skill_vault.schemas import SkillSnapshot
from skill_vault.services.records import (
    materialize_skill,
    parse_guardrails,
    parse_tests,
    require_skill,
)
from skill_vault.services.tag_service import TagService

logger = logging.getLogger(__name__)


def to_snapshot(skill: SkillDB) -> SkillSnapshot:
    """Project a loaded skill (tags included) into a detached snapshot."""
    return SkillSnapshot(
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
        tags=list(skill.tag_names),
    )


def parse_snapshot(raw) -> SkillSnapshot:
    """Validate a stored snapshot. Raises ``InvalidSnapshotError``."""
    if not isinstance(raw, dict):
        raise InvalidSnapshotError("Invalid snapshot payload")
    try:
        return SkillSnapshot.model_validate(raw)
    except PydanticValidationError as exc:
        logger.warning("Snapshot failed validation: %s", exc.errors()[:3])
        raise InvalidSnapshotError("Invalid snapshot payload") from exc


def _summary_field(raw, key: str) -> Optional[str]:
    if isinstance(raw, dict) and isinstance(raw.get(key), str):
        return raw[key]
    return None


class VersionLedger:
    """Version operations over one database session."""

    def __init__(
        self,
        db: AsyncSession,
        capabilities: Capabilities,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.capabilities = capabilities
        self.settings = settings or get_settings()

    @property
    def available(self) -> bool:
        return self.capabilities.versioning

    def require_available(self):
        if not self.available:
            raise FeatureUnavailableError(VERSIONING_NOT_READY_MESSAGE)

    async def latest(self, skill_id: str) -> Optional[SkillVersionDB]:
        result = await self.db.execute(
            select(SkillVersionDB)
            .where(SkillVersionDB.skill_id == skill_id)
            .order_by(SkillVersionDB.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_if_available(
        self, skill_id: str, snapshot: SkillSnapshot
    ) -> Optional[SkillVersionDB]:
        """
        Append the next version for ``skill_id``. Does not commit.

        Returns None without touching storage when versioning is off.
        """
        if not self.available:
            return None

        # serializes numbering per skill
        await self.db.execute(
            select(SkillDB.id).where(SkillDB.id == skill_id).with_for_update()
        )
        current = (
            await self.db.execute(
                select(func.max(SkillVersionDB.version)).where(
                    SkillVersionDB.skill_id == skill_id
                )
            )
        ).scalar_one()

        version = SkillVersionDB(
            skill_id=skill_id,
            version=(current or 0) + 1,
            snapshot=snapshot.model_dump(mode="json"),
        )
        self.db.add(version)
        await self.db.flush()
        logger.info("Recorded version %d of skill %s", version.version, skill_id)
        return version

    async def _require_version(self, skill_id: str, version_id: str) -> SkillVersionDB:
        result = await self.db.execute(
            select(SkillVersionDB).where(SkillVersionDB.id == version_id)
        )
        version = result.scalar_one_or_none()
        if not version or version.skill_id != skill_id:
            raise NotFoundError("Version not found")
        return version

    async def get(self, skill_id: str, version_id: str) -> dict:
        self.require_available()
        version = await self._require_version(skill_id, version_id)
        snapshot = parse_snapshot(version.snapshot)
        return {
            "id": version.id,
            "skillId": version.skill_id,
            "version": version.version,
            "snapshot": snapshot.model_dump(mode="json"),
            "createdAt": version.created_at.isoformat(),
        }

    async def list(self, skill_id: str, page: int = 1, limit: Optional[int] = None) -> dict:
        """Page of versions, newest number first."""
        self.require_available()
        await require_skill(self.db, skill_id)

        page = page if page and page > 0 else 1
        if not limit or limit < 1:
            limit = self.settings.version_page_default
        limit = min(limit, self.settings.version_page_max)

        total = (
            await self.db.execute(
                select(func.count())
                .select_from(SkillVersionDB)
                .where(SkillVersionDB.skill_id == skill_id)
            )
        ).scalar_one()
        result = await self.db.execute(
            select(SkillVersionDB)
            .where(SkillVersionDB.skill_id == skill_id)
            .order_by(SkillVersionDB.version.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "items": [
                {
                    "id": version.id,
                    "version": version.version,
                    "title": _summary_field(version.snapshot, "title"),
                    "status": _summary_field(version.snapshot, "status"),
                    "createdAt": version.created_at.isoformat(),
                }
                for version in result.scalars().all()
            ],
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": max(1, math.ceil(total / limit)),
        }

    async def rollback(self, skill_id: str, version_id: str, reason: Optional[str] = None) -> dict:
        """
        Restore a skill to the content of one of its versions.

        The snapshot is validated before anything is written. The restored
        skill goes back to ``draft`` and the rollback itself is recorded as a
        new version, so history is never rewritten.
        """
        self.require_available()
        await require_skill(self.db, skill_id)
        target = await self._require_version(skill_id, version_id)
        snapshot = parse_snapshot(target.snapshot)

        clash = await self.db.execute(
            select(SkillDB.id).where(SkillDB.slug == snapshot.slug, SkillDB.id != skill_id)
        )
        if clash.first():
            raise ConflictError("Slug already exists")

        async with atomic(self.db, "Slug already exists"):
            skill = await require_skill(self.db, skill_id, for_update=True)
            skill.slug = snapshot.slug
            skill.title = snapshot.title
            skill.status = "draft"
            skill.summary = snapshot.summary
            skill.inputs = snapshot.inputs
            skill.outputs = snapshot.outputs
            skill.steps = list(snapshot.steps)
            skill.risks = snapshot.risks
            skill.triggers = list(snapshot.triggers)
            skill.guardrails = snapshot.guardrails.model_dump()
            skill.tests = [case.model_dump() for case in snapshot.tests]
            await self.db.flush()
            await TagService(self.db, self.settings).replace_skill_tags(skill.id, snapshot.tags)

            skill = await require_skill(self.db, skill_id)
            created = await self.create_if_available(skill.id, to_snapshot(skill))

        logger.info(
            "Rolled back skill %s to version %d (new version %d)",
            skill_id, target.version, created.version,
        )
        return {
            **materialize_skill(skill),
            "rolledBackFromVersionId": target.id,
            "createdVersion": {
                "id": created.id,
                "version": created.version,
                "createdAt": created.created_at.isoformat(),
            },
            "reason": reason,
        }

"""Publication register: releases that point at an exact skill version."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Capabilities, atomic
from skill_vault.db.models import SkillPublicationDB, SkillVersionDB
from skill_vault.errors import ValidationError
from skill_vault.services.records import require_skill
from skill_vault.services.versioning import VersionLedger, to_snapshot

logger = logging.getLogger(__name__)


class PublicationRegister:

    def __init__(
        self,
        db: AsyncSession,
        capabilities: Capabilities,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.ledger = VersionLedger(db, capabilities, self.settings)

    def _clean_note(self, note) -> Optional[str]:
        if note is None:
            return None
        if not isinstance(note, str):
            raise ValidationError("note must be a string")
        note = note.strip()
        limit = self.settings.publish_note_max_length
        if len(note) > limit:
            raise ValidationError(f"Publish note too long (max {limit} characters)")
        return note or None

    async def publish(self, skill_id: str, note: Optional[str] = None) -> dict:
        """
        Publish the latest version of a skill.

        A skill that has never been versioned gets version 1 synthesized from
        its current content first. The skill's status flips to ``published``
        in the same transaction as the publication row.
        """
        self.ledger.require_available()
        await require_skill(self.db, skill_id)
        note = self._clean_note(note)

        async with atomic(self.db):
            skill = await require_skill(self.db, skill_id, for_update=True)
            version = await self.ledger.latest(skill.id)
            if version is None:
                version = await self.ledger.create_if_available(skill.id, to_snapshot(skill))

            publication = SkillPublicationDB(
                skill_id=skill.id,
                skill_version_id=version.id,
                note=note,
            )
            self.db.add(publication)
            skill.status = "published"
            await self.db.flush()

        logger.info("Published skill %s at version %d", skill_id, version.version)
        return {
            "id": publication.id,
            "skillId": skill_id,
            "version": version.version,
            "note": publication.note,
            "publishedAt": publication.published_at.isoformat(),
            "status": "published",
        }

    async def list(self, skill_id: str) -> dict:
        """Publications of a skill, newest first, with their version numbers."""
        self.ledger.require_available()
        await require_skill(self.db, skill_id)

        result = await self.db.execute(
            select(SkillPublicationDB, SkillVersionDB.version)
            .join(SkillVersionDB, SkillVersionDB.id == SkillPublicationDB.skill_version_id)
            .where(SkillPublicationDB.skill_id == skill_id)
            .order_by(SkillPublicationDB.published_at.desc(), SkillVersionDB.version.desc())
            .limit(self.settings.publication_list_limit)
        )
        items = [
            {
                "id": publication.id,
                "version": number,
                "note": publication.note,
                "publishedAt": publication.published_at.isoformat(),
            }
            for publication, number in result.all()
        ]
        return {"items": items, "total": len(items)}

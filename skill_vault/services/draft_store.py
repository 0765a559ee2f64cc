"""
Draft store: editor state keyed by an opaque client key.

Every draft carries an integer ``version`` used as an optimistic
concurrency token. A write that names an expected version is a single
conditional UPDATE, so two writers holding the same token cannot both win.
"""

import logging
import re
from typing import Any, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import StorageErrorKind, atomic, classify_storage_error
from skill_vault.db.models import SkillDB, SkillDraftDB, utcnow
from skill_vault.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DRAFT_KEY_PATTERN = re.compile(r"[a-z0-9:_-]{1,120}", re.IGNORECASE)
DRAFT_MODES = ("new", "edit")


def clean_draft_key(raw: Any) -> str:
    key = raw.strip() if isinstance(raw, str) else ""
    if not DRAFT_KEY_PATTERN.fullmatch(key):
        raise ValidationError("Invalid draft key")
    return key


def clean_draft_mode(raw: Any) -> Optional[str]:
    mode = raw.strip().lower() if isinstance(raw, str) else ""
    return mode if mode in DRAFT_MODES else None


def serialize_draft(draft: SkillDraftDB) -> dict:
    return {
        "id": draft.id,
        "key": draft.draft_key,
        "mode": draft.mode,
        "skillId": draft.skill_id,
        "payload": draft.payload,
        "version": draft.version,
        "updatedAt": draft.updated_at.isoformat(),
    }


class DraftStore:
    """Draft operations over one database session."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def _find(self, key: str) -> Optional[SkillDraftDB]:
        result = await self.db.execute(
            select(SkillDraftDB)
            .where(SkillDraftDB.draft_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, raw_key: Any) -> dict:
        draft = await self._find(clean_draft_key(raw_key))
        if not draft:
            raise NotFoundError("Draft not found")
        return serialize_draft(draft)

    async def list(self, mode: Optional[str] = None) -> dict:
        query = select(SkillDraftDB)
        if mode:
            cleaned = clean_draft_mode(mode)
            if cleaned is None:
                raise ValidationError("mode must be one of: new, edit")
            query = query.where(SkillDraftDB.mode == cleaned)

        result = await self.db.execute(
            query.order_by(SkillDraftDB.updated_at.desc())
            .limit(self.settings.draft_list_limit)
        )
        items = [serialize_draft(draft) for draft in result.scalars().all()]
        return {"items": items, "total": len(items)}

    async def put(
        self,
        raw_key: Any,
        mode: Any,
        skill_id: Optional[str],
        payload: Any,
        expected_version: Any = None,
    ) -> dict:
        """
        Create or overwrite a draft.

        With ``expected_version`` the write succeeds only if the stored
        version still matches; otherwise ``ConflictError`` carries the
        current version and the stored draft is left untouched. Without it
        the write is unconditional. A write against a missing key always
        creates the draft at version 1.
        """
        key = clean_draft_key(raw_key)
        errors: List[str] = []
        cleaned_mode = clean_draft_mode(mode)
        if cleaned_mode is None:
            errors.append("mode must be one of: new, edit")
        if not isinstance(payload, dict):
            errors.append("payload must be an object")
        if expected_version is not None and (
            isinstance(expected_version, bool)
            or not isinstance(expected_version, int)
            or expected_version < 1
        ):
            errors.append("expectedVersion must be a positive integer")
        if skill_id is not None and not isinstance(skill_id, str):
            errors.append("skillId must be a string")
        if errors:
            raise ValidationError(errors[0], errors=errors)

        if skill_id:
            found = await self.db.execute(select(SkillDB.id).where(SkillDB.id == skill_id))
            if not found.first():
                raise NotFoundError("Skill not found")

        values = {
            "mode": cleaned_mode,
            "skill_id": skill_id or None,
            "payload": payload,
            "updated_at": utcnow(),
        }

        if expected_version is not None:
            async with atomic(self.db):
                result = await self.db.execute(
                    update(SkillDraftDB)
                    .where(
                        SkillDraftDB.draft_key == key,
                        SkillDraftDB.version == expected_version,
                    )
                    .values(version=SkillDraftDB.version + 1, **values)
                    .execution_options(synchronize_session=False)
                )
            if result.rowcount == 1:
                return await self._saved(key)

            current = await self._find(key)
            if current is not None:
                logger.warning(
                    "Draft %s conflict: expected version %d, current %d",
                    key, expected_version, current.version,
                )
                raise ConflictError("Draft version conflict", currentVersion=current.version)

        return await self._create_or_overwrite(key, values, expected_version)

    async def _create_or_overwrite(self, key: str, values: dict, expected_version) -> dict:
        existing = await self._find(key)
        if existing is None:
            self.db.add(SkillDraftDB(draft_key=key, version=1, **values))
            try:
                await self.db.commit()
            except IntegrityError as exc:
                await self.db.rollback()
                if classify_storage_error(exc) is not StorageErrorKind.UNIQUE_VIOLATION:
                    raise
                # lost the create race; treat as a write against an existing draft
                if expected_version is not None:
                    current = await self._find(key)
                    raise ConflictError(
                        "Draft version conflict", currentVersion=current.version
                    ) from exc
            else:
                return await self._saved(key)

        async with atomic(self.db):
            await self.db.execute(
                update(SkillDraftDB)
                .where(SkillDraftDB.draft_key == key)
                .values(version=SkillDraftDB.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
        return await self._saved(key)

    async def _saved(self, key: str) -> dict:
        draft = await self._find(key)
        logger.info("Saved draft %s (version %d)", key, draft.version)
        return serialize_draft(draft)

    async def delete(self, raw_key: Any):
        key = clean_draft_key(raw_key)
        async with atomic(self.db):
            result = await self.db.execute(
                delete(SkillDraftDB).where(SkillDraftDB.draft_key == key)
            )
        if result.rowcount == 0:
            raise NotFoundError("Draft not found")
        logger.info("Deleted draft %s", key)

"""
Supporting files: the scripts, references and assets packaged with a skill.

Files live under a fixed set of top-level directories and are addressed by
their relative path. ``SKILL.md`` is rendered from the skill itself and can
never be stored as a file.
"""

import base64
import binascii
import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import StorageErrorKind, atomic, classify_storage_error
from skill_vault.db.models import SkillFileDB
from skill_vault.errors import ConflictError, NotFoundError, PayloadTooLargeError, ValidationError
from skill_vault.services.records import require_skill

logger = logging.getLogger(__name__)

ALLOWED_DIRS = ("references", "examples", "scripts", "assets", "templates")
RESERVED_FILENAME = "SKILL.md"

TEXT_MAX_BYTES = 200 * 1024
BINARY_MAX_BYTES = 2 * 1024 * 1024

TEXT_MIME = "text/plain"
BINARY_MIME = "application/octet-stream"


def validate_file_path(path: Any) -> List[str]:
    """Every reason ``path`` is not an acceptable supporting-file path."""
    if not isinstance(path, str) or not path.strip():
        return ["path is required"]

    errors = []
    segments = path.split("/")
    if segments[-1].lower() == RESERVED_FILENAME.lower():
        errors.append(f"{RESERVED_FILENAME} is generated and cannot be written as a file")
    if path.startswith("/"):
        errors.append("path must be relative")
    if ".." in segments:
        errors.append("path must not contain '..'")
    if "\\" in path:
        errors.append("path must use '/' separators")
    if segments[0] not in ALLOWED_DIRS:
        errors.append(f"path must start with one of: {', '.join(ALLOWED_DIRS)}")
    elif len(segments) < 2 or not segments[-1].strip():
        errors.append("path must name a file inside the directory")
    return errors


def decode_base64(encoded: str) -> bytes:
    """
    Strictly decode base64, ignoring embedded whitespace.

    Line-wrapped (MIME style) input is accepted; any other character outside
    the base64 alphabet raises ``ValueError``.
    """
    return base64.b64decode("".join(encoded.split()), validate=True)


def text_size_error(text: str, limit: int) -> Optional[str]:
    if len(text.encode("utf-8")) > limit:
        return f"Text file exceeds {limit // 1024}KB limit"
    return None


def binary_size_error(data: bytes, limit: int) -> Optional[str]:
    if len(data) > limit:
        return f"Binary file exceeds {limit // (1024 * 1024)}MB limit"
    return None


def file_size(item: SkillFileDB) -> int:
    if item.is_binary:
        return len(item.content_bytes or b"")
    return len((item.content_text or "").encode("utf-8"))


def serialize_file(item: SkillFileDB, with_content: bool = False) -> dict:
    data = {
        "id": item.id,
        "path": item.path,
        "mime": item.mime,
        "isBinary": item.is_binary,
        "size": file_size(item),
        "updatedAt": item.updated_at.isoformat(),
    }
    if with_content:
        if item.is_binary:
            data["contentBase64"] = base64.b64encode(item.content_bytes or b"").decode("ascii")
        else:
            data["contentText"] = item.content_text or ""
    return data


class SkillFileStore:
    """Supporting-file operations over one database session."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()

    async def _find(self, skill_id: str, path: str) -> Optional[SkillFileDB]:
        result = await self.db.execute(
            select(SkillFileDB)
            .where(SkillFileDB.skill_id == skill_id, SkillFileDB.path == path)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, skill_id: str, path: Any) -> SkillFileDB:
        if not isinstance(path, str) or not path:
            raise ValidationError("path query required")
        item = await self._find(skill_id, path)
        if item is None:
            raise NotFoundError("File not found")
        return item

    def _decode_content(self, content: Any, is_binary: bool):
        """Check ``content`` against the size limits; returns (text, bytes)."""
        if not isinstance(content, str):
            raise ValidationError("content must be a string")

        if is_binary:
            try:
                data = decode_base64(content)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError("content is not valid base64") from exc
            error = binary_size_error(data, self.settings.changeset_binary_max_bytes)
            if error:
                raise PayloadTooLargeError(error)
            return None, data

        error = text_size_error(content, self.settings.changeset_text_max_bytes)
        if error:
            raise PayloadTooLargeError(error)
        return content, None

    async def list(self, skill_id: str) -> dict:
        await require_skill(self.db, skill_id)
        result = await self.db.execute(
            select(SkillFileDB)
            .where(SkillFileDB.skill_id == skill_id)
            .order_by(SkillFileDB.path)
        )
        items = [serialize_file(item) for item in result.scalars().all()]
        return {"items": items, "total": len(items)}

    async def read(self, skill_id: str, path: Any) -> dict:
        await require_skill(self.db, skill_id)
        return serialize_file(await self._require(skill_id, path), with_content=True)

    async def create(
        self,
        skill_id: str,
        path: Any,
        content: Any,
        mime: Optional[str] = None,
        is_binary: bool = False,
    ) -> dict:
        """Add a new file. An existing path is a conflict, not an overwrite."""
        await require_skill(self.db, skill_id)
        errors = validate_file_path(path)
        if errors:
            raise ValidationError("; ".join(errors), errors=errors)
        text, data = self._decode_content(content, is_binary)

        item = SkillFileDB(
            skill_id=skill_id,
            path=path,
            mime=mime or (BINARY_MIME if is_binary else TEXT_MIME),
            is_binary=is_binary,
            content_text=text,
            content_bytes=data,
        )
        self.db.add(item)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            if classify_storage_error(exc) is StorageErrorKind.UNIQUE_VIOLATION:
                raise ConflictError("File path already exists") from exc
            raise

        logger.info("Created file %s for skill %s", path, skill_id)
        return serialize_file(item)

    async def update(self, skill_id: str, path: Any, content: Any) -> dict:
        """Replace a file's content, keeping its kind (text or binary) and mime."""
        await require_skill(self.db, skill_id)
        item = await self._require(skill_id, path)
        text, data = self._decode_content(content, item.is_binary)

        async with atomic(self.db):
            if item.is_binary:
                item.content_bytes = data
            else:
                item.content_text = text

        logger.info("Updated file %s for skill %s", path, skill_id)
        return serialize_file(item, with_content=True)

    async def delete(self, skill_id: str, path: Any):
        await require_skill(self.db, skill_id)
        item = await self._require(skill_id, path)
        async with atomic(self.db):
            await self.db.delete(item)
        logger.info("Deleted file %s for skill %s", path, skill_id)

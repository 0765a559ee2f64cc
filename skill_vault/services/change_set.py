"""
Change-set gate and applier.

A change-set is a proposed patch to a skill's fields plus a list of file
operations. ``validate_change_set`` is a pure check that collects every
violation; ``ChangeSetApplier.apply`` runs it first and only then writes,
all in one transaction.
"""

import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Capabilities, atomic
from skill_vault.db.models import SkillDB, SkillFileDB
from skill_vault.errors import ConflictError, PayloadTooLargeError, ValidationError
from skill_vault.schemas import ChangeSet, FileOp, SkillPatch
from skill_vault.services.records import materialize_skill, require_skill
from skill_vault.services.skill_files import (
    BINARY_MAX_BYTES,
    TEXT_MAX_BYTES,
    TEXT_MIME,
    decode_base64,
    validate_file_path,
)
from skill_vault.services.slugify import slugify
from skill_vault.services.tag_service import TagService, normalize_tag_names, validate_tag_name
from skill_vault.services.versioning import VersionLedger, to_snapshot

logger = logging.getLogger(__name__)

FILE_OPS = ("upsert", "delete")
_CONTENT_KEYS = ("content_text", "content_base64")

_SCALAR_FIELDS = ("summary", "inputs", "outputs", "risks")
_LIST_FIELDS = ("steps", "triggers")


@dataclass
class GateResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    size_errors: int = 0

    @property
    def only_size_errors(self) -> bool:
        return bool(self.errors) and self.size_errors == len(self.errors)


def _format_pydantic_errors(prefix: str, exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        where = f"{prefix}.{location}" if location else prefix
        messages.append(f"{where}: {error['msg']}")
    return messages


def _drop_delete_content(op: dict) -> dict:
    """Content on a delete is ignored, whatever its type."""
    if op.get("op") != "delete":
        return op
    return {key: value for key, value in op.items() if key not in _CONTENT_KEYS}


def validate_change_set(
    raw: Any,
    text_max_bytes: int = TEXT_MAX_BYTES,
    binary_max_bytes: int = BINARY_MAX_BYTES,
) -> GateResult:
    """
    Check a change-set without touching storage.

    Returns every violation found, not just the first. Size violations are
    counted separately so callers can tell an oversized payload from a
    malformed one.
    """
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(exclude_unset=True)
    if not isinstance(raw, dict):
        return GateResult(valid=False, errors=["changeSet must be an object"])

    errors: List[str] = []
    size_errors = 0

    patch = raw.get("skillPatch")
    if not isinstance(patch, dict):
        errors.append("skillPatch must be an object")
    else:
        try:
            validated = SkillPatch.model_validate(patch)
        except PydanticValidationError as exc:
            errors.extend(_format_pydantic_errors("skillPatch", exc))
        else:
            for name in normalize_tag_names(validated.tags):
                message = validate_tag_name(name)
                if message:
                    errors.append(f"skillPatch.tags: {message}")

    notes = raw.get("notes")
    if notes is not None and not isinstance(notes, str):
        errors.append("notes must be a string")

    ops = raw.get("fileOps")
    if not isinstance(ops, list):
        errors.append("fileOps must be an array")
        ops = []

    for index, op in enumerate(ops):
        where = f"fileOps[{index}]"
        if not isinstance(op, dict):
            errors.append(f"{where} must be an object")
            continue

        kind = op.get("op")
        if kind not in FILE_OPS:
            errors.append(f"{where}.op must be one of: {', '.join(FILE_OPS)}")

        path = op.get("path")
        errors.extend(f"{where}.path {path!r}: {msg}" for msg in validate_file_path(path))

        mime = op.get("mime")
        if mime is not None and not isinstance(mime, str):
            errors.append(f"{where}.mime must be a string")

        if kind != "upsert":
            continue

        wrong_type = [
            key for key in _CONTENT_KEYS
            if op.get(key) is not None and not isinstance(op.get(key), str)
        ]
        if wrong_type:
            errors.extend(f"{where}.{key} must be a string" for key in wrong_type)
            continue

        text = op.get("content_text")
        encoded = op.get("content_base64")
        has_text = text is not None
        has_binary = encoded is not None
        if has_text == has_binary:
            errors.append(f"{where} must set exactly one of content_text or content_base64")
            continue

        if has_text and len(text.encode("utf-8")) > text_max_bytes:
            errors.append(f"{where}.content_text exceeds {text_max_bytes // 1024}KB limit")
            size_errors += 1
        if has_binary:
            try:
                data = decode_base64(encoded)
            except (binascii.Error, ValueError):
                errors.append(f"{where}.content_base64 is not valid base64")
                continue
            if len(data) > binary_max_bytes:
                errors.append(
                    f"{where}.content_base64 exceeds "
                    f"{binary_max_bytes // (1024 * 1024)}MB limit"
                )
                size_errors += 1

    return GateResult(valid=not errors, errors=errors, size_errors=size_errors)


class ChangeSetApplier:
    """Applies gate-approved change-sets to a skill."""

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

    def _gate(self, raw: Any) -> ChangeSet:
        result = validate_change_set(
            raw,
            text_max_bytes=self.settings.changeset_text_max_bytes,
            binary_max_bytes=self.settings.changeset_binary_max_bytes,
        )
        if not result.valid:
            logger.warning("Rejected change-set: %s", "; ".join(result.errors))
            error_cls = PayloadTooLargeError if result.only_size_errors else ValidationError
            raise error_cls("Invalid changeSet", errors=result.errors)
        if isinstance(raw, ChangeSet):
            return raw

        ops = [_drop_delete_content(op) for op in raw["fileOps"]]
        try:
            return ChangeSet.model_validate({**raw, "fileOps": ops})
        except PydanticValidationError as exc:
            errors = _format_pydantic_errors("changeSet", exc)
            logger.warning("Rejected change-set: %s", "; ".join(errors))
            raise ValidationError("Invalid changeSet", errors=errors) from exc

    async def apply(self, skill_id: str, raw: Any) -> dict:
        await require_skill(self.db, skill_id)
        change_set = self._gate(raw)
        patch = change_set.skillPatch
        changes = patch.model_dump(exclude_unset=True, exclude_none=True)

        new_slug = None
        if "title" in changes:
            new_slug = slugify(patch.title)
            if not new_slug:
                raise ValidationError("Cannot generate a valid slug from title")
            clash = await self.db.execute(
                select(SkillDB.id).where(SkillDB.slug == new_slug, SkillDB.id != skill_id)
            )
            if clash.first():
                raise ConflictError("Slug already exists")

        async with atomic(self.db, "Slug already exists"):
            skill = await require_skill(self.db, skill_id, for_update=True)
            if new_slug:
                skill.title = patch.title
                skill.slug = new_slug
            for name in _SCALAR_FIELDS:
                if name in changes:
                    setattr(skill, name, changes[name])
            for name in _LIST_FIELDS:
                if name in changes:
                    setattr(skill, name, list(changes[name]))
            if "tests" in changes:
                skill.tests = changes["tests"]
            if "guardrails" in changes:
                # shallow merge: keys absent from the patch keep their stored value
                skill.guardrails = {**(skill.guardrails or {}), **changes["guardrails"]}
            await self.db.flush()

            if patch.tags is not None:
                await self.tags.replace_skill_tags(skill.id, patch.tags)

            for op in change_set.fileOps:
                await self._apply_file_op(skill.id, op)

            skill = await require_skill(self.db, skill_id)
            await self.ledger.create_if_available(skill.id, to_snapshot(skill))

        logger.info(
            "Applied change-set to skill %s (%d fields, %d file ops)",
            skill_id, len(changes), len(change_set.fileOps),
        )
        return materialize_skill(skill)

    async def _apply_file_op(self, skill_id: str, op: FileOp):
        result = await self.db.execute(
            select(SkillFileDB).where(
                SkillFileDB.skill_id == skill_id, SkillFileDB.path == op.path
            )
        )
        existing = result.scalar_one_or_none()

        if op.op == "delete":
            # deleting an absent file is not an error
            if existing is not None:
                await self.db.delete(existing)
                await self.db.flush()
            return

        is_binary = op.content_base64 is not None
        data = None
        if is_binary:
            try:
                data = decode_base64(op.content_base64)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(f"{op.path} is not valid base64") from exc
            limit = self.settings.changeset_binary_max_bytes
            if len(data) > limit:
                raise PayloadTooLargeError(
                    f"{op.path} exceeds {limit // (1024 * 1024)}MB limit"
                )

        if existing is None:
            existing = SkillFileDB(skill_id=skill_id, path=op.path)
            self.db.add(existing)
        existing.mime = op.mime or existing.mime or TEXT_MIME
        existing.is_binary = is_binary
        existing.content_text = None if is_binary else op.content_text
        existing.content_bytes = data
        await self.db.flush()

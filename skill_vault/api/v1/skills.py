"""
Skills API endpoints.

Provides endpoints for:
- Listing and searching skills
- Getting skill details
- Creating, updating and deleting skills
- Duplicating a skill
- Batch delete and batch tagging
"""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from skill_vault.api.deps import get_skill_service
from skill_vault.errors import ValidationError
from skill_vault.schemas import SkillCreate, SkillUpdate
from skill_vault.services.skill_service import BATCH_ACTIONS, SkillService, parse_skill_ids


router = APIRouter(prefix="/skills", tags=["skills"])


class DuplicateRequest(BaseModel):
    """Request model for duplicating a skill."""
    title: Optional[str] = Field(None, max_length=200)


class BatchRequest(BaseModel):
    """Request model for batch operations.

    Loosely typed so malformed input gets a 400 with a readable message.
    """
    action: Any = None
    skillIds: Any = None
    tags: Any = None


@router.get("")
async def list_skills(
    q: str = Query("", description="Substring of title or summary"),
    tags: Optional[List[str]] = Query(None, description="Only skills carrying any of these tags"),
    service: SkillService = Depends(get_skill_service),
):
    """List skills, most recently updated first."""
    return await service.list(q, tags)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_skill(
    data: SkillCreate,
    service: SkillService = Depends(get_skill_service),
):
    """Create a skill; its slug is derived from the title."""
    return await service.create(data)


@router.get("/{skill_id}")
async def get_skill(skill_id: str, service: SkillService = Depends(get_skill_service)):
    return await service.get(skill_id)


@router.put("/{skill_id}")
async def update_skill(
    skill_id: str,
    data: SkillUpdate,
    service: SkillService = Depends(get_skill_service),
):
    """
    Update a skill. Only provided fields are changed.

    A new title re-derives the slug. Every update records a version.
    """
    return await service.update(skill_id, data)


@router.delete("/{skill_id}")
async def delete_skill(skill_id: str, service: SkillService = Depends(get_skill_service)):
    await service.delete(skill_id)
    return {"success": True, "id": skill_id}


@router.post("/{skill_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_skill(
    skill_id: str,
    data: Optional[DuplicateRequest] = None,
    service: SkillService = Depends(get_skill_service),
):
    """Copy a skill (content, tags, files) under a new unique slug."""
    return await service.duplicate(skill_id, data.title if data else None)


@router.post("/batch")
async def batch_skills(data: BatchRequest, service: SkillService = Depends(get_skill_service)):
    """
    Run one action over many skills, all or nothing.

    - ``bulk-delete``: delete the listed skills
    - ``bulk-add-tags``: add ``tags`` to the listed skills

    Unknown ids are skipped; ``affected`` counts the skills that existed.
    """
    if data.action not in BATCH_ACTIONS:
        raise ValidationError("Invalid action")
    skill_ids = parse_skill_ids(data.skillIds)
    if not skill_ids:
        raise ValidationError("skillIds must contain at least one id")

    if data.action == "bulk-delete":
        result = await service.bulk_delete(skill_ids)
    else:
        tags = data.tags if isinstance(data.tags, list) else []
        result = await service.bulk_add_tags(skill_ids, tags)
    return {"ok": True, "action": data.action, **result}

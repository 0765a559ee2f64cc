"""
Tags API endpoints.

Provides endpoints for:
- Listing tags with usage counts
- Creating, renaming and deleting tags
- Listing the skills carrying a tag
- Merging one tag into another
- Normalizing every stored tag name
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from skill_vault.api.deps import get_tag_service
from skill_vault.db.models import TagDB
from skill_vault.errors import ValidationError
from skill_vault.services.tag_service import TagService


router = APIRouter(prefix="/tags", tags=["tags"])


class TagNameRequest(BaseModel):
    name: Optional[str] = None


class MergeTagsRequest(BaseModel):
    """Request model for merging ``sourceTagId`` into ``targetTagId``."""
    sourceTagId: Optional[str] = None
    targetTagId: Optional[str] = None


def _tag_response(tag: TagDB) -> dict:
    return {"id": tag.id, "name": tag.name, "updatedAt": tag.updated_at.isoformat()}


@router.get("")
async def list_tags(
    query: str = Query("", description="Substring of the tag name"),
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    service: TagService = Depends(get_tag_service),
):
    return await service.list_tags(query, page, limit)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tag(data: TagNameRequest, service: TagService = Depends(get_tag_service)):
    """Create a tag, or return the existing one with the same normalized name."""
    tag = await service.create_or_get(data.name or "")
    return {"tag": _tag_response(tag)}


@router.post("/merge")
async def merge_tags(data: MergeTagsRequest, service: TagService = Depends(get_tag_service)):
    """
    Merge the source tag into the target tag.

    Every skill tagged with the source ends up tagged with the target exactly
    once, then the source tag is deleted.
    """
    source_id = (data.sourceTagId or "").strip()
    target_id = (data.targetTagId or "").strip()
    if not source_id or not target_id:
        raise ValidationError("sourceTagId and targetTagId are required")
    merged = await service.merge(source_id, target_id)
    return {"success": True, "merged": merged}


@router.post("/normalize")
async def normalize_tags(service: TagService = Depends(get_tag_service)):
    """Fold tags whose names differ only by case or whitespace."""
    report = await service.normalize_all()
    return report.to_dict()


@router.patch("/{tag_id}")
async def rename_tag(
    tag_id: str,
    data: TagNameRequest,
    service: TagService = Depends(get_tag_service),
):
    tag = await service.rename(tag_id, data.name or "")
    return {"tag": _tag_response(tag)}


@router.delete("/{tag_id}")
async def delete_tag(tag_id: str, service: TagService = Depends(get_tag_service)):
    deleted = await service.delete(tag_id)
    return {"success": True, "deleted": deleted}


@router.get("/{tag_id}/skills")
async def list_tag_skills(tag_id: str, service: TagService = Depends(get_tag_service)):
    return await service.linked_skills(tag_id)

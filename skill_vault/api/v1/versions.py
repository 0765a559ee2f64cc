"""
Skill versioning API endpoints.

Provides endpoints for:
- Listing a skill's versions
- Reading one version's snapshot
- Rolling a skill back to a version
- Publishing a skill and listing its publications
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from skill_vault.api.deps import get_publication_register, get_version_ledger
from skill_vault.errors import ValidationError
from skill_vault.services.publication import PublicationRegister
from skill_vault.services.versioning import VersionLedger


router = APIRouter(prefix="/skills", tags=["versions"])


class RollbackRequest(BaseModel):
    versionId: Optional[str] = None
    reason: Optional[str] = None


class PublishRequest(BaseModel):
    note: Any = None


@router.get("/{skill_id}/versions")
async def list_versions(
    skill_id: str,
    page: int = Query(1, description="1-based page number"),
    limit: Optional[int] = Query(None, description="Page size (capped server-side)"),
    ledger: VersionLedger = Depends(get_version_ledger),
):
    return await ledger.list(skill_id, page, limit)


@router.get("/{skill_id}/versions/{version_id}")
async def get_version(
    skill_id: str,
    version_id: str,
    ledger: VersionLedger = Depends(get_version_ledger),
):
    """Get one version with its full snapshot."""
    return await ledger.get(skill_id, version_id)


@router.post("/{skill_id}/rollback")
async def rollback_skill(
    skill_id: str,
    data: RollbackRequest,
    ledger: VersionLedger = Depends(get_version_ledger),
):
    """
    Restore a skill to the content of one of its versions.

    The skill returns to draft status and the rollback is recorded as a new
    version.
    """
    version_id = (data.versionId or "").strip()
    if not version_id:
        raise ValidationError("versionId is required")
    reason = (data.reason or "").strip() or None
    return await ledger.rollback(skill_id, version_id, reason)


@router.post("/{skill_id}/publish", status_code=status.HTTP_201_CREATED)
async def publish_skill(
    skill_id: str,
    data: Optional[PublishRequest] = None,
    register: PublicationRegister = Depends(get_publication_register),
):
    """Publish the latest version of a skill."""
    return await register.publish(skill_id, data.note if data else None)


@router.get("/{skill_id}/publications")
async def list_publications(
    skill_id: str,
    register: PublicationRegister = Depends(get_publication_register),
):
    return await register.list(skill_id)

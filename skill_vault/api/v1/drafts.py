"""
Skill Drafts API endpoints.

Provides endpoints for:
- Listing recent drafts
- Reading a draft by key
- Saving a draft (optimistic concurrency via expectedVersion)
- Deleting a draft
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from skill_vault.api.deps import get_draft_store
from skill_vault.services.draft_store import DraftStore


router = APIRouter(prefix="/skill-drafts", tags=["drafts"])


class DraftPutRequest(BaseModel):
    """Request model for saving a draft.

    Fields are loosely typed; the store validates them and reports every
    problem in one 400 response.
    """
    mode: Any = None
    skillId: Any = None
    payload: Any = None
    expectedVersion: Any = None


@router.get("")
async def list_drafts(
    mode: Optional[str] = Query(None, description="Filter by mode: new or edit"),
    store: DraftStore = Depends(get_draft_store),
):
    """List the most recently updated drafts."""
    return await store.list(mode)


@router.get("/{draft_key}")
async def get_draft(draft_key: str, store: DraftStore = Depends(get_draft_store)):
    return await store.get(draft_key)


@router.put("/{draft_key}")
async def put_draft(
    draft_key: str,
    data: DraftPutRequest,
    store: DraftStore = Depends(get_draft_store),
):
    """
    Create or overwrite a draft.

    With ``expectedVersion`` the save only succeeds when it matches the
    stored version; a mismatch returns 409 with ``currentVersion``.
    """
    return await store.put(
        draft_key,
        mode=data.mode,
        skill_id=data.skillId,
        payload=data.payload,
        expected_version=data.expectedVersion,
    )


@router.delete("/{draft_key}")
async def delete_draft(draft_key: str, store: DraftStore = Depends(get_draft_store)):
    await store.delete(draft_key)
    return {"ok": True}

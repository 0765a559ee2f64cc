"""
Skill Files API endpoints.

Provides endpoints for:
- Listing a skill's supporting files
- Reading one file (``?path=``)
- Creating a file
- Replacing a file's content (``?path=``)
- Deleting a file (``?path=``)
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from skill_vault.api.deps import get_skill_file_store
from skill_vault.services.skill_files import SkillFileStore


router = APIRouter(prefix="/skills/{skill_id}/files", tags=["files"])


class FileCreateRequest(BaseModel):
    """Request model for creating a file.

    ``content`` is UTF-8 text, or base64 when ``isBinary`` is set.
    """
    path: Any = None
    content: Any = None
    mime: Optional[str] = None
    isBinary: bool = False


class FileUpdateRequest(BaseModel):
    content: Any = None


@router.get("")
async def list_or_read_files(
    skill_id: str,
    path: Optional[str] = Query(None, description="Read this file instead of listing"),
    store: SkillFileStore = Depends(get_skill_file_store),
):
    """Without ``path`` list every file; with it return that file's content."""
    if path:
        return await store.read(skill_id, path)
    return await store.list(skill_id)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_file(
    skill_id: str,
    data: FileCreateRequest,
    store: SkillFileStore = Depends(get_skill_file_store),
):
    return await store.create(
        skill_id,
        data.path,
        data.content,
        mime=data.mime,
        is_binary=data.isBinary,
    )


@router.put("")
async def update_file(
    skill_id: str,
    data: FileUpdateRequest,
    path: Optional[str] = Query(None),
    store: SkillFileStore = Depends(get_skill_file_store),
):
    """Replace a file's content. Text files stay text, binary files stay binary."""
    return await store.update(skill_id, path, data.content)


@router.delete("")
async def delete_file(
    skill_id: str,
    path: Optional[str] = Query(None),
    store: SkillFileStore = Depends(get_skill_file_store),
):
    await store.delete(skill_id, path)
    return {"ok": True}

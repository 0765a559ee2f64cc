"""
Change-set API endpoint.

Applies a proposed ``{skillPatch, fileOps}`` change-set to a skill after
it passes the gate. Rejections return every violation in ``errors``.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from skill_vault.api.deps import get_change_set_applier
from skill_vault.services.change_set import ChangeSetApplier


router = APIRouter(prefix="/skills", tags=["change-sets"])


class ApplyChangeSetRequest(BaseModel):
    changeSet: Any = None


@router.post("/{skill_id}/ai/apply")
async def apply_change_set(
    skill_id: str,
    data: ApplyChangeSetRequest,
    applier: ChangeSetApplier = Depends(get_change_set_applier),
):
    skill = await applier.apply(skill_id, data.changeSet)
    return {"skill": skill}

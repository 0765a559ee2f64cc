from fastapi import APIRouter

from skill_vault.api.v1 import change_sets, drafts, files, skills, tags, versions

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(drafts.router)
api_router.include_router(skills.router)
api_router.include_router(versions.router)
api_router.include_router(change_sets.router)
api_router.include_router(files.router)
api_router.include_router(tags.router)

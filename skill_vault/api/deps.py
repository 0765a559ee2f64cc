"""FastAPI dependencies that build per-request services."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from skill_vault.config import Settings, get_settings
from skill_vault.db.database import Capabilities, get_capabilities, get_db
from skill_vault.services.change_set import ChangeSetApplier
from skill_vault.services.draft_store import DraftStore
from skill_vault.services.publication import PublicationRegister
from skill_vault.services.skill_files import SkillFileStore
from skill_vault.services.skill_service import SkillService
from skill_vault.services.tag_service import TagService
from skill_vault.services.versioning import VersionLedger


def get_app_settings(request: Request) -> Settings:
    """Settings the app was built with (falls back to the process-wide ones)."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_draft_store(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> DraftStore:
    return DraftStore(db, settings)


def get_skill_service(
    db: AsyncSession = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    settings: Settings = Depends(get_app_settings),
) -> SkillService:
    return SkillService(db, capabilities, settings)


def get_version_ledger(
    db: AsyncSession = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    settings: Settings = Depends(get_app_settings),
) -> VersionLedger:
    return VersionLedger(db, capabilities, settings)


def get_publication_register(
    db: AsyncSession = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    settings: Settings = Depends(get_app_settings),
) -> PublicationRegister:
    return PublicationRegister(db, capabilities, settings)


def get_tag_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> TagService:
    return TagService(db, settings)


def get_change_set_applier(
    db: AsyncSession = Depends(get_db),
    capabilities: Capabilities = Depends(get_capabilities),
    settings: Settings = Depends(get_app_settings),
) -> ChangeSetApplier:
    return ChangeSetApplier(db, capabilities, settings)


def get_skill_file_store(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> SkillFileStore:
    return SkillFileStore(db, settings)

"""
SQLAlchemy ORM models for Skill Vault.

Tables:
- skills: Skill records (the authored content)
- skill_drafts: Short-lived editor state with an optimistic concurrency token
- skill_versions: Append-only snapshots of a skill
- skill_publications: Releases pointing at a specific version
- tags / skill_tags: Normalized tag names and their links to skills
- skill_files: Supporting files keyed by (skill, path)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, List

from sqlalchemy import (
    JSON,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from skill_vault.db.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def default_guardrails() -> dict:
    return {
        "allowed_tools": [],
        "disable_model_invocation": False,
        "user_invocable": True,
        "stop_conditions": [],
        "escalation": "ASK_HUMAN",
    }


class SkillDB(Base):
    """
    Skill records.

    Each skill has a globally unique slug derived from its title.
    """
    __tablename__ = "skills"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default="draft", nullable=False
    )  # draft/published
    summary: Mapped[str] = mapped_column(Text, default="", nullable=False)
    inputs: Mapped[str] = mapped_column(Text, default="", nullable=False)
    outputs: Mapped[str] = mapped_column(Text, default="", nullable=False)
    steps: Mapped[List[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )  # ordered step strings
    risks: Mapped[str] = mapped_column(Text, default="", nullable=False)
    triggers: Mapped[List[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    guardrails: Mapped[dict] = mapped_column(
        JSONType, default=default_guardrails, nullable=False
    )
    tests: Mapped[List[dict]] = mapped_column(
        JSONType, default=list, nullable=False
    )  # [{name, input, expected_output}]
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        String(150), default="SYS", nullable=False
    )
    updated_by: Mapped[str] = mapped_column(
        String(150), default="SYS", nullable=False
    )
    source_repo: Mapped[Optional[str]] = mapped_column(
        String(191), nullable=True
    )  # Upstream repository for synced skills
    source_path: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )
    source_ref: Mapped[Optional[str]] = mapped_column(
        String(120), nullable=True
    )
    source_sha: Mapped[Optional[str]] = mapped_column(
        String(191), nullable=True
    )
    source_managed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    # Relationships
    tag_links: Mapped[List["SkillTagDB"]] = relationship(
        "SkillTagDB", back_populates="skill", cascade="all, delete-orphan"
    )
    versions: Mapped[List["SkillVersionDB"]] = relationship(
        "SkillVersionDB", back_populates="skill", cascade="all, delete-orphan"
    )
    publications: Mapped[List["SkillPublicationDB"]] = relationship(
        "SkillPublicationDB", back_populates="skill", cascade="all, delete-orphan"
    )
    files: Mapped[List["SkillFileDB"]] = relationship(
        "SkillFileDB", back_populates="skill", cascade="all, delete-orphan"
    )

    @property
    def tag_names(self) -> List[str]:
        return [link.tag.name for link in self.tag_links]

    def __repr__(self) -> str:
        return f"<Skill(slug={self.slug}, status={self.status})>"


class SkillDraftDB(Base):
    """
    Editor drafts keyed by an opaque client key.

    ``version`` is a pure concurrency token, incremented server-side on
    every successful write.
    """
    __tablename__ = "skill_drafts"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    draft_key: Mapped[str] = mapped_column(
        String(120), unique=True, nullable=False
    )
    mode: Mapped[str] = mapped_column(String(20), nullable=False)  # new/edit
    skill_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("skills.id", ondelete="SET NULL"), nullable=True
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_skill_drafts_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<SkillDraft(key={self.draft_key}, version={self.version})>"


class SkillVersionDB(Base):
    """
    Append-only version history for skills.

    Each row holds a full snapshot of the skill; rows are never updated.
    """
    __tablename__ = "skill_versions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    skill_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("skills.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    # Relationships
    skill: Mapped["SkillDB"] = relationship("SkillDB", back_populates="versions")

    # Unique constraint: skill + version
    __table_args__ = (
        UniqueConstraint("skill_id", "version", name="uq_skill_version"),
        Index("ix_skill_versions_skill_id_created_at", "skill_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<SkillVersion(skill_id={self.skill_id}, version={self.version})>"


class SkillPublicationDB(Base):
    """
    A release of one specific skill version.
    """
    __tablename__ = "skill_publications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    skill_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("skills.id", ondelete="CASCADE"), nullable=False
    )
    skill_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("skill_versions.id", ondelete="CASCADE"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    skill: Mapped["SkillDB"] = relationship("SkillDB", back_populates="publications")
    skill_version: Mapped["SkillVersionDB"] = relationship("SkillVersionDB")

    __table_args__ = (
        Index("ix_skill_publications_skill_id_published_at", "skill_id", "published_at"),
    )

    def __repr__(self) -> str:
        return f"<SkillPublication(skill_id={self.skill_id}, version_id={self.skill_version_id})>"


class TagDB(Base):
    """
    Tags. ``name`` is stored normalized (trimmed, lower-cased, single spaces).
    """
    __tablename__ = "tags"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    created_by: Mapped[str] = mapped_column(
        String(150), default="SYS", nullable=False
    )
    updated_by: Mapped[str] = mapped_column(
        String(150), default="SYS", nullable=False
    )

    # Relationships
    skill_links: Mapped[List["SkillTagDB"]] = relationship(
        "SkillTagDB", back_populates="tag", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Tag(name={self.name})>"


class SkillTagDB(Base):
    """Skill <-> tag link. The composite key forbids duplicate pairs."""
    __tablename__ = "skill_tags"

    skill_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("skills.id", ondelete="CASCADE"), primary_key=True
    )
    tag_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True
    )

    # Relationships
    skill: Mapped["SkillDB"] = relationship("SkillDB", back_populates="tag_links")
    tag: Mapped["TagDB"] = relationship("TagDB", back_populates="skill_links", lazy="joined")

    def __repr__(self) -> str:
        return f"<SkillTag(skill_id={self.skill_id}, tag_id={self.tag_id})>"


class SkillFileDB(Base):
    """
    Supporting files for a skill.

    Exactly one of ``content_text`` / ``content_bytes`` is set, per ``is_binary``.
    """
    __tablename__ = "skill_files"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    skill_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("skills.id", ondelete="CASCADE"), nullable=False
    )
    path: Mapped[str] = mapped_column(
        String(500), nullable=False
    )  # Relative path within the skill package
    mime: Mapped[str] = mapped_column(String(200), nullable=False)
    is_binary: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    content_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_bytes: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True
    )
    source_path: Mapped[Optional[str]] = mapped_column(
        String(500), nullable=True
    )
    source_sha: Mapped[Optional[str]] = mapped_column(
        String(191), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    skill: Mapped["SkillDB"] = relationship("SkillDB", back_populates="files")

    __table_args__ = (
        UniqueConstraint("skill_id", "path", name="uq_skill_file_path"),
        Index("ix_skill_files_skill_id", "skill_id"),
    )

    def __repr__(self) -> str:
        return f"<SkillFile(skill_id={self.skill_id}, path={self.path})>"

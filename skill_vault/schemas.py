"""
Pydantic models for skill content.

The structured JSON columns (steps, triggers, guardrails, tests) and the
version snapshot are validated through these models at the boundary.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Escalation = Literal["REVIEW", "BLOCK", "ASK_HUMAN"]


class Guardrails(BaseModel):
    """Guardrail policy of a skill."""
    allowed_tools: List[str] = Field(default_factory=list)
    disable_model_invocation: bool = False
    user_invocable: bool = True
    stop_conditions: List[str] = Field(default_factory=list)
    escalation: Escalation = "ASK_HUMAN"


class AuthoringGuardrails(Guardrails):
    stop_conditions: List[str] = Field(..., min_length=1)


class SkillTestCase(BaseModel):
    name: str
    input: str
    expected_output: str


class AuthoringTestCase(BaseModel):
    name: str = Field(..., min_length=1)
    input: str = Field(..., min_length=1)
    expected_output: str = Field(..., min_length=1)


class SkillSnapshot(BaseModel):
    """Full projection of a skill captured in a version."""
    slug: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    status: str = Field(default="draft", min_length=1, max_length=20)
    summary: str
    inputs: str
    outputs: str
    steps: List[str]
    risks: str
    triggers: List[str]
    guardrails: Guardrails
    tests: List[SkillTestCase]
    tags: List[str]


class SkillCreate(BaseModel):
    """Request model for creating a skill."""
    title: str = Field(..., min_length=1, max_length=200)
    summary: str = Field(..., min_length=1)
    inputs: str = ""
    outputs: str = ""
    steps: List[str] = Field(..., min_length=3, max_length=7)
    risks: str = ""
    triggers: List[str] = Field(..., min_length=3)
    guardrails: AuthoringGuardrails
    tests: List[AuthoringTestCase] = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)


class SkillUpdate(BaseModel):
    """Request model for updating a skill. Every field is optional."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    summary: Optional[str] = Field(None, min_length=1)
    inputs: Optional[str] = None
    outputs: Optional[str] = None
    steps: Optional[List[str]] = Field(None, min_length=3, max_length=7)
    risks: Optional[str] = None
    triggers: Optional[List[str]] = Field(None, min_length=3)
    guardrails: Optional[AuthoringGuardrails] = None
    tests: Optional[List[AuthoringTestCase]] = Field(None, min_length=1)
    tags: Optional[List[str]] = None


class SkillOut(BaseModel):
    """Fully materialized skill with flattened tag names."""
    id: str
    slug: str
    title: str
    status: str
    summary: str
    inputs: str
    outputs: str
    steps: List[str]
    risks: str
    triggers: List[str]
    guardrails: Guardrails
    tests: List[SkillTestCase]
    tags: List[str]
    createdAt: datetime
    updatedAt: datetime


# ---------- Change-sets ----------

class GuardrailsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allowed_tools: Optional[List[str]] = None
    disable_model_invocation: Optional[bool] = None
    user_invocable: Optional[bool] = None
    stop_conditions: Optional[List[str]] = None
    escalation: Optional[Escalation] = None


class SkillPatch(BaseModel):
    """Field changes proposed by a change-set."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    summary: Optional[str] = None
    inputs: Optional[str] = None
    outputs: Optional[str] = None
    steps: Optional[List[str]] = None
    risks: Optional[str] = None
    triggers: Optional[List[str]] = None
    guardrails: Optional[GuardrailsPatch] = None
    tests: Optional[List[SkillTestCase]] = None
    tags: Optional[List[str]] = None


class FileOp(BaseModel):
    op: Literal["upsert", "delete"]
    path: str
    mime: Optional[str] = None
    content_text: Optional[str] = None
    content_base64: Optional[str] = None


class ChangeSet(BaseModel):
    """A gate-approved change-set (see services.change_set)."""
    skillPatch: SkillPatch
    fileOps: List[FileOp]
    notes: Optional[str] = None

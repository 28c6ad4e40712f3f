"""Prompt model — versioned prompt templates, per tenant or system-wide."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from controlplane.models.base import TimestampMixin, new_uuid, utcnow


class PromptCategory(StrEnum):
    DEVELOPMENT = "development"
    SUPPORT = "support"
    INFRASTRUCTURE = "infrastructure"
    GENERAL = "general"


class Prompt(TimestampMixin, SQLModel, table=True):
    __tablename__ = "prompts"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    # NULL means a system-wide prompt
    tenant_id: uuid.UUID | None = Field(default=None, nullable=True, index=True)

    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=1000)
    content: str = Field(sa_column=Column(Text, nullable=False))
    category: PromptCategory = Field(default=PromptCategory.GENERAL)
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    version: int = Field(default=1)
    is_system: bool = Field(default=False)
    is_active: bool = Field(default=True)
    created_by: uuid.UUID | None = Field(default=None)

    # Rolling usage metrics
    usage_count: int = Field(default=0)
    success_rate: float = Field(default=0.0)
    average_tokens: float = Field(default=0.0)
    average_response_time_ms: float = Field(default=0.0)


class PromptVersion(SQLModel, table=True):
    """A superseded prompt body."""

    __tablename__ = "prompt_versions"
    __table_args__ = (UniqueConstraint("prompt_id", "version"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    prompt_id: uuid.UUID = Field(foreign_key="prompts.id", nullable=False, index=True)
    version: int = Field(nullable=False)
    content: str = Field(sa_column=Column(Text, nullable=False))
    changed_by: uuid.UUID | None = Field(default=None)
    changed_at: datetime = Field(default_factory=utcnow, nullable=False)
    change_reason: str = Field(default="", max_length=500)


# ── Pydantic schemas ─────────────────────────────────────────

class PromptCreate(SQLModel):
    name: str = Field(max_length=255)
    description: str = Field(default="", max_length=1000)
    content: str = Field(min_length=1)
    category: PromptCategory = PromptCategory.GENERAL
    tags: list[str] = Field(default_factory=list)
    is_system: bool = False


class PromptUpdate(SQLModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    content: str | None = Field(default=None, min_length=1)
    category: PromptCategory | None = None
    tags: list[str] | None = None
    is_active: bool | None = None
    change_reason: str | None = Field(default=None, max_length=500)


class PromptVersionRead(SQLModel):
    version: int
    content: str
    changed_by: uuid.UUID | None
    changed_at: datetime
    change_reason: str


class PromptRead(SQLModel):
    id: uuid.UUID
    tenant_id: uuid.UUID | None
    name: str
    description: str
    content: str
    category: PromptCategory
    tags: list[str]
    version: int
    is_system: bool
    is_active: bool
    usage_count: int
    success_rate: float
    average_tokens: float
    average_response_time_ms: float
    created_at: datetime
    updated_at: datetime

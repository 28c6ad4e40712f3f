"""LLM provider catalog — upstream API configurations and their models."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from controlplane.models.base import MONEY_DIGITS, MONEY_PLACES, TimestampMixin, new_uuid


class ProviderKind(StrEnum):
    """Upstream API shapes the router knows how to speak.

    ``CUSTOM`` is the generic best-effort variant; any unrecognised kind
    string is treated as custom.
    """

    OPENAI = "openai"
    DEEPINFRA = "deepinfra"
    HUGGINGFACE = "huggingface"
    GROK = "grok"
    ANTHROPIC = "anthropic"
    CUSTOM = "custom"

    @classmethod
    def resolve(cls, value: str | None) -> "ProviderKind":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.CUSTOM


class Provider(TimestampMixin, SQLModel, table=True):
    __tablename__ = "llm_providers"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    description: str = Field(default="", max_length=1000)
    kind: str = Field(default=ProviderKind.CUSTOM, max_length=50)
    endpoint: str = Field(max_length=2048, nullable=False)

    # Fernet ciphertext of the provider API key
    encrypted_api_key: str = Field(nullable=False)

    is_active: bool = Field(default=True, index=True)
    default_model: str = Field(max_length=255, nullable=False)

    # Rate-limit policy (advisory, surfaced to operators)
    requests_per_minute: int = Field(default=60, ge=0)
    tokens_per_minute: int = Field(default=40000, ge=0)

    fallback_provider_id: uuid.UUID | None = Field(
        default=None, foreign_key="llm_providers.id", nullable=True
    )


class ProviderModel(TimestampMixin, SQLModel, table=True):
    __tablename__ = "llm_models"
    __table_args__ = (UniqueConstraint("provider_id", "model_id"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    provider_id: uuid.UUID = Field(foreign_key="llm_providers.id", nullable=False, index=True)

    model_id: str = Field(max_length=255, nullable=False)
    display_name: str = Field(max_length=255, nullable=False)
    context_window: int = Field(default=4096)

    # USD per 1000 tokens
    input_cost_per_1k: Decimal = Field(
        default=Decimal("0.01"), max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES
    )
    output_cost_per_1k: Decimal = Field(
        default=Decimal("0.03"), max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES
    )

    text_generation: bool = Field(default=True)
    code_generation: bool = Field(default=False)
    image_analysis: bool = Field(default=False)
    priority: int = Field(default=0)


# ── Pydantic schemas ─────────────────────────────────────────

class ModelSpec(SQLModel):
    model_id: str = Field(max_length=255)
    display_name: str = Field(max_length=255)
    context_window: int = Field(default=4096, ge=1)
    input_cost_per_1k: Decimal = Field(default=Decimal("0.01"), ge=0)
    output_cost_per_1k: Decimal = Field(default=Decimal("0.03"), ge=0)
    text_generation: bool = True
    code_generation: bool = False
    image_analysis: bool = False
    priority: int = 0


class ProviderCreate(SQLModel):
    name: str = Field(max_length=255)
    description: str = Field(default="", max_length=1000)
    kind: str = Field(default=ProviderKind.CUSTOM, max_length=50)
    endpoint: str = Field(max_length=2048)
    api_key: str = Field(min_length=1)
    models: list[ModelSpec] = Field(min_length=1)
    default_model: str = Field(max_length=255)
    requests_per_minute: int = Field(default=60, ge=0)
    tokens_per_minute: int = Field(default=40000, ge=0)
    fallback_provider_id: uuid.UUID | None = None


class ProviderUpdate(SQLModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    kind: str | None = Field(default=None, max_length=50)
    endpoint: str | None = Field(default=None, max_length=2048)
    api_key: str | None = None
    models: list[ModelSpec] | None = None
    default_model: str | None = Field(default=None, max_length=255)
    requests_per_minute: int | None = Field(default=None, ge=0)
    tokens_per_minute: int | None = Field(default=None, ge=0)
    fallback_provider_id: uuid.UUID | None = None
    is_active: bool | None = None


class ProviderRead(SQLModel):
    """Never includes the API key."""
    id: uuid.UUID
    name: str
    description: str
    kind: str
    endpoint: str
    is_active: bool
    default_model: str
    requests_per_minute: int
    tokens_per_minute: int
    fallback_provider_id: uuid.UUID | None
    models: list[ModelSpec]
    created_at: datetime
    updated_at: datetime

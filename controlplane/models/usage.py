"""Usage ledger models — per-tenant monthly token / cost accounting."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from controlplane.models.base import MONEY_DIGITS, MONEY_PLACES, TimestampMixin, new_uuid, utcnow


class AlertKind(StrEnum):
    THRESHOLD = "threshold"
    LIMIT_REACHED = "limit_reached"
    FALLBACK = "fallback"
    ERROR = "error"


class UsageRecord(TimestampMixin, SQLModel, table=True):
    """Singleton per tenant: settings plus current-month counters."""

    __tablename__ = "llm_usage"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(nullable=False, unique=True, index=True)

    # Settings
    custom_provider_settings: bool = Field(default=False)
    preferred_provider_id: uuid.UUID | None = Field(
        default=None, foreign_key="llm_providers.id", nullable=True
    )
    has_limit: bool = Field(default=True)
    monthly_token_limit: int = Field(default=1_000_000, ge=0)
    alert_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    # Current calendar month (the month of last_updated)
    current_tokens: int = Field(default=0)
    current_requests: int = Field(default=0)
    current_cost: Decimal = Field(
        default=Decimal("0"), max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES
    )
    last_updated: datetime = Field(default_factory=utcnow, nullable=False)


class ModelOverride(TimestampMixin, SQLModel, table=True):
    """Tenant-chosen model for a given provider."""

    __tablename__ = "llm_model_overrides"
    __table_args__ = (UniqueConstraint("tenant_id", "provider_id"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(nullable=False, index=True)
    provider_id: uuid.UUID = Field(foreign_key="llm_providers.id", nullable=False)
    model_id: str = Field(max_length=255, nullable=False)


class UsageHistory(TimestampMixin, SQLModel, table=True):
    """A closed-out month."""

    __tablename__ = "llm_usage_history"
    __table_args__ = (UniqueConstraint("tenant_id", "year", "month"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(nullable=False, index=True)
    year: int = Field(nullable=False)
    month: int = Field(nullable=False, ge=1, le=12)
    tokens: int = Field(default=0)
    requests: int = Field(default=0)
    cost: Decimal = Field(
        default=Decimal("0"), max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES
    )


class UsageAlert(TimestampMixin, SQLModel, table=True):
    """Append-only; only the acknowledgement fields ever change."""

    __tablename__ = "llm_usage_alerts"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: uuid.UUID = Field(nullable=False, index=True)
    kind: AlertKind = Field(nullable=False)
    message: str = Field(max_length=2000, nullable=False)
    acknowledged: bool = Field(default=False)
    acknowledged_by: uuid.UUID | None = Field(default=None)
    acknowledged_at: datetime | None = Field(default=None)


# ── Pydantic schemas ─────────────────────────────────────────

class UsageAlertRead(SQLModel):
    id: uuid.UUID
    kind: AlertKind
    message: str
    acknowledged: bool
    acknowledged_by: uuid.UUID | None
    acknowledged_at: datetime | None
    created_at: datetime


class UsageHistoryRead(SQLModel):
    year: int
    month: int
    tokens: int
    requests: int
    cost: Decimal


class ModelOverrideSpec(SQLModel):
    provider_id: uuid.UUID
    model_id: str = Field(max_length=255)


class UsageSettingsUpdate(SQLModel):
    custom_provider_settings: bool | None = None
    preferred_provider_id: uuid.UUID | None = None
    has_limit: bool | None = None
    monthly_token_limit: int | None = Field(default=None, ge=0)
    alert_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    model_overrides: list[ModelOverrideSpec] | None = Field(
        default=None, description="Replaces all overrides when given"
    )


class UsageRead(SQLModel):
    tenant_id: uuid.UUID
    custom_provider_settings: bool
    preferred_provider_id: uuid.UUID | None
    has_limit: bool
    monthly_token_limit: int
    alert_threshold: float
    current_tokens: int
    current_requests: int
    current_cost: Decimal
    last_updated: datetime
    model_overrides: list[ModelOverrideSpec]
    history: list[UsageHistoryRead]
    alerts: list[UsageAlertRead]

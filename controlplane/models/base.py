"""Shared base fields for all models."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# Money columns: USD with 8 fractional digits (sub-cent per-token rates).
MONEY_DIGITS = 18
MONEY_PLACES = 8
MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)


def to_money(value: Decimal | float | int | str) -> Decimal:
    """Normalize a number to the fixed-point precision used for costs."""
    return Decimal(str(value)).quantize(MONEY_QUANTUM)


class TimestampMixin(SQLModel):
    """Created / updated timestamps injected into every table."""

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)

"""Usage ledger — per-tenant monthly token / cost counters and alerts.

Every counter mutation is a read-modify-write of the tenant's single
``UsageRecord``; ``UsageLedger`` serializes those per tenant with a keyed
lock so concurrent completions for one tenant never race on the counters or
on the month rollover, while different tenants proceed independently.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from controlplane.core.clock import Clock, system_clock
from controlplane.core.config import get_settings
from controlplane.core.errors import NotFoundError, ValidationError
from controlplane.core.locks import KeyedLock
from controlplane.models.base import to_money
from controlplane.models.provider import Provider
from controlplane.models.usage import (
    AlertKind,
    ModelOverride,
    UsageAlert,
    UsageHistory,
    UsageRecord,
    UsageSettingsUpdate,
)

logger = logging.getLogger(__name__)


@dataclass
class UsageSnapshot:
    """Counters after a ``record_usage`` call."""
    tokens: int
    requests: int
    cost: Decimal
    last_updated: datetime
    has_reached_limit: bool
    new_alerts: list[UsageAlert] = field(default_factory=list)


def _same_month(a: datetime, b: datetime) -> bool:
    return (a.year, a.month) == (b.year, b.month)


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class UsageLedger:
    def __init__(self, clock: Clock = system_clock) -> None:
        self.clock = clock
        self._locks = KeyedLock()

    # ── Lookup ────────────────────────────────────────────────

    async def _load(self, session: AsyncSession, tenant_id: uuid.UUID) -> UsageRecord | None:
        stmt = (
            select(UsageRecord)
            .where(UsageRecord.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, session: AsyncSession, tenant_id: uuid.UUID) -> UsageRecord:
        record = await self._load(session, tenant_id)
        if record is not None:
            return record

        settings = get_settings()
        record = UsageRecord(
            tenant_id=tenant_id,
            monthly_token_limit=settings.default_monthly_token_limit,
            alert_threshold=settings.default_alert_threshold,
            last_updated=self.clock.now(),
        )
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            # Another request created it first
            await session.rollback()
            record = await self._load(session, tenant_id)
            if record is None:
                raise
        return record

    def in_current_month(self, record: UsageRecord) -> bool:
        return _same_month(record.last_updated, self.clock.now())

    def effective_tokens(self, record: UsageRecord) -> int:
        """Tokens counted against this month's cap (0 once the month has turned)."""
        return record.current_tokens if self.in_current_month(record) else 0

    def is_over_limit(self, record: UsageRecord) -> bool:
        return record.has_limit and self.effective_tokens(record) >= record.monthly_token_limit

    async def get_model_override(
        self, session: AsyncSession, tenant_id: uuid.UUID, provider_id: uuid.UUID
    ) -> str | None:
        stmt = select(ModelOverride).where(
            ModelOverride.tenant_id == tenant_id,
            ModelOverride.provider_id == provider_id,
        )
        result = await session.execute(stmt)
        override = result.scalar_one_or_none()
        return override.model_id if override else None

    # ── Mutations ─────────────────────────────────────────────

    async def record_usage(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        tokens_used: int,
        cost: Decimal | float,
    ) -> UsageSnapshot:
        async with self._locks.hold(tenant_id):
            record = await self.get_or_create(session, tenant_id)
            now = self.clock.now()

            if not _same_month(record.last_updated, now):
                self._roll_over(session, record)

            record.current_tokens += tokens_used
            record.current_requests += 1
            record.current_cost = to_money(record.current_cost) + to_money(cost)
            record.last_updated = now
            record.updated_at = now

            new_alerts = await self._check_thresholds(session, record, now)

            session.add(record)
            await session.commit()

        return UsageSnapshot(
            tokens=record.current_tokens,
            requests=record.current_requests,
            cost=record.current_cost,
            last_updated=record.last_updated,
            has_reached_limit=(
                record.has_limit and record.current_tokens >= record.monthly_token_limit
            ),
            new_alerts=new_alerts,
        )

    def _roll_over(self, session: AsyncSession, record: UsageRecord) -> None:
        last = record.last_updated
        session.add(
            UsageHistory(
                tenant_id=record.tenant_id,
                year=last.year,
                month=last.month,
                tokens=record.current_tokens,
                requests=record.current_requests,
                cost=to_money(record.current_cost),
            )
        )
        logger.info(
            "Archived %d-%02d usage for tenant %s (%d tokens)",
            last.year, last.month, record.tenant_id, record.current_tokens,
        )
        record.current_tokens = 0
        record.current_requests = 0
        record.current_cost = Decimal("0")

    async def _has_open_alert(
        self, session: AsyncSession, tenant_id: uuid.UUID, kind: AlertKind, now: datetime
    ) -> bool:
        stmt = select(UsageAlert).where(
            UsageAlert.tenant_id == tenant_id,
            UsageAlert.kind == kind,
            UsageAlert.acknowledged == False,  # noqa: E712
            UsageAlert.created_at >= _month_start(now),
        ).limit(1)
        result = await session.execute(stmt)
        return result.scalars().first() is not None

    async def _check_thresholds(
        self, session: AsyncSession, record: UsageRecord, now: datetime
    ) -> list[UsageAlert]:
        if not record.has_limit or record.monthly_token_limit <= 0:
            return []

        used = record.current_tokens / record.monthly_token_limit
        alerts: list[UsageAlert] = []

        if record.alert_threshold <= used < 1.0:
            if not await self._has_open_alert(session, record.tenant_id, AlertKind.THRESHOLD, now):
                alerts.append(
                    self._new_alert(
                        record.tenant_id,
                        AlertKind.THRESHOLD,
                        f"Organization has used {round(used * 100)}% of its monthly token limit.",
                        now,
                    )
                )
        if used >= 1.0:
            if not await self._has_open_alert(
                session, record.tenant_id, AlertKind.LIMIT_REACHED, now
            ):
                alerts.append(
                    self._new_alert(
                        record.tenant_id,
                        AlertKind.LIMIT_REACHED,
                        "Organization has reached 100% of its monthly token limit.",
                        now,
                    )
                )

        for alert in alerts:
            session.add(alert)
            logger.warning("Usage alert for tenant %s: %s", record.tenant_id, alert.message)
        return alerts

    @staticmethod
    def _new_alert(
        tenant_id: uuid.UUID, kind: AlertKind, message: str, now: datetime
    ) -> UsageAlert:
        return UsageAlert(
            tenant_id=tenant_id, kind=kind, message=message, created_at=now, updated_at=now
        )

    async def record_fallback(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        from_provider: str,
        to_provider: str,
        reason: str,
    ) -> UsageAlert:
        async with self._locks.hold(tenant_id):
            await self.get_or_create(session, tenant_id)
            alert = self._new_alert(
                tenant_id,
                AlertKind.FALLBACK,
                f"LLM provider fallback from {from_provider} to {to_provider}: {reason}",
                self.clock.now(),
            )
            session.add(alert)
            await session.commit()
        return alert

    async def acknowledge_alert(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        alert_id: uuid.UUID,
        acknowledged_by: uuid.UUID,
    ) -> UsageAlert:
        async with self._locks.hold(tenant_id):
            alert = await session.get(UsageAlert, alert_id)
            if alert is None or alert.tenant_id != tenant_id:
                raise NotFoundError("Alert not found")
            now = self.clock.now()
            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = now
            alert.updated_at = now
            session.add(alert)
            await session.commit()
        return alert

    async def update_settings(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        body: UsageSettingsUpdate,
    ) -> UsageRecord:
        update_data = body.model_dump(exclude_unset=True)
        overrides = update_data.pop("model_overrides", None)

        preferred = update_data.get("preferred_provider_id")
        if preferred is not None and await session.get(Provider, preferred) is None:
            raise ValidationError("Preferred provider not found")
        for item in overrides or []:
            if await session.get(Provider, item["provider_id"]) is None:
                raise ValidationError("Model override references an unknown provider")

        async with self._locks.hold(tenant_id):
            record = await self.get_or_create(session, tenant_id)
            for field_name, value in update_data.items():
                setattr(record, field_name, value)
            record.updated_at = self.clock.now()
            session.add(record)

            if overrides is not None:
                await session.execute(
                    delete(ModelOverride).where(ModelOverride.tenant_id == tenant_id)
                )
                session.add_all(
                    ModelOverride(
                        tenant_id=tenant_id,
                        provider_id=item["provider_id"],
                        model_id=item["model_id"],
                    )
                    for item in overrides
                )
            await session.commit()
        return record

    # ── Read side ─────────────────────────────────────────────

    async def list_alerts(self, session: AsyncSession, tenant_id: uuid.UUID) -> list[UsageAlert]:
        stmt = (
            select(UsageAlert)
            .where(UsageAlert.tenant_id == tenant_id)
            .order_by(UsageAlert.created_at.asc())  # type: ignore[union-attr]
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_history(
        self, session: AsyncSession, tenant_id: uuid.UUID
    ) -> list[UsageHistory]:
        stmt = (
            select(UsageHistory)
            .where(UsageHistory.tenant_id == tenant_id)
            .order_by(UsageHistory.year.asc(), UsageHistory.month.asc())  # type: ignore[union-attr]
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list_overrides(
        self, session: AsyncSession, tenant_id: uuid.UUID
    ) -> list[ModelOverride]:
        stmt = select(ModelOverride).where(ModelOverride.tenant_id == tenant_id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

"""Usage ledger — additivity, month rollover, alerts, settings."""

import asyncio
import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from controlplane.core.errors import NotFoundError, ValidationError
from controlplane.models.usage import (
    AlertKind,
    ModelOverrideSpec,
    UsageSettingsUpdate,
)


async def _set_limit(session, ledger, tenant_id, limit: int, threshold: float = 0.8):
    await ledger.update_settings(
        session,
        tenant_id,
        UsageSettingsUpdate(has_limit=True, monthly_token_limit=limit, alert_threshold=threshold),
    )


@pytest.mark.asyncio
async def test_get_or_create_uses_defaults(session, ledger, tenant_id):
    record = await ledger.get_or_create(session, tenant_id)
    again = await ledger.get_or_create(session, tenant_id)

    assert record.id == again.id
    assert record.has_limit is True
    assert record.monthly_token_limit == 1_000_000
    assert record.alert_threshold == pytest.approx(0.8)
    assert record.current_tokens == 0


@pytest.mark.asyncio
async def test_record_usage_is_additive(session, ledger, tenant_id):
    await ledger.record_usage(session, tenant_id, 120, Decimal("0.0012"))
    snap = await ledger.record_usage(session, tenant_id, 80, Decimal("0.0008"))

    assert snap.tokens == 200
    assert snap.requests == 2
    assert snap.cost == Decimal("0.00200000")
    assert snap.has_reached_limit is False


@pytest.mark.asyncio
async def test_concurrent_usage_for_one_tenant_is_not_lost(test_session_factory, ledger, tenant_id):
    async def one_call():
        async with test_session_factory() as s:
            await ledger.record_usage(s, tenant_id, 10, Decimal("0.01"))

    await asyncio.gather(*(one_call() for _ in range(10)))

    async with test_session_factory() as s:
        record = await ledger.get_or_create(s, tenant_id)
    assert record.current_tokens == 100
    assert record.current_requests == 10
    assert record.current_cost == Decimal("0.10000000")


@pytest.mark.asyncio
async def test_month_rollover_archives_exactly_once(session, ledger, clock, tenant_id):
    await ledger.record_usage(session, tenant_id, 500, Decimal("0.5"))
    await ledger.record_usage(session, tenant_id, 250, Decimal("0.25"))

    clock.set(datetime(2026, 4, 2, 9, 0, 0))
    snap = await ledger.record_usage(session, tenant_id, 40, Decimal("0.04"))
    await ledger.record_usage(session, tenant_id, 10, Decimal("0.01"))

    assert snap.tokens == 40
    assert snap.requests == 1

    history = await ledger.list_history(session, tenant_id)
    assert len(history) == 1
    assert (history[0].year, history[0].month) == (2026, 3)
    assert history[0].tokens == 750
    assert history[0].requests == 2
    assert history[0].cost == Decimal("0.75")

    record = await ledger.get_or_create(session, tenant_id)
    assert record.current_tokens == 50


@pytest.mark.asyncio
async def test_effective_tokens_reset_in_new_month(session, ledger, clock, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=100)
    await ledger.record_usage(session, tenant_id, 150, Decimal("0"))
    record = await ledger.get_or_create(session, tenant_id)
    assert ledger.is_over_limit(record)

    clock.set(datetime(2026, 4, 1, 0, 0, 1))
    assert ledger.effective_tokens(record) == 0
    assert not ledger.is_over_limit(record)


@pytest.mark.asyncio
async def test_threshold_alert_once_per_month_while_unacknowledged(session, ledger, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=1000, threshold=0.5)

    first = await ledger.record_usage(session, tenant_id, 600, Decimal("0"))
    assert [a.kind for a in first.new_alerts] == [AlertKind.THRESHOLD]

    for _ in range(3):
        snap = await ledger.record_usage(session, tenant_id, 50, Decimal("0"))
        assert snap.new_alerts == []

    alerts = await ledger.list_alerts(session, tenant_id)
    assert [a.kind for a in alerts] == [AlertKind.THRESHOLD]


@pytest.mark.asyncio
async def test_acknowledged_threshold_alert_can_fire_again(session, ledger, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=1000, threshold=0.5)
    snap = await ledger.record_usage(session, tenant_id, 600, Decimal("0"))
    await ledger.acknowledge_alert(session, tenant_id, snap.new_alerts[0].id, uuid.uuid4())

    again = await ledger.record_usage(session, tenant_id, 10, Decimal("0"))
    assert [a.kind for a in again.new_alerts] == [AlertKind.THRESHOLD]


@pytest.mark.asyncio
async def test_threshold_alert_fires_again_next_month(session, ledger, clock, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=1000, threshold=0.5)
    await ledger.record_usage(session, tenant_id, 600, Decimal("0"))

    clock.set(datetime(2026, 4, 10, 8, 0, 0))
    snap = await ledger.record_usage(session, tenant_id, 700, Decimal("0"))
    assert [a.kind for a in snap.new_alerts] == [AlertKind.THRESHOLD]


@pytest.mark.asyncio
async def test_open_alert_check_is_bounded_by_month_start(session, ledger, clock, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=1000, threshold=0.5)
    clock.set(datetime(2026, 3, 31, 23, 59, 59))
    await ledger.record_usage(session, tenant_id, 600, Decimal("0"))

    clock.set(datetime(2026, 4, 1, 0, 0, 0))
    first = await ledger.record_usage(session, tenant_id, 600, Decimal("0"))
    second = await ledger.record_usage(session, tenant_id, 10, Decimal("0"))

    assert [a.kind for a in first.new_alerts] == [AlertKind.THRESHOLD]
    assert second.new_alerts == []
    alerts = await ledger.list_alerts(session, tenant_id)
    assert [a.created_at for a in alerts] == [
        datetime(2026, 3, 31, 23, 59, 59),
        datetime(2026, 4, 1, 0, 0, 0),
    ]


@pytest.mark.asyncio
async def test_limit_reached_alert(session, ledger, tenant_id):
    await _set_limit(session, ledger, tenant_id, limit=100, threshold=0.8)

    snap = await ledger.record_usage(session, tenant_id, 100, Decimal("0"))
    assert snap.has_reached_limit is True
    assert [a.kind for a in snap.new_alerts] == [AlertKind.LIMIT_REACHED]

    snap = await ledger.record_usage(session, tenant_id, 5, Decimal("0"))
    assert snap.new_alerts == []


@pytest.mark.asyncio
async def test_no_alerts_without_limit(session, ledger, tenant_id):
    await ledger.update_settings(
        session, tenant_id, UsageSettingsUpdate(has_limit=False, monthly_token_limit=10)
    )
    snap = await ledger.record_usage(session, tenant_id, 500, Decimal("0"))
    assert snap.new_alerts == []
    assert snap.has_reached_limit is False


@pytest.mark.asyncio
async def test_record_fallback_and_acknowledge(session, ledger, clock, tenant_id):
    alert = await ledger.record_fallback(session, tenant_id, "primary", "backup", "timeout")
    assert alert.kind == AlertKind.FALLBACK
    assert "primary" in alert.message and "backup" in alert.message

    who = uuid.uuid4()
    acked = await ledger.acknowledge_alert(session, tenant_id, alert.id, who)
    assert acked.acknowledged is True
    assert acked.acknowledged_by == who
    assert acked.acknowledged_at == clock.now()


@pytest.mark.asyncio
async def test_acknowledge_unknown_or_foreign_alert(session, ledger, tenant_id):
    with pytest.raises(NotFoundError):
        await ledger.acknowledge_alert(session, tenant_id, uuid.uuid4(), uuid.uuid4())

    alert = await ledger.record_fallback(session, tenant_id, "a", "b", "boom")
    with pytest.raises(NotFoundError):
        await ledger.acknowledge_alert(session, uuid.uuid4(), alert.id, uuid.uuid4())


@pytest.mark.asyncio
async def test_update_settings_replaces_overrides(session, ledger, tenant_id, make_provider):
    provider = await make_provider("primary", models=["small", "large"])

    await ledger.update_settings(
        session,
        tenant_id,
        UsageSettingsUpdate(
            custom_provider_settings=True,
            preferred_provider_id=provider.id,
            model_overrides=[ModelOverrideSpec(provider_id=provider.id, model_id="large")],
        ),
    )
    assert await ledger.get_model_override(session, tenant_id, provider.id) == "large"

    await ledger.update_settings(session, tenant_id, UsageSettingsUpdate(model_overrides=[]))
    assert await ledger.get_model_override(session, tenant_id, provider.id) is None

    record = await ledger.get_or_create(session, tenant_id)
    assert record.preferred_provider_id == provider.id


@pytest.mark.asyncio
async def test_update_settings_rejects_unknown_provider(session, ledger, tenant_id):
    with pytest.raises(ValidationError):
        await ledger.update_settings(
            session, tenant_id, UsageSettingsUpdate(preferred_provider_id=uuid.uuid4())
        )
    with pytest.raises(ValidationError):
        await ledger.update_settings(
            session,
            tenant_id,
            UsageSettingsUpdate(
                model_overrides=[ModelOverrideSpec(provider_id=uuid.uuid4(), model_id="x")]
            ),
        )

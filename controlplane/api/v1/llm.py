"""LLM query and tenant usage endpoints."""

import uuid
from decimal import Decimal
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from controlplane.api.deps import LLM, AdminAuth, Auth, Ledger, Session
from controlplane.models.usage import (
    ModelOverrideSpec,
    UsageAlertRead,
    UsageHistoryRead,
    UsageRead,
    UsageRecord,
    UsageSettingsUpdate,
)
from controlplane.services.llm_router import PromptRequest
from controlplane.services.usage_ledger import UsageLedger

router = APIRouter(prefix="/llm", tags=["llm"])


class QueryRequest(BaseModel):
    prompt_id: uuid.UUID | None = None
    prompt_content: str | None = None
    provider_id: uuid.UUID | None = None
    model_id: str | None = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)
    system_message: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class QueryResponse(BaseModel):
    success: bool
    content: str
    usage: dict[str, int]
    provider: str
    model: str
    response_time_ms: int
    cost: str


@router.post("/query", response_model=QueryResponse)
async def query(body: QueryRequest, auth: Auth, session: Session, llm: LLM) -> QueryResponse:
    result = await llm.send_prompt(
        session,
        PromptRequest(tenant_id=auth.tenant_id, **body.model_dump()),
    )
    return QueryResponse(**result.to_dict())


# ── Usage ─────────────────────────────────────────────────────

async def _usage_read(session, ledger: UsageLedger, record: UsageRecord) -> UsageRead:
    overrides = await ledger.list_overrides(session, record.tenant_id)
    history = await ledger.list_history(session, record.tenant_id)
    alerts = await ledger.list_alerts(session, record.tenant_id)
    # Counters from an earlier month are archived on the next write
    current = ledger.in_current_month(record)
    return UsageRead(
        tenant_id=record.tenant_id,
        custom_provider_settings=record.custom_provider_settings,
        preferred_provider_id=record.preferred_provider_id,
        has_limit=record.has_limit,
        monthly_token_limit=record.monthly_token_limit,
        alert_threshold=record.alert_threshold,
        current_tokens=record.current_tokens if current else 0,
        current_requests=record.current_requests if current else 0,
        current_cost=record.current_cost if current else Decimal("0"),
        last_updated=record.last_updated,
        model_overrides=[
            ModelOverrideSpec(provider_id=o.provider_id, model_id=o.model_id) for o in overrides
        ],
        history=[UsageHistoryRead.model_validate(h, from_attributes=True) for h in history],
        alerts=[UsageAlertRead.model_validate(a, from_attributes=True) for a in alerts],
    )


@router.get("/usage", response_model=UsageRead)
async def get_usage(auth: Auth, session: Session, ledger: Ledger) -> UsageRead:
    record = await ledger.get_or_create(session, auth.tenant_id)
    return await _usage_read(session, ledger, record)


@router.patch("/usage/settings", response_model=UsageRead)
async def update_usage_settings(
    body: UsageSettingsUpdate,
    auth: AdminAuth,
    session: Session,
    ledger: Ledger,
) -> UsageRead:
    record = await ledger.update_settings(session, auth.tenant_id, body)
    return await _usage_read(session, ledger, record)


@router.post("/usage/alerts/{alert_id}/acknowledge", response_model=UsageAlertRead)
async def acknowledge_alert(
    alert_id: uuid.UUID,
    auth: AdminAuth,
    session: Session,
    ledger: Ledger,
) -> UsageAlertRead:
    alert = await ledger.acknowledge_alert(session, auth.tenant_id, alert_id, auth.user_id)
    return UsageAlertRead.model_validate(alert, from_attributes=True)

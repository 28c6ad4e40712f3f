"""LLM router — provider/model resolution, metering and fallback.

Flow for one request:
  1. Load or create the tenant's usage record
  2. Refuse with QuotaExceeded when the monthly cap is already met
  3. Resolve the provider (explicit → preferred → first active)
  4. Resolve the model (explicit → tenant override → provider default)
  5. Resolve the prompt text and substitute ``{{ name }}`` variables
  6. Dispatch to the adapter for the provider kind, under a timeout
  7. On success: price the call, meter it, update prompt metrics, publish
  8. On adapter failure: follow the provider's fallback link, once per hop
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.core.errors import (
    FallbackCycleError,
    ModelNotFoundError,
    NoProviderAvailableError,
    QuotaExceededError,
    UpstreamError,
    ValidationError,
)
from controlplane.core.security import decrypt_value
from controlplane.models.base import to_money
from controlplane.models.prompt import Prompt
from controlplane.models.provider import Provider, ProviderModel
from controlplane.models.usage import UsageRecord
from controlplane.services import prompts as prompt_service
from controlplane.services import provider_registry
from controlplane.services.adapters import ProviderCall, TokenUsage, get_adapter
from controlplane.services.usage_ledger import UsageLedger, UsageSnapshot

logger = logging.getLogger(__name__)

LLM_TOPIC = "llm"

# (topic, params, data) -> number of subscribers reached
EventPublisher = Callable[[str, dict, dict], Awaitable[int]]


@dataclass
class PromptRequest:
    """One completion request as submitted by a tenant."""
    tenant_id: uuid.UUID
    prompt_id: uuid.UUID | None = None
    prompt_content: str | None = None
    provider_id: uuid.UUID | None = None
    model_id: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1000
    system_message: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class PromptResult:
    success: bool
    content: str
    usage: TokenUsage
    provider: str
    model: str
    response_time_ms: int
    cost: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "provider": self.provider,
            "model": self.model,
            "response_time_ms": self.response_time_ms,
            "cost": str(self.cost),
        }


def compute_cost(usage: TokenUsage, model: ProviderModel) -> Decimal:
    """Price a call from the model's per-1k input / output rates."""
    cost = (
        Decimal(usage.prompt_tokens) * to_money(model.input_cost_per_1k) / 1000
        + Decimal(usage.completion_tokens) * to_money(model.output_cost_per_1k) / 1000
    )
    return to_money(cost)


class LLMRouter:
    def __init__(
        self,
        ledger: UsageLedger,
        timeout: float = 60.0,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.ledger = ledger
        self.timeout = timeout
        self.publisher = publisher

    async def send_prompt(self, session: AsyncSession, request: PromptRequest) -> PromptResult:
        started = time.monotonic()
        try:
            return await self._send(session, request, visited=set())
        except (UpstreamError, FallbackCycleError):
            if request.prompt_id is not None:
                await self._record_prompt_failure(
                    session, request, int((time.monotonic() - started) * 1000)
                )
            raise

    async def _send(
        self,
        session: AsyncSession,
        request: PromptRequest,
        visited: set[uuid.UUID],
    ) -> PromptResult:
        started = time.monotonic()

        # 1–2. Usage record and quota
        record = await self.ledger.get_or_create(session, request.tenant_id)
        if self.ledger.is_over_limit(record):
            raise QuotaExceededError(
                "Monthly token limit reached",
                limit=record.monthly_token_limit,
                used=record.current_tokens,
            )

        # 3–4. Provider and model
        provider = await self._resolve_provider(session, request, record)
        visited.add(provider.id)
        model = await self._resolve_model(session, request, record, provider)

        # 5. Prompt text
        prompt: Prompt | None = None
        if request.prompt_id is not None:
            prompt = await prompt_service.load_prompt(
                session, request.prompt_id, request.tenant_id
            )
            template = prompt.content
        elif request.prompt_content:
            template = request.prompt_content
        else:
            raise ValidationError("Either prompt_id or prompt_content is required")
        text = prompt_service.process_prompt_template(template, request.variables)

        # 6. Dispatch
        adapter = get_adapter(provider.kind)
        call = ProviderCall(
            endpoint=provider.endpoint,
            api_key=decrypt_value(provider.encrypted_api_key),
            model_id=model.model_id,
            prompt=text,
            system_message=request.system_message,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            timeout=self.timeout,
        )
        try:
            result = await asyncio.wait_for(adapter(call), timeout=self.timeout)
        except Exception as exc:
            logger.warning(
                "Provider %s (%s) failed for tenant %s: %r",
                provider.name, provider.kind, request.tenant_id, exc,
            )
            # 8. Fallback
            fallback = await self._fallback_target(session, provider, visited, exc)
            if fallback is None:
                raise UpstreamError(
                    f"Provider {provider.name} failed: {exc}", provider=provider.name
                ) from exc
            reason = str(exc) or type(exc).__name__
        else:
            # 7. Success
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return await self._complete(
                session, request, provider, model, prompt, result.content, result.usage,
                elapsed_ms,
            )

        await self.ledger.record_fallback(
            session, request.tenant_id, provider.name, fallback.name, reason
        )
        logger.warning("Falling back from %s to %s", provider.name, fallback.name)
        await self._publish(
            request.tenant_id,
            {
                "type": "provider_fallback",
                "fromProvider": provider.name,
                "toProvider": fallback.name,
                "reason": reason,
            },
        )
        retry = replace(request, provider_id=fallback.id, model_id=None)
        return await self._send(session, retry, visited)

    # ── Resolution ────────────────────────────────────────────

    async def _resolve_provider(
        self, session: AsyncSession, request: PromptRequest, record: UsageRecord
    ) -> Provider:
        if request.provider_id is not None:
            provider = await provider_registry.get_active_provider(session, request.provider_id)
            if provider is None:
                raise NoProviderAvailableError(
                    "Requested provider is unknown or inactive",
                    provider_id=str(request.provider_id),
                )
            return provider

        if record.custom_provider_settings and record.preferred_provider_id is not None:
            provider = await provider_registry.get_active_provider(
                session, record.preferred_provider_id
            )
            if provider is not None:
                return provider

        provider = await provider_registry.first_active_provider(session)
        if provider is None:
            raise NoProviderAvailableError("No active LLM provider is configured")
        return provider

    async def _resolve_model(
        self,
        session: AsyncSession,
        request: PromptRequest,
        record: UsageRecord,
        provider: Provider,
    ) -> ProviderModel:
        model_id = request.model_id
        if model_id is None and record.custom_provider_settings:
            model_id = await self.ledger.get_model_override(
                session, request.tenant_id, provider.id
            )
        if model_id is None:
            model_id = provider.default_model

        model = await provider_registry.get_model(session, provider.id, model_id)
        if model is None:
            raise ModelNotFoundError(
                f"Model '{model_id}' is not offered by provider {provider.name}",
                model=model_id,
            )
        return model

    async def _fallback_target(
        self,
        session: AsyncSession,
        provider: Provider,
        visited: set[uuid.UUID],
        exc: Exception,
    ) -> Provider | None:
        if provider.fallback_provider_id is None:
            return None
        if provider.fallback_provider_id in visited:
            raise FallbackCycleError(
                f"Fallback from {provider.name} leads back to a provider already tried",
                provider=provider.name,
            ) from exc
        return await provider_registry.get_active_provider(session, provider.fallback_provider_id)

    # ── Completion bookkeeping ────────────────────────────────

    async def _complete(
        self,
        session: AsyncSession,
        request: PromptRequest,
        provider: Provider,
        model: ProviderModel,
        prompt: Prompt | None,
        content: str,
        usage: TokenUsage,
        elapsed_ms: int,
    ) -> PromptResult:
        cost = compute_cost(usage, model)
        snapshot = await self.ledger.record_usage(
            session, request.tenant_id, usage.total_tokens, cost
        )
        if prompt is not None:
            await prompt_service.update_metrics(
                session, prompt, True, usage.total_tokens, elapsed_ms
            )
        await self._publish_usage(request.tenant_id, provider, model, usage, cost, snapshot)

        return PromptResult(
            success=True,
            content=content,
            usage=usage,
            provider=provider.name,
            model=model.model_id,
            response_time_ms=elapsed_ms,
            cost=cost,
        )

    async def _record_prompt_failure(
        self, session: AsyncSession, request: PromptRequest, elapsed_ms: int
    ) -> None:
        prompt = await session.get(Prompt, request.prompt_id)
        if prompt is None:
            return
        await prompt_service.update_metrics(session, prompt, False, 0, elapsed_ms)

    # ── Events ────────────────────────────────────────────────

    async def _publish(self, tenant_id: uuid.UUID, data: dict) -> None:
        if self.publisher is None:
            return
        await self.publisher(LLM_TOPIC, {"organizationId": str(tenant_id)}, data)

    async def _publish_usage(
        self,
        tenant_id: uuid.UUID,
        provider: Provider,
        model: ProviderModel,
        usage: TokenUsage,
        cost: Decimal,
        snapshot: UsageSnapshot,
    ) -> None:
        await self._publish(
            tenant_id,
            {
                "type": "usage_recorded",
                "provider": provider.name,
                "model": model.model_id,
                "usage": usage.to_dict(),
                "cost": str(cost),
                "monthTokens": snapshot.tokens,
                "hasReachedLimit": snapshot.has_reached_limit,
            },
        )
        for alert in snapshot.new_alerts:
            await self._publish(
                tenant_id,
                {
                    "type": "usage_alert",
                    "alertId": str(alert.id),
                    "kind": str(alert.kind),
                    "message": alert.message,
                },
            )

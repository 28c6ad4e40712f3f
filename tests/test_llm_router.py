"""LLM router — resolution order, metering, fallback and its failure modes."""

import uuid
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from controlplane.core.errors import (
    FallbackCycleError,
    ModelNotFoundError,
    NoProviderAvailableError,
    PromptNotFoundError,
    QuotaExceededError,
    UpstreamError,
    ValidationError,
)
from controlplane.models.prompt import Prompt
from controlplane.models.provider import ProviderUpdate
from controlplane.models.usage import AlertKind, ModelOverrideSpec, UsageSettingsUpdate
from controlplane.services import provider_registry
from controlplane.services.llm_router import LLMRouter, PromptRequest


def _mock_llm_response(content: str = "Hello!", prompt_tokens: int = 1000, completion_tokens: int = 500):
    usage = MagicMock()
    usage.prompt_tokens = prompt_tokens
    usage.completion_tokens = completion_tokens

    message = MagicMock()
    message.content = content

    choice = MagicMock()
    choice.message = message

    response = MagicMock()
    response.choices = [choice]
    response.usage = usage
    return response


@pytest.fixture
def publisher():
    return AsyncMock(return_value=1)


@pytest.fixture
def llm(ledger, publisher) -> LLMRouter:
    return LLMRouter(ledger=ledger, timeout=5, publisher=publisher)


@pytest.mark.asyncio
async def test_send_prompt_success_meters_usage(session, llm, ledger, publisher, tenant_id, make_provider):
    await make_provider("primary", models=["gpt-x"], input_cost="0.01", output_cost="0.03")

    mock_llm = AsyncMock(return_value=_mock_llm_response())
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        result = await llm.send_prompt(
            session,
            PromptRequest(
                tenant_id=tenant_id,
                prompt_content="Hi {{name}}",
                variables={"name": "Ana"},
            ),
        )

    assert result.success is True
    assert result.content == "Hello!"
    assert result.provider == "primary"
    assert result.model == "gpt-x"
    assert result.usage.total_tokens == 1500
    # 1000 * 0.01 / 1000 + 500 * 0.03 / 1000
    assert result.cost == Decimal("0.02500000")

    sent = mock_llm.call_args.kwargs
    assert sent["model"] == "openai/gpt-x"
    assert sent["api_key"] == "sk-primary"
    assert sent["messages"][-1]["content"] == "Hi Ana"

    record = await ledger.get_or_create(session, tenant_id)
    assert record.current_tokens == 1500
    assert record.current_requests == 1
    assert record.current_cost == Decimal("0.025")

    topic, params, data = publisher.call_args_list[0].args
    assert topic == "llm"
    assert params == {"organizationId": str(tenant_id)}
    assert data["type"] == "usage_recorded"


@pytest.mark.asyncio
async def test_prompt_required(session, llm, tenant_id, make_provider):
    await make_provider()
    with pytest.raises(ValidationError):
        await llm.send_prompt(session, PromptRequest(tenant_id=tenant_id))


@pytest.mark.asyncio
async def test_stored_prompt_is_resolved_and_metered(session, llm, tenant_id, make_provider):
    await make_provider()
    prompt = Prompt(tenant_id=tenant_id, name="greet", content="Greet {{who}} in {{lang}}")
    session.add(prompt)
    await session.commit()

    mock_llm = AsyncMock(return_value=_mock_llm_response(prompt_tokens=10, completion_tokens=5))
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        await llm.send_prompt(
            session,
            PromptRequest(tenant_id=tenant_id, prompt_id=prompt.id, variables={"who": "Bo"}),
        )

    assert mock_llm.call_args.kwargs["messages"][-1]["content"] == "Greet Bo in {{lang}}"
    await session.refresh(prompt)
    assert prompt.usage_count == 1
    assert prompt.success_rate == pytest.approx(1.0)
    assert prompt.average_tokens == pytest.approx(15)


@pytest.mark.asyncio
async def test_unknown_prompt_id(session, llm, tenant_id, make_provider):
    await make_provider()
    with pytest.raises(PromptNotFoundError):
        await llm.send_prompt(session, PromptRequest(tenant_id=tenant_id, prompt_id=uuid.uuid4()))


@pytest.mark.asyncio
async def test_quota_exceeded_fails_fast(session, llm, ledger, tenant_id, make_provider):
    await make_provider()
    await ledger.update_settings(
        session, tenant_id, UsageSettingsUpdate(has_limit=True, monthly_token_limit=100)
    )
    await ledger.record_usage(session, tenant_id, 100, Decimal("0"))

    mock_llm = AsyncMock(return_value=_mock_llm_response())
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        with pytest.raises(QuotaExceededError):
            await llm.send_prompt(session, PromptRequest(tenant_id=tenant_id, prompt_content="hi"))
    mock_llm.assert_not_called()


@pytest.mark.asyncio
async def test_quota_does_not_block_new_month(session, llm, ledger, clock, tenant_id, make_provider):
    await make_provider()
    await ledger.update_settings(
        session, tenant_id, UsageSettingsUpdate(has_limit=True, monthly_token_limit=100)
    )
    await ledger.record_usage(session, tenant_id, 150, Decimal("0"))
    clock.set(datetime(2026, 4, 1, 0, 5, 0))

    mock_llm = AsyncMock(return_value=_mock_llm_response(prompt_tokens=5, completion_tokens=5))
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        result = await llm.send_prompt(
            session, PromptRequest(tenant_id=tenant_id, prompt_content="hi")
        )
    assert result.success is True


@pytest.mark.asyncio
async def test_no_active_provider(session, llm, tenant_id):
    with pytest.raises(NoProviderAvailableError):
        await llm.send_prompt(session, PromptRequest(tenant_id=tenant_id, prompt_content="hi"))


@pytest.mark.asyncio
async def test_explicit_inactive_provider_is_rejected(session, llm, tenant_id, make_provider):
    provider = await make_provider()
    await make_provider("other")
    await provider_registry.deactivate_provider(session, provider.id)

    with pytest.raises(NoProviderAvailableError):
        await llm.send_prompt(
            session,
            PromptRequest(tenant_id=tenant_id, provider_id=provider.id, prompt_content="hi"),
        )


@pytest.mark.asyncio
async def test_preferred_provider_and_model_override(session, llm, ledger, tenant_id, make_provider):
    await make_provider("first")
    preferred = await make_provider("preferred", models=["small", "large"])
    await ledger.update_settings(
        session,
        tenant_id,
        UsageSettingsUpdate(
            custom_provider_settings=True,
            preferred_provider_id=preferred.id,
            model_overrides=[ModelOverrideSpec(provider_id=preferred.id, model_id="large")],
        ),
    )

    mock_llm = AsyncMock(return_value=_mock_llm_response())
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        result = await llm.send_prompt(
            session, PromptRequest(tenant_id=tenant_id, prompt_content="hi")
        )

    assert result.provider == "preferred"
    assert result.model == "large"


@pytest.mark.asyncio
async def test_override_ignored_without_custom_settings(session, llm, ledger, tenant_id, make_provider):
    provider = await make_provider("only", models=["small", "large"])
    await ledger.update_settings(
        session,
        tenant_id,
        UsageSettingsUpdate(
            model_overrides=[ModelOverrideSpec(provider_id=provider.id, model_id="large")],
        ),
    )

    mock_llm = AsyncMock(return_value=_mock_llm_response())
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        result = await llm.send_prompt(
            session, PromptRequest(tenant_id=tenant_id, prompt_content="hi")
        )
    assert result.model == "small"


@pytest.mark.asyncio
async def test_unknown_model(session, llm, tenant_id, make_provider):
    provider = await make_provider()
    with pytest.raises(ModelNotFoundError):
        await llm.send_prompt(
            session,
            PromptRequest(
                tenant_id=tenant_id,
                provider_id=provider.id,
                model_id="does-not-exist",
                prompt_content="hi",
            ),
        )


@pytest.mark.asyncio
async def test_failure_without_fallback_propagates(session, llm, ledger, tenant_id, make_provider):
    await make_provider()
    original = httpx.ConnectError("connection refused")

    with patch("controlplane.services.adapters.acompletion", AsyncMock(side_effect=original)):
        with pytest.raises(UpstreamError) as exc_info:
            await llm.send_prompt(session, PromptRequest(tenant_id=tenant_id, prompt_content="hi"))

    assert exc_info.value.__cause__ is original
    assert exc_info.value.provider == "primary"
    assert await ledger.list_alerts(session, tenant_id) == []


@pytest.mark.asyncio
async def test_fallback_uses_fallback_default_model(
    session, llm, ledger, publisher, tenant_id, make_provider
):
    backup = await make_provider("backup", kind="custom", models=["backup-default", "backup-big"])
    primary = await make_provider("primary", fallback_provider_id=backup.id)

    failing = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
    body = {"choices": [{"message": {"content": "from backup"}}], "usage": {"total_tokens": 9}}
    with (
        patch("controlplane.services.adapters.acompletion", failing),
        patch("controlplane.services.adapters._post_json", AsyncMock(return_value=body)) as post,
    ):
        result = await llm.send_prompt(
            session,
            PromptRequest(
                tenant_id=tenant_id,
                provider_id=primary.id,
                model_id="primary-model",
                prompt_content="hi",
            ),
        )

    assert result.content == "from backup"
    assert result.provider == "backup"
    assert result.model == "backup-default"
    assert post.call_args.args[1]["model"] == "backup-default"

    alerts = await ledger.list_alerts(session, tenant_id)
    assert [a.kind for a in alerts] == [AlertKind.FALLBACK]

    event_types = [c.args[2]["type"] for c in publisher.call_args_list]
    assert event_types == ["provider_fallback", "usage_recorded"]


@pytest.mark.asyncio
async def test_inactive_fallback_is_not_followed(session, llm, tenant_id, make_provider):
    backup = await make_provider("backup")
    primary = await make_provider("primary", fallback_provider_id=backup.id)
    await provider_registry.deactivate_provider(session, backup.id)

    with patch(
        "controlplane.services.adapters.acompletion",
        AsyncMock(side_effect=httpx.ConnectError("down")),
    ):
        with pytest.raises(UpstreamError):
            await llm.send_prompt(
                session,
                PromptRequest(tenant_id=tenant_id, provider_id=primary.id, prompt_content="hi"),
            )


@pytest.mark.asyncio
async def test_fallback_cycle_is_detected(session, llm, ledger, tenant_id, make_provider):
    a = await make_provider("a")
    b = await make_provider("b", fallback_provider_id=a.id)
    await provider_registry.update_provider(
        session, a.id, ProviderUpdate(fallback_provider_id=b.id)
    )

    mock_llm = AsyncMock(side_effect=httpx.ConnectError("down"))
    with patch("controlplane.services.adapters.acompletion", mock_llm):
        with pytest.raises(FallbackCycleError):
            await llm.send_prompt(
                session,
                PromptRequest(tenant_id=tenant_id, provider_id=a.id, prompt_content="hi"),
            )

    assert mock_llm.await_count == 2
    alerts = await ledger.list_alerts(session, tenant_id)
    assert [a.kind for a in alerts] == [AlertKind.FALLBACK]


@pytest.mark.asyncio
async def test_failed_prompt_records_failure_metrics(session, llm, tenant_id, make_provider):
    await make_provider()
    prompt = Prompt(tenant_id=tenant_id, name="p", content="hello")
    session.add(prompt)
    await session.commit()

    with patch(
        "controlplane.services.adapters.acompletion",
        AsyncMock(side_effect=httpx.ConnectError("down")),
    ):
        with pytest.raises(UpstreamError):
            await llm.send_prompt(
                session, PromptRequest(tenant_id=tenant_id, prompt_id=prompt.id)
            )

    await session.refresh(prompt)
    assert prompt.usage_count == 1
    assert prompt.success_rate == pytest.approx(0.0)

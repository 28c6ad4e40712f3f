"""Provider registry — lookup and maintenance of the LLM provider catalog."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from controlplane.core.errors import NotFoundError, ValidationError
from controlplane.core.security import encrypt_value
from controlplane.models.base import to_money, utcnow
from controlplane.models.provider import (
    ModelSpec,
    Provider,
    ProviderCreate,
    ProviderModel,
    ProviderRead,
    ProviderUpdate,
)

logger = logging.getLogger(__name__)


async def get_provider(session: AsyncSession, provider_id: uuid.UUID) -> Provider | None:
    return await session.get(Provider, provider_id)


async def get_active_provider(
    session: AsyncSession, provider_id: uuid.UUID | None
) -> Provider | None:
    """Return the provider only if it exists and is active."""
    if provider_id is None:
        return None
    provider = await session.get(Provider, provider_id)
    if provider is None or not provider.is_active:
        return None
    return provider


async def first_active_provider(session: AsyncSession) -> Provider | None:
    """First active provider in registry order (oldest first)."""
    stmt = (
        select(Provider)
        .where(Provider.is_active == True)  # noqa: E712
        .order_by(Provider.created_at.asc(), Provider.id.asc())  # type: ignore[union-attr]
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_models(session: AsyncSession, provider_id: uuid.UUID) -> list[ProviderModel]:
    stmt = (
        select(ProviderModel)
        .where(ProviderModel.provider_id == provider_id)
        .order_by(ProviderModel.priority.desc(), ProviderModel.model_id.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_model(
    session: AsyncSession, provider_id: uuid.UUID, model_id: str
) -> ProviderModel | None:
    stmt = select(ProviderModel).where(
        ProviderModel.provider_id == provider_id,
        ProviderModel.model_id == model_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_providers(session: AsyncSession) -> list[Provider]:
    stmt = select(Provider).order_by(Provider.created_at.asc(), Provider.id.asc())  # type: ignore[union-attr]
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ── Maintenance ──────────────────────────────────────────────

def _check_models(models: list[ModelSpec], default_model: str) -> None:
    ids = [m.model_id for m in models]
    if len(set(ids)) != len(ids):
        raise ValidationError("Model ids must be unique within a provider")
    if default_model not in ids:
        raise ValidationError(f"Default model '{default_model}' is not in the provider's model list")


async def _check_fallback(
    session: AsyncSession, provider_id: uuid.UUID, fallback_id: uuid.UUID | None
) -> None:
    if fallback_id is None:
        return
    if fallback_id == provider_id:
        raise ValidationError("A provider cannot be its own fallback")
    if await session.get(Provider, fallback_id) is None:
        raise ValidationError("Fallback provider not found")


def _model_rows(provider_id: uuid.UUID, models: list[ModelSpec]) -> list[ProviderModel]:
    return [
        ProviderModel(
            provider_id=provider_id,
            model_id=m.model_id,
            display_name=m.display_name,
            context_window=m.context_window,
            input_cost_per_1k=to_money(m.input_cost_per_1k),
            output_cost_per_1k=to_money(m.output_cost_per_1k),
            text_generation=m.text_generation,
            code_generation=m.code_generation,
            image_analysis=m.image_analysis,
            priority=m.priority,
        )
        for m in models
    ]


async def create_provider(session: AsyncSession, body: ProviderCreate) -> Provider:
    _check_models(body.models, body.default_model)

    provider = Provider(
        name=body.name,
        description=body.description,
        kind=body.kind.lower(),
        endpoint=body.endpoint,
        encrypted_api_key=encrypt_value(body.api_key),
        default_model=body.default_model,
        requests_per_minute=body.requests_per_minute,
        tokens_per_minute=body.tokens_per_minute,
    )
    await _check_fallback(session, provider.id, body.fallback_provider_id)
    provider.fallback_provider_id = body.fallback_provider_id

    session.add(provider)
    await session.flush()
    session.add_all(_model_rows(provider.id, body.models))
    await session.commit()
    await session.refresh(provider)
    logger.info("Registered LLM provider %s (%s)", provider.name, provider.kind)
    return provider


async def update_provider(
    session: AsyncSession, provider_id: uuid.UUID, body: ProviderUpdate
) -> Provider:
    provider = await session.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found")

    update_data = body.model_dump(exclude_unset=True)
    models_data = update_data.pop("models", None)
    api_key = update_data.pop("api_key", None)

    if models_data is not None:
        models = [ModelSpec.model_validate(m) for m in models_data]
    else:
        models = [
            ModelSpec.model_validate(m, from_attributes=True)
            for m in await list_models(session, provider.id)
        ]
    _check_models(models, update_data.get("default_model", provider.default_model))

    if "fallback_provider_id" in update_data:
        await _check_fallback(session, provider.id, update_data["fallback_provider_id"])

    if api_key:
        provider.encrypted_api_key = encrypt_value(api_key)
    if "kind" in update_data and update_data["kind"]:
        update_data["kind"] = update_data["kind"].lower()

    for field, value in update_data.items():
        setattr(provider, field, value)

    if models_data is not None:
        await session.execute(delete(ProviderModel).where(ProviderModel.provider_id == provider.id))
        session.add_all(_model_rows(provider.id, models))

    provider.updated_at = utcnow()
    session.add(provider)
    await session.commit()
    await session.refresh(provider)
    return provider


async def deactivate_provider(session: AsyncSession, provider_id: uuid.UUID) -> None:
    """Soft delete: usage history keeps pointing at the provider."""
    provider = await session.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found")
    provider.is_active = False
    provider.updated_at = utcnow()
    session.add(provider)
    await session.commit()


async def to_read(session: AsyncSession, provider: Provider) -> ProviderRead:
    models = await list_models(session, provider.id)
    return ProviderRead(
        id=provider.id,
        name=provider.name,
        description=provider.description,
        kind=provider.kind,
        endpoint=provider.endpoint,
        is_active=provider.is_active,
        default_model=provider.default_model,
        requests_per_minute=provider.requests_per_minute,
        tokens_per_minute=provider.tokens_per_minute,
        fallback_provider_id=provider.fallback_provider_id,
        models=[ModelSpec.model_validate(m, from_attributes=True) for m in models],
        created_at=provider.created_at,
        updated_at=provider.updated_at,
    )


async def provider_state(session: AsyncSession, provider_id: uuid.UUID) -> dict | None:
    """Snapshot pushed to realtime subscribers of the ``llm`` topic."""
    provider = await session.get(Provider, provider_id)
    if provider is None:
        return None
    return {
        "id": str(provider.id),
        "name": provider.name,
        "kind": provider.kind,
        "status": "active" if provider.is_active else "inactive",
        "default_model": provider.default_model,
        "fallback_provider_id": (
            str(provider.fallback_provider_id) if provider.fallback_provider_id else None
        ),
    }

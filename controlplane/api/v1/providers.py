"""LLM provider catalog — super-admin only."""

import uuid

from fastapi import APIRouter, status

from controlplane.api.deps import Broker, Session, SuperAdminAuth
from controlplane.core.errors import NotFoundError
from controlplane.models.provider import Provider, ProviderCreate, ProviderRead, ProviderUpdate
from controlplane.realtime.broker import RealtimeBroker
from controlplane.realtime.policy import Topic
from controlplane.services import provider_registry

router = APIRouter(prefix="/llm/providers", tags=["providers"])


async def _announce(session, broker: RealtimeBroker, provider: Provider) -> None:
    state = await provider_registry.provider_state(session, provider.id)
    await broker.publish_event(
        Topic.LLM,
        {"providerId": str(provider.id)},
        {"type": "provider_updated", "provider": state},
    )


@router.get("", response_model=list[ProviderRead])
async def list_providers(_auth: SuperAdminAuth, session: Session) -> list[ProviderRead]:
    providers = await provider_registry.list_providers(session)
    return [await provider_registry.to_read(session, p) for p in providers]


@router.post("", response_model=ProviderRead, status_code=status.HTTP_201_CREATED)
async def create_provider(
    body: ProviderCreate,
    _auth: SuperAdminAuth,
    session: Session,
) -> ProviderRead:
    provider = await provider_registry.create_provider(session, body)
    return await provider_registry.to_read(session, provider)


@router.get("/{provider_id}", response_model=ProviderRead)
async def get_provider(
    provider_id: uuid.UUID,
    _auth: SuperAdminAuth,
    session: Session,
) -> ProviderRead:
    provider = await provider_registry.get_provider(session, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found")
    return await provider_registry.to_read(session, provider)


@router.patch("/{provider_id}", response_model=ProviderRead)
async def update_provider(
    provider_id: uuid.UUID,
    body: ProviderUpdate,
    _auth: SuperAdminAuth,
    session: Session,
    broker: Broker,
) -> ProviderRead:
    provider = await provider_registry.update_provider(session, provider_id, body)
    await _announce(session, broker, provider)
    return await provider_registry.to_read(session, provider)


@router.delete("/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_provider(
    provider_id: uuid.UUID,
    _auth: SuperAdminAuth,
    session: Session,
    broker: Broker,
) -> None:
    await provider_registry.deactivate_provider(session, provider_id)
    provider = await provider_registry.get_provider(session, provider_id)
    if provider is not None:
        await _announce(session, broker, provider)

"""Realtime WebSocket endpoint plus custom event publishing."""

from typing import Any

from fastapi import APIRouter, WebSocket
from pydantic import BaseModel, Field

from controlplane.api.deps import AdminAuth, Broker, SuperAdminAuth
from controlplane.core.errors import ValidationError
from controlplane.core.runtime import get_broker
from controlplane.core.security import Role
from controlplane.realtime.policy import TENANT_TOPICS

router = APIRouter(prefix="/realtime", tags=["realtime"])


class PublishRequest(BaseModel):
    topic: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    data: Any = None


class PublishResponse(BaseModel):
    recipients: int


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket, token: str | None = None) -> None:
    await get_broker().serve(websocket, token)


@router.post("/events", response_model=PublishResponse)
async def publish_event(body: PublishRequest, auth: AdminAuth, broker: Broker) -> PublishResponse:
    if auth.user_role != Role.SUPER_ADMIN:
        # Admins may only publish into their own tenant
        if body.topic not in TENANT_TOPICS:
            raise ValidationError(f"Cannot publish to topic '{body.topic}'")
        if str(body.params.get("organizationId")) != str(auth.tenant_id):
            raise ValidationError("organizationId must match your organization")
    recipients = await broker.publish_event(body.topic, body.params, body.data)
    return PublishResponse(recipients=recipients)


@router.get("/system")
async def system_state(_auth: SuperAdminAuth, broker: Broker) -> dict:
    return broker.system_state()

"""Automation session endpoints — thin glue over the session registry."""

from typing import Any

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from controlplane.api.deps import Auth, AuthContext, Sessions
from controlplane.core.errors import NotFoundError
from controlplane.core.security import Role
from controlplane.realtime.sessions import AutomationSession, SessionRegistry

router = APIRouter(prefix="/automation/sessions", tags=["automation"])


class SessionStart(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)
    name: str | None = None
    description: str | None = None


class SessionUpdate(BaseModel):
    status: str | None = None
    current_step: str | None = None
    progress: int | None = None
    log_message: str | None = None
    log_level: str = "info"


class SessionEnd(BaseModel):
    success: bool
    error: str | None = None
    data: Any = None


def _visible(registry: SessionRegistry, session_id: str, auth: AuthContext) -> AutomationSession:
    session = registry.get(session_id)
    if session is None or (
        auth.user_role != Role.SUPER_ADMIN and session.organization_id != str(auth.tenant_id)
    ):
        raise NotFoundError(f"Session {session_id} not found")
    return session


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_session(body: SessionStart, auth: Auth, registry: Sessions) -> dict:
    session = await registry.start(
        body.session_id,
        organization_id=str(auth.tenant_id),
        user_id=str(auth.user_id),
        name=body.name,
        description=body.description,
    )
    return session.to_dict()


@router.get("")
async def list_sessions(auth: Auth, registry: Sessions) -> list[dict]:
    return [s.to_dict() for s in registry.list_for_tenant(str(auth.tenant_id))]


@router.get("/{session_id}")
async def get_session_state(session_id: str, auth: Auth, registry: Sessions) -> dict:
    return _visible(registry, session_id, auth).to_dict()


@router.patch("/{session_id}")
async def update_session(
    session_id: str, body: SessionUpdate, auth: Auth, registry: Sessions
) -> dict:
    _visible(registry, session_id, auth)
    session = await registry.update(session_id, **body.model_dump(exclude_unset=True))
    return session.to_dict()


@router.post("/{session_id}/end")
async def end_session(session_id: str, body: SessionEnd, auth: Auth, registry: Sessions) -> dict:
    _visible(registry, session_id, auth)
    session = await registry.end(session_id, body.success, body.error, body.data)
    return session.to_dict()

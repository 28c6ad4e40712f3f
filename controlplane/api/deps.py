"""FastAPI dependencies for authentication, role gates and services."""

import uuid
from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from controlplane.core.database import get_session
from controlplane.core.runtime import (
    get_broker,
    get_llm_router,
    get_session_registry,
    get_usage_ledger,
)
from controlplane.core.security import Role, decode_jwt
from controlplane.realtime.broker import RealtimeBroker
from controlplane.realtime.sessions import SessionRegistry
from controlplane.services.llm_router import LLMRouter
from controlplane.services.usage_ledger import UsageLedger

bearer_scheme = HTTPBearer()


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("tenant_id", "user_id", "user_role")

    def __init__(self, tenant_id: uuid.UUID, user_id: uuid.UUID, user_role: str) -> None:
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.user_role = user_role


def _resolve_jwt(token: str) -> AuthContext:
    """Decode a JWT and extract tenant, user and role."""
    try:
        payload = decode_jwt(token)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    try:
        return AuthContext(
            tenant_id=uuid.UUID(payload["tid"]),
            user_id=uuid.UUID(payload["sub"]),
            user_role=payload.get("role", Role.USER),
        )
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> AuthContext:
    return _resolve_jwt(credentials.credentials)


def require_roles(*roles: str) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency factory: 403 unless the caller holds one of ``roles``."""

    async def _check(auth: Annotated[AuthContext, Depends(get_auth_context)]) -> AuthContext:
        if auth.user_role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return auth

    return _check


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
AdminAuth = Annotated[AuthContext, Depends(require_roles(Role.ADMIN, Role.SUPER_ADMIN))]
SuperAdminAuth = Annotated[AuthContext, Depends(require_roles(Role.SUPER_ADMIN))]
Session = Annotated[AsyncSession, Depends(get_session)]

Ledger = Annotated[UsageLedger, Depends(get_usage_ledger)]
LLM = Annotated[LLMRouter, Depends(get_llm_router)]
Broker = Annotated[RealtimeBroker, Depends(get_broker)]
Sessions = Annotated[SessionRegistry, Depends(get_session_registry)]

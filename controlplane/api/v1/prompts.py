"""Prompt template CRUD with version history.

Tenants see their own prompts plus system-wide ones; only super admins
create or edit system prompts.
"""

import uuid

from fastapi import APIRouter, HTTPException, status
from sqlmodel import or_, select

from controlplane.api.deps import Auth, AuthContext, Session
from controlplane.core.security import Role
from controlplane.models.prompt import (
    Prompt,
    PromptCreate,
    PromptRead,
    PromptUpdate,
    PromptVersionRead,
)
from controlplane.services import prompts as prompt_service

router = APIRouter(prefix="/llm/prompts", tags=["prompts"])


def _to_read(prompt: Prompt) -> PromptRead:
    return PromptRead.model_validate(prompt, from_attributes=True)


def _require_editable(prompt: Prompt, auth: AuthContext) -> None:
    if prompt.tenant_id is None and auth.user_role != Role.SUPER_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System prompts can only be changed by a super admin",
        )


@router.post("", response_model=PromptRead, status_code=status.HTTP_201_CREATED)
async def create_prompt(body: PromptCreate, auth: Auth, session: Session) -> PromptRead:
    if body.is_system and auth.user_role != Role.SUPER_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System prompts can only be created by a super admin",
        )

    prompt = Prompt(
        tenant_id=None if body.is_system else auth.tenant_id,
        name=body.name,
        description=body.description,
        content=body.content,
        category=body.category,
        tags=body.tags,
        is_system=body.is_system,
        created_by=auth.user_id,
    )
    session.add(prompt)
    await session.commit()
    await session.refresh(prompt)
    return _to_read(prompt)


@router.get("", response_model=list[PromptRead])
async def list_prompts(auth: Auth, session: Session) -> list[PromptRead]:
    stmt = (
        select(Prompt)
        .where(
            or_(Prompt.tenant_id == auth.tenant_id, Prompt.tenant_id.is_(None)),  # type: ignore[union-attr]
            Prompt.is_active == True,  # noqa: E712
        )
        .order_by(Prompt.created_at.desc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return [_to_read(p) for p in result.scalars().all()]


@router.get("/{prompt_id}", response_model=PromptRead)
async def get_prompt(prompt_id: uuid.UUID, auth: Auth, session: Session) -> PromptRead:
    prompt = await prompt_service.load_prompt(session, prompt_id, auth.tenant_id)
    return _to_read(prompt)


@router.get("/{prompt_id}/versions", response_model=list[PromptVersionRead])
async def list_prompt_versions(
    prompt_id: uuid.UUID, auth: Auth, session: Session
) -> list[PromptVersionRead]:
    prompt = await prompt_service.load_prompt(session, prompt_id, auth.tenant_id)
    versions = await prompt_service.list_versions(session, prompt.id)
    return [PromptVersionRead.model_validate(v, from_attributes=True) for v in versions]


@router.patch("/{prompt_id}", response_model=PromptRead)
async def update_prompt(
    prompt_id: uuid.UUID,
    body: PromptUpdate,
    auth: Auth,
    session: Session,
) -> PromptRead:
    prompt = await prompt_service.load_editable_prompt(session, prompt_id, auth.tenant_id)
    _require_editable(prompt, auth)
    prompt = await prompt_service.update_prompt(session, prompt, body, auth.user_id)
    return _to_read(prompt)


@router.post("/{prompt_id}/revert/{version}", response_model=PromptRead)
async def revert_prompt(
    prompt_id: uuid.UUID,
    version: int,
    auth: Auth,
    session: Session,
) -> PromptRead:
    prompt = await prompt_service.load_prompt(session, prompt_id, auth.tenant_id)
    _require_editable(prompt, auth)
    prompt = await prompt_service.revert_to_version(session, prompt, version, auth.user_id)
    return _to_read(prompt)

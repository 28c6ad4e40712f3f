"""Prompt templates — lookup, ``{{var}}`` substitution, versioning, metrics."""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from controlplane.core.errors import NotFoundError, PromptNotFoundError
from controlplane.models.base import utcnow
from controlplane.models.prompt import Prompt, PromptUpdate, PromptVersion

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

DEFAULT_CHANGE_REASON = "Content update"


def process_prompt_template(template: str, variables: Mapping[str, Any] | None) -> str:
    """Replace ``{{ name }}`` placeholders with supplied variables.

    Placeholders without a matching variable are left untouched.
    """
    if not variables:
        return template

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    return _PLACEHOLDER.sub(_sub, template)


async def load_prompt(
    session: AsyncSession, prompt_id: uuid.UUID, tenant_id: uuid.UUID
) -> Prompt:
    """Fetch an active prompt visible to the tenant (its own or system-wide)."""
    prompt = await session.get(Prompt, prompt_id)
    if (
        prompt is None
        or not prompt.is_active
        or (prompt.tenant_id is not None and prompt.tenant_id != tenant_id)
    ):
        raise PromptNotFoundError("Prompt not found")
    return prompt


async def load_editable_prompt(
    session: AsyncSession, prompt_id: uuid.UUID, tenant_id: uuid.UUID
) -> Prompt:
    """Like ``load_prompt`` but also returns the tenant's inactive prompts."""
    prompt = await session.get(Prompt, prompt_id)
    if prompt is None or (prompt.tenant_id is not None and prompt.tenant_id != tenant_id):
        raise PromptNotFoundError("Prompt not found")
    return prompt


def _archive_current(
    session: AsyncSession, prompt: Prompt, changed_by: uuid.UUID | None, reason: str
) -> None:
    session.add(
        PromptVersion(
            prompt_id=prompt.id,
            version=prompt.version,
            content=prompt.content,
            changed_by=changed_by,
            changed_at=utcnow(),
            change_reason=reason,
        )
    )


async def create_new_version(
    session: AsyncSession,
    prompt: Prompt,
    content: str,
    changed_by: uuid.UUID | None,
    change_reason: str | None = None,
) -> Prompt:
    """Replace the content, archiving the previous body first."""
    if content == prompt.content:
        return prompt

    _archive_current(session, prompt, changed_by, change_reason or DEFAULT_CHANGE_REASON)
    prompt.content = content
    prompt.version += 1
    prompt.updated_at = utcnow()
    session.add(prompt)
    await session.commit()
    await session.refresh(prompt)
    return prompt


async def update_prompt(
    session: AsyncSession,
    prompt: Prompt,
    body: PromptUpdate,
    changed_by: uuid.UUID | None,
) -> Prompt:
    update_data = body.model_dump(exclude_unset=True)
    content = update_data.pop("content", None)
    change_reason = update_data.pop("change_reason", None)

    for field, value in update_data.items():
        if value is not None:
            setattr(prompt, field, value)

    if content is not None and content != prompt.content:
        return await create_new_version(session, prompt, content, changed_by, change_reason)

    prompt.updated_at = utcnow()
    session.add(prompt)
    await session.commit()
    await session.refresh(prompt)
    return prompt


async def list_versions(session: AsyncSession, prompt_id: uuid.UUID) -> list[PromptVersion]:
    stmt = (
        select(PromptVersion)
        .where(PromptVersion.prompt_id == prompt_id)
        .order_by(PromptVersion.version.asc())  # type: ignore[union-attr]
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def revert_to_version(
    session: AsyncSession,
    prompt: Prompt,
    version: int,
    changed_by: uuid.UUID | None,
) -> Prompt:
    stmt = select(PromptVersion).where(
        PromptVersion.prompt_id == prompt.id,
        PromptVersion.version == version,
    )
    result = await session.execute(stmt)
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError(f"Version {version} not found")

    return await create_new_version(
        session, prompt, entry.content, changed_by, f"Reverted to version {version}"
    )


async def update_metrics(
    session: AsyncSession,
    prompt: Prompt,
    success: bool,
    tokens: int,
    response_time_ms: int,
) -> Prompt:
    """Fold one call into the rolling metrics."""
    prompt.usage_count += 1
    n = prompt.usage_count
    prompt.success_rate = (prompt.success_rate * (n - 1) + (1 if success else 0)) / n
    prompt.average_tokens = (prompt.average_tokens * (n - 1) + tokens) / n
    prompt.average_response_time_ms = (
        prompt.average_response_time_ms * (n - 1) + response_time_ms
    ) / n
    session.add(prompt)
    await session.commit()
    return prompt

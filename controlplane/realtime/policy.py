"""Topic access policy and subscription keys for the realtime broker."""

import json
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from controlplane.core.security import Role


class Topic(StrEnum):
    AUTOMATION = "automation"
    LLM = "llm"
    DEVELOPMENT = "development"
    SUPPORT = "support"
    SYSTEM = "system"


# Topics whose params must carry the subscriber's own organizationId
TENANT_TOPICS = frozenset({Topic.AUTOMATION, Topic.LLM, Topic.DEVELOPMENT, Topic.SUPPORT})


def can_access_topic(
    role: str,
    organization_id: str,
    topic: str,
    params: Mapping[str, Any] | None,
) -> bool:
    """Whether a principal may observe ``topic`` with ``params``.

    Unknown topics are denied.
    """
    if role == Role.SUPER_ADMIN:
        return True
    if topic in TENANT_TOPICS:
        requested = (params or {}).get("organizationId")
        return requested is not None and str(requested) == str(organization_id)
    return False


def subscription_key(topic: str, params: Mapping[str, Any] | None) -> str:
    """``topic`` alone, or ``topic:<canonical JSON of params>``."""
    if not params:
        return topic
    return f"{topic}:{json.dumps(params, sort_keys=True, separators=(',', ':'), default=str)}"

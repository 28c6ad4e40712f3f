"""Process-wide service singletons, wired together once.

Each getter doubles as a FastAPI dependency. Tests reset them with
``reset_runtime()``.
"""

import uuid
from functools import lru_cache

from controlplane.core.clock import system_clock
from controlplane.core.config import get_settings
from controlplane.core.database import async_session_factory
from controlplane.realtime.audit import AuditLog
from controlplane.realtime.broker import RealtimeBroker
from controlplane.realtime.policy import Topic
from controlplane.realtime.sessions import SessionRegistry
from controlplane.services.llm_router import LLMRouter
from controlplane.services.provider_registry import provider_state
from controlplane.services.usage_ledger import UsageLedger


async def _llm_state(params: dict) -> dict | None:
    raw = params.get("providerId")
    if not raw:
        return None
    try:
        provider_id = uuid.UUID(str(raw))
    except ValueError:
        return None
    async with async_session_factory() as session:
        return await provider_state(session, provider_id)


@lru_cache
def get_session_registry() -> SessionRegistry:
    settings = get_settings()
    return SessionRegistry(
        clock=system_clock,
        log_capacity=settings.session_log_capacity,
        retention_seconds=settings.session_retention_seconds,
    )


@lru_cache
def get_broker() -> RealtimeBroker:
    settings = get_settings()
    registry = get_session_registry()
    broker = RealtimeBroker(
        sessions=registry,
        audit=AuditLog(settings.realtime_log_dir, clock=system_clock),
        clock=system_clock,
        idle_timeout_seconds=settings.realtime_idle_timeout_seconds,
        send_timeout_seconds=settings.realtime_send_timeout_seconds,
    )
    broker.register_state_provider(Topic.LLM, _llm_state)
    registry.bind_publisher(broker.publish_event)
    return broker


@lru_cache
def get_usage_ledger() -> UsageLedger:
    return UsageLedger(clock=system_clock)


@lru_cache
def get_llm_router() -> LLMRouter:
    settings = get_settings()
    return LLMRouter(
        ledger=get_usage_ledger(),
        timeout=settings.llm_request_timeout_seconds,
        publisher=get_broker().publish_event,
    )


def reset_runtime() -> None:
    for getter in (get_llm_router, get_usage_ledger, get_broker, get_session_registry):
        getter.cache_clear()

"""Periodic in-process jobs — realtime idle sweep and session purge.

Both jobs work on in-memory state owned by this process, so they run as
asyncio tasks started from the application lifespan rather than on an
external queue. Failures are logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from controlplane.core.config import get_settings
from controlplane.realtime.broker import RealtimeBroker
from controlplane.realtime.sessions import SessionRegistry

logger = logging.getLogger(__name__)


async def sweep_idle_connections(broker: RealtimeBroker) -> int:
    closed = await broker.sweep_idle()
    if closed:
        logger.info("Idle sweep: closed %d realtime connections", closed)
    return closed


async def purge_expired_sessions(registry: SessionRegistry) -> int:
    return registry.purge_expired()


async def run_periodically(
    name: str, interval: float, job: Callable[[], Awaitable[object]]
) -> None:
    """Run ``job`` every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await job()
        except Exception:
            logger.exception("Background job %s failed", name)


def start_background_tasks(
    broker: RealtimeBroker, registry: SessionRegistry
) -> list[asyncio.Task]:
    settings = get_settings()
    return [
        asyncio.create_task(
            run_periodically(
                "realtime-idle-sweep",
                settings.realtime_sweep_interval_seconds,
                lambda: sweep_idle_connections(broker),
            ),
            name="realtime-idle-sweep",
        ),
        asyncio.create_task(
            run_periodically(
                "session-purge",
                settings.session_purge_interval_seconds,
                lambda: purge_expired_sessions(registry),
            ),
            name="session-purge",
        ),
    ]


async def stop_background_tasks(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

"""Session registry — in-memory state of running automation sessions.

The registry is the only owner of ``AutomationSession`` objects; every
accessor hands back a deep copy. Mutations are serialized per session id.
Each one is announced after the lock is released, on the ``automation``
topic twice: once for subscribers of the single session and once for
subscribers of the whole tenant.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from controlplane.core.clock import Clock, system_clock
from controlplane.core.errors import AlreadyExistsError, NotFoundError, ValidationError
from controlplane.core.locks import KeyedLock

logger = logging.getLogger(__name__)

AUTOMATION_TOPIC = "automation"

EventPublisher = Callable[[str, dict, dict], Awaitable[int]]


class SessionStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class LogEntry:
    timestamp: datetime
    message: str
    level: str = "info"

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level,
        }


@dataclass
class AutomationSession:
    id: str
    name: str
    organization_id: str
    user_id: str
    logs: deque[LogEntry]
    start_time: datetime
    last_activity: datetime
    description: str = ""
    status: SessionStatus = SessionStatus.STARTING
    current_step: str | None = None
    progress: int = 0
    end_time: datetime | None = None
    result: dict | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "organizationId": self.organization_id,
            "userId": self.user_id,
            "status": str(self.status),
            "currentStep": self.current_step,
            "progress": self.progress,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "lastActivity": self.last_activity.isoformat(),
            "logs": [entry.to_dict() for entry in self.logs],
            "result": self.result,
        }


class SessionRegistry:
    def __init__(
        self,
        clock: Clock = system_clock,
        log_capacity: int = 100,
        retention_seconds: int = 3600,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.clock = clock
        self.log_capacity = log_capacity
        self.retention_seconds = retention_seconds
        self.publisher = publisher
        self._sessions: dict[str, AutomationSession] = {}
        self._locks = KeyedLock()

    def __len__(self) -> int:
        return len(self._sessions)

    def bind_publisher(self, publisher: EventPublisher) -> None:
        self.publisher = publisher

    # ── Reads ─────────────────────────────────────────────────

    def get(self, session_id: str) -> AutomationSession | None:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    def list_for_tenant(self, organization_id: str) -> list[AutomationSession]:
        return [
            copy.deepcopy(s)
            for s in list(self._sessions.values())
            if s.organization_id == str(organization_id)
        ]

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(
        self,
        session_id: str,
        organization_id: str,
        user_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> AutomationSession:
        async with self._locks.hold(session_id):
            if session_id in self._sessions:
                raise AlreadyExistsError(f"Session {session_id} already exists")

            now = self.clock.now()
            session = AutomationSession(
                id=session_id,
                name=name or f"Session {session_id}",
                description=description or "",
                organization_id=str(organization_id),
                user_id=str(user_id),
                logs=deque(maxlen=self.log_capacity),
                start_time=now,
                last_activity=now,
            )
            self._sessions[session_id] = session
            logger.info("Automation session %s started for tenant %s", session_id, organization_id)

            snapshot = copy.deepcopy(session)
        await self._announce(snapshot, {"type": "session_started", "session": snapshot.to_dict()})
        return snapshot

    async def update(
        self,
        session_id: str,
        *,
        status: str | None = None,
        current_step: str | None = None,
        progress: int | None = None,
        log_message: str | None = None,
        log_level: str = "info",
    ) -> AutomationSession:
        if status is not None:
            try:
                status = SessionStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Unknown session status '{status}'") from exc
        if progress is not None and not 0 <= progress <= 100:
            raise ValidationError("Progress must be between 0 and 100")

        async with self._locks.hold(session_id):
            session = self._require(session_id)
            now = self.clock.now()

            if status is not None:
                session.status = status
            if current_step is not None:
                session.current_step = current_step
            if progress is not None:
                session.progress = progress

            entry = None
            if log_message:
                entry = LogEntry(timestamp=now, message=log_message, level=log_level or "info")
                session.logs.append(entry)
            session.last_activity = now

            snapshot = copy.deepcopy(session)
        await self._announce(
            snapshot,
            {
                "type": "session_updated",
                "session": snapshot.to_dict(),
                "log": entry.to_dict() if entry else None,
            },
        )
        return snapshot

    async def end(
        self,
        session_id: str,
        success: bool,
        error: str | None = None,
        data: Any = None,
    ) -> AutomationSession:
        """Close a session. Remote work it stands for is not cancelled."""
        async with self._locks.hold(session_id):
            session = self._require(session_id)
            now = self.clock.now()

            session.status = SessionStatus.COMPLETED if success else SessionStatus.FAILED
            session.end_time = now
            session.last_activity = now
            session.result = {"success": success, "error": error, "data": data}
            session.expires_at = now + timedelta(seconds=self.retention_seconds)
            if success:
                session.logs.append(LogEntry(now, "Session completed successfully"))
            else:
                session.logs.append(
                    LogEntry(now, f"Session failed: {error or 'unknown error'}", "error")
                )
            logger.info("Automation session %s ended (%s)", session_id, session.status)

            snapshot = copy.deepcopy(session)
        await self._announce(snapshot, {"type": "session_ended", "session": snapshot.to_dict()})
        return snapshot

    def purge_expired(self) -> int:
        """Drop ended sessions whose retention window has passed."""
        now = self.clock.now()
        purged = 0
        for session_id, session in list(self._sessions.items()):
            if session.expires_at is not None and session.expires_at <= now:
                self._sessions.pop(session_id, None)
                purged += 1
        if purged:
            logger.info("Purged %d expired automation sessions", purged)
        return purged

    # ── Internal helpers ──────────────────────────────────────

    def _require(self, session_id: str) -> AutomationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    async def _announce(self, session: AutomationSession, data: dict) -> None:
        if self.publisher is None:
            return
        tenant_params = {"organizationId": session.organization_id}
        session_params = {**tenant_params, "sessionId": session.id}
        await self.publisher(AUTOMATION_TOPIC, session_params, data)
        await self.publisher(AUTOMATION_TOPIC, tenant_params, data)

"""Realtime broker — WebSocket principals, topic subscriptions and fan-out.

Connection lifecycle:
  connecting → authenticated → subscribed(N topics) → closed

The socket is always accepted before it is closed so the client can read
the close code. Each connection is served by its own task; ``publish_event``
iterates a snapshot of the principal table, so no lock guards it. Every send
is bounded by ``send_timeout_seconds``; a principal whose send fails or
stalls is closed and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from jose import JWTError

from controlplane.core.clock import Clock, system_clock
from controlplane.core.security import Role, decode_jwt
from controlplane.realtime.audit import AuditLog
from controlplane.realtime.policy import Topic, can_access_topic, subscription_key
from controlplane.realtime.sessions import SessionRegistry

logger = logging.getLogger(__name__)

# params -> current state for the topic, or None
StateProvider = Callable[[dict], Awaitable[Any]]


class CloseCode(IntEnum):
    INTERNAL_ERROR = 4000
    MISSING_TOKEN = 4001
    INVALID_TOKEN = 4002
    INACTIVITY = 4003


@dataclass(eq=False)
class Principal:
    """One authenticated connection. Never persisted."""
    id: str
    user_id: str
    organization_id: str
    role: str
    websocket: WebSocket
    last_activity: datetime
    subscriptions: set[str] = field(default_factory=set)


class RealtimeBroker:
    def __init__(
        self,
        sessions: SessionRegistry,
        audit: AuditLog,
        clock: Clock = system_clock,
        idle_timeout_seconds: int = 300,
        send_timeout_seconds: float = 5.0,
    ) -> None:
        self.sessions = sessions
        self.audit = audit
        self.clock = clock
        self.idle_timeout = timedelta(seconds=idle_timeout_seconds)
        self.send_timeout = send_timeout_seconds
        self.started_at = clock.now()
        self._principals: dict[str, Principal] = {}
        self._state_providers: dict[str, StateProvider] = {
            Topic.AUTOMATION: self._automation_state,
            Topic.SYSTEM: self._system_state,
        }

    def _timestamp(self) -> str:
        return self.clock.now().isoformat()

    def register_state_provider(self, topic: str, provider: StateProvider) -> None:
        """Plug in the snapshot source for a topic (llm, development, support…)."""
        self._state_providers[topic] = provider

    @property
    def principals(self) -> list[Principal]:
        return list(self._principals.values())

    # ── Connection lifecycle ──────────────────────────────────

    async def serve(self, websocket: WebSocket, token: str | None) -> None:
        """Run one connection from handshake to close."""
        await websocket.accept()

        if not token:
            await self.audit.record("error", reason="missing token")
            await websocket.close(code=CloseCode.MISSING_TOKEN, reason="Missing token")
            return
        try:
            claims = decode_jwt(token)
            user_id, organization_id = str(claims["sub"]), str(claims["tid"])
        except (JWTError, KeyError) as exc:
            logger.info("Rejected realtime connection: %s", exc)
            await self.audit.record("error", reason="invalid token")
            await websocket.close(code=CloseCode.INVALID_TOKEN, reason="Invalid token")
            return

        principal = await self.connect(
            websocket, user_id, organization_id, str(claims.get("role", Role.USER))
        )
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(principal, raw)
        except WebSocketDisconnect:
            pass
        except Exception:
            if principal.id not in self._principals:
                return  # closed by the idle sweep
            logger.exception("Realtime connection %s failed", principal.id)
            await self.audit.record(
                "error", principal.id, principal.organization_id, reason="internal error"
            )
            try:
                await websocket.close(code=CloseCode.INTERNAL_ERROR, reason="Internal error")
            except RuntimeError:
                pass  # already closed
        finally:
            await self.disconnect(principal)

    async def connect(
        self, websocket: WebSocket, user_id: str, organization_id: str, role: str
    ) -> Principal:
        principal = Principal(
            id=str(uuid.uuid4()),
            user_id=user_id,
            organization_id=organization_id,
            role=role,
            websocket=websocket,
            last_activity=self.clock.now(),
        )
        self._principals[principal.id] = principal
        logger.info("Realtime client %s connected (tenant %s)", principal.id, organization_id)
        await self.audit.record("connection", principal.id, organization_id, userId=user_id)
        await self._send(
            principal,
            {
                "type": "connection",
                "status": "connected",
                "clientId": principal.id,
                "timestamp": self._timestamp(),
            },
        )
        return principal

    async def disconnect(self, principal: Principal) -> None:
        if self._principals.pop(principal.id, None) is None:
            return
        logger.info("Realtime client %s disconnected", principal.id)
        await self.audit.record("disconnection", principal.id, principal.organization_id)

    # ── Inbound messages ──────────────────────────────────────

    async def handle_message(self, principal: Principal, raw: str) -> None:
        principal.last_activity = self.clock.now()
        try:
            message = json.loads(raw)
        except ValueError:
            await self._send_error(principal, "Invalid message format")
            return
        if not isinstance(message, dict):
            await self._send_error(principal, "Invalid message format")
            return

        kind = message.get("type")
        if kind == "subscribe":
            await self._subscribe(principal, message.get("topic"), message.get("params") or {})
        elif kind == "unsubscribe":
            await self._unsubscribe(principal, message.get("topic"), message.get("params") or {})
        elif kind == "ping":
            await self._send(principal, {"type": "pong", "timestamp": self._timestamp()})
        else:
            await self._send_error(principal, f"Unknown message type: {kind}")

    async def _subscribe(self, principal: Principal, topic: Any, params: Any) -> None:
        if not isinstance(topic, str) or not isinstance(params, dict):
            await self._send_error(principal, "Subscribe requires a topic and object params")
            return
        if not can_access_topic(principal.role, principal.organization_id, topic, params):
            await self.audit.record(
                "subscribe_denied", principal.id, principal.organization_id, topic=topic
            )
            await self._send_error(principal, f"Access denied to topic: {topic}")
            return

        principal.subscriptions.add(subscription_key(topic, params))
        await self.audit.record(
            "subscribe", principal.id, principal.organization_id, topic=topic, params=params
        )
        await self._send(
            principal,
            {"type": "subscribed", "topic": topic, "params": params, "timestamp": self._timestamp()},
        )

        state = await self._current_state(topic, params)
        if state is not None:
            await self._send(
                principal,
                {
                    "type": "state",
                    "topic": topic,
                    "params": params,
                    "state": state,
                    "timestamp": self._timestamp(),
                },
            )

    async def _unsubscribe(self, principal: Principal, topic: Any, params: Any) -> None:
        if not isinstance(topic, str) or not isinstance(params, dict):
            await self._send_error(principal, "Unsubscribe requires a topic and object params")
            return
        principal.subscriptions.discard(subscription_key(topic, params))
        await self.audit.record(
            "unsubscribe", principal.id, principal.organization_id, topic=topic, params=params
        )
        await self._send(
            principal,
            {"type": "unsubscribed", "topic": topic, "params": params, "timestamp": self._timestamp()},
        )

    # ── Fan-out ───────────────────────────────────────────────

    async def publish_event(self, topic: str, params: dict | None, data: Any) -> int:
        """Deliver ``data`` to every subscriber of the exact (topic, params) key.

        Access is re-checked per principal at publish time. Returns the number
        of principals reached.
        """
        params = params or {}
        key = subscription_key(topic, params)
        targets = [
            p
            for p in list(self._principals.values())
            if key in p.subscriptions
            and can_access_topic(p.role, p.organization_id, topic, params)
        ]
        envelope = {
            "type": "event",
            "topic": topic,
            "params": params,
            "data": data,
            "timestamp": self._timestamp(),
        }
        results = await asyncio.gather(*(self._send(p, envelope) for p in targets))
        reached = sum(1 for ok in results if ok)
        await self.audit.record(
            "publish", topic=topic, params=params, recipients=reached
        )
        return reached

    async def sweep_idle(self) -> int:
        """Close every principal idle for longer than the timeout."""
        cutoff = self.clock.now() - self.idle_timeout
        closed = 0
        for principal in list(self._principals.values()):
            if principal.last_activity >= cutoff:
                continue
            logger.info("Closing idle realtime client %s", principal.id)
            await self.audit.record("timeout", principal.id, principal.organization_id)
            await self.disconnect(principal)
            await self._close(principal, CloseCode.INACTIVITY, "Inactivity timeout")
            closed += 1
        return closed

    # ── State snapshots ───────────────────────────────────────

    async def _current_state(self, topic: str, params: dict) -> Any:
        provider = self._state_providers.get(topic)
        if provider is None:
            return None
        try:
            return await provider(params)
        except Exception:
            logger.exception("State provider for topic %s failed", topic)
            return None

    async def _automation_state(self, params: dict) -> Any:
        organization_id = params.get("organizationId")
        session_id = params.get("sessionId")
        if session_id:
            session = self.sessions.get(str(session_id))
            if session is None:
                return None
            if organization_id is not None and session.organization_id != str(organization_id):
                return None
            return session.to_dict()
        if organization_id:
            return [s.to_dict() for s in self.sessions.list_for_tenant(str(organization_id))]
        return None

    async def _system_state(self, params: dict) -> dict:
        return self.system_state()

    def system_state(self) -> dict:
        principals = list(self._principals.values())
        return {
            "connections": len(principals),
            "subscriptions": sum(len(p.subscriptions) for p in principals),
            "sessions": len(self.sessions),
            "uptimeSeconds": int((self.clock.now() - self.started_at).total_seconds()),
            "timestamp": self._timestamp(),
        }

    # ── Outbound ──────────────────────────────────────────────

    async def _send(self, principal: Principal, payload: dict) -> bool:
        try:
            await asyncio.wait_for(principal.websocket.send_json(payload), self.send_timeout)
        except TimeoutError:
            logger.warning("Send to realtime client %s timed out, dropping it", principal.id)
            await self._drop(principal, "send timeout")
            return False
        except Exception as exc:
            logger.warning("Send to realtime client %s failed, dropping it: %r", principal.id, exc)
            await self._drop(principal, "send failed")
            return False
        return True

    async def _drop(self, principal: Principal, reason: str) -> None:
        if principal.id not in self._principals:
            return
        await self.disconnect(principal)
        await self.audit.record("error", principal.id, principal.organization_id, reason=reason)
        await self._close(principal, CloseCode.INTERNAL_ERROR, reason)

    async def _close(self, principal: Principal, code: CloseCode, reason: str) -> None:
        try:
            await asyncio.wait_for(
                principal.websocket.close(code=code, reason=reason), self.send_timeout
            )
        except Exception as exc:
            logger.debug("Close of realtime client %s did not complete: %r", principal.id, exc)

    async def _send_error(self, principal: Principal, message: str) -> None:
        await self._send(
            principal, {"type": "error", "message": message, "timestamp": self._timestamp()}
        )

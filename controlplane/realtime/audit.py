"""Append-only per-day JSON-lines audit log of realtime transitions."""

import asyncio
import json
import logging
from pathlib import Path

from controlplane.core.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, log_dir: str | Path, clock: Clock = system_clock) -> None:
        self.log_dir = Path(log_dir)
        self.clock = clock

    def path_for_today(self) -> Path:
        return self.log_dir / f"realtime_{self.clock.now():%Y-%m-%d}.log"

    async def record(
        self,
        event: str,
        client_id: str | None = None,
        organization_id: str | None = None,
        **details,
    ) -> None:
        """Append one line. Write failures are logged, never raised."""
        entry = {
            "type": event,
            "clientId": client_id,
            "organizationId": organization_id,
            "timestamp": self.clock.now().isoformat(),
            **details,
        }
        line = json.dumps(entry, default=str)
        try:
            await asyncio.to_thread(self._append, self.path_for_today(), line)
        except OSError:
            logger.exception("Failed to write realtime audit entry (%s)", event)

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

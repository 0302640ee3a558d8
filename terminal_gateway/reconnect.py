from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .record import Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

# Disconnect reasons that mean the client went away without saying goodbye.
ABNORMAL_REASONS = frozenset({"transport close", "ping timeout", "transport error"})

Expire = Callable[[Session], Awaitable[None]]


def is_abnormal(reason: Optional[str]) -> bool:
    return (reason or "") in ABNORMAL_REASONS


def reason_from_close_code(code: Optional[int]) -> str:
    """Map a WebSocket close code onto a disconnect reason.

    1000 and 1001 are a deliberate client close; anything else, including a
    missing close frame (1006), is treated as a dropped transport.
    """
    if code in (1000, 1001):
        return "client disconnect"
    return "transport close"


class ReconnectionCoordinator:
    """Keeps detached sessions alive for a grace window after transport loss."""

    def __init__(self, registry: SessionRegistry, *, grace_period: float, expire: Expire) -> None:
        self.registry = registry
        self.grace_period = grace_period
        self._expire = expire
        self._timers: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._timers)

    def on_disconnect(self, session: Session, reason: Optional[str]) -> bool:
        """Record the reason and arm a grace timer for abnormal losses.

        Returns True when a timer was scheduled.
        """
        session.disconnect_reason = reason
        if not is_abnormal(reason):
            logger.info("Session %s detached (%s), no grace timer", session.id, reason)
            return False
        logger.info(
            "Session %s lost its transport (%s), holding for %.0fs",
            session.id, reason, self.grace_period,
        )
        task = asyncio.create_task(self._grace_timer(session.id, session.last_activity))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return True

    async def _grace_timer(self, session_id: str, scheduled_activity: float) -> None:
        await asyncio.sleep(self.grace_period)
        await self.check(session_id, scheduled_activity)

    async def check(self, session_id: str, scheduled_activity: float) -> bool:
        """Expire the session unless it saw activity after the disconnect."""
        session = self.registry.get(session_id)
        if session is None:
            return False
        if session.last_activity > scheduled_activity:
            logger.debug("Session %s was reclaimed, grace timer is a no-op", session_id)
            return False
        logger.info("No reconnection for session %s within %.0fs, cleaning up", session_id, self.grace_period)
        await self._expire(session)
        return True

    async def close(self) -> None:
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()

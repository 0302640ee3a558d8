from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from .record import Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

Reap = Callable[[Session], Awaitable[None]]


class IdleReaper:
    """Periodically kills sessions that have been idle longer than ``idle_timeout``.

    Attachment state does not matter: this is the backstop for sessions whose
    grace timer never ran (clean disconnects) or was lost.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        idle_timeout: float,
        interval: float,
        reap: Reap,
    ) -> None:
        self.registry = registry
        self.idle_timeout = idle_timeout
        self.interval = interval
        self._reap = reap
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        reaped: List[str] = []
        for session in self.registry.sessions():
            idle = now - session.last_activity
            if idle <= self.idle_timeout:
                continue
            logger.info(
                "Cleaning up inactive session %s (pid=%s), inactive for %.0fs",
                session.id, session.pid, idle,
            )
            try:
                await self._reap(session)
            except Exception:
                logger.exception("Failed to reap session %s", session.id)
                continue
            reaped.append(session.id)
        return reaped

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

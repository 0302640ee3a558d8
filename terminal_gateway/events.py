from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set
from asyncio import Queue as AsyncQueue, QueueFull
import logging
import time

logger = logging.getLogger(__name__)


class EventType(Enum):
    SESSION_CREATED = "session.created"
    SESSION_ATTACHED = "session.attached"
    SESSION_DETACHED = "session.detached"
    SESSION_EXPIRED = "session.expired"
    SESSION_REAPED = "session.reaped"
    SESSION_EXITED = "session.exited"
    SESSION_REMOVED = "session.removed"
    COMMAND_COMPLETED = "session.command_completed"
    SPAWN_FAILED = "session.spawn_failed"


@dataclass
class GatewayEvent:
    type: EventType
    session_id: str
    timestamp: float = field(default_factory=time.time)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class EventBus:
    """In-process event bus with subscription support.

    Local to a single Python process; every subscriber gets its own bounded
    queue. A subscriber that falls ``max_queue`` events behind is dropped
    rather than allowed to stall publishers.
    """

    def __init__(self, max_queue: int = 1000):
        self.max_queue = max_queue
        self._subscribers: Set[AsyncQueue[Optional[GatewayEvent]]] = set()

    def subscribe(self) -> AsyncQueue[Optional[GatewayEvent]]:
        q: AsyncQueue[Optional[GatewayEvent]] = AsyncQueue(maxsize=self.max_queue)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: AsyncQueue[Optional[GatewayEvent]]) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: GatewayEvent) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except QueueFull:
                logger.warning("Dropping slow event subscriber (%d events behind)", q.qsize())
                self._subscribers.discard(q)
                self._close(q)

    @staticmethod
    def _close(q: AsyncQueue[Optional[GatewayEvent]]) -> None:
        # None tells the consumer it was dropped and should stop reading.
        while not q.empty():
            q.get_nowait()
        q.put_nowait(None)


# Singleton
_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .record import Session, new_session_id

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], Awaitable[Session]]


class SessionRegistry:
    """Process-wide session tables.

    ``_sessions`` maps session id to session; ``_transports`` maps the id of
    a currently attached transport to its session id. Only the event loop
    thread touches either table; callers that await between lookup and
    create must serialize themselves (the gateway holds a lock).
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._transports: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def sessions(self) -> List[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def transport_ids(self) -> List[str]:
        return list(self._transports)

    def by_transport(self, transport_id: str) -> Optional[Session]:
        session_id = self._transports.get(transport_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def unique_id(self) -> str:
        base = new_session_id()
        candidate, n = base, 1
        while candidate in self._sessions:
            candidate = f"{base}_{n}"
            n += 1
        return candidate

    async def attach(
        self,
        session_id: Optional[str],
        transport_id: str,
        factory: SessionFactory,
    ) -> Tuple[Session, bool]:
        """Bind ``transport_id`` to a session, creating one if needed.

        Lookup order: the supplied session id, then whatever session this
        transport was already bound to, then a new session from ``factory``.
        """
        session: Optional[Session] = None
        is_new = False
        if session_id and session_id in self._sessions:
            session = self._sessions[session_id]
        elif transport_id in self._transports and self._transports[transport_id] in self._sessions:
            session = self._sessions[self._transports[transport_id]]
        else:
            new_id = session_id or self.unique_id()
            session = await factory(new_id)
            self._sessions[session.id] = session
            is_new = True

        self._bind(session, transport_id)
        session.touch()
        return session, is_new

    def _bind(self, session: Session, transport_id: str) -> None:
        previous = self._transports.get(transport_id)
        if previous is not None and previous != session.id:
            # Transport switched sessions; the old one is now detached.
            old = self._sessions.get(previous)
            if old is not None and old.transport_id == transport_id:
                old.transport = None
        for tid, sid in list(self._transports.items()):
            if sid == session.id and tid != transport_id:
                del self._transports[tid]
        self._transports[transport_id] = session.id

    def touch(self, transport_id: str, now: Optional[float] = None) -> Optional[Session]:
        session = self.by_transport(transport_id)
        if session is not None:
            session.touch(now)
        return session

    def detach(self, transport_id: str) -> Optional[Session]:
        """Unbind a transport without destroying its session."""
        session_id = self._transports.pop(transport_id, None)
        if session_id is None:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.transport_id == transport_id:
            session.transport = None
        session.touch(time.time())
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        for tid, sid in list(self._transports.items()):
            if sid == session_id:
                del self._transports[tid]
        if session is not None:
            session.transport = None
            logger.debug("Removed session %s", session_id)
        return session

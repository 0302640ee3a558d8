from __future__ import annotations

import asyncio
import inspect
import logging
import os
from collections import deque
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .config import GatewayConfig
from .errors import ResizeError, SessionNotFound, SpawnError, WriteError
from .events import EventBus, EventType, GatewayEvent, get_event_bus
from .hooks import SessionLifecycleHooks
from .markers import build_init_script, prompt_for
from .parser import CommandOutput, CommandStatus, CompletionParser, ParserEvent, Passthrough
from .pty import ShellProcess
from .reaper import IdleReaper
from .reconnect import ReconnectionCoordinator
from .record import Session
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

Spawner = Callable[..., Awaitable[ShellProcess]]


class Transport(Protocol):
    """A connected client. ``send`` raises if the connection is gone."""

    id: str

    async def send(self, message: Dict[str, Any]) -> None:  # pragma: no cover
        ...


def event_to_message(event: ParserEvent) -> Dict[str, Any]:
    if isinstance(event, CommandStatus):
        return {
            "type": "command-status",
            "success": event.success,
            "exit_code": event.exit_code,
            "command": event.command,
        }
    return {"type": "terminal-output", "data": event.text}


class SessionGateway:
    """Owns every shell session and routes traffic between shells and transports."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        hooks: Optional[SessionLifecycleHooks] = None,
        event_bus: Optional[EventBus] = None,
        spawner: Optional[Spawner] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self.registry = SessionRegistry()
        self.coordinator = ReconnectionCoordinator(
            self.registry,
            grace_period=self.config.grace_period,
            expire=partial(self._close_session, reason="expired"),
        )
        self.reaper = IdleReaper(
            self.registry,
            idle_timeout=self.config.idle_timeout,
            interval=self.config.reap_interval,
            reap=partial(self._close_session, reason="reaped"),
        )
        self._hooks = hooks
        self._event_bus = event_bus or get_event_bus()
        self._spawner: Spawner = spawner or ShellProcess.spawn

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def _get_lock(self) -> asyncio.Lock:
        if not hasattr(self, "_lock_instance"):
            self._lock_instance = asyncio.Lock()
        return self._lock_instance

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        self.reaper.start()

    async def shutdown(self) -> None:
        await self.reaper.stop()
        await self.coordinator.close()
        for session in self.registry.sessions():
            await self._close_session(session, reason="removed")

    # ------------------------------------------------------------------
    # Hooks and events

    def _fire_hook(self, hook: Optional[Callable[..., Any]], *args: Any) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("Lifecycle hook %r failed", hook)

    async def _emit(self, event_type: EventType, session: Session, **extra: Any) -> None:
        event = GatewayEvent(type=event_type, session_id=session.id, data={**session.to_payload(), **extra})
        await self._event_bus.publish(event)

    # ------------------------------------------------------------------
    # Session creation

    async def _create_session(self, session_id: str) -> Session:
        cfg = self.config
        kind = cfg.shell_kind
        session = Session(
            id=session_id,
            parser=CompletionParser(
                prompt=prompt_for(kind),
                max_pending=cfg.max_pending,
                scrub_markers=cfg.scrub_markers,
            ),
            backlog=deque(maxlen=cfg.backlog_limit),
        )
        transcript = None
        if cfg.transcript_dir:
            transcript = os.path.join(os.path.expanduser(cfg.transcript_dir), f"{session_id}.log")

        session.process = await self._spawner(
            kind,
            cwd=cfg.resolved_cwd(),
            env=None,
            on_data=partial(self._on_output, session),
            on_exit=partial(self._on_exit, session),
            cols=cfg.cols,
            rows=cfg.rows,
            term=cfg.term,
            transcript_path=transcript,
        )
        logger.info("Created terminal pid=%s for session %s", session.pid, session_id)

        try:
            await session.process.write(build_init_script(kind))
        except WriteError as exc:
            logger.warning("Could not inject marker hook into session %s: %s", session_id, exc)

        await self._emit(EventType.SESSION_CREATED, session)
        self._fire_hook(self._hooks.on_session_created if self._hooks else None, session)
        return session

    # ------------------------------------------------------------------
    # Transport-facing operations

    async def attach(self, transport: Transport, session_id: Optional[str] = None) -> Optional[Session]:
        """Handle ``terminal-init``: bind the transport to a new or existing session.

        Returns None if a new shell could not be spawned; the transport gets a
        ``terminal-error`` message and stays usable for another attempt.
        """
        logger.info("Terminal init from %s with session id %s", transport.id, session_id or "none")
        try:
            async with self._get_lock():
                session, is_new = await self.registry.attach(session_id, transport.id, self._create_session)
        except SpawnError as exc:
            logger.error("Failed to initialize terminal: %s", exc)
            await self._event_bus.publish(
                GatewayEvent(type=EventType.SPAWN_FAILED, session_id=session_id or "", data={"error": str(exc)})
            )
            await transport.send({"type": "terminal-error", "error": "Failed to initialize terminal"})
            return None

        if session.exited:
            # The shell died before the session was registered.
            logger.error("Shell for session %s exited during startup (code=%s)", session.id, session.exit_code)
            await self._close_session(session, reason="exited", exit_code=session.exit_code)
            await transport.send({"type": "terminal-error", "error": "Failed to initialize terminal"})
            return None

        if not is_new:
            logger.info("Reusing terminal pid=%s for session %s", session.pid, session.id)
        previous = session.transport
        if previous is not None and previous is not transport:
            logger.info("Transport %s replaces %s on session %s", transport.id, previous.id, session.id)
        session.transport = None
        session.disconnect_reason = None

        await transport.send({"type": "terminal-session", "session_id": session.id})
        await transport.send({"type": "terminal-pid", "pid": session.pid})
        # Drain output queued while detached before new output goes direct.
        while session.backlog:
            await transport.send(session.backlog[0])
            session.backlog.popleft()
        if self.registry.by_transport(transport.id) is session:
            session.transport = transport

        await self._emit(EventType.SESSION_ATTACHED, session, is_new=is_new)
        return session

    async def input(self, transport_id: str, data: str) -> None:
        """Handle ``terminal-input``: forward keystrokes verbatim."""
        session = self.registry.touch(transport_id)
        if session is None or session.process is None:
            logger.debug("Input from unattached transport %s ignored", transport_id)
            return
        if data == "\r":
            if session.parser.submit():
                logger.debug("Executing command in session %s: %s", session.id, session.parser.last_command)
        else:
            logger.debug("Terminal input for %s: %r", session.id, data)
        try:
            await session.process.write(data)
        except WriteError as exc:
            logger.warning("Error writing to terminal %s: %s", session.id, exc)

    async def resize(self, transport_id: str, cols: int, rows: int) -> None:
        session = self.registry.touch(transport_id)
        if session is None or session.process is None:
            return
        try:
            await session.process.resize(int(cols), int(rows))
        except (ResizeError, TypeError, ValueError) as exc:
            logger.warning("Error resizing terminal %s: %s", session.id, exc)

    async def detach(self, transport_id: str, reason: Optional[str]) -> Optional[Session]:
        """Handle a transport going away. The session and its shell survive."""
        session = self.registry.detach(transport_id)
        if session is None:
            return None
        logger.info("Client %s disconnected (%s), preserving pid=%s for session %s",
                    transport_id, reason, session.pid, session.id)
        self.coordinator.on_disconnect(session, reason)
        await self._emit(EventType.SESSION_DETACHED, session, reason=reason)
        return session

    # ------------------------------------------------------------------
    # Shell-facing callbacks

    async def _on_output(self, session: Session, text: str) -> None:
        for event in session.parser.feed(text):
            await self._deliver(session, event_to_message(event))
            if isinstance(event, CommandStatus):
                await self._command_completed(session, event)

    async def _command_completed(self, session: Session, status: CommandStatus) -> None:
        if status.success:
            logger.info("Command in session %s succeeded: %s", session.id, status.command or "(unknown)")
        else:
            logger.info(
                "Command in session %s FAILED with exit code %d: %s",
                session.id, status.exit_code, status.command or "(unknown)",
            )
        await self._emit(
            EventType.COMMAND_COMPLETED, session,
            success=status.success, exit_code=status.exit_code, last_command=status.command,
        )
        self._fire_hook(self._hooks.on_command_completed if self._hooks else None, session, status)

    async def _deliver(self, session: Session, message: Dict[str, Any]) -> None:
        transport = session.transport
        if transport is not None:
            try:
                await transport.send(message)
                return
            except Exception as exc:
                logger.warning("Send to %s failed, detaching: %s", transport.id, exc)
                if session.transport is transport:
                    await self.detach(transport.id, "transport error")
        session.backlog.append(message)

    async def _on_exit(self, session: Session, exit_code: Optional[int]) -> None:
        session.exited = True
        session.exit_code = exit_code
        if self.registry.get(session.id) is not session:
            return
        logger.info("Shell for session %s exited on its own (code=%s)", session.id, exit_code)
        await self._close_session(session, reason="exited", exit_code=exit_code)

    # ------------------------------------------------------------------
    # Teardown

    async def _close_session(self, session: Session, *, reason: str, exit_code: Optional[int] = None) -> None:
        if session.closed:
            return
        session.closed = True
        if self.registry.get(session.id) is session:
            self.registry.remove(session.id)
        session.parser.reset()
        session.backlog.clear()
        if session.process is not None:
            await session.process.kill()
        event_type = {
            "reaped": EventType.SESSION_REAPED,
            "expired": EventType.SESSION_EXPIRED,
            "exited": EventType.SESSION_EXITED,
        }.get(reason, EventType.SESSION_REMOVED)
        await self._emit(event_type, session, reason=reason, exit_code=exit_code)
        self._fire_hook(self._hooks.on_session_closed if self._hooks else None, session, reason)

    async def remove_session(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        await self._close_session(session, reason="removed")

    # ------------------------------------------------------------------
    # Introspection

    def list_sessions(self) -> List[Session]:
        return self.registry.sessions()

    def get_session(self, session_id: str) -> Session:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def describe(self, session: Session) -> Dict[str, Any]:
        payload = session.to_payload()
        if session.process is not None:
            payload["stats"] = await asyncio.to_thread(session.process.stats)
        else:
            payload["stats"] = {"alive": False, "uptime": None}
        return payload

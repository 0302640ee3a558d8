from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Deque, Dict, Optional

from .parser import CompletionParser

if TYPE_CHECKING:
    from .gateway import Transport
    from .pty import ShellProcess


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}"


@dataclass
class Session:
    """A reconnectable binding of one shell process to zero or one transport."""

    id: str
    parser: CompletionParser
    process: Optional["ShellProcess"] = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    transport: Optional["Transport"] = None
    disconnect_reason: Optional[str] = None
    # Set by the exit callback, which can fire before the session is registered.
    exited: bool = False
    exit_code: Optional[int] = None
    closed: bool = False
    # Messages produced while no transport is attached, flushed on reattach.
    backlog: Deque[Dict[str, Any]] = field(default_factory=deque)

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def attached(self) -> bool:
        return self.transport is not None

    @property
    def transport_id(self) -> Optional[str]:
        return self.transport.id if self.transport else None

    def touch(self, now: Optional[float] = None) -> None:
        self.last_activity = time.time() if now is None else now

    def idle_for(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.last_activity)

    def to_payload(self) -> Dict[str, Any]:
        process = self.process
        return {
            "id": self.id,
            "pid": self.pid,
            "shell_kind": process.kind.value if process else None,
            "command": list(process.command) if process else [],
            "cwd": process.cwd if process else None,
            "cols": process.cols if process else None,
            "rows": process.rows if process else None,
            "alive": bool(process and process.alive),
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "attached": self.attached,
            "transport_id": self.transport_id,
            "disconnect_reason": self.disconnect_reason,
            "awaiting_completion": self.parser.awaiting,
            "last_command": self.parser.last_command,
            "backlog": len(self.backlog),
            "transcript": process.transcript_path if process else None,
        }

"""Exceptions raised by the terminal gateway."""

from typing import Optional


class GatewayError(Exception):
    """Base class for gateway failures."""


class SpawnError(GatewayError):
    """The shell process could not be created."""

    def __init__(self, message: str, *, command: Optional[list] = None):
        super().__init__(message)
        self.command = command


class WriteError(GatewayError):
    """Writing to a live shell's pty failed."""


class ResizeError(GatewayError):
    """Resizing a shell's pty failed (usually because it already exited)."""


class SessionNotFound(GatewayError, KeyError):
    """No session is registered under the given identifier."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"

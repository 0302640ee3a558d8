from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .parser import CommandStatus
from .record import Session


MaybeAwaitable = Any


@dataclass(frozen=True)
class SessionLifecycleHooks:
    """Optional callbacks for integrating SessionGateway with host systems.

    Callbacks may be sync or async; exceptions are logged and swallowed.
    """

    # Called after a new session's shell is running and its marker hook injected.
    on_session_created: Optional[Callable[[Session], MaybeAwaitable]] = None

    # Called when a session is destroyed. `reason` is one of
    # "reaped", "expired", "exited" or "removed".
    on_session_closed: Optional[Callable[[Session, str], MaybeAwaitable]] = None

    # Called for every detected command completion.
    on_command_completed: Optional[Callable[[Session, CommandStatus], MaybeAwaitable]] = None

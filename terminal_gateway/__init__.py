"""Terminal Gateway - reconnectable pty shell sessions with command-completion tracking."""

from .gateway import SessionGateway, Transport, event_to_message
from .config import GatewayConfig
from .record import Session
from .registry import SessionRegistry
from .reconnect import ReconnectionCoordinator
from .reaper import IdleReaper
from .parser import CompletionParser, CommandOutput, CommandStatus, Passthrough, parse_exit_code
from .markers import SENTINEL, ShellKind, build_init_script, default_shell_kind
from .pty import ShellProcess
from .events import get_event_bus, EventBus, GatewayEvent, EventType
from .hooks import SessionLifecycleHooks
from .executor import CommandResult, run_command
from .errors import GatewayError, SpawnError, WriteError, ResizeError, SessionNotFound

import asyncio
from typing import Optional

# Singleton gateway instance
_gateway_instance: Optional[SessionGateway] = None
_gateway_lock: Optional[asyncio.Lock] = None
_gateway_kwargs: Optional[dict] = None

def _get_lock() -> asyncio.Lock:
    global _gateway_lock
    if _gateway_lock is None:
        _gateway_lock = asyncio.Lock()
    return _gateway_lock

async def get_gateway(**kwargs) -> SessionGateway:
    """Get or create the singleton SessionGateway instance.

    This is a process-wide singleton. If kwargs are provided after the gateway
    is created, they must match the original creation kwargs.
    """
    global _gateway_instance
    global _gateway_kwargs
    if _gateway_instance is not None:
        if kwargs and _gateway_kwargs is not None and kwargs != _gateway_kwargs:
            raise ValueError("SessionGateway singleton already created with different configuration")
        return _gateway_instance

    async with _get_lock():
        if _gateway_instance is None:
            _gateway_kwargs = dict(kwargs)
            _gateway_instance = SessionGateway(**kwargs)

    return _gateway_instance

def set_gateway(gateway: Optional[SessionGateway]) -> None:
    """Install (or clear, with None) the process-wide gateway."""
    global _gateway_instance
    global _gateway_kwargs
    _gateway_instance = gateway
    _gateway_kwargs = None

__all__ = [
    "SessionGateway",
    "Transport",
    "event_to_message",
    "GatewayConfig",
    "Session",
    "SessionRegistry",
    "ReconnectionCoordinator",
    "IdleReaper",
    "CompletionParser",
    "CommandOutput",
    "CommandStatus",
    "Passthrough",
    "parse_exit_code",
    "SENTINEL",
    "ShellKind",
    "build_init_script",
    "default_shell_kind",
    "ShellProcess",
    "get_event_bus",
    "EventBus",
    "GatewayEvent",
    "EventType",
    "SessionLifecycleHooks",
    "CommandResult",
    "run_command",
    "GatewayError",
    "SpawnError",
    "WriteError",
    "ResizeError",
    "SessionNotFound",
    "get_gateway",
    "set_gateway",
]

"""
Shared fixtures for terminal_gateway tests.

- FakeShell: stands in for ShellProcess. It echoes typed input like a pty
  would and, on Enter, answers with scripted output followed by the
  completion marker.
- FakeTransport: records every message the gateway sends.
"""

import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from terminal_gateway.config import GatewayConfig
from terminal_gateway.errors import ResizeError, SpawnError, WriteError
from terminal_gateway.events import EventBus
from terminal_gateway.gateway import SessionGateway
from terminal_gateway.markers import SENTINEL, ShellKind

# ============================================================================
# FAKE SHELL
# ============================================================================

Responder = Callable[[str], Optional[Tuple[str, int]]]

_ECHO_RE = re.compile(r"^echo\s+(.*)$")
_EXIT_RE = re.compile(r"^\(exit\s+(\d+)\)$")


def default_responder(line: str) -> Optional[Tuple[str, int]]:
    """Output and exit code for a command line; None means still running."""
    line = line.strip()
    m = _ECHO_RE.match(line)
    if m:
        return m.group(1) + "\r\n", 0
    m = _EXIT_RE.match(line)
    if m:
        return "", int(m.group(1))
    if line.startswith("sleep"):
        return None
    if not line:
        return "", 0
    return f"bash: {line.split()[0]}: command not found\r\n", 127


class FakeShell:
    def __init__(self, factory: "FakeShellFactory", kind, on_data, on_exit, cwd, cols, rows, transcript_path):
        self.factory = factory
        self.kind = kind
        self.command = ["fake-" + kind.value]
        self.pid = 40000 + len(factory.spawned)
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.transcript_path = transcript_path
        self.on_data = on_data
        self.on_exit = on_exit
        self.written: List[Any] = []
        self.line = ""
        self.killed = False
        self.alive = True
        self.fail_writes = False

    async def emit(self, text: str) -> None:
        await self.on_data(text)

    async def write(self, data) -> None:
        if self.fail_writes or not self.alive:
            raise WriteError("pty closed")
        self.written.append(data)
        if isinstance(data, bytes):
            # Init script: the hook prints a marker before the first prompt.
            await self.on_data(f"{SENTINEL}0\r\n$ ")
            return
        if data != "\r":
            self.line += data
            await self.on_data(data)
            return
        line, self.line = self.line, ""
        result = self.factory.responder(line)
        await self.on_data("\r\n")
        if result is None:
            return
        output, code = result
        await self.on_data(f"{output}{SENTINEL}{code}\r\n$ ")

    async def resize(self, cols: int, rows: int) -> None:
        if not self.alive:
            raise ResizeError("not running")
        self.cols, self.rows = cols, rows

    async def kill(self) -> None:
        self.killed = True
        self.alive = False

    async def exit(self, code: int) -> None:
        self.alive = False
        await self.on_exit(code)

    def stats(self) -> Dict[str, Any]:
        return {"alive": self.alive, "uptime": 0.0}


class FakeShellFactory:
    def __init__(self) -> None:
        self.spawned: List[FakeShell] = []
        self.responder: Responder = default_responder
        self.fail_next = False

    async def spawn(self, kind, *, cwd, env, on_data, on_exit, cols, rows, term, transcript_path=None):
        if self.fail_next:
            self.fail_next = False
            raise SpawnError("no such shell")
        shell = FakeShell(self, kind, on_data, on_exit, cwd, cols, rows, transcript_path)
        self.spawned.append(shell)
        return shell


# ============================================================================
# FAKE TRANSPORT
# ============================================================================


class FakeTransport:
    def __init__(self, transport_id: str) -> None:
        self.id = transport_id
        self.messages: List[Dict[str, Any]] = []
        self.broken = False

    async def send(self, message: Dict[str, Any]) -> None:
        if self.broken:
            raise ConnectionError("socket closed")
        self.messages.append(message)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["type"] == kind]

    def output(self) -> str:
        return "".join(m["data"] for m in self.of_type("terminal-output"))

    def clear(self) -> None:
        self.messages.clear()


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def shells():
    return FakeShellFactory()


@pytest.fixture
def config(tmp_path):
    return GatewayConfig(
        shell_kind=ShellKind.BASH,
        cwd=str(tmp_path),
        grace_period=0.05,
        idle_timeout=300.0,
        reap_interval=60.0,
    )


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
async def gateway(config, shells, bus):
    gw = SessionGateway(config, event_bus=bus, spawner=shells.spawn)
    yield gw
    await gw.shutdown()


@pytest.fixture
def make_transport():
    counter = {"n": 0}

    def _make() -> FakeTransport:
        counter["n"] += 1
        return FakeTransport(f"t{counter['n']}")

    return _make

"""Stateless one-shot command execution.

Used by the request/response endpoints; it never touches the session
registry and runs each command in a fresh ``sh -c``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
        }


async def run_command(
    command: str,
    *,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run ``command`` to completion and capture its output.

    Spawn failures and timeouts come back as a failed result with the reason
    in ``stderr`` rather than as exceptions.
    """
    logger.info("Executing command: %s", command)
    full_env = os.environ.copy()
    full_env.update({str(k): str(v) for k, v in (env or {}).items()})
    try:
        proc = await asyncio.create_subprocess_exec(
            "sh", "-c", command,
            cwd=cwd,
            env=full_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.error("Failed to start command: %s", exc)
        return CommandResult(command=command, stdout="", stderr=str(exc), exit_code=1)

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        # Whole group, so grandchildren holding the pipes go too.
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        stdout, stderr = await proc.communicate()
        message = f"Command timed out after {timeout}s"
        logger.warning("%s: %s", message, command)
        err = stderr.decode("utf-8", errors="replace")
        return CommandResult(
            command=command,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=(err + "\n" + message) if err else message,
            exit_code=124,
        )

    code = proc.returncode if proc.returncode is not None else 1
    result = CommandResult(
        command=command,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=code,
    )
    if result.success:
        logger.info("Command executed successfully")
    else:
        logger.info("Command execution failed with exit code %d", code)
    return result

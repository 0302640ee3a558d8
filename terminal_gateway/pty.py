from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import select
import signal
import struct
import termios
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import aiofiles
import psutil

from .errors import ResizeError, SpawnError, WriteError
from .markers import ShellKind, shell_command

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], Awaitable[None]]
ExitCallback = Callable[[Optional[int]], Awaitable[None]]

READ_SIZE = 4096


def _make_controlling_tty() -> None:
    # Runs in the child between fork and exec: new session, slave pty as ctty.
    os.setsid()
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsz = struct.pack("HHHH", max(1, rows), max(1, cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsz)


class ShellProcess:
    """One interactive shell bound to a pseudo-terminal.

    Output is read by a background task and handed to ``on_data`` one decoded
    chunk at a time; the next read does not start until the callback returns,
    so consumers see chunks strictly in the order the shell produced them.
    ``on_exit`` is awaited once when the shell goes away.
    """

    def __init__(
        self,
        *,
        kind: ShellKind,
        command: List[str],
        process: asyncio.subprocess.Process,
        master_fd: int,
        cwd: str,
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: Optional[ExitCallback] = None,
        transcript_path: Optional[str] = None,
    ) -> None:
        self.kind = kind
        self.command = command
        self.process = process
        self.pid: int = process.pid
        self.master_fd = master_fd
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.started_at = time.time()
        self.exit_code: Optional[int] = None
        self.transcript_path = transcript_path
        self._on_data = on_data
        self._on_exit = on_exit
        self._stop = asyncio.Event()
        self._closed = False
        self._exited = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reader: Optional[asyncio.Task] = None

    @classmethod
    async def spawn(
        cls,
        kind: ShellKind,
        *,
        cwd: str,
        env: Optional[Mapping[str, str]] = None,
        on_data: DataCallback,
        on_exit: Optional[ExitCallback] = None,
        cols: int = 80,
        rows: int = 24,
        term: str = "xterm-color",
        command: Optional[List[str]] = None,
        transcript_path: Optional[str] = None,
    ) -> "ShellProcess":
        command = list(command or shell_command(kind))
        envp: Dict[str, str] = dict(os.environ if env is None else env)
        envp.setdefault("TERM", term)

        try:
            master_fd, slave_fd = await asyncio.to_thread(pty.openpty)
        except OSError as exc:
            raise SpawnError(f"Could not allocate a pty: {exc}", command=command) from exc

        try:
            _set_winsize(slave_fd, cols, rows)
        except OSError:
            pass

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=envp,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                preexec_fn=_make_controlling_tty,
            )
        except (OSError, ValueError) as exc:
            os.close(master_fd)
            raise SpawnError(f"Failed to start {command[0]}: {exc}", command=command) from exc
        finally:
            await asyncio.to_thread(os.close, slave_fd)

        handle = cls(
            kind=kind,
            command=command,
            process=proc,
            master_fd=master_fd,
            cwd=cwd,
            cols=cols,
            rows=rows,
            on_data=on_data,
            on_exit=on_exit,
            transcript_path=transcript_path,
        )
        handle._reader = asyncio.create_task(handle._read_loop())
        logger.info("Spawned %s (pid=%d) in %s", " ".join(command), proc.pid, cwd)
        return handle

    @property
    def alive(self) -> bool:
        return not self._exited and self.process.returncode is None

    # ------------------------------------------------------------------
    # I/O

    async def write(self, data: Union[str, bytes]) -> None:
        if self._closed:
            raise WriteError(f"pty for pid {self.pid} is closed")
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        try:
            while payload:
                written = await asyncio.to_thread(os.write, self.master_fd, payload)
                payload = payload[written:]
        except OSError as exc:
            raise WriteError(f"Write to pid {self.pid} failed: {exc}") from exc

    async def resize(self, cols: int, rows: int) -> None:
        if self._closed or not self.alive:
            raise ResizeError(f"Shell pid {self.pid} is not running")
        try:
            await asyncio.to_thread(_set_winsize, self.master_fd, cols, rows)
        except OSError as exc:
            raise ResizeError(f"Resize of pid {self.pid} failed: {exc}") from exc
        self.cols = max(1, cols)
        self.rows = max(1, rows)

    async def _read_loop(self) -> None:
        transcript = None
        if self.transcript_path:
            try:
                Path(self.transcript_path).parent.mkdir(parents=True, exist_ok=True)
                transcript = await aiofiles.open(self.transcript_path, "ab")
            except OSError as exc:
                logger.warning("Transcript %s unavailable: %s", self.transcript_path, exc)
        try:
            while not self._stop.is_set():
                try:
                    rlist, _, _ = await asyncio.to_thread(select.select, [self.master_fd], [], [], 0.5)
                    if not rlist:
                        continue
                    data = await asyncio.to_thread(os.read, self.master_fd, READ_SIZE)
                except OSError as exc:
                    # EIO is how Linux reports that the slave side hung up.
                    if exc.errno not in (errno.EIO, errno.EBADF):
                        logger.warning("Read from pid %d failed: %s", self.pid, exc)
                    break
                if not data:
                    break

                if transcript is not None:
                    await transcript.write(data)
                    await transcript.flush()

                text = self._decoder.decode(data)
                if text and not self._stop.is_set():
                    try:
                        await self._on_data(text)
                    except Exception:
                        logger.exception("Output handler failed for pid %d", self.pid)
        finally:
            if transcript is not None:
                await transcript.close()
            await self._finish()

    async def _finish(self) -> None:
        if self._exited:
            return
        self._exited = True
        self._close_fd()
        try:
            self.exit_code = await asyncio.wait_for(self.process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            self._signal(signal.SIGKILL)
            try:
                self.exit_code = await asyncio.wait_for(self.process.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.warning("Shell pid %d did not exit after SIGKILL", self.pid)
        logger.info("Shell pid %d exited (code=%s)", self.pid, self.exit_code)
        if self._on_exit is not None:
            try:
                await self._on_exit(self.exit_code)
            except Exception:
                logger.exception("Exit handler failed for pid %d", self.pid)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.master_fd)
        except OSError:
            pass

    # ------------------------------------------------------------------
    # Lifecycle

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(os.getpgid(self.pid), sig)
            return
        except (ProcessLookupError, PermissionError, OSError):
            pass
        try:
            os.kill(self.pid, sig)
        except (ProcessLookupError, PermissionError, OSError):
            pass

    async def kill(self) -> None:
        """Terminate the shell. Safe to call more than once or after exit."""
        if self._stop.is_set():
            return
        self._stop.set()
        if self.process.returncode is None:
            self._signal(signal.SIGTERM)
            # Interactive shells ignore SIGTERM; SIGHUP is what a closing
            # terminal delivers.
            self._signal(signal.SIGHUP)
        reader = self._reader
        if reader is None or reader is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(reader), timeout=5.0)
        except asyncio.TimeoutError:
            reader.cancel()
            self._close_fd()

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"alive": self.alive, "uptime": None}
        if not self.alive:
            return stats
        stats["uptime"] = max(0.0, time.time() - self.started_at)
        try:
            proc = psutil.Process(self.pid)
            with proc.oneshot():
                stats["cpu_percent"] = proc.cpu_percent(interval=0.0)
                stats["memory_rss"] = proc.memory_info().rss
                stats["num_threads"] = proc.num_threads()
                stats["children"] = len(proc.children(recursive=True))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        return stats

"""Streaming command-completion parser for shell output.

The parser sits between a shell's pty and the client. While no command is
running (PASSTHROUGH) output is forwarded as-is. Once the client submits a
command the parser switches to AWAITING and holds output back until the
marker printed by the shell's pre-prompt hook shows up, then reports the
command's exit status, the held output and whatever followed the marker (the
next prompt), in that order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .markers import SENTINEL

logger = logging.getLogger(__name__)

_EXIT_CODE_RE = re.compile(r"[+-]?\d+")
_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
_EXIT_FIELD_RE = re.compile(r"[+-]?\d*[ \t]*")
_MAX_LINE = 4096


@dataclass(frozen=True)
class Passthrough:
    text: str


@dataclass(frozen=True)
class CommandOutput:
    text: str


@dataclass(frozen=True)
class CommandStatus:
    success: bool
    exit_code: int
    command: str = ""


ParserEvent = Union[Passthrough, CommandOutput, CommandStatus]


def parse_exit_code(text: str) -> int:
    """Decimal exit status, or 1 when the field is empty or not a number."""
    value = (text or "").strip()
    if not _EXIT_CODE_RE.fullmatch(value):
        logger.debug("Unparseable exit code field %r, treating as failure", value)
        return 1
    return int(value)


def _advance_line(line: str, text: str) -> str:
    """The visible current line after ``text`` is printed on top of ``line``."""
    for ch in _ANSI_RE.sub("", text):
        if ch in "\r\n":
            line = ""
        elif ch in "\b\x7f":
            line = line[:-1]
        elif ch >= " ":
            line += ch
    return line


class CompletionParser:
    """Per-session state machine turning raw shell output into events."""

    def __init__(
        self,
        sentinel: str = SENTINEL,
        *,
        prompt: str = "",
        max_pending: Optional[int] = None,
        scrub_markers: bool = True,
    ) -> None:
        if not sentinel:
            raise ValueError("sentinel must not be empty")
        self.sentinel = sentinel
        self.prompt = prompt
        self.max_pending = max_pending
        self.scrub_markers = scrub_markers
        self._marker_line = re.compile(re.escape(sentinel) + r"[^\r\n]*(?:\r\n|\r|\n)")
        self._marker_ends_cr = re.compile(re.escape(sentinel) + r"[^\r\n]*\r\Z")
        self.reset()

    def reset(self) -> None:
        self._awaiting = False
        self._buffer = ""
        self._held = ""
        self._line = ""
        self._partial = ""
        self._swallow_lf = False
        self.last_command = ""

    @property
    def awaiting(self) -> bool:
        return self._awaiting

    @property
    def buffer(self) -> str:
        return self._buffer

    @property
    def held(self) -> str:
        return self._held

    def submit(self) -> bool:
        """Note that the user pressed Enter. Returns True if AWAITING was armed."""
        if self._awaiting:
            return False
        line = _advance_line(self._line, self._partial)
        if self.prompt and line.startswith(self.prompt):
            line = line[len(self.prompt):]
        self.last_command = line.strip()
        self._line = ""
        self._awaiting = True
        return True

    def feed(self, chunk: str) -> List[ParserEvent]:
        if self._swallow_lf and chunk.startswith("\n"):
            chunk = chunk[1:]
        self._swallow_lf = False
        if not chunk:
            return []
        if not self._awaiting:
            return self._passthrough(chunk)
        if self._partial:
            chunk = self._settle_partial(chunk)
        self._buffer += chunk
        return self._scan()

    # ------------------------------------------------------------------

    def _passthrough(self, text: str) -> List[ParserEvent]:
        if self.scrub_markers:
            text = self._partial + text
            if self._marker_ends_cr.search(text):
                self._swallow_lf = True
            text = self._marker_line.sub("", text)
            text, self._partial = self._split_partial(text)
        if not text:
            return []
        self._track_line(text)
        return [Passthrough(text)]

    def _split_partial(self, text: str) -> Tuple[str, str]:
        """Hold back a marker line that has not been fully received yet.

        Complete marker lines were already removed, so a sentinel still in
        the text is waiting for its exit code or terminator. A bare sentinel
        prefix is only held at the start of a line, so ordinary echoed
        keystrokes are never delayed.
        """
        idx = text.rfind(self.sentinel)
        if idx != -1 and _EXIT_FIELD_RE.fullmatch(text[idx + len(self.sentinel):]):
            return text[:idx], text[idx:]
        for k in range(min(len(self.sentinel) - 1, len(text)), 0, -1):
            if text.endswith(self.sentinel[:k]):
                start = len(text) - k
                if _advance_line(self._line, text[:start]) == "":
                    return text[:start], text[start:]
                break
        return text, ""

    def _track_line(self, text: str) -> None:
        self._line = _advance_line(self._line, text)[-_MAX_LINE:]

    def _settle_partial(self, chunk: str) -> str:
        """Resolve text held back in PASSTHROUGH once a command is running.

        A marker line that started before the command was submitted belongs
        to the previous prompt, so it is dropped rather than read as this
        command's completion.
        """
        text, self._partial = self._partial + chunk, ""
        if self.sentinel.startswith(text) or (
            text.startswith(self.sentinel) and _EXIT_FIELD_RE.fullmatch(text[len(self.sentinel):])
        ):
            self._partial = text
            return ""
        if text.startswith(self.sentinel):
            m = self._marker_line.match(text)
            return text[m.end():] if m else text
        return text

    def _hold(self, text: str) -> List[ParserEvent]:
        if not text:
            return []
        self._held += text
        if self.max_pending is not None and len(self._held) > self.max_pending:
            flushed, self._held = self._held, ""
            logger.debug("Pending output exceeded %d chars, flushing early", self.max_pending)
            return [CommandOutput(flushed)]
        return []

    def _scan(self) -> List[ParserEvent]:
        buf = self._buffer
        idx = buf.find(self.sentinel)
        if idx == -1:
            # Keep just enough of the tail to recognise a sentinel split
            # across chunk boundaries.
            cut = max(0, len(buf) - (len(self.sentinel) - 1))
            self._buffer = buf[cut:]
            return self._hold(buf[:cut])

        events = self._hold(buf[:idx])
        buf = buf[idx:]
        start = len(self.sentinel)
        end = self._find_terminator(buf, start)
        if end == -1:
            self._buffer = buf
            return events

        exit_code = parse_exit_code(buf[start:end])
        if buf.startswith("\r\n", end):
            rest = buf[end + 2:]
        else:
            rest = buf[end + 1:]
            if buf[end] == "\r" and not rest:
                self._swallow_lf = True

        events.append(CommandStatus(success=exit_code == 0, exit_code=exit_code, command=self.last_command))
        if self._held:
            events.append(CommandOutput(self._held))
        self._awaiting = False
        self._buffer = ""
        self._held = ""
        if rest:
            events.extend(self._passthrough(rest))
        return events

    @staticmethod
    def _find_terminator(buf: str, start: int) -> int:
        cr = buf.find("\r", start)
        lf = buf.find("\n", start)
        if cr == -1:
            return lf
        if lf == -1:
            return cr
        return min(cr, lf)

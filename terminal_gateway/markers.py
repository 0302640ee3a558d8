from __future__ import annotations

import sys
from enum import Enum
from typing import List, Optional

# Printed by the shell's pre-prompt hook, immediately followed by the exit
# status of the last command and a line terminator.
SENTINEL = "TERMINAL_EXIT_CODE:"

# The hooks print the sentinel as two halves so the echoed init script never
# contains it verbatim.
_HEAD, _TAIL = SENTINEL[:8], SENTINEL[8:]


class ShellKind(Enum):
    BASH = "bash"
    ZSH = "zsh"
    POWERSHELL = "powershell"


_PROMPTS = {
    ShellKind.BASH: "$ ",
    ShellKind.ZSH: "$ ",
    ShellKind.POWERSHELL: "PS > ",
}


def default_shell_kind(platform: Optional[str] = None) -> ShellKind:
    """Pick the shell family for a host platform (``sys.platform`` style)."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return ShellKind.POWERSHELL
    if platform == "darwin":
        return ShellKind.ZSH
    return ShellKind.BASH


def parse_shell_kind(value: Optional[str]) -> ShellKind:
    if not value:
        return default_shell_kind()
    try:
        return ShellKind(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown shell kind {value!r} (expected one of: bash, zsh, powershell)") from None


def shell_command(kind: ShellKind, platform: Optional[str] = None) -> List[str]:
    """Argv used to launch an interactive shell of the given family."""
    platform = platform or sys.platform
    if kind is ShellKind.POWERSHELL:
        if platform.startswith("win"):
            return ["powershell.exe", "-NoLogo"]
        return ["pwsh", "-NoLogo"]
    if kind is ShellKind.ZSH:
        return ["zsh", "-l"]
    return ["bash", "-l"]


def prompt_for(kind: ShellKind) -> str:
    return _PROMPTS[kind]


def _bash_script() -> str:
    return (
        f"PROMPT_COMMAND='__tg_rc=$?; printf \"%s%s%s\\n\" \"{_HEAD}\" \"{_TAIL}\" \"$__tg_rc\"'\n"
        "PS1='$ '\n"
        "clear\n"
    )


def _zsh_script() -> str:
    return (
        f"precmd() {{ local __tg_rc=$?; printf '%s%s%s\\n' '{_HEAD}' '{_TAIL}' \"$__tg_rc\"; }}\n"
        "PS1='$ '\n"
        "clear\n"
    )


def _powershell_script() -> str:
    return (
        "function global:prompt {\n"
        "  $ok = $?\n"
        "  $last = $global:LASTEXITCODE\n"
        "  $code = if ($ok) { 0 } else { 1 }\n"
        "  if ($null -ne $last -and $last -ne 0) { $code = $last }\n"
        f"  Write-Host ('{_HEAD}' + '{_TAIL}' + $code)\n"
        "  $global:LASTEXITCODE = 0\n"
        "  return 'PS > '\n"
        "}\n"
        "Clear-Host\n"
    )


_BUILDERS = {
    ShellKind.BASH: _bash_script,
    ShellKind.ZSH: _zsh_script,
    ShellKind.POWERSHELL: _powershell_script,
}


def build_init_script(kind: ShellKind) -> bytes:
    """Shell source that makes every prompt print ``<SENTINEL><exit-code>``.

    The script is typed into a freshly spawned shell once, before any client
    input is forwarded. PowerShell expects CRLF line endings on its console.
    """
    text = _BUILDERS[kind]()
    if kind is ShellKind.POWERSHELL:
        text = text.replace("\n", "\r\n")
    return text.encode("utf-8")

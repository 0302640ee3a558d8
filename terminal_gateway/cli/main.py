import argparse
import asyncio
import json
import logging
import os
import shlex
import sys
from typing import Dict, List, Optional

from ..config import GatewayConfig
from ..executor import run_command
from ..markers import build_init_script, default_shell_kind, parse_shell_kind

def setup_logging(level: Optional[str]) -> None:
    level = (level or os.environ.get("TERMINAL_GATEWAY_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def _parse_env_kv(pairs: Optional[List[str]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in pairs or []:
        if "=" not in item:
            raise ValueError(f"Invalid --env value {item!r} (expected KEY=VALUE)")
        k, v = item.split("=", 1)
        k = k.strip()
        if not k:
            raise ValueError(f"Invalid --env value {item!r} (empty KEY)")
        out[k] = v
    return out

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Terminal Gateway CLI")
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # tg serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket gateway")
    serve_parser.add_argument("--config", default=None, help="YAML config file")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: 5001)")
    serve_parser.add_argument("--shell", default=None, choices=["bash", "zsh", "powershell"], help="Shell family")
    serve_parser.add_argument("--cwd", default=None, help="Working directory for new shells")
    serve_parser.add_argument("--transcript-dir", default=None, help="Write raw session output here")

    # tg exec -- <command...>
    exec_parser = subparsers.add_parser("exec", help="Run one command and print the result as JSON")
    exec_parser.add_argument("--env", action="append", default=None, help="Environment override KEY=VALUE (repeatable)")
    exec_parser.add_argument("--timeout", type=float, default=None, help="Kill the command after this many seconds")
    exec_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run (prefix with --)")

    # tg init-script [kind]
    script_parser = subparsers.add_parser("init-script", help="Print the marker hook injected into new shells")
    script_parser.add_argument("kind", nargs="?", default=None, choices=["bash", "zsh", "powershell"])
    return parser

def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level)

    if args.command == "init-script":
        kind = parse_shell_kind(args.kind) if args.kind else default_shell_kind()
        sys.stdout.write(build_init_script(kind).decode("utf-8"))
        return

    if args.command == "exec":
        cmd = list(args.cmd or [])
        if cmd and cmd[0] == "--":
            cmd = cmd[1:]
        if not cmd:
            raise SystemExit("exec requires a command. Example: terminal-gateway exec -- ls -la")
        env = _parse_env_kv(args.env)
        command = cmd[0] if len(cmd) == 1 else shlex.join(cmd)
        result = asyncio.run(run_command(command, env=env, timeout=args.timeout))
        print(json.dumps(result.to_payload(), indent=2))
        sys.exit(result.exit_code if 0 <= result.exit_code < 256 else 1)

    if args.command == "serve":
        serve(args)

def serve(args: argparse.Namespace) -> None:
    import uvicorn

    from ..app import create_app

    config = GatewayConfig.load(
        args.config,
        host=args.host,
        port=args.port,
        shell_kind=args.shell,
        cwd=args.cwd,
        transcript_dir=args.transcript_dir,
    )
    app = create_app(config)
    try:
        uvicorn.run(app, host=config.host, port=config.port, timeout_graceful_shutdown=2)
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    main()

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from .markers import ShellKind, default_shell_kind, parse_shell_kind

ENV_PREFIX = "TERMINAL_GATEWAY_"


def _truthy(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _optional_int(raw: Any) -> Optional[int]:
    if raw is None or str(raw).strip().lower() in {"", "none", "null"}:
        return None
    return int(raw)


def _optional_float(raw: Any) -> Optional[float]:
    if raw is None or str(raw).strip().lower() in {"", "none", "null"}:
        return None
    return float(raw)


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None or str(raw).strip() == "":
        return None
    return os.path.expanduser(str(raw))


@dataclass(frozen=True)
class GatewayConfig:
    """Runtime settings for the gateway.

    Timings are in seconds. ``max_pending`` bounds the output held back while
    a command runs (``None`` keeps everything until the marker arrives).
    """

    host: str = "0.0.0.0"
    port: int = 5001
    shell_kind: ShellKind = default_shell_kind()
    cwd: Optional[str] = None
    cols: int = 80
    rows: int = 24
    term: str = "xterm-color"
    grace_period: float = 300.0
    idle_timeout: float = 300.0
    reap_interval: float = 60.0
    max_pending: Optional[int] = None
    backlog_limit: int = 1000
    scrub_markers: bool = True
    transcript_dir: Optional[str] = None
    exec_timeout: Optional[float] = None

    def resolved_cwd(self) -> str:
        target = Path(os.path.expanduser(self.cwd or "~")).resolve()
        return str(target)

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "GatewayConfig":
        """Defaults, then a YAML file, then environment, then ``overrides``."""
        env = os.environ if env is None else env
        values: Dict[str, Any] = {}

        path = path or env.get(f"{ENV_PREFIX}CONFIG")
        if path:
            values.update(_load_yaml(Path(os.path.expanduser(str(path)))))

        if env.get("PORT"):
            values["port"] = env["PORT"]
        for f in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_mapping(values)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GatewayConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown gateway config key(s): {', '.join(unknown)}")
        cfg = cls()
        coerced: Dict[str, Any] = {}
        for key, raw in data.items():
            coerced[key] = _coerce(key, raw)
        cfg = replace(cfg, **coerced)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.cols < 1 or self.rows < 1:
            raise ValueError("cols and rows must be positive")
        for name in ("grace_period", "idle_timeout", "reap_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_pending is not None and self.max_pending < 1:
            raise ValueError("max_pending must be positive when set")
        if self.backlog_limit < 1:
            raise ValueError("backlog_limit must be positive")


def _coerce(key: str, raw: Any) -> Any:
    if key == "shell_kind":
        return raw if isinstance(raw, ShellKind) else parse_shell_kind(raw)
    if key in ("port", "cols", "rows", "backlog_limit"):
        return int(raw)
    if key in ("grace_period", "idle_timeout", "reap_interval"):
        return float(raw)
    if key == "max_pending":
        return _optional_int(raw)
    if key == "exec_timeout":
        return _optional_float(raw)
    if key == "scrub_markers":
        return _truthy(raw)
    if key in ("cwd", "transcript_dir"):
        return _optional_str(raw)
    return str(raw)


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Allow the settings to live under a top-level `gateway:` key.
    if isinstance(data.get("gateway"), dict):
        data = data["gateway"]
    return {str(k).replace("-", "_"): v for k, v in data.items()}

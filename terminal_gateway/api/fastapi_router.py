from fastapi import APIRouter, Body, Depends, Header, HTTPException
from fastapi.responses import FileResponse
from pathlib import Path

from ..auth import check_token, get_secret
from ..errors import SessionNotFound
from ..executor import run_command
from ..gateway import SessionGateway
from .. import get_gateway as get_shared_gateway

router = APIRouter()


async def get_gateway_dep() -> SessionGateway:
    # Always use the package-level singleton so hosts can configure hooks once.
    return await get_shared_gateway()

async def require_auth(
    authorization: str = Header(None),
    x_gateway_key: str = Header(None, alias="X-Gateway-Key")
) -> None:
    """Require valid Bearer token or X-Gateway-Key for mutating endpoints."""
    secret = get_secret()

    # If no secret configured, skip auth (dev mode)
    if not secret:
        return

    token = None
    if x_gateway_key:
        token = x_gateway_key
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(403, "Missing auth token (X-Gateway-Key or Authorization header)")

    if not check_token(secret, token):
        raise HTTPException(403, "Invalid auth token")

@router.get("/api/sessions")
async def list_sessions(
    gateway: SessionGateway = Depends(get_gateway_dep)
):
    return {"ok": True, "data": [s.to_payload() for s in gateway.list_sessions()]}

@router.get("/api/sessions/{session_id}")
async def get_session(
    session_id: str,
    gateway: SessionGateway = Depends(get_gateway_dep)
):
    try:
        session = gateway.get_session(session_id)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")
    return {"ok": True, "data": await gateway.describe(session)}

@router.delete("/api/sessions/{session_id}")
async def remove_session(
    session_id: str,
    gateway: SessionGateway = Depends(get_gateway_dep),
    _: None = Depends(require_auth),
):
    """Kill a session's shell and forget it."""
    try:
        await gateway.remove_session(session_id)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")
    return {"ok": True}

@router.post("/api/sessions/reap")
async def reap_idle_sessions(
    gateway: SessionGateway = Depends(get_gateway_dep),
    _: None = Depends(require_auth),
):
    """Run an idle sweep now instead of waiting for the next period."""
    reaped = await gateway.reaper.sweep()
    return {"ok": True, "data": {"reaped": reaped}}

@router.get("/api/sessions/{session_id}/replay")
async def replay_transcript(
    session_id: str,
    gateway: SessionGateway = Depends(get_gateway_dep)
):
    """Serve the raw output transcript for a session, if transcripts are on."""
    try:
        session = gateway.get_session(session_id)
    except SessionNotFound:
        raise HTTPException(404, "Session not found")

    transcript = session.process.transcript_path if session.process else None
    if not transcript or not Path(transcript).exists():
        return {"ok": True, "content": ""}
    return FileResponse(transcript, media_type="text/plain")

@router.post("/api/execute-command")
async def execute_command(
    payload: dict = Body(...),
    gateway: SessionGateway = Depends(get_gateway_dep),
    _: None = Depends(require_auth),
):
    """Run one command to completion; no session is involved."""
    command = payload.get("command")
    if not command or not isinstance(command, str):
        raise HTTPException(400, "Command is required")
    env = payload.get("env") if isinstance(payload.get("env"), dict) else None
    result = await run_command(command, env=env, timeout=gateway.config.exec_timeout)
    return result.to_payload()

@router.post("/api/execute")
async def execute_legacy(
    payload: dict = Body(...),
    gateway: SessionGateway = Depends(get_gateway_dep),
    _: None = Depends(require_auth),
):
    """Older variant: stdout only, empty output when the command fails."""
    command = payload.get("command")
    if not command or not isinstance(command, str):
        raise HTTPException(400, "Command is required")
    result = await run_command(command, timeout=gateway.config.exec_timeout)
    return {"output": result.stdout if result.success else ""}

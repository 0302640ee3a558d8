import json
import logging
import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..auth import check_token, get_secret
from ..gateway import SessionGateway
from ..reconnect import reason_from_close_code
from .fastapi_router import get_gateway_dep

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketTransport:
    """Gateway transport backed by one FastAPI WebSocket connection."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.alive = True

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.alive:
            raise ConnectionError(f"transport {self.id} is closed")
        try:
            await self.websocket.send_json(message)
        except Exception:
            self.alive = False
            raise


def websocket_authorized(websocket: WebSocket) -> bool:
    """Same token rule as the REST mutations, read from a header or ``?token=``."""
    secret = get_secret()
    if not secret:
        return True
    token = websocket.headers.get("x-gateway-key") or websocket.query_params.get("token")
    return check_token(secret, token)


@router.websocket("/ws/terminal")
async def terminal_ws(websocket: WebSocket, gateway: SessionGateway = Depends(get_gateway_dep)):
    """Interactive terminal channel. One session per connection at a time."""
    if not websocket_authorized(websocket):
        logger.warning("Rejected terminal connection without a valid token")
        await websocket.close(code=1008)
        return
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    logger.info("Client connected (ID: %s)", transport.id)
    reason = "transport close"

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON frame from %s", transport.id)
                continue
            if not isinstance(message, dict):
                continue

            kind = message.get("type")
            if kind == "terminal-init":
                await gateway.attach(transport, message.get("session_id") or None)
            elif kind == "terminal-input":
                data = message.get("data")
                if isinstance(data, str):
                    await gateway.input(transport.id, data)
            elif kind == "terminal-resize":
                await gateway.resize(transport.id, message.get("cols"), message.get("rows"))
            elif kind == "terminal-logout":
                reason = "client logout"
                break
            else:
                logger.debug("Unknown message type %r from %s", kind, transport.id)
    except WebSocketDisconnect as exc:
        reason = reason_from_close_code(exc.code)
    except Exception:
        logger.exception("Terminal connection %s failed", transport.id)
        reason = "transport error"
    finally:
        transport.alive = False
        await gateway.detach(transport.id, reason)

    if reason == "client logout":
        await websocket.close()


@router.websocket("/ws/events")
async def gateway_events_ws(websocket: WebSocket, gateway: SessionGateway = Depends(get_gateway_dep)):
    """Stream all session lifecycle events."""
    await websocket.accept()
    bus = gateway.event_bus
    q = bus.subscribe()

    try:
        while True:
            event = await q.get()
            if event is None:
                logger.info("Event subscriber fell behind, closing stream")
                await websocket.close(code=1013)
                break
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        # Send on a half-closed socket; the subscriber is simply gone.
        logger.debug("Event stream closed: %s", exc)
    finally:
        bus.unsubscribe(q)

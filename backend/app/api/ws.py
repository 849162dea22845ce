"""WebSocket endpoint streaming call signals for a chat."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator

from fastapi import APIRouter, WebSocket, status
from fastapi.exceptions import HTTPException
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from zemicall.realtime.managers import get_call_signal_manager, safe_send_json

from app.api.deps import get_user_from_token, require_chat_member
from app.config import get_settings
from app.database import get_db_session
from app.models import User

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

KEEPALIVE_PING = {"type": "ping"}


class KeepaliveReceiver:
    """Iterates text frames from a socket, pinging the peer while it is quiet.

    Each receive waits at most ``timeout`` seconds. When it expires and nothing
    has been received or sent for ``interval`` seconds, a ping goes out.
    Iteration ends once the socket closes or a ping cannot be delivered.
    """

    def __init__(self, websocket: WebSocket, *, timeout: float | None, interval: float | None) -> None:
        self._websocket = websocket
        self._timeout = float(timeout or 0)
        self._interval = float(interval or 0)
        self._quiet_since = time.monotonic()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._frames()

    async def _receive(self) -> str:
        if self._timeout > 0:
            return await asyncio.wait_for(self._websocket.receive_text(), timeout=self._timeout)
        return await self._websocket.receive_text()

    async def _frames(self) -> AsyncIterator[str]:
        while True:
            try:
                frame = await self._receive()
            except asyncio.TimeoutError:
                if await self._ping_if_idle():
                    continue
                return
            except (RuntimeError, WebSocketDisconnect):
                return
            self._quiet_since = time.monotonic()
            yield frame

    async def _ping_if_idle(self) -> bool:
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return False
        now = time.monotonic()
        if now - self._quiet_since < self._interval:
            return True
        self._quiet_since = now
        return await safe_send_json(self._websocket, KEEPALIVE_PING)


async def _resolve_user(websocket: WebSocket) -> User | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return None

    try:
        with get_db_session() as db:
            return get_user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return None


def _is_ping(raw_message: str) -> bool:
    if raw_message.strip().lower() == "ping":
        return True
    try:
        payload = json.loads(raw_message)
    except json.JSONDecodeError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "ping"


@router.websocket("/calls/{chat_id}")
async def websocket_call_signals(websocket: WebSocket, chat_id: str) -> None:
    """Stream ``{"type": "signal", "signal": row}`` for every signal inserted in the chat."""

    user = await _resolve_user(websocket)
    if user is None:
        return

    with get_db_session() as db:
        try:
            require_chat_member(chat_id, user.id, db)
        except HTTPException:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Not a member of this chat")
            return

    signal_manager = get_call_signal_manager()
    await websocket.accept()
    await signal_manager.connect(chat_id, websocket)
    await safe_send_json(websocket, {"type": "subscribed", "chat_id": chat_id})
    logger.debug("User %s subscribed to call signals for chat %s", user.id, chat_id)

    try:
        async for raw_message in KeepaliveReceiver(
            websocket,
            timeout=settings.websocket_keepalive_timeout_seconds,
            interval=settings.websocket_keepalive_ping_interval_seconds,
        ):
            if raw_message and _is_ping(raw_message):
                await safe_send_json(websocket, {"type": "pong"})
    finally:
        await signal_manager.disconnect(chat_id, websocket)

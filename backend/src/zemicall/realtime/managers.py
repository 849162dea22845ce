"""Per-chat call signal fan-out backed by the realtime transport."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.config import get_settings

from .transport import (
    CALL_SIGNALS_TOPIC,
    BrokerConfig,
    RealtimeTransport,
    Subscription,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send *data*, returning ``False`` instead of raising once the socket is gone."""
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False
    return True


class ChatConnectionManager:
    """Call signal sockets open on this node, grouped by chat."""

    def __init__(self) -> None:
        self._sockets: defaultdict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, chat_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets[chat_id].add(websocket)

    async def disconnect(self, chat_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._discard(chat_id, websocket)

    def _discard(self, chat_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(chat_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[chat_id]

    def connection_count(self, chat_id: str) -> int:
        return len(self._sockets.get(chat_id, ()))

    def total_connections(self) -> int:
        return sum(len(sockets) for sockets in self._sockets.values())

    async def broadcast(self, chat_id: str, payload: dict[str, Any]) -> int:
        """Send *payload* to every socket of the chat; dead sockets are dropped."""

        delivered = 0
        for websocket in tuple(self._sockets.get(chat_id, ())):
            if await safe_send_json(websocket, payload):
                delivered += 1
                continue
            async with self._lock:
                self._discard(chat_id, websocket)
        return delivered


def signal_message(signal: dict[str, Any]) -> dict[str, Any]:
    return {"type": "signal", "signal": signal}


class CallSignalManager:
    """Deliver inserted call signal rows to every subscriber of their chat.

    Rows reach local sockets straight away and are published on the transport
    tagged with this node's ``origin``, so a node drops its own echo when the
    broker hands the message back.
    """

    def __init__(
        self,
        connection_manager: ChatConnectionManager,
        transport: RealtimeTransport,
        *,
        node_id: str,
        backend: str,
    ) -> None:
        self.connections = connection_manager
        self._transport = transport
        self._node_id = node_id
        self._backend = backend
        self._subscription: Subscription | None = None
        self._local_only = False

    @property
    def transport(self) -> RealtimeTransport:
        return self._transport

    async def start(self) -> None:
        try:
            self._subscription = await self._transport.subscribe(
                CALL_SIGNALS_TOPIC, self._on_remote, backend=self._backend
            )
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; call signals will be limited to this instance",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    async def connect(self, chat_id: str, websocket: WebSocket) -> None:
        await self.connections.connect(chat_id, websocket)

    async def disconnect(self, chat_id: str, websocket: WebSocket) -> None:
        await self.connections.disconnect(chat_id, websocket)

    async def _on_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        signal = message.get("signal")
        if isinstance(signal, dict) and signal.get("chat_id"):
            await self.connections.broadcast(str(signal["chat_id"]), signal_message(signal))

    async def publish(self, signal: dict[str, Any]) -> int:
        """Fan one serialized signal row out; returns the number of local deliveries."""

        chat_id = str(signal["chat_id"])
        delivered = await self.connections.broadcast(chat_id, signal_message(signal))
        try:
            await self._transport.publish(
                CALL_SIGNALS_TOPIC,
                {"origin": self._node_id, "signal": signal},
                backend=self._backend,
            )
        except TransportUnavailableError:
            if not self._local_only:
                logger.warning(
                    "Realtime backend unavailable while broadcasting a call signal; operating in local-only mode",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
            self._local_only = True
        except Exception:
            logger.exception("Unexpected error while broadcasting call signal for chat %s", chat_id)
        else:
            if self._local_only:
                logger.info("Realtime backend reachable again; call signals are shared across nodes")
            self._local_only = False
        return delivered


def build_call_signal_manager(
    *,
    redis_url: str | None,
    namespace: str,
    node_id: str | None = None,
) -> CallSignalManager:
    node = node_id or uuid.uuid4().hex
    transport = RealtimeTransport(BrokerConfig(redis_url=redis_url, redis_prefix=namespace, node_id=node))
    return CallSignalManager(
        ChatConnectionManager(),
        transport,
        node_id=node,
        backend=transport.default_backend,
    )


_settings = get_settings()
call_signal_manager = build_call_signal_manager(
    redis_url=_settings.realtime_redis_url,
    namespace=_settings.realtime_namespace,
    node_id=_settings.realtime_node_id,
)


async def startup_realtime() -> None:
    try:
        await call_signal_manager.transport.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    await call_signal_manager.start()


async def shutdown_realtime() -> None:
    await call_signal_manager.stop()
    await call_signal_manager.transport.stop()


def get_call_signal_manager() -> CallSignalManager:
    return call_signal_manager


__all__ = [
    "CallSignalManager",
    "ChatConnectionManager",
    "build_call_signal_manager",
    "get_call_signal_manager",
    "safe_send_json",
    "shutdown_realtime",
    "startup_realtime",
]

"""WebSocket feed delivering call signal rows per chat."""

from __future__ import annotations

import asyncio
import json
import logging
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from ..calls.ports import SignalHandler
from ..calls.types import CallSignal
from ..realtime.transport import Subscription

logger = logging.getLogger(__name__)

_RECONNECT_BASE_DELAY = 0.5
_RECONNECT_MAX_DELAY = 15.0


def _ws_base(base_url: str) -> str:
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


class SignalFeed:
    """Opens one ``/ws/calls/{chat_id}`` connection per watched chat.

    Connections are re-established with exponential backoff until the
    subscription is closed. Rows are decoded into :class:`CallSignal` before
    reaching the handler; malformed rows are logged and dropped.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        open_timeout: float = 10.0,
        ping_interval: float | None = 20.0,
    ) -> None:
        self._base = _ws_base(base_url)
        self._access_token = access_token
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval
        self._subscriptions: set[Subscription] = set()

    def url_for(self, chat_id: str) -> str:
        return f"{self._base}/ws/calls/{chat_id}?{urlencode({'token': self._access_token})}"

    async def subscribe(self, chat_id: str, handler: SignalHandler) -> Subscription:
        url = self.url_for(chat_id)
        task = asyncio.create_task(self._run(chat_id, url, handler), name=f"call-signals-{chat_id}")

        async def cleanup() -> None:
            self._subscriptions.discard(subscription)

        subscription = Subscription(chat_id, cleanup, task)
        self._subscriptions.add(subscription)
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.close()

    async def _run(self, chat_id: str, url: str, handler: SignalHandler) -> None:
        attempt = 0
        while True:
            try:
                async with websockets.connect(
                    url,
                    open_timeout=self._open_timeout,
                    ping_interval=self._ping_interval,
                ) as websocket:
                    attempt = 0
                    logger.debug("Call signal feed connected", extra={"chat_id": chat_id})
                    async for message in websocket:
                        await self._dispatch(chat_id, message, handler)
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.WebSocketException) as exc:
                logger.warning(
                    "Call signal feed disconnected: %s",
                    exc,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                    extra={"chat_id": chat_id},
                )
            delay = min(_RECONNECT_BASE_DELAY * (2**attempt), _RECONNECT_MAX_DELAY)
            attempt += 1
            await asyncio.sleep(delay)

    async def _dispatch(self, chat_id: str, message: str | bytes, handler: SignalHandler) -> None:
        try:
            payload = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("Discarded malformed call signal payload", extra={"chat_id": chat_id})
            return
        if not isinstance(payload, dict) or payload.get("type") != "signal":
            return
        row = payload.get("signal")
        try:
            if not isinstance(row, dict):
                raise ValueError("Signal row is not an object")
            signal = CallSignal.from_payload(row)
        except ValueError:
            logger.warning("Discarded malformed call signal row", extra={"chat_id": chat_id})
            return
        await handler(signal)

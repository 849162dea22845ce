"""Pub/sub transport that fans call signals out across service nodes.

Two backends exist. ``redis`` publishes JSON payloads on namespaced Redis
channels and reconnects with exponential backoff when the connection drops.
``local`` hands payloads straight to handlers registered in this process,
which is what single node deployments and the test suite use.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

REDIS_BACKEND = "redis"
LOCAL_BACKEND = "local"
CALL_SIGNALS_TOPIC = "call-signals"

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)
_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0


@dataclass(slots=True)
class BrokerConfig:
    """Where call signals travel between nodes. ``redis_url=None`` keeps them local."""

    redis_url: str | None
    redis_prefix: str = "zemicall.realtime"
    node_id: str | None = None

    def channel_for(self, topic: str) -> str:
        prefix = self.redis_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic


class TransportUnavailableError(RuntimeError):
    """Raised when the requested backend is not configured or not reachable."""


class Subscription:
    """Handle for one registered handler; closing it stops delivery."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    def bind_task(self, task: asyncio.Task[Any] | None) -> None:
        self._task = task

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._cleanup()


class _LocalBroker:
    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        for handler in tuple(self._handlers.get(topic, ())):
            try:
                await handler(payload)
            except Exception:
                logger.exception("Local realtime handler failed", extra={"topic": topic})

    def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        self._handlers[topic].append(handler)

        async def remove() -> None:
            handlers = self._handlers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(topic, None)

        return Subscription(topic, remove)

    def clear(self) -> None:
        self._handlers.clear()


@dataclass(slots=True, eq=False)
class _RedisListener:
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    pubsub: Any | None = None
    reader: asyncio.Task[Any] | None = None
    closed: bool = False


class _RedisBroker:
    """Redis pub/sub with one reader task per listener.

    A reader that stops on its own means the connection is gone: the whole
    client is rebuilt and every open listener is re-attached.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._client: Any | None = None
        self._listeners: list[_RedisListener] = []
        self._lock = asyncio.Lock()
        self._recovery: asyncio.Task[Any] | None = None

    @property
    def recovering(self) -> bool:
        return self._recovery is not None and not self._recovery.done()

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except (OSError, RedisError) as exc:
            logger.exception("Failed to connect to Redis realtime backend")
            with contextlib.suppress(Exception):
                await client.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        self._client = client

    async def close(self) -> None:
        for listener in list(self._listeners):
            if listener.subscription is not None:
                await listener.subscription.close()
        self._listeners.clear()
        if self._recovery is not None:
            self._recovery.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery
            self._recovery = None
        await self._drop_client()

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        client = await self._ensure_client()
        channel = self._config.channel_for(topic)
        try:
            await client.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self.schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload via Redis", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        await self._ensure_client()
        listener = _RedisListener(self._config.channel_for(topic), handler)

        async def remove() -> None:
            listener.closed = True
            await self._detach(listener)
            if listener in self._listeners:
                self._listeners.remove(listener)

        listener.subscription = Subscription(listener.channel, remove)
        self._listeners.append(listener)
        try:
            await self._attach(listener)
        except TransportUnavailableError:
            await listener.subscription.close()
            self.schedule_recovery("subscribe_failed")
            raise
        return listener.subscription

    def schedule_recovery(self, reason: str) -> None:
        if self.recovering:
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery = asyncio.create_task(self._recover(reason), name="realtime-redis-recovery")

    async def _ensure_client(self) -> Any:
        if self._client is None:
            if self.recovering:
                raise TransportUnavailableError("Redis backend is reconnecting")
            await self.connect()
        return self._client

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            with contextlib.suppress(Exception):
                await client.close()

    async def _attach(self, listener: _RedisListener) -> None:
        if self._client is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(listener.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        listener.pubsub = pubsub
        reader = asyncio.create_task(
            self._read(listener, pubsub), name=f"realtime-redis-{listener.channel}"
        )
        listener.reader = reader
        if listener.subscription is not None:
            listener.subscription.bind_task(reader)
        reader.add_done_callback(lambda task: self._reader_finished(listener, task))

    async def _detach(self, listener: _RedisListener) -> None:
        reader, listener.reader = listener.reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        pubsub, listener.pubsub = listener.pubsub, None
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(listener.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()

    async def _read(self, listener: _RedisListener, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                raw = message.get("data")
                if message.get("type") != "message" or not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(
                        "Discarded malformed realtime payload", extra={"channel": listener.channel}
                    )
                    continue
                try:
                    await listener.handler(payload)
                except Exception:
                    logger.exception("Redis realtime handler failed", extra={"channel": listener.channel})
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(listener.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()

    def _reader_finished(self, listener: _RedisListener, task: asyncio.Task[Any]) -> None:
        if listener.reader is task:
            listener.reader = None
            listener.pubsub = None
        if listener.closed or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis subscription reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": listener.channel},
            )
        else:
            logger.warning(
                "Redis subscription reader exited unexpectedly; scheduling recovery",
                extra={"channel": listener.channel},
            )
        self.schedule_recovery("reader_stopped")

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(
                min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY)
            )
            try:
                await self._reconnect()
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            logger.info(
                "Redis realtime backend recovered",
                extra={"reason": reason, "subscriptions": len(self._listeners)},
            )
            return

    async def _reconnect(self) -> None:
        async with self._lock:
            for listener in list(self._listeners):
                await self._detach(listener)
            await self._drop_client()
            await self.connect()
            for listener in list(self._listeners):
                if not listener.closed:
                    await self._attach(listener)


class RealtimeTransport:
    """Topic pub/sub over Redis, or in-process when Redis is not configured.

    ``backend`` on :meth:`publish` and :meth:`subscribe` overrides
    :attr:`default_backend`; asking for an unconfigured or unknown backend
    raises :class:`TransportUnavailableError`.
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._local = _LocalBroker()
        self._redis = _RedisBroker(config) if config.redis_url else None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def default_backend(self) -> str:
        return REDIS_BACKEND if self._redis is not None else LOCAL_BACKEND

    async def start(self) -> None:
        if self._redis is not None:
            await self._redis.connect()

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.close()
        self._local.clear()

    async def publish(
        self,
        topic: str,
        payload: dict[str, Any],
        *,
        backend: str | None = None,
    ) -> None:
        target = backend or self.default_backend
        if target == LOCAL_BACKEND:
            await self._local.publish(topic, payload)
            return
        await self._redis_for(target).publish(topic, payload)

    async def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        backend: str | None = None,
    ) -> Subscription:
        target = backend or self.default_backend
        if target == LOCAL_BACKEND:
            return self._local.subscribe(topic, handler)
        return await self._redis_for(target).subscribe(topic, handler)

    def _redis_for(self, target: str) -> _RedisBroker:
        if target != REDIS_BACKEND:
            raise TransportUnavailableError(f"Unsupported backend '{target}'")
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        return self._redis


__all__ = [
    "BrokerConfig",
    "CALL_SIGNALS_TOPIC",
    "LOCAL_BACKEND",
    "MessageHandler",
    "REDIS_BACKEND",
    "RealtimeTransport",
    "Subscription",
    "TransportUnavailableError",
]

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from chatserver.core.config import Settings
from chatserver.utils.websocket_manager import ConnectionRegistry


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


class _NoopSubscription:

    async def run(self) -> None:
        # nothing arrives without a bus; park until cancelled
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class _RedisSubscription:
    """Reads one pub/sub channel and hands each payload to `on_message` until cancelled."""

    def __init__(self, pubsub: Any, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError:
                logger.warning("Redis subscription on %s failed; retrying", self._channel, exc_info=True)
                await asyncio.sleep(0.5)
                continue
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                await self._on_message(data)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError:
            logger.debug("Ignoring error while closing subscription on %s", self._channel)


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: OnMessage) -> _NoopSubscription:
        return _NoopSubscription()

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> _RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


def create_bus(settings: Settings):
    if not settings.redis_url:
        return NoopBus()
    logger.info("Cross-process fan-out enabled on channel %s", settings.redis_channel)
    return RedisBus(settings.redis_url)


class RoomBroadcaster:
    """
    Single entry point for emitting a frame to a room.

    Without a bus the frame goes straight to this process's registry. With a
    Redis bus every emit is published once and each process, this one
    included, delivers it to its own local connections.
    """

    def __init__(self, registry: ConnectionRegistry, bus: Any, channel: str = "chat:rooms") -> None:
        self._registry = registry
        self._bus = bus
        self._channel = channel
        self._subscription = None
        self._task: Optional[asyncio.Task] = None

    async def emit(self, room: str, frame: Dict[str, Any], exclude_connection_id: Optional[str] = None) -> None:
        if not self._bus.enabled:
            self._registry.emit_to_room(room, frame, exclude_connection_id)
            return
        envelope = json.dumps({"room": room, "frame": frame, "exclude": exclude_connection_id})
        try:
            await self._bus.publish(self._channel, envelope)
        except RedisError:
            # keep local recipients served while Redis is unavailable
            logger.error("Publishing to %s failed; delivering locally only", room, exc_info=True)
            self._registry.emit_to_room(room, frame, exclude_connection_id)

    async def handle_bus_message(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
            room, frame = envelope["room"], envelope["frame"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed bus envelope")
            return
        self._registry.emit_to_room(room, frame, envelope.get("exclude"))

    async def start(self) -> None:
        if not self._bus.enabled or self._task is not None:
            return
        self._subscription = await self._bus.subscribe(self._channel, self.handle_bus_message)
        self._task = asyncio.create_task(self._subscription.run())

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.cancel()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._subscription = None
        self._task = None

"""Same-device session notifications.

Broadcasters announce ``START`` (with the session key) and ``STOP`` to every
other client instance on the device. One versioned JSON schema is used on
every channel:

    {"v": 1, "type": "START", "key": "482913", "origin": "inst-..."}
    {"v": 1, "type": "STOP", "origin": "inst-..."}

Channels may deliver a message more than once; subscribers must treat a
repeated ``START`` for the same key as a no-op.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from src.common.types import NotificationPayload

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

type PayloadHandler = Callable[[NotificationPayload], Awaitable[None]]


class SessionStartEvent(BaseModel):
    """Broadcast started under ``key``."""

    v: Literal[1] = SCHEMA_VERSION
    type: Literal["START"] = "START"
    key: str = Field(..., min_length=1, description="Session key to dial")
    origin: str = Field(default="", description="Publishing instance id")


class SessionStopEvent(BaseModel):
    """Broadcast stopped."""

    v: Literal[1] = SCHEMA_VERSION
    type: Literal["STOP"] = "STOP"
    origin: str = Field(default="", description="Publishing instance id")


SessionEvent = Annotated[SessionStartEvent | SessionStopEvent, Field(discriminator="type")]

_event_adapter: TypeAdapter[SessionStartEvent | SessionStopEvent] = TypeAdapter(SessionEvent)

type SessionEventHandler = Callable[[SessionStartEvent | SessionStopEvent], Awaitable[None]]


def parse_event(payload: NotificationPayload) -> SessionStartEvent | SessionStopEvent | None:
    """Decode a channel payload, returning None for anything off-schema."""
    try:
        return _event_adapter.validate_json(payload)
    except ValidationError as e:
        logger.warning(
            "Dropping malformed session notification",
            extra={"payload": payload[:200], "error": str(e)},
        )
        return None


class NotificationChannel(ABC):
    """Publish/subscribe channel carrying serialized notifications."""

    @abstractmethod
    async def publish(self, payload: NotificationPayload) -> bool:
        """Send a payload to the other instances on the channel.

        Returns:
            True if the channel accepted the payload
        """
        pass

    @abstractmethod
    def subscribe(self, handler: PayloadHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unregisters it."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release resources."""
        pass


class _DispatchingChannel(NotificationChannel):
    """Channel base that delivers payloads to handlers from an inbox task.

    Payloads are handed to handlers strictly in arrival order; a failing
    handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: list[PayloadHandler] = []
        self._inbox: asyncio.Queue[NotificationPayload] = asyncio.Queue()
        self._dispatch_task: asyncio.Task[None] | None = None
        self._closed = False

    def subscribe(self, handler: PayloadHandler) -> Callable[[], None]:
        self._handlers.append(handler)
        if self._dispatch_task is None:
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _deliver(self, payload: NotificationPayload) -> None:
        if not self._closed:
            self._inbox.put_nowait(payload)

    async def _dispatch_loop(self) -> None:
        while True:
            payload = await self._inbox.get()
            try:
                for handler in list(self._handlers):
                    try:
                        await handler(payload)
                    except Exception:
                        logger.exception("Notification handler failed")
            finally:
                self._inbox.task_done()

    async def join(self) -> None:
        """Wait until every payload delivered so far has been handled."""
        await self._inbox.join()

    async def close(self) -> None:
        self._closed = True
        self._handlers.clear()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None


class LocalChannelBus:
    """In-process registry of named channels (one per device process)."""

    def __init__(self) -> None:
        self._members: dict[str, list["LocalNotificationChannel"]] = {}

    def open(self, name: str) -> "LocalNotificationChannel":
        """Open a new channel instance on ``name``."""
        channel = LocalNotificationChannel(name, self)
        self._members.setdefault(name, []).append(channel)
        return channel

    def _detach(self, channel: "LocalNotificationChannel") -> None:
        members = self._members.get(channel.name, [])
        if channel in members:
            members.remove(channel)

    def _fan_out(self, sender: "LocalNotificationChannel", payload: NotificationPayload) -> int:
        receivers = [m for m in self._members.get(sender.name, []) if m is not sender]
        for member in receivers:
            member._deliver(payload)
        return len(receivers)


default_bus = LocalChannelBus()


class LocalNotificationChannel(_DispatchingChannel):
    """Named in-process channel; a publisher never receives its own message."""

    def __init__(self, name: str, bus: LocalChannelBus) -> None:
        super().__init__()
        self.name = name
        self._bus = bus

    async def publish(self, payload: NotificationPayload) -> bool:
        if self._closed:
            return False
        self._bus._fan_out(self, payload)
        return True

    async def close(self) -> None:
        self._bus._detach(self)
        await super().close()


class RedisNotificationChannel(_DispatchingChannel):
    """Channel on Redis pub/sub, for client processes sharing a local Redis.

    Redis echoes a publisher's own messages back to it; the session notifier
    filters those by origin.
    """

    def __init__(self, redis_url: str, channel: str, db: int = 0) -> None:
        """Initialize Redis channel.

        Args:
            redis_url: Redis connection URL
            channel: Pub/sub channel name
            db: Redis database number
        """
        super().__init__()
        self.redis_url = redis_url
        self.channel = channel
        self.db = db
        self._redis: Any = None
        self._pubsub: Any = None
        self._listen_task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        """Connect and start listening. Idempotent.

        Raises:
            ConnectionError: If Redis is unreachable
        """
        if self._listen_task is not None:
            return

        try:
            self._redis = aioredis.from_url(self.redis_url, db=self.db, decode_responses=True)
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self.channel)
        except (RedisError, OSError) as e:
            logger.error(f"Failed to subscribe to Redis channel {self.channel}: {e}")
            raise ConnectionError(f"Redis subscription failed: {e}") from e

        self._listen_task = asyncio.create_task(self._listen_loop())
        logger.info("Subscribed to Redis notification channel", extra={"channel": self.channel})

    async def _listen_loop(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") == "message":
                    self._deliver(message["data"])
        except (RedisError, OSError) as e:
            logger.error(
                "Redis notification listener stopped",
                extra={"channel": self.channel, "error": str(e)},
            )

    async def publish(self, payload: NotificationPayload) -> bool:
        if self._closed:
            return False
        try:
            await self.connect()
            await self._redis.publish(self.channel, payload)
            return True
        except (RedisError, OSError, ConnectionError) as e:
            logger.warning(
                "Failed to publish notification",
                extra={"channel": self.channel, "error": str(e)},
            )
            return False

    async def close(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None

        try:
            if self._pubsub is not None:
                await self._pubsub.unsubscribe(self.channel)
                await self._pubsub.aclose()
            if self._redis is not None:
                await self._redis.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error during Redis channel close: {e}")

        await super().close()


class SessionNotifier:
    """Typed session events over a notification channel."""

    def __init__(self, channel: NotificationChannel, origin: str | None = None) -> None:
        """Initialize notifier.

        Args:
            channel: Underlying same-device channel
            origin: Identifier of this client instance (generated if omitted)
        """
        self.channel = channel
        self.origin = origin or f"inst-{uuid.uuid4().hex[:12]}"

    async def publish_start(self, key: str) -> bool:
        """Announce that a broadcast started under ``key``."""
        return await self.publish(SessionStartEvent(key=key, origin=self.origin))

    async def publish_stop(self) -> bool:
        """Announce that the broadcast stopped."""
        return await self.publish(SessionStopEvent(origin=self.origin))

    async def publish(self, event: SessionStartEvent | SessionStopEvent) -> bool:
        """Serialize and publish an event."""
        delivered = await self.channel.publish(event.model_dump_json())
        logger.info(
            "Session notification published",
            extra={"type": event.type, "origin": self.origin, "delivered": delivered},
        )
        return delivered

    def subscribe(self, handler: SessionEventHandler) -> Callable[[], None]:
        """Receive events published by other instances.

        Args:
            handler: Async callback receiving each decoded event

        Returns:
            Callable that removes the subscription
        """

        async def on_payload(payload: NotificationPayload) -> None:
            event = parse_event(payload)
            if event is None or event.origin == self.origin:
                return
            await handler(event)

        return self.channel.subscribe(on_payload)

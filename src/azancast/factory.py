"""Client assembly from configuration.

Builds the key store, notification channel, media transport, audio capture
and sink selected by ``AppConfig`` and wires them into a ``SessionController``.
"""

import logging

from src.azancast.audio.capture import AudioCapture, SoundDeviceCapture, ToneCapture
from src.azancast.audio.sink import AudioSink, MemorySink, SoundDeviceSink
from src.azancast.auth import AuthorizationManager
from src.azancast.config import AppConfig
from src.azancast.controller import SessionController
from src.azancast.errors import StorageUnavailableError
from src.azancast.keystore import (
    JsonFileKeyValueStore,
    KeyStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
)
from src.azancast.notifier import (
    LocalChannelBus,
    NotificationChannel,
    RedisNotificationChannel,
    SessionNotifier,
    default_bus,
)
from src.azancast.orchestrator import CallOrchestrator
from src.azancast.transport.base import MediaTransport
from src.azancast.transport.local import LocalMediaTransport, LocalTransportHub, default_hub
from src.azancast.transport.websocket_transport import WebSocketMediaTransport

logger = logging.getLogger(__name__)


def _device(value: str | None) -> str | int | None:
    if value is not None and value.isdigit():
        return int(value)
    return value


class AzancastClient:
    """One client instance (broadcaster or listener) and its collaborators.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: AppConfig,
        hub: LocalTransportHub | None = None,
        bus: LocalChannelBus | None = None,
    ) -> None:
        """Initialize client.

        Args:
            config: Application configuration
            hub: Local transport namespace (local transport backend only)
            bus: Local notification bus (local notification backend only)
        """
        self.config = config
        self._hub = hub or default_hub
        self._bus = bus or default_bus

        self.backend: KeyValueStore = self._create_backend()
        self.key_store = KeyStore(self.backend, key_prefix=config.storage.key_prefix)
        self.channel: NotificationChannel = self._create_channel()
        self.transport: MediaTransport = self._create_transport()
        self.capture: AudioCapture = self._create_capture()
        self.sink: AudioSink = self._create_sink()

        self.auth = AuthorizationManager(
            self.key_store,
            broadcast_secret=config.auth.broadcast_secret,
            session_key_digits=config.auth.session_key_digits,
        )
        self.notifier = SessionNotifier(self.channel)
        self.orchestrator = CallOrchestrator(self.transport, self.capture, self.sink)
        self.controller = SessionController(self.auth, self.notifier, self.orchestrator)

        logger.info(
            "Client initialized",
            extra={
                "storage": config.storage.backend,
                "notifications": config.notifications.backend,
                "transport": config.transport.backend,
                "capture": config.audio.capture,
                "sink": config.audio.sink,
            },
        )

    async def initialize(self) -> None:
        """Connect external backends and open the session controller.

        A Redis store that cannot be reached leaves the client running
        without persistence.
        """
        if isinstance(self.backend, RedisKeyValueStore):
            try:
                await self.backend.connect()
            except StorageUnavailableError as e:
                logger.warning("Key store not connected, continuing without persistence", extra={"error": str(e)})

        if isinstance(self.channel, RedisNotificationChannel):
            try:
                await self.channel.connect()
            except ConnectionError as e:
                logger.warning("Notifications unavailable, sessions will not auto-join", extra={"error": str(e)})

        await self.controller.open()
        logger.info("Client ready", extra={"origin": self.notifier.origin})

    async def shutdown(self) -> None:
        """Stop the session and release every backend."""
        logger.info("Shutting down client...")
        await self.controller.close()
        await self.channel.close()
        if isinstance(self.backend, RedisKeyValueStore):
            await self.backend.disconnect()
        logger.info("Client shutdown complete")

    def _create_backend(self) -> KeyValueStore:
        storage = self.config.storage
        if storage.backend == "file":
            return JsonFileKeyValueStore(storage.path)
        if storage.backend == "redis":
            redis = self.config.redis
            return RedisKeyValueStore(
                redis_url=redis.url,
                db=redis.db,
                connection_pool_size=redis.connection_pool_size,
            )
        return MemoryKeyValueStore()

    def _create_channel(self) -> NotificationChannel:
        notifications = self.config.notifications
        if notifications.backend == "redis":
            return RedisNotificationChannel(
                redis_url=self.config.redis.url,
                channel=notifications.channel,
                db=self.config.redis.db,
            )
        return self._bus.open(notifications.channel)

    def _create_transport(self) -> MediaTransport:
        transport = self.config.transport
        if transport.backend == "websocket":
            return WebSocketMediaTransport(
                relay_url=transport.relay_url,
                call_timeout_s=transport.call_timeout_s,
            )
        return LocalMediaTransport(self._hub)

    def _create_capture(self) -> AudioCapture:
        audio = self.config.audio
        if audio.capture == "tone":
            return ToneCapture(frequency_hz=audio.tone_hz)
        return SoundDeviceCapture(device=_device(audio.input_device))

    def _create_sink(self) -> AudioSink:
        audio = self.config.audio
        if audio.sink == "memory":
            return MemorySink(autoplay=audio.autoplay)
        return SoundDeviceSink(autoplay=audio.autoplay, device=_device(audio.output_device))

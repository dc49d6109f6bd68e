"""Unit tests for client assembly from configuration."""

from pathlib import Path

import pytest

from src.azancast.audio.capture import SoundDeviceCapture, ToneCapture
from src.azancast.audio.sink import MemorySink, SoundDeviceSink
from src.azancast.config import AppConfig
from src.azancast.factory import AzancastClient
from src.azancast.keystore import JsonFileKeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from src.azancast.models import Role, SessionState
from src.azancast.notifier import LocalChannelBus, RedisNotificationChannel
from src.azancast.transport.local import LocalMediaTransport, LocalTransportHub
from src.azancast.transport.websocket_transport import WebSocketMediaTransport


def headless_config(tmp_path: Path) -> AppConfig:
    return AppConfig.model_validate(
        {
            "storage": {"backend": "file", "path": str(tmp_path / "state.json")},
            "transport": {"backend": "local"},
            "audio": {"capture": "tone", "sink": "memory"},
        }
    )


class TestComponentSelection:
    """Test backends are chosen from configuration."""

    def test_defaults(self) -> None:
        """Test default config selects file, websocket and sounddevice."""
        client = AzancastClient(AppConfig(), hub=LocalTransportHub(), bus=LocalChannelBus())

        assert isinstance(client.backend, JsonFileKeyValueStore)
        assert isinstance(client.transport, WebSocketMediaTransport)
        assert isinstance(client.capture, SoundDeviceCapture)
        assert isinstance(client.sink, SoundDeviceSink)
        assert client.key_store.key_prefix == "azancast:"

    def test_headless(self, tmp_path: Path) -> None:
        """Test local transport, tone capture and memory sink."""
        client = AzancastClient(headless_config(tmp_path), hub=LocalTransportHub())

        assert isinstance(client.transport, LocalMediaTransport)
        assert isinstance(client.capture, ToneCapture)
        assert isinstance(client.sink, MemorySink)

    def test_redis_backends(self) -> None:
        """Test redis storage and notifications share the redis settings."""
        config = AppConfig.model_validate(
            {
                "redis": {"url": "redis://cache:6380", "db": 2},
                "storage": {"backend": "redis"},
                "notifications": {"backend": "redis", "channel": "mosque-1"},
            }
        )
        client = AzancastClient(config)

        assert isinstance(client.backend, RedisKeyValueStore)
        assert client.backend.redis_url == "redis://cache:6380"
        assert isinstance(client.channel, RedisNotificationChannel)
        assert client.channel.channel == "mosque-1"
        assert client.channel.db == 2

    def test_memory_storage(self) -> None:
        """Test the memory backend."""
        config = AppConfig.model_validate({"storage": {"backend": "memory"}})
        assert isinstance(AzancastClient(config).backend, MemoryKeyValueStore)

    @pytest.mark.parametrize(("value", "expected"), [("3", 3), ("USB Mic", "USB Mic"), (None, None)])
    def test_device_selection(self, value: str | None, expected: str | int | None) -> None:
        """Test numeric device names become PortAudio indices."""
        config = AppConfig.model_validate({"audio": {"input_device": value, "output_device": value}})
        client = AzancastClient(config)

        assert isinstance(client.capture, SoundDeviceCapture)
        assert client.capture.device == expected
        assert isinstance(client.sink, SoundDeviceSink)
        assert client.sink.device == expected


class TestLifecycle:
    """Test initialize/shutdown of a headless client pair."""

    async def test_broadcaster_and_restored_listener(self, tmp_path: Path) -> None:
        """Test a listener restored from the shared state file joins a broadcast."""
        hub = LocalTransportHub()
        bus = LocalChannelBus()
        config = headless_config(tmp_path)

        first = AzancastClient(config, hub=hub, bus=bus)
        await first.initialize()
        key = await first.controller.submit_broadcaster_secret("1234")
        await first.auth.authorize_listener(key, key)
        await first.shutdown()

        broadcaster = AzancastClient(config, hub=hub, bus=bus)
        listener = AzancastClient(config, hub=hub, bus=bus)
        await broadcaster.initialize()
        await listener.initialize()

        assert listener.controller.snapshot.role is Role.LISTENER
        assert listener.controller.snapshot.session_key == key

        assert await broadcaster.controller.submit_broadcaster_secret("1234") == key
        await broadcaster.controller.start_broadcast()
        for _ in range(3):
            await broadcaster.orchestrator.settle()
            await listener.channel.join()  # type: ignore[attr-defined]
            await listener.orchestrator.settle()

        assert listener.controller.snapshot.state is SessionState.ACTIVE

        await broadcaster.controller.stop_broadcast()
        await listener.channel.join()  # type: ignore[attr-defined]
        await listener.orchestrator.settle()

        assert listener.controller.snapshot.state is SessionState.IDLE

        await listener.shutdown()
        await broadcaster.shutdown()

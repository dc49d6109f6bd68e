"""Unit tests for session notifications."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.azancast.notifier import (
    LocalChannelBus,
    RedisNotificationChannel,
    SessionNotifier,
    SessionStartEvent,
    SessionStopEvent,
    parse_event,
)


class TestSchema:
    """Test the versioned JSON schema."""

    def test_start_serialization(self) -> None:
        """Test START carries version, type, key and origin."""
        event = SessionStartEvent(key="482913", origin="inst-a")
        assert json.loads(event.model_dump_json()) == {
            "v": 1,
            "type": "START",
            "key": "482913",
            "origin": "inst-a",
        }

    def test_stop_serialization(self) -> None:
        """Test STOP has no key."""
        data = json.loads(SessionStopEvent(origin="inst-a").model_dump_json())
        assert data == {"v": 1, "type": "STOP", "origin": "inst-a"}

    def test_parse_start(self) -> None:
        """Test a START payload is decoded."""
        event = parse_event('{"v": 1, "type": "START", "key": "000042"}')
        assert isinstance(event, SessionStartEvent)
        assert event.key == "000042"

    def test_parse_stop(self) -> None:
        """Test a STOP payload is decoded."""
        assert isinstance(parse_event('{"v": 1, "type": "STOP"}'), SessionStopEvent)

    @pytest.mark.parametrize(
        "payload",
        [
            "AZAN_START",
            "AZAN_STOP",
            "not json",
            '{"v": 2, "type": "START", "key": "482913"}',
            '{"v": 1, "type": "START"}',
            '{"v": 1, "type": "START", "key": ""}',
            '{"v": 1, "type": "PAUSE"}',
        ],
    )
    def test_parse_rejects_off_schema(self, payload: str) -> None:
        """Test legacy bare strings and malformed payloads are dropped."""
        assert parse_event(payload) is None


class TestLocalChannel:
    """Test in-process channel delivery."""

    async def test_fan_out_excludes_sender(self) -> None:
        """Test every other member receives a payload, the sender does not."""
        bus = LocalChannelBus()
        sender = bus.open("azan-notify")
        first = bus.open("azan-notify")
        second = bus.open("azan-notify")
        other_name = bus.open("elsewhere")

        received: dict[str, list[str]] = {"sender": [], "first": [], "second": [], "other": []}
        for name, channel in (
            ("sender", sender),
            ("first", first),
            ("second", second),
            ("other", other_name),
        ):
            channel.subscribe(AsyncMock(side_effect=received[name].append))

        assert await sender.publish("hello") is True
        for channel in (sender, first, second, other_name):
            await channel.join()

        assert received == {"sender": [], "first": ["hello"], "second": ["hello"], "other": []}

        for channel in (sender, first, second, other_name):
            await channel.close()

    async def test_delivery_order(self) -> None:
        """Test payloads arrive in publish order."""
        bus = LocalChannelBus()
        sender = bus.open("azan-notify")
        receiver = bus.open("azan-notify")
        received: list[str] = []
        receiver.subscribe(AsyncMock(side_effect=received.append))

        for payload in ("a", "b", "c"):
            await sender.publish(payload)
        await receiver.join()

        assert received == ["a", "b", "c"]
        await sender.close()
        await receiver.close()

    async def test_failing_handler_does_not_stop_delivery(self) -> None:
        """Test one failing handler does not block the next."""
        bus = LocalChannelBus()
        sender = bus.open("azan-notify")
        receiver = bus.open("azan-notify")
        good = AsyncMock()
        receiver.subscribe(AsyncMock(side_effect=RuntimeError("boom")))
        receiver.subscribe(good)

        await sender.publish("x")
        await sender.publish("y")
        await receiver.join()

        assert good.await_count == 2
        await sender.close()
        await receiver.close()

    async def test_closed_channel(self) -> None:
        """Test a closed channel neither publishes nor receives."""
        bus = LocalChannelBus()
        sender = bus.open("azan-notify")
        receiver = bus.open("azan-notify")
        handler = AsyncMock()
        receiver.subscribe(handler)

        await receiver.close()
        await sender.publish("x")

        handler.assert_not_awaited()
        await sender.close()
        assert await sender.publish("y") is False

    async def test_unsubscribe(self) -> None:
        """Test unsubscribed handlers stop receiving."""
        bus = LocalChannelBus()
        sender = bus.open("azan-notify")
        receiver = bus.open("azan-notify")
        handler = AsyncMock()
        unsubscribe = receiver.subscribe(handler)
        keepalive = receiver.subscribe(AsyncMock())

        unsubscribe()
        await sender.publish("x")
        await receiver.join()

        handler.assert_not_awaited()
        keepalive()
        await sender.close()
        await receiver.close()


class TestSessionNotifier:
    """Test typed session events on top of a channel."""

    async def test_start_and_stop_reach_other_instance(self) -> None:
        """Test START and STOP are decoded on the receiving side."""
        bus = LocalChannelBus()
        broadcaster = SessionNotifier(bus.open("azan-notify"))
        listener_channel = bus.open("azan-notify")
        listener = SessionNotifier(listener_channel)
        events: list[SessionStartEvent | SessionStopEvent] = []
        listener.subscribe(AsyncMock(side_effect=events.append))

        assert await broadcaster.publish_start("482913") is True
        assert await broadcaster.publish_stop() is True
        await listener_channel.join()

        assert [e.type for e in events] == ["START", "STOP"]
        assert isinstance(events[0], SessionStartEvent)
        assert events[0].key == "482913"
        assert events[0].origin == broadcaster.origin

    async def test_own_messages_filtered(self) -> None:
        """Test an instance ignores events carrying its own origin."""
        bus = LocalChannelBus()
        channel = bus.open("azan-notify")
        peer = bus.open("azan-notify")
        notifier = SessionNotifier(channel, origin="inst-self")
        handler = AsyncMock()
        notifier.subscribe(handler)

        # A channel that echoes (like Redis pub/sub) delivers our own message
        await peer.publish(SessionStopEvent(origin="inst-self").model_dump_json())
        await peer.publish(SessionStopEvent(origin="inst-peer").model_dump_json())
        await channel.join()

        handler.assert_awaited_once()
        assert handler.await_args.args[0].origin == "inst-peer"

    async def test_malformed_payload_dropped(self) -> None:
        """Test off-schema payloads never reach the handler."""
        bus = LocalChannelBus()
        channel = bus.open("azan-notify")
        peer = bus.open("azan-notify")
        notifier = SessionNotifier(channel)
        handler = AsyncMock()
        notifier.subscribe(handler)

        await peer.publish("AZAN_START")
        await channel.join()

        handler.assert_not_awaited()

    def test_generated_origin(self) -> None:
        """Test distinct instances get distinct origins."""
        bus = LocalChannelBus()
        first = SessionNotifier(bus.open("azan-notify"))
        second = SessionNotifier(bus.open("azan-notify"))

        assert first.origin.startswith("inst-")
        assert first.origin != second.origin


class TestRedisNotificationChannel:
    """Test the Redis pub/sub channel with a mocked client."""

    @pytest.fixture
    def mock_redis(self) -> MagicMock:
        """Create mock Redis client with a pub/sub handle."""
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()

        async def listen():  # type: ignore[no-untyped-def]
            yield {"type": "subscribe", "data": 1}
            yield {"type": "message", "data": '{"v": 1, "type": "STOP", "origin": "inst-x"}'}

        pubsub.listen = listen

        redis_mock = MagicMock()
        redis_mock.pubsub.return_value = pubsub
        redis_mock.publish = AsyncMock(return_value=1)
        redis_mock.aclose = AsyncMock()
        return redis_mock

    @patch("src.azancast.notifier.aioredis.from_url")
    async def test_connect_and_receive(
        self, mock_from_url: MagicMock, mock_redis: MagicMock
    ) -> None:
        """Test subscribed messages are dispatched to handlers."""
        mock_from_url.return_value = mock_redis
        channel = RedisNotificationChannel("redis://localhost:6379", "azan-notify")
        notifier = SessionNotifier(channel)
        handler = AsyncMock()
        notifier.subscribe(handler)

        await channel.connect()
        await channel.connect()
        assert channel._listen_task is not None
        await channel._listen_task
        await channel.join()

        mock_redis.pubsub.return_value.subscribe.assert_awaited_once_with("azan-notify")
        handler.assert_awaited_once()
        assert isinstance(handler.await_args.args[0], SessionStopEvent)
        await channel.close()

    @patch("src.azancast.notifier.aioredis.from_url")
    async def test_publish(self, mock_from_url: MagicMock, mock_redis: MagicMock) -> None:
        """Test publish forwards the payload to Redis."""
        mock_from_url.return_value = mock_redis
        channel = RedisNotificationChannel("redis://localhost:6379", "azan-notify")

        assert await channel.publish('{"v": 1, "type": "STOP"}') is True

        mock_redis.publish.assert_awaited_once_with("azan-notify", '{"v": 1, "type": "STOP"}')
        await channel.close()

    @patch("src.azancast.notifier.aioredis.from_url")
    async def test_publish_failure_returns_false(
        self, mock_from_url: MagicMock, mock_redis: MagicMock
    ) -> None:
        """Test a Redis failure is reported rather than raised."""
        mock_from_url.return_value = mock_redis
        mock_redis.publish.side_effect = RedisConnectionError("Connection reset")
        channel = RedisNotificationChannel("redis://localhost:6379", "azan-notify")

        assert await channel.publish("x") is False
        await channel.close()

    @patch("src.azancast.notifier.aioredis.from_url")
    async def test_connect_failure(self, mock_from_url: MagicMock, mock_redis: MagicMock) -> None:
        """Test an unreachable Redis raises ConnectionError."""
        mock_from_url.return_value = mock_redis
        mock_redis.pubsub.return_value.subscribe.side_effect = RedisConnectionError("refused")
        channel = RedisNotificationChannel("redis://localhost:6379", "azan-notify")

        with pytest.raises(ConnectionError, match="Redis subscription failed"):
            await channel.connect()
        await channel.close()

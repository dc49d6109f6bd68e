"""Unit tests for key-value backends and the key store."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.azancast.errors import StorageUnavailableError
from src.azancast.keystore import (
    BROADCAST_KEY,
    LISTENER_AUTHORIZED_KEY,
    LISTENER_KEY,
    JsonFileKeyValueStore,
    KeyStore,
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
)
from src.azancast.models import KeyStoreRecord


class FailingStore(KeyValueStore):
    """Backend that is always unreachable."""

    async def get(self, key: str) -> str | None:
        raise StorageUnavailableError("down")

    async def set(self, key: str, value: str) -> None:
        raise StorageUnavailableError("down")

    async def delete(self, key: str) -> None:
        raise StorageUnavailableError("down")


class TestKeyStore:
    """Test record load/save semantics."""

    async def test_empty_store_loads_empty_record(self) -> None:
        """Test absence of every key means never configured."""
        store = KeyStore(MemoryKeyValueStore())
        assert await store.load() == KeyStoreRecord()

    async def test_save_then_load(self) -> None:
        """Test the saved record is read back."""
        store = KeyStore(MemoryKeyValueStore(), key_prefix="azancast:")

        assert await store.save("123456", True, "123456") is True
        record = await store.load()

        assert record == KeyStoreRecord(
            session_key="123456", listener_authorized=True, listener_key="123456"
        )

    async def test_keys_use_prefix(self) -> None:
        """Test stored key names carry the configured prefix."""
        backend = MemoryKeyValueStore()
        store = KeyStore(backend, key_prefix="azancast:")

        await store.save("482913", True, "482913")

        assert await backend.get(f"azancast:{BROADCAST_KEY}") == "482913"
        assert await backend.get(f"azancast:{LISTENER_AUTHORIZED_KEY}") == "true"
        assert await backend.get(f"azancast:{LISTENER_KEY}") == "482913"

    async def test_save_replaces_whole_record(self) -> None:
        """Test save clears fields that are not provided (no merge)."""
        backend = MemoryKeyValueStore()
        store = KeyStore(backend)
        await store.save("482913", True, "482913")

        await store.save("482913", False, None)

        assert await store.load() == KeyStoreRecord(session_key="482913")
        assert await backend.get(LISTENER_KEY) is None

    async def test_load_degrades_when_unavailable(self) -> None:
        """Test a broken backend yields an empty record instead of raising."""
        store = KeyStore(FailingStore())

        assert await store.load() == KeyStoreRecord()
        assert store.available is False

    async def test_save_reports_failure(self) -> None:
        """Test a broken backend makes save return False."""
        store = KeyStore(FailingStore())

        assert await store.save("482913", False, None) is False
        assert store.available is False

    async def test_available_recovers(self) -> None:
        """Test availability reflects the most recent operation."""
        backend = MemoryKeyValueStore()
        store = KeyStore(backend)
        store.available = False

        await store.load()

        assert store.available is True

    async def test_save_record(self) -> None:
        """Test saving a record object."""
        store = KeyStore(MemoryKeyValueStore())
        record = KeyStoreRecord(session_key="000042", listener_authorized=False)

        assert await store.save_record(record) is True
        assert await store.load() == record


class TestJsonFileKeyValueStore:
    """Test the file backend."""

    async def test_survives_new_instance(self, tmp_path: Path) -> None:
        """Test values written by one instance are read by a fresh one."""
        path = tmp_path / "nested" / "state.json"
        await JsonFileKeyValueStore(path).set("broadcastKey", "482913")

        assert await JsonFileKeyValueStore(path).get("broadcastKey") == "482913"
        assert json.loads(path.read_text()) == {"broadcastKey": "482913"}

    async def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        """Test a missing state file reads as empty."""
        assert await JsonFileKeyValueStore(tmp_path / "none.json").get("broadcastKey") is None

    async def test_delete(self, tmp_path: Path) -> None:
        """Test delete removes a key and tolerates absent keys."""
        store = JsonFileKeyValueStore(tmp_path / "state.json")
        await store.set("listenerKey", "482913")
        await store.delete("listenerKey")
        await store.delete("listenerKey")

        assert await store.get("listenerKey") is None

    async def test_corrupt_file_unavailable(self, tmp_path: Path) -> None:
        """Test an unreadable state file raises StorageUnavailableError."""
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(StorageUnavailableError):
            await JsonFileKeyValueStore(path).get("broadcastKey")

    async def test_non_object_file_unavailable(self, tmp_path: Path) -> None:
        """Test a JSON array is not accepted as state."""
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")

        with pytest.raises(StorageUnavailableError):
            await JsonFileKeyValueStore(path).get("broadcastKey")

    async def test_key_store_degrades_on_corrupt_file(self, tmp_path: Path) -> None:
        """Test the key store hides a corrupt file behind an empty record."""
        path = tmp_path / "state.json"
        path.write_text("{not json")

        store = KeyStore(JsonFileKeyValueStore(path))

        assert await store.load() == KeyStoreRecord()
        assert store.available is False


class TestRedisKeyValueStore:
    """Test the Redis backend with a mocked client."""

    @pytest.fixture
    def mock_redis(self) -> AsyncMock:
        """Create mock Redis client."""
        redis_mock = AsyncMock()
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.set = AsyncMock()
        redis_mock.delete = AsyncMock(return_value=1)
        redis_mock.aclose = AsyncMock()
        return redis_mock

    @pytest.fixture
    def mock_pool(self) -> AsyncMock:
        """Create mock connection pool."""
        pool_mock = AsyncMock()
        pool_mock.disconnect = AsyncMock()
        return pool_mock

    @pytest.fixture
    def store(self) -> RedisKeyValueStore:
        return RedisKeyValueStore(redis_url="redis://localhost:6379", db=0, connection_pool_size=5)

    async def test_initialization(self, store: RedisKeyValueStore) -> None:
        """Test the store starts disconnected."""
        assert store.redis_url == "redis://localhost:6379"
        assert store.connection_pool_size == 5
        assert store._connected is False

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_connect_idempotent(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test connect pings once however often it is called."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis

        await store.connect()
        await store.connect()

        assert store._connected is True
        assert mock_redis.ping.await_count == 1

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_connect_failure(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test an unreachable Redis raises StorageUnavailableError."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        mock_redis.ping.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StorageUnavailableError, match="Redis connection failed"):
            await store.connect()

        assert store._connected is False

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_get_set_delete(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test operations are forwarded to Redis."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        mock_redis.get.return_value = "482913"

        await store.set("azancast:broadcastKey", "482913")
        value = await store.get("azancast:broadcastKey")
        await store.delete("azancast:broadcastKey")

        assert value == "482913"
        mock_redis.set.assert_awaited_once_with("azancast:broadcastKey", "482913")
        mock_redis.delete.assert_awaited_once_with("azancast:broadcastKey")

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_operation_failure_degrades_key_store(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test a Redis error mid-operation surfaces as an empty record."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis
        mock_redis.get.side_effect = RedisConnectionError("Connection reset")

        key_store = KeyStore(store)

        assert await key_store.load() == KeyStoreRecord()
        assert key_store.available is False

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_disconnect(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test disconnect closes the client and the pool."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis

        await store.connect()
        await store.disconnect()
        await store.disconnect()

        assert store._connected is False
        mock_redis.aclose.assert_awaited_once()
        mock_pool.disconnect.assert_awaited_once()

    @patch("src.azancast.keystore.ConnectionPool")
    @patch("src.azancast.keystore.aioredis.Redis")
    async def test_health_check(
        self,
        mock_redis_class: MagicMock,
        mock_pool_class: MagicMock,
        store: RedisKeyValueStore,
        mock_redis: AsyncMock,
        mock_pool: AsyncMock,
    ) -> None:
        """Test health check before and after connecting."""
        mock_pool_class.from_url.return_value = mock_pool
        mock_redis_class.return_value = mock_redis

        assert await store.health_check() is False
        await store.connect()
        assert await store.health_check() is True

        mock_redis.ping.side_effect = RedisConnectionError("gone")
        assert await store.health_check() is False

"""Persistent storage of the broadcast key and listener authorization.

The key store sits on top of a plain string key-value backend (file, Redis or
memory). Persistence is a convenience: when the backend is unreachable the
store degrades to an empty record and the client simply re-authorizes.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from redis import asyncio as aioredis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from src.azancast.errors import StorageUnavailableError
from src.azancast.models import KeyStoreRecord

logger = logging.getLogger(__name__)

BROADCAST_KEY = "broadcastKey"
LISTENER_AUTHORIZED_KEY = "listenerAuthorized"
LISTENER_KEY = "listenerKey"


class KeyValueStore(ABC):
    """String key-value backend.

    Absence of a key means "never configured". Implementations raise
    ``StorageUnavailableError`` when the underlying store cannot be reached.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None if the key is absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key; removing an absent key is not an error."""
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Process-local backend; nothing survives a restart."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """Backend persisting a flat JSON object in a file on this device.

    Writes go to a temporary file in the same directory which then replaces
    the state file, so a crash never leaves a half-written file behind.
    """

    def __init__(self, path: Path) -> None:
        """Initialize file backend.

        Args:
            path: State file location; parent directories are created on write
        """
        self.path = path

    def _read(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise StorageUnavailableError(f"Cannot read state file {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StorageUnavailableError(f"State file {self.path} is not a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write state file {self.path}: {e}") from e

    async def get(self, key: str) -> str | None:
        return self._read().get(key)

    async def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    async def delete(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class RedisKeyValueStore(KeyValueStore):
    """Backend storing keys in Redis (a local instance shared by this device)."""

    def __init__(
        self,
        redis_url: str,
        db: int = 0,
        connection_pool_size: int = 10,
    ) -> None:
        """Initialize Redis backend.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379")
            db: Redis database number (0-15)
            connection_pool_size: Redis connection pool size
        """
        self.redis_url = redis_url
        self.db = db
        self.connection_pool_size = connection_pool_size

        # Connection pool (lazy initialization)
        self._pool: Any = None
        self._redis: Any = None
        self._connected = False

    async def connect(self) -> None:
        """Establish Redis connection pool.

        This method is idempotent - safe to call multiple times.

        Raises:
            StorageUnavailableError: If Redis connection fails
        """
        if self._connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self.redis_url,
                db=self.db,
                max_connections=self.connection_pool_size,
                decode_responses=True,
            )
            self._redis = aioredis.Redis(connection_pool=self._pool)

            await self._redis.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.redis_url} (db={self.db})")
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise StorageUnavailableError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close Redis connection pool gracefully.

        This method is idempotent - safe to call multiple times.
        """
        if not self._connected:
            return

        try:
            if self._redis:
                await self._redis.aclose()
            if self._pool:
                await self._pool.disconnect()
            logger.info("Disconnected from Redis")
        except (RedisError, OSError) as e:
            logger.warning(f"Error during Redis disconnect: {e}")
        finally:
            self._connected = False

    async def health_check(self) -> bool:
        """Check if Redis connection is healthy.

        Returns:
            True if Redis is reachable and responsive, False otherwise
        """
        if not self._connected or not self._redis:
            return False

        try:
            await self._redis.ping()
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def get(self, key: str) -> str | None:
        await self.connect()
        try:
            value = await self._redis.get(key)
        except (RedisError, OSError) as e:
            raise StorageUnavailableError(f"Redis GET {key} failed: {e}") from e
        return value

    async def set(self, key: str, value: str) -> None:
        await self.connect()
        try:
            await self._redis.set(key, value)
        except (RedisError, OSError) as e:
            raise StorageUnavailableError(f"Redis SET {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        await self.connect()
        try:
            await self._redis.delete(key)
        except (RedisError, OSError) as e:
            raise StorageUnavailableError(f"Redis DEL {key} failed: {e}") from e


class KeyStore:
    """Loads and saves the ``KeyStoreRecord`` with read/replace semantics.

    Never raises: a failed load yields an empty record, a failed save returns
    False. ``available`` reflects the outcome of the most recent operation.
    """

    def __init__(self, backend: KeyValueStore, key_prefix: str = "") -> None:
        self.backend = backend
        self.key_prefix = key_prefix
        self.available = True
        self._lock = asyncio.Lock()

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    async def load(self) -> KeyStoreRecord:
        """Read the persisted record, or an empty one if storage is unavailable."""
        async with self._lock:
            try:
                session_key = await self.backend.get(self._key(BROADCAST_KEY))
                authorized = await self.backend.get(self._key(LISTENER_AUTHORIZED_KEY))
                listener_key = await self.backend.get(self._key(LISTENER_KEY))
            except StorageUnavailableError as e:
                self.available = False
                logger.warning("Key store unavailable, using empty record", extra={"error": str(e)})
                return KeyStoreRecord()

        self.available = True
        return KeyStoreRecord(
            session_key=session_key or None,
            listener_authorized=authorized == "true",
            listener_key=listener_key or None,
        )

    async def save(
        self,
        session_key: str | None,
        listener_authorized: bool,
        listener_key: str | None,
    ) -> bool:
        """Replace the persisted record.

        Args:
            session_key: Broadcast key, or None to clear it
            listener_authorized: Whether this device's listener is authorized
            listener_key: Key the listener was authorized with, or None

        Returns:
            True if the record reached the backend, False otherwise
        """
        values = {
            BROADCAST_KEY: session_key,
            LISTENER_AUTHORIZED_KEY: "true" if listener_authorized else None,
            LISTENER_KEY: listener_key,
        }
        async with self._lock:
            try:
                for name, value in values.items():
                    if value:
                        await self.backend.set(self._key(name), value)
                    else:
                        await self.backend.delete(self._key(name))
            except StorageUnavailableError as e:
                self.available = False
                logger.warning(
                    "Key store unavailable, record not persisted", extra={"error": str(e)}
                )
                return False

        self.available = True
        return True

    async def save_record(self, record: KeyStoreRecord) -> bool:
        """Replace the persisted record with ``record``."""
        return await self.save(record.session_key, record.listener_authorized, record.listener_key)

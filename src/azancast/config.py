"""Configuration schema for azancast clients and the relay.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class AuthConfig(BaseModel):
    """Broadcaster secret and session key generation."""

    broadcast_secret: str = Field(
        default="1234",
        min_length=1,
        description="Shared secret every broadcaster-capable operator knows",
    )
    session_key_digits: int = Field(
        default=6, ge=4, le=12, description="Number of digits in a generated session key"
    )


class RedisConfig(BaseModel):
    """Redis connection used by the redis storage and notification backends."""

    url: str = Field(default="redis://localhost:6379", description="Redis connection URL")
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    connection_pool_size: int = Field(default=10, ge=1, description="Redis connection pool size")


class StorageConfig(BaseModel):
    """Persistent key-value store for the broadcast key and listener record."""

    backend: Literal["file", "redis", "memory"] = Field(
        default="file", description="Key-value backend (file, redis, memory)"
    )
    path: Path = Field(
        default=Path.home() / ".azancast" / "state.json",
        description="State file for the file backend",
    )
    key_prefix: str = Field(default="azancast:", description="Prefix applied to every stored key")

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand a leading ~ in the state file path."""
        return v.expanduser()


class NotificationConfig(BaseModel):
    """Same-device session notification channel."""

    backend: Literal["local", "redis"] = Field(
        default="local", description="Notification channel backend (local, redis)"
    )
    channel: str = Field(default="azan-notify", min_length=1, description="Channel name")


class TransportConfig(BaseModel):
    """Media transport used to publish and dial session keys."""

    backend: Literal["local", "websocket"] = Field(
        default="websocket", description="Media transport backend (local, websocket)"
    )
    relay_url: str = Field(default="ws://localhost:9000", description="Relay server URL")
    call_timeout_s: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the relay to route a call"
    )

    @field_validator("relay_url")
    @classmethod
    def validate_relay_url(cls, v: str) -> str:
        """Validate that the relay URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"relay_url must start with ws:// or wss://, got '{v}'")
        return v


class RelayConfig(BaseModel):
    """Relay server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=9000, ge=1024, le=65535, description="Bind port")
    max_peers: int = Field(default=1000, ge=1, description="Maximum registered peers")
    health_enabled: bool = Field(
        default=True, description="Serve /health and /liveness on port + 1"
    )


class AudioConfig(BaseModel):
    """Microphone capture and playback sink."""

    capture: Literal["sounddevice", "tone"] = Field(
        default="sounddevice", description="Capture backend (sounddevice, tone)"
    )
    sink: Literal["sounddevice", "memory"] = Field(
        default="sounddevice", description="Playback sink backend (sounddevice, memory)"
    )
    autoplay: bool = Field(
        default=True,
        description="Start playback as soon as a stream arrives; if false, wait for play",
    )
    input_device: str | None = Field(default=None, description="Input device name or index")
    output_device: str | None = Field(default=None, description="Output device name or index")
    tone_hz: float = Field(default=440.0, gt=0, le=20000, description="Synthetic tone frequency")


class AppConfig(BaseModel):
    """Root configuration."""

    auth: AuthConfig = Field(default_factory=AuthConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)

    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate the logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "AppConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    """Overlay supported environment variables onto raw config data."""
    import os

    if secret := os.getenv("BROADCAST_SECRET"):
        data.setdefault("auth", {})["broadcast_secret"] = secret

    if redis_url := os.getenv("REDIS_URL"):
        data.setdefault("redis", {})["url"] = redis_url

    if relay_url := os.getenv("RELAY_URL"):
        data.setdefault("transport", {})["relay_url"] = relay_url

    if storage_path := os.getenv("AZANCAST_STORAGE_PATH"):
        data.setdefault("storage", {})["path"] = storage_path

    if autoplay := os.getenv("AZANCAST_AUTOPLAY"):
        data.setdefault("audio", {})["autoplay"] = autoplay.lower() in ("true", "1", "yes")

    return data

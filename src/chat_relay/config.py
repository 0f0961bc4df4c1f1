"""
Relay configuration.

Loaded from CHAT_RELAY_* environment variables or a JSON file such as:

    {"redis_url": "redis://cache:6379/0", "origin_id": "lobby-1", "queue_capacity": 2048}
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from chat_relay.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_RELAY_"
DEFAULT_ORIGIN_ID = "server1"
DEFAULT_CONFIG_FILE = Path.home() / ".chat-relay" / "config.json"


class RelayConfig(BaseModel):
    redis_url: str = "redis://localhost:6379"
    origin_id: str = Field(DEFAULT_ORIGIN_ID, min_length=1)
    chat_channel: str = "archivechat:chat"
    private_channel: str = "archivechat:private"
    queue_capacity: int = Field(1024, ge=1)
    backoff_base: float = Field(0.5, gt=0)
    backoff_cap: float = Field(30.0, gt=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    backoff_jitter: float = Field(0.2, ge=0, lt=1)
    dedup_capacity: int = Field(10_000, ge=1)
    dedup_ttl: float = Field(300.0, gt=0)
    drain_timeout: float = Field(5.0, ge=0)
    max_payload_bytes: int = Field(32 * 1024, ge=256)
    visibility_timeout: Optional[float] = Field(None, gt=0)
    heartbeat_ttl: int = Field(60, ge=1)
    heartbeat_interval: float = Field(30.0, gt=0)
    metrics_port: Optional[int] = Field(None, ge=1, le=65535)
    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def load(cls, data: dict[str, Any]) -> "RelayConfig":
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid relay configuration: {e.error_count()} error(s)",
                              details={"errors": e.errors(include_url=False)})
        if config.backoff_cap < config.backoff_base:
            raise ConfigError("backoff_cap must be >= backoff_base")
        if config.origin_id == DEFAULT_ORIGIN_ID:
            logger.warning(f"Using default origin_id {DEFAULT_ORIGIN_ID!r}; set a unique one per server")
        return config

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "RelayConfig":
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for name in cls.model_fields:
            value = env.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None and value != "":
                data[name] = value
        return cls.load(data)

    @classmethod
    def from_file(cls, path: Path = DEFAULT_CONFIG_FILE) -> "RelayConfig":
        try:
            data = json.loads(Path(path).read_text())
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {path}")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        return cls.load(data)

"""
Push channel: one logical stream per license key.

The Redis implementation publishes envelopes on ``sse:license:{license_key}``;
the SSE endpoint subscribed for a terminal filters messages addressed to it.
A terminal counts as reachable while its stream keeps a presence key alive.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

import redis

from ..config import settings
from .exceptions import ChannelUnavailableError
from .logging import get_logger

logger = get_logger(__name__)

PRESENCE_PREFIX = "sse:presence:"
PRESENCE_TTL_SECONDS = 90


def channel_name(license_key: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.push_channel_prefix}{license_key}"


def presence_key(license_key: str, machine_id_hash: str) -> str:
    return f"{PRESENCE_PREFIX}{license_key}:{machine_id_hash}"


def encode_message(machine_id_hash: Optional[str], envelope: Dict[str, Any]) -> str:
    return json.dumps({"target": machine_id_hash, "envelope": envelope}, default=str)


class PushChannel(Protocol):
    def push(self, license_key: str, machine_id_hash: str, envelope: Dict[str, Any]) -> bool:
        """Hand the envelope to the terminal's live stream.

        Returns False when the terminal has no live stream.

        Raises:
            ChannelUnavailableError: transport failure
        """
        ...


class RedisPushChannel:
    """Redis pub/sub backed push channel."""

    def __init__(self, client: Optional[redis.Redis] = None, prefix: Optional[str] = None):
        self._client = client or redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        self.prefix = prefix or settings.push_channel_prefix

    def push(self, license_key: str, machine_id_hash: str, envelope: Dict[str, Any]) -> bool:
        channel = channel_name(license_key, self.prefix)
        try:
            if not self._client.exists(presence_key(license_key, machine_id_hash)):
                return False
            receivers = self._client.publish(channel, encode_message(machine_id_hash, envelope))
        except redis.RedisError as e:
            logger.warning(
                "push_channel_error",
                channel=channel,
                machine_id_hash=machine_id_hash,
                error=str(e),
            )
            raise ChannelUnavailableError(
                "Push channel unavailable",
                details={"channel": channel, "error_type": type(e).__name__},
            ) from e
        return receivers > 0


class InMemoryPushChannel:
    """Single-process push channel for local development and tests."""

    def __init__(self) -> None:
        self.streams: Set[Tuple[str, str]] = set()
        self.pushed: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_with: Optional[Exception] = None

    def open_stream(self, license_key: str, machine_id_hash: str) -> None:
        self.streams.add((license_key, machine_id_hash))

    def close_stream(self, license_key: str, machine_id_hash: str) -> None:
        self.streams.discard((license_key, machine_id_hash))

    def push(self, license_key: str, machine_id_hash: str, envelope: Dict[str, Any]) -> bool:
        if self.fail_with is not None:
            raise ChannelUnavailableError("Push channel unavailable", details={"error": str(self.fail_with)})
        if (license_key, machine_id_hash) not in self.streams:
            return False
        self.pushed.append((license_key, machine_id_hash, envelope))
        return True

    def pushed_to(self, machine_id_hash: str) -> List[Dict[str, Any]]:
        return [envelope for _, machine, envelope in self.pushed if machine == machine_id_hash]


def build_push_channel(backend: Optional[str] = None) -> PushChannel:
    backend = backend or settings.push_channel_backend
    if backend == "memory":
        return InMemoryPushChannel()
    if backend == "redis":
        return RedisPushChannel()
    raise ValueError(f"Unknown push channel backend: {backend}")

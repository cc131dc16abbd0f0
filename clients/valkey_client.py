"""
Valkey (Redis-compatible) client for change-signal inboxes and triage sessions.

Simple wrapper around redis-py. Connection URL from Vault.
Fail-fast: raises on connection failure, never returns fallback values.
"""

import json
import logging
from contextlib import contextmanager

import redis

from core.errors import TransientStoreFailure

logger = logging.getLogger(__name__)


@contextmanager
def valkey_errors():
    """Translate Valkey connectivity errors into TransientStoreFailure."""
    try:
        yield
    except (redis.ConnectionError, redis.TimeoutError) as e:
        raise TransientStoreFailure(f"Valkey unavailable: {e}") from e


class ValkeyClient:
    """
    Redis-compatible client for Valkey.

    Usage:
        client = ValkeyClient("redis://localhost:6379/0")
        client.set("key", "value", expire_seconds=300)
        value = client.get("key")  # Returns None if missing
    """

    def __init__(self, url: str):
        """
        Initialize Valkey connection.

        Args:
            url: Redis-compatible connection URL (e.g., redis://localhost:6379/0)

        Raises:
            redis.ConnectionError: If connection fails
        """
        self._client = redis.from_url(url, decode_responses=True)
        # Verify connectivity immediately (fail-fast)
        self._client.ping()
        logger.info("ValkeyClient connected")

    def ping(self) -> bool:
        """
        Health check.

        Returns True if Valkey responds.
        Raises redis.ConnectionError if unreachable.
        """
        self._client.ping()
        return True

    # === Strings ===

    def get(self, key: str) -> str | None:
        """
        Get value by key.

        Returns None if key doesn't exist (not an error).
        Raises on connection failure.
        """
        return self._client.get(key)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        """
        Set key to value, optionally with expiration.

        Args:
            key: Key to set
            value: Value to store
            expire_seconds: TTL in seconds (None for no expiration)
        """
        if expire_seconds is not None:
            self._client.setex(key, expire_seconds, value)
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> bool:
        """
        Delete one or more keys.

        Returns True if at least one key existed and was deleted.
        """
        if not keys:
            return False
        return self._client.delete(*keys) > 0

    def exists(self, key: str) -> bool:
        """Check if key exists."""
        return self._client.exists(key) > 0

    def expire(self, key: str, seconds: int) -> bool:
        """Set TTL on an existing key. Returns False if key doesn't exist."""
        return bool(self._client.expire(key, seconds))

    def ttl(self, key: str) -> int:
        """
        Get remaining TTL in seconds.

        Returns:
            -2 if key doesn't exist
            -1 if key has no expiration
            Positive int: remaining seconds
        """
        return self._client.ttl(key)

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        """
        Set key to JSON-serialized value.

        Args:
            key: Key to set
            value: Dict or list to serialize
            expire_seconds: TTL in seconds (None for no expiration)
        """
        json_str = json.dumps(value)
        self.set(key, json_str, expire_seconds)

    def get_json(self, key: str) -> dict | list | None:
        """
        Get and deserialize JSON value.

        Returns None if key doesn't exist.
        Raises ValueError if value is not valid JSON.
        """
        value = self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}': {e}")

    # === Sets ===

    def sadd(self, key: str, *members: str) -> int:
        """Add members to a set. Returns number newly added."""
        return self._client.sadd(key, *members)

    def srem(self, key: str, *members: str) -> int:
        """Remove members from a set. Returns number removed."""
        return self._client.srem(key, *members)

    def smembers(self, key: str) -> "set[str]":
        """All members of a set (empty set if key missing)."""
        return set(self._client.smembers(key))

    # === Lists ===

    def rpush(self, key: str, *values: str) -> int:
        """Append values to a list. Returns new length."""
        return self._client.rpush(key, *values)

    def lpop(self, key: str) -> str | None:
        """Pop the head of a list. None if empty or missing."""
        return self._client.lpop(key)

    def blpop(self, key: str, timeout_seconds: float) -> str | None:
        """
        Pop the head of a list, waiting up to timeout_seconds for one to arrive.

        Returns None on timeout. timeout_seconds must be positive (0 would
        block forever).
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        result = self._client.blpop([key], timeout=timeout_seconds)
        if result is None:
            return None
        return result[1]

    def close(self) -> None:
        """Close the connection."""
        self._client.close()
        logger.info("ValkeyClient closed")

"""Derived-state documents (blackout and pattern memory).

Both documents are caches over trade and signal history and can be
rebuilt at any time. They are stored as canonical JSON (sorted keys) so
two recomputations over the same history serialize identically.

The blackout document is shared by every model, so writers go through
``update()``, which holds a lock across the read-modify-write.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


def dump_document(document: dict[str, Any]) -> str:
    """Canonical JSON encoding used for every persisted document."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)


class RedisStateStore:
    """Stores documents as JSON strings under ``<prefix>:<key>``."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "polyedge",
        lock_timeout: float = 10.0,
    ):
        self.client = client
        self.prefix = prefix
        self.lock_timeout = lock_timeout

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def load(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.warning("state_load_failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("state_document_corrupt", key=key, error=str(e))
            return None

    async def save(self, key: str, document: dict[str, Any]) -> None:
        try:
            await self.client.set(self._key(key), dump_document(document))
        except redis.RedisError as e:
            logger.warning("state_save_failed", key=key, error=str(e))

    async def update(
        self, key: str, mutate: Callable[[dict[str, Any]], None]
    ) -> dict[str, Any]:
        """
        Read, mutate and write one document under a Redis lock.

        ``mutate`` edits the document in place and must only depend on its
        own arguments: when Redis is unavailable it is applied to an empty
        document and the result is returned without being stored.
        """
        try:
            async with self.client.lock(
                f"{self._key(key)}:lock",
                timeout=self.lock_timeout,
                blocking_timeout=self.lock_timeout,
            ):
                document = await self.load(key) or {}
                mutate(document)
                await self.save(key, document)
                return document
        except redis.RedisError as e:
            logger.warning("state_update_failed", key=key, error=str(e))
            document = {}
            mutate(document)
            return document


class InMemoryStateStore:
    """Process-local store keeping the serialized form of each document."""

    def __init__(self):
        self.raw: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self, key: str) -> dict[str, Any] | None:
        raw = self.raw.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, document: dict[str, Any]) -> None:
        self.raw[key] = dump_document(document)

    async def update(
        self, key: str, mutate: Callable[[dict[str, Any]], None]
    ) -> dict[str, Any]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            document = await self.load(key) or {}
            mutate(document)
            await self.save(key, document)
            return document

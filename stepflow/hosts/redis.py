"""Redis host for cross-process hook delivery."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..constants import DEFAULT_KEY_PREFIX, DEFAULT_STORE_TTL_SECONDS
from .base import TIMED_OUT, BaseHost

logger = logging.getLogger(__name__)

# BLPOP treats 0 as "block forever"
_MIN_BLOCK_S = 0.01


class RedisHost(BaseHost):
    """Redis-based host: one list per token, consumed with ``BLPOP``."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        ttl_seconds: int = DEFAULT_STORE_TTL_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}hook:{token}"

    async def wait_for_event(self, token: str, timeout_s: Optional[float] = None) -> Any:
        if not self._redis:
            await self.connect()

        block = 0 if timeout_s is None else max(timeout_s, _MIN_BLOCK_S)
        result = await self._redis.blpop(self._key(token), timeout=block)
        if result is None:
            logger.info(f"Wait for event {token!r} timed out after {timeout_s}s")
            return TIMED_OUT
        _, raw = result
        return json.loads(raw)

    async def send_event(self, token: str, payload: Any) -> bool:
        if not self._redis:
            await self.connect()

        key = self._key(token)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, json.dumps(payload))
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()
        # delivery to a blocked BLPOP cannot be observed from here
        return False

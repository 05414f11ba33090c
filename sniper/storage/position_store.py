from __future__ import annotations

import logging

from redis import asyncio as redis
from redis.asyncio.client import Redis

from sniper.common import log_event
from sniper.trading.types import OpenPosition


class RedisPositionStore:
    """Remembers a bought-but-unsold position so a restart resumes monitoring."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        redis_url: str,
        key_prefix: str = "sniper:position",
        ttl_seconds: int = 0,
    ) -> None:
        self._logger = logger
        self._redis_url = redis_url
        self._key_prefix = key_prefix.rstrip(":")
        self._ttl_seconds = max(0, int(ttl_seconds))
        self._redis: Redis | None = None

    def _position_key(self, token_address: str) -> str:
        return f"{self._key_prefix}:{token_address}"

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = redis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
        )

    async def healthcheck(self) -> None:
        await self._require_redis().ping()

    async def close(self) -> None:
        if self._redis is not None:
            close = getattr(self._redis, "aclose", None)
            if close:
                await close()
            else:
                await self._redis.close()
            self._redis = None

    async def save_open_position(self, position: OpenPosition) -> None:
        redis_client = self._require_redis()
        key = self._position_key(position.token_address)

        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(key)
        pipeline.hset(key, mapping=position.to_mapping())
        if self._ttl_seconds > 0:
            pipeline.expire(key, self._ttl_seconds)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="position_saved",
            message="Open position recorded",
            token_address=position.token_address,
            bundle_id=position.bundle_id,
        )

    async def get_open_position(self, token_address: str) -> OpenPosition | None:
        redis_client = self._require_redis()
        mapping = await redis_client.hgetall(self._position_key(token_address))
        if not mapping:
            return None
        return OpenPosition.from_mapping(mapping)

    async def clear_position(self, token_address: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.delete(self._position_key(token_address))
        return bool(deleted)

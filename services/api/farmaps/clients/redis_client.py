"""
Redis cache wrapper.

Responsibilities:
  • Hub link lists — STRING (JSON) keyed by hub:{side}:{fid}:{limit}
                     expires after settings.hub_cache_ttl

One RedisCache is built in the app lifespan and handed to the clients that
use it. The connection is opened on first use; concurrent first callers all
await the same connect future instead of racing to open their own.
"""
import asyncio
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


def _consume_exception(task: asyncio.Future) -> None:
    # a failed connect whose callers were all cancelled still counts as retrieved
    if not task.cancelled():
        task.exception()


class RedisCache:
    def __init__(self, url: str) -> None:
        self._url = url
        self._redis: Optional[aioredis.Redis] = None
        self._connecting: Optional[asyncio.Future] = None

    async def client(self) -> aioredis.Redis:
        if self._redis is not None:
            return self._redis
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect())
            self._connecting.add_done_callback(_consume_exception)
        # shield: one cancelled caller must not abort the shared attempt
        return await asyncio.shield(self._connecting)

    async def _connect(self) -> aioredis.Redis:
        r = aioredis.from_url(self._url, decode_responses=True)
        try:
            await r.ping()
        except Exception:
            self._connecting = None
            await r.aclose()
            raise
        self._redis = r
        self._connecting = None
        logger.info("Redis connected at %s", self._url.split("@")[-1])
        return r

    async def get_json(self, key: str) -> Optional[Any]:
        r = await self.client()
        raw = await r.get(key)
        if raw:
            return json.loads(raw)
        return None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        r = await self.client()
        await r.set(key, json.dumps(value), ex=ttl)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

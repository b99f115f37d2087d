"""
Redis-backed metadata store.
"""

import logging
import re
from typing import AsyncIterator, List, Optional, Sequence

from redis import asyncio as aioredis

from filerelay.store.base import DEFAULT_PAGE_SIZE, MetadataStore

logger = logging.getLogger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(value: str) -> str:
    """Escape Redis MATCH pattern metacharacters so ``value`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class RedisMetadataStore(MetadataStore):
    """Store over redis.asyncio using SET NX, INCR, SCAN and MGET."""

    def __init__(self, client: aioredis.Redis):
        if client is None:
            raise ValueError("Redis client is required")
        self.redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisMetadataStore":
        logger.info(f"Connecting metadata store to {url.split('@')[-1]}")
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def put(self, key: str, value: str) -> None:
        await self.redis.set(key, value)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.redis.delete(*keys)

    async def add(self, key: str, value: str) -> bool:
        return bool(await self.redis.set(key, value, nx=True))

    async def incr(self, key: str, amount: int = 1) -> int:
        return int(await self.redis.incrby(key, amount))

    async def iter_key_pages(self, prefix: str, page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[List[str]]:
        page: List[str] = []
        async for key in self.redis.scan_iter(match=f"{escape_glob(prefix)}*", count=page_size):
            page.append(key)
            if len(page) >= page_size:
                yield page
                page = []
        if page:
            yield page

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self.redis.mget(list(keys))

    async def ping(self) -> None:
        await self.redis.ping()

    async def close(self) -> None:
        await self.redis.aclose()

"""
In-process metadata store for development and tests.
"""

import asyncio
from typing import AsyncIterator, Dict, List, Optional, Sequence

from filerelay.store.base import DEFAULT_PAGE_SIZE, MetadataStore


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed store; state vanishes with the process."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    async def add(self, key: str, value: str) -> bool:
        async with self._lock:
            if key in self._data:
                return False
            self._data[key] = value
            return True

    async def incr(self, key: str, amount: int = 1) -> int:
        async with self._lock:
            value = int(self._data.get(key, "0")) + amount
            self._data[key] = str(value)
            return value

    async def iter_key_pages(self, prefix: str, page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[List[str]]:
        keys = sorted(k for k in list(self._data) if k.startswith(prefix))
        for start in range(0, len(keys), page_size):
            yield keys[start:start + page_size]

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._data.get(k) for k in keys]

    def __len__(self) -> int:
        return len(self._data)

"""
Metadata store interface.

A flat key-value store of string values. No transactions are assumed: the
only single-key atomic primitives callers may rely on are ``add``
(create-only write) and ``incr``.
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence

DEFAULT_PAGE_SIZE = 500


class MetadataStore(ABC):
    """Key-value store used for sessions, chunk records and counters."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def add(self, key: str, value: str) -> bool:
        """
        Write ``value`` only if ``key`` does not exist yet.

        Returns:
            True if this call created the key, False if it already existed
        """

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        """Atomically increment an integer counter (missing keys start at 0)."""

    @abstractmethod
    def iter_key_pages(self, prefix: str, page_size: int = DEFAULT_PAGE_SIZE) -> AsyncIterator[List[str]]:
        """Yield the keys starting with ``prefix`` in pages of at most ``page_size``."""

    @abstractmethod
    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Bulk fetch; missing keys come back as None, in input order."""

    async def ping(self) -> None:
        """Raise if the store is unreachable."""

    async def close(self) -> None:
        pass

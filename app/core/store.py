from __future__ import annotations

from typing import Optional, Protocol

from redis import asyncio as aioredis


class CounterStore(Protocol):
    """Shared key/value store with per-key expiry."""

    async def incr(self, key: str, ttl: int) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def add(self, key: str, value: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def delete(self, key: str) -> None: ...


class RedisCounterStore:
    def __init__(self, client: aioredis.Redis, prefix: str = "certflow:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(aioredis.from_url(url, decode_responses=True))

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def incr(self, key: str, ttl: int) -> int:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(self._k(key))
            # only the first hit in a window sets the expiry
            pipe.expire(self._k(key), ttl, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._k(key))

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.client.set(self._k(key), value, ex=ttl)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self.client.set(self._k(key), value, ex=ttl, nx=True))

    async def ttl(self, key: str) -> int:
        return max(int(await self.client.ttl(self._k(key))), 0)

    async def delete(self, key: str) -> None:
        await self.client.delete(self._k(key))

    async def close(self) -> None:
        await self.client.aclose()

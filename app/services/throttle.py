from __future__ import annotations

import hashlib
import json
from typing import Optional

from app.core.store import CounterStore


WINDOW_SECONDS = 60


class RateLimitExceeded(Exception):
    pass


def params_hash(params: dict) -> str:
    return hashlib.md5(json.dumps(params, sort_keys=True, default=str).encode("utf-8")).hexdigest()


async def check_duplicate(store: CounterStore, action: str, params: dict, window: int = 60) -> int:
    """
    Seconds left before the same ``action`` with the same ``params`` may run
    again; 0 means go ahead (and starts a new window).
    """
    key = f"dup:{action}:{params_hash(params)}"
    if await store.add(key, "1", window):
        return 0
    return max(0, min(await store.ttl(key), window)) or 1


class RateLimiter:
    """
    Fixed 60 s windows in the counter store.

    A request carrying a verified bearer token is counted against the token only;
    anonymous requests are counted per client IP.
    """

    def __init__(self, store: CounterStore, per_ip: int, per_token: int, scope: str = "api"):
        self.store = store
        self.per_ip = per_ip
        self.per_token = per_token
        self.scope = scope

    async def _hit(self, key: str, limit: int, message: str) -> int:
        count = await self.store.incr(key, WINDOW_SECONDS)
        if count > limit:
            raise RateLimitExceeded(message)
        return count

    async def check(self, ip: Optional[str], token: Optional[str] = None) -> int:
        if token:
            digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:32]
            return await self._hit(f"rate:token:{self.scope}:{digest}", self.per_token, "Token rate limit exceeded")
        return await self._hit(f"rate:ip:{self.scope}:{ip or 'unknown'}", self.per_ip, "IP rate limit exceeded")

from __future__ import annotations

import json
from typing import Any, Dict

import redis.asyncio as redis

from ..settings import DEFAULT_QUEUE_NAME

CANCEL_TTL_SECONDS = 24 * 3600


def cancel_key(run_id: str) -> str:
    return f"shipline:cancel:{run_id}"


class RedisRunQueue:
    """FIFO queue of triggered runs plus per-run cancel flags."""

    def __init__(self, client: redis.Redis, name: str = DEFAULT_QUEUE_NAME):
        self.r = client
        self.name = name

    @classmethod
    def from_url(cls, url: str, name: str = DEFAULT_QUEUE_NAME) -> RedisRunQueue:
        return cls(redis.from_url(url, decode_responses=True), name)

    async def enqueue(self, request: Dict[str, Any]) -> None:
        await self.r.rpush(self.name, json.dumps(request))  # FIFO: push right

    async def dequeue(self, timeout_s: int = 5) -> Dict[str, Any] | None:
        item = await self.r.blpop(self.name, timeout=timeout_s)  # FIFO: pop left
        if not item:
            return None
        _q, payload = item
        return json.loads(payload)

    async def request_cancel(self, run_id: str) -> None:
        await self.r.set(cancel_key(run_id), "1", ex=CANCEL_TTL_SECONDS)

    async def is_cancelled(self, run_id: str) -> bool:
        return bool(await self.r.exists(cancel_key(run_id)))

    async def close(self) -> None:
        await self.r.aclose()

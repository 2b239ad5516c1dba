# common/bus.py
from __future__ import annotations
import json
from typing import Any, Dict, List

from pydantic import BaseModel
from redis import asyncio as aioredis

from common.logging import get_logger

log = get_logger("bus")

STREAM_MAXLEN = 10000


class EventBus:
    """Redis-stream publisher for pipeline status; each entry is {"json": <payload>}."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        if self._redis is None:
            log.info(f"Connecting to Redis: {self._redis_url}")
            self._redis = aioredis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            try:
                pong = await self._redis.ping()
                log.info(f"Redis ping: {pong}")
            except Exception as e:
                log.error(f"Redis connection failed: {e}")
                raise
        return self

    async def close(self):
        if self._redis is not None:
            log.info("Closing Redis connection")
            await self._redis.close()
            self._redis = None

    async def xadd_json(self, stream: str, payload: Dict[str, Any]) -> str:
        assert self._redis is not None, "Call connect() first"
        data = {"json": json.dumps(payload, separators=(",", ":"))}
        msg_id = await self._redis.xadd(stream, data, maxlen=STREAM_MAXLEN, approximate=True)
        log.debug(f"XADD stream={stream} id={msg_id}")
        return msg_id

    async def publish(self, stream: str, event: BaseModel) -> str:
        """XADD a pydantic event, dropping unset optional fields."""
        return await self.xadd_json(stream, event.model_dump(mode="json", exclude_none=True))

    async def recent(self, stream: str, count: int = 20) -> List[Dict[str, Any]]:
        """Newest-first payloads of the last `count` entries of `stream`."""
        assert self._redis is not None, "Call connect() first"
        out = []
        for msg_id, kv in await self._redis.xrevrange(stream, count=count):
            try:
                payload = json.loads(kv.get("json", "{}"))
            except (ValueError, TypeError):
                payload = {"raw": kv}
            payload["_id"] = msg_id
            out.append(payload)
        return out

"""Real-time usage counters keyed by (user, api).

Counters live in a Redis hash ``metrics:<userId>:<apiId>`` next to the event
stream. Cost is kept as an integer number of millionths so that concurrent
HINCRBY calls never accumulate floating point drift. Every update resets
the key's TTL; an expired or missing key reads as all zeros.
"""
import logging
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as redis

from models import RealtimeCounter

logger = logging.getLogger("runmeter.realtime")

COST_SCALE = 1_000_000
COUNTER_FIELDS = ("requests", "bytes_in", "bytes_out", "cost", "duration", "errors", "success")


def metrics_key(user_id: str, api_id: str) -> str:
    return f"metrics:{user_id}:{api_id}"


def counter_increments(bytes_in: int, bytes_out: int, cost: float, duration: int, status_code: int) -> Dict[str, int]:
    """Integer field increments for one call."""
    increments = {
        "requests": 1,
        "bytes_in": int(bytes_in),
        "bytes_out": int(bytes_out),
        "cost": int(round(float(cost) * COST_SCALE)),
        "duration": int(duration),
    }
    if int(status_code) >= 400:
        increments["errors"] = 1
    else:
        increments["success"] = 1
    return increments


def decode_counter(raw: Dict[str, str]) -> RealtimeCounter:
    values = {}
    for field, value in (raw or {}).items():
        if field not in COUNTER_FIELDS:
            continue
        if field == "cost":
            values[field] = int(value) / COST_SCALE
        else:
            values[field] = int(value)
    return RealtimeCounter(**values)


class RealtimeMetricsStore:
    async def increment(self, user_id: str, api_id: str, increments: Dict[str, int]) -> None:
        raise NotImplementedError

    async def get(self, user_id: str, api_id: str) -> RealtimeCounter:
        raise NotImplementedError


class RedisRealtimeStore(RealtimeMetricsStore):
    def __init__(self, client: redis.Redis, ttl_seconds: int = 3600):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    async def increment(self, user_id: str, api_id: str, increments: Dict[str, int]) -> None:
        key = metrics_key(user_id, api_id)
        # MULTI/EXEC: all increments and the TTL reset land in one round trip
        async with self.redis.pipeline(transaction=True) as pipe:
            for field, amount in increments.items():
                pipe.hincrby(key, field, amount)
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()

    async def get(self, user_id: str, api_id: str) -> RealtimeCounter:
        raw = await self.redis.hgetall(metrics_key(user_id, api_id))
        return decode_counter(raw)


class MemoryRealtimeStore(RealtimeMetricsStore):
    def __init__(self, ttl_seconds: int = 3600, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[str, Tuple[Dict[str, int], float]] = {}

    def _live(self, key: str) -> Optional[Dict[str, int]]:
        item = self._data.get(key)
        if item is None:
            return None
        values, expires_at = item
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return values

    async def increment(self, user_id: str, api_id: str, increments: Dict[str, int]) -> None:
        key = metrics_key(user_id, api_id)
        values = self._live(key) or {}
        for field, amount in increments.items():
            values[field] = values.get(field, 0) + int(amount)
        self._data[key] = (values, self._clock() + self.ttl_seconds)

    async def get(self, user_id: str, api_id: str) -> RealtimeCounter:
        values = self._live(metrics_key(user_id, api_id)) or {}
        return decode_counter({field: str(value) for field, value in values.items()})

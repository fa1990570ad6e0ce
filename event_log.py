"""Durable event log with consumer-group delivery.

The production backend is a Redis stream. Delivery is at-least-once: an
entry read by a consumer stays pending until acknowledged, is handed back to
the same consumer on its next read, and can be claimed by another consumer
of the group once it has been idle for ``claim_idle_ms``.
"""
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from models import StreamEntry

logger = logging.getLogger("runmeter.events")


class EventLog:
    """Contract shared by every event log backend."""

    stream_key: str

    async def append(self, fields: Dict[str, str]) -> str:
        raise NotImplementedError

    async def create_group(self, group: str, consumer: str) -> None:
        raise NotImplementedError

    async def read_group(self, group: str, consumer: str, count: int) -> List[StreamEntry]:
        raise NotImplementedError

    async def ack(self, group: str, entry_id: str) -> int:
        raise NotImplementedError

    async def length(self) -> int:
        raise NotImplementedError

    async def pending_count(self, group: str) -> int:
        raise NotImplementedError

    async def health_check(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        return None


def _to_entries(messages) -> List[StreamEntry]:
    entries = []
    for entry_id, fields in messages or []:
        entries.append(StreamEntry(id=entry_id, fields=dict(fields) if fields else {}))
    return entries


class RedisEventLog(EventLog):
    """Event log backed by a Redis stream (XADD / XREADGROUP / XACK)."""

    def __init__(self, client: redis.Redis, stream_key: str = "usage_logs", claim_idle_ms: int = 60000):
        self.redis = client
        self.stream_key = stream_key
        self.claim_idle_ms = claim_idle_ms

    @classmethod
    def from_url(cls, url: str, stream_key: str = "usage_logs", claim_idle_ms: int = 60000) -> "RedisEventLog":
        client = redis.from_url(url, decode_responses=True)
        return cls(client, stream_key=stream_key, claim_idle_ms=claim_idle_ms)

    async def append(self, fields: Dict[str, str]) -> str:
        return await self.redis.xadd(self.stream_key, fields)

    async def create_group(self, group: str, consumer: str) -> None:
        try:
            # "0" so that events appended before the first worker started are billed too
            await self.redis.xgroup_create(self.stream_key, group, id="0", mkstream=True)
            logger.info(f"Created consumer group: {group}")
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.info(f"Consumer group {group} already exists")
            else:
                raise

    async def read_group(self, group: str, consumer: str, count: int) -> List[StreamEntry]:
        entries: List[StreamEntry] = []

        # 1. Entries this consumer was given earlier but never acknowledged
        pending = await self.redis.xreadgroup(group, consumer, {self.stream_key: "0"}, count=count)
        for _, messages in pending or []:
            for entry in _to_entries(messages):
                if entry.fields:
                    entries.append(entry)
                else:
                    # Trimmed from the stream while pending: nothing left to process
                    await self.ack(group, entry.id)

        # 2. Entries abandoned by crashed consumers of the same group
        if len(entries) < count and self.claim_idle_ms > 0:
            claimed = await self.redis.xautoclaim(
                self.stream_key, group, consumer,
                min_idle_time=self.claim_idle_ms, start_id="0-0", count=count - len(entries)
            )
            if claimed and len(claimed) > 1:
                entries.extend(e for e in _to_entries(claimed[1]) if e.fields)

        # 3. Never-delivered entries
        if len(entries) < count:
            fresh = await self.redis.xreadgroup(
                group, consumer, {self.stream_key: ">"}, count=count - len(entries)
            )
            for _, messages in fresh or []:
                entries.extend(_to_entries(messages))

        return entries

    async def ack(self, group: str, entry_id: str) -> int:
        return await self.redis.xack(self.stream_key, group, entry_id)

    async def length(self) -> int:
        return await self.redis.xlen(self.stream_key)

    async def pending_count(self, group: str) -> int:
        try:
            summary = await self.redis.xpending(self.stream_key, group)
        except ResponseError:
            return 0
        return int(summary.get("pending", 0)) if summary else 0

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.redis.ping()
            return {"status": "healthy", "redis": "connected"}
        except RedisError as e:
            return {"status": "unhealthy", "redis": "disconnected", "error": str(e)}

    async def close(self):
        await self.redis.aclose()


class MemoryEventLog(EventLog):
    """In-process event log with the same delivery semantics as the Redis one."""

    def __init__(self, stream_key: str = "usage_logs", claim_idle_ms: int = 60000, clock=time.monotonic):
        self.stream_key = stream_key
        self.claim_idle_ms = claim_idle_ms
        self._clock = clock
        self._entries: List[StreamEntry] = []
        self._groups: Dict[str, Dict[str, Any]] = {}
        self._last_id: Tuple[int, int] = (0, 0)

    def _next_id(self) -> str:
        ms = int(time.time() * 1000)
        last_ms, last_seq = self._last_id
        if ms <= last_ms:
            ms, seq = last_ms, last_seq + 1
        else:
            seq = 0
        self._last_id = (ms, seq)
        return f"{ms}-{seq}"

    async def append(self, fields: Dict[str, str]) -> str:
        entry = StreamEntry(id=self._next_id(), fields={k: str(v) for k, v in fields.items()})
        self._entries.append(entry)
        return entry.id

    async def create_group(self, group: str, consumer: str) -> None:
        if group in self._groups:
            logger.info(f"Consumer group {group} already exists")
            return
        # pending: entry id -> (consumer, delivered_at)
        self._groups[group] = {"next_index": 0, "pending": {}}
        logger.info(f"Created consumer group: {group}")

    def _group(self, group: str) -> Dict[str, Any]:
        if group not in self._groups:
            raise LookupError(f"NOGROUP No such consumer group '{group}'")
        return self._groups[group]

    async def read_group(self, group: str, consumer: str, count: int) -> List[StreamEntry]:
        state = self._group(group)
        pending: Dict[str, Tuple[str, float]] = state["pending"]
        by_id = {entry.id: entry for entry in self._entries}
        now = self._clock()
        delivered: List[StreamEntry] = []

        for entry_id, (owner, _) in sorted(pending.items(), key=lambda item: _id_key(item[0])):
            if len(delivered) >= count:
                break
            if owner == consumer:
                delivered.append(by_id[entry_id])
                pending[entry_id] = (consumer, now)

        for entry_id, (owner, delivered_at) in sorted(pending.items(), key=lambda item: _id_key(item[0])):
            if len(delivered) >= count:
                break
            if owner != consumer and (now - delivered_at) * 1000 >= self.claim_idle_ms:
                delivered.append(by_id[entry_id])
                pending[entry_id] = (consumer, now)

        while len(delivered) < count and state["next_index"] < len(self._entries):
            entry = self._entries[state["next_index"]]
            state["next_index"] += 1
            pending[entry.id] = (consumer, now)
            delivered.append(entry)

        return [entry.model_copy(deep=True) for entry in delivered]

    async def ack(self, group: str, entry_id: str) -> int:
        state = self._group(group)
        return 1 if state["pending"].pop(entry_id, None) is not None else 0

    async def length(self) -> int:
        return len(self._entries)

    async def pending_count(self, group: str) -> int:
        state = self._groups.get(group)
        return len(state["pending"]) if state else 0

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "redis": "memory"}


def _id_key(entry_id: str) -> Tuple[int, int]:
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def create_event_log(backend: str, redis_url: Optional[str] = None, stream_key: str = "usage_logs",
                     claim_idle_ms: int = 60000) -> EventLog:
    if backend == "memory":
        return MemoryEventLog(stream_key=stream_key, claim_idle_ms=claim_idle_ms)
    return RedisEventLog.from_url(redis_url, stream_key=stream_key, claim_idle_ms=claim_idle_ms)

"""Usage metering: size, price, persist and publish every finished call."""
import json
import asyncio
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from errors import MeteringError, MeteringPersistFailure, EventPublishFailure
from event_log import EventLog
from db import UsageStore
from models import CallContext, RequestSnapshot, ResponseSnapshot, UsageRecord, utcnow
from pricing import PricingResolver, calculate_cost

logger = logging.getLogger("runmeter.metering")


def _json_size(value: Any) -> int:
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))


def size_of_request(request: RequestSnapshot) -> int:
    """Bytes of url, method, headers, body and query as serialized on the wire.

    Parts that were sent are counted even when empty, so ``{}`` headers add
    two bytes; absent parts and an empty string body add nothing.
    """
    size = 0
    if request.url:
        size += len(request.url.encode("utf-8"))
    if request.method:
        size += len(request.method.encode("utf-8"))
    if request.headers is not None:
        size += _json_size(request.headers)
    if request.body not in (None, ""):
        size += _json_size(request.body)
    if request.query is not None:
        size += _json_size(request.query)
    return size


def size_of_response(response: Optional[ResponseSnapshot]) -> int:
    if response is None:
        return 0
    size = 0
    if response.headers is not None:
        size += _json_size(response.headers)
    if response.body not in (None, ""):
        size += _json_size(response.body)
    return size


class UsageMeter:
    """Turns a CallContext into a persisted UsageRecord plus one event."""

    def __init__(self, store: UsageStore, event_log: EventLog, pricing: PricingResolver):
        self.store = store
        self.event_log = event_log
        self.pricing = pricing

    async def log_usage(self, ctx: CallContext) -> UsageRecord:
        bytes_in = size_of_request(ctx.request)
        bytes_out = size_of_response(ctx.response)
        pricing = await self.pricing.get_pricing(ctx.api_id)
        cost = calculate_cost(pricing, ctx.duration_ms, bytes_in, bytes_out)

        record = UsageRecord(
            api_id=ctx.api_id,
            user_id=ctx.user_id,
            endpoint=ctx.endpoint,
            method=ctx.method,
            timestamp=utcnow(),
            duration_ms=ctx.duration_ms,
            bytes_in=bytes_in,
            bytes_out=bytes_out,
            status_code=ctx.status_code,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            api_key_ref=ctx.api_key_ref,
            execution_id=ctx.execution_id,
            cost=cost,
            metadata={
                "pricing": pricing.model_dump(by_alias=True),
                "userAgent": ctx.user_agent,
                "ipAddress": ctx.ip_address,
            },
        )

        # Durable write first: an event is never published for an unpersisted record
        try:
            await self.store.insert_usage_record(record)
        except MeteringPersistFailure:
            raise
        except Exception as e:
            raise MeteringPersistFailure(f"Failed to persist usage record: {e}") from e

        try:
            await self.event_log.append(record.to_event_fields())
        except Exception as e:
            raise EventPublishFailure(f"Usage record persisted but event not published: {e}") from e

        logger.info(f"Usage logged: API {ctx.api_id}, User {ctx.user_id}, Cost: ${cost}")
        return record


class MeteringQueue:
    """Bounded queue drained by a detached task.

    ``submit`` never blocks the caller: when the queue is full the call is
    dropped and counted. Failures are kept in ``recent_errors`` and passed
    to ``on_error`` when one is given.
    """

    def __init__(self, meter: UsageMeter, maxsize: int = 10000,
                 on_error: Optional[Callable[[CallContext, Exception], None]] = None,
                 error_history: int = 50):
        self.meter = meter
        self.on_error = on_error
        self._queue: "asyncio.Queue[CallContext]" = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self.recent_errors: Deque[Dict[str, Any]] = deque(maxlen=error_history)
        self.submitted = 0
        self.processed = 0
        self.dropped = 0
        self.persist_failures = 0
        self.publish_failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._drain_loop(), name="metering-queue")
        logger.info("Metering queue started")

    def submit(self, ctx: CallContext) -> bool:
        try:
            self._queue.put_nowait(ctx)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Metering queue full, dropping usage for API {ctx.api_id}")
            return False
        self.submitted += 1
        return True

    async def _drain_loop(self):
        while True:
            ctx = await self._queue.get()
            try:
                await self._process(ctx)
            finally:
                self._queue.task_done()

    async def _process(self, ctx: CallContext):
        try:
            await self.meter.log_usage(ctx)
            self.processed += 1
        except MeteringError as e:
            if isinstance(e, MeteringPersistFailure):
                self.persist_failures += 1
            elif isinstance(e, EventPublishFailure):
                self.publish_failures += 1
            self._record_error(ctx, e)
        except Exception as e:
            self._record_error(ctx, e)

    def _record_error(self, ctx: CallContext, error: Exception):
        kind = getattr(error, "kind", type(error).__name__)
        logger.error(f"Error tracking usage for API {ctx.api_id} ({kind}): {error}")
        self.recent_errors.append({
            "apiId": ctx.api_id,
            "executionId": ctx.execution_id,
            "kind": kind,
            "error": str(error),
            "timestamp": utcnow().isoformat(),
        })
        if self.on_error is not None:
            try:
                self.on_error(ctx, error)
            except Exception:
                logger.exception("Metering error callback failed")

    async def drain(self):
        """Wait until every submitted call has been metered."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0):
        if self._task is None:
            return
        if self.is_running:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Metering queue stopped with {self._queue.qsize()} calls unmetered")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Metering queue stopped")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "queued": self._queue.qsize(),
            "submitted": self.submitted,
            "processed": self.processed,
            "dropped": self.dropped,
            "persistFailures": self.persist_failures,
            "publishFailures": self.publish_failures,
            "recentErrors": list(self.recent_errors),
        }

"""Billing worker: drains the usage event stream and materializes snapshots."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from db import UsageStore
from errors import ProcessingFailure, SnapshotFailure
from event_log import EventLog
from models import StreamEntry, ensure_utc, utcnow
from realtime import RealtimeMetricsStore, counter_increments
from snapshots import at_boundary, last_closed_window, windows_to_materialize

logger = logging.getLogger("runmeter.billing")


class BillingWorker:
    """Consumer-group reader with two states, running and stopped.

    Each tick reads one batch, applies every entry to the real-time
    counters and acknowledges it only after the update succeeded, then
    materializes any hourly and daily snapshots that are due. Snapshots are
    upserted and guarded by a durable per-period marker, so ticks may land
    anywhere inside a window.
    """

    def __init__(self, event_log: EventLog, realtime: RealtimeMetricsStore, store: UsageStore,
                 group_name: str = "billing_worker", consumer_name: str = "worker_1",
                 batch_size: int = 100, processing_interval_ms: int = 5000,
                 snapshot_trigger: str = "catchup", settle_seconds: float = 60,
                 clock: Callable[[], datetime] = utcnow):
        self.event_log = event_log
        self.realtime = realtime
        self.store = store
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.processing_interval_ms = processing_interval_ms
        self.snapshot_trigger = snapshot_trigger
        self.settle = timedelta(seconds=settle_seconds)
        self._clock = clock

        self.is_running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._start_lock = asyncio.Lock()

        self.processed_count = 0
        self.failed_count = 0
        self.snapshots_written = 0
        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    async def start(self):
        async with self._start_lock:
            if self.is_running:
                logger.info("Billing worker is already running")
                return

            # A loop that was just stopped may still be finishing its batch
            await self.wait_stopped()
            await self.event_log.create_group(self.group_name, self.consumer_name)

            self.is_running = True
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self._process_loop(self._stop_event),
                                             name=f"billing-{self.consumer_name}")
        logger.info(f"Billing worker started ({self.group_name}/{self.consumer_name})")

    def stop(self):
        """Ask the loop to exit after the batch in flight."""
        if not self.is_running:
            return
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("Billing worker stopped")

    async def wait_stopped(self):
        task, self._task = self._task, None
        if task is not None:
            await task

    async def _process_loop(self, stop_event: asyncio.Event):
        interval = self.processing_interval_ms / 1000
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self):
        """One loop iteration. Never raises."""
        self.last_run_at = self._clock()
        try:
            await self.process_usage_logs()
        except Exception as e:
            self._note_error(f"Error processing usage logs: {e}")

        for materialize in (self.create_hourly_snapshots, self.create_daily_snapshots):
            try:
                await materialize()
            except SnapshotFailure as e:
                self._note_error(f"Snapshot materialization failed, retrying next tick: {e}")
            except Exception as e:
                self._note_error(f"Unexpected snapshot error: {e}")

    def _note_error(self, message: str):
        self.last_error = message
        logger.error(message)

    async def process_usage_logs(self) -> int:
        entries = await self.event_log.read_group(self.group_name, self.consumer_name, self.batch_size)
        if not entries:
            return 0

        processed = 0
        for entry in entries:
            try:
                await self.update_realtime_metrics(entry)
            except ProcessingFailure as e:
                # Left pending: the entry is delivered again on a later read
                self.failed_count += 1
                logger.error(f"Error processing message {entry.id}: {e}")
                continue

            await self.event_log.ack(self.group_name, entry.id)
            processed += 1
            logger.debug(f"Processed message {entry.id}")

        self.processed_count += processed
        return processed

    async def update_realtime_metrics(self, entry: StreamEntry):
        fields = entry.fields
        try:
            user_id = fields["userId"]
            api_id = fields["apiId"]
            increments = counter_increments(
                bytes_in=int(fields.get("bytesIn") or 0),
                bytes_out=int(fields.get("bytesOut") or 0),
                cost=float(fields.get("cost") or 0),
                duration=int(float(fields.get("duration") or 0)),
                status_code=int(fields.get("statusCode") or 0),
            )
        except (KeyError, ValueError) as e:
            raise ProcessingFailure(entry.id, f"malformed usage event: {e}") from e

        try:
            await self.realtime.increment(user_id, api_id, increments)
        except Exception as e:
            raise ProcessingFailure(entry.id, f"counter update failed: {e}") from e

    async def create_hourly_snapshots(self, now: Optional[datetime] = None) -> int:
        return await self._materialize("hourly", now)

    async def create_daily_snapshots(self, now: Optional[datetime] = None) -> int:
        return await self._materialize("daily", now)

    def _marker_name(self, period: str) -> str:
        return f"{self.group_name}:{period}"

    async def _materialize(self, period: str, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now or self._clock())
        marker = self._marker_name(period)
        last_done = await self.store.get_window_marker(marker)

        if self.snapshot_trigger == "boundary":
            if not at_boundary(period, now):
                return 0
            window = last_closed_window(period, now)
            if last_done is not None and ensure_utc(last_done) >= window.start:
                return 0
            windows = [window]
        else:
            windows = windows_to_materialize(period, now, last_done, settle=self.settle)

        written = 0
        for window in windows:
            snapshots = await self.store.aggregate_window(window)
            for snapshot in snapshots:
                await self.store.upsert_snapshot(snapshot)
            await self.store.set_window_marker(marker, window.start)
            written += len(snapshots)
            logger.info(f"Created {len(snapshots)} {period} snapshots for {window.start.isoformat()}")

        self.snapshots_written += written
        return written

    def get_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "groupName": self.group_name,
            "consumerName": self.consumer_name,
            "batchSize": self.batch_size,
            "processingIntervalMs": self.processing_interval_ms,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "processed": self.processed_count,
            "failed": self.failed_count,
            "snapshotsWritten": self.snapshots_written,
            "snapshotTrigger": self.snapshot_trigger,
            "settleSeconds": self.settle.total_seconds(),
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastError": self.last_error,
        }

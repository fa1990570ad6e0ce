"""Explicit construction of every runmeter service from settings."""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as redis

from artifacts import ArtifactStore, HttpArtifactStore
from auth import AuthManager
from billing import BillingWorker
from config import Settings
from container import ContainerEngine, DockerCliEngine, ResourceLimits
from db import UsageStore, create_usage_store
from event_log import EventLog, MemoryEventLog, RedisEventLog
from metering import MeteringQueue, UsageMeter
from models import Pricing
from pricing import PricingResolver
from realtime import MemoryRealtimeStore, RealtimeMetricsStore, RedisRealtimeStore
from sandbox import SandboxRunner

logger = logging.getLogger("runmeter.services")


@dataclass
class Services:
    settings: Settings
    store: UsageStore
    event_log: EventLog
    realtime: RealtimeMetricsStore
    artifacts: ArtifactStore
    engine: ContainerEngine
    sandbox: SandboxRunner
    pricing: PricingResolver
    meter: UsageMeter
    metering: MeteringQueue
    worker: BillingWorker
    auth: AuthManager

    async def startup(self, start_worker: Optional[bool] = None):
        await self.store.initialize()
        self.metering.start()
        if start_worker is None:
            start_worker = self.settings.RUN_BILLING_WORKER
        if start_worker:
            await self.worker.start()

    async def shutdown(self):
        self.worker.stop()
        await self.worker.wait_stopped()
        await self.metering.stop()
        await self.event_log.close()
        await self.store.close()
        if isinstance(self.artifacts, HttpArtifactStore):
            self.artifacts.close()

    async def health(self) -> Dict[str, Any]:
        return {
            "eventLog": await self.event_log.health_check(),
            "database": await self.store.health_check(),
            "metering": self.metering.get_stats(),
        }


def default_pricing(settings: Settings) -> Pricing:
    return Pricing(
        base_price=settings.DEFAULT_BASE_PRICE,
        duration_price=settings.DEFAULT_DURATION_PRICE,
        data_price=settings.DEFAULT_DATA_PRICE,
    )


def build_services(settings: Settings, **overrides) -> Services:
    """Wire the service graph.

    Any collaborator can be replaced through keyword overrides (``store``,
    ``event_log``, ``realtime``, ``artifacts``, ``engine``, ``clock``).
    """
    store = overrides.get("store") or create_usage_store(settings)

    event_log = overrides.get("event_log")
    realtime = overrides.get("realtime")
    if event_log is None or realtime is None:
        if settings.EVENT_LOG_BACKEND == "memory":
            event_log = event_log or MemoryEventLog(settings.EVENT_STREAM_KEY, settings.BILLING_CLAIM_IDLE_MS)
            realtime = realtime or MemoryRealtimeStore(settings.REALTIME_TTL_SECONDS)
        else:
            # Counters live next to the stream, on the same connection pool
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            event_log = event_log or RedisEventLog(client, settings.EVENT_STREAM_KEY, settings.BILLING_CLAIM_IDLE_MS)
            realtime = realtime or RedisRealtimeStore(client, settings.REALTIME_TTL_SECONDS)

    artifacts = overrides.get("artifacts")
    if artifacts is None:
        artifacts = HttpArtifactStore(
            settings.ARTIFACT_GATEWAY_URL,
            timeout=settings.ARTIFACT_TIMEOUT,
            retry_attempts=settings.ARTIFACT_RETRY_ATTEMPTS,
            verify_hash=settings.VERIFY_CONTENT_HASH,
            cache_size=settings.ARTIFACT_CACHE_SIZE,
        )

    engine = overrides.get("engine") or DockerCliEngine(settings.DOCKER_BINARY)
    sandbox = SandboxRunner(
        artifacts,
        engine,
        ResourceLimits.from_settings(settings),
        base_image=settings.BASE_IMAGE,
        build_timeout_ms=settings.BUILD_TIMEOUT_MS,
        concurrency=settings.SANDBOX_CONCURRENCY,
        workdir=settings.SANDBOX_WORKDIR,
        code_filename=settings.CODE_FILENAME,
        runtime_command=settings.RUNTIME_COMMAND,
    )

    pricing = PricingResolver(default_pricing(settings), lookup=store.get_api,
                              ttl_seconds=settings.PRICING_CACHE_TTL)
    meter = UsageMeter(store, event_log, pricing)
    metering = MeteringQueue(meter, maxsize=settings.METERING_QUEUE_SIZE)

    worker_kwargs = {}
    if "clock" in overrides:
        worker_kwargs["clock"] = overrides["clock"]
    worker = BillingWorker(
        event_log,
        realtime,
        store,
        group_name=settings.BILLING_GROUP,
        consumer_name=settings.BILLING_CONSUMER,
        batch_size=settings.BILLING_BATCH_SIZE,
        processing_interval_ms=settings.BILLING_INTERVAL_MS,
        snapshot_trigger=settings.SNAPSHOT_TRIGGER,
        settle_seconds=settings.SNAPSHOT_SETTLE_SECONDS,
        **worker_kwargs
    )

    auth = AuthManager(settings.TOKEN_SECRET, settings.JWT_ALGORITHM, settings.ALLOW_DEFAULT_TOKEN)

    logger.info(f"Services built: storage={settings.STORAGE_BACKEND}, events={settings.EVENT_LOG_BACKEND}")
    return Services(
        settings=settings,
        store=store,
        event_log=event_log,
        realtime=realtime,
        artifacts=artifacts,
        engine=engine,
        sandbox=sandbox,
        pricing=pricing,
        meter=meter,
        metering=metering,
        worker=worker,
        auth=auth,
    )

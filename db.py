"""Usage record and snapshot storage with MongoDB, CSV fallback and an in-memory backend."""
import logging
import csv
import os
import asyncio
import time
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError, NetworkTimeout
from motor.motor_asyncio import AsyncIOMotorClient

from config import Settings
from errors import MeteringPersistFailure, SnapshotFailure
from models import ApiRecord, Pricing, UsageRecord, UsageSnapshot, UsageSummary, utcnow
from snapshots import Window, aggregate_window, histogram

logger = logging.getLogger("runmeter.db")

USAGE_RETENTION_SECONDS = 90 * 24 * 3600

LOOKBACK_PERIODS = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def lookback_start(period: str, now: Optional[datetime] = None) -> datetime:
    """Start of a look-back period; unknown periods mean 24h."""
    now = now or utcnow()
    return now - LOOKBACK_PERIODS.get(period, LOOKBACK_PERIODS["24h"])


def api_record_from_document(doc: Dict[str, Any]) -> ApiRecord:
    current = doc.get("currentVersion")
    code_ref = None
    for version in doc.get("versions") or []:
        if version.get("version") == current:
            code_ref = version.get("code")
            break
    pricing = doc.get("pricing")
    return ApiRecord(
        id=str(doc.get("_id")),
        name=doc.get("name", ""),
        current_version=current,
        code_ref=code_ref,
        pricing=Pricing(**pricing) if isinstance(pricing, dict) else None,
    )


class UsageStore:
    """Persistence contract for metering and billing."""

    async def initialize(self):
        return None

    async def insert_usage_record(self, record: UsageRecord) -> None:
        raise NotImplementedError

    async def aggregate_window(self, window: Window) -> List[UsageSnapshot]:
        raise NotImplementedError

    async def upsert_snapshot(self, snapshot: UsageSnapshot) -> None:
        raise NotImplementedError

    async def get_snapshots(self, period: Optional[str] = None, user_id: Optional[str] = None,
                            api_id: Optional[str] = None, limit: int = 100) -> List[UsageSnapshot]:
        raise NotImplementedError

    async def get_window_marker(self, name: str) -> Optional[datetime]:
        raise NotImplementedError

    async def set_window_marker(self, name: str, window_start: datetime) -> None:
        raise NotImplementedError

    async def get_api(self, api_id: str) -> Optional[ApiRecord]:
        raise NotImplementedError

    async def user_usage(self, user_id: str, period: str = "24h") -> List[UsageSummary]:
        raise NotImplementedError

    async def api_usage(self, api_id: str, period: str = "24h") -> List[UsageSummary]:
        raise NotImplementedError

    async def log_connection_event(self, event_type: str, status: str, message: str,
                                   metadata: Dict = None) -> bool:
        logger.info(f"{event_type} [{status}]: {message}")
        return True

    async def health_check(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        return None


def _summary_group_stage(group_key: str) -> Dict[str, Any]:
    return {
        "$group": {
            "_id": f"${group_key}",
            "totalRequests": {"$sum": 1},
            "totalDuration": {"$sum": "$durationMs"},
            "totalBytesIn": {"$sum": "$bytesIn"},
            "totalBytesOut": {"$sum": "$bytesOut"},
            "totalCost": {"$sum": "$cost"},
            "averageDuration": {"$avg": "$durationMs"},
            "errorCount": {"$sum": {"$cond": [{"$gte": ["$statusCode", 400]}, 1, 0]}},
            "successCount": {"$sum": {"$cond": [{"$lt": ["$statusCode", 400]}, 1, 0]}},
        }
    }


class Database(UsageStore):
    """MongoDB usage store with connection retries and a CSV ledger fallback."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._async_client = None
        self._use_csv_fallback = False
        self._csv_dir = settings.CSV_FALLBACK_DIR
        self._csv_lock = asyncio.Lock()
        self._connection_attempts = 0
        self._max_connection_attempts = max(1, settings.DB_MAX_RETRIES)
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        """Check if database is connected."""
        return self._is_connected and not self._use_csv_fallback

    @property
    def csv_fallback_active(self) -> bool:
        return self._use_csv_fallback

    @property
    def db(self):
        return self._async_client[self.settings.DB_NAME]

    async def initialize(self):
        """Connect to MongoDB, retrying before switching to the CSV ledger."""
        timeout_ms = self.settings.DB_CONNECTION_TIMEOUT * 1000
        while True:
            self._connection_attempts += 1
            try:
                self._async_client = AsyncIOMotorClient(
                    self.settings.MONGO_URI,
                    maxPoolSize=50,
                    minPoolSize=5,
                    serverSelectionTimeoutMS=timeout_ms,
                    connectTimeoutMS=timeout_ms,
                    socketTimeoutMS=timeout_ms,
                    tz_aware=True,
                )

                await asyncio.wait_for(
                    self._async_client.admin.command("ping"),
                    timeout=self.settings.DB_CONNECTION_TIMEOUT + 1
                )

                self._is_connected = True
                self._use_csv_fallback = False
                logger.info("Successfully connected to MongoDB")

                await self._create_indexes()
                return

            except (ServerSelectionTimeoutError, NetworkTimeout, asyncio.TimeoutError) as e:
                retry = await self._handle_connection_failure(f"Database connection timeout: {e}")
            except PyMongoError as e:
                retry = await self._handle_connection_failure(f"Database connection failed: {e}")
            if not retry:
                return

    async def _handle_connection_failure(self, error_msg: str) -> bool:
        """Returns True when another connection attempt should be made."""
        logger.warning(error_msg)

        if self._connection_attempts < self._max_connection_attempts:
            logger.info(f"Retrying connection (attempt {self._connection_attempts}/{self._max_connection_attempts})...")
            await asyncio.sleep(2)
            return True

        logger.error("All database connection attempts failed. Switching to CSV fallback mode.")
        self._is_connected = False
        self._use_csv_fallback = True
        self._setup_csv_fallback()

        await self._log_to_csv("connection_logs", {
            "timestamp": utcnow().isoformat(),
            "event_type": "database_connection_failed",
            "status": "error",
            "message": error_msg,
            "attempt": self._connection_attempts
        })
        return False

    def _setup_csv_fallback(self):
        """Set up CSV fallback directory."""
        try:
            os.makedirs(self._csv_dir, exist_ok=True)
            logger.info(f"CSV fallback enabled: usage records stored in {self._csv_dir}")
        except OSError as e:
            logger.error(f"Failed to create CSV fallback directory: {e}")

    async def _create_indexes(self):
        """Create indexes for the usage and snapshot collections."""
        try:
            await self.db.usage_logs.create_indexes([
                IndexModel([("userId", ASCENDING), ("apiId", ASCENDING), ("timestamp", DESCENDING)]),
                IndexModel([("apiId", ASCENDING), ("timestamp", DESCENDING)]),
                IndexModel([("timestamp", ASCENDING)], expireAfterSeconds=USAGE_RETENTION_SECONDS),
            ])
            await self.db.usage_snapshots.create_indexes([
                IndexModel(
                    [("userId", ASCENDING), ("apiId", ASCENDING), ("period", ASCENDING), ("periodStart", ASCENDING)],
                    unique=True
                ),
                IndexModel([("period", ASCENDING), ("periodStart", DESCENDING)]),
            ])
            logger.info("Database indexes created successfully")
        except PyMongoError as e:
            logger.error(f"Error creating database indexes: {e}")

    async def insert_usage_record(self, record: UsageRecord) -> None:
        """Durably write one usage record, falling back to the CSV ledger."""
        doc = record.to_document()
        if self.is_connected:
            try:
                await self.db.usage_logs.insert_one(doc)
                return
            except PyMongoError as e:
                logger.error(f"MongoDB write failed for usage record {record.execution_id}: {e}")

        if not await self._log_to_csv("usage_logs", doc):
            raise MeteringPersistFailure(f"Usage record {record.execution_id} could not be persisted")

    async def aggregate_window(self, window: Window) -> List[UsageSnapshot]:
        if not self.is_connected:
            raise SnapshotFailure("Snapshots are unavailable while the CSV fallback is active")

        pipeline = [
            {"$match": {"timestamp": {"$gte": window.start, "$lt": window.end}}},
            {
                "$group": {
                    "_id": {"userId": "$userId", "apiId": "$apiId"},
                    "requestCount": {"$sum": 1},
                    "totalDuration": {"$sum": "$durationMs"},
                    "totalBytesIn": {"$sum": "$bytesIn"},
                    "totalBytesOut": {"$sum": "$bytesOut"},
                    "totalCost": {"$sum": "$cost"},
                    "errorCount": {"$sum": {"$cond": [{"$gte": ["$statusCode", 400]}, 1, 0]}},
                    "statusCodes": {"$push": "$statusCode"},
                    "endpoints": {"$push": "$endpoint"},
                }
            },
            {"$sort": {"_id.userId": 1, "_id.apiId": 1}},
        ]
        try:
            groups = await self.db.usage_logs.aggregate(pipeline).to_list(None)
        except PyMongoError as e:
            raise SnapshotFailure(f"Aggregation failed for {window.period} window {window.start}: {e}") from e

        snapshots = []
        for data in groups:
            count = data["requestCount"]
            snapshots.append(UsageSnapshot(
                user_id=data["_id"]["userId"],
                api_id=data["_id"]["apiId"],
                period=window.period,
                period_start=window.start,
                period_end=window.end,
                request_count=count,
                total_duration=data["totalDuration"],
                total_bytes_in=data["totalBytesIn"],
                total_bytes_out=data["totalBytesOut"],
                total_cost=round(data["totalCost"], 6),
                average_duration=data["totalDuration"] / count if count else 0.0,
                error_count=data["errorCount"],
                success_count=count - data["errorCount"],
                status_codes=histogram(data["statusCodes"]),
                endpoints=histogram(data["endpoints"]),
            ))
        return snapshots

    async def upsert_snapshot(self, snapshot: UsageSnapshot) -> None:
        doc = snapshot.model_dump(by_alias=True)
        doc["updatedAt"] = utcnow()
        try:
            await self.db.usage_snapshots.replace_one(
                {
                    "userId": snapshot.user_id,
                    "apiId": snapshot.api_id,
                    "period": snapshot.period,
                    "periodStart": snapshot.period_start,
                },
                doc,
                upsert=True
            )
        except PyMongoError as e:
            raise SnapshotFailure(f"Failed to write snapshot {snapshot.key()}: {e}") from e

    async def get_snapshots(self, period: Optional[str] = None, user_id: Optional[str] = None,
                            api_id: Optional[str] = None, limit: int = 100) -> List[UsageSnapshot]:
        if not self.is_connected:
            return []
        query = {}
        if period:
            query["period"] = period
        if user_id:
            query["userId"] = user_id
        if api_id:
            query["apiId"] = api_id
        cursor = self.db.usage_snapshots.find(query, {"_id": 0, "updatedAt": 0}).sort("periodStart", -1).limit(limit)
        return [UsageSnapshot(**doc) for doc in await cursor.to_list(limit)]

    async def get_window_marker(self, name: str) -> Optional[datetime]:
        if not self.is_connected:
            raise SnapshotFailure("Window markers are unavailable while the CSV fallback is active")
        doc = await self.db.billing_markers.find_one({"_id": name})
        return doc["lastWindowStart"] if doc else None

    async def set_window_marker(self, name: str, window_start: datetime) -> None:
        await self.db.billing_markers.update_one(
            {"_id": name},
            {"$set": {"lastWindowStart": window_start, "updatedAt": utcnow()}},
            upsert=True
        )

    async def get_api(self, api_id: str) -> Optional[ApiRecord]:
        if not self.is_connected:
            return None
        try:
            key = ObjectId(api_id)
        except (InvalidId, TypeError):
            key = api_id
        doc = await self.db.apis.find_one({"_id": key})
        return api_record_from_document(doc) if doc else None

    async def _usage_summary(self, match: Dict[str, Any], group_key: str, field: str) -> List[UsageSummary]:
        if not self.is_connected:
            return []
        pipeline = [{"$match": match}, _summary_group_stage(group_key), {"$sort": {"_id": 1}}]
        results = await self.db.usage_logs.aggregate(pipeline).to_list(None)
        summaries = []
        for data in results:
            group_id = data.pop("_id")
            summaries.append(UsageSummary(**{field: group_id}, **data))
        return summaries

    async def user_usage(self, user_id: str, period: str = "24h") -> List[UsageSummary]:
        match = {"userId": user_id, "timestamp": {"$gte": lookback_start(period)}}
        return await self._usage_summary(match, "apiId", "api_id")

    async def api_usage(self, api_id: str, period: str = "24h") -> List[UsageSummary]:
        match = {"apiId": api_id, "timestamp": {"$gte": lookback_start(period)}}
        return await self._usage_summary(match, "userId", "user_id")

    async def log_connection_event(self, event_type: str, status: str, message: str,
                                   metadata: Dict = None) -> bool:
        """Log a system event with fallback handling."""
        event_data = {
            "timestamp": utcnow().isoformat(),
            "event_type": event_type,
            "status": status,
            "message": message,
            "metadata": metadata or {}
        }
        if self.is_connected:
            try:
                await self.db.connection_logs.insert_one(event_data)
                return True
            except PyMongoError as e:
                logger.error(f"MongoDB logging failed for connection_logs: {e}")
        return await self._log_to_csv("connection_logs", event_data)

    async def _log_to_csv(self, collection_name: str, data: Dict) -> bool:
        """Append data to a CSV file."""
        if not self._csv_dir:
            return False

        async with self._csv_lock:
            try:
                os.makedirs(self._csv_dir, exist_ok=True)
                csv_file = os.path.join(self._csv_dir, f"{collection_name}.csv")
                file_exists = os.path.exists(csv_file)

                flattened_data = self._flatten_dict(data)

                with open(csv_file, 'a', newline='', encoding='utf-8') as f:
                    if flattened_data:
                        writer = csv.DictWriter(f, fieldnames=flattened_data.keys())
                        if not file_exists:
                            writer.writeheader()
                        writer.writerow(flattened_data)

                return True
            except OSError as e:
                logger.error(f"CSV logging failed for {collection_name}: {e}")
                return False

    def _flatten_dict(self, data: Dict, parent_key: str = '', sep: str = '.') -> Dict:
        """Flatten nested dictionary for CSV storage."""
        items = []
        for k, v in data.items():
            new_key = f"{parent_key}{sep}{k}" if parent_key else k
            if isinstance(v, dict):
                items.extend(self._flatten_dict(v, new_key, sep=sep).items())
            elif isinstance(v, list):
                items.append((new_key, json.dumps(v, default=str)))
            elif isinstance(v, datetime):
                items.append((new_key, v.isoformat()))
            else:
                items.append((new_key, v))
        return dict(items)

    async def health_check(self) -> Dict[str, Any]:
        """Comprehensive health check."""
        health = {
            "database_connected": self.is_connected,
            "csv_fallback_active": self._use_csv_fallback,
            "connection_attempts": self._connection_attempts
        }

        if self.is_connected:
            try:
                start_time = time.time()
                await self._async_client.admin.command('ping')
                health["db_response_time_ms"] = (time.time() - start_time) * 1000
                health["status"] = "healthy"
            except PyMongoError as e:
                health["status"] = "degraded"
                health["error"] = str(e)
        else:
            health["status"] = "fallback_mode"
            if os.path.exists(self._csv_dir):
                health["csv_directory_writable"] = os.access(self._csv_dir, os.W_OK)

        return health

    async def close(self):
        if self._async_client is not None:
            self._async_client.close()


class MemoryUsageStore(UsageStore):
    """Process-local usage store for development and tests."""

    def __init__(self):
        self.records: List[UsageRecord] = []
        self.snapshots: Dict[tuple, UsageSnapshot] = {}
        self.markers: Dict[str, datetime] = {}
        self.apis: Dict[str, ApiRecord] = {}
        self.events: List[Dict[str, Any]] = []

    def register_api(self, api: ApiRecord):
        self.apis[api.id] = api

    async def insert_usage_record(self, record: UsageRecord) -> None:
        self.records.append(record)

    async def aggregate_window(self, window: Window) -> List[UsageSnapshot]:
        return aggregate_window(window, self.records)

    async def upsert_snapshot(self, snapshot: UsageSnapshot) -> None:
        self.snapshots[snapshot.key()] = snapshot

    async def get_snapshots(self, period: Optional[str] = None, user_id: Optional[str] = None,
                            api_id: Optional[str] = None, limit: int = 100) -> List[UsageSnapshot]:
        matches = [
            s for s in self.snapshots.values()
            if (not period or s.period == period)
            and (not user_id or s.user_id == user_id)
            and (not api_id or s.api_id == api_id)
        ]
        matches.sort(key=lambda s: s.period_start, reverse=True)
        return matches[:limit]

    async def get_window_marker(self, name: str) -> Optional[datetime]:
        return self.markers.get(name)

    async def set_window_marker(self, name: str, window_start: datetime) -> None:
        self.markers[name] = window_start

    async def get_api(self, api_id: str) -> Optional[ApiRecord]:
        return self.apis.get(api_id)

    def _summarize(self, records: List[UsageRecord], key: str) -> List[UsageSummary]:
        groups: Dict[str, List[UsageRecord]] = {}
        for record in records:
            groups.setdefault(getattr(record, key), []).append(record)
        summaries = []
        for group_id, group in sorted(groups.items()):
            total_duration = sum(r.duration_ms for r in group)
            errors = sum(1 for r in group if r.status_code >= 400)
            summaries.append(UsageSummary(**{
                key: group_id,
                "total_requests": len(group),
                "total_duration": total_duration,
                "total_bytes_in": sum(r.bytes_in for r in group),
                "total_bytes_out": sum(r.bytes_out for r in group),
                "total_cost": round(sum(r.cost for r in group), 6),
                "average_duration": total_duration / len(group),
                "error_count": errors,
                "success_count": len(group) - errors,
            }))
        return summaries

    async def user_usage(self, user_id: str, period: str = "24h") -> List[UsageSummary]:
        start = lookback_start(period)
        records = [r for r in self.records if r.user_id == user_id and r.timestamp >= start]
        return self._summarize(records, "api_id")

    async def api_usage(self, api_id: str, period: str = "24h") -> List[UsageSummary]:
        start = lookback_start(period)
        records = [r for r in self.records if r.api_id == api_id and r.timestamp >= start]
        return self._summarize(records, "user_id")

    async def log_connection_event(self, event_type: str, status: str, message: str,
                                   metadata: Dict = None) -> bool:
        self.events.append({"event_type": event_type, "status": status, "message": message,
                            "metadata": metadata or {}})
        return True

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "database_connected": True, "backend": "memory",
                "records": len(self.records), "snapshots": len(self.snapshots)}


def create_usage_store(settings: Settings) -> UsageStore:
    if settings.STORAGE_BACKEND == "memory":
        return MemoryUsageStore()
    return Database(settings)

"""Data models for runmeter."""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
PERIODS = ("hourly", "daily")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CamelModel(BaseModel):
    """Snake-case fields, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InvocationPayload(CamelModel):
    """Body accepted by the invocation endpoint."""
    method: str = "GET"
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def check_method(cls, value: str) -> str:
        value = value.upper()
        if value not in HTTP_METHODS:
            raise ValueError(f"method must be one of {', '.join(HTTP_METHODS)}")
        return value


class ExecutionRequest(CamelModel):
    """Request handed to the sandboxed code, serialized as request.json."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    method: str = "GET"
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    url: str = ""
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ExecutionResult(CamelModel):
    """Outcome of one sandboxed execution."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    execution_id: str
    success: bool
    response: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    execution_time_ms: int = 0
    memory_usage_bytes: int = 0
    exit_code: Optional[int] = None

    def to_response(self) -> Dict[str, Any]:
        """Shape returned by the invocation endpoint."""
        data = {
            "success": self.success,
            "executionId": self.execution_id,
            "logs": self.logs,
            "executionTime": self.execution_time_ms,
            "memoryUsage": self.memory_usage_bytes,
        }
        if self.success:
            data["response"] = self.response
        else:
            data["error"] = self.error
            data["errorKind"] = self.error_kind
        return data


class RequestSnapshot(BaseModel):
    url: str = ""
    method: str = ""
    headers: Optional[Dict[str, Any]] = None
    body: Any = None
    query: Optional[Dict[str, Any]] = None


class ResponseSnapshot(BaseModel):
    headers: Optional[Dict[str, Any]] = None
    body: Any = None


class CallContext(BaseModel):
    """Everything the usage meter needs to know about one finished call."""
    api_id: str
    user_id: str
    endpoint: str
    method: str
    duration_ms: int = 0
    status_code: int = 200
    request: RequestSnapshot = Field(default_factory=RequestSnapshot)
    response: Optional[ResponseSnapshot] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    api_key_ref: Optional[str] = None
    execution_id: Optional[str] = None


class Pricing(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    base_price: float = Field(ge=0)
    duration_price: float = Field(ge=0)
    data_price: float = Field(ge=0)


class UsageRecord(CamelModel):
    """One metered call. Immutable once persisted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    api_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    endpoint: str
    method: str
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: int = Field(ge=0)
    bytes_in: int = Field(ge=0)
    bytes_out: int = Field(ge=0)
    status_code: int
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    api_key_ref: Optional[str] = None
    execution_id: Optional[str] = None
    cost: float = Field(ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_document(self) -> Dict[str, Any]:
        """Document stored in the usage collection."""
        return self.model_dump(by_alias=True)

    def to_event_fields(self) -> Dict[str, str]:
        """Flat field map appended to the event log."""
        return {
            "apiId": self.api_id,
            "userId": self.user_id,
            "endpoint": self.endpoint,
            "method": self.method,
            "timestamp": self.timestamp.isoformat(),
            "duration": str(self.duration_ms),
            "bytesIn": str(self.bytes_in),
            "bytesOut": str(self.bytes_out),
            "statusCode": str(self.status_code),
            "ipAddress": self.ip_address or "",
            "userAgent": self.user_agent or "",
            "apiKey": self.api_key_ref or "",
            "executionId": self.execution_id or "",
            "cost": repr(self.cost),
            "metadata": json.dumps(self.metadata, sort_keys=True, default=str),
        }

    @classmethod
    def from_event_fields(cls, fields: Dict[str, str]) -> "UsageRecord":
        """Rebuild a record from its event-log field map."""
        try:
            metadata = json.loads(fields.get("metadata") or "{}")
        except json.JSONDecodeError:
            metadata = {}
        return cls(
            api_id=fields["apiId"],
            user_id=fields["userId"],
            endpoint=fields.get("endpoint", ""),
            method=fields.get("method", ""),
            timestamp=datetime.fromisoformat(fields["timestamp"]),
            duration_ms=int(float(fields.get("duration", 0))),
            bytes_in=int(fields.get("bytesIn", 0)),
            bytes_out=int(fields.get("bytesOut", 0)),
            status_code=int(fields.get("statusCode", 0)),
            ip_address=fields.get("ipAddress") or None,
            user_agent=fields.get("userAgent") or None,
            api_key_ref=fields.get("apiKey") or None,
            execution_id=fields.get("executionId") or None,
            cost=float(fields.get("cost", 0)),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


class StreamEntry(BaseModel):
    """An event as delivered by the event log."""
    id: str
    fields: Dict[str, str]


class UsageSnapshot(CamelModel):
    """Aggregate of one (user, api) pair over one hourly or daily window."""
    user_id: str
    api_id: str
    period: str
    period_start: datetime
    period_end: datetime
    request_count: int = 0
    total_duration: int = 0
    total_bytes_in: int = 0
    total_bytes_out: int = 0
    total_cost: float = 0.0
    average_duration: float = 0.0
    error_count: int = 0
    success_count: int = 0
    status_codes: Dict[str, int] = Field(default_factory=dict)
    endpoints: Dict[str, int] = Field(default_factory=dict)

    @field_validator("period")
    @classmethod
    def check_period(cls, value: str) -> str:
        if value not in PERIODS:
            raise ValueError(f"period must be one of {', '.join(PERIODS)}")
        return value

    def key(self) -> tuple:
        return (self.user_id, self.api_id, self.period, self.period_start)


class RealtimeCounter(CamelModel):
    """Live running totals for one (user, api) pair."""
    requests: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    cost: float = 0.0
    duration: int = 0
    errors: int = 0
    success: int = 0


class UsageSummary(CamelModel):
    """Usage of one API (or one user) over a look-back period."""
    api_id: Optional[str] = None
    user_id: Optional[str] = None
    total_requests: int = 0
    total_duration: int = 0
    total_bytes_in: int = 0
    total_bytes_out: int = 0
    total_cost: float = 0.0
    average_duration: float = 0.0
    error_count: int = 0
    success_count: int = 0


class ApiRecord(CamelModel):
    """Read-only view of a tenant API as stored by the catalog."""
    id: str
    name: str = ""
    current_version: Optional[str] = None
    code_ref: Optional[str] = None
    pricing: Optional[Pricing] = None


class CallerIdentity(BaseModel):
    """Identity resolved from the caller's token."""
    user_id: str
    project_id: str
    api_key_ref: Optional[str] = None

"""
Unit tests for data models and the event wire shape.
"""

import json
import pytest
from datetime import datetime, timezone
from pydantic import ValidationError

from models import ExecutionResult, InvocationPayload, UsageRecord, UsageSnapshot


def make_record(**overrides) -> UsageRecord:
    values = dict(
        api_id="api-1", user_id="user-1", endpoint="/api/executor/api-1", method="POST",
        timestamp=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
        duration_ms=150, bytes_in=1024, bytes_out=512, status_code=200,
        ip_address="10.0.0.1", user_agent="pytest", api_key_ref="key-1",
        execution_id="exec-1", cost=0.001017, metadata={"pricing": {"basePrice": 0.001}},
    )
    values.update(overrides)
    return UsageRecord(**values)


class TestUsageRecord:
    """Test UsageRecord invariants."""

    def test_negative_cost_rejected(self):
        """Cost must not be negative."""
        with pytest.raises(ValidationError):
            make_record(cost=-0.1)

    def test_negative_duration_rejected(self):
        """Duration must not be negative."""
        with pytest.raises(ValidationError):
            make_record(duration_ms=-1)

    def test_ids_required(self):
        """apiId and userId must be non-empty."""
        with pytest.raises(ValidationError):
            make_record(api_id="")
        with pytest.raises(ValidationError):
            make_record(user_id="")

    def test_record_is_immutable(self):
        """Records cannot be changed after creation."""
        record = make_record()
        with pytest.raises(ValidationError):
            record.cost = 1.0

    def test_naive_timestamp_treated_as_utc(self):
        """Naive timestamps are normalized to UTC."""
        record = make_record(timestamp=datetime(2024, 5, 1, 12, 30))
        assert record.timestamp.tzinfo is not None
        assert record.timestamp.utcoffset().total_seconds() == 0

    def test_document_uses_camel_case(self):
        """Stored documents use camelCase field names."""
        doc = make_record().to_document()
        assert doc["apiId"] == "api-1"
        assert doc["durationMs"] == 150
        assert doc["apiKeyRef"] == "key-1"


class TestEventFields:
    """Test the flat event wire shape."""

    def test_all_values_are_strings(self):
        """Every event field is a string."""
        fields = make_record().to_event_fields()
        assert all(isinstance(v, str) for v in fields.values())

    def test_wire_field_names(self):
        """The event carries exactly the documented fields."""
        fields = make_record().to_event_fields()
        assert set(fields) == {
            "apiId", "userId", "endpoint", "method", "timestamp", "duration", "bytesIn",
            "bytesOut", "statusCode", "ipAddress", "userAgent", "apiKey", "executionId",
            "cost", "metadata",
        }
        assert json.loads(fields["metadata"]) == {"pricing": {"basePrice": 0.001}}

    def test_parse_back(self):
        """A record rebuilt from its event fields equals the original."""
        record = make_record()
        assert UsageRecord.from_event_fields(record.to_event_fields()) == record

    def test_empty_optionals_parse_as_none(self):
        """Blank optional fields become None."""
        record = make_record(ip_address=None, api_key_ref=None)
        parsed = UsageRecord.from_event_fields(record.to_event_fields())
        assert parsed.ip_address is None
        assert parsed.api_key_ref is None


class TestExecutionResult:
    """Test the invocation response shape."""

    def test_success_shape(self):
        """Successful results expose the response, not an error."""
        data = ExecutionResult(execution_id="e", success=True, response={"a": 1}).to_response()
        assert data["response"] == {"a": 1}
        assert "error" not in data
        assert set(data) >= {"success", "executionId", "logs", "executionTime", "memoryUsage"}

    def test_failure_shape(self):
        """Failed results expose the error and its kind."""
        data = ExecutionResult(execution_id="e", success=False, error="boom", error_kind="runtime_crash").to_response()
        assert data["error"] == "boom"
        assert data["errorKind"] == "runtime_crash"
        assert "response" not in data


class TestInvocationPayload:
    """Test invocation payload validation."""

    def test_defaults(self):
        """Missing fields take their defaults."""
        payload = InvocationPayload()
        assert payload.method == "GET"
        assert payload.headers == {}

    def test_method_upper_cased(self):
        """Methods are case-insensitive."""
        assert InvocationPayload(method="post").method == "POST"

    def test_unknown_method_rejected(self):
        """Only the five supported methods are accepted."""
        with pytest.raises(ValidationError):
            InvocationPayload(method="TRACE")


class TestUsageSnapshot:
    """Test snapshot validation."""

    def test_unknown_period_rejected(self):
        """Only hourly and daily periods exist."""
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            UsageSnapshot(user_id="u", api_id="a", period="weekly", period_start=now, period_end=now)

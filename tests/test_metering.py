"""
Tests for the usage meter and the detached metering queue.
"""

import pytest
from unittest.mock import AsyncMock

from errors import EventPublishFailure, MeteringPersistFailure
from metering import MeteringQueue, UsageMeter, size_of_request, size_of_response
from models import CallContext, Pricing, RequestSnapshot, ResponseSnapshot, UsageRecord
from pricing import PricingResolver

DEFAULTS = Pricing(base_price=0.001, duration_price=0.0001, data_price=0.000001)


def make_context(**overrides) -> CallContext:
    values = dict(
        api_id="api-1",
        user_id="user-1",
        endpoint="/api/executor/api-1",
        method="POST",
        duration_ms=150,
        status_code=200,
        request=RequestSnapshot(url="/api/executor/api-1", method="POST",
                                headers={"content-type": "application/json"},
                                body={"method": "GET"}, query={}),
        response=ResponseSnapshot(headers={"content-type": "application/json"}, body={"success": True}),
        ip_address="127.0.0.1",
        user_agent="pytest",
        api_key_ref="key-1",
        execution_id="exec-1",
    )
    values.update(overrides)
    return CallContext(**values)


@pytest.fixture
def meter(usage_store, event_log):
    return UsageMeter(usage_store, event_log, PricingResolver(DEFAULTS, lookup=usage_store.get_api))


class TestSizing:
    """Test request and response byte sizes."""

    def test_request_size(self):
        """Url, method and compact JSON of headers, body and query are summed."""
        request = RequestSnapshot(url="/x", method="GET", headers={"a": "b"}, body={"k": 1}, query={"q": "é"})
        expected = len("/x") + len("GET") + len('{"a":"b"}') + len('{"k":1}') + len('{"q":"é"}'.encode("utf-8"))
        assert size_of_request(request) == expected

    def test_missing_parts_not_counted(self):
        """Absent parts and an empty string body add nothing."""
        assert size_of_request(RequestSnapshot()) == 0
        assert size_of_request(RequestSnapshot(url="/x", body="")) == 2
        assert size_of_response(None) == 0
        assert size_of_response(ResponseSnapshot()) == 0

    def test_empty_containers_counted(self):
        """Empty headers, body and query objects were sent and are counted."""
        request = RequestSnapshot(url="/x", method="GET", headers={}, body={}, query={})
        assert size_of_request(request) == 11
        assert size_of_response(ResponseSnapshot(headers={}, body=None)) == 2

    def test_response_size(self):
        """Headers and body of the response are counted."""
        response = ResponseSnapshot(headers={"h": "v"}, body=[1, 2])
        assert size_of_response(response) == len('{"h":"v"}') + len("[1,2]")


class TestUsageMeter:
    """Test persistence, publication and pricing of one call."""

    @pytest.mark.asyncio
    async def test_persists_then_publishes(self, meter, usage_store, event_log):
        """One record is stored and one matching event appended."""
        record = await meter.log_usage(make_context())

        assert usage_store.records == [record]
        await event_log.create_group("g", "c")
        entries = await event_log.read_group("g", "c", 10)
        assert len(entries) == 1
        assert UsageRecord.from_event_fields(entries[0].fields) == record

    @pytest.mark.asyncio
    async def test_record_fields(self, meter):
        """The record carries sizes, cost and metadata."""
        ctx = make_context()
        record = await meter.log_usage(ctx)

        assert record.bytes_in == size_of_request(ctx.request)
        assert record.bytes_out == size_of_response(ctx.response)
        assert record.cost >= DEFAULTS.base_price
        assert record.execution_id == "exec-1"
        assert record.api_key_ref == "key-1"
        assert record.metadata["pricing"] == {"basePrice": 0.001, "durationPrice": 0.0001, "dataPrice": 0.000001}
        assert record.metadata["userAgent"] == "pytest"

    @pytest.mark.asyncio
    async def test_persist_failure_publishes_nothing(self, usage_store, event_log):
        """No event is published for a record that was not stored."""
        usage_store.insert_usage_record = AsyncMock(side_effect=RuntimeError("disk full"))
        meter = UsageMeter(usage_store, event_log, PricingResolver(DEFAULTS))

        with pytest.raises(MeteringPersistFailure):
            await meter.log_usage(make_context())
        assert await event_log.length() == 0

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_record(self, usage_store, event_log):
        """A failed publish leaves the stored record in place."""
        event_log.append = AsyncMock(side_effect=ConnectionError("redis down"))
        meter = UsageMeter(usage_store, event_log, PricingResolver(DEFAULTS))

        with pytest.raises(EventPublishFailure) as info:
            await meter.log_usage(make_context())

        assert info.value.kind == "event_publish_failure"
        assert len(usage_store.records) == 1


class TestMeteringQueue:
    """Test the detached metering task."""

    @pytest.mark.asyncio
    async def test_submitted_calls_are_metered(self, meter, usage_store):
        """Submitted calls end up persisted."""
        queue = MeteringQueue(meter, maxsize=10)
        queue.start()
        for _ in range(3):
            assert queue.submit(make_context())
        await queue.drain()
        await queue.stop()

        assert len(usage_store.records) == 3
        assert queue.get_stats()["processed"] == 3

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self, meter):
        """A full queue drops the call and counts it."""
        queue = MeteringQueue(meter, maxsize=1)
        assert queue.submit(make_context())
        assert not queue.submit(make_context())
        assert queue.get_stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_failures_are_observable(self, usage_store, event_log):
        """Failures are counted, kept and reported to the callback."""
        usage_store.insert_usage_record = AsyncMock(side_effect=RuntimeError("disk full"))
        seen = []
        queue = MeteringQueue(UsageMeter(usage_store, event_log, PricingResolver(DEFAULTS)),
                              on_error=lambda ctx, err: seen.append((ctx.execution_id, err.kind)))
        queue.start()
        queue.submit(make_context())
        await queue.drain()

        stats = queue.get_stats()
        assert stats["persistFailures"] == 1
        assert stats["recentErrors"][0]["kind"] == "metering_persist_failure"
        assert seen == [("exec-1", "metering_persist_failure")]
        assert queue.is_running
        await queue.stop()

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_next_call(self, meter, usage_store):
        """One failed call does not stop later calls from being metered."""
        usage_store.insert_usage_record = AsyncMock(side_effect=[RuntimeError("blip"), None])
        queue = MeteringQueue(meter)
        queue.start()
        queue.submit(make_context(execution_id="first"))
        queue.submit(make_context(execution_id="second"))
        await queue.drain()
        await queue.stop()

        assert queue.get_stats()["processed"] == 1
        assert usage_store.insert_usage_record.await_count == 2

    @pytest.mark.asyncio
    async def test_stop_flushes_queue(self, meter, usage_store):
        """Stopping waits for queued calls."""
        queue = MeteringQueue(meter)
        queue.start()
        for _ in range(5):
            queue.submit(make_context())
        await queue.stop(timeout=5)
        assert len(usage_store.records) == 5
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, usage_store, event_log):
        """A failing callback does not kill the queue."""
        usage_store.insert_usage_record = AsyncMock(side_effect=RuntimeError("x"))

        def broken(ctx, err):
            raise ValueError("callback bug")

        queue = MeteringQueue(UsageMeter(usage_store, event_log, PricingResolver(DEFAULTS)), on_error=broken)
        queue.start()
        queue.submit(make_context())
        queue.submit(make_context())
        await queue.drain()
        assert queue.is_running
        assert len(queue.get_stats()["recentErrors"]) == 2
        await queue.stop()

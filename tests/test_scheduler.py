"""Tests for the adaptive request scheduler."""

import asyncio

import pytest

from tenant_bootstrap.client.scheduler import MAX_WORKERS, RequestScheduler
from tenant_bootstrap.models import (
    APIRequest,
    NetworkError,
    QueryError,
    RateLimitError,
    ServerFaultError,
)

from .conftest import make_scheduler

QUERY = "query GET_THING { thing { id } }"


class ScriptedTransport:
    """Raises or returns the scripted outcomes in order, then answers with data."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.in_flight = 0
        self.peak = 0

    async def __call__(self, query, variables=None):
        self.calls += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.001)
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            return {"thing": {"id": "1"}}
        finally:
            self.in_flight -= 1


class TestAdaptiveWindow:
    def test_starts_with_one_worker(self):
        scheduler = RequestScheduler(ScriptedTransport())
        assert scheduler.max_workers == 1

    def test_six_errors_remove_a_worker_and_clear_history(self):
        scheduler = RequestScheduler(ScriptedTransport())
        scheduler.max_workers = 3
        for _ in range(5):
            scheduler.record_request_status("error")
        assert scheduler.max_workers == 3

        scheduler.record_request_status("error")
        assert scheduler.max_workers == 2
        assert len(scheduler.status_history) == 0

    def test_never_below_one_worker(self):
        scheduler = RequestScheduler(ScriptedTransport())
        for _ in range(30):
            scheduler.record_request_status("error")
        assert scheduler.max_workers == 1

    def test_twenty_oks_add_a_worker(self):
        scheduler = RequestScheduler(ScriptedTransport())
        for _ in range(19):
            scheduler.record_request_status("ok")
        assert scheduler.max_workers == 1

        scheduler.record_request_status("ok")
        assert scheduler.max_workers == 2
        assert len(scheduler.status_history) == 0

    def test_workers_capped(self):
        scheduler = RequestScheduler(ScriptedTransport())
        for _ in range(20 * 10):
            scheduler.record_request_status("ok")
        assert scheduler.max_workers == MAX_WORKERS

    def test_rate_limit_drops_to_one_worker(self):
        scheduler = RequestScheduler(ScriptedTransport())
        scheduler.max_workers = 4
        scheduler.record_request_status("rate-limited")
        assert scheduler.max_workers == 1

    def test_mixed_history_does_not_grow(self):
        scheduler = RequestScheduler(ScriptedTransport())
        for i in range(40):
            scheduler.record_request_status("error" if i % 10 == 0 else "ok")
        assert scheduler.max_workers == 1


class TestSubmit:
    @pytest.mark.asyncio
    async def test_returns_data(self):
        scheduler = make_scheduler(ScriptedTransport())
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()
        assert result.data == {"thing": {"id": "1"}}
        assert result.errors is None

    @pytest.mark.asyncio
    async def test_query_error_resolves_with_error_payload(self):
        notified = []
        transport = ScriptedTransport(QueryError("Cannot query field 'nope'"))
        scheduler = make_scheduler(transport, error_notifier=notified.append)
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()

        assert result.data is None
        assert result.errors == [{"error": "Cannot query field 'nope'"}]
        assert transport.calls == 1
        assert len(notified) == 1
        assert notified[0].will_retry is False

    @pytest.mark.asyncio
    async def test_suppressed_errors_are_not_reported(self):
        notified = []
        scheduler = make_scheduler(ScriptedTransport(QueryError("boom")), error_notifier=notified.append)
        try:
            result = await scheduler.submit(APIRequest(query=QUERY, suppress_errors=True))
        finally:
            scheduler.kill()
        assert result.errors
        assert notified == []

    @pytest.mark.asyncio
    async def test_rate_limited_request_is_retried(self):
        notified = []
        transport = ScriptedTransport(RateLimitError())
        scheduler = make_scheduler(transport, error_notifier=notified.append)
        scheduler.max_workers = 3
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()

        assert result.data == {"thing": {"id": "1"}}
        assert transport.calls == 2
        assert scheduler.max_workers == 1
        assert notified[0].will_retry is True
        assert "rate limited" in notified[0].error

    @pytest.mark.asyncio
    async def test_network_error_retried_and_reported(self):
        notified = []
        transport = ScriptedTransport(NetworkError("connection refused"), NetworkError("connection refused"))
        scheduler = make_scheduler(transport, error_notifier=notified.append)
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()

        assert result.data == {"thing": {"id": "1"}}
        assert transport.calls == 3
        assert [n.will_retry for n in notified] == [True, True]

    @pytest.mark.asyncio
    async def test_server_fault_retried_silently(self):
        notified = []
        transport = ScriptedTransport(ServerFaultError("502 Bad Gateway"), ServerFaultError("socket hang up"))
        scheduler = make_scheduler(transport, error_notifier=notified.append)
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()

        assert result.data == {"thing": {"id": "1"}}
        assert transport.calls == 3
        assert notified == []

    @pytest.mark.asyncio
    async def test_long_failure_streak_escalates_and_keeps_retrying(self):
        transport = ScriptedTransport(*[ServerFaultError("502 Bad Gateway") for _ in range(12)])
        notified_at = []
        scheduler = make_scheduler(transport, error_notifier=lambda e: notified_at.append((transport.calls, e)))
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()

        assert result.data == {"thing": {"id": "1"}}
        assert transport.calls == 13
        assert [calls for calls, _ in notified_at] == [11, 12]
        assert all(e.will_retry for _, e in notified_at)

    @pytest.mark.asyncio
    async def test_transient_message_from_any_error_is_retried(self):
        transport = ScriptedTransport(RuntimeError("read ECONNRESET"))
        scheduler = make_scheduler(transport)
        try:
            result = await scheduler.submit(APIRequest(query=QUERY))
        finally:
            scheduler.kill()
        assert result.data == {"thing": {"id": "1"}}
        assert transport.calls == 2

    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_worker_limit(self):
        transport = ScriptedTransport()
        scheduler = make_scheduler(transport)
        try:
            results = await asyncio.gather(*(scheduler.submit(APIRequest(query=QUERY)) for _ in range(6)))
        finally:
            scheduler.kill()
        assert len(results) == 6
        assert transport.peak == 1
        assert scheduler.queue == []

    @pytest.mark.asyncio
    async def test_killed_scheduler_rejects_work(self):
        scheduler = make_scheduler(ScriptedTransport())
        scheduler.kill()
        with pytest.raises(RuntimeError):
            await scheduler.submit(APIRequest(query=QUERY))

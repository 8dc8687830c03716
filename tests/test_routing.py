"""Tests for the routing engine"""

import asyncio

from civicflow.domain.enums import (
    AttemptOutcome, AuditEventType, ComplaintType, RoutingFailureReason, RoutingStatus
)
from civicflow.engine.state_machine import ComplaintStateMachine
from tests.conftest import make_classification, make_location


def _complaint(complaint_type=ComplaintType.POTHOLE, complaint_id="CMP-1"):
    return ComplaintStateMachine().create(
        complaint_id=complaint_id,
        classification=make_classification(complaint_type),
        location=make_location(),
        photo_ref="photos/1.jpg",
    )


class TestRoute:

    def test_routes_to_primary_department(self, harness):
        result = asyncio.run(harness.routing.route(_complaint()))

        assert result.status == RoutingStatus.ROUTED
        assert result.department_id == "roads"
        assert result.work_order_id == "WO-roads-1"
        assert harness.endpoint.call_departments == ["roads"]
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.SUCCEEDED]

    def test_no_mapping_fails_without_calling_endpoint(self, harness):
        result = asyncio.run(harness.routing.route(_complaint(ComplaintType.GARBAGE)))

        assert result.status == RoutingStatus.FAILED
        assert result.reason == RoutingFailureReason.NO_MAPPING
        assert harness.endpoint.calls == []
        assert harness.admin.alerts == [("CMP-1", RoutingFailureReason.NO_MAPPING)]
        failures = harness.audit_store.of_type(AuditEventType.ROUTING_FAILURE)
        assert failures[0].details["reason"] == "NO_MAPPING"

    def test_first_failure_queues_and_settles_later(self, harness):
        harness.endpoint.fail("roads", times=1)
        settled = []

        async def on_settled(complaint, result):
            settled.append(result)

        async def scenario():
            result = await harness.routing.route(_complaint(), on_settled=on_settled)
            queued = harness.routing.is_queued("CMP-1")
            await harness.routing.drain()
            return result, queued

        result, queued = asyncio.run(scenario())

        assert result.status == RoutingStatus.QUEUED
        assert queued
        assert len(settled) == 1
        assert settled[0].status == RoutingStatus.ROUTED
        assert harness.sleep.delays == [300.0]

    def test_exhaustion_after_exactly_three_attempts(self, harness):
        harness.endpoint.fail("roads")
        settled = []

        async def on_settled(complaint, result):
            settled.append(result)

        async def scenario():
            await harness.routing.route(_complaint(), on_settled=on_settled)
            await harness.routing.drain()

        asyncio.run(scenario())

        assert harness.endpoint.calls_to("roads") == 3
        assert settled[0].status == RoutingStatus.FAILED
        assert settled[0].reason == RoutingFailureReason.ROUTING_EXHAUSTED
        assert harness.admin.alerts_for("CMP-1") == [RoutingFailureReason.ROUTING_EXHAUSTED]
        assert len(harness.audit_store.of_type(AuditEventType.ROUTING_ATTEMPT, "CMP-1")) == 3

    def test_idempotency_key_is_stable_across_retries(self, harness):
        harness.endpoint.fail("roads", times=2)

        async def scenario():
            await harness.routing.route(_complaint())
            await harness.routing.drain()

        asyncio.run(scenario())

        keys = {request.idempotency_key for request in harness.endpoint.calls}
        assert len(harness.endpoint.calls) == 3
        assert len(keys) == 1

    def test_new_route_supersedes_queued_one(self, harness):
        harness.endpoint.fail("roads")
        settled = []

        async def on_settled(complaint, result):
            settled.append(result)

        async def scenario():
            harness.sleep.hold()
            first = await harness.routing.route(_complaint(), on_settled=on_settled)
            second = await harness.routing.route(
                _complaint(ComplaintType.BROKEN_STREETLIGHT), on_settled=on_settled
            )
            harness.sleep.release()
            await harness.routing.drain()
            await harness.scheduler.drain()
            return first, second

        first, second = asyncio.run(scenario())

        assert first.status == RoutingStatus.QUEUED
        assert second.status == RoutingStatus.ROUTED
        assert second.department_id == "electrical"
        assert settled == []
        assert harness.admin.alerts == []
        assert harness.endpoint.calls_to("roads") == 1

    def test_cancel_discards_late_result(self, harness):
        harness.endpoint.fail("roads", times=1)
        settled = []

        async def on_settled(complaint, result):
            settled.append(result)

        async def scenario():
            harness.sleep.hold()
            await harness.routing.route(_complaint(), on_settled=on_settled)
            cancelled = harness.routing.cancel("CMP-1")
            harness.sleep.release()
            await harness.routing.drain()
            await harness.scheduler.drain()
            return cancelled

        assert asyncio.run(scenario())
        assert settled == []
        assert harness.endpoint.calls_to("roads") == 1

    def test_empty_work_order_id_is_a_failed_attempt(self, harness):
        async def empty(department, request):
            return ""

        harness.endpoint.create_work_order = empty

        async def scenario():
            await harness.routing.route(_complaint())
            await harness.routing.drain()

        asyncio.run(scenario())

        attempts = harness.audit_store.of_type(AuditEventType.ROUTING_ATTEMPT)
        assert len(attempts) == 3
        assert all(a.details["outcome"] == "FAILED" for a in attempts)

    def test_rerouting_uses_a_new_idempotency_key(self, harness):
        async def scenario():
            await harness.routing.route(_complaint())
            await harness.routing.route(_complaint())

        asyncio.run(scenario())

        keys = [request.idempotency_key for request in harness.endpoint.calls]
        assert len(set(keys)) == 2
        assert all(key.startswith("CMP-1:") for key in keys)


class TestRoutingBookkeeping:

    def test_settled_runs_leave_no_generation_behind(self, harness):
        harness.endpoint.fail("roads", times=1)

        async def scenario():
            for n in range(5):
                await harness.routing.route(_complaint(complaint_id=f"CMP-{n}"))
            await harness.routing.route(_complaint(ComplaintType.GARBAGE, complaint_id="CMP-9"))
            await harness.routing.drain()

        asyncio.run(scenario())

        assert harness.routing._generations == {}
        assert harness.routing._in_flight == {}
        assert harness.routing._attempt_tasks == {}

    def test_cancel_without_routing_tracks_nothing(self, harness):
        assert not harness.routing.cancel("CMP-unknown")
        assert harness.routing._generations == {}

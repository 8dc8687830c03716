"""Tests for the complaint state machine"""

import asyncio
from datetime import datetime, timezone

import pytest

from civicflow.domain.enums import ComplaintStatus, ComplaintType
from civicflow.domain.errors import (
    ComplaintNotFoundError, ConflictError, InvalidTransitionError
)
from civicflow.domain.models import RoutingInfo
from civicflow.engine.state_machine import (
    ComplaintStateMachine, ROUTED_STATUSES, TERMINAL_STATUSES, TRANSITIONS
)
from tests.conftest import make_classification, make_location


def _routing(department_id: str = "roads") -> RoutingInfo:
    return RoutingInfo(
        department_id=department_id,
        work_order_id="WO-1",
        routed_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def _create(machine: ComplaintStateMachine, complaint_id: str = "CMP-1"):
    return machine.create(
        complaint_id=complaint_id,
        classification=make_classification(),
        location=make_location(),
        photo_ref="photos/1.jpg",
    )


class TestTransitionTable:
    """Shape of the transition graph"""

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(ComplaintStatus)

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {ComplaintStatus.RESOLVED, ComplaintStatus.REJECTED}

    def test_no_self_transitions(self):
        for source, targets in TRANSITIONS.items():
            assert source not in targets

    def test_pending_manual_routing_exits(self):
        assert ComplaintStateMachine.allowed_targets(ComplaintStatus.PENDING_MANUAL_ROUTING) == {
            ComplaintStatus.ASSIGNED,
            ComplaintStatus.REJECTED,
        }

    def test_cannot_resolve_without_work_started(self):
        assert not ComplaintStateMachine.can_transition(ComplaintStatus.ASSIGNED, ComplaintStatus.RESOLVED)
        assert not ComplaintStateMachine.can_transition(ComplaintStatus.SUBMITTED, ComplaintStatus.IN_PROGRESS)


class TestCreate:

    def test_create_starts_in_submitted_with_one_entry(self):
        machine = ComplaintStateMachine()
        complaint = _create(machine)

        assert complaint.status == ComplaintStatus.SUBMITTED
        assert [e.status for e in complaint.status_history] == [ComplaintStatus.SUBMITTED]
        assert complaint.version == 1

    def test_create_rejects_existing_id(self):
        machine = ComplaintStateMachine()
        _create(machine)
        with pytest.raises(ConflictError):
            _create(machine)

    def test_snapshots_are_isolated(self):
        machine = ComplaintStateMachine()
        complaint = _create(machine)
        complaint.status_history.clear()

        assert len(machine.get("CMP-1").status_history) == 1


class TestTransition:

    def test_full_happy_path_history_follows_graph(self):
        machine = ComplaintStateMachine()
        _create(machine)

        async def scenario():
            await machine.transition("CMP-1", ComplaintStatus.ASSIGNED, routing=_routing())
            await machine.transition("CMP-1", ComplaintStatus.IN_PROGRESS)
            return await machine.transition("CMP-1", ComplaintStatus.RESOLVED)

        resolved = asyncio.run(scenario())

        statuses = [e.status for e in resolved.status_history]
        assert statuses == [
            ComplaintStatus.SUBMITTED,
            ComplaintStatus.ASSIGNED,
            ComplaintStatus.IN_PROGRESS,
            ComplaintStatus.RESOLVED,
        ]
        for source, target in zip(statuses, statuses[1:]):
            assert target in TRANSITIONS[source]
        assert resolved.resolved_at is not None
        assert resolved.version == 4

    def test_invalid_transition_leaves_complaint_unchanged(self):
        machine = ComplaintStateMachine()
        _create(machine)

        with pytest.raises(InvalidTransitionError) as exc:
            asyncio.run(machine.transition("CMP-1", ComplaintStatus.RESOLVED))

        assert exc.value.error_code == "INVALID_TRANSITION"
        complaint = machine.get("CMP-1")
        assert complaint.status == ComplaintStatus.SUBMITTED
        assert complaint.version == 1
        assert len(complaint.status_history) == 1

    def test_routed_status_requires_routing(self):
        machine = ComplaintStateMachine()
        _create(machine)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(machine.transition("CMP-1", ComplaintStatus.ASSIGNED))
        assert ComplaintStatus.ASSIGNED in ROUTED_STATUSES

    def test_terminal_complaint_rejects_every_transition(self):
        machine = ComplaintStateMachine()
        _create(machine)
        asyncio.run(machine.transition("CMP-1", ComplaintStatus.REJECTED, metadata={"reason": "spam"}))

        assert machine.get("CMP-1") is None
        assert machine.terminal_snapshot("CMP-1").status == ComplaintStatus.REJECTED
        for target in ComplaintStatus:
            with pytest.raises(InvalidTransitionError):
                asyncio.run(machine.transition("CMP-1", target, routing=_routing()))

    def test_terminal_snapshot_is_released_once_stored(self):
        machine = ComplaintStateMachine()
        _create(machine)
        rejected = asyncio.run(machine.transition("CMP-1", ComplaintStatus.REJECTED))

        assert machine._locks == {}
        assert [c.complaint_id for c in machine.unsaved_terminal()] == ["CMP-1"]

        machine.mark_stored(rejected)

        assert machine.terminal_snapshot("CMP-1") is None
        assert machine.unsaved_terminal() == []
        with pytest.raises(ComplaintNotFoundError):
            asyncio.run(machine.transition("CMP-1", ComplaintStatus.ASSIGNED, routing=_routing()))

    def test_older_version_does_not_release_terminal_snapshot(self):
        machine = ComplaintStateMachine()
        stale = _create(machine)
        asyncio.run(machine.transition("CMP-1", ComplaintStatus.REJECTED))

        machine.mark_stored(stale)

        assert machine.terminal_snapshot("CMP-1").status == ComplaintStatus.REJECTED

    def test_expected_status_mismatch(self):
        machine = ComplaintStateMachine()
        _create(machine)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(machine.transition(
                "CMP-1",
                ComplaintStatus.ASSIGNED,
                routing=_routing(),
                expected_status=ComplaintStatus.PENDING_MANUAL_ROUTING,
            ))

    def test_unknown_complaint(self):
        machine = ComplaintStateMachine()
        with pytest.raises(ComplaintNotFoundError):
            asyncio.run(machine.transition("CMP-missing", ComplaintStatus.REJECTED))

    def test_metadata_is_recorded_on_entry(self):
        machine = ComplaintStateMachine()
        _create(machine)
        complaint = asyncio.run(machine.transition(
            "CMP-1", ComplaintStatus.PENDING_MANUAL_ROUTING, metadata={"reason": "NO_MAPPING"}
        ))

        assert complaint.status_history[-1].metadata == {"reason": "NO_MAPPING"}

    def test_concurrent_transitions_apply_exactly_once(self):
        machine = ComplaintStateMachine()
        _create(machine)

        async def scenario():
            return await asyncio.gather(
                machine.transition("CMP-1", ComplaintStatus.ASSIGNED, routing=_routing()),
                machine.transition("CMP-1", ComplaintStatus.ASSIGNED, routing=_routing()),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(1 for r in results if isinstance(r, InvalidTransitionError)) == 1
        complaint = machine.get("CMP-1")
        assert [e.status for e in complaint.status_history] == [
            ComplaintStatus.SUBMITTED,
            ComplaintStatus.ASSIGNED,
        ]


class TestAmend:

    def test_amend_bumps_version_without_history(self):
        machine = ComplaintStateMachine()
        _create(machine)

        amended = asyncio.run(machine.amend(
            "CMP-1", classification=make_classification(ComplaintType.GRAFFITI)
        ))

        assert amended.complaint_type == ComplaintType.GRAFFITI
        assert amended.version == 2
        assert len(amended.status_history) == 1

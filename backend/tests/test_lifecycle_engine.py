"""Engine-level tests for the pickup lifecycle: transitions, guards and audit."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import os
import sys
import threading
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_engine"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DB_PATH"] = str(TMP / "pickupflow.db")
os.environ["UPLOAD_DIR"] = str(TMP / "uploads")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pickupflow.core.errors import (  # noqa: E402
    ConflictError,
    ImmutableAssignmentError,
    NotFoundError,
    StateError,
    ValidationError,
)
from pickupflow.models.lifecycle import (  # noqa: E402
    ActivityAction,
    AssignmentStatus,
    Attribution,
    Outcome,
    RequestStatus,
    TimelineStepKind,
)
from pickupflow.services.identity import StaticIdentityProvider  # noqa: E402
from pickupflow.services.lifecycle_engine import LifecycleEngine  # noqa: E402
from pickupflow.services.notifier import BroadcastChangeFeed, ChangeNotifier  # noqa: E402
from pickupflow.services.request_store import RequestStore  # noqa: E402

TENANT = "tenant-1"
MANAGER = "manager-1"


def _engine(tmp_path, feed=None) -> LifecycleEngine:
    store = RequestStore(str(tmp_path / "engine.db"))
    identity = StaticIdentityProvider({"courier-1": "Ana Courier", "courier-3": "Lee Courier", MANAGER: "Mona Manager"})
    return LifecycleEngine(store, notifier=ChangeNotifier(feed), identity=identity)


def _actions(engine: LifecycleEngine, request_id: str):
    return [event.action for event in engine.store.events_for_request(TENANT, request_id)]


def _picked_and_delivered(engine: LifecycleEngine):
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")
    engine.record_delivery(TENANT, assignment.assignment_id, "courier-1")
    return request, assignment


def test_create_validates_and_logs_event(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80, urgency="urgent", note="  gate code 12 ")
    assert request.status == RequestStatus.PENDING
    assert request.request_code == "REQ-00001"
    assert request.note == "gate code 12"
    assert _actions(engine, request.request_id) == [ActivityAction.CREATE]

    with pytest.raises(ValidationError):
        engine.create(TENANT, "requester-1", "", 50)
    with pytest.raises(ValidationError):
        engine.create(TENANT, "requester-1", "glass", 101)
    with pytest.raises(ValidationError):
        engine.create(TENANT, "requester-1", "glass", 10, urgency="tomorrow")


def test_scenario_assigned_request_timeline(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    timeline = engine.reconstruct_timeline(TENANT, request.request_id)
    assert timeline.kinds() == [TimelineStepKind.CREATED, TimelineStepKind.ASSIGNED]
    assert timeline.attribution == Attribution.NONE
    assert engine.get_request(TENANT, request.request_id).status == RequestStatus.ASSIGNED


def test_scenario_pickup_and_delivery_are_genuine(tmp_path):
    engine = _engine(tmp_path)
    request, assignment = _picked_and_delivered(engine)

    timeline = engine.reconstruct_timeline(TENANT, request.request_id)
    assert timeline.kinds() == [
        TimelineStepKind.CREATED,
        TimelineStepKind.ASSIGNED,
        TimelineStepKind.PICKED_UP,
        TimelineStepKind.DELIVERED,
    ]
    assert timeline.attribution == Attribution.GENUINE
    assert timeline.steps[2].actor_name == "Ana Courier"
    stored = engine.get_assignment(TENANT, assignment.assignment_id)
    assert stored.is_genuine
    assert stored.status == AssignmentStatus.DELIVERED


def test_scenario_genuine_courier_cannot_be_reassigned(tmp_path):
    engine = _engine(tmp_path)
    request, assignment = _picked_and_delivered(engine)

    record = engine.finalize(TENANT, request.request_id, MANAGER, Outcome.COMPLETED, quantity={"value": 12, "unit": "kg"})
    assert record.courier_id == "courier-1"
    assert record.assignment_id == assignment.assignment_id
    assert record.quantity.in_kg() == 12
    assert record.snapshot["material_type"] == "glass"

    with pytest.raises(ImmutableAssignmentError) as excinfo:
        engine.reassign_courier(TENANT, record.processed_id, "courier-2", MANAGER)
    assert "physical pickup or delivery" in str(excinfo.value)
    assert engine.get_processed(TENANT, record.processed_id).courier_id == "courier-1"
    assert engine.classify(TENANT, record.processed_id) == Attribution.GENUINE


def test_scenario_finalize_without_courier_then_retroactive(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "paper", 40)

    record = engine.finalize(TENANT, request.request_id, MANAGER, Outcome.COMPLETED)
    assert record.courier_id is None
    assert engine.classify(TENANT, record.processed_id) == Attribution.NONE

    updated = engine.reassign_courier(TENANT, record.processed_id, "courier-3", MANAGER)
    assert updated.courier_id == "courier-3"
    assert engine.classify(TENANT, record.processed_id) == Attribution.RETROACTIVE

    timeline = engine.reconstruct_timeline(TENANT, request.request_id)
    assert timeline.kinds() == [
        TimelineStepKind.CREATED,
        TimelineStepKind.PROCESSED,
        TimelineStepKind.RETROACTIVE_COURIER,
    ]
    inferred = timeline.steps[-1]
    assert inferred.inferred is True
    assert inferred.timestamp is None
    assert inferred.actor_id == MANAGER
    assert inferred.details["courier_name"] == "Lee Courier"


def test_scenario_concurrent_assign_pinned_to_one_version(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "metal", 60)
    barrier = threading.Barrier(2)

    def _assign(courier_id: str):
        barrier.wait()
        try:
            return engine.assign(TENANT, request.request_id, courier_id, MANAGER, expected_version=request.version)
        except ConflictError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(_assign, ["courier-1", "courier-2"]))

    conflicts = [result for result in results if isinstance(result, ConflictError)]
    assert len(conflicts) == 1
    assert conflicts[0].retryable is True
    assert len(engine.store.assignments_for_request(TENANT, request.request_id)) == 1


def test_assign_with_stale_version_conflicts(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "metal", 60)
    engine.assign(TENANT, request.request_id, "courier-1", MANAGER, expected_version=request.version)
    with pytest.raises(ConflictError):
        engine.assign(TENANT, request.request_id, "courier-2", MANAGER, expected_version=request.version)


def test_reassigning_unworked_assignment_supersedes_it(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "metal", 60)
    first = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    second = engine.assign(TENANT, request.request_id, "courier-2", MANAGER)

    history = engine.store.assignments_for_request(TENANT, request.request_id)
    assert len(history) == 2
    assert engine.get_assignment(TENANT, first.assignment_id).superseded_at is not None
    assert engine.store.active_assignment(TENANT, request.request_id).assignment_id == second.assignment_id

    with pytest.raises(StateError):
        engine.record_pickup(TENANT, first.assignment_id, "courier-1")


def test_replacing_started_assignment_keeps_request_in_progress(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "metal", 60)
    first = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    engine.record_start(TENANT, first.assignment_id, "courier-1")

    second = engine.assign(TENANT, request.request_id, "courier-2", MANAGER)
    assert second.status == AssignmentStatus.ASSIGNED
    assert engine.get_request(TENANT, request.request_id).status == RequestStatus.IN_PROGRESS
    assert engine.store.active_assignment(TENANT, request.request_id).assignment_id == second.assignment_id

    engine.record_pickup(TENANT, second.assignment_id, "courier-2")
    assert engine.get_request(TENANT, request.request_id).status == RequestStatus.PICKED_UP


def test_assign_refused_once_courier_did_physical_work(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "metal", 60)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")

    with pytest.raises(ConflictError):
        engine.assign(TENANT, request.request_id, "courier-2", MANAGER)
    assert engine.get_assignment(TENANT, assignment.assignment_id).courier_id == "courier-1"


def test_pickup_is_idempotent(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    first = engine.record_pickup(TENANT, assignment.assignment_id, "courier-1", quantity={"value": 0.5, "unit": "t"})
    second = engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")

    assert first.picked_up_at == second.picked_up_at
    assert first.quantity.in_kg() == 500
    assert _actions(engine, request.request_id).count(ActivityAction.PICKED_UP) == 1
    assert engine.get_request(TENANT, request.request_id).status == RequestStatus.PICKED_UP


def test_start_moves_request_in_progress(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    started = engine.record_start(TENANT, assignment.assignment_id, "courier-1")
    assert started.status == AssignmentStatus.IN_PROGRESS
    assert started.started_at is not None
    assert not started.is_genuine
    assert engine.get_request(TENANT, request.request_id).status == RequestStatus.IN_PROGRESS

    timeline = engine.reconstruct_timeline(TENANT, request.request_id)
    assert timeline.kinds()[-1] == TimelineStepKind.STARTED


def test_delivery_requires_pickup(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    with pytest.raises(StateError):
        engine.record_delivery(TENANT, assignment.assignment_id, "courier-1")


def test_delivery_is_idempotent(tmp_path):
    engine = _engine(tmp_path)
    request, assignment = _picked_and_delivered(engine)
    delivered = engine.get_assignment(TENANT, assignment.assignment_id)

    again = engine.record_delivery(TENANT, assignment.assignment_id, "courier-1", quantity={"value": 99})
    assert again.delivered_at == delivered.delivered_at
    assert again.quantity == delivered.quantity
    assert again.version == delivered.version
    assert _actions(engine, request.request_id).count(ActivityAction.DELIVERED) == 1


def test_courier_work_refused_after_finalize(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    engine.finalize(TENANT, request.request_id, MANAGER)
    assert engine.get_assignment(TENANT, assignment.assignment_id).status == AssignmentStatus.COMPLETED

    with pytest.raises(StateError):
        engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")
    with pytest.raises(StateError):
        engine.record_delivery(TENANT, assignment.assignment_id, "courier-1")

    worked, worked_assignment = _picked_and_delivered(engine)
    engine.finalize(TENANT, worked.request_id, MANAGER)
    with pytest.raises(StateError):
        engine.record_pickup(TENANT, worked_assignment.assignment_id, "courier-1")
    with pytest.raises(StateError):
        engine.record_delivery(TENANT, worked_assignment.assignment_id, "courier-1")
    assert _actions(engine, worked.request_id).count(ActivityAction.PICKED_UP) == 1


def test_finalize_is_terminal(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    engine.finalize(TENANT, request.request_id, MANAGER, Outcome.REJECTED, rejection_reason="contaminated")

    stored = engine.get_request(TENANT, request.request_id)
    assert stored.status == RequestStatus.REJECTED
    assert stored.deleted_at is not None
    assert engine.list_requests(TENANT).total == 0
    assert engine.list_requests(TENANT, include_deleted=True).total == 1

    with pytest.raises(StateError):
        engine.finalize(TENANT, request.request_id, MANAGER, Outcome.COMPLETED)
    with pytest.raises(NotFoundError):
        engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    with pytest.raises(NotFoundError):
        engine.finalize(TENANT, "missing", MANAGER)

    rejected = engine.list_processed(TENANT, outcome=Outcome.REJECTED)
    assert rejected.total == 1
    assert rejected.items[0].rejection_reason == "contaminated"
    assert engine.reconstruct_timeline(TENANT, request.request_id).kinds()[-1] == TimelineStepKind.REJECTED


def test_finalize_completes_assignment_without_pickup_as_retroactive(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    record = engine.finalize(TENANT, request.request_id, MANAGER)
    assert record.courier_id == "courier-1"
    assert engine.get_assignment(TENANT, assignment.assignment_id).status == AssignmentStatus.COMPLETED
    assert engine.classify(TENANT, record.processed_id) == Attribution.RETROACTIVE

    updated = engine.reassign_courier(TENANT, record.processed_id, "courier-2", MANAGER)
    assert updated.courier_id == "courier-2"
    linked = engine.get_assignment(TENANT, assignment.assignment_id)
    assert linked.courier_id == "courier-2"
    assert linked.picked_up_at is None
    assert linked.delivered_at is None


def test_finalize_courier_override_records_previous_courier(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    record = engine.finalize(TENANT, request.request_id, MANAGER, courier_id="courier-3")
    assert record.courier_id == "courier-3"
    assert engine.get_assignment(TENANT, assignment.assignment_id).courier_id == "courier-3"

    process = [
        event for event in engine.store.events_for_request(TENANT, request.request_id)
        if event.action == ActivityAction.PROCESS
    ]
    assert len(process) == 1
    assert process[0].metadata["courier_id"] == "courier-3"
    assert process[0].metadata["previous_courier_id"] == "courier-1"

    plain = engine.create(TENANT, "requester-1", "paper", 20)
    engine.assign(TENANT, plain.request_id, "courier-1", MANAGER)
    engine.finalize(TENANT, plain.request_id, MANAGER, courier_id="courier-1")
    events = engine.store.events_for_request(TENANT, plain.request_id)
    assert all("previous_courier_id" not in event.metadata for event in events)


def test_finalize_cannot_contradict_genuine_courier(tmp_path):
    engine = _engine(tmp_path)
    request, _ = _picked_and_delivered(engine)
    with pytest.raises(ImmutableAssignmentError):
        engine.finalize(TENANT, request.request_id, MANAGER, courier_id="courier-2")
    assert engine.get_request(TENANT, request.request_id).is_active


def test_cancel_only_before_work(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)

    cancelled = engine.cancel(TENANT, request.request_id, "requester-1")
    assert cancelled.status == RequestStatus.CANCELLED
    assert engine.get_assignment(TENANT, assignment.assignment_id).superseded_at is not None
    with pytest.raises(StateError):
        engine.cancel(TENANT, request.request_id, "requester-1")

    other, _ = _picked_and_delivered(engine)
    with pytest.raises(StateError):
        engine.cancel(TENANT, other.request_id, "requester-1")


def test_amend_and_delete_processed(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    record = engine.finalize(TENANT, request.request_id, MANAGER)

    amended = engine.amend_processed(TENANT, record.processed_id, MANAGER, quantity={"value": 3}, note="weighed at depot")
    assert amended.quantity.value == 3
    assert amended.note == "weighed at depot"
    with pytest.raises(ValidationError):
        engine.amend_processed(TENANT, record.processed_id, MANAGER)

    engine.delete_processed(TENANT, record.processed_id, MANAGER)
    with pytest.raises(NotFoundError):
        engine.get_processed(TENANT, record.processed_id)
    assert ActivityAction.DELETE in _actions(engine, request.request_id)


def test_timeline_never_fabricates_missing_stages(tmp_path):
    engine = _engine(tmp_path)
    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")
    engine.finalize(TENANT, request.request_id, MANAGER)

    timeline = engine.reconstruct_timeline(TENANT, request.request_id)
    assert TimelineStepKind.DELIVERED not in timeline.kinds()
    assert timeline.attribution == Attribution.GENUINE
    assert all(not step.inferred for step in timeline.steps)


def test_unknown_request_timeline_is_not_found(tmp_path):
    engine = _engine(tmp_path)
    with pytest.raises(NotFoundError):
        engine.reconstruct_timeline(TENANT, "missing")


def test_transitions_publish_change_events(tmp_path):
    feed = BroadcastChangeFeed(backlog=20)
    engine = _engine(tmp_path, feed=feed)
    seen = []
    feed.subscribe(TENANT, seen.append)

    request = engine.create(TENANT, "requester-1", "glass", 80)
    assignment = engine.assign(TENANT, request.request_id, "courier-1", MANAGER)
    assert [event.status for event in seen] == ["pending", "assigned", "assigned"]

    engine.record_start(TENANT, assignment.assignment_id, "courier-1")
    engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")
    engine.record_pickup(TENANT, assignment.assignment_id, "courier-1")
    request_statuses = [event.status for event in seen if event.entity_id == request.request_id]
    assert request_statuses == ["pending", "assigned", "in_progress", "picked_up"]
    assert [event.status for event in seen if event.entity_id == assignment.assignment_id] == [
        "assigned",
        "in_progress",
        "picked_up",
    ]
    assert feed.recent(TENANT, limit=1)[0].entity_id == request.request_id
    assert feed.recent("other-tenant") == []


def test_courier_attribution_summary(tmp_path):
    engine = _engine(tmp_path)
    request, _ = _picked_and_delivered(engine)
    engine.finalize(TENANT, request.request_id, MANAGER, quantity={"value": 12})

    other = engine.create(TENANT, "requester-1", "paper", 30)
    record = engine.finalize(TENANT, other.request_id, MANAGER, quantity={"value": 1, "unit": "t"})
    engine.reassign_courier(TENANT, record.processed_id, "courier-1", MANAGER)

    summary = engine.courier_attribution(TENANT)
    assert len(summary) == 1
    assert summary[0].courier_id == "courier-1"
    assert summary[0].genuine == 1
    assert summary[0].retroactive == 1
    assert summary[0].total_kg == 1012

"""Pure attribution and timeline rules, without a database."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from pickupflow.core.errors import ImmutableAssignmentError  # noqa: E402
from pickupflow.models.lifecycle import (  # noqa: E402
    ActivityAction,
    ActivityEvent,
    Assignment,
    Attribution,
    EntityType,
    Outcome,
    ProcessedRecord,
    Quantity,
    TimelineStepKind,
)
from pickupflow.services import reconciler, timeline  # noqa: E402
from pickupflow.services.identity import StaticIdentityProvider  # noqa: E402

BASE = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _record(**overrides) -> ProcessedRecord:
    data = {
        "processed_id": "p1",
        "tenant_id": "t1",
        "request_id": "r1",
        "outcome": Outcome.COMPLETED,
        "finalized_by": "manager-1",
    }
    data.update(overrides)
    return ProcessedRecord(**data)


def _assignment(**overrides) -> Assignment:
    data = {
        "assignment_id": "a1",
        "tenant_id": "t1",
        "request_id": "r1",
        "courier_id": "courier-1",
        "assigned_by": "manager-1",
    }
    data.update(overrides)
    return Assignment(**data)


def _event(index: int, action: ActivityAction, entity_id: str = "r1", minutes: int | None = None, **metadata) -> ActivityEvent:
    return ActivityEvent(
        event_id=f"e{index}",
        tenant_id="t1",
        entity_type=EntityType.REQUEST,
        entity_id=entity_id,
        action=action,
        actor_id=metadata.pop("actor_id", "actor-1"),
        timestamp=BASE + timedelta(minutes=index if minutes is None else minutes),
        metadata={"request_id": "r1", **metadata},
    )


def test_classify_genuine_retroactive_and_none():
    assert reconciler.classify(_record(), None) == Attribution.NONE
    assert reconciler.classify(_record(courier_id="courier-9"), None) == Attribution.RETROACTIVE
    assert reconciler.classify(_record(), _assignment()) == Attribution.RETROACTIVE
    assert reconciler.classify(_record(), _assignment(picked_up_at=BASE)) == Attribution.GENUINE
    assert reconciler.classify(_record(), _assignment(delivered_at=BASE)) == Attribution.GENUINE


def test_guard_courier_change_refuses_genuine():
    with pytest.raises(ImmutableAssignmentError) as excinfo:
        reconciler.guard_courier_change(_record(courier_id="courier-1"), _assignment(picked_up_at=BASE))
    assert excinfo.value.code == "immutable_assignment"
    assert excinfo.value.context["courier_id"] == "courier-1"
    assert reconciler.guard_courier_change(_record(), None) == Attribution.NONE


def test_courier_attribution_skips_rejected_and_unattributed():
    records = [
        _record(processed_id="p1", courier_id="courier-1", assignment_id="a1", quantity=Quantity(value=2, unit="t")),
        _record(processed_id="p2", request_id="r2", courier_id="courier-2", quantity=Quantity(value=5)),
        _record(processed_id="p3", request_id="r3", courier_id="courier-2", outcome=Outcome.REJECTED),
        _record(processed_id="p4", request_id="r4"),
    ]
    summary = reconciler.courier_attribution(records, {"a1": _assignment(delivered_at=BASE)})
    by_courier = {row.courier_id: row for row in summary}
    assert set(by_courier) == {"courier-1", "courier-2"}
    assert by_courier["courier-1"].genuine == 1
    assert by_courier["courier-1"].total_kg == 2000
    assert by_courier["courier-2"].retroactive == 1
    assert by_courier["courier-2"].total_kg == 5


def test_timeline_orders_by_timestamp_then_stage():
    events = [
        _event(2, ActivityAction.PICKED_UP, entity_id="a1", minutes=5),
        _event(0, ActivityAction.CREATE, minutes=0),
        _event(1, ActivityAction.ASSIGN, entity_id="a1", minutes=5),
        _event(3, ActivityAction.PROOF_ATTACHED, entity_id="a1", minutes=6),
    ]
    result = timeline.reconstruct("r1", events, Attribution.GENUINE, courier_id="courier-1")
    assert result.kinds() == [TimelineStepKind.CREATED, TimelineStepKind.ASSIGNED, TimelineStepKind.PICKED_UP]


def test_timeline_ignores_other_requests_and_reassign_events():
    events = [
        _event(0, ActivityAction.CREATE),
        _event(1, ActivityAction.PROCESS, entity_id="p1", processed_id="p1"),
        _event(2, ActivityAction.REASSIGN_COURIER, entity_id="p1", actor_id="manager-2", courier_id="courier-3"),
        ActivityEvent(
            event_id="foreign",
            tenant_id="t1",
            entity_type=EntityType.REQUEST,
            entity_id="r2",
            action=ActivityAction.CREATE,
            actor_id="someone",
            metadata={"request_id": "r2"},
        ),
    ]
    identity = StaticIdentityProvider({"courier-3": "Lee Courier", "manager-2": "Mo Manager"})
    result = timeline.reconstruct(
        "r1", events, Attribution.RETROACTIVE, courier_id="courier-3", processed_id="p1", identity=identity
    )
    assert result.kinds() == [
        TimelineStepKind.CREATED,
        TimelineStepKind.PROCESSED,
        TimelineStepKind.RETROACTIVE_COURIER,
    ]
    inferred = result.steps[-1]
    assert inferred.inferred is True
    assert inferred.timestamp is None
    assert inferred.actor_id == "manager-2"
    assert inferred.actor_name == "Mo Manager"
    assert inferred.details["courier_name"] == "Lee Courier"


def test_timeline_does_not_invent_work_for_genuine_attribution():
    events = [_event(0, ActivityAction.CREATE), _event(1, ActivityAction.PROCESS, entity_id="p1")]
    result = timeline.reconstruct("r1", events, Attribution.GENUINE, processed_id="p1")
    assert result.kinds() == [TimelineStepKind.CREATED, TimelineStepKind.PROCESSED]
    assert all(step.timestamp is not None for step in result.steps)

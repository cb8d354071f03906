"""Audit timeline reconstruction from the activity log."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from pickupflow.models.lifecycle import (
    ActivityAction,
    ActivityEvent,
    Attribution,
    Timeline,
    TimelineStep,
    TimelineStepKind,
)
from pickupflow.services.identity import IdentityProvider

STEP_FOR_ACTION: Dict[ActivityAction, TimelineStepKind] = {
    ActivityAction.CREATE: TimelineStepKind.CREATED,
    ActivityAction.ASSIGN: TimelineStepKind.ASSIGNED,
    ActivityAction.START: TimelineStepKind.STARTED,
    ActivityAction.PICKED_UP: TimelineStepKind.PICKED_UP,
    ActivityAction.DELIVERED: TimelineStepKind.DELIVERED,
    ActivityAction.PROCESS: TimelineStepKind.PROCESSED,
    ActivityAction.REJECT: TimelineStepKind.REJECTED,
    ActivityAction.CANCEL: TimelineStepKind.CANCELLED,
}

# Causal order, used only to break timestamp ties.
STEP_RANK: Dict[TimelineStepKind, int] = {
    TimelineStepKind.CREATED: 0,
    TimelineStepKind.ASSIGNED: 1,
    TimelineStepKind.STARTED: 2,
    TimelineStepKind.PICKED_UP: 3,
    TimelineStepKind.DELIVERED: 4,
    TimelineStepKind.PROCESSED: 5,
    TimelineStepKind.REJECTED: 5,
    TimelineStepKind.CANCELLED: 5,
}

_DETAIL_KEYS = ("courier_id", "assignment_id", "replaced_assignment_id", "quantity", "evidence_ref", "outcome", "processed_id")


def _belongs_to(event: ActivityEvent, request_id: str, processed_id: Optional[str]) -> bool:
    if event.entity_id == request_id:
        return True
    if processed_id and event.entity_id == processed_id:
        return True
    return event.metadata.get("request_id") == request_id


def reconstruct(
    request_id: str,
    events: Iterable[ActivityEvent],
    attribution: Attribution,
    *,
    courier_id: Optional[str] = None,
    processed_id: Optional[str] = None,
    identity: Optional[IdentityProvider] = None,
) -> Timeline:
    """Fold stored events for one request into an ordered list of steps.

    Only observed events become steps; a stage with no event is simply absent.
    When the courier attribution is retroactive a final ``retroactive_courier``
    step is appended, marked ``inferred`` and without a timestamp, because it
    stands for bookkeeping rather than physical work.
    """

    def _name(actor_id: Optional[str]) -> Optional[str]:
        if not actor_id or identity is None:
            return None
        return identity.display_name(actor_id)

    observed: List[tuple] = []
    reassignments: List[ActivityEvent] = []
    finalize_actor: Optional[str] = None
    for index, event in enumerate(events):
        if not _belongs_to(event, request_id, processed_id):
            continue
        if event.action == ActivityAction.REASSIGN_COURIER:
            reassignments.append(event)
            continue
        kind = STEP_FOR_ACTION.get(event.action)
        if kind is None:
            continue
        if kind in (TimelineStepKind.PROCESSED, TimelineStepKind.REJECTED):
            finalize_actor = event.actor_id
        step = TimelineStep(
            kind=kind,
            timestamp=event.timestamp,
            actor_id=event.actor_id,
            actor_name=_name(event.actor_id),
            event_id=event.event_id,
            details={key: event.metadata[key] for key in _DETAIL_KEYS if key in event.metadata},
        )
        observed.append((event.timestamp, STEP_RANK[kind], index, step))

    observed.sort(key=lambda item: (item[0], item[1], item[2]))
    steps = [item[3] for item in observed]

    if attribution == Attribution.RETROACTIVE:
        recorded_by = reassignments[-1].actor_id if reassignments else finalize_actor
        steps.append(
            TimelineStep(
                kind=TimelineStepKind.RETROACTIVE_COURIER,
                timestamp=None,
                actor_id=recorded_by,
                actor_name=_name(recorded_by),
                inferred=True,
                details={
                    "courier_id": courier_id,
                    "courier_name": _name(courier_id),
                    "note": "courier recorded for bookkeeping; no pickup or delivery was logged",
                },
            )
        )

    return Timeline(request_id=request_id, attribution=attribution, courier_id=courier_id, steps=steps)

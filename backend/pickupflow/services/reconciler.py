"""Courier attribution rules for finalized requests."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from pickupflow.core.errors import ImmutableAssignmentError
from pickupflow.models.lifecycle import (
    Assignment,
    Attribution,
    CourierAttributionSummary,
    Outcome,
    ProcessedRecord,
)


def classify(record: ProcessedRecord, assignment: Optional[Assignment] = None) -> Attribution:
    """Classify how a processed record's courier association came to be.

    Genuine when the linked assignment carries a pickup or delivery timestamp,
    retroactive when a courier is named without any recorded physical work,
    none when no courier is named anywhere.
    """
    if assignment is not None and assignment.is_genuine:
        return Attribution.GENUINE
    courier_id = record.courier_id or (assignment.courier_id if assignment else None)
    if courier_id:
        return Attribution.RETROACTIVE
    return Attribution.NONE


def guard_courier_change(record: ProcessedRecord, assignment: Optional[Assignment] = None) -> Attribution:
    """Return the current attribution, refusing when it is backed by real work."""
    attribution = classify(record, assignment)
    if attribution == Attribution.GENUINE:
        raise ImmutableAssignmentError(
            assignment.assignment_id if assignment else None,
            assignment.courier_id if assignment else record.courier_id,
            processed_id=record.processed_id,
        )
    return attribution


def courier_attribution(
    records: Iterable[ProcessedRecord],
    assignments: Dict[str, Assignment],
) -> List[CourierAttributionSummary]:
    """Per-courier counts of completed work, split by genuine and retroactive.

    ``assignments`` maps assignment id to assignment for the records' links.
    """
    summaries: Dict[str, CourierAttributionSummary] = {}
    for record in records:
        if record.outcome != Outcome.COMPLETED or record.deleted_at is not None:
            continue
        assignment = assignments.get(record.assignment_id or "")
        attribution = classify(record, assignment)
        if attribution == Attribution.NONE:
            continue
        courier_id = record.courier_id or assignment.courier_id
        summary = summaries.setdefault(courier_id, CourierAttributionSummary(courier_id=courier_id))
        if attribution == Attribution.GENUINE:
            summary.genuine += 1
        else:
            summary.retroactive += 1
        if record.quantity is not None:
            summary.total_kg = round(summary.total_kg + record.quantity.in_kg(), 3)
    return sorted(summaries.values(), key=lambda row: (-(row.genuine + row.retroactive), row.courier_id))

"""Lifecycle engine: the state machine behind pickup requests.

Each public operation is one atomic read-modify-write against the request
store. Activity events are appended inside the same transaction as the state
change they describe; change notifications go out after commit.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from pickupflow.core.config import get_settings
from pickupflow.core.errors import (
    ConflictError,
    ImmutableAssignmentError,
    NotFoundError,
    StateError,
    ValidationError,
)
from pickupflow.core.logging import logger
from pickupflow.models.lifecycle import (
    ActivityAction,
    ActivityEvent,
    Assignment,
    AssignmentStatus,
    Attribution,
    CourierAttributionSummary,
    EntityType,
    Outcome,
    Page,
    PickupRequest,
    ProcessedRecord,
    ProofSlot,
    ProofStage,
    Quantity,
    RequestStatus,
    Timeline,
    Urgency,
)
from pickupflow.services import reconciler, timeline
from pickupflow.services.blob_store import BlobStore, LocalBlobStore
from pickupflow.services.identity import IdentityProvider, StaticIdentityProvider
from pickupflow.services.notifier import ChangeNotifier, get_change_feed
from pickupflow.services.proof_ledger import ProofLedger
from pickupflow.services.request_store import RequestStore

QuantityInput = Union[Quantity, Dict[str, Any], None]

# Active request statuses in the only direction they may move.
_FORWARD_ORDER = [
    RequestStatus.PENDING,
    RequestStatus.ASSIGNED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.PICKED_UP,
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class LifecycleEngine:
    """Coordinates requester, courier and finalizer actions on one shared store."""

    def __init__(
        self,
        store: RequestStore,
        blob_store: Optional[BlobStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.notifier = notifier or ChangeNotifier()
        self.identity = identity
        self.ledger = ProofLedger(blob_store)
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Helpers

    @staticmethod
    def _quantity(value: QuantityInput) -> Optional[Quantity]:
        if value is None or isinstance(value, Quantity):
            return value
        try:
            return Quantity.model_validate(value)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid quantity: {exc.errors()[0].get('msg', 'malformed')}") from exc

    @staticmethod
    def _required(value: Optional[str], field: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValidationError(f"{field} is required", field=field)
        return cleaned

    def _append(
        self,
        tenant_id: str,
        entity_type: EntityType,
        entity_id: str,
        action: ActivityAction,
        actor_id: str,
        request_id: str,
        **metadata: Any,
    ) -> ActivityEvent:
        payload = {"request_id": request_id}
        for key, value in metadata.items():
            if value is None:
                continue
            payload[key] = value.model_dump(mode="json") if isinstance(value, Quantity) else value
        event = ActivityEvent(
            event_id=_new_id(),
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            metadata=payload,
        )
        return self.store.append_event(event)

    def _notify(self, entity_type: EntityType, entity_id: str, tenant_id: str, status: str) -> None:
        self.notifier.publish(entity_type, entity_id, tenant_id, status)

    def _release(self, reference: str) -> bool:
        """Delete a replaced blob unless another record still points at the same content."""
        if self.store.evidence_in_use(reference):
            logger.info("Replaced proof blob still referenced; keeping it", reference=reference)
            return False
        return self.ledger.release(reference)

    def get_request(self, tenant_id: str, request_id: str) -> PickupRequest:
        request = self.store.get_request(tenant_id, request_id)
        if request is None:
            raise NotFoundError(f"Request {request_id} not found", request_id=request_id)
        return request

    def get_assignment(self, tenant_id: str, assignment_id: str) -> Assignment:
        assignment = self.store.get_assignment(tenant_id, assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment {assignment_id} not found", assignment_id=assignment_id)
        return assignment

    def get_processed(self, tenant_id: str, processed_id: str) -> ProcessedRecord:
        record = self.store.get_processed(tenant_id, processed_id)
        if record is None or record.deleted_at is not None:
            raise NotFoundError(f"Processed record {processed_id} not found", processed_id=processed_id)
        return record

    def _active_request(self, tenant_id: str, request_id: str) -> PickupRequest:
        request = self.get_request(tenant_id, request_id)
        if not request.is_active:
            raise NotFoundError(
                f"Request {request_id} is finalized or deleted",
                request_id=request_id,
                status=request.status.value,
            )
        return request

    def _workable_assignment(self, tenant_id: str, assignment_id: str) -> Assignment:
        assignment = self.get_assignment(tenant_id, assignment_id)
        if assignment.superseded_at is not None:
            raise StateError(f"Assignment {assignment_id} was replaced", assignment_id=assignment_id)
        if assignment.status == AssignmentStatus.COMPLETED:
            raise StateError(f"Assignment {assignment_id} is already completed", assignment_id=assignment_id)
        return assignment

    # ------------------------------------------------------------------
    # Requester

    def create(
        self,
        tenant_id: str,
        requester_id: str,
        material_type: str,
        fill_level: int,
        urgency: Union[Urgency, str] = Urgency.NORMAL,
        note: Optional[str] = None,
    ) -> PickupRequest:
        requester_id = self._required(requester_id, "requester_id")
        material_type = self._required(material_type, "material_type")
        if isinstance(fill_level, bool) or not isinstance(fill_level, int):
            raise ValidationError("fill_level must be an integer percentage", field="fill_level")
        if not 0 <= fill_level <= 100:
            raise ValidationError("fill_level must be between 0 and 100", field="fill_level")
        try:
            urgency = Urgency(urgency)
        except ValueError as exc:
            raise ValidationError(f"Unknown urgency '{urgency}'", field="urgency") from exc

        with self.store.transaction():
            request = PickupRequest(
                request_id=_new_id(),
                tenant_id=tenant_id,
                request_code=self.store.generate_request_code(tenant_id),
                requester_id=requester_id,
                material_type=material_type,
                fill_level=fill_level,
                urgency=urgency,
                note=(note or "").strip() or None,
            )
            self.store.insert_request(request)
            self._append(
                tenant_id,
                EntityType.REQUEST,
                request.request_id,
                ActivityAction.CREATE,
                requester_id,
                request.request_id,
                request_code=request.request_code,
                material_type=material_type,
                fill_level=fill_level,
                urgency=urgency.value,
            )

        logger.info("Pickup request created", tenant_id=tenant_id, request_id=request.request_id, code=request.request_code)
        self._notify(EntityType.REQUEST, request.request_id, tenant_id, request.status.value)
        return request

    def cancel(self, tenant_id: str, request_id: str, actor_id: str) -> PickupRequest:
        request = self.get_request(tenant_id, request_id)
        if request.status not in (RequestStatus.PENDING, RequestStatus.ASSIGNED) or request.deleted_at is not None:
            raise StateError(
                f"Request {request_id} cannot be cancelled from status '{request.status.value}'",
                request_id=request_id,
            )

        with self.store.transaction():
            current = self.get_request(tenant_id, request_id)
            if current.version != request.version:
                raise ConflictError(f"Request {request_id} was modified concurrently", request_id=request_id)
            active = self.store.active_assignment(tenant_id, request_id)
            if active is not None:
                if active.is_genuine:
                    raise StateError(f"Request {request_id} already has recorded courier work", request_id=request_id)
                self.store.save_assignment(active.model_copy(update={"superseded_at": _utcnow()}), active.version)
            now = _utcnow()
            updated = self.store.save_request(
                current.model_copy(update={"status": RequestStatus.CANCELLED, "deleted_at": now}),
                current.version,
            )
            self._append(
                tenant_id,
                EntityType.REQUEST,
                request_id,
                ActivityAction.CANCEL,
                actor_id,
                request_id,
                released_assignment_id=active.assignment_id if active else None,
            )

        logger.info("Pickup request cancelled", tenant_id=tenant_id, request_id=request_id, actor=actor_id)
        self._notify(EntityType.REQUEST, request_id, tenant_id, updated.status.value)
        return updated

    # ------------------------------------------------------------------
    # Courier assignment and work

    def assign(
        self,
        tenant_id: str,
        request_id: str,
        courier_id: str,
        actor_id: str,
        expected_version: Optional[int] = None,
    ) -> Assignment:
        """Attach a courier, replacing an assignment nobody has worked yet.

        Compare-and-swap on the request version: the version observed here (or
        the caller's ``expected_version``) must still be current at write time,
        so of two racing calls exactly one wins.
        """
        courier_id = self._required(courier_id, "courier_id")
        observed = self._active_request(tenant_id, request_id)
        version = expected_version if expected_version is not None else observed.version

        with self.store.transaction():
            current = self._active_request(tenant_id, request_id)
            if current.version != version:
                raise ConflictError(
                    f"Request {request_id} changed since it was read",
                    request_id=request_id,
                    expected_version=version,
                    current_version=current.version,
                )
            active = self.store.active_assignment(tenant_id, request_id)
            if active is not None and active.is_genuine:
                raise ConflictError(
                    f"Request {request_id} already has a courier who recorded work",
                    request_id=request_id,
                    assignment_id=active.assignment_id,
                )
            if active is not None:
                self.store.save_assignment(active.model_copy(update={"superseded_at": _utcnow()}), active.version)

            assignment = Assignment(
                assignment_id=_new_id(),
                tenant_id=tenant_id,
                request_id=request_id,
                courier_id=courier_id,
                assigned_by=actor_id,
            )
            self.store.insert_assignment(assignment)
            # A replaced assignment may already have moved the request past `assigned`.
            request_status = max(current.status, RequestStatus.ASSIGNED, key=_FORWARD_ORDER.index)
            self.store.save_request(current.model_copy(update={"status": request_status}), current.version)
            self._append(
                tenant_id,
                EntityType.ASSIGNMENT,
                assignment.assignment_id,
                ActivityAction.ASSIGN,
                actor_id,
                request_id,
                courier_id=courier_id,
                replaced_assignment_id=active.assignment_id if active else None,
            )

        logger.info(
            "Courier assigned",
            tenant_id=tenant_id,
            request_id=request_id,
            courier_id=courier_id,
            replaced=bool(active),
        )
        self._notify(EntityType.ASSIGNMENT, assignment.assignment_id, tenant_id, assignment.status.value)
        self._notify(EntityType.REQUEST, request_id, tenant_id, request_status.value)
        return assignment

    def record_start(self, tenant_id: str, assignment_id: str, actor_id: str) -> Assignment:
        assignment = self._workable_assignment(tenant_id, assignment_id)
        if assignment.status != AssignmentStatus.ASSIGNED:
            return assignment

        with self.store.transaction():
            current = self._workable_assignment(tenant_id, assignment_id)
            if current.status != AssignmentStatus.ASSIGNED:
                return current
            updated = self.store.save_assignment(
                current.model_copy(update={"status": AssignmentStatus.IN_PROGRESS, "started_at": _utcnow()}),
                current.version,
            )
            moved = self._advance_request(tenant_id, current.request_id, RequestStatus.IN_PROGRESS)
            self._append(
                tenant_id,
                EntityType.ASSIGNMENT,
                assignment_id,
                ActivityAction.START,
                actor_id,
                current.request_id,
                courier_id=current.courier_id,
            )

        logger.info("Courier started", tenant_id=tenant_id, assignment_id=assignment_id)
        self._notify(EntityType.ASSIGNMENT, assignment_id, tenant_id, updated.status.value)
        if moved is not None:
            self._notify(EntityType.REQUEST, updated.request_id, tenant_id, moved.value)
        return updated

    def record_pickup(
        self,
        tenant_id: str,
        assignment_id: str,
        actor_id: str,
        quantity: QuantityInput = None,
        proof_ref: Optional[str] = None,
    ) -> Assignment:
        """Record physical pickup. From here on the assignment is genuine.

        Repeating the call on an already picked-up assignment returns it as is.
        """
        quantity = self._quantity(quantity)
        assignment = self._workable_assignment(tenant_id, assignment_id)
        if assignment.picked_up_at is not None:
            return assignment
        if assignment.status not in (AssignmentStatus.ASSIGNED, AssignmentStatus.IN_PROGRESS):
            raise StateError(
                f"Assignment {assignment_id} cannot be picked up from status '{assignment.status.value}'",
                assignment_id=assignment_id,
            )

        with self.store.transaction():
            current = self._workable_assignment(tenant_id, assignment_id)
            if current.picked_up_at is not None:
                return current
            staged = current.pickup_proof
            proof = ProofLedger.build(ProofStage.PICKUP, actor_id, proof_ref, quantity, existing=staged)
            update: Dict[str, Any] = {
                "status": AssignmentStatus.PICKED_UP,
                "picked_up_at": _utcnow(),
                "pickup_proof": proof,
            }
            if quantity is not None:
                update["quantity"] = quantity
            updated = self.store.save_assignment(current.model_copy(update=update), current.version)
            moved = self._advance_request(tenant_id, current.request_id, RequestStatus.PICKED_UP)
            self._append(
                tenant_id,
                EntityType.ASSIGNMENT,
                assignment_id,
                ActivityAction.PICKED_UP,
                actor_id,
                current.request_id,
                courier_id=current.courier_id,
                quantity=quantity,
                evidence_ref=proof.evidence_ref if proof else None,
            )

        if proof_ref and staged and staged.evidence_ref and staged.evidence_ref != proof_ref:
            self._release(staged.evidence_ref)
        logger.info("Pickup recorded", tenant_id=tenant_id, assignment_id=assignment_id, courier_id=updated.courier_id)
        self._notify(EntityType.ASSIGNMENT, assignment_id, tenant_id, updated.status.value)
        if moved is not None:
            self._notify(EntityType.REQUEST, updated.request_id, tenant_id, moved.value)
        return updated

    def record_delivery(
        self,
        tenant_id: str,
        assignment_id: str,
        actor_id: str,
        quantity: QuantityInput = None,
        proof_ref: Optional[str] = None,
    ) -> Assignment:
        quantity = self._quantity(quantity)
        assignment = self._workable_assignment(tenant_id, assignment_id)
        if assignment.delivered_at is not None:
            return assignment
        if assignment.picked_up_at is None:
            raise StateError(
                f"Assignment {assignment_id} has no recorded pickup",
                assignment_id=assignment_id,
            )

        with self.store.transaction():
            current = self._workable_assignment(tenant_id, assignment_id)
            if current.delivered_at is not None:
                return current
            staged = current.delivery_proof
            proof = ProofLedger.build(ProofStage.DELIVERY, actor_id, proof_ref, quantity, existing=staged)
            update: Dict[str, Any] = {
                "status": AssignmentStatus.DELIVERED,
                "delivered_at": _utcnow(),
                "delivery_proof": proof,
            }
            if quantity is not None:
                update["quantity"] = quantity
            updated = self.store.save_assignment(current.model_copy(update=update), current.version)
            self._append(
                tenant_id,
                EntityType.ASSIGNMENT,
                assignment_id,
                ActivityAction.DELIVERED,
                actor_id,
                current.request_id,
                courier_id=current.courier_id,
                quantity=quantity,
                evidence_ref=proof.evidence_ref if proof else None,
            )

        if proof_ref and staged and staged.evidence_ref and staged.evidence_ref != proof_ref:
            self._release(staged.evidence_ref)
        logger.info("Delivery recorded", tenant_id=tenant_id, assignment_id=assignment_id, courier_id=updated.courier_id)
        self._notify(EntityType.ASSIGNMENT, assignment_id, tenant_id, updated.status.value)
        return updated

    def _advance_request(self, tenant_id: str, request_id: str, status: RequestStatus) -> Optional[RequestStatus]:
        """Move an active request forward; never backwards and never once finalized.

        Returns the new status, or ``None`` when the request did not move.
        """
        request = self.store.get_request(tenant_id, request_id)
        if request is None or not request.is_active:
            return None
        if _FORWARD_ORDER.index(request.status) >= _FORWARD_ORDER.index(status):
            return None
        self.store.save_request(request.model_copy(update={"status": status}), request.version)
        return status

    # ------------------------------------------------------------------
    # Finalization and after-the-fact bookkeeping

    def finalize(
        self,
        tenant_id: str,
        request_id: str,
        actor_id: str,
        outcome: Union[Outcome, str] = Outcome.COMPLETED,
        proof_ref: Optional[str] = None,
        quantity: QuantityInput = None,
        note: Optional[str] = None,
        courier_id: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> ProcessedRecord:
        """Convert an active request into its processed record.

        Works with or without a courier. ``courier_id`` names a courier for
        bookkeeping at finalization time; it may not contradict a courier who
        recorded physical work.
        """
        try:
            outcome = Outcome(outcome)
        except ValueError as exc:
            raise ValidationError(f"Unknown outcome '{outcome}'", field="outcome") from exc
        quantity = self._quantity(quantity)
        courier_id = (courier_id or "").strip() or None

        request = self.get_request(tenant_id, request_id)
        if not request.is_active:
            raise StateError(
                f"Request {request_id} is already {request.status.value}",
                request_id=request_id,
                status=request.status.value,
            )

        with self.store.transaction():
            current = self.get_request(tenant_id, request_id)
            if not current.is_active:
                raise StateError(f"Request {request_id} is already {current.status.value}", request_id=request_id)

            now = _utcnow()
            assignment = self.store.active_assignment(tenant_id, request_id)
            previous_courier = None
            if assignment is not None and courier_id and courier_id != assignment.courier_id:
                if assignment.is_genuine:
                    raise ImmutableAssignmentError(assignment.assignment_id, assignment.courier_id, request_id=request_id)
                previous_courier = assignment.courier_id
                assignment = assignment.model_copy(update={"courier_id": courier_id})
            final_courier = courier_id or (assignment.courier_id if assignment else None)

            staged = current.staged_proof
            proof = ProofLedger.build(ProofStage.FINALIZATION, actor_id, proof_ref, quantity, existing=staged)
            record = ProcessedRecord(
                processed_id=_new_id(),
                tenant_id=tenant_id,
                request_id=request_id,
                snapshot=current.snapshot(),
                outcome=outcome,
                finalized_by=actor_id,
                finalized_at=now,
                finalization_proof=proof,
                quantity=quantity or (staged.quantity if staged else None),
                note=(note or "").strip() or None,
                rejection_reason=((rejection_reason or "").strip() or None) if outcome == Outcome.REJECTED else None,
                courier_id=final_courier,
                assignment_id=assignment.assignment_id if assignment else None,
            )
            self.store.insert_processed(record)
            if assignment is not None:
                self.store.save_assignment(
                    assignment.model_copy(update={"status": AssignmentStatus.COMPLETED, "completed_at": now}),
                    assignment.version,
                )
            self.store.save_request(
                current.model_copy(
                    update={
                        "status": RequestStatus(outcome.value),
                        "deleted_at": now,
                        "staged_proof": None,
                    }
                ),
                current.version,
            )
            self._append(
                tenant_id,
                EntityType.PROCESSED_RECORD,
                record.processed_id,
                ActivityAction.PROCESS if outcome == Outcome.COMPLETED else ActivityAction.REJECT,
                actor_id,
                request_id,
                processed_id=record.processed_id,
                outcome=outcome.value,
                courier_id=final_courier,
                previous_courier_id=previous_courier,
                assignment_id=record.assignment_id,
                quantity=record.quantity,
                evidence_ref=proof.evidence_ref if proof else None,
            )

        if proof_ref and staged and staged.evidence_ref and staged.evidence_ref != proof_ref:
            self._release(staged.evidence_ref)
        logger.info(
            "Request finalized",
            tenant_id=tenant_id,
            request_id=request_id,
            outcome=outcome.value,
            courier_id=final_courier,
            has_assignment=assignment is not None,
        )
        self._notify(EntityType.PROCESSED_RECORD, record.processed_id, tenant_id, outcome.value)
        self._notify(EntityType.REQUEST, request_id, tenant_id, outcome.value)
        return record

    def _linked_assignment(self, tenant_id: str, record: ProcessedRecord) -> Optional[Assignment]:
        if not record.assignment_id:
            return None
        return self.store.get_assignment(tenant_id, record.assignment_id)

    def classify(self, tenant_id: str, processed_id: str) -> Attribution:
        record = self.get_processed(tenant_id, processed_id)
        return reconciler.classify(record, self._linked_assignment(tenant_id, record))

    def reassign_courier(self, tenant_id: str, processed_id: str, new_courier_id: str, actor_id: str) -> ProcessedRecord:
        """Set or replace the courier of a finalized record, for bookkeeping only.

        Refused with :class:`ImmutableAssignmentError` once the linked courier
        recorded physical work. No pickup or delivery timestamps are written.
        """
        new_courier_id = self._required(new_courier_id, "courier_id")
        self.get_processed(tenant_id, processed_id)

        with self.store.transaction():
            record = self.get_processed(tenant_id, processed_id)
            assignment = self._linked_assignment(tenant_id, record)
            previous = reconciler.guard_courier_change(record, assignment)
            if assignment is not None and assignment.courier_id != new_courier_id:
                self.store.save_assignment(assignment.model_copy(update={"courier_id": new_courier_id}), assignment.version)
            updated = self.store.save_processed(record.model_copy(update={"courier_id": new_courier_id}), record.version)
            self._append(
                tenant_id,
                EntityType.PROCESSED_RECORD,
                processed_id,
                ActivityAction.REASSIGN_COURIER,
                actor_id,
                record.request_id,
                processed_id=processed_id,
                previous_courier_id=record.courier_id,
                courier_id=new_courier_id,
                previous_attribution=previous.value,
                assignment_id=record.assignment_id,
            )

        logger.info(
            "Courier attributed retroactively",
            tenant_id=tenant_id,
            processed_id=processed_id,
            courier_id=new_courier_id,
            previous=previous.value,
        )
        self._notify(EntityType.PROCESSED_RECORD, processed_id, tenant_id, updated.outcome.value)
        return updated

    def amend_processed(
        self,
        tenant_id: str,
        processed_id: str,
        actor_id: str,
        quantity: QuantityInput = None,
        note: Optional[str] = None,
    ) -> ProcessedRecord:
        quantity = self._quantity(quantity)
        if quantity is None and note is None:
            raise ValidationError("Nothing to amend: provide quantity or note")

        with self.store.transaction():
            record = self.get_processed(tenant_id, processed_id)
            update: Dict[str, Any] = {}
            if quantity is not None:
                update["quantity"] = quantity
            if note is not None:
                update["note"] = note.strip() or None
            updated = self.store.save_processed(record.model_copy(update=update), record.version)
            self._append(
                tenant_id,
                EntityType.PROCESSED_RECORD,
                processed_id,
                ActivityAction.AMEND,
                actor_id,
                record.request_id,
                fields=sorted(update.keys()),
                quantity=quantity,
            )

        self._notify(EntityType.PROCESSED_RECORD, processed_id, tenant_id, updated.outcome.value)
        return updated

    def delete_processed(self, tenant_id: str, processed_id: str, actor_id: str) -> ProcessedRecord:
        with self.store.transaction():
            record = self.get_processed(tenant_id, processed_id)
            updated = self.store.save_processed(record.model_copy(update={"deleted_at": _utcnow()}), record.version)
            self._append(
                tenant_id,
                EntityType.PROCESSED_RECORD,
                processed_id,
                ActivityAction.DELETE,
                actor_id,
                record.request_id,
            )

        logger.info("Processed record deleted", tenant_id=tenant_id, processed_id=processed_id, actor=actor_id)
        self._notify(EntityType.PROCESSED_RECORD, processed_id, tenant_id, "deleted")
        return updated

    # ------------------------------------------------------------------
    # Proof ledger

    def upload_proof(self, content: bytes, suffix: str = "") -> str:
        if self.blob_store is None:
            raise StateError("No blob store configured for proof uploads")
        if not content:
            raise ValidationError("Proof file is empty")
        return self.blob_store.put(content, suffix=suffix)

    def attach_proof(
        self,
        tenant_id: str,
        stage: Union[ProofStage, str],
        target_id: str,
        actor_id: str,
        evidence_ref: Optional[str] = None,
        quantity: QuantityInput = None,
        confirm: bool = False,
    ) -> List[ProofSlot]:
        """Write evidence into a stage slot and return the request's slots.

        Pickup and delivery target an assignment id. Finalization targets a
        processed record id, or an active request id to stage proof ahead of
        finalizing.
        """
        try:
            stage = ProofStage(stage)
        except ValueError as exc:
            raise ValidationError(f"Unknown proof stage '{stage}'", field="stage") from exc
        quantity = self._quantity(quantity)

        with self.store.transaction():
            if stage in (ProofStage.PICKUP, ProofStage.DELIVERY):
                target = self.get_assignment(tenant_id, target_id)
                if target.superseded_at is not None:
                    raise StateError(f"Assignment {target_id} was replaced", assignment_id=target_id)
                updated, previous_ref = self.ledger.apply(stage, target, actor_id, evidence_ref, quantity, confirm)
                self.store.save_assignment(updated, target.version)
                request_id = target.request_id
                entity_type = EntityType.ASSIGNMENT
            else:
                record = self.store.get_processed(tenant_id, target_id)
                if record is not None and record.deleted_at is None:
                    updated, previous_ref = self.ledger.apply(stage, record, actor_id, evidence_ref, quantity, confirm)
                    self.store.save_processed(updated, record.version)
                    request_id = record.request_id
                    entity_type = EntityType.PROCESSED_RECORD
                else:
                    request = self._active_request(tenant_id, target_id)
                    updated, previous_ref = self.ledger.apply(stage, request, actor_id, evidence_ref, quantity, confirm)
                    self.store.save_request(updated, request.version)
                    request_id = request.request_id
                    entity_type = EntityType.REQUEST
            self._append(
                tenant_id,
                entity_type,
                target_id,
                ActivityAction.PROOF_ATTACHED,
                actor_id,
                request_id,
                stage=stage.value,
                evidence_ref=evidence_ref,
                quantity=quantity,
                replaced_ref=previous_ref,
                confirmed=confirm or None,
            )

        if previous_ref:
            self._release(previous_ref)
        logger.info("Proof attached", tenant_id=tenant_id, stage=stage.value, target_id=target_id, replaced=bool(previous_ref))
        return self.proof_slots(tenant_id, request_id)

    def proof_slots(self, tenant_id: str, request_id: str) -> List[ProofSlot]:
        request = self.get_request(tenant_id, request_id)
        processed = self.store.processed_for_request(tenant_id, request_id)
        assignment = None
        if processed is not None:
            assignment = self._linked_assignment(tenant_id, processed)
        else:
            assignment = self.store.active_assignment(tenant_id, request_id)
        return self.ledger.slots(request, assignment, processed)

    # ------------------------------------------------------------------
    # Audit and queries

    def reconstruct_timeline(self, tenant_id: str, request_id: str) -> Timeline:
        self.get_request(tenant_id, request_id)
        processed = self.store.processed_for_request(tenant_id, request_id)
        assignments = self.store.assignments_for_request(tenant_id, request_id)

        if processed is not None:
            linked = self._linked_assignment(tenant_id, processed)
            attribution = reconciler.classify(processed, linked)
            courier_id = processed.courier_id
        else:
            linked = next((row for row in assignments if row.is_active), None)
            attribution = Attribution.GENUINE if linked and linked.is_genuine else Attribution.NONE
            courier_id = linked.courier_id if linked else None

        entity_ids = [row.assignment_id for row in assignments]
        if processed is not None:
            entity_ids.append(processed.processed_id)
        events = self.store.events_for_request(tenant_id, request_id, entity_ids=entity_ids)
        return timeline.reconstruct(
            request_id,
            events,
            attribution,
            courier_id=courier_id,
            processed_id=processed.processed_id if processed else None,
            identity=self.identity,
        )

    def list_requests(
        self,
        tenant_id: str,
        status: Optional[RequestStatus] = None,
        requester_id: Optional[str] = None,
        include_deleted: bool = False,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        return self.store.list_requests(
            tenant_id,
            status=status,
            requester_id=requester_id,
            include_deleted=include_deleted,
            page=page,
            page_size=self.settings.clamp_page_size(page_size),
        )

    def list_assignments(
        self,
        tenant_id: str,
        status: Optional[AssignmentStatus] = None,
        courier_id: Optional[str] = None,
        request_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        return self.store.list_assignments(
            tenant_id,
            status=status,
            courier_id=courier_id,
            request_id=request_id,
            page=page,
            page_size=self.settings.clamp_page_size(page_size),
        )

    def list_processed(
        self,
        tenant_id: str,
        outcome: Optional[Outcome] = None,
        courier_id: Optional[str] = None,
        finalized_by: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        return self.store.list_processed(
            tenant_id,
            outcome=outcome,
            courier_id=courier_id,
            finalized_by=finalized_by,
            page=page,
            page_size=self.settings.clamp_page_size(page_size),
        )

    def list_activity(
        self,
        tenant_id: str,
        action: Optional[ActivityAction] = None,
        actor_id: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page:
        return self.store.list_events(
            tenant_id,
            action=action.value if action else None,
            actor_id=actor_id,
            page=page,
            page_size=self.settings.clamp_page_size(page_size),
        )

    def courier_attribution(self, tenant_id: str) -> List[CourierAttributionSummary]:
        records = self.store.all_processed(tenant_id)
        assignments: Dict[str, Assignment] = {}
        for record in records:
            linked = self._linked_assignment(tenant_id, record)
            if linked is not None:
                assignments[linked.assignment_id] = linked
        return reconciler.courier_attribution(records, assignments)


@lru_cache()
def get_engine() -> LifecycleEngine:
    """Engine wired to the configured database, upload dir and shared change feed."""
    return LifecycleEngine(
        RequestStore(),
        blob_store=LocalBlobStore(),
        notifier=ChangeNotifier(get_change_feed()),
        identity=StaticIdentityProvider(),
    )

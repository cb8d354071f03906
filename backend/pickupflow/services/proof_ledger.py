"""Per-stage evidence slots: pickup, delivery and finalization."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple, Union

from pickupflow.core.errors import StateError, ValidationError
from pickupflow.core.logging import logger
from pickupflow.models.lifecycle import (
    Assignment,
    PickupRequest,
    ProcessedRecord,
    ProofRecord,
    ProofSlot,
    ProofStage,
    Quantity,
)
from pickupflow.services.blob_store import BlobStore

ProofTarget = Union[Assignment, ProcessedRecord, PickupRequest]


class ProofLedger:
    """Reads and writes proof slots embedded in assignments and processed records.

    Physical facts (who picked up, when) live on the assignment; the ledger only
    holds evidence metadata, so it never changes courier identity. A slot whose
    stage already has a recorded work timestamp is locked and needs ``confirm``
    to be overwritten.
    """

    def __init__(self, blob_store: Optional[BlobStore] = None) -> None:
        self._blob_store = blob_store

    @staticmethod
    def build(
        stage: ProofStage,
        actor_id: str,
        evidence_ref: Optional[str] = None,
        quantity: Optional[Quantity] = None,
        existing: Optional[ProofRecord] = None,
    ) -> Optional[ProofRecord]:
        """Merge new evidence over an existing slot; ``None`` when there is nothing to hold."""
        evidence_ref = evidence_ref or (existing.evidence_ref if existing else None)
        quantity = quantity or (existing.quantity if existing else None)
        if evidence_ref is None and quantity is None:
            return None
        return ProofRecord(stage=stage, actor_id=actor_id, evidence_ref=evidence_ref, quantity=quantity)

    @staticmethod
    def is_locked(stage: ProofStage, target: ProofTarget) -> bool:
        if isinstance(target, Assignment):
            if stage == ProofStage.PICKUP:
                return target.picked_up_at is not None
            if stage == ProofStage.DELIVERY:
                return target.delivered_at is not None
        return False

    @staticmethod
    def _current(stage: ProofStage, target: ProofTarget) -> Optional[ProofRecord]:
        if isinstance(target, Assignment):
            return target.pickup_proof if stage == ProofStage.PICKUP else target.delivery_proof
        if isinstance(target, ProcessedRecord):
            return target.finalization_proof
        return target.staged_proof

    def apply(
        self,
        stage: ProofStage,
        target: ProofTarget,
        actor_id: str,
        evidence_ref: Optional[str] = None,
        quantity: Optional[Quantity] = None,
        confirm: bool = False,
    ) -> Tuple[ProofTarget, Optional[str]]:
        """Return the target with the slot written, plus the evidence reference it replaced."""
        if evidence_ref is None and quantity is None:
            raise ValidationError("Proof needs an evidence reference or a quantity")

        if isinstance(target, Assignment):
            if stage not in (ProofStage.PICKUP, ProofStage.DELIVERY):
                raise ValidationError(f"Stage '{stage.value}' is not held on an assignment")
        elif stage != ProofStage.FINALIZATION:
            raise ValidationError(f"Stage '{stage.value}' is not held on a {type(target).__name__}")

        if self.is_locked(stage, target) and not confirm:
            raise StateError(
                f"The {stage.value} stage already has recorded work; resubmit with confirm to replace its proof",
                stage=stage.value,
            )

        current = self._current(stage, target)
        record = self.build(stage, actor_id, evidence_ref, quantity, existing=current)
        previous_ref = current.evidence_ref if current else None
        if previous_ref == record.evidence_ref:
            previous_ref = None

        if isinstance(target, Assignment):
            field = "pickup_proof" if stage == ProofStage.PICKUP else "delivery_proof"
            update = {field: record}
            if quantity is not None:
                update["quantity"] = quantity
            return target.model_copy(update=update), previous_ref
        if isinstance(target, ProcessedRecord):
            update = {"finalization_proof": record}
            if quantity is not None:
                update["quantity"] = quantity
            return target.model_copy(update=update), previous_ref
        return target.model_copy(update={"staged_proof": record}), previous_ref

    def slots(
        self,
        request: Optional[PickupRequest],
        assignment: Optional[Assignment],
        processed: Optional[ProcessedRecord],
    ) -> List[ProofSlot]:
        pickup = assignment.pickup_proof if assignment else None
        delivery = assignment.delivery_proof if assignment else None
        if processed is not None:
            finalization = processed.finalization_proof
            finalized_at: Optional[datetime] = processed.finalized_at
        else:
            finalization = request.staged_proof if request else None
            finalized_at = None

        def _slot(stage: ProofStage, proof: Optional[ProofRecord], work_ts: Optional[datetime], locked: bool) -> ProofSlot:
            return ProofSlot(
                stage=stage,
                actor_id=proof.actor_id if proof else None,
                timestamp=work_ts,
                recorded_at=proof.recorded_at if proof else None,
                evidence_ref=proof.evidence_ref if proof else None,
                quantity=proof.quantity if proof else None,
                locked=locked,
            )

        return [
            _slot(
                ProofStage.PICKUP,
                pickup,
                assignment.picked_up_at if assignment else None,
                bool(assignment and self.is_locked(ProofStage.PICKUP, assignment)),
            ),
            _slot(
                ProofStage.DELIVERY,
                delivery,
                assignment.delivered_at if assignment else None,
                bool(assignment and self.is_locked(ProofStage.DELIVERY, assignment)),
            ),
            _slot(ProofStage.FINALIZATION, finalization, finalized_at, False),
        ]

    def release(self, reference: Optional[str]) -> bool:
        """Delete a replaced blob. Failures are logged; the metadata write already happened."""
        if not reference or self._blob_store is None:
            return False
        try:
            self._blob_store.delete(reference)
        except Exception as exc:
            logger.warning(
                "Failed to delete replaced proof blob; leaving orphan",
                reference=reference,
                error=str(exc),
            )
            return False
        logger.info("Replaced proof blob deleted", reference=reference)
        return True

"""Domain models for the pickup request lifecycle: entities, payloads and views."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    """Lifecycle status of an active or finalized pickup request."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PICKED_UP = "picked_up"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_REQUEST_STATUSES = {RequestStatus.COMPLETED, RequestStatus.REJECTED, RequestStatus.CANCELLED}


class AssignmentStatus(str, Enum):
    """Courier-side progress of an assignment."""

    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    COMPLETED = "completed"


class Outcome(str, Enum):
    """Finalization outcome."""

    COMPLETED = "completed"
    REJECTED = "rejected"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


class WeightUnit(str, Enum):
    KG = "kg"
    TONNE = "t"


class ProofStage(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"
    FINALIZATION = "finalization"


class EntityType(str, Enum):
    REQUEST = "request"
    ASSIGNMENT = "assignment"
    PROCESSED_RECORD = "processed_record"


class ActivityAction(str, Enum):
    """Action tags appended to the activity log."""

    CREATE = "create"
    ASSIGN = "assign"
    START = "start"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    PROCESS = "process"
    REJECT = "reject"
    CANCEL = "cancel"
    REASSIGN_COURIER = "reassign_courier"
    PROOF_ATTACHED = "proof_attached"
    AMEND = "amend"
    DELETE = "delete"


class Attribution(str, Enum):
    """How a finalized record's courier association came to be."""

    GENUINE = "genuine"
    RETROACTIVE = "retroactive"
    NONE = "none"


class Quantity(BaseModel):
    """Weight captured at a stage."""

    value: float = Field(gt=0)
    unit: WeightUnit = WeightUnit.KG

    def in_kg(self) -> float:
        if self.unit == WeightUnit.TONNE:
            return self.value * 1000.0
        return self.value


class ProofRecord(BaseModel):
    """Evidence held in one stage slot."""

    stage: ProofStage
    actor_id: str
    recorded_at: datetime = Field(default_factory=_utcnow)
    evidence_ref: Optional[str] = None
    quantity: Optional[Quantity] = None


class PickupRequest(BaseModel):
    """A requester's unit of work while it is active."""

    request_id: str
    tenant_id: str
    request_code: str
    requester_id: str
    material_type: str
    fill_level: int = Field(ge=0, le=100)
    urgency: Urgency = Urgency.NORMAL
    note: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    staged_proof: Optional[ProofRecord] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and self.status not in TERMINAL_REQUEST_STATUSES

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump(
            mode="json",
            include={
                "request_id",
                "request_code",
                "requester_id",
                "material_type",
                "fill_level",
                "urgency",
                "note",
                "status",
                "created_at",
            },
        )


class Assignment(BaseModel):
    """Binding of a courier to a request for physical transport."""

    assignment_id: str
    tenant_id: str
    request_id: str
    courier_id: str
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    assigned_by: str
    assigned_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None
    quantity: Optional[Quantity] = None
    pickup_proof: Optional[ProofRecord] = None
    delivery_proof: Optional[ProofRecord] = None
    version: int = Field(default=1, ge=1)

    @property
    def is_genuine(self) -> bool:
        return self.picked_up_at is not None or self.delivered_at is not None

    @property
    def is_active(self) -> bool:
        return self.superseded_at is None and self.status != AssignmentStatus.COMPLETED


class ProcessedRecord(BaseModel):
    """Terminal, finalized form of a request."""

    processed_id: str
    tenant_id: str
    request_id: str
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    outcome: Outcome
    finalized_by: str
    finalized_at: datetime = Field(default_factory=_utcnow)
    finalization_proof: Optional[ProofRecord] = None
    quantity: Optional[Quantity] = None
    note: Optional[str] = None
    rejection_reason: Optional[str] = None
    courier_id: Optional[str] = None
    assignment_id: Optional[str] = None
    deleted_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)


class ActivityEvent(BaseModel):
    """Immutable append-only audit fact."""

    event_id: str
    tenant_id: str
    entity_type: EntityType
    entity_id: str
    action: ActivityAction
    actor_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# API payloads


class CreateRequestPayload(BaseModel):
    """Requester input for a new pickup request."""

    material_type: str = ""
    fill_level: int = 0
    urgency: str = Urgency.NORMAL.value
    note: Optional[str] = None
    requester_id: Optional[str] = None


class AssignCourierPayload(BaseModel):
    courier_id: str
    expected_version: Optional[int] = Field(default=None, ge=1)


class CourierStagePayload(BaseModel):
    """Optional evidence captured by a courier at pickup or delivery."""

    quantity: Optional[Quantity] = None
    proof_ref: Optional[str] = None


class FinalizePayload(BaseModel):
    outcome: Outcome = Outcome.COMPLETED
    proof_ref: Optional[str] = None
    quantity: Optional[Quantity] = None
    note: Optional[str] = None
    courier_id: Optional[str] = None
    rejection_reason: Optional[str] = None


class ReassignCourierPayload(BaseModel):
    courier_id: str


class AmendProcessedPayload(BaseModel):
    quantity: Optional[Quantity] = None
    note: Optional[str] = None


class AttachProofPayload(BaseModel):
    stage: ProofStage
    target_id: str
    evidence_ref: Optional[str] = None
    quantity: Optional[Quantity] = None
    confirm: bool = False


# ---------------------------------------------------------------------------
# Read views


class ProofSlot(BaseModel):
    """Ledger view of one stage: who, when the work happened, what evidence."""

    stage: ProofStage
    actor_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    recorded_at: Optional[datetime] = None
    evidence_ref: Optional[str] = None
    quantity: Optional[Quantity] = None
    locked: bool = False


class TimelineStepKind(str, Enum):
    CREATED = "created"
    ASSIGNED = "assigned"
    STARTED = "started"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    PROCESSED = "processed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    RETROACTIVE_COURIER = "retroactive_courier"


class TimelineStep(BaseModel):
    kind: TimelineStepKind
    timestamp: Optional[datetime] = None
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    event_id: Optional[str] = None
    inferred: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class Timeline(BaseModel):
    request_id: str
    attribution: Attribution
    courier_id: Optional[str] = None
    steps: List[TimelineStep] = Field(default_factory=list)

    def kinds(self) -> List[TimelineStepKind]:
        return [step.kind for step in self.steps]


class Page(BaseModel):
    """One page of a tenant-scoped list query."""

    items: List[Any] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 25
    total_pages: int = 0


class ChangeEvent(BaseModel):
    """Notification published to observers of one tenant."""

    entity_type: EntityType
    entity_id: str
    tenant_id: str
    status: str
    published_at: datetime = Field(default_factory=_utcnow)


class CourierAttributionSummary(BaseModel):
    courier_id: str
    genuine: int = 0
    retroactive: int = 0
    total_kg: float = 0.0

"""API routes for the pickup request lifecycle."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, UploadFile

from pickupflow.core.auth import TenantContext, get_tenant_context, require_roles
from pickupflow.core.config import get_settings
from pickupflow.core.errors import (
    ConflictError,
    ImmutableAssignmentError,
    LifecycleError,
    NotFoundError,
    StateError,
    ValidationError,
)
from pickupflow.core.logging import logger
from pickupflow.models.lifecycle import (
    ActivityAction,
    AmendProcessedPayload,
    AssignCourierPayload,
    AssignmentStatus,
    AttachProofPayload,
    CourierStagePayload,
    CreateRequestPayload,
    FinalizePayload,
    Outcome,
    ProofStage,
    ReassignCourierPayload,
    RequestStatus,
    WeightUnit,
)
from pickupflow.services.lifecycle_engine import get_engine
from pickupflow.services.notifier import get_change_feed

router = APIRouter(prefix="/pickup", tags=["pickup"])

_STATUS_FOR_ERROR = (
    (ImmutableAssignmentError, 423),
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
)


def _http_error(exc: LifecycleError) -> HTTPException:
    status_code = next((code for kind, code in _STATUS_FOR_ERROR if isinstance(exc, kind)), 400)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _idempotency_lookup(context: TenantContext, operation: str, key: str | None):
    if not key:
        return None
    return get_engine().store.get_idempotent(context.tenant_id, f"{operation}:{key.strip()}")


def _idempotency_store(context: TenantContext, operation: str, key: str | None, response: dict):
    if not key:
        return
    get_engine().store.set_idempotent(context.tenant_id, f"{operation}:{key.strip()}", response)


# ----------------------------------------------------------------------
# Requests


@router.post("/requests")
def create_request(
    payload: CreateRequestPayload,
    context: TenantContext = Depends(require_roles("requester", "manager", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, "create_request", idempotency_key)
    if cached:
        return cached
    try:
        request = get_engine().create(
            context.tenant_id,
            requester_id=payload.requester_id or context.actor,
            material_type=payload.material_type,
            fill_level=payload.fill_level,
            urgency=payload.urgency,
            note=payload.note,
        )
    except LifecycleError as exc:
        logger.warning("Failed to create request", error=exc.message)
        raise _http_error(exc)
    response = request.model_dump(mode="json")
    _idempotency_store(context, "create_request", idempotency_key, response)
    return response


@router.get("/requests")
def list_requests(
    status: Optional[RequestStatus] = Query(default=None),
    requester_id: Optional[str] = Query(default=None),
    include_deleted: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    context: TenantContext = Depends(get_tenant_context),
):
    return get_engine().list_requests(
        context.tenant_id,
        status=status,
        requester_id=requester_id,
        include_deleted=include_deleted,
        page=page,
        page_size=page_size,
    )


@router.get("/requests/{request_id}")
def get_request(request_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return get_engine().get_request(context.tenant_id, request_id)
    except LifecycleError as exc:
        raise _http_error(exc)


@router.post("/requests/{request_id}/assign")
def assign_courier(
    request_id: str,
    payload: AssignCourierPayload,
    context: TenantContext = Depends(require_roles("manager", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, f"assign:{request_id}", idempotency_key)
    if cached:
        return cached
    try:
        assignment = get_engine().assign(
            context.tenant_id,
            request_id,
            payload.courier_id,
            context.actor,
            expected_version=payload.expected_version,
        )
    except LifecycleError as exc:
        logger.warning("Failed to assign courier", request_id=request_id, error=exc.message)
        raise _http_error(exc)
    response = assignment.model_dump(mode="json")
    _idempotency_store(context, f"assign:{request_id}", idempotency_key, response)
    return response


@router.post("/requests/{request_id}/finalize")
def finalize_request(
    request_id: str,
    payload: FinalizePayload,
    context: TenantContext = Depends(require_roles("manager", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, f"finalize:{request_id}", idempotency_key)
    if cached:
        return cached
    try:
        record = get_engine().finalize(
            context.tenant_id,
            request_id,
            context.actor,
            outcome=payload.outcome,
            proof_ref=payload.proof_ref,
            quantity=payload.quantity,
            note=payload.note,
            courier_id=payload.courier_id,
            rejection_reason=payload.rejection_reason,
        )
    except LifecycleError as exc:
        logger.warning("Failed to finalize request", request_id=request_id, error=exc.message)
        raise _http_error(exc)
    response = record.model_dump(mode="json")
    _idempotency_store(context, f"finalize:{request_id}", idempotency_key, response)
    return response


@router.post("/requests/{request_id}/cancel")
def cancel_request(
    request_id: str,
    context: TenantContext = Depends(require_roles("requester", "manager", "admin")),
):
    try:
        return get_engine().cancel(context.tenant_id, request_id, context.actor)
    except LifecycleError as exc:
        raise _http_error(exc)


@router.get("/requests/{request_id}/timeline")
def request_timeline(request_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return get_engine().reconstruct_timeline(context.tenant_id, request_id)
    except LifecycleError as exc:
        raise _http_error(exc)


@router.get("/requests/{request_id}/proofs")
def request_proofs(request_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return get_engine().proof_slots(context.tenant_id, request_id)
    except LifecycleError as exc:
        raise _http_error(exc)


# ----------------------------------------------------------------------
# Courier work


@router.get("/assignments")
def list_assignments(
    status: Optional[AssignmentStatus] = Query(default=None),
    courier_id: Optional[str] = Query(default=None),
    request_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    context: TenantContext = Depends(get_tenant_context),
):
    return get_engine().list_assignments(
        context.tenant_id,
        status=status,
        courier_id=courier_id,
        request_id=request_id,
        page=page,
        page_size=page_size,
    )


@router.post("/assignments/{assignment_id}/start")
def start_assignment(
    assignment_id: str,
    context: TenantContext = Depends(require_roles("courier", "manager", "admin")),
):
    try:
        return get_engine().record_start(context.tenant_id, assignment_id, context.actor)
    except LifecycleError as exc:
        raise _http_error(exc)


@router.post("/assignments/{assignment_id}/pickup")
def record_pickup(
    assignment_id: str,
    payload: Optional[CourierStagePayload] = None,
    context: TenantContext = Depends(require_roles("courier", "manager", "admin")),
):
    payload = payload or CourierStagePayload()
    try:
        return get_engine().record_pickup(
            context.tenant_id,
            assignment_id,
            context.actor,
            quantity=payload.quantity,
            proof_ref=payload.proof_ref,
        )
    except LifecycleError as exc:
        logger.warning("Failed to record pickup", assignment_id=assignment_id, error=exc.message)
        raise _http_error(exc)


@router.post("/assignments/{assignment_id}/delivery")
def record_delivery(
    assignment_id: str,
    payload: Optional[CourierStagePayload] = None,
    context: TenantContext = Depends(require_roles("courier", "manager", "admin")),
):
    payload = payload or CourierStagePayload()
    try:
        return get_engine().record_delivery(
            context.tenant_id,
            assignment_id,
            context.actor,
            quantity=payload.quantity,
            proof_ref=payload.proof_ref,
        )
    except LifecycleError as exc:
        logger.warning("Failed to record delivery", assignment_id=assignment_id, error=exc.message)
        raise _http_error(exc)


# ----------------------------------------------------------------------
# Processed records


@router.get("/processed")
def list_processed(
    outcome: Optional[Outcome] = Query(default=None),
    courier_id: Optional[str] = Query(default=None),
    finalized_by: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    context: TenantContext = Depends(get_tenant_context),
):
    return get_engine().list_processed(
        context.tenant_id,
        outcome=outcome,
        courier_id=courier_id,
        finalized_by=finalized_by,
        page=page,
        page_size=page_size,
    )


@router.get("/processed/{processed_id}")
def get_processed(processed_id: str, context: TenantContext = Depends(get_tenant_context)):
    engine = get_engine()
    try:
        record = engine.get_processed(context.tenant_id, processed_id)
        attribution = engine.classify(context.tenant_id, processed_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    return {**record.model_dump(mode="json"), "attribution": attribution.value}


@router.post("/processed/{processed_id}/courier")
def reassign_courier(
    processed_id: str,
    payload: ReassignCourierPayload,
    context: TenantContext = Depends(require_roles("manager", "admin")),
):
    try:
        return get_engine().reassign_courier(context.tenant_id, processed_id, payload.courier_id, context.actor)
    except LifecycleError as exc:
        logger.warning("Courier reassignment refused", processed_id=processed_id, error=exc.message)
        raise _http_error(exc)


@router.patch("/processed/{processed_id}")
def amend_processed(
    processed_id: str,
    payload: AmendProcessedPayload,
    context: TenantContext = Depends(require_roles("manager", "admin")),
):
    try:
        return get_engine().amend_processed(
            context.tenant_id,
            processed_id,
            context.actor,
            quantity=payload.quantity,
            note=payload.note,
        )
    except LifecycleError as exc:
        raise _http_error(exc)


@router.delete("/processed/{processed_id}")
def delete_processed(
    processed_id: str,
    context: TenantContext = Depends(require_roles("manager", "admin")),
):
    try:
        record = get_engine().delete_processed(context.tenant_id, processed_id, context.actor)
    except LifecycleError as exc:
        raise _http_error(exc)
    return {"processed_id": record.processed_id, "deleted_at": record.deleted_at}


# ----------------------------------------------------------------------
# Proof ledger


@router.post("/proofs")
def attach_proof(
    payload: AttachProofPayload,
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return get_engine().attach_proof(
            context.tenant_id,
            payload.stage,
            payload.target_id,
            context.actor,
            evidence_ref=payload.evidence_ref,
            quantity=payload.quantity,
            confirm=payload.confirm,
        )
    except LifecycleError as exc:
        logger.warning("Failed to attach proof", stage=payload.stage.value, target_id=payload.target_id, error=exc.message)
        raise _http_error(exc)


@router.post("/proofs/upload")
async def upload_proof(
    file: UploadFile = File(...),
    stage: ProofStage = Form(...),
    target_id: str = Form(...),
    quantity_value: Optional[float] = Form(None),
    quantity_unit: WeightUnit = Form(WeightUnit.KG),
    confirm: bool = Form(False),
    context: TenantContext = Depends(get_tenant_context),
):
    """Store an uploaded photo or document and attach it to a stage slot."""
    settings = get_settings()
    content = await file.read()
    if len(content) > settings.max_upload_size:
        raise HTTPException(status_code=413, detail=f"File too large (max {settings.max_upload_size} bytes)")

    engine = get_engine()
    quantity = {"value": quantity_value, "unit": quantity_unit.value} if quantity_value is not None else None
    try:
        reference = engine.upload_proof(content, suffix=Path(file.filename or "").suffix)
        slots = engine.attach_proof(
            context.tenant_id,
            stage,
            target_id,
            context.actor,
            evidence_ref=reference,
            quantity=quantity,
            confirm=confirm,
        )
    except LifecycleError as exc:
        logger.warning("Failed to attach uploaded proof", stage=stage.value, target_id=target_id, error=exc.message)
        raise _http_error(exc)
    return {"evidence_ref": reference, "slots": slots}


# ----------------------------------------------------------------------
# Feeds and summaries


@router.get("/changes")
def poll_changes(
    limit: int = Query(default=50, ge=1, le=500),
    context: TenantContext = Depends(get_tenant_context),
):
    return get_change_feed().recent(context.tenant_id, limit=limit)


@router.get("/activity")
def list_activity(
    action: Optional[ActivityAction] = Query(default=None),
    actor_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: Optional[int] = Query(default=None, ge=1),
    context: TenantContext = Depends(get_tenant_context),
):
    return get_engine().list_activity(
        context.tenant_id,
        action=action,
        actor_id=actor_id,
        page=page,
        page_size=page_size,
    )


@router.get("/couriers/attribution")
def courier_attribution(context: TenantContext = Depends(require_roles("manager", "admin"))):
    return get_engine().courier_attribution(context.tenant_id)

"""
SCHOLARSHIP LIFECYCLE API ROUTES

All routes delegate to the engine services:
- ApplicationLifecycle: status transitions and history
- ReviewCoordinator: committee stage decisions
- BudgetLedger: bucket administration and snapshots
- DisbursementOrchestrator: grant payout, provider callbacks, retries
- ReconciliationJob: ledger consistency report

Engine errors (WorkflowError) are translated to HTTP responses by the
exception handler registered in server.py.
"""

from fastapi import APIRouter, Depends, Header, Request, status
from bson import ObjectId, Decimal128
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import json
import logging
import os

from models import (
    ApplicationCreate, TransitionRequest, StageDecisionRequest,
    ProcessGrantRequest, ConfirmDisbursementRequest, RetryPaymentRequest,
    CancelPaymentRequest, BudgetUpsert, TransitionResponse, StageDecisionResponse,
    BudgetResponse, ErrorResponse
)
from permissions import (
    PermissionChecker, check_role,
    CAN_SUBMIT, CAN_TRANSITION, CAN_REVIEW, CAN_FINAL_APPROVE,
    CAN_DISBURSE, CAN_MANAGE_BUDGET, CAN_RECONCILE
)
from services import ScholarshipEngine, get_engine
from engine.application_lifecycle import Actor
from engine.exceptions import PaymentRecordNotFound, WebhookSignatureError
from engine.payment_provider import parse_webhook_event, verify_webhook_signature

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, Decimal128):
            result[key] = float(value.to_decimal())
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def application_view(doc: Dict[str, Any], engine: ScholarshipEngine) -> Dict[str, Any]:
    result = serialize_doc(doc)
    result["application_id"] = result.pop("_id")
    result.pop("state_history", None)
    result["allowed_transitions"] = engine.lifecycle.allowed_transitions(doc["status"])
    return result


# Create router
scholarship_router = APIRouter(
    prefix="/api/v1/scholarship",
    tags=["Scholarship Lifecycle"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)


# ============================================
# APPLICATION ENDPOINTS
# ============================================

@scholarship_router.post("/applications", status_code=status.HTTP_201_CREATED)
async def submit_application(
    data: ApplicationCreate,
    actor: Actor = Depends(PermissionChecker(*CAN_SUBMIT)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    """Create an application and move it to submitted"""
    result = await engine.lifecycle.submit_application(data.dict(), actor)
    return application_view(result.application, engine)


@scholarship_router.get("/applications/{application_id}")
async def get_application(
    application_id: str,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    doc = await engine.lifecycle.get_application(application_id)
    return application_view(doc, engine)


@scholarship_router.get("/applications/{application_id}/history")
async def get_application_history(
    application_id: str,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    history = await engine.lifecycle.get_history(application_id)
    return {"application_id": application_id, "history": [serialize_doc(h) for h in history]}


@scholarship_router.post("/applications/{application_id}/transition", response_model=TransitionResponse)
async def transition_application(
    application_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(PermissionChecker(*CAN_TRANSITION)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    """Generic staff transition (committee and grant statuses have their own endpoints)"""
    result = await engine.lifecycle.transition(application_id, request.target_status, actor, notes=request.notes)
    return result.to_dict()


# ============================================
# COMMITTEE REVIEW ENDPOINTS
# ============================================

@scholarship_router.post("/applications/{application_id}/stages/{stage}/decision", response_model=StageDecisionResponse)
async def submit_stage_decision(
    application_id: str,
    stage: str,
    request: StageDecisionRequest,
    actor: Actor = Depends(PermissionChecker(*CAN_REVIEW)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    if stage == "final_approval":
        check_role(actor, CAN_FINAL_APPROVE, "record final approval decisions")

    return await engine.review.submit_stage_decision(
        application_id,
        stage,
        request.decision,
        actor,
        payload=request.stage_payload(),
        notes=request.notes
    )


@scholarship_router.get("/applications/{application_id}/stages")
async def get_review_stages(
    application_id: str,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    application = await engine.lifecycle.get_application(application_id)
    rows = await engine.review.get_review_stages(str(application["_id"]))
    stages = []
    for row in rows:
        row = serialize_doc(row)
        row["review_stage_id"] = row.pop("_id")
        stages.append(row)
    return {"application_id": application_id, "status": application["status"], "stages": stages}


# ============================================
# DISBURSEMENT ENDPOINTS
# ============================================

@scholarship_router.post("/applications/{application_id}/process-grant")
async def process_grant(
    application_id: str,
    request: ProcessGrantRequest,
    actor: Actor = Depends(PermissionChecker(*CAN_DISBURSE)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    result = await engine.orchestrator.process_grant(
        application_id, actor, payment_method=request.payment_method, operation_id=request.operation_id
    )
    return serialize_doc(result)


@scholarship_router.post("/applications/{application_id}/confirm-disbursement")
async def confirm_disbursement(
    application_id: str,
    request: ConfirmDisbursementRequest,
    actor: Actor = Depends(PermissionChecker(*CAN_DISBURSE)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    result = await engine.orchestrator.confirm_disbursement(
        application_id,
        actor,
        provider_reference=request.provider_reference,
        receipt_reference=request.receipt_reference,
        payment_method=request.payment_method
    )
    return serialize_doc(result)


@scholarship_router.get("/applications/{application_id}/payments")
async def get_payment_records(
    application_id: str,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    records = await engine.orchestrator.get_payment_records(application_id)
    return {"application_id": application_id, "payments": [serialize_doc(r) for r in records]}


@scholarship_router.post("/payments/{payment_id}/retry")
async def retry_payment(
    payment_id: str,
    request: RetryPaymentRequest,
    actor: Actor = Depends(PermissionChecker(*CAN_DISBURSE)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    result = await engine.orchestrator.retry_payment(
        payment_id, actor, payment_method=request.payment_method, operation_id=request.operation_id
    )
    return serialize_doc(result)


@scholarship_router.post("/payments/cancel")
async def cancel_payment(
    request: CancelPaymentRequest,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    """Payer returned from checkout without paying"""
    result = await engine.orchestrator.handle_provider_cancel(
        {
            "application_id": request.application_id,
            "checkout_session_id": request.checkout_session_id,
            "transaction_reference": request.transaction_id,
        },
        actor
    )
    return serialize_doc(result)


@scholarship_router.post("/webhooks/paymongo")
async def paymongo_webhook(
    request: Request,
    paymongo_signature: Optional[str] = Header(default=None, alias="Paymongo-Signature"),
    engine: ScholarshipEngine = Depends(get_engine)
):
    """Provider callback; signature verified against the raw body"""
    body = await request.body()
    verify_webhook_signature(paymongo_signature, body, os.environ.get("PAYMONGO_WEBHOOK_SECRET"))

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise WebhookSignatureError("Webhook body is not valid JSON")

    event = parse_webhook_event(payload)
    try:
        result = await engine.orchestrator.handle_webhook_event(event)
    except PaymentRecordNotFound as e:
        # Acknowledge so the provider stops redelivering an event we cannot match
        logger.warning(f"[PAYMENT] Webhook {event.event_type} unmatched: {e.details}")
        return {"status": "unmatched", "event_type": event.event_type}

    return serialize_doc(result)


# ============================================
# BUDGET ENDPOINTS
# ============================================

@scholarship_router.get("/budgets")
async def list_budgets(
    school_year: Optional[str] = None,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    buckets = await engine.ledger.list_buckets(school_year)
    return {"budgets": [serialize_doc(b) for b in buckets]}


@scholarship_router.get("/budgets/{budget_type}/{school_year}", response_model=BudgetResponse)
async def get_budget(
    budget_type: str,
    school_year: str,
    actor: Actor = Depends(PermissionChecker()),
    engine: ScholarshipEngine = Depends(get_engine)
):
    return serialize_doc(await engine.ledger.get_bucket(budget_type, school_year))


@scholarship_router.put("/budgets", response_model=BudgetResponse)
async def upsert_budget(
    data: BudgetUpsert,
    actor: Actor = Depends(PermissionChecker(*CAN_MANAGE_BUDGET)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    bucket = await engine.ledger.upsert_budget(
        data.budget_type, data.school_year, data.total_budget, data.description, actor.user_id
    )
    return serialize_doc(bucket)


@scholarship_router.post("/budgets/{budget_type}/{school_year}/archive")
async def archive_settled_reservations(
    budget_type: str,
    school_year: str,
    actor: Actor = Depends(PermissionChecker(*CAN_MANAGE_BUDGET)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    """Move reservations settled longer than reservation_archive_days out of the bucket"""
    days = await engine.policy_service.reservation_archive_days()
    return await engine.ledger.archive_settled(budget_type, school_year, datetime.utcnow() - timedelta(days=days))


# ============================================
# RECONCILIATION
# ============================================

@scholarship_router.post("/reconciliation/run")
async def run_reconciliation(
    actor: Actor = Depends(PermissionChecker(*CAN_RECONCILE)),
    engine: ScholarshipEngine = Depends(get_engine)
):
    return await engine.reconciliation_job().run()

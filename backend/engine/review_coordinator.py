"""
COMMITTEE REVIEW COORDINATOR

Sequences the four committee stages and turns each stage decision into an
application transition.

Stage order (entry status → approval target):
    document_verification  endorsed_to_ssc       → ssc_financial_review
    financial_review       ssc_financial_review  → ssc_academic_review
    academic_review        ssc_academic_review   → ssc_final_approval
    final_approval         ssc_final_approval    → approved

RULES:
- A decision is accepted only while the application sits in the stage's entry
  status (StageNotActive otherwise, nothing written)
- Repeating the decision already recorded for a stage in the current review
  attempt returns the recorded result
- The ReviewStage row is written after the status change succeeds
- needs_revision sends the application back to endorsed_to_ssc and opens a new
  review attempt; past the revision cap it is rejected instead
- ReviewStage rows are per (application, stage, attempt) and never overwritten
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from engine.application_lifecycle import ApplicationLifecycle, ApplicationStatus, Actor
from engine.exceptions import (
    AmountExceedsRecommendation,
    AmountExceedsRequest,
    StageNotActive,
    StagePayloadError,
)
from engine.financial_precision import (
    FinancialPrecisionError,
    ZERO,
    round_financial,
    to_decimal,
    to_float,
)
from engine.policy_service import PolicyService

logger = logging.getLogger(__name__)


class StageDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_REVISION = "needs_revision"


REVISION_LIMIT_REASON = "revision_limit_exceeded"


# =============================================================================
# STAGE PAYLOAD VALIDATION
# =============================================================================

def _amount(payload: Dict[str, Any], field_name: str, stage: str):
    value = payload.get(field_name)
    if value is None:
        raise StagePayloadError(
            f"{field_name} is required to approve {stage}", {"stage": stage, "field": field_name}
        )
    try:
        amount = round_financial(value)
    except (FinancialPrecisionError, ArithmeticError, ValueError):
        raise StagePayloadError(f"{field_name} must be numeric", {"stage": stage, "field": field_name})
    if amount <= ZERO:
        raise StagePayloadError(f"{field_name} must be positive", {"stage": stage, "field": field_name})
    return amount


def validate_document_verification(application: Dict, payload: Dict) -> Dict[str, Any]:
    if payload.get("documents_verified") is not True:
        raise StagePayloadError(
            "Documents must be verified before document_verification can be approved",
            {"stage": "document_verification", "document_issues": payload.get("document_issues", [])}
        )
    return {}


def validate_financial_review(application: Dict, payload: Dict) -> Dict[str, Any]:
    recommended = _amount(payload, "recommended_amount", "financial_review")
    requested = to_decimal(application.get("requested_amount"))
    if recommended > requested:
        raise AmountExceedsRequest(
            f"recommended_amount {to_float(recommended)} exceeds requested amount {to_float(requested)}",
            {"recommended_amount": to_float(recommended), "requested_amount": to_float(requested)}
        )
    return {"recommended_amount": to_float(recommended)}


def validate_academic_review(application: Dict, payload: Dict) -> Dict[str, Any]:
    score = payload.get("academic_score")
    if score is None:
        return {}
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise StagePayloadError("academic_score must be numeric", {"stage": "academic_review"})
    return {"academic_score": score}


def validate_final_approval(application: Dict, payload: Dict) -> Dict[str, Any]:
    approved = _amount(payload, "approved_amount", "final_approval")
    requested = to_decimal(application.get("requested_amount"))
    if approved > requested:
        raise AmountExceedsRequest(
            f"approved_amount {to_float(approved)} exceeds requested amount {to_float(requested)}",
            {"approved_amount": to_float(approved), "requested_amount": to_float(requested)}
        )
    if application.get("recommended_amount") is not None:
        recommended = to_decimal(application["recommended_amount"])
        if approved > recommended:
            raise AmountExceedsRecommendation(
                f"approved_amount {to_float(approved)} exceeds recommended amount {to_float(recommended)}",
                {"approved_amount": to_float(approved), "recommended_amount": to_float(recommended)}
            )
    return {"approved_amount": to_float(approved)}


@dataclass(frozen=True)
class StageSpec:
    stage: str
    entry_status: ApplicationStatus
    approve_to: ApplicationStatus
    validate: Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


STAGE_SPECS: Dict[str, StageSpec] = {
    "document_verification": StageSpec(
        "document_verification",
        ApplicationStatus.ENDORSED_TO_SSC,
        ApplicationStatus.SSC_FINANCIAL_REVIEW,
        validate_document_verification
    ),
    "financial_review": StageSpec(
        "financial_review",
        ApplicationStatus.SSC_FINANCIAL_REVIEW,
        ApplicationStatus.SSC_ACADEMIC_REVIEW,
        validate_financial_review
    ),
    "academic_review": StageSpec(
        "academic_review",
        ApplicationStatus.SSC_ACADEMIC_REVIEW,
        ApplicationStatus.SSC_FINAL_APPROVAL,
        validate_academic_review
    ),
    "final_approval": StageSpec(
        "final_approval",
        ApplicationStatus.SSC_FINAL_APPROVAL,
        ApplicationStatus.APPROVED,
        validate_final_approval
    ),
}

STAGE_ORDER = list(STAGE_SPECS)


def current_stage(application: Dict[str, Any]) -> Optional[str]:
    """Stage currently accepting decisions, or None outside committee review."""
    for spec in STAGE_SPECS.values():
        if application.get("status") == spec.entry_status.value:
            return spec.stage
    return None


# =============================================================================
# COORDINATOR
# =============================================================================

class ReviewCoordinator:
    """Records stage decisions and drives the application through review."""

    COLLECTION = "review_stages"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        lifecycle: ApplicationLifecycle,
        policy_service: Optional[PolicyService] = None,
        audit_service=None
    ):
        self.db = db
        self.collection = db[self.COLLECTION]
        self.lifecycle = lifecycle
        self.policy_service = policy_service or PolicyService(db)
        self.audit_service = audit_service

    async def create_indexes(self):
        await self.collection.create_index(
            [("application_id", 1), ("stage", 1), ("attempt", 1)],
            unique=True,
            name="idx_review_stage_attempt_unique"
        )

    async def get_review_stages(self, application_id: str) -> List[Dict[str, Any]]:
        rows = await self.collection.find({"application_id": str(application_id)}).to_list(length=None)
        rows.sort(key=lambda r: (r.get("attempt", 1), STAGE_ORDER.index(r["stage"])))
        return rows

    async def _recorded_row(self, application_id: str, stage: str, attempt: int) -> Optional[Dict[str, Any]]:
        """
        Row a repeated decision may replay: the stage's row in the current
        attempt, or a needs_revision row that closed the previous attempt.
        """
        rows = await self.collection.find(
            {"application_id": application_id, "stage": stage, "attempt": {"$in": [attempt, attempt - 1]}}
        ).to_list(length=None)
        for row in rows:
            if row.get("attempt") == attempt:
                return row
        for row in rows:
            if row.get("decision") == StageDecision.NEEDS_REVISION.value:
                return row
        return None

    async def submit_stage_decision(
        self,
        application_id: str,
        stage: str,
        decision: str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a committee decision for one stage.

        Returns:
            dict with application_id, stage, decision, attempt, status (the
            application status afterwards), escalated, idempotent_replay

        Raises:
            StageNotActive, StagePayloadError, AmountExceedsRequest,
            AmountExceedsRecommendation, ApplicationNotFound
        """
        spec = STAGE_SPECS.get(stage)
        if spec is None:
            raise StagePayloadError(f"Unknown review stage '{stage}'", {"stage": stage, "stages": STAGE_ORDER})
        try:
            decision = StageDecision(decision).value
        except ValueError:
            raise StagePayloadError(
                f"Unknown decision '{decision}'",
                {"stage": stage, "decisions": [d.value for d in StageDecision]}
            )
        payload = payload or {}

        application = await self.lifecycle.get_application(application_id)
        app_id = str(application["_id"])
        status = application["status"]

        attempt = application.get("review_attempt", 1)
        recorded = await self._recorded_row(app_id, stage, attempt)
        if recorded and recorded.get("decision") == decision and status != spec.entry_status.value:
            logger.info(f"[REVIEW] Replay of {stage}={decision} for application {app_id}")
            return self._result(app_id, recorded, status, idempotent_replay=True)

        if status != spec.entry_status.value:
            raise StageNotActive(app_id, stage, spec.entry_status.value, status)

        fields: Dict[str, Any] = {}
        if decision == StageDecision.APPROVED.value:
            fields = spec.validate(application, payload)

        escalated = False
        context = {"review_decision": stage, "review_attempt": attempt}

        if decision == StageDecision.APPROVED.value:
            result = await self.lifecycle.transition(
                app_id, spec.approve_to.value, actor,
                notes=notes or f"{stage} approved",
                context=context,
                extra_fields=fields,
                expected_status=spec.entry_status.value
            )

        elif decision == StageDecision.REJECTED.value:
            result = await self.lifecycle.transition(
                app_id, ApplicationStatus.REJECTED.value, actor,
                notes=notes or f"Rejected at {stage}",
                context=context,
                extra_fields={"rejection": {
                    "stage": stage,
                    "reason": "committee_rejected",
                    "notes": notes,
                    "rejected_by": actor.user_id,
                    "rejected_at": datetime.utcnow()
                }},
                expected_status=spec.entry_status.value
            )

        else:
            revision_count = application.get("revision_count", 0) + 1
            cap = await self.policy_service.max_revision_cycles()

            if revision_count > cap:
                escalated = True
                logger.warning(
                    f"[REVIEW] Application {app_id} exceeded {cap} revision cycles at {stage}, rejecting"
                )
                result = await self.lifecycle.transition(
                    app_id, ApplicationStatus.REJECTED.value, actor,
                    notes=f"Revision limit of {cap} exceeded",
                    context=context,
                    extra_fields={
                        "revision_count": revision_count,
                        "rejection": {
                            "stage": stage,
                            "reason": REVISION_LIMIT_REASON,
                            "notes": notes,
                            "rejected_by": actor.user_id,
                            "rejected_at": datetime.utcnow()
                        }
                    },
                    expected_status=spec.entry_status.value
                )
            elif status == ApplicationStatus.ENDORSED_TO_SSC.value:
                # Already at the review entry point: only the cycle counters move
                await self.lifecycle.update_fields(
                    app_id,
                    {"revision_count": revision_count, "review_attempt": attempt + 1},
                    expected_status=status
                )
                result = None
            else:
                result = await self.lifecycle.transition(
                    app_id, ApplicationStatus.ENDORSED_TO_SSC.value, actor,
                    notes=notes or f"Revision requested at {stage}",
                    context=context,
                    extra_fields={"revision_count": revision_count, "review_attempt": attempt + 1},
                    expected_status=spec.entry_status.value
                )

        # Written only once the status change has gone through
        row = await self._record_row(app_id, spec, attempt, decision, actor, payload, fields, notes)

        new_status = result.to_state if result is not None else status
        logger.info(
            f"[REVIEW] Application {app_id} {stage}={decision} (attempt {attempt}) -> {new_status}"
        )

        if self.audit_service:
            await self.audit_service.log_action(
                entity_type="REVIEW_STAGE",
                entity_id=str(row.get("_id")),
                action_type="DECISION",
                user_id=actor.user_id,
                description=f"{stage} {decision} for application {app_id}",
                new_value={"decision": decision, "attempt": attempt, "status": new_status},
                metadata={"escalated": escalated}
            )

        response = self._result(app_id, row, new_status)
        response["escalated"] = escalated
        return response

    async def _record_row(
        self,
        app_id: str,
        spec: StageSpec,
        attempt: int,
        decision: str,
        actor: Actor,
        payload: Dict[str, Any],
        fields: Dict[str, Any],
        notes: Optional[str]
    ) -> Dict[str, Any]:
        now = datetime.utcnow()
        row = {
            "application_id": app_id,
            "stage": spec.stage,
            "attempt": attempt,
            "status": decision,
            "decision": decision,
            "reviewer_id": actor.user_id,
            "reviewer_role": actor.role,
            "recommended_amount": fields.get("recommended_amount"),
            "approved_amount": fields.get("approved_amount"),
            "academic_score": fields.get("academic_score"),
            "notes": notes,
            "payload": payload,
            "completed_at": now,
            "created_at": now,
        }
        await self.collection.update_one(
            {"application_id": app_id, "stage": spec.stage, "attempt": attempt},
            {"$setOnInsert": row},
            upsert=True
        )
        return await self.collection.find_one(
            {"application_id": app_id, "stage": spec.stage, "attempt": attempt}
        )

    @staticmethod
    def _result(app_id: str, row: Dict[str, Any], status: str, idempotent_replay: bool = False) -> Dict[str, Any]:
        return {
            "application_id": app_id,
            "stage": row["stage"],
            "decision": row["decision"],
            "attempt": row.get("attempt", 1),
            "review_stage_id": str(row.get("_id")),
            "status": status,
            "escalated": False,
            "idempotent_replay": idempotent_replay,
        }

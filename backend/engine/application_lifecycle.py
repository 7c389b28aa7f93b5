"""
APPLICATION STATE MACHINE

Owns the canonical status of a scholarship application.

States:  draft → submitted → documents_reviewed → interview_scheduled →
         interview_completed → endorsed_to_ssc → [ssc_financial_review →
         ssc_academic_review → ssc_final_approval] → approved →
         grants_processing → grants_disbursed
Side:    on_hold (returns to the status it was held from), rejected, cancelled
Terminal: grants_disbursed, rejected, cancelled

RULES:
- Only edges in TRANSITION_TABLE are accepted (InvalidTransition otherwise)
- Requesting the current status again is a no-op (at-least-once upstream delivery)
- Terminal applications reject any other target (ApplicationClosed)
- Status, timestamp and history entry are written in ONE conditional update
  keyed on (_id, version); a lost race reloads and re-evaluates
- Committee and grant edges are only reachable through their coordinators
- Applications are never deleted, only archived
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from bson import ObjectId
import logging
import uuid

from engine.exceptions import (
    ApplicationClosed,
    ApplicationNotFound,
    ApplicationValidationError,
    ConcurrentModificationError,
    InvalidTransition,
)
from engine.financial_precision import NegativeValueError, to_float, validate_positive
from engine.state_machine import StateMachine

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS ENUM & TRANSITION TABLE
# =============================================================================

class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    DOCUMENTS_REVIEWED = "documents_reviewed"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_COMPLETED = "interview_completed"
    ENDORSED_TO_SSC = "endorsed_to_ssc"
    SSC_FINANCIAL_REVIEW = "ssc_financial_review"
    SSC_ACADEMIC_REVIEW = "ssc_academic_review"
    SSC_FINAL_APPROVAL = "ssc_final_approval"
    APPROVED = "approved"
    GRANTS_PROCESSING = "grants_processing"
    GRANTS_DISBURSED = "grants_disbursed"
    REJECTED = "rejected"
    ON_HOLD = "on_hold"
    CANCELLED = "cancelled"


S = ApplicationStatus

# Sub-states of the composite committee review status
SSC_REVIEW_STATES = (S.SSC_FINANCIAL_REVIEW, S.SSC_ACADEMIC_REVIEW, S.SSC_FINAL_APPROVAL)

TERMINAL_STATES = (S.GRANTS_DISBURSED, S.REJECTED, S.CANCELLED)

# Statuses an application may be put on hold from (and resumed back to)
HOLDABLE_STATES = (
    S.SUBMITTED,
    S.DOCUMENTS_REVIEWED,
    S.INTERVIEW_SCHEDULED,
    S.INTERVIEW_COMPLETED,
    S.ENDORSED_TO_SSC,
    S.APPROVED,
)

TRANSITION_TABLE: Dict[ApplicationStatus, Tuple[ApplicationStatus, ...]] = {
    S.DRAFT: (S.SUBMITTED, S.CANCELLED),
    S.SUBMITTED: (S.DOCUMENTS_REVIEWED, S.ON_HOLD, S.REJECTED, S.CANCELLED),
    S.DOCUMENTS_REVIEWED: (S.INTERVIEW_SCHEDULED, S.ON_HOLD, S.REJECTED, S.CANCELLED),
    S.INTERVIEW_SCHEDULED: (S.INTERVIEW_COMPLETED, S.ON_HOLD, S.REJECTED, S.CANCELLED),
    S.INTERVIEW_COMPLETED: (S.ENDORSED_TO_SSC, S.ON_HOLD, S.REJECTED, S.CANCELLED),
    S.ENDORSED_TO_SSC: (S.SSC_FINANCIAL_REVIEW, S.ON_HOLD, S.REJECTED),
    S.SSC_FINANCIAL_REVIEW: (S.SSC_ACADEMIC_REVIEW, S.ENDORSED_TO_SSC, S.REJECTED),
    S.SSC_ACADEMIC_REVIEW: (S.SSC_FINAL_APPROVAL, S.ENDORSED_TO_SSC, S.REJECTED),
    S.SSC_FINAL_APPROVAL: (S.APPROVED, S.ENDORSED_TO_SSC, S.REJECTED),
    S.APPROVED: (S.GRANTS_PROCESSING, S.ON_HOLD, S.CANCELLED),
    S.GRANTS_PROCESSING: (S.GRANTS_DISBURSED, S.APPROVED),
    S.ON_HOLD: HOLDABLE_STATES + (S.REJECTED, S.CANCELLED),
}

# Edges owned by the committee review coordinator
REVIEW_EDGES = {
    (S.ENDORSED_TO_SSC, S.SSC_FINANCIAL_REVIEW),
    (S.SSC_FINANCIAL_REVIEW, S.SSC_ACADEMIC_REVIEW),
    (S.SSC_ACADEMIC_REVIEW, S.SSC_FINAL_APPROVAL),
    (S.SSC_FINAL_APPROVAL, S.APPROVED),
} | {(state, S.ENDORSED_TO_SSC) for state in SSC_REVIEW_STATES} \
  | {(state, S.REJECTED) for state in SSC_REVIEW_STATES}

# Edges owned by the disbursement orchestrator
GRANT_EDGES = {
    (S.APPROVED, S.GRANTS_PROCESSING),
    (S.GRANTS_PROCESSING, S.GRANTS_DISBURSED),
    (S.GRANTS_PROCESSING, S.APPROVED),
}


def parse_status(value: Any) -> ApplicationStatus:
    """Closed-enum conversion; unknown strings are an invalid transition target."""
    try:
        return ApplicationStatus(value)
    except ValueError:
        raise InvalidTransition("scholarship_application", "?", str(value), [])


def current_school_year(now: Optional[datetime] = None) -> str:
    year = (now or datetime.utcnow()).year
    return f"{year}-{year + 1}"


def to_object_id(application_id: Any) -> ObjectId:
    if isinstance(application_id, ObjectId):
        return application_id
    if not ObjectId.is_valid(str(application_id)):
        raise ApplicationNotFound(f"Application {application_id} not found", {"application_id": str(application_id)})
    return ObjectId(str(application_id))


# =============================================================================
# ACTOR & RESULT TYPES
# =============================================================================

@dataclass
class Actor:
    """Identity supplied by the identity service; trusted as given."""
    user_id: str
    role: str = "system"
    name: Optional[str] = None


SYSTEM_ACTOR = Actor(user_id="system", role="system", name="System")


@dataclass
class TransitionResult:
    application_id: str
    from_state: str
    to_state: str
    changed: bool
    application: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "application_id": self.application_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "changed": self.changed,
            "status": self.to_state,
        }


# =============================================================================
# MACHINE DEFINITION
# =============================================================================

def create_application_state_machine() -> StateMachine:
    """Build the application machine from TRANSITION_TABLE plus guards/handlers."""
    machine = StateMachine(
        "scholarship_application",
        status_field="status",
        history_field="state_history",
        terminal_states=[s.value for s in TERMINAL_STATES]
    )

    for src, targets in TRANSITION_TABLE.items():
        for dst in targets:
            machine.register(src.value, dst.value)

    async def guard_review_coordinator(entity: Dict, context: Dict) -> Tuple[bool, str]:
        if context.get("review_decision"):
            return (True, "")
        return (False, "Committee review statuses are driven by stage decisions")

    async def guard_orchestrator(entity: Dict, context: Dict) -> Tuple[bool, str]:
        if context.get("payment_id"):
            return (True, "")
        return (False, "Grant statuses are driven by the disbursement orchestrator")

    async def guard_resume(entity: Dict, context: Dict) -> Tuple[bool, str]:
        return (True, "")

    async def handle_hold(entity: Dict, context: Dict) -> Dict:
        return {"held_from_status": entity.get("status")}

    async def handle_resume(entity: Dict, context: Dict) -> Dict:
        return {"held_from_status": None}

    async def handle_grant_start(entity: Dict, context: Dict) -> Dict:
        return {"active_payment_id": context["payment_id"]}

    async def handle_grant_revert(entity: Dict, context: Dict) -> Dict:
        return {"active_payment_id": None}

    async def handle_grant_disbursed(entity: Dict, context: Dict) -> Dict:
        return {"disbursed_at": datetime.utcnow(), "disbursed_payment_id": context["payment_id"]}

    for src, dst in REVIEW_EDGES:
        machine.set_guard(src.value, dst.value, guard_review_coordinator)

    for src, dst in GRANT_EDGES:
        machine.set_guard(src.value, dst.value, guard_orchestrator)
    machine.set_handler(S.APPROVED.value, S.GRANTS_PROCESSING.value, handle_grant_start)
    machine.set_handler(S.GRANTS_PROCESSING.value, S.APPROVED.value, handle_grant_revert)
    machine.set_handler(S.GRANTS_PROCESSING.value, S.GRANTS_DISBURSED.value, handle_grant_disbursed)

    for state in HOLDABLE_STATES:
        machine.set_handler(state.value, S.ON_HOLD.value, handle_hold)

        async def guard_resume_to(entity: Dict, context: Dict, _target=state.value) -> Tuple[bool, str]:
            held_from = entity.get("held_from_status")
            if held_from == _target:
                return (True, "")
            return (False, f"Application was held from '{held_from}', cannot resume to '{_target}'")

        machine.set_guard(S.ON_HOLD.value, state.value, guard_resume_to)
        machine.set_handler(S.ON_HOLD.value, state.value, handle_resume)

    return machine


# =============================================================================
# LIFECYCLE SERVICE
# =============================================================================

class ApplicationLifecycle:
    """
    Persistence-aware wrapper around the application state machine.

    Every accepted transition:
    1. single conditional update (status + timestamps + history + version)
    2. event published to the audit/notification sink (fire and forget)
    3. post-transition callbacks
    """

    COLLECTION = "scholarship_applications"
    MAX_CAS_ATTEMPTS = 5

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        audit_service=None,
        machine: Optional[StateMachine] = None
    ):
        self.db = db
        self.collection = db[self.COLLECTION]
        self.audit_service = audit_service
        self.machine = machine or create_application_state_machine()

    async def create_indexes(self):
        await self.collection.create_index(
            [("application_number", 1)], unique=True, name="idx_application_number_unique"
        )
        await self.collection.create_index(
            [("status", 1), ("school_year", 1)], name="idx_application_status_year"
        )

    def on_transition(
        self,
        callback: Callable[[Dict[str, Any], str, str, Dict[str, Any]], Awaitable[None]]
    ) -> None:
        self.machine.on_post_transition(callback)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_application(self, application_id: Any) -> Dict[str, Any]:
        doc = await self.collection.find_one({"_id": to_object_id(application_id)})
        if not doc:
            raise ApplicationNotFound(
                f"Application {application_id} not found", {"application_id": str(application_id)}
            )
        return doc

    async def get_history(self, application_id: Any) -> List[Dict[str, Any]]:
        doc = await self.get_application(application_id)
        return doc.get("state_history", [])

    def allowed_transitions(self, status: str) -> List[str]:
        return self.machine.get_allowed_transitions(status)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    async def submit_application(self, data: Dict[str, Any], actor: Actor) -> TransitionResult:
        """
        Create an application in draft and move it to submitted.

        A repeated submission with the same application_number returns the
        existing application instead of creating a second one.
        """
        try:
            validate_positive(data.get("requested_amount", 0), "requested_amount")
        except NegativeValueError as e:
            raise ApplicationValidationError(str(e), {"field": "requested_amount"})

        if not data.get("student_id"):
            raise ApplicationValidationError("student_id is required", {"field": "student_id"})

        application_type = data.get("application_type", "new")
        if application_type not in ("new", "renewal"):
            raise ApplicationValidationError(
                f"application_type must be 'new' or 'renewal', got '{application_type}'",
                {"field": "application_type"}
            )

        application_number = data.get("application_number")
        if application_number:
            existing = await self.collection.find_one({"application_number": application_number})
            if existing:
                logger.info(f"[STATE_MACHINE] Duplicate submission of {application_number}, returning existing")
                return await self.transition(existing["_id"], S.SUBMITTED.value, actor, notes="Application submitted")
        else:
            application_number = f"SCH-{datetime.utcnow():%Y}-{uuid.uuid4().hex[:8].upper()}"

        now = datetime.utcnow()
        doc = {
            "application_number": application_number,
            "student_id": str(data["student_id"]),
            "program": data.get("program"),
            "category": data.get("category"),
            "application_type": application_type,
            "school_year": data.get("school_year") or current_school_year(now),
            "requested_amount": to_float(data["requested_amount"]),
            "recommended_amount": None,
            "approved_amount": None,
            "status": S.DRAFT.value,
            "status_timestamps": {S.DRAFT.value: now},
            "held_from_status": None,
            "revision_count": 0,
            "review_attempt": 1,
            "active_payment_id": None,
            "rejection": None,
            "state_history": [],
            "archived_flag": False,
            "version": 0,
            "created_by": actor.user_id,
            "created_at": now,
            "updated_at": now,
        }
        result = await self.collection.insert_one(doc)
        logger.info(f"[STATE_MACHINE] Application created: {result.inserted_id} ({application_number})")

        return await self.transition(result.inserted_id, S.SUBMITTED.value, actor, notes="Application submitted")

    # =========================================================================
    # TRANSITION
    # =========================================================================

    async def transition(
        self,
        application_id: Any,
        target_status: str,
        actor: Actor,
        notes: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        extra_fields: Optional[Dict[str, Any]] = None,
        expected_status: Optional[str] = None
    ) -> TransitionResult:
        """
        Move an application to target_status.

        Args:
            expected_status: when given, the write only applies if the stored
                status still equals it (callers that validated a precondition
                use this to avoid acting on a status that moved underneath them)
            extra_fields: additional fields written in the same update

        Raises:
            ApplicationNotFound, ApplicationClosed, InvalidTransition,
            GuardConditionError, ConcurrentModificationError
        """
        target = parse_status(target_status).value
        context = context or {}

        for attempt in range(self.MAX_CAS_ATTEMPTS):
            doc = await self.get_application(application_id)
            current = doc["status"]
            app_id = str(doc["_id"])

            if current == target:
                return TransitionResult(app_id, current, target, changed=False, application=doc)

            if self.machine.is_terminal(current):
                raise ApplicationClosed(app_id, current)

            if expected_status is not None and current != expected_status:
                raise InvalidTransition(
                    self.machine.entity_name, current, target, self.machine.get_allowed_transitions(current)
                )

            decision = await self.machine.evaluate(doc, target, context)

            set_fields = self.machine.get_status_update(target, {**decision.fields, **(extra_fields or {})})
            history_entry = self.machine.get_history_entry(
                from_state=current,
                to_state=target,
                user_id=actor.user_id,
                role=actor.role,
                notes=notes,
                metadata={k: v for k, v in context.items() if isinstance(v, (str, int, float, bool))}
            )

            result = await self.collection.update_one(
                {"_id": doc["_id"], "version": doc.get("version", 0), "status": current},
                {
                    "$set": set_fields,
                    "$inc": {"version": 1},
                    "$push": {"state_history": history_entry}
                }
            )

            if result.matched_count == 1:
                updated = await self.get_application(doc["_id"])
                logger.info(
                    f"[STATE_MACHINE] Application {app_id}: '{current}' -> '{target}' "
                    f"by {actor.user_id} ({actor.role})"
                )
                await self._publish(app_id, current, target, actor, notes, history_entry["transitioned_at"])
                await self.machine.run_post_callbacks(updated, current, target, context)
                return TransitionResult(app_id, current, target, changed=True, application=updated)

            logger.warning(
                f"[STATE_MACHINE] Concurrent update on application {app_id} "
                f"(attempt {attempt + 1}/{self.MAX_CAS_ATTEMPTS}), reloading"
            )

        raise ConcurrentModificationError(
            f"Application {application_id} kept changing during transition to '{target}'",
            {"application_id": str(application_id), "target": target}
        )

    async def update_fields(self, application_id: Any, fields: Dict[str, Any], expected_status: str) -> bool:
        """Non-status field update guarded by the current status."""
        fields = {**fields, "updated_at": datetime.utcnow()}
        result = await self.collection.update_one(
            {"_id": to_object_id(application_id), "status": expected_status},
            {"$set": fields, "$inc": {"version": 1}}
        )
        return result.matched_count == 1

    async def archive(self, application_id: Any, actor: Actor) -> Dict[str, Any]:
        """Soft-archive; only closed applications can be archived."""
        doc = await self.get_application(application_id)
        if not self.machine.is_terminal(doc["status"]):
            raise InvalidTransition(self.machine.entity_name, doc["status"], "archived", [])
        await self.collection.update_one(
            {"_id": doc["_id"]},
            {
                "$set": {
                    "archived_flag": True,
                    "archived_by": actor.user_id,
                    "archived_at": datetime.utcnow(),
                    "updated_at": datetime.utcnow()
                },
                "$inc": {"version": 1}
            }
        )
        return await self.get_application(doc["_id"])

    async def _publish(self, app_id, from_state, to_state, actor, notes, at):
        if not self.audit_service:
            return
        try:
            await self.audit_service.publish_transition({
                "application_id": app_id,
                "from_state": from_state,
                "to_state": to_state,
                "actor_id": actor.user_id,
                "actor_role": actor.role,
                "notes": notes,
                "timestamp": at,
            })
        except Exception as e:
            logger.error(f"[STATE_MACHINE] Audit sink error for {app_id}: {e}")

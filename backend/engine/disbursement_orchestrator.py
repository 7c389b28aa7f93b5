"""
DISBURSEMENT ORCHESTRATOR

Coordinates ledger, payment record, provider and application status for a
grant payout.

Payment record: initiated → processing → completed | failed | cancelled

FLOWS:
- process_grant: approved application → reserve → record → grants_processing
  → provider checkout (online methods)
- success (webhook or manual confirmation): commit → record completed →
  grants_disbursed
- failure / cancel: release → record failed|cancelled → approved
- retry: new record + fresh reservation, old record superseded
- paid event for a failed or cancelled attempt: PAID_AFTER_RELEASE alert,
  nothing committed

RULES:
- Every reservation ends in exactly one commit or release
- Each step is idempotent so a crashed flow can be re-driven from the start
- Provider initiation failure is compensated before the error propagates
- Funds are never released on a timer; stale reservations are reported by
  the reconciliation job
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional
from bson import ObjectId
import logging
import uuid

from engine.application_lifecycle import (
    Actor,
    ApplicationLifecycle,
    ApplicationStatus,
    SYSTEM_ACTOR,
)
from engine.budget_ledger import BudgetLedger, bucket_key
from engine.exceptions import (
    ApplicationClosed,
    BudgetExhausted,
    InsufficientFunds,
    InvalidTransition,
    PaymentProviderError,
    PaymentRecordNotFound,
    PaymentStateError,
    PaymentValidationError,
    WorkflowError,
)
from engine.financial_precision import to_float
from engine.idempotency import IdempotentOperation
from engine.payment_provider import PaymentProvider, WebhookEvent, create_payment_provider
from engine.policy_service import PolicyService
from engine.state_machine import StateMachine

logger = logging.getLogger(__name__)


class PaymentStatus:
    INITIATED = "initiated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ONLINE_METHODS = ("gcash", "paymaya", "maya", "grab_pay", "card", "online")
MANUAL_METHODS = ("manual", "cash", "check", "bank_transfer")

PAID_AFTER_RELEASE_ALERT_TYPE = "PAID_AFTER_RELEASE"


def create_payment_state_machine() -> StateMachine:
    machine = StateMachine(
        "payment_record",
        history_field="status_history",
        terminal_states=[PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED]
    )
    machine.register_table({
        PaymentStatus.INITIATED: [
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ],
        PaymentStatus.PROCESSING: [
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        ],
    })
    return machine


def payment_view(record: Dict[str, Any]) -> Dict[str, Any]:
    """Public representation of a payment record."""
    return {
        "payment_id": str(record["_id"]),
        "application_id": record["application_id"],
        "attempt": record.get("attempt", 1),
        "payment_method": record.get("payment_method"),
        "payment_provider": record.get("payment_provider"),
        "status": record["status"],
        "amount": record.get("amount"),
        "transaction_reference": record.get("transaction_reference"),
        "checkout_session_id": record.get("checkout_session_id"),
        "checkout_url": record.get("checkout_url"),
        "provider_payment_id": record.get("provider_payment_id"),
        "receipt_reference": record.get("receipt_reference"),
        "reservation_id": record.get("reservation_id"),
        "retry_count": record.get("retry_count", 0),
        "retry_of": record.get("retry_of"),
        "superseded_by": record.get("superseded_by"),
        "failure_reason": record.get("failure_reason"),
        "disbursed_by": record.get("disbursed_by"),
        "created_at": record.get("created_at"),
        "completed_at": record.get("completed_at"),
    }


class DisbursementOrchestrator:
    """
    Grant payout coordinator.

    Collaborators are injected so tests can substitute the provider.
    """

    COLLECTION = "payment_records"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        lifecycle: ApplicationLifecycle,
        ledger: BudgetLedger,
        provider: Optional[PaymentProvider] = None,
        policy_service: Optional[PolicyService] = None,
        audit_service=None
    ):
        self.db = db
        self.collection = db[self.COLLECTION]
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.provider = provider or create_payment_provider()
        self.policy_service = policy_service or PolicyService(db)
        self.audit_service = audit_service
        self.payment_machine = create_payment_state_machine()

        lifecycle.on_transition(self._on_application_transition)

    async def create_indexes(self):
        await self.collection.create_index([("application_id", 1), ("attempt", 1)], name="idx_payment_application")
        await self.collection.create_index([("checkout_session_id", 1)], name="idx_payment_checkout_session")
        await self.collection.create_index(
            [("transaction_reference", 1)], unique=True, name="idx_payment_txn_ref_unique"
        )

    async def _on_application_transition(self, application, from_state, to_state, context):
        if to_state == ApplicationStatus.GRANTS_PROCESSING.value:
            logger.info(
                f"[DISBURSEMENT] Application {application['_id']} entered grants_processing "
                f"with payment {context.get('payment_id')}"
            )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        record = None
        if ObjectId.is_valid(str(payment_id)):
            record = await self.collection.find_one({"_id": ObjectId(str(payment_id))})
        if not record:
            raise PaymentRecordNotFound(f"Payment record {payment_id} not found", {"payment_id": str(payment_id)})
        return record

    async def get_payment_records(self, application_id: str) -> List[Dict[str, Any]]:
        application = await self.lifecycle.get_application(application_id)
        records = await self.collection.find(
            {"application_id": str(application["_id"])}
        ).sort("attempt", 1).to_list(length=None)
        return [payment_view(r) for r in records]

    async def _find_record(self, identifiers: Dict[str, Optional[str]]) -> Optional[Dict[str, Any]]:
        """
        Lookup order: checkout session id, transaction reference, application id.
        Session and reference name one attempt; the application id falls back to
        its active (or latest) attempt.
        """
        if identifiers.get("checkout_session_id"):
            record = await self.collection.find_one({"checkout_session_id": identifiers["checkout_session_id"]})
            if record:
                return record

        if identifiers.get("transaction_reference"):
            record = await self.collection.find_one({"transaction_reference": identifiers["transaction_reference"]})
            if record:
                return record

        application_id = identifiers.get("application_id")
        if application_id and ObjectId.is_valid(str(application_id)):
            application = await self.lifecycle.collection.find_one({"_id": ObjectId(str(application_id))})
            if application:
                if application.get("active_payment_id"):
                    return await self.get_payment(application["active_payment_id"])
                latest = await self.collection.find(
                    {"application_id": str(application["_id"])}
                ).sort("attempt", -1).limit(1).to_list(length=1)
                if latest:
                    return latest[0]

        return None

    # =========================================================================
    # RECORD STATUS
    # =========================================================================

    async def _set_record_status(
        self,
        record: Dict[str, Any],
        to_state: str,
        fields: Optional[Dict[str, Any]] = None,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        decision = await self.payment_machine.evaluate(record, to_state)
        if decision.is_noop:
            return record

        update = self.payment_machine.get_status_update(to_state, {**decision.fields, **(fields or {})})
        history = self.payment_machine.get_history_entry(record["status"], to_state, actor.user_id, actor.role, notes)
        result = await self.collection.update_one(
            {"_id": record["_id"], "status": record["status"]},
            {"$set": update, "$inc": {"version": 1}, "$push": {"status_history": history}}
        )
        current = await self.get_payment(record["_id"])
        if result.matched_count != 1 and current["status"] != to_state:
            raise PaymentStateError(
                f"Payment {record['_id']} moved to '{current['status']}' concurrently",
                {"payment_id": str(record["_id"]), "status": current["status"], "requested": to_state}
            )
        logger.info(f"[DISBURSEMENT] Payment {record['_id']}: '{record['status']}' -> '{to_state}'")
        return current

    # =========================================================================
    # INITIATION
    # =========================================================================

    async def process_grant(
        self,
        application_id: str,
        actor: Actor,
        payment_method: str = "gcash",
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Start the payout for an approved application.

        Raises:
            BudgetExhausted: bucket cannot cover approved_amount (application stays approved)
            PaymentProviderError: checkout failed; reservation released and
                application reverted to approved before re-raising
            InvalidTransition / ApplicationClosed: application not approved
        """
        application = await self.lifecycle.get_application(application_id)
        app_id = str(application["_id"])

        async with IdempotentOperation(self.db, operation_id, "SCHOLARSHIP_APPLICATION", app_id) as op:
            if op.is_duplicate:
                return op.previous_response

            response = await self._initiate(application, actor, payment_method)
            response["operation_id"] = op.operation_id
            await op.record_success(response)
            return response

    async def retry_payment(
        self,
        payment_id: str,
        actor: Actor,
        payment_method: Optional[str] = None,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """New attempt for a failed or cancelled payment."""
        record = await self.get_payment(payment_id)

        async with IdempotentOperation(self.db, operation_id, "PAYMENT_RECORD", str(record["_id"])) as op:
            if op.is_duplicate:
                return op.previous_response

            if record["status"] not in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
                raise PaymentStateError(
                    f"Only failed or cancelled payments can be retried (payment is {record['status']})",
                    {"payment_id": str(record["_id"]), "status": record["status"]}
                )
            if record.get("superseded_by"):
                raise PaymentStateError(
                    f"Payment {record['_id']} was already retried as {record['superseded_by']}",
                    {"payment_id": str(record["_id"]), "superseded_by": record["superseded_by"]}
                )

            application = await self.lifecycle.get_application(record["application_id"])
            response = await self._initiate(
                application, actor, payment_method or record.get("payment_method"), retry_of=record
            )

            await self.collection.update_one(
                {"_id": record["_id"], "superseded_by": None},
                {"$set": {"superseded_by": response["payment_id"], "updated_at": datetime.utcnow()}, "$inc": {"version": 1}}
            )
            logger.info(f"[DISBURSEMENT] Payment {record['_id']} superseded by {response['payment_id']}")

            response["operation_id"] = op.operation_id
            await op.record_success(response)
            return response

    async def _initiate(
        self,
        application: Dict[str, Any],
        actor: Actor,
        payment_method: str,
        retry_of: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        app_id = str(application["_id"])
        status = application["status"]
        method = (payment_method or "").lower()

        if method not in ONLINE_METHODS + MANUAL_METHODS:
            raise PaymentValidationError(
                f"Unsupported payment method '{payment_method}'",
                {"payment_method": payment_method, "supported": list(ONLINE_METHODS + MANUAL_METHODS)}
            )
        if self.lifecycle.machine.is_terminal(status):
            raise ApplicationClosed(app_id, status)
        if status != ApplicationStatus.APPROVED.value:
            raise InvalidTransition(
                "scholarship_application", status, ApplicationStatus.GRANTS_PROCESSING.value,
                self.lifecycle.allowed_transitions(status)
            )

        amount = application.get("approved_amount")
        if not amount:
            raise PaymentValidationError(f"Application {app_id} has no approved amount", {"application_id": app_id})

        budget_type = application.get("program") or await self.policy_service.default_budget_type()
        school_year = application["school_year"]
        payment_oid = ObjectId()

        try:
            reservation = await self.ledger.reserve(budget_type, school_year, amount, app_id, payment_id=str(payment_oid))
        except InsufficientFunds as e:
            logger.warning(f"[DISBURSEMENT] Budget exhausted for application {app_id}: {e.message}")
            raise BudgetExhausted(
                f"Budget {budget_type}/{school_year} cannot cover grant of {to_float(amount)}",
                {**e.details, "application_id": app_id}
            )

        if retry_of is not None:
            attempt = retry_of.get("attempt", 1) + 1
            retry_count = retry_of.get("retry_count", 0) + 1
        else:
            attempt = await self.collection.count_documents({"application_id": app_id}) + 1
            retry_count = 0

        now = datetime.utcnow()
        online = method in ONLINE_METHODS
        record = {
            "_id": payment_oid,
            "application_id": app_id,
            "attempt": attempt,
            "payment_method": method,
            "payment_provider": self.provider.name if online else "manual",
            "transaction_reference": f"TXN-{uuid.uuid4().hex[:16].upper()}",
            "checkout_session_id": None,
            "checkout_url": None,
            "provider_payment_id": None,
            "receipt_reference": None,
            "amount": to_float(amount),
            "status": PaymentStatus.INITIATED,
            "status_timestamps": {PaymentStatus.INITIATED: now},
            "status_history": [],
            "reservation_id": reservation["reservation_id"],
            "budget_id": reservation["budget_id"],
            "budget_type": budget_type,
            "school_year": school_year,
            "retry_count": retry_count,
            "retry_of": str(retry_of["_id"]) if retry_of is not None else None,
            "superseded_by": None,
            "failure_reason": None,
            "initiated_by": actor.user_id,
            "disbursed_by": None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.collection.insert_one(record)

        try:
            await self.lifecycle.transition(
                app_id, ApplicationStatus.GRANTS_PROCESSING.value, actor,
                notes=f"Grant processing started ({method})",
                context={"payment_id": str(payment_oid)},
                expected_status=ApplicationStatus.APPROVED.value
            )
        except WorkflowError as e:
            logger.warning(f"[DISBURSEMENT] Application {app_id} moved before grant start: {e.message}")
            await self.ledger.release(reservation["reservation_id"])
            await self._set_record_status(record, PaymentStatus.CANCELLED, {"failure_reason": e.message}, actor)
            raise

        if online:
            try:
                session = await self.provider.create_checkout_session(
                    application, amount, record["transaction_reference"], method
                )
            except PaymentProviderError as e:
                logger.error(f"[DISBURSEMENT] Checkout failed for application {app_id}, compensating: {e.message}")
                await self._revert(record, PaymentStatus.FAILED, e.message, actor)
                raise
            record = await self._set_record_status(
                record, PaymentStatus.PROCESSING,
                {"checkout_session_id": session.session_id, "checkout_url": session.checkout_url},
                actor
            )

        await self._audit("INITIATE", record, actor, f"Grant payment initiated for application {app_id}")
        logger.info(
            f"[DISBURSEMENT] Grant initiated for application {app_id}: payment {payment_oid}, "
            f"amount={record['amount']}, method={method}"
        )
        return {
            **payment_view(record),
            "application_status": ApplicationStatus.GRANTS_PROCESSING.value,
            "idempotent_replay": False,
        }

    # =========================================================================
    # COMPLETION
    # =========================================================================

    async def confirm_disbursement(
        self,
        application_id: str,
        actor: Actor,
        provider_reference: Optional[str],
        receipt_reference: Optional[str] = None,
        payment_method: Optional[str] = None
    ) -> Dict[str, Any]:
        """Manual/offline disbursement confirmation."""
        if not provider_reference:
            raise PaymentValidationError("provider_reference is required", {"field": "provider_reference"})
        if not receipt_reference and await self.policy_service.requires_receipt_for_manual():
            raise PaymentValidationError("receipt_reference is required", {"field": "receipt_reference"})

        application = await self.lifecycle.get_application(application_id)
        app_id = str(application["_id"])
        status = application["status"]

        if status == ApplicationStatus.GRANTS_DISBURSED.value:
            record = await self.collection.find_one({"application_id": app_id, "status": PaymentStatus.COMPLETED})
            logger.info(f"[DISBURSEMENT] Application {app_id} already disbursed, no-op")
            return {
                **(payment_view(record) if record else {"application_id": app_id}),
                "application_status": status,
                "changed": False,
            }

        if status != ApplicationStatus.GRANTS_PROCESSING.value:
            if self.lifecycle.machine.is_terminal(status):
                raise ApplicationClosed(app_id, status)
            raise InvalidTransition(
                "scholarship_application", status, ApplicationStatus.GRANTS_DISBURSED.value,
                self.lifecycle.allowed_transitions(status)
            )

        record = await self.get_payment(application["active_payment_id"])
        fields = {"receipt_reference": receipt_reference}
        if payment_method:
            fields["confirmed_method"] = payment_method
        return await self._complete(record, provider_reference, actor, fields)

    async def handle_provider_success(
        self,
        identifiers: Dict[str, Optional[str]],
        provider_payment_id: Optional[str] = None
    ) -> Dict[str, Any]:
        record = await self._find_record(identifiers)
        if not record:
            raise PaymentRecordNotFound("No payment record matches the provider event", {"identifiers": identifiers})
        if record["status"] in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return await self._paid_after_release(record, provider_payment_id)
        return await self._complete(record, provider_payment_id, SYSTEM_ACTOR, {})

    async def _paid_after_release(
        self,
        record: Dict[str, Any],
        provider_payment_id: Optional[str]
    ) -> Dict[str, Any]:
        """
        The provider collected money for an attempt whose reservation was
        already released. Nothing is committed; finance settles it by hand.
        """
        payment_id = str(record["_id"])
        key = bucket_key(record.get("budget_type"), record.get("school_year"))
        logger.critical(
            f"[DISBURSEMENT] Payment {payment_id} reported paid after it was {record['status']} "
            f"(provider payment {provider_payment_id})"
        )

        existing = await self.db.alerts.find_one({
            "alert_type": PAID_AFTER_RELEASE_ALERT_TYPE,
            "details.payment_id": payment_id
        })
        if not existing:
            await self.ledger.validator.create_violation_alert(
                key, PAID_AFTER_RELEASE_ALERT_TYPE,
                f"Payment {payment_id} was paid after its reservation was released",
                {
                    "payment_id": payment_id,
                    "application_id": record["application_id"],
                    "reservation_id": record.get("reservation_id"),
                    "record_status": record["status"],
                    "provider_payment_id": provider_payment_id,
                    "amount": record.get("amount"),
                }
            )

        application = await self.lifecycle.get_application(record["application_id"])
        return {
            **payment_view(record),
            "application_status": application["status"],
            "changed": False,
            "alert": PAID_AFTER_RELEASE_ALERT_TYPE,
        }

    async def _complete(
        self,
        record: Dict[str, Any],
        provider_payment_id: Optional[str],
        actor: Actor,
        fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        if record["status"] == PaymentStatus.COMPLETED:
            logger.info(f"[DISBURSEMENT] Payment {record['_id']} already completed, no-op")
            application = await self.lifecycle.get_application(record["application_id"])
            return {**payment_view(record), "application_status": application["status"], "changed": False}

        if record["status"] in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            raise PaymentStateError(
                f"Payment {record['_id']} is {record['status']} and cannot complete",
                {"payment_id": str(record["_id"]), "status": record["status"]}
            )

        await self.ledger.commit(record["reservation_id"])

        record = await self._set_record_status(
            record, PaymentStatus.COMPLETED,
            {
                **fields,
                "provider_payment_id": provider_payment_id,
                "disbursed_by": actor.user_id,
                "completed_at": datetime.utcnow(),
            },
            actor
        )

        result = await self.lifecycle.transition(
            record["application_id"], ApplicationStatus.GRANTS_DISBURSED.value, actor,
            notes=f"Grant disbursed ({record.get('payment_method')})",
            context={"payment_id": str(record["_id"])}
        )

        await self._audit("DISBURSE", record, actor, f"Grant disbursed: {record['amount']}")
        logger.info(f"[DISBURSEMENT] Application {record['application_id']} disbursed via payment {record['_id']}")
        return {**payment_view(record), "application_status": result.to_state, "changed": True}

    # =========================================================================
    # FAILURE / CANCEL
    # =========================================================================

    async def handle_provider_failure(
        self,
        identifiers: Dict[str, Optional[str]],
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        record = await self._find_record(identifiers)
        if not record:
            raise PaymentRecordNotFound("No payment record matches the provider event", {"identifiers": identifiers})
        return await self._revert(record, PaymentStatus.FAILED, reason or "payment failed", SYSTEM_ACTOR)

    async def handle_provider_cancel(
        self,
        identifiers: Dict[str, Optional[str]],
        actor: Actor = SYSTEM_ACTOR
    ) -> Dict[str, Any]:
        """
        Payer abandoned checkout. Safe to call any number of times: only the
        application's active, still open attempt is reverted.
        """
        record = await self._find_record(identifiers)
        if record:
            application = await self.lifecycle.get_application(record["application_id"])
        elif identifiers.get("application_id"):
            application = await self.lifecycle.get_application(identifiers["application_id"])
        else:
            raise PaymentRecordNotFound("No payment record matches the cancel request", {"identifiers": identifiers})

        if (
            record is None
            or application["status"] != ApplicationStatus.GRANTS_PROCESSING.value
            or application.get("active_payment_id") != str(record["_id"])
            or self.payment_machine.is_terminal(record["status"])
        ):
            logger.info(f"[DISBURSEMENT] Cancel for application {application['_id']}: no reversion needed")
            return {
                "status": "not_applicable",
                "message": "no reversion needed",
                "application_id": str(application["_id"]),
                "application_status": application["status"],
                "payment_id": str(record["_id"]) if record else None,
            }

        result = await self._revert(record, PaymentStatus.CANCELLED, "cancelled by payer", actor)
        return {**result, "status": "reverted", "payment_status": result["status"]}

    async def _revert(
        self,
        record: Dict[str, Any],
        target: str,
        reason: str,
        actor: Actor
    ) -> Dict[str, Any]:
        if record["status"] == PaymentStatus.COMPLETED:
            raise PaymentStateError(
                f"Payment {record['_id']} already completed and cannot be {target}",
                {"payment_id": str(record["_id"]), "status": record["status"]}
            )

        await self.ledger.release(record["reservation_id"])

        if not self.payment_machine.is_terminal(record["status"]):
            record = await self._set_record_status(record, target, {"failure_reason": reason}, actor, notes=reason)

        application = await self.lifecycle.get_application(record["application_id"])
        application_status = application["status"]
        if (
            application_status == ApplicationStatus.GRANTS_PROCESSING.value
            and application.get("active_payment_id") == str(record["_id"])
        ):
            result = await self.lifecycle.transition(
                record["application_id"], ApplicationStatus.APPROVED.value, actor,
                notes=f"Payment {target}: {reason}",
                context={"payment_id": str(record["_id"])},
                expected_status=ApplicationStatus.GRANTS_PROCESSING.value
            )
            application_status = result.to_state

        await self._audit(target.upper(), record, actor, f"Payment {target}: {reason}")
        return {**payment_view(record), "application_status": application_status}

    # =========================================================================
    # WEBHOOK DISPATCH
    # =========================================================================

    async def handle_webhook_event(self, event: WebhookEvent) -> Dict[str, Any]:
        identifiers = event.identifiers()
        logger.info(f"[PAYMENT] Webhook {event.event_type}: {identifiers}")

        if event.is_success:
            result = await self.handle_provider_success(identifiers, event.payment_id)
        elif event.is_failure:
            result = await self.handle_provider_failure(identifiers, event.failure_reason)
        else:
            logger.warning(f"[PAYMENT] Unhandled webhook event type: {event.event_type}")
            return {"status": "ignored", "event_type": event.event_type}

        return {"status": "processed", "event_type": event.event_type, "payment": result}

    async def _audit(self, action: str, record: Dict[str, Any], actor: Actor, description: str):
        if not self.audit_service:
            return
        await self.audit_service.log_action(
            entity_type="PAYMENT_RECORD",
            entity_id=str(record["_id"]),
            action_type=action,
            user_id=actor.user_id,
            description=description,
            new_value={"status": record["status"], "amount": record.get("amount")},
            metadata={"application_id": record["application_id"], "reservation_id": record.get("reservation_id")}
        )

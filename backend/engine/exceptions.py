"""
WORKFLOW ERROR TAXONOMY

All errors raised by the lifecycle engine derive from WorkflowError and carry:
- code: stable machine-readable identifier
- message: human readable explanation
- details: context the caller needs to decide remediation

Groups:
1. Ordering violations    - InvalidTransition, StageNotActive, ApplicationClosed
2. Resource exhaustion    - InsufficientFunds, BudgetExhausted
3. Policy violations      - AmountExceedsRequest, AmountExceedsRecommendation, StagePayloadError
4. Lookup failures        - ApplicationNotFound, PaymentRecordNotFound, ...
5. Fatal / infrastructure - LedgerInvariantError, LedgerContentionError, PaymentProviderError
"""

from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    """Base class for engine errors surfaced to callers."""

    code = "WORKFLOW_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


# =============================================================================
# ORDERING VIOLATIONS
# =============================================================================

class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: Optional[List[str]] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []
        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        super().__init__(
            f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}",
            {"from_state": from_state, "to_state": to_state, "allowed": self.allowed},
        )


class ApplicationClosed(WorkflowError):
    code = "APPLICATION_CLOSED"
    http_status = 409

    def __init__(self, application_id: str, status: str):
        self.application_id = application_id
        self.status = status
        super().__init__(
            f"Application {application_id} is closed ({status}) and cannot transition",
            {"application_id": application_id, "status": status},
        )


class StageNotActive(WorkflowError):
    code = "STAGE_NOT_ACTIVE"
    http_status = 409

    def __init__(self, application_id: str, stage: str, expected_status: str, current_status: str):
        self.stage = stage
        super().__init__(
            f"Stage '{stage}' is not active for application {application_id}: "
            f"expected status '{expected_status}', found '{current_status}'",
            {
                "application_id": application_id,
                "stage": stage,
                "expected_status": expected_status,
                "current_status": current_status,
            },
        )


class GuardConditionError(WorkflowError):
    """A registered transition exists but its guard refused it."""

    code = "GUARD_REJECTED"
    http_status = 409

    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        self.reason = reason
        super().__init__(
            f"Guard blocked {entity}: '{from_state}' -> '{to_state}': {reason}",
            {"from_state": from_state, "to_state": to_state, "reason": reason},
        )


class PaymentStateError(WorkflowError):
    code = "PAYMENT_STATE_CONFLICT"
    http_status = 409


class ReservationStateError(WorkflowError):
    code = "RESERVATION_STATE_CONFLICT"
    http_status = 409


# =============================================================================
# RESOURCE EXHAUSTION
# =============================================================================

class InsufficientFunds(WorkflowError):
    code = "INSUFFICIENT_FUNDS"
    http_status = 409

    def __init__(self, budget_type: str, school_year: str, requested: float, remaining: float):
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Insufficient funds in {budget_type}/{school_year}: requested {requested}, remaining {remaining}",
            {
                "budget_type": budget_type,
                "school_year": school_year,
                "requested": requested,
                "remaining": remaining,
            },
        )


class BudgetExhausted(WorkflowError):
    code = "BUDGET_EXHAUSTED"
    http_status = 409


class InvalidBudgetTotal(WorkflowError):
    """Administrative total would drop below funds already reserved or paid."""

    code = "INVALID_BUDGET_TOTAL"
    http_status = 400


# =============================================================================
# POLICY VIOLATIONS
# =============================================================================

class AmountExceedsRequest(WorkflowError):
    code = "AMOUNT_EXCEEDS_REQUEST"
    http_status = 422


class AmountExceedsRecommendation(WorkflowError):
    code = "AMOUNT_EXCEEDS_RECOMMENDATION"
    http_status = 422


class StagePayloadError(WorkflowError):
    code = "INVALID_STAGE_PAYLOAD"
    http_status = 422


class PaymentValidationError(WorkflowError):
    code = "INVALID_PAYMENT_REQUEST"
    http_status = 422


class ApplicationValidationError(WorkflowError):
    code = "INVALID_APPLICATION"
    http_status = 422


# =============================================================================
# LOOKUP FAILURES
# =============================================================================

class ApplicationNotFound(WorkflowError):
    code = "APPLICATION_NOT_FOUND"
    http_status = 404


class PaymentRecordNotFound(WorkflowError):
    code = "PAYMENT_RECORD_NOT_FOUND"
    http_status = 404


class ReservationNotFound(WorkflowError):
    code = "RESERVATION_NOT_FOUND"
    http_status = 404


class BudgetNotFound(WorkflowError):
    code = "BUDGET_NOT_FOUND"
    http_status = 404


# =============================================================================
# FATAL / INFRASTRUCTURE
# =============================================================================

class LedgerInvariantError(WorkflowError):
    """A ledger mutation would break allocated/disbursed/total bounds. This is a bug."""

    code = "LEDGER_INVARIANT_VIOLATION"
    http_status = 500

    def __init__(self, violation_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.violation_type = violation_type
        super().__init__(message, details)


class LedgerContentionError(WorkflowError):
    code = "LEDGER_CONTENTION"
    http_status = 503
    retryable = True


class ConcurrentModificationError(WorkflowError):
    code = "CONCURRENT_MODIFICATION"
    http_status = 503
    retryable = True


class PaymentProviderError(WorkflowError):
    code = "PAYMENT_PROVIDER_ERROR"
    http_status = 502
    retryable = True


class WebhookSignatureError(WorkflowError):
    code = "INVALID_WEBHOOK_SIGNATURE"
    http_status = 401

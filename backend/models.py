from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

# ============================================
# APPLICATION MODELS
# ============================================
class ApplicationCreate(BaseModel):
    student_id: str
    requested_amount: float = Field(..., gt=0)
    program: Optional[str] = None  # budget type of the bucket that funds the grant
    category: Optional[str] = None
    application_type: str = "new"  # new, renewal
    school_year: Optional[str] = None  # defaults to current YYYY-YYYY+1
    application_number: Optional[str] = None


class TransitionRequest(BaseModel):
    target_status: str
    notes: Optional[str] = None


class TransitionResponse(BaseModel):
    application_id: str
    from_state: str
    to_state: str
    status: str
    changed: bool


# ============================================
# COMMITTEE REVIEW MODELS
# ============================================
class StageDecisionRequest(BaseModel):
    decision: str  # approved, rejected, needs_revision
    notes: Optional[str] = None
    documents_verified: Optional[bool] = None
    document_issues: List[str] = []
    recommended_amount: Optional[float] = None
    academic_score: Optional[float] = None
    approved_amount: Optional[float] = None

    def stage_payload(self) -> Dict[str, Any]:
        return self.dict(exclude={"decision", "notes"}, exclude_none=True)


class StageDecisionResponse(BaseModel):
    application_id: str
    stage: str
    decision: str
    attempt: int
    review_stage_id: str
    status: str
    escalated: bool = False
    idempotent_replay: bool = False


# ============================================
# DISBURSEMENT MODELS
# ============================================
class ProcessGrantRequest(BaseModel):
    payment_method: str = "gcash"
    operation_id: Optional[str] = None


class ConfirmDisbursementRequest(BaseModel):
    provider_reference: str
    receipt_reference: Optional[str] = None
    payment_method: Optional[str] = None


class RetryPaymentRequest(BaseModel):
    payment_method: Optional[str] = None
    operation_id: Optional[str] = None


class CancelPaymentRequest(BaseModel):
    application_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    transaction_id: Optional[str] = None  # transaction reference (TXN-...)


# ============================================
# BUDGET MODELS
# ============================================
class BudgetUpsert(BaseModel):
    budget_type: str
    school_year: str
    total_budget: float = Field(..., ge=0)
    description: Optional[str] = None


class BudgetResponse(BaseModel):
    budget_id: str
    budget_type: str
    school_year: str
    description: Optional[str] = None
    is_active: bool = True
    total_budget: float
    allocated_budget: float
    disbursed_budget: float
    remaining_budget: float
    utilization_rate: float
    reservation_counts: Dict[str, int] = {}
    version: int = 0
    updated_at: Optional[datetime] = None


# ============================================
# ERROR MODEL
# ============================================
class ErrorResponse(BaseModel):
    error: str
    message: str
    details: Dict[str, Any] = {}
    retryable: bool = False

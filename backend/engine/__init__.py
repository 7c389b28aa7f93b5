"""
Scholarship Lifecycle & Disbursement Engine
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    to_minor_units,
    validate_non_negative,
    validate_positive,
    safe_subtract,
    safe_add,
    calculate_utilization,
    FinancialPrecisionError,
    NegativeValueError
)

from .exceptions import (
    WorkflowError,
    InvalidTransition,
    ApplicationClosed,
    StageNotActive,
    GuardConditionError,
    InsufficientFunds,
    BudgetExhausted,
    AmountExceedsRequest,
    AmountExceedsRecommendation,
    ApplicationNotFound,
    PaymentRecordNotFound,
    LedgerInvariantError,
    LedgerContentionError,
    PaymentProviderError
)

from .application_lifecycle import (
    ApplicationLifecycle,
    ApplicationStatus,
    Actor,
    TRANSITION_TABLE,
    TERMINAL_STATES
)

from .review_coordinator import (
    ReviewCoordinator,
    StageDecision,
    STAGE_SPECS
)

from .budget_ledger import BudgetLedger

from .disbursement_orchestrator import (
    DisbursementOrchestrator,
    PaymentStatus
)

from .reconciliation_job import (
    ReconciliationJob,
    run_reconciliation
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'to_minor_units',
    'validate_non_negative',
    'validate_positive',
    'safe_subtract',
    'safe_add',
    'calculate_utilization',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Errors
    'WorkflowError',
    'InvalidTransition',
    'ApplicationClosed',
    'StageNotActive',
    'GuardConditionError',
    'InsufficientFunds',
    'BudgetExhausted',
    'AmountExceedsRequest',
    'AmountExceedsRecommendation',
    'ApplicationNotFound',
    'PaymentRecordNotFound',
    'LedgerInvariantError',
    'LedgerContentionError',
    'PaymentProviderError',
    # Application State Machine
    'ApplicationLifecycle',
    'ApplicationStatus',
    'Actor',
    'TRANSITION_TABLE',
    'TERMINAL_STATES',
    # Committee Review
    'ReviewCoordinator',
    'StageDecision',
    'STAGE_SPECS',
    # Ledger
    'BudgetLedger',
    # Disbursement
    'DisbursementOrchestrator',
    'PaymentStatus',
    # Reconciliation
    'ReconciliationJob',
    'run_reconciliation',
]

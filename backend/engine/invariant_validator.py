"""
LEDGER INVARIANT VALIDATOR

Enforces the budget bucket constraints on every computed mutation BEFORE it is
written:
1. allocated_budget >= 0
2. disbursed_budget >= 0
3. allocated_budget + disbursed_budget <= total_budget

Any violation means a ledger bug; the mutation is blocked and logged CRITICAL.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from engine.exceptions import LedgerInvariantError
from engine.financial_precision import ZERO, to_decimal, to_float

logger = logging.getLogger(__name__)


class LedgerInvariantValidator:
    """
    Centralized ledger invariant enforcement.

    check_counters() is pure and used inline by the ledger; the db handle is
    only needed for alert creation by background jobs.
    """

    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None):
        self.db = db

    def collect_violations(
        self,
        total: Decimal,
        allocated: Decimal,
        disbursed: Decimal
    ) -> List[Dict[str, Any]]:
        violations = []

        if allocated < ZERO:
            violations.append({
                "type": "NEGATIVE_ALLOCATED",
                "message": f"allocated_budget ({to_float(allocated)}) is negative",
                "allocated_budget": to_float(allocated)
            })

        if disbursed < ZERO:
            violations.append({
                "type": "NEGATIVE_DISBURSED",
                "message": f"disbursed_budget ({to_float(disbursed)}) is negative",
                "disbursed_budget": to_float(disbursed)
            })

        if allocated + disbursed > total:
            violations.append({
                "type": "OVER_ALLOCATION",
                "message": (
                    f"allocated_budget ({to_float(allocated)}) + disbursed_budget "
                    f"({to_float(disbursed)}) exceeds total_budget ({to_float(total)})"
                ),
                "allocated_budget": to_float(allocated),
                "disbursed_budget": to_float(disbursed),
                "total_budget": to_float(total)
            })

        return violations

    def check_counters(
        self,
        bucket_key: str,
        total,
        allocated,
        disbursed,
        operation: str = ""
    ) -> bool:
        """
        Raises LedgerInvariantError if the proposed counters are invalid.
        Returns True if all constraints pass.
        """
        violations = self.collect_violations(to_decimal(total), to_decimal(allocated), to_decimal(disbursed))

        if violations:
            violation_type = "MULTIPLE_VIOLATIONS" if len(violations) > 1 else violations[0]["type"]
            logger.critical(
                f"[LEDGER] INVARIANT VIOLATION on {bucket_key} during {operation or 'mutation'}: "
                f"{[v['type'] for v in violations]}"
            )
            raise LedgerInvariantError(
                violation_type=violation_type,
                message="Ledger invariant violation(s) detected",
                details={
                    "bucket": bucket_key,
                    "operation": operation,
                    "violations": violations
                }
            )

        return True

    def check_bucket(self, bucket: Dict[str, Any], operation: str = "") -> bool:
        return self.check_counters(
            f"{bucket.get('budget_type')}/{bucket.get('school_year')}",
            bucket.get("total_budget", 0),
            bucket.get("allocated_budget", 0),
            bucket.get("disbursed_budget", 0),
            operation
        )

    async def create_violation_alert(
        self,
        bucket_key: str,
        alert_type: str,
        message: str,
        details: dict,
        severity: str = "CRITICAL"
    ):
        """
        Create an alert record for a ledger problem.
        Used by the reconciliation job.
        """
        if self.db is None:
            logger.error(f"[LEDGER] No database for alert {alert_type} on {bucket_key}")
            return

        alert_doc = {
            "bucket": bucket_key,
            "alert_type": alert_type,
            "severity": severity,
            "title": f"Budget Ledger Alert: {alert_type}",
            "message": message,
            "details": details,
            "resolved": False,
            "created_at": datetime.utcnow()
        }

        await self.db.alerts.insert_one(alert_doc)
        logger.warning(f"[LEDGER] Alert created: {alert_type} for {bucket_key}")

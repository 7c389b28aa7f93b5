"""
LEDGER RECONCILIATION JOB

Background job that verifies budget bucket counters against their reservations.

For each bucket:
1. Recalculate allocated_budget from reservations in 'reserved'
2. Recalculate disbursed_budget from reservations in 'committed'
   plus the committed total already archived out of the bucket
3. Compare with stored counters and check ledger invariants
4. Flag reservations still 'reserved' past orphan_reservation_hours
5. Log mismatches and raise alerts (NO auto-fix, NO release)

Usage:
    job = ReconciliationJob(db)
    report = await job.run()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
import logging

from engine.exceptions import LedgerInvariantError
from engine.financial_precision import round_financial, to_decimal, to_float
from engine.invariant_validator import LedgerInvariantValidator
from engine.policy_service import PolicyService

logger = logging.getLogger(__name__)

ORPHAN_ALERT_TYPE = "ORPHANED_RESERVATION"
MISMATCH_ALERT_TYPE = "LEDGER_MISMATCH"


class ReconciliationJob:
    """
    Compares stored bucket counters with values recomputed from the embedded
    reservations and reports stale reservations.

    Reports problems but does NOT change any ledger state.
    """

    # Tolerance for floating point comparison (0.01 = 1 centavo)
    TOLERANCE = Decimal('0.01')

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        policy_service: Optional[PolicyService] = None,
        validator: Optional[LedgerInvariantValidator] = None
    ):
        self.db = db
        self.policy_service = policy_service or PolicyService(db)
        self.validator = validator or LedgerInvariantValidator(db)
        self.mismatches: List[Dict[str, Any]] = []
        self.orphans: List[Dict[str, Any]] = []
        self.checked_count = 0
        self.alerts_created = 0

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run the reconciliation.

        Returns:
            Report with check results, mismatches and orphaned reservations
        """
        start_time = datetime.utcnow()
        now = now or start_time
        self.mismatches = []
        self.orphans = []
        self.checked_count = 0
        self.alerts_created = 0

        orphan_hours = await self.policy_service.orphan_reservation_hours()
        cutoff = now - timedelta(hours=orphan_hours)

        logger.info(f"[RECONCILE] Starting ledger reconciliation (orphan cutoff {orphan_hours}h)...")

        cursor = self.db.budget_allocations.find({})
        async for bucket in cursor:
            await self._check_bucket(bucket, cutoff, now)

        end_time = datetime.utcnow()
        duration_ms = (end_time - start_time).total_seconds() * 1000

        report = {
            "job_name": "ReconciliationJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round(duration_ms, 2),
            "buckets_checked": self.checked_count,
            "mismatches_found": len(self.mismatches),
            "orphans_found": len(self.orphans),
            "alerts_created": self.alerts_created,
            "mismatches": self.mismatches,
            "orphans": self.orphans
        }

        if self.mismatches or self.orphans:
            logger.warning(
                f"[RECONCILE] Completed with {len(self.mismatches)} mismatches and "
                f"{len(self.orphans)} orphaned reservations out of {self.checked_count} buckets"
            )
        else:
            logger.info(f"[RECONCILE] Completed successfully. All {self.checked_count} buckets verified.")

        return report

    async def _check_bucket(self, bucket: Dict[str, Any], cutoff: datetime, now: datetime):
        self.checked_count += 1
        key = f"{bucket.get('budget_type')}/{bucket.get('school_year')}"
        reservations = bucket.get("reservations") or {}

        calculated = {
            "allocated_budget": Decimal('0'),
            "disbursed_budget": to_decimal(bucket.get("archived_disbursed_budget", 0)),
        }
        for reservation in reservations.values():
            amount = to_decimal(reservation.get("amount", 0))
            if reservation.get("status") == "reserved":
                calculated["allocated_budget"] += amount
                created_at = reservation.get("created_at")
                if created_at and created_at < cutoff:
                    await self._flag_orphan(key, bucket, reservation, now)
            elif reservation.get("status") == "committed":
                calculated["disbursed_budget"] += amount

        discrepancies = self._compare_values(bucket, calculated)

        try:
            self.validator.check_bucket(bucket, operation="reconciliation")
        except LedgerInvariantError as e:
            discrepancies.append({
                "field": "invariant",
                "violation_type": e.violation_type,
                "violations": e.details.get("violations", [])
            })

        if discrepancies:
            mismatch_record = {
                "bucket": key,
                "budget_id": str(bucket.get("_id")),
                "checked_at": now.isoformat(),
                "discrepancies": discrepancies
            }
            self.mismatches.append(mismatch_record)

            logger.warning(f"[RECONCILE] MISMATCH found: bucket={key}, discrepancies={len(discrepancies)}")
            for d in discrepancies:
                if "stored" in d:
                    logger.warning(
                        f"  - {d['field']}: stored={d['stored']}, calculated={d['calculated']}, "
                        f"diff={d['difference']}"
                    )

            await self.validator.create_violation_alert(
                key, MISMATCH_ALERT_TYPE,
                f"Stored counters for {key} do not match reservations",
                mismatch_record
            )
            self.alerts_created += 1

    def _compare_values(self, bucket: Dict[str, Any], calculated: Dict[str, Decimal]) -> List[Dict[str, Any]]:
        """
        Compare stored counters with calculated values.

        Returns:
            List of discrepancy records (empty if all match)
        """
        discrepancies = []

        for field in ("allocated_budget", "disbursed_budget"):
            stored = round_financial(to_decimal(bucket.get(field, 0)))
            calc = round_financial(calculated[field])

            diff = abs(stored - calc)

            if diff > self.TOLERANCE:
                discrepancies.append({
                    "field": field,
                    "stored": to_float(stored),
                    "calculated": to_float(calc),
                    "difference": to_float(diff)
                })

        return discrepancies

    async def _flag_orphan(self, key: str, bucket: Dict[str, Any], reservation: Dict[str, Any], now: datetime):
        reservation_id = reservation.get("reservation_id")
        age_hours = round((now - reservation["created_at"]).total_seconds() / 3600, 1)
        orphan = {
            "bucket": key,
            "reservation_id": reservation_id,
            "application_id": reservation.get("application_id"),
            "payment_id": reservation.get("payment_id"),
            "amount": reservation.get("amount"),
            "age_hours": age_hours,
        }
        self.orphans.append(orphan)
        logger.warning(
            f"[RECONCILE] Orphaned reservation {reservation_id} on {key}: "
            f"{reservation.get('amount')} held for {age_hours}h"
        )

        existing = await self.db.alerts.find_one({
            "alert_type": ORPHAN_ALERT_TYPE,
            "details.reservation_id": reservation_id
        })
        if existing:
            return

        await self.validator.create_violation_alert(
            key, ORPHAN_ALERT_TYPE,
            f"Reservation {reservation_id} has been held for {age_hours} hours without settlement",
            orphan,
            severity="WARNING"
        )
        self.alerts_created += 1


# =============================================================================
# JOB RUNNER
# =============================================================================

async def run_reconciliation(db: AsyncIOMotorDatabase) -> Dict[str, Any]:
    """
    Convenience function to run the reconciliation.

    Usage:
        from engine.reconciliation_job import run_reconciliation
        report = await run_reconciliation(db)
    """
    job = ReconciliationJob(db)
    return await job.run()

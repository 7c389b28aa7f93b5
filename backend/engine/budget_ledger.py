"""
BUDGET LEDGER

Per (budget_type, school_year) bucket accounting with reserve → commit/release.

Bucket document (budget_allocations):
    total_budget, allocated_budget, disbursed_budget, version,
    reservations: {reservation_id: {application_id, amount, status, ...}}
    archived_disbursed_budget, archived_counts (settled reservations moved to
    budget_reservation_archive by archive_settled)

Reservation states: reserved → committed | released

RULES:
- remaining = total - allocated - disbursed; reserve fails with
  InsufficientFunds when amount > remaining
- reservation state and bucket counters change in ONE conditional update keyed
  on (_id, version); a lost race reloads and retries (bounded by policy
  ledger_max_retries, then LedgerContentionError)
- commit/release are idempotent on repeats of the same operation; crossing
  (commit after release or release after commit) raises ReservationStateError
- invariants checked on the computed counters before every write
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import uuid

from pymongo.errors import DuplicateKeyError

from engine.exceptions import (
    BudgetNotFound,
    InsufficientFunds,
    InvalidBudgetTotal,
    LedgerContentionError,
    PaymentValidationError,
    ReservationNotFound,
    ReservationStateError,
)
from engine.financial_precision import (
    NegativeValueError,
    ZERO,
    calculate_utilization,
    round_financial,
    safe_add,
    safe_subtract,
    to_decimal,
    to_float,
    validate_non_negative,
    validate_positive,
)
from engine.invariant_validator import LedgerInvariantValidator
from engine.policy_service import PolicyService

logger = logging.getLogger(__name__)


RESERVED = "reserved"
COMMITTED = "committed"
RELEASED = "released"


def bucket_key(budget_type: str, school_year: str) -> str:
    return f"{budget_type}/{school_year}"


def bucket_snapshot(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Read model of a bucket: counters, remaining and utilization."""
    total = to_decimal(doc.get("total_budget", 0))
    allocated = to_decimal(doc.get("allocated_budget", 0))
    disbursed = to_decimal(doc.get("disbursed_budget", 0))
    reservations = doc.get("reservations") or {}

    counts = {RESERVED: 0, COMMITTED: 0, RELEASED: 0}
    for res in reservations.values():
        counts[res.get("status", RESERVED)] = counts.get(res.get("status", RESERVED), 0) + 1
    for status, count in (doc.get("archived_counts") or {}).items():
        counts[status] = counts.get(status, 0) + count

    return {
        "budget_id": str(doc["_id"]),
        "budget_type": doc["budget_type"],
        "school_year": doc["school_year"],
        "description": doc.get("description"),
        "is_active": doc.get("is_active", True),
        "total_budget": to_float(total),
        "allocated_budget": to_float(allocated),
        "disbursed_budget": to_float(disbursed),
        "remaining_budget": to_float(total - allocated - disbursed),
        "utilization_rate": calculate_utilization(allocated + disbursed, total),
        "reservation_counts": counts,
        "version": doc.get("version", 0),
        "updated_at": doc.get("updated_at"),
    }


class BudgetLedger:
    """
    Reservation-based budget accounting.

    Every mutating method recomputes the counters from the freshly loaded
    bucket, validates them, then writes conditionally on the version it read.
    """

    COLLECTION = "budget_allocations"
    ARCHIVE_COLLECTION = "budget_reservation_archive"

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        policy_service: Optional[PolicyService] = None,
        audit_service=None,
        validator: Optional[LedgerInvariantValidator] = None
    ):
        self.db = db
        self.collection = db[self.COLLECTION]
        self.archive = db[self.ARCHIVE_COLLECTION]
        self.policy_service = policy_service or PolicyService(db)
        self.audit_service = audit_service
        self.validator = validator or LedgerInvariantValidator(db)

    async def create_indexes(self):
        await self.collection.create_index(
            [("budget_type", 1), ("school_year", 1)], unique=True, name="idx_budget_bucket_unique"
        )
        await self.archive.create_index(
            [("reservation_id", 1)], unique=True, name="idx_reservation_archive_unique"
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def _load_bucket(self, budget_type: str, school_year: str) -> Dict[str, Any]:
        doc = await self.collection.find_one({"budget_type": budget_type, "school_year": school_year})
        if not doc:
            raise BudgetNotFound(
                f"No budget allocated for {bucket_key(budget_type, school_year)}",
                {"budget_type": budget_type, "school_year": school_year}
            )
        return doc

    async def get_bucket(self, budget_type: str, school_year: str) -> Dict[str, Any]:
        return bucket_snapshot(await self._load_bucket(budget_type, school_year))

    async def list_buckets(self, school_year: Optional[str] = None) -> List[Dict[str, Any]]:
        query = {"school_year": school_year} if school_year else {}
        docs = await self.collection.find(query).sort([("school_year", -1), ("budget_type", 1)]).to_list(length=None)
        return [bucket_snapshot(doc) for doc in docs]

    async def get_reservation(self, reservation_id: str) -> Dict[str, Any]:
        doc = await self.collection.find_one({f"reservations.{reservation_id}": {"$exists": True}})
        if not doc:
            return await self._find_archived(reservation_id)
        return dict(doc["reservations"][reservation_id])

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def upsert_budget(
        self,
        budget_type: str,
        school_year: str,
        total_budget,
        description: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a bucket or change its total.

        Raises:
            InvalidBudgetTotal: negative total, or total below allocated + disbursed
        """
        try:
            validate_non_negative(total_budget, "total_budget")
        except NegativeValueError as e:
            raise InvalidBudgetTotal(str(e), {"total_budget": total_budget})

        total = round_financial(total_budget)
        max_retries = await self.policy_service.ledger_max_retries()

        for attempt in range(max_retries):
            now = datetime.utcnow()
            existing = await self.collection.find_one({"budget_type": budget_type, "school_year": school_year})

            if not existing:
                doc = {
                    "budget_type": budget_type,
                    "school_year": school_year,
                    "total_budget": to_float(total),
                    "allocated_budget": 0.0,
                    "disbursed_budget": 0.0,
                    "reservations": {},
                    "description": description,
                    "is_active": True,
                    "version": 1,
                    "created_by": user_id,
                    "created_at": now,
                    "updated_at": now,
                }
                try:
                    await self.collection.insert_one(doc)
                except DuplicateKeyError:
                    continue
                logger.info(f"[LEDGER] Budget created {bucket_key(budget_type, school_year)}: {to_float(total)}")
                await self._audit(doc, "CREATE", user_id, None, {"total_budget": to_float(total)})
                return bucket_snapshot(doc)

            allocated = to_decimal(existing.get("allocated_budget", 0))
            disbursed = to_decimal(existing.get("disbursed_budget", 0))
            if total < allocated + disbursed:
                raise InvalidBudgetTotal(
                    f"total_budget {to_float(total)} is below allocated + disbursed "
                    f"({to_float(allocated + disbursed)}) for {bucket_key(budget_type, school_year)}",
                    {
                        "total_budget": to_float(total),
                        "allocated_budget": to_float(allocated),
                        "disbursed_budget": to_float(disbursed),
                    }
                )

            set_fields = {"total_budget": to_float(total), "updated_at": now, "updated_by": user_id}
            if description is not None:
                set_fields["description"] = description

            result = await self.collection.update_one(
                {"_id": existing["_id"], "version": existing.get("version", 0)},
                {"$set": set_fields, "$inc": {"version": 1}}
            )
            if result.matched_count == 1:
                logger.info(
                    f"[LEDGER] Budget updated {bucket_key(budget_type, school_year)}: "
                    f"{existing.get('total_budget')} -> {to_float(total)}"
                )
                await self._audit(
                    existing, "UPDATE", user_id,
                    {"total_budget": existing.get("total_budget")},
                    {"total_budget": to_float(total)}
                )
                return await self.get_bucket(budget_type, school_year)

            logger.warning(f"[LEDGER] Contention on budget upsert {bucket_key(budget_type, school_year)}, retrying")

        raise LedgerContentionError(
            f"Budget {bucket_key(budget_type, school_year)} kept changing during update",
            {"budget_type": budget_type, "school_year": school_year}
        )

    # =========================================================================
    # RESERVE
    # =========================================================================

    async def reserve(
        self,
        budget_type: str,
        school_year: str,
        amount,
        application_id: str,
        payment_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Hold funds for an application.

        Returns:
            The reservation dict (reservation_id, amount, status, budget_id, ...)

        Raises:
            BudgetNotFound, InsufficientFunds, LedgerContentionError
        """
        try:
            validate_positive(amount, "amount")
        except NegativeValueError as e:
            raise PaymentValidationError(str(e), {"amount": str(amount)})
        amount_dec = round_financial(amount)
        key = bucket_key(budget_type, school_year)
        max_retries = await self.policy_service.ledger_max_retries()

        for attempt in range(max_retries):
            bucket = await self._load_bucket(budget_type, school_year)
            if not bucket.get("is_active", True):
                raise BudgetNotFound(f"Budget {key} is inactive", {"budget_type": budget_type, "school_year": school_year})

            total = to_decimal(bucket.get("total_budget", 0))
            allocated = to_decimal(bucket.get("allocated_budget", 0))
            disbursed = to_decimal(bucket.get("disbursed_budget", 0))
            remaining = total - allocated - disbursed

            if amount_dec > remaining:
                logger.info(f"[LEDGER] Reserve refused on {key}: requested {to_float(amount_dec)}, remaining {to_float(remaining)}")
                raise InsufficientFunds(budget_type, school_year, to_float(amount_dec), to_float(remaining))

            new_allocated = safe_add(allocated, amount_dec)
            self.validator.check_counters(key, total, new_allocated, disbursed, "reserve")

            now = datetime.utcnow()
            reservation_id = f"RSV-{uuid.uuid4().hex[:16].upper()}"
            reservation = {
                "reservation_id": reservation_id,
                "application_id": str(application_id),
                "payment_id": payment_id,
                "amount": to_float(amount_dec),
                "status": RESERVED,
                "created_at": now,
                "updated_at": now,
            }

            result = await self.collection.update_one(
                {"_id": bucket["_id"], "version": bucket.get("version", 0)},
                {
                    "$set": {
                        "allocated_budget": to_float(new_allocated),
                        f"reservations.{reservation_id}": reservation,
                        "updated_at": now
                    },
                    "$inc": {"version": 1}
                }
            )

            if result.matched_count == 1:
                logger.info(
                    f"[LEDGER] Reserved {to_float(amount_dec)} on {key} for application "
                    f"{application_id} ({reservation_id})"
                )
                return {**reservation, "budget_id": str(bucket["_id"]), "bucket": key}

            logger.warning(f"[LEDGER] Version conflict on {key} during reserve (attempt {attempt + 1}/{max_retries})")

        raise LedgerContentionError(
            f"Could not reserve on {key} after {max_retries} attempts",
            {"budget_type": budget_type, "school_year": school_year, "attempts": max_retries}
        )

    # =========================================================================
    # COMMIT / RELEASE
    # =========================================================================

    async def commit(self, reservation_id: str) -> Dict[str, Any]:
        """reserved → committed; allocated moves to disbursed."""
        return await self._settle(reservation_id, COMMITTED)

    async def release(self, reservation_id: str) -> Dict[str, Any]:
        """reserved → released; allocated returns to remaining."""
        return await self._settle(reservation_id, RELEASED)

    async def _settle(self, reservation_id: str, target: str) -> Dict[str, Any]:
        operation = "commit" if target == COMMITTED else "release"
        max_retries = await self.policy_service.ledger_max_retries()

        for attempt in range(max_retries):
            bucket = await self.collection.find_one({f"reservations.{reservation_id}": {"$exists": True}})
            if not bucket:
                return self._settle_archived(await self._find_archived(reservation_id), target, operation)
            key = bucket_key(bucket["budget_type"], bucket["school_year"])
            reservation = bucket["reservations"][reservation_id]
            current = reservation.get("status")

            if current == target:
                logger.info(f"[LEDGER] {operation} of {reservation_id} already applied, no-op")
                return {**reservation, "budget_id": str(bucket["_id"]), "bucket": key, "changed": False}

            if current != RESERVED:
                raise ReservationStateError(
                    f"Cannot {operation} reservation {reservation_id}: it is already {current}",
                    {"reservation_id": reservation_id, "status": current, "requested": target}
                )

            amount = to_decimal(reservation["amount"])
            total = to_decimal(bucket.get("total_budget", 0))
            allocated = to_decimal(bucket.get("allocated_budget", 0))
            disbursed = to_decimal(bucket.get("disbursed_budget", 0))

            new_allocated = safe_subtract(allocated, amount)
            new_disbursed = safe_add(disbursed, amount) if target == COMMITTED else disbursed
            self.validator.check_counters(key, total, new_allocated, new_disbursed, operation)

            now = datetime.utcnow()
            result = await self.collection.update_one(
                {
                    "_id": bucket["_id"],
                    "version": bucket.get("version", 0),
                    f"reservations.{reservation_id}.status": RESERVED
                },
                {
                    "$set": {
                        "allocated_budget": to_float(new_allocated),
                        "disbursed_budget": to_float(new_disbursed),
                        f"reservations.{reservation_id}.status": target,
                        f"reservations.{reservation_id}.{target}_at": now,
                        f"reservations.{reservation_id}.updated_at": now,
                        "updated_at": now
                    },
                    "$inc": {"version": 1}
                }
            )

            if result.matched_count == 1:
                logger.info(f"[LEDGER] {operation.capitalize()} {to_float(amount)} on {key} ({reservation_id})")
                return {
                    **reservation,
                    "status": target,
                    f"{target}_at": now,
                    "budget_id": str(bucket["_id"]),
                    "bucket": key,
                    "changed": True
                }

            logger.warning(
                f"[LEDGER] Version conflict on {key} during {operation} "
                f"(attempt {attempt + 1}/{max_retries})"
            )

        raise LedgerContentionError(
            f"Could not {operation} reservation {reservation_id} after {max_retries} attempts",
            {"reservation_id": reservation_id, "attempts": max_retries}
        )

    # =========================================================================
    # ARCHIVE
    # =========================================================================

    async def archive_settled(self, budget_type: str, school_year: str, older_than: datetime) -> Dict[str, Any]:
        """
        Move committed/released reservations settled before older_than out of
        the bucket into the archive collection. Counters do not change; the
        committed amounts are carried in archived_disbursed_budget so the
        bucket still reconciles.
        """
        key = bucket_key(budget_type, school_year)
        max_retries = await self.policy_service.ledger_max_retries()

        for attempt in range(max_retries):
            bucket = await self._load_bucket(budget_type, school_year)
            settled = [
                r for r in (bucket.get("reservations") or {}).values()
                if r.get("status") in (COMMITTED, RELEASED)
                and (r.get("updated_at") or r.get("created_at")) < older_than
            ]
            if not settled:
                return {"bucket": key, "archived": 0}

            now = datetime.utcnow()
            for reservation in settled:
                await self.archive.update_one(
                    {"reservation_id": reservation["reservation_id"]},
                    {"$setOnInsert": {
                        **reservation,
                        "budget_id": str(bucket["_id"]),
                        "budget_type": budget_type,
                        "school_year": school_year,
                        "archived_at": now,
                    }},
                    upsert=True
                )

            committed = [r for r in settled if r["status"] == COMMITTED]
            committed_total = round_financial(sum((to_decimal(r["amount"]) for r in committed), ZERO))
            archived_disbursed = safe_add(to_decimal(bucket.get("archived_disbursed_budget", 0)), committed_total)
            archived_counts = dict(bucket.get("archived_counts") or {})
            archived_counts[COMMITTED] = archived_counts.get(COMMITTED, 0) + len(committed)
            archived_counts[RELEASED] = archived_counts.get(RELEASED, 0) + len(settled) - len(committed)

            result = await self.collection.update_one(
                {"_id": bucket["_id"], "version": bucket.get("version", 0)},
                {
                    "$unset": {f"reservations.{r['reservation_id']}": "" for r in settled},
                    "$set": {
                        "archived_disbursed_budget": to_float(archived_disbursed),
                        "archived_counts": archived_counts,
                        "updated_at": now
                    },
                    "$inc": {"version": 1}
                }
            )
            if result.matched_count == 1:
                logger.info(f"[LEDGER] Archived {len(settled)} settled reservations from {key}")
                return {"bucket": key, "archived": len(settled)}

            logger.warning(f"[LEDGER] Version conflict on {key} during archive (attempt {attempt + 1}/{max_retries})")

        raise LedgerContentionError(
            f"Could not archive reservations on {key} after {max_retries} attempts",
            {"budget_type": budget_type, "school_year": school_year, "attempts": max_retries}
        )

    @staticmethod
    def _settle_archived(reservation: Dict[str, Any], target: str, operation: str) -> Dict[str, Any]:
        if reservation.get("status") == target:
            logger.info(f"[LEDGER] {operation} of archived {reservation['reservation_id']} already applied, no-op")
            return {**reservation, "bucket": bucket_key(reservation["budget_type"], reservation["school_year"]), "changed": False}
        raise ReservationStateError(
            f"Cannot {operation} reservation {reservation['reservation_id']}: it is already {reservation.get('status')}",
            {"reservation_id": reservation["reservation_id"], "status": reservation.get("status"), "requested": target}
        )

    async def _find_archived(self, reservation_id: str) -> Dict[str, Any]:
        archived = await self.archive.find_one({"reservation_id": reservation_id}, {"_id": 0})
        if not archived:
            raise ReservationNotFound(
                f"Reservation {reservation_id} not found", {"reservation_id": reservation_id}
            )
        return archived

    async def _audit(self, bucket: Dict, action: str, user_id, old_value, new_value):
        if not self.audit_service:
            return
        await self.audit_service.log_action(
            entity_type="BUDGET_ALLOCATION",
            entity_id=str(bucket.get("_id")),
            action_type=action,
            user_id=user_id,
            description=f"Budget {bucket_key(bucket['budget_type'], bucket['school_year'])}",
            old_value=old_value,
            new_value=new_value
        )

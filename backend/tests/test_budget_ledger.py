"""
Budget ledger tests
Testing: bucket administration, reserve/commit/release, contention,
invariant enforcement, randomized operation sequences
"""
import asyncio
import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from engine.budget_ledger import BudgetLedger
from engine.exceptions import (
    BudgetNotFound,
    InsufficientFunds,
    InvalidBudgetTotal,
    LedgerContentionError,
    LedgerInvariantError,
    PaymentValidationError,
    ReservationNotFound,
    ReservationStateError,
)
from engine.invariant_validator import LedgerInvariantValidator
from engine.policy_service import PolicyService
from tests.factories import BUDGET_TYPE, SCHOOL_YEAR, run, seed_bucket


class StaleWrites:
    """Collection proxy whose conditional updates never match."""

    def __init__(self, collection):
        self._collection = collection
        self.attempts = 0

    def __getattr__(self, name):
        return getattr(self._collection, name)

    async def update_one(self, *args, **kwargs):
        self.attempts += 1
        return SimpleNamespace(matched_count=0, modified_count=0)


class TestBucketAdministration:
    """upsert_budget / get_bucket / list_buckets"""

    def test_create_and_snapshot(self, engine):
        bucket = run(seed_bucket(engine, total=100000))
        assert bucket["total_budget"] == 100000.0
        assert bucket["allocated_budget"] == 0.0
        assert bucket["remaining_budget"] == 100000.0
        assert bucket["utilization_rate"] == 0.0

    def test_top_up_and_refuse_below_used(self, engine):
        async def scenario():
            await seed_bucket(engine, total=50000)
            await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 30000, "app-1")
            raised = await engine.ledger.upsert_budget(BUDGET_TYPE, SCHOOL_YEAR, 80000)
            with pytest.raises(InvalidBudgetTotal):
                await engine.ledger.upsert_budget(BUDGET_TYPE, SCHOOL_YEAR, 29999.99)
            return raised

        bucket = run(scenario())
        assert bucket["total_budget"] == 80000.0
        assert bucket["remaining_budget"] == 50000.0
        assert bucket["utilization_rate"] == 37.5

    def test_negative_total_rejected(self, engine):
        with pytest.raises(InvalidBudgetTotal):
            run(engine.ledger.upsert_budget(BUDGET_TYPE, SCHOOL_YEAR, -1))

    def test_missing_bucket(self, engine):
        with pytest.raises(BudgetNotFound):
            run(engine.ledger.get_bucket("unknown", SCHOOL_YEAR))

    def test_list_filters_by_school_year(self, engine):
        async def scenario():
            await seed_bucket(engine, school_year="2024-2025")
            await seed_bucket(engine, school_year="2025-2026")
            await seed_bucket(engine, budget_type="merit_scholarship", school_year="2025-2026")
            return await engine.ledger.list_buckets("2025-2026")

        buckets = run(scenario())
        assert sorted(b["budget_type"] for b in buckets) == ["merit_scholarship", "scholarship_benefits"]

    def test_budget_changes_audited(self, engine):
        async def scenario():
            await seed_bucket(engine, total=1000)
            await engine.ledger.upsert_budget(BUDGET_TYPE, SCHOOL_YEAR, 2000, user_id="admin-2")
            return await engine.audit_service.get_audit_logs(entity_type="BUDGET_ALLOCATION")

        logs = run(scenario())
        assert sorted(log["action_type"] for log in logs) == ["CREATE", "UPDATE"]


class TestReservations:
    """reserve → commit | release"""

    def test_reserve_and_commit(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            reservation = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 25000, "app-1")
            after_reserve = await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)
            committed = await engine.ledger.commit(reservation["reservation_id"])
            repeat = await engine.ledger.commit(reservation["reservation_id"])
            after_commit = await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)
            return reservation, after_reserve, committed, repeat, after_commit

        reservation, after_reserve, committed, repeat, after_commit = run(scenario())
        assert reservation["status"] == "reserved"
        assert after_reserve["allocated_budget"] == 25000.0
        assert after_reserve["remaining_budget"] == 75000.0
        assert committed["changed"] is True
        assert repeat["changed"] is False
        assert after_commit["allocated_budget"] == 0.0
        assert after_commit["disbursed_budget"] == 25000.0
        assert after_commit["remaining_budget"] == 75000.0

    def test_release_returns_funds(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            reservation = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 40000, "app-1")
            await engine.ledger.release(reservation["reservation_id"])
            repeat = await engine.ledger.release(reservation["reservation_id"])
            return repeat, await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)

        repeat, bucket = run(scenario())
        assert repeat["changed"] is False
        assert bucket["allocated_budget"] == 0.0
        assert bucket["disbursed_budget"] == 0.0
        assert bucket["remaining_budget"] == 100000.0

    def test_crossing_settlements_rejected(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            released = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 1000, "app-1")
            committed = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 1000, "app-2")
            await engine.ledger.release(released["reservation_id"])
            await engine.ledger.commit(committed["reservation_id"])
            with pytest.raises(ReservationStateError):
                await engine.ledger.commit(released["reservation_id"])
            with pytest.raises(ReservationStateError):
                await engine.ledger.release(committed["reservation_id"])
            return await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)

        bucket = run(scenario())
        assert bucket["disbursed_budget"] == 1000.0
        assert bucket["allocated_budget"] == 0.0

    def test_insufficient_funds(self, engine):
        async def scenario():
            await seed_bucket(engine, total=10000)
            await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 6000, "app-1")
            with pytest.raises(InsufficientFunds) as exc:
                await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 4000.01, "app-2")
            return exc.value

        error = run(scenario())
        assert error.details["remaining"] == 4000.0
        assert error.details["requested"] == 4000.01

    def test_exact_remaining_can_be_reserved(self, engine):
        async def scenario():
            await seed_bucket(engine, total=10000)
            await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 6000, "app-1")
            await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 4000, "app-2")
            return await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)

        assert run(scenario())["remaining_budget"] == 0.0

    def test_non_positive_amount(self, engine):
        async def scenario():
            await seed_bucket(engine)
            await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 0, "app-1")

        with pytest.raises(PaymentValidationError):
            run(scenario())

    def test_unknown_reservation(self, engine):
        with pytest.raises(ReservationNotFound):
            run(engine.ledger.commit("RSV-DOESNOTEXIST"))

    def test_concurrent_reservations_never_overdraw(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            results = await asyncio.gather(
                engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 60000, "app-1"),
                engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 60000, "app-2"),
                return_exceptions=True
            )
            return results, await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)

        results, bucket = run(scenario())
        assert len([r for r in results if isinstance(r, dict)]) == 1
        assert len([r for r in results if isinstance(r, InsufficientFunds)]) == 1
        assert bucket["allocated_budget"] == 60000.0
        assert bucket["remaining_budget"] == 40000.0


class TestContention:
    """Optimistic update exhaustion"""

    def test_contention_error_after_bounded_retries(self, db):
        ledger = BudgetLedger(db, policy_service=PolicyService(db, overrides={"ledger_max_retries": 3}))

        async def scenario():
            await ledger.upsert_budget(BUDGET_TYPE, SCHOOL_YEAR, 1000)
            stale = StaleWrites(ledger.collection)
            ledger.collection = stale
            with pytest.raises(LedgerContentionError):
                await ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 10, "app-1")
            return stale.attempts

        assert run(scenario()) == 3


class TestInvariantValidator:
    """Counter bounds"""

    def test_valid_counters(self):
        assert LedgerInvariantValidator().check_counters("b/y", 100, 40, 60)

    def test_over_allocation_logged_critical(self, caplog):
        validator = LedgerInvariantValidator()
        with caplog.at_level(logging.CRITICAL):
            with pytest.raises(LedgerInvariantError) as exc:
                validator.check_counters("b/y", 100, 50, 60, "reserve")
        assert exc.value.violation_type == "OVER_ALLOCATION"
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    def test_multiple_violations(self):
        with pytest.raises(LedgerInvariantError) as exc:
            LedgerInvariantValidator().check_counters("b/y", 100, -1, -1)
        assert exc.value.violation_type == "MULTIPLE_VIOLATIONS"
        assert len(exc.value.details["violations"]) == 2


class TestArchive:
    """Settled reservations leave the bucket document"""

    def test_settled_reservations_archived(self, engine):
        async def scenario():
            await seed_bucket(engine, total=100000)
            committed = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 20000, "app-1")
            released = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 5000, "app-2")
            open_reservation = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 7000, "app-3")
            await engine.ledger.commit(committed["reservation_id"])
            await engine.ledger.release(released["reservation_id"])

            cutoff = datetime.utcnow() + timedelta(seconds=1)
            archived = await engine.ledger.archive_settled(BUDGET_TYPE, SCHOOL_YEAR, cutoff)
            doc = await engine.ledger.collection.find_one({"budget_type": BUDGET_TYPE, "school_year": SCHOOL_YEAR})
            bucket = await engine.ledger.get_bucket(BUDGET_TYPE, SCHOOL_YEAR)
            moved = await engine.ledger.get_reservation(committed["reservation_id"])
            repeat = await engine.ledger.commit(committed["reservation_id"])
            with pytest.raises(ReservationStateError):
                await engine.ledger.release(committed["reservation_id"])
            report = await engine.reconciliation_job().run()
            second = await engine.ledger.archive_settled(BUDGET_TYPE, SCHOOL_YEAR, cutoff)
            return open_reservation, archived, doc, bucket, moved, repeat, report, second

        open_reservation, archived, doc, bucket, moved, repeat, report, second = run(scenario())
        assert archived["archived"] == 2
        assert list(doc["reservations"]) == [open_reservation["reservation_id"]]
        assert doc["archived_disbursed_budget"] == 20000.0
        assert bucket["allocated_budget"] == 7000.0
        assert bucket["disbursed_budget"] == 20000.0
        assert bucket["reservation_counts"] == {"reserved": 1, "committed": 1, "released": 1}
        assert moved["status"] == "committed"
        assert repeat["changed"] is False
        assert report["mismatches_found"] == 0
        assert second["archived"] == 0

    def test_recent_settlements_kept(self, engine):
        async def scenario():
            await seed_bucket(engine)
            reservation = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, 100, "app-1")
            await engine.ledger.commit(reservation["reservation_id"])
            result = await engine.ledger.archive_settled(
                BUDGET_TYPE, SCHOOL_YEAR, datetime.utcnow() - timedelta(days=30)
            )
            return reservation, result, await engine.ledger.get_reservation(reservation["reservation_id"])

        reservation, result, current = run(scenario())
        assert result["archived"] == 0
        assert current["reservation_id"] == reservation["reservation_id"]
        assert current["status"] == "committed"


class TestRandomizedSequences:
    """Seeded random reserve/commit/release interleavings keep the ledger consistent"""

    @pytest.mark.parametrize("seed", [7, 42, 2024])
    def test_counters_match_reservations(self, engine, seed):
        rng = random.Random(seed)
        total = Decimal("50000")

        async def check():
            doc = await engine.ledger.collection.find_one({"budget_type": BUDGET_TYPE, "school_year": SCHOOL_YEAR})
            reserved = sum(
                (Decimal(str(r["amount"])) for r in doc["reservations"].values() if r["status"] == "reserved"),
                Decimal("0")
            )
            committed = sum(
                (Decimal(str(r["amount"])) for r in doc["reservations"].values() if r["status"] == "committed"),
                Decimal("0")
            )
            allocated = Decimal(str(doc["allocated_budget"]))
            disbursed = Decimal(str(doc["disbursed_budget"]))
            assert allocated == reserved
            assert disbursed == committed
            assert allocated >= 0 and disbursed >= 0
            assert allocated + disbursed <= total

        async def scenario():
            await seed_bucket(engine, total=float(total))
            open_ids, settled = [], {}
            for step in range(120):
                action = rng.choice(["reserve", "reserve", "commit", "release", "repeat"])
                if action == "reserve":
                    amount = rng.randint(1, 1500000) / 100
                    try:
                        reservation = await engine.ledger.reserve(BUDGET_TYPE, SCHOOL_YEAR, amount, f"app-{step}")
                        open_ids.append(reservation["reservation_id"])
                    except InsufficientFunds:
                        pass
                elif action in ("commit", "release") and open_ids:
                    rid = open_ids.pop(rng.randrange(len(open_ids)))
                    await getattr(engine.ledger, action)(rid)
                    settled[rid] = action
                elif action == "repeat" and settled:
                    rid = rng.choice(sorted(settled))
                    again = rng.choice(["commit", "release"])
                    if again == settled[rid]:
                        result = await getattr(engine.ledger, again)(rid)
                        assert result["changed"] is False
                    else:
                        with pytest.raises(ReservationStateError):
                            await getattr(engine.ledger, again)(rid)
                await check()

        run(scenario())

"""
Workflow helpers that drive applications into the states tests start from.
"""
import asyncio

from engine.application_lifecycle import Actor

STAFF = Actor(user_id="staff-1", role="staff", name="Registrar Staff")
SSC = Actor(user_id="ssc-1", role="ssc_member", name="Committee Member")
CHAIR = Actor(user_id="chair-1", role="ssc_chair", name="Committee Chair")
FINANCE = Actor(user_id="finance-1", role="finance_officer", name="Finance Officer")

BUDGET_TYPE = "scholarship_benefits"
SCHOOL_YEAR = "2025-2026"

PRE_COMMITTEE_PATH = ("documents_reviewed", "interview_scheduled", "interview_completed", "endorsed_to_ssc")


def run(coro):
    return asyncio.run(coro)


async def submit(engine, requested_amount=15000, program=BUDGET_TYPE, school_year=SCHOOL_YEAR, **extra):
    data = {
        "student_id": extra.pop("student_id", "student-001"),
        "requested_amount": requested_amount,
        "program": program,
        "school_year": school_year,
        **extra,
    }
    result = await engine.lifecycle.submit_application(data, STAFF)
    return result.application_id


async def endorse(engine, application_id):
    for target in PRE_COMMITTEE_PATH:
        await engine.lifecycle.transition(application_id, target, STAFF)


async def pass_committee(engine, application_id, recommended_amount=12000, approved_amount=10000):
    await engine.review.submit_stage_decision(
        application_id, "document_verification", "approved", SSC, {"documents_verified": True}
    )
    await engine.review.submit_stage_decision(
        application_id, "financial_review", "approved", SSC, {"recommended_amount": recommended_amount}
    )
    await engine.review.submit_stage_decision(application_id, "academic_review", "approved", SSC, {})
    return await engine.review.submit_stage_decision(
        application_id, "final_approval", "approved", CHAIR, {"approved_amount": approved_amount}
    )


async def approved_application(engine, requested_amount=15000, approved_amount=10000, **extra):
    application_id = await submit(engine, requested_amount=requested_amount, **extra)
    await endorse(engine, application_id)
    await pass_committee(
        engine, application_id,
        recommended_amount=min(requested_amount, max(approved_amount, requested_amount - 1000)),
        approved_amount=approved_amount
    )
    return application_id


async def seed_bucket(engine, total=100000, budget_type=BUDGET_TYPE, school_year=SCHOOL_YEAR):
    return await engine.ledger.upsert_budget(budget_type, school_year, total, "test bucket", "admin-1")

"""
SERVICE WIRING

Builds the engine components around one database handle and exposes the
FastAPI dependencies used by the routes.

Usage:
    engine = ScholarshipEngine(db)
    await engine.create_indexes()
    result = await engine.lifecycle.transition(...)
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from fastapi import Depends
from typing import Dict, Optional
import logging
import os

from dotenv import load_dotenv

from audit_service import AuditService
from engine.application_lifecycle import ApplicationLifecycle
from engine.budget_ledger import BudgetLedger
from engine.disbursement_orchestrator import DisbursementOrchestrator
from engine.idempotency import COLLECTION as OPERATION_LOG_COLLECTION
from engine.payment_provider import PaymentProvider
from engine.policy_service import PolicyService
from engine.reconciliation_job import ReconciliationJob
from engine.review_coordinator import ReviewCoordinator

load_dotenv()

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_engines: Dict[str, "ScholarshipEngine"] = {}


class ScholarshipEngine:
    """All engine services sharing one database, policy cache and audit sink."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        provider: Optional[PaymentProvider] = None,
        audit_service: Optional[AuditService] = None,
        policy_service: Optional[PolicyService] = None
    ):
        self.db = db
        self.audit_service = audit_service or AuditService(db)
        self.policy_service = policy_service or PolicyService(db)
        self.lifecycle = ApplicationLifecycle(db, audit_service=self.audit_service)
        self.ledger = BudgetLedger(db, policy_service=self.policy_service, audit_service=self.audit_service)
        self.review = ReviewCoordinator(
            db, self.lifecycle, policy_service=self.policy_service, audit_service=self.audit_service
        )
        self.orchestrator = DisbursementOrchestrator(
            db,
            self.lifecycle,
            self.ledger,
            provider=provider,
            policy_service=self.policy_service,
            audit_service=self.audit_service
        )

    def reconciliation_job(self) -> ReconciliationJob:
        return ReconciliationJob(self.db, policy_service=self.policy_service, validator=self.ledger.validator)

    async def create_indexes(self):
        await self.lifecycle.create_indexes()
        await self.review.create_indexes()
        await self.ledger.create_indexes()
        await self.orchestrator.create_indexes()
        await self.db[OPERATION_LOG_COLLECTION].create_index(
            [("operation_id", 1)], unique=True, name="idx_operation_id_unique"
        )
        await self.db.audit_logs.create_index([("entity_type", 1), ("entity_id", 1)], name="idx_audit_entity")
        logger.info("[STARTUP] Scholarship indexes created")


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        mongo_url = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
        _client = AsyncIOMotorClient(mongo_url)
    return _client


def get_database() -> AsyncIOMotorDatabase:
    return get_client()[os.environ.get("DB_NAME", "scholarship_management")]


def get_engine(db: AsyncIOMotorDatabase = Depends(get_database)) -> ScholarshipEngine:
    engine = _engines.get(db.name)
    if engine is None:
        engine = ScholarshipEngine(db)
        _engines[db.name] = engine
    return engine


def close_client():
    global _client
    if _client is not None:
        _client.close()
        _client = None
    _engines.clear()

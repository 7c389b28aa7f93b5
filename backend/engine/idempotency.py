"""
IDEMPOTENCY HELPER

Centralizes operation_id handling for engine write operations that callers may
retry with the same idempotency key (grant initiation, disbursement
confirmation, retries).

Features:
- Auto-generates operation_id if not provided
- Checks for duplicate operations
- Returns the stored response for duplicates
- Stores the response on success

Usage:
    async with IdempotentOperation(db, operation_id, "APPLICATION", app_id) as op:
        if op.is_duplicate:
            return op.previous_response
        result = await do_mutation()
        await op.record_success(result)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass
import uuid
import logging

from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

COLLECTION = "mutation_operation_logs"


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    operation_id: str
    is_duplicate: bool
    previous_response: Optional[Dict[str, Any]] = None


def get_or_generate_operation_id(operation_id: Optional[str]) -> str:
    return operation_id or str(uuid.uuid4())


async def ensure_idempotent(
    db: AsyncIOMotorDatabase,
    operation_id: Optional[str],
    entity_type: str,
    entity_id: str
) -> IdempotencyResult:
    """
    Check whether operation_id was already applied.

    Returns:
        IdempotencyResult; previous_response holds the stored response of the
        first successful execution when is_duplicate is True.
    """
    op_id = get_or_generate_operation_id(operation_id)

    existing = await db[COLLECTION].find_one({"operation_id": op_id})

    if existing and existing.get("applied_flag", False):
        logger.info(
            f"[IDEMPOTENT] Duplicate operation detected: {op_id} "
            f"for {entity_type}/{entity_id}"
        )
        previous_response = dict(existing.get("response") or {})
        previous_response.setdefault("operation_id", op_id)
        previous_response["idempotent_replay"] = True
        return IdempotencyResult(
            operation_id=op_id,
            is_duplicate=True,
            previous_response=previous_response
        )

    logger.debug(f"[IDEMPOTENT] New operation: {op_id} for {entity_type}/{entity_id}")
    return IdempotencyResult(operation_id=op_id, is_duplicate=False)


class IdempotentOperation:
    """Async context manager wrapping ensure_idempotent() + record_success()."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        operation_id: Optional[str],
        entity_type: str,
        entity_id: str
    ):
        self.db = db
        self.operation_id = get_or_generate_operation_id(operation_id)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.is_duplicate = False
        self.previous_response: Optional[Dict[str, Any]] = None

    async def __aenter__(self):
        result = await ensure_idempotent(
            db=self.db,
            operation_id=self.operation_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id
        )
        self.operation_id = result.operation_id
        self.is_duplicate = result.is_duplicate
        self.previous_response = result.previous_response
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def record_success(self, response: Optional[Dict[str, Any]] = None):
        """Mark the operation as applied and store its response for replays."""
        if self.is_duplicate:
            return

        try:
            await self.db[COLLECTION].update_one(
                {"operation_id": self.operation_id},
                {
                    "$set": {
                        "operation_id": self.operation_id,
                        "entity_type": self.entity_type,
                        "entity_id": self.entity_id,
                        "applied_flag": True,
                        "response": response or {"status": "success"},
                        "created_at": datetime.utcnow()
                    }
                },
                upsert=True
            )
        except DuplicateKeyError:
            # A concurrent duplicate recorded first; its response stands.
            logger.warning(f"[IDEMPOTENT] Concurrent record for operation {self.operation_id}")
            return

        logger.info(
            f"[IDEMPOTENT] Recorded operation: {self.operation_id} "
            f"for {self.entity_type}/{self.entity_id}"
        )

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, Set
from fastapi import HTTPException, status
import asyncio
import logging
import os

import httpx

logger = logging.getLogger(__name__)

# ARCHITECTURAL GUARD: entity types that are archived, never deleted
PROTECTED_ENTITY_TYPES = [
    "SCHOLARSHIP_APPLICATION",
    "REVIEW_STAGE",
    "PAYMENT_RECORD",
    "BUDGET_ALLOCATION"
]


class AuditService:
    """
    Insert-only audit trail and fire-and-forget notification sink.

    Every accepted lifecycle transition is published here. Delivery problems
    are logged and never propagate into the workflow.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        notification_url: Optional[str] = None,
        timeout_seconds: float = 5.0
    ):
        self.db = db
        self.collection = db.audit_logs
        self.notification_url = notification_url if notification_url is not None \
            else os.environ.get("NOTIFICATION_WEBHOOK_URL")
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

    def enforce_delete_guard(self, entity_type: str, action_type: str):
        """
        ARCHITECTURAL GUARD: applications, review stages, payment records and
        budget buckets are archived, never deleted.
        """
        if action_type == "DELETE" and entity_type in PROTECTED_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"ARCHITECTURAL GUARD: Cannot DELETE {entity_type}. Use archival instead."
            )

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        description: str = "",
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Log an action to audit trail (INSERT ONLY)."""
        self.enforce_delete_guard(entity_type, action_type)

        try:
            audit_entry = {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action_type": action_type,
                "description": description,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "metadata": metadata or {},
                "user_id": user_id,
                "timestamp": datetime.utcnow()
            }
            await self.collection.insert_one(audit_entry)
            logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def publish_transition(self, event: Dict[str, Any]):
        """
        Record an accepted status transition and forward it to the notification
        service without waiting for delivery.

        event: application_id, from_state, to_state, actor_id, actor_role, notes, timestamp
        """
        await self.log_action(
            entity_type="SCHOLARSHIP_APPLICATION",
            entity_id=event.get("application_id"),
            action_type="STATUS_TRANSITION",
            user_id=event.get("actor_id"),
            description=f"{event.get('from_state')} -> {event.get('to_state')}",
            old_value={"status": event.get("from_state")},
            new_value={"status": event.get("to_state"), "notes": event.get("notes")},
            metadata={"actor_role": event.get("actor_role")}
        )

        if not self.notification_url:
            return

        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError as e:
            logger.error(f"[AUDIT] Cannot schedule notification delivery: {e}")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: Dict[str, Any]):
        payload = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in event.items()
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.notification_url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"[AUDIT] Notification sink returned {response.status_code} "
                    f"for application {event.get('application_id')}"
                )
        except httpx.HTTPError as e:
            logger.warning(f"[AUDIT] Notification delivery failed: {e}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY)"""
        query = {}
        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs

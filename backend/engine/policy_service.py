"""
POLICY SERVICE

Runtime business policy read from the global_settings collection, merged over
DEFAULT_POLICIES. All engine components read their tunables through here.

Methods:
- max_revision_cycles(): needs_revision loops allowed before auto-rejection
- orphan_reservation_hours(): age after which an open reservation is flagged
- ledger_max_retries(): optimistic update attempts per ledger mutation
- reservation_archive_days(): age after which settled reservations leave the bucket
- default_budget_type(): bucket used when an application names no program
- requires_receipt_for_manual(): manual disbursement must carry a receipt

Usage:
    policy = PolicyService(db)
    cap = await policy.max_revision_cycles()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any
from datetime import datetime
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT POLICY VALUES
# =============================================================================

DEFAULT_POLICIES = {
    "max_revision_cycles": 3,
    "orphan_reservation_hours": 48,
    "ledger_max_retries": 10,
    "reservation_archive_days": 30,
    "default_budget_type": "scholarship_benefits",
    "require_receipt_for_manual": True,
}


# =============================================================================
# POLICY SERVICE
# =============================================================================

class PolicyService:
    """
    Centralized policy service that reads from global_settings collection.

    Provides cached access to policy values with fallback to defaults.
    """

    COLLECTION = "global_settings"
    SETTINGS_KEY = "policies"

    def __init__(self, db: AsyncIOMotorDatabase, overrides: Optional[Dict[str, Any]] = None):
        self.db = db
        self._overrides = overrides or {}
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: Optional[datetime] = None
        self._cache_ttl_seconds = 60

    async def _get_settings(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Retrieve policy settings (DB values override defaults, explicit
        constructor overrides win over both).
        """
        now = datetime.utcnow()

        if (
            not force_refresh
            and self._cache is not None
            and self._cache_timestamp is not None
            and (now - self._cache_timestamp).total_seconds() < self._cache_ttl_seconds
        ):
            return self._cache

        try:
            doc = await self.db[self.COLLECTION].find_one({"key": self.SETTINGS_KEY})
            if doc and "settings" in doc:
                settings = {**DEFAULT_POLICIES, **doc["settings"]}
                logger.debug(f"[POLICY] Loaded settings from DB: {settings}")
            else:
                settings = DEFAULT_POLICIES.copy()
        except Exception as e:
            logger.error(f"[POLICY] Error loading settings: {e}")
            settings = DEFAULT_POLICIES.copy()

        settings.update(self._overrides)
        self._cache = settings
        self._cache_timestamp = now
        return settings

    async def _get_policy(self, key: str, default: Any = None) -> Any:
        settings = await self._get_settings()
        return settings.get(key, default)

    # =========================================================================
    # PUBLIC: POLICY VALUES
    # =========================================================================

    async def max_revision_cycles(self) -> int:
        return int(await self._get_policy("max_revision_cycles", 3))

    async def orphan_reservation_hours(self) -> float:
        return float(await self._get_policy("orphan_reservation_hours", 48))

    async def ledger_max_retries(self) -> int:
        return max(1, int(await self._get_policy("ledger_max_retries", 10)))

    async def reservation_archive_days(self) -> float:
        return float(await self._get_policy("reservation_archive_days", 30))

    async def default_budget_type(self) -> str:
        return str(await self._get_policy("default_budget_type", "scholarship_benefits"))

    async def requires_receipt_for_manual(self) -> bool:
        return bool(await self._get_policy("require_receipt_for_manual", True))

    # =========================================================================
    # ADMIN: SETTINGS MANAGEMENT
    # =========================================================================

    async def get_all_policies(self) -> Dict[str, Any]:
        settings = await self._get_settings(force_refresh=True)
        return {
            "policies": settings,
            "defaults": DEFAULT_POLICIES,
            "cache_ttl_seconds": self._cache_ttl_seconds
        }

    async def update_policy(self, key: str, value: Any) -> Dict[str, Any]:
        """
        Update a specific policy setting.

        Raises:
            ValueError: unknown policy key
        """
        if key not in DEFAULT_POLICIES:
            raise ValueError(f"Unknown policy key: {key}")

        await self.db[self.COLLECTION].update_one(
            {"key": self.SETTINGS_KEY},
            {
                "$set": {
                    f"settings.{key}": value,
                    "updated_at": datetime.utcnow()
                },
                "$setOnInsert": {
                    "key": self.SETTINGS_KEY,
                    "created_at": datetime.utcnow()
                }
            },
            upsert=True
        )

        self._cache = None
        self._cache_timestamp = None
        logger.info(f"[POLICY] Updated {key} = {value}")
        return await self.get_all_policies()

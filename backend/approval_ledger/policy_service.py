"""
LEDGER ENGINE - POLICY SERVICE

Centralized accounting policy flags read from Global Settings.

Methods:
- is_strict_budget_enabled(): Block PO submission beyond available budget
- payment_tolerance(): Fraction of an invoice that counts as fully paid
- is_rejection_reason_required(): Refuse rejections without a reason
- is_cancellation_reason_required(): Refuse PO cancellation without a reason

Usage:
    policy = PolicyService(db)
    if await policy.is_strict_budget_enabled():
        # refuse over-commitment
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
import logging

from approval_ledger.financial_precision import to_decimal

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT POLICY VALUES
# =============================================================================

DEFAULT_POLICIES = {
    "strict_budget_enabled": False,       # Ledger is advisory by default
    "payment_tolerance": 0.99,            # paid >= amount * tolerance -> paid
    "require_rejection_reason": True,     # Rejections must explain themselves
    "require_cancellation_reason": True,  # PO cancellations must explain themselves
}


# =============================================================================
# POLICY SERVICE
# =============================================================================

class PolicyService:
    """
    Policy service that reads from the global_settings collection.

    Provides cached access to policy flags with fallback to defaults.
    """

    COLLECTION = "global_settings"
    SETTINGS_KEY = "accounting_policies"

    def __init__(self, db: AsyncIOMotorDatabase, cache_ttl_seconds: int = 60):
        self.db = db
        self._cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: Optional[datetime] = None
        self._cache_ttl_seconds = cache_ttl_seconds

    # =========================================================================
    # INTERNAL: SETTINGS RETRIEVAL
    # =========================================================================

    async def _get_settings(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Retrieve policy settings, DB values override defaults.
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
                logger.debug("[POLICY] Using default settings (none in DB)")

            self._cache = settings
            self._cache_timestamp = now

            return settings

        except Exception as e:
            logger.error(f"[POLICY] Error loading settings: {e}")
            return DEFAULT_POLICIES.copy()

    async def _get_policy(self, key: str, default: Any = None) -> Any:
        settings = await self._get_settings()
        return settings.get(key, default)

    # =========================================================================
    # PUBLIC: POLICY CHECK METHODS
    # =========================================================================

    async def is_strict_budget_enabled(self) -> bool:
        """
        When enabled, a PO whose amount exceeds the sub-account's available
        budget is refused at submission. When disabled the PO goes through
        and is flagged `over_budget`.
        """
        result = await self._get_policy("strict_budget_enabled", False)
        logger.debug(f"[POLICY] is_strict_budget_enabled: {result}")
        return bool(result)

    async def payment_tolerance(self) -> Decimal:
        result = await self._get_policy("payment_tolerance", 0.99)
        return to_decimal(result)

    async def is_rejection_reason_required(self) -> bool:
        result = await self._get_policy("require_rejection_reason", True)
        return bool(result)

    async def is_cancellation_reason_required(self) -> bool:
        result = await self._get_policy("require_cancellation_reason", True)
        return bool(result)

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
            ValueError: Unknown policy key
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

        # Invalidate cache
        self._cache = None
        self._cache_timestamp = None

        logger.info(f"[POLICY] Updated {key} = {value}")

        return await self.get_all_policies()

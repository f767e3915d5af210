"""Site Settings Service

Single-row configuration aggregate. The document is created lazily by an
atomic upsert so concurrent first reads never create two rows, and admin
writes are guarded by an optional expected ``version``.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from pymongo import ReturnDocument

from database import database
from entitlements.errors import ConcurrencyConflict, ValidationError
from entitlements.models.audit import AuditAction
from entitlements.models.settings import (
    SiteSettings,
    SETTINGS_ID,
    PLAN_PRICE_FIELDS,
    PRICE_FIELDS,
    CREDIT_FIELDS,
    PAYPAL_SECRET_FIELDS,
)
from entitlements.services.audit_service import audit_service, calculate_diff

logger = logging.getLogger(__name__)

MASK_CHAR = "•"


def mask_secret(value: Optional[str]) -> str:
    """Mask all but the last 4 characters. Values shorter than 8 are masked entirely."""
    if not value:
        return ""
    if len(value) < 8:
        return MASK_CHAR * len(value)
    return MASK_CHAR * (len(value) - 4) + value[-4:]


def is_masked(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(MASK_CHAR)


def _defaults() -> Dict[str, Any]:
    doc = SiteSettings().model_dump()
    doc.pop("settings_id")
    return doc


class SettingsService:
    """Read and update the global settings document."""

    def _get_db(self):
        return database.get_db()

    async def get(self) -> Dict[str, Any]:
        """Return the settings document, creating it with defaults if absent."""
        db = self._get_db()
        doc = await db.site_settings.find_one({"settings_id": SETTINGS_ID}, {"_id": 0})
        if doc:
            return doc
        doc = await db.site_settings.find_one_and_update(
            {"settings_id": SETTINGS_ID},
            {"$setOnInsert": _defaults()},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Site settings initialised with defaults")
        return doc

    async def update(
        self,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
        unset: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Apply a versioned update. A stale expected_version raises ConcurrencyConflict."""
        await self.get()
        query: Dict[str, Any] = {"settings_id": SETTINGS_ID}
        if expected_version is not None:
            query["version"] = expected_version

        update: Dict[str, Any] = {
            "$set": {**changes, "updated_at": datetime.now(timezone.utc)},
            "$inc": {"version": 1},
        }
        if unset:
            update["$unset"] = unset

        doc = await self._get_db().site_settings.find_one_and_update(
            query,
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ConcurrencyConflict(
                "Settings were modified concurrently; reload and retry",
                expected_version=expected_version,
            )
        return doc

    # =========================================================================
    # Pricing
    # =========================================================================

    @staticmethod
    def pricing_view(settings: Dict[str, Any]) -> Dict[str, Any]:
        return {field: settings.get(field) for field in PRICE_FIELDS + CREDIT_FIELDS + ("currency",)}

    async def update_pricing(
        self,
        pricing: Dict[str, Any],
        actor_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Update prices and credit allotments.

        A changed recurring price clears that plan type's mapping so the
        provisioner creates a provider plan at the new price on next use.
        """
        changes = {k: v for k, v in pricing.items() if v is not None and k in PRICE_FIELDS + CREDIT_FIELDS}
        for field in PRICE_FIELDS:
            if field in changes and changes[field] < 0:
                raise ValidationError(f"{field} must be >= 0")
        for field in CREDIT_FIELDS:
            if field in changes and changes[field] < 1:
                raise ValidationError(f"{field} must be >= 1")
        if not changes:
            raise ValidationError("No pricing fields supplied")

        before = await self.get()
        stale_plans = [
            plan_type
            for plan_type, field in PLAN_PRICE_FIELDS.items()
            if field in changes and float(changes[field]) != float(before.get(field, 0))
        ]
        unset = {f"plan_ids.{plan_type}": "" for plan_type in stale_plans}

        after = await self.update(changes, expected_version=expected_version, unset=unset or None)

        await audit_service.log(
            action=AuditAction.PRICING_UPDATED,
            description="Pricing updated",
            actor_id=actor_id,
            details={
                "diff": calculate_diff(self.pricing_view(before), self.pricing_view(after)),
                "cleared_plan_ids": stale_plans,
            },
        )
        return after

    # =========================================================================
    # Plan mapping
    # =========================================================================

    async def get_plan_ids(self) -> Dict[str, str]:
        settings = await self.get()
        return dict(settings.get("plan_ids") or {})

    async def store_plan_id(self, plan_type: str, plan_id: str, owner: str) -> Optional[Dict[str, Any]]:
        """Persist a provisioned plan id and release the caller's claim in one write."""
        return await self._get_db().site_settings.find_one_and_update(
            {"settings_id": SETTINGS_ID, f"plan_claims.{plan_type}.owner": owner},
            {
                "$set": {f"plan_ids.{plan_type}": plan_id, "updated_at": datetime.now(timezone.utc)},
                "$unset": {f"plan_claims.{plan_type}": ""},
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    # =========================================================================
    # PayPal credentials
    # =========================================================================

    async def get_paypal_config(self) -> Dict[str, Any]:
        settings = await self.get()
        config = {"paypal_mode": settings.get("paypal_mode", "sandbox")}
        for field in PAYPAL_SECRET_FIELDS:
            config[field] = mask_secret(settings.get(field))
        return config

    async def update_paypal_config(self, update: Dict[str, Any], actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Store credentials. Masked values echoed back by the client are ignored."""
        changes: Dict[str, Any] = {}
        if update.get("paypal_mode"):
            if update["paypal_mode"] not in ("sandbox", "live"):
                raise ValidationError("paypal_mode must be 'sandbox' or 'live'")
            changes["paypal_mode"] = update["paypal_mode"]
        for field in PAYPAL_SECRET_FIELDS:
            value = update.get(field)
            if value is None or is_masked(value):
                continue
            changes[field] = value.strip()

        if changes:
            await self.update(changes)
            # Local import: paypal_client reads credentials through this service
            from entitlements.services.paypal_client import paypal_client
            paypal_client.clear_credentials_cache()

            await audit_service.log(
                action=AuditAction.PAYPAL_CONFIG_UPDATED,
                description="PayPal configuration updated",
                actor_id=actor_id,
                details={"fields": sorted(changes.keys())},
            )
        return await self.get_paypal_config()


settings_service = SettingsService()

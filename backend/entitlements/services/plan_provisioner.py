"""
Plan Provisioner: ensures a PayPal billing plan exists for a recurring plan
type before checkout references it, and caches the mapping in site settings.

Single-writer section per plan type:
- in-process asyncio.Lock so one worker does not race itself
- cross-process claim (plan_claims.<type> with owner + lease) taken by a
  conditional find_one_and_update on the settings document
Claim, re-verify, create, persist-and-release. Callers that lose the claim
wait for the winner's id instead of creating a duplicate plan.
"""
import asyncio
import logging
import os
import re
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

from pymongo import ReturnDocument

from database import database
from entitlements.errors import ConcurrencyConflict, ProvisioningFailed, ValidationError
from entitlements.models.account import PlanType
from entitlements.models.audit import AuditAction, AuditSeverity
from entitlements.models.settings import SETTINGS_ID, PLAN_PRICE_FIELDS
from entitlements.services.audit_service import audit_service
from entitlements.services.paypal_client import paypal_client
from entitlements.services.settings_service import settings_service

logger = logging.getLogger(__name__)

# Provider-issued billing plan ids: "P-" followed by at least 20 upper-case
# alphanumerics (e.g. P-5ML4271244454362WXNWU5NQ). Seeded values such as
# "P-PRO-MONTHLY" do not match and are treated as placeholders.
REAL_PLAN_ID_PATTERN = re.compile(r"^P-[A-Z0-9]{20,}$")

CLAIM_LEASE_SECONDS = 60
WAIT_POLL_SECONDS = 0.25
WAIT_TIMEOUT_SECONDS = 30.0
PRODUCT_NAME = os.getenv("PAYPAL_PRODUCT_NAME", "Subscription Plans")

PLAN_DEFINITIONS = {
    PlanType.STARTER_MONTHLY.value: ("Starter Monthly", "MONTH"),
    PlanType.STARTER_YEARLY.value: ("Starter Yearly", "YEAR"),
    PlanType.PRO_MONTHLY.value: ("Pro Monthly", "MONTH"),
    PlanType.PRO_YEARLY.value: ("Pro Yearly", "YEAR"),
}


def is_real_plan_id(value: Optional[str]) -> bool:
    """True if ``value`` has the shape of a provider-issued plan id."""
    return bool(value) and REAL_PLAN_ID_PATTERN.match(value) is not None


def _worker_id() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _validate_plan_type(plan_type: str) -> str:
    try:
        return PlanType(plan_type).value
    except ValueError:
        raise ValidationError(
            f"Invalid plan type: {plan_type}",
            allowed=[p.value for p in PlanType],
        )


class PlanProvisioner:

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_db(self):
        return database.get_db()

    def _lock_for(self, plan_type: str) -> asyncio.Lock:
        lock = self._locks.get(plan_type)
        if lock is None:
            lock = self._locks[plan_type] = asyncio.Lock()
        return lock

    async def resolve_plan_id(self, plan_type: str) -> str:
        """Return a usable provider plan id, creating the plan at most once."""
        plan_type = _validate_plan_type(plan_type)
        current = (await settings_service.get_plan_ids()).get(plan_type)
        if is_real_plan_id(current):
            return current

        async with self._lock_for(plan_type):
            return await self._provision(plan_type)

    async def provision_all(self) -> Dict[str, Any]:
        """Resolve every recurring plan type (admin "create subscription plans")."""
        results: Dict[str, Any] = {}
        for plan_type in PLAN_DEFINITIONS:
            try:
                results[plan_type] = {"success": True, "plan_id": await self.resolve_plan_id(plan_type)}
            except (ProvisioningFailed, ConcurrencyConflict) as e:
                results[plan_type] = {"success": False, "error": e.message}
        return results

    async def _provision(self, plan_type: str) -> str:
        # Second round covers a claim released without an id (holder failed)
        for _ in range(2):
            current = (await settings_service.get_plan_ids()).get(plan_type)
            if is_real_plan_id(current):
                return current

            owner = _worker_id()
            if await self._claim(plan_type, owner):
                try:
                    current = (await settings_service.get_plan_ids()).get(plan_type)
                    if is_real_plan_id(current):
                        return current
                    return await self._create_and_persist(plan_type, owner, replaced=current)
                finally:
                    await self._release(plan_type, owner)

            plan_id = await self._wait_for_plan_id(plan_type)
            if plan_id:
                return plan_id

        raise ConcurrencyConflict(
            f"Could not acquire provisioning claim for {plan_type}",
            plan_type=plan_type,
        )

    async def _claim(self, plan_type: str, owner: str) -> bool:
        now = datetime.now(timezone.utc)
        await settings_service.get()
        claimed = await self._get_db().site_settings.find_one_and_update(
            {
                "settings_id": SETTINGS_ID,
                "$or": [
                    {f"plan_claims.{plan_type}": None},
                    {f"plan_claims.{plan_type}.until": {"$lt": now}},
                ],
            },
            {"$set": {f"plan_claims.{plan_type}": {
                "owner": owner,
                "until": now + timedelta(seconds=CLAIM_LEASE_SECONDS),
            }}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            logger.info("PLAN_CLAIM_ACQUIRED plan_type=%s owner=%s", plan_type, owner)
        return claimed is not None

    async def _release(self, plan_type: str, owner: str) -> None:
        await self._get_db().site_settings.update_one(
            {"settings_id": SETTINGS_ID, f"plan_claims.{plan_type}.owner": owner},
            {"$unset": {f"plan_claims.{plan_type}": ""}},
        )

    async def _wait_for_plan_id(self, plan_type: str) -> Optional[str]:
        """Poll until the claim holder persists an id. None if the claim went away without one."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + WAIT_TIMEOUT_SECONDS
        while loop.time() < deadline:
            settings = await settings_service.get()
            plan_id = (settings.get("plan_ids") or {}).get(plan_type)
            if is_real_plan_id(plan_id):
                return plan_id
            claim = (settings.get("plan_claims") or {}).get(plan_type)
            if not claim:
                return None
            await asyncio.sleep(WAIT_POLL_SECONDS)
        logger.warning("PLAN_CLAIM_WAIT_TIMEOUT plan_type=%s", plan_type)
        return None

    async def _create_and_persist(self, plan_type: str, owner: str, replaced: Optional[str]) -> str:
        name, interval_unit = PLAN_DEFINITIONS[plan_type]
        settings = await settings_service.get()
        price = float(settings.get(PLAN_PRICE_FIELDS[plan_type]))
        currency = settings.get("currency", "USD")

        try:
            product_id = await self._ensure_product(settings)
            plan = await paypal_client.create_plan(
                product_id=product_id,
                name=name,
                price=price,
                currency=currency,
                interval_unit=interval_unit,
            )
            plan_id = plan.get("id")
            if not is_real_plan_id(plan_id):
                raise ValueError(f"provider returned an unrecognised plan id: {plan_id!r}")
        except Exception as e:
            logger.error("PLAN_PROVISIONING_FAILED plan_type=%s error=%s", plan_type, e)
            await audit_service.log(
                action=AuditAction.PLAN_PROVISIONING_FAILED,
                description=f"Billing plan creation failed for {plan_type}",
                details={"plan_type": plan_type, "error": str(e)},
                severity=AuditSeverity.ERROR,
            )
            raise ProvisioningFailed(plan_type, e) from e

        stored = await settings_service.store_plan_id(plan_type, plan_id, owner)
        if stored is None:
            # Lease expired and another worker took over; keep whatever is persisted
            current = (await settings_service.get_plan_ids()).get(plan_type)
            if is_real_plan_id(current):
                logger.warning("PLAN_CLAIM_LOST plan_type=%s orphaned_plan_id=%s", plan_type, plan_id)
                return current
            raise ConcurrencyConflict(f"Provisioning claim for {plan_type} expired", plan_type=plan_type)

        logger.info("PLAN_PROVISIONED plan_type=%s plan_id=%s replaced=%s", plan_type, plan_id, replaced)
        await audit_service.log(
            action=AuditAction.PLAN_PROVISIONED,
            description=f"Billing plan provisioned for {plan_type}",
            details={"plan_type": plan_type, "plan_id": plan_id, "replaced": replaced, "price": price},
        )
        return plan_id

    async def _ensure_product(self, settings: Dict[str, Any]) -> str:
        product_id = settings.get("paypal_product_id") or os.getenv("PAYPAL_PRODUCT_ID")
        if product_id:
            return product_id

        product = await paypal_client.create_product(PRODUCT_NAME, "Recurring subscription plans")
        product_id = product["id"]
        stored = await self._get_db().site_settings.find_one_and_update(
            {"settings_id": SETTINGS_ID, "paypal_product_id": None},
            {"$set": {"paypal_product_id": product_id}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if stored is None:
            current = await settings_service.get()
            return current["paypal_product_id"]
        logger.info("PAYPAL_PRODUCT_CREATED product_id=%s", product_id)
        return product_id


plan_provisioner = PlanProvisioner()

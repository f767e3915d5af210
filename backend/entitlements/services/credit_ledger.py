"""Credit Ledger

Tracks remaining / total usage credits on the account document:
- allocation on plan change (-1 is unlimited)
- conditional consumption (never clamps, never goes negative)
- replenishment when the reset date passes, on read and on a schedule
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from pymongo import ReturnDocument

from database import database
from entitlements.errors import InsufficientCredits, NotFound, ValidationError
from entitlements.models.account import (
    CreditStatus,
    Plan,
    SubscriptionStatus,
    UNLIMITED,
    add_billing_period,
    as_utc,
    is_recurring,
)
from entitlements.models.audit import AuditAction
from entitlements.services.audit_service import audit_service
from entitlements.services.settings_service import settings_service

logger = logging.getLogger(__name__)

UPGRADE_URL = "/#pricing"

# Statuses under which a passed reset date replenishes credits
REPLENISHING_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.NONE.value)

_CREDIT_PROJECTION = {
    "_id": 0,
    "account_id": 1,
    "plan": 1,
    "subscription_status": 1,
    "subscription_started_at": 1,
    "credits_remaining": 1,
    "credits_total": 1,
    "credits_reset_date": 1,
}


def allocation_for_plan(plan: Optional[str], settings: Dict[str, Any]) -> int:
    if plan == Plan.LIFETIME.value:
        return UNLIMITED
    if not plan or plan == Plan.NONE.value:
        return 0
    if plan.startswith("starter_"):
        return int(settings.get("starter_credits", 100))
    if plan.startswith("pro_"):
        return int(settings.get("pro_credits", 500))
    return 0


def next_reset_date(anchor: Optional[datetime], plan: Optional[str], now: datetime) -> Optional[datetime]:
    """First billing anniversary of ``anchor`` strictly after ``now``."""
    if anchor is None or not is_recurring(plan):
        return None
    anchor = as_utc(anchor)
    periods = 1
    candidate = add_billing_period(anchor, plan, periods)
    while candidate <= now:
        periods += 1
        candidate = add_billing_period(anchor, plan, periods)
    return candidate


def credit_status(doc: Dict[str, Any]) -> CreditStatus:
    remaining = doc.get("credits_remaining", 0)
    total = doc.get("credits_total", 0)
    unlimited = total == UNLIMITED or remaining == UNLIMITED
    if unlimited:
        percentage = 100.0
    elif total > 0:
        percentage = round(remaining / total * 100, 2)
    else:
        percentage = 0.0
    return CreditStatus(
        remaining=remaining,
        total=total,
        reset_date=as_utc(doc.get("credits_reset_date")),
        percentage=percentage,
        is_unlimited=unlimited,
    )


class CreditLedger:
    """Credit allocation, consumption and replenishment."""

    def _get_db(self):
        return database.get_db()

    async def _load(self, account_id: str) -> Dict[str, Any]:
        doc = await self._get_db().accounts.find_one({"account_id": account_id}, _CREDIT_PROJECTION)
        if not doc:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        return doc

    async def allocate(
        self,
        account_id: str,
        total: int,
        reset_date: Optional[datetime] = None,
    ) -> CreditStatus:
        """Set remaining = total = allotment. Unlimited allotments carry no reset date."""
        if total < UNLIMITED:
            raise ValidationError("Credit allotment must be -1 (unlimited) or >= 0")
        if total == UNLIMITED:
            reset_date = None

        doc = await self._get_db().accounts.find_one_and_update(
            {"account_id": account_id},
            {"$set": {
                "credits_remaining": total,
                "credits_total": total,
                "credits_reset_date": reset_date,
                "updated_at": datetime.now(timezone.utc),
            }},
            projection=_CREDIT_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)

        await audit_service.log(
            action=AuditAction.CREDITS_ALLOCATED,
            description=f"Credits allocated: {total}",
            account_id=account_id,
            details={"total": total, "reset_date": reset_date.isoformat() if reset_date else None},
        )
        return credit_status(doc)

    async def allocate_for_plan(
        self,
        account_id: str,
        plan: str,
        started_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> CreditStatus:
        now = now or datetime.now(timezone.utc)
        settings = await settings_service.get()
        total = allocation_for_plan(plan, settings)
        return await self.allocate(account_id, total, next_reset_date(started_at or now, plan, now))

    async def consume(self, account_id: str, amount: int = 1, now: Optional[datetime] = None) -> CreditStatus:
        """Decrement by ``amount`` in a single conditional write.

        Unlimited records always succeed without mutation. Consumption beyond
        the remaining balance is rejected, never clamped.
        """
        if amount < 1:
            raise ValidationError("amount must be >= 1")

        await self.refresh_if_due(account_id, now=now)

        doc = await self._get_db().accounts.find_one_and_update(
            {
                "account_id": account_id,
                "credits_total": {"$ne": UNLIMITED},
                "credits_remaining": {"$gte": amount},
            },
            {
                "$inc": {"credits_remaining": -amount},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
            projection=_CREDIT_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.info("CREDITS_CONSUMED account_id=%s amount=%s remaining=%s", account_id, amount, doc["credits_remaining"])
            return credit_status(doc)

        doc = await self._load(account_id)
        status = credit_status(doc)
        if status.is_unlimited:
            return status

        logger.warning(
            "Insufficient credits for account %s. Has %s, needs %s",
            account_id, status.remaining, amount,
        )
        raise InsufficientCredits(remaining=status.remaining, requested=amount, upgrade_url=UPGRADE_URL)

    async def status(self, account_id: str, now: Optional[datetime] = None) -> CreditStatus:
        doc = await self.refresh_if_due(account_id, now=now)
        return credit_status(doc)

    async def refresh_if_due(self, account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        doc = await self._load(account_id)
        return await self._replenish(doc, now or datetime.now(timezone.utc))

    async def _replenish(self, doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        """Replenish a due record, guarded by compare-and-set on the observed reset date."""
        observed = doc.get("credits_reset_date")
        reset_date = as_utc(observed)
        if (
            reset_date is None
            or reset_date > now
            or doc.get("credits_total") == UNLIMITED
            or doc.get("subscription_status") not in REPLENISHING_STATUSES
        ):
            return doc

        settings = await settings_service.get()
        plan = doc.get("plan")
        total = allocation_for_plan(plan, settings)
        upcoming = next_reset_date(doc.get("subscription_started_at") or reset_date, plan, now)

        updated = await self._get_db().accounts.find_one_and_update(
            {"account_id": doc["account_id"], "credits_reset_date": observed},
            {"$set": {
                "credits_remaining": total,
                "credits_total": total,
                "credits_reset_date": upcoming,
                "updated_at": now,
            }},
            projection=_CREDIT_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # Another caller replenished first
            return await self._load(doc["account_id"])

        logger.info(
            "CREDITS_RESET account_id=%s plan=%s total=%s next_reset=%s",
            doc["account_id"], plan, total, upcoming,
        )
        await audit_service.log(
            action=AuditAction.CREDITS_RESET,
            description=f"Credits replenished to {total}",
            account_id=doc["account_id"],
            details={"plan": plan, "next_reset": upcoming.isoformat() if upcoming else None},
        )
        return updated

    async def reset_due_credits(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Scheduled pass replenishing every account whose reset date has passed."""
        now = now or datetime.now(timezone.utc)
        cursor = self._get_db().accounts.find(
            {
                "credits_reset_date": {"$lte": now},
                "credits_total": {"$ne": UNLIMITED},
                "subscription_status": {"$in": list(REPLENISHING_STATUSES)},
            },
            _CREDIT_PROJECTION,
        )
        checked = 0
        reset = 0
        async for doc in cursor:
            checked += 1
            try:
                updated = await self._replenish(doc, now)
            except Exception as e:
                logger.error(f"Credit reset failed for account {doc.get('account_id')}: {e}")
                continue
            if updated.get("credits_reset_date") != doc.get("credits_reset_date"):
                reset += 1
        logger.info("CREDIT_RESET_PASS checked=%s reset=%s", checked, reset)
        return {"checked": checked, "reset": reset}


credit_ledger = CreditLedger()

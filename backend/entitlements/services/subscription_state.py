"""Subscription State Machine

Authoritative status model for an account's paid relationship.

Transitions are pure functions ``(SubscriptionState, TransitionContext) ->
SubscriptionState`` looked up in a dispatch table by EventKind, so they can
be tested without I/O. Persistence is a separate step: a conditional write
keyed by account id and the observed ``state_version`` (compare-and-set).

    none -> active -> {cancelled, suspended, expired}
    active <-> paused           (admin only)
    paused -> active | none | provider status   (admin resume)

While an account is paused, provider status events are recorded in
``provider_status`` and the pause holds until an admin resumes it. Resume
lands on that recorded status when the provider cancelled, suspended or
expired the subscription in the meantime.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Callable, List
import logging
import os

from pydantic import BaseModel

from database import database
from entitlements.errors import ConcurrencyConflict, NotFound, ValidationError
from entitlements.models.account import (
    Entitlement,
    PaymentStatus,
    Plan,
    SubscriptionStatus,
    add_billing_period,
    as_utc,
)
from entitlements.models.audit import AuditAction
from entitlements.services.audit_service import audit_service
from entitlements.services.credit_ledger import credit_ledger
from entitlements.services.paypal_client import paypal_client

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    PAYMENT_COMPLETED = "payment_completed"
    ADMIN_PAUSE = "admin_pause"
    ADMIN_RESUME = "admin_resume"
    LIFETIME_CAPTURE = "lifetime_capture"
    SUBSCRIPTION_CAPTURE = "subscription_capture"
    USER_CANCEL = "user_cancel"


# PayPal event_type -> kind. Anything else is ignored.
PROVIDER_EVENT_KINDS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.ACTIVATED,
    "BILLING.SUBSCRIPTION.CANCELLED": EventKind.CANCELLED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventKind.SUSPENDED,
    "BILLING.SUBSCRIPTION.EXPIRED": EventKind.EXPIRED,
    "PAYMENT.SALE.COMPLETED": EventKind.PAYMENT_COMPLETED,
}


def kind_for_event_type(event_type: Optional[str]) -> Optional[EventKind]:
    return PROVIDER_EVENT_KINDS.get(event_type or "")


def subject_for_event(kind: EventKind, resource: Dict[str, Any]) -> Optional[str]:
    """Subscription id an event refers to. Sale events carry it as billing_agreement_id."""
    if kind == EventKind.PAYMENT_COMPLETED:
        return resource.get("billing_agreement_id")
    return resource.get("id")


class SubscriptionState(BaseModel):
    plan: str = Plan.NONE.value
    status: str = SubscriptionStatus.NONE.value
    external_subscription_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    provider_status: Optional[str] = None
    payment_status: str = PaymentStatus.NONE.value

    model_config = {"frozen": True}

    @classmethod
    def from_account(cls, doc: Dict[str, Any]) -> "SubscriptionState":
        return cls(
            plan=doc.get("plan") or Plan.NONE.value,
            status=doc.get("subscription_status") or SubscriptionStatus.NONE.value,
            external_subscription_id=doc.get("external_subscription_id"),
            started_at=as_utc(doc.get("subscription_started_at")),
            ends_at=as_utc(doc.get("subscription_ends_at")),
            provider_status=doc.get("provider_status"),
            payment_status=doc.get("payment_status") or PaymentStatus.NONE.value,
        )

    def to_fields(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "subscription_status": self.status,
            "external_subscription_id": self.external_subscription_id,
            "subscription_started_at": self.started_at,
            "subscription_ends_at": self.ends_at,
            "provider_status": self.provider_status,
            "payment_status": self.payment_status,
        }


class TransitionContext(BaseModel):
    now: datetime
    occurred_at: Optional[datetime] = None
    subscription_id: Optional[str] = None
    plan: Optional[str] = None


Transition = Callable[[SubscriptionState, TransitionContext], SubscriptionState]


def _provider_status(new_status: SubscriptionStatus, payment: Optional[PaymentStatus] = None) -> Transition:
    def apply(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
        update = {"provider_status": new_status.value}
        if payment is not None:
            update["payment_status"] = payment.value
        if state.status != SubscriptionStatus.PAUSED.value:
            update["status"] = new_status.value
        return state.model_copy(update=update)
    return apply


def _payment_completed(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
    if not state.external_subscription_id:
        raise ValidationError("Recurring payment for an account without a subscription")
    base = ctx.occurred_at or ctx.now
    update = {
        "ends_at": add_billing_period(base, state.plan),
        "provider_status": SubscriptionStatus.ACTIVE.value,
        "payment_status": PaymentStatus.COMPLETED.value,
    }
    if state.status != SubscriptionStatus.PAUSED.value:
        update["status"] = SubscriptionStatus.ACTIVE.value
    return state.model_copy(update=update)


# Provider outcomes an admin resume must not override
PROVIDER_HELD_STATUSES = {
    SubscriptionStatus.CANCELLED.value,
    SubscriptionStatus.SUSPENDED.value,
    SubscriptionStatus.EXPIRED.value,
}


def _admin_pause(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
    if state.status == SubscriptionStatus.PAUSED.value:
        raise ValidationError("Account is already paused")
    return state.model_copy(update={"status": SubscriptionStatus.PAUSED.value})


def _admin_resume(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
    if state.status != SubscriptionStatus.PAUSED.value:
        raise ValidationError("Account is not paused")
    if state.plan != Plan.LIFETIME.value and state.provider_status in PROVIDER_HELD_STATUSES:
        return state.model_copy(update={"status": state.provider_status})
    status = SubscriptionStatus.ACTIVE if state.external_subscription_id else SubscriptionStatus.NONE
    return state.model_copy(update={"status": status.value})


def _lifetime_capture(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
    return state.model_copy(update={
        "plan": Plan.LIFETIME.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "ends_at": None,
        "started_at": state.started_at or ctx.now,
    })


def _subscription_capture(state: SubscriptionState, ctx: TransitionContext) -> SubscriptionState:
    """Record the subscription; status waits for the provider's activation event."""
    if not ctx.subscription_id or not ctx.plan:
        raise ValidationError("Subscription capture requires a subscription id and plan")
    if state.external_subscription_id == ctx.subscription_id:
        return state
    update = {
        "external_subscription_id": ctx.subscription_id,
        "started_at": ctx.now,
        "ends_at": add_billing_period(ctx.now, ctx.plan),
        "provider_status": None,
    }
    if state.plan != Plan.LIFETIME.value:
        update["plan"] = ctx.plan
        if state.status != SubscriptionStatus.PAUSED.value:
            update["status"] = SubscriptionStatus.NONE.value
    return state.model_copy(update=update)


TRANSITIONS: Dict[EventKind, Transition] = {
    EventKind.ACTIVATED: _provider_status(SubscriptionStatus.ACTIVE, PaymentStatus.COMPLETED),
    EventKind.CANCELLED: _provider_status(SubscriptionStatus.CANCELLED),
    EventKind.SUSPENDED: _provider_status(SubscriptionStatus.SUSPENDED, PaymentStatus.FAILED),
    EventKind.EXPIRED: _provider_status(SubscriptionStatus.EXPIRED),
    EventKind.PAYMENT_COMPLETED: _payment_completed,
    EventKind.ADMIN_PAUSE: _admin_pause,
    EventKind.ADMIN_RESUME: _admin_resume,
    EventKind.LIFETIME_CAPTURE: _lifetime_capture,
    EventKind.SUBSCRIPTION_CAPTURE: _subscription_capture,
    EventKind.USER_CANCEL: _provider_status(SubscriptionStatus.CANCELLED),
}


def transition(state: SubscriptionState, kind: EventKind, ctx: TransitionContext) -> SubscriptionState:
    """Pure transition lookup."""
    return TRANSITIONS[kind](state, ctx)


# =============================================================================
# Event ordering
# =============================================================================

class ArrivalOrder:
    """Last writer by arrival wins."""
    name = "arrival"

    def accepts(self, last_event_at: Optional[datetime], occurred_at: Optional[datetime]) -> bool:
        return True


class ProviderTimestampOrder:
    """Skip events older than the newest provider event already applied."""
    name = "provider_timestamp"

    def accepts(self, last_event_at: Optional[datetime], occurred_at: Optional[datetime]) -> bool:
        if last_event_at is None or occurred_at is None:
            return True
        return as_utc(occurred_at) >= as_utc(last_event_at)


def ordering_from_env():
    if os.getenv("WEBHOOK_ORDERING", "arrival").strip().lower() == ProviderTimestampOrder.name:
        return ProviderTimestampOrder()
    return ArrivalOrder()


# =============================================================================
# Persistence
# =============================================================================

class SubscriptionStateMachine:

    def _get_db(self):
        return database.get_db()

    async def _write(
        self,
        doc: Dict[str, Any],
        new_state: SubscriptionState,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Compare-and-set on the observed state_version. None means another writer won."""
        fields = {**new_state.to_fields(), **(extra or {}), "updated_at": datetime.now(timezone.utc)}
        result = await self._get_db().accounts.update_one(
            {"account_id": doc["account_id"], "state_version": doc.get("state_version")},
            {"$set": fields, "$inc": {"state_version": 1}},
        )
        if result.modified_count == 0:
            return None
        return {**doc, **fields, "state_version": (doc.get("state_version") or 0) + 1}

    async def apply(
        self,
        account_id: str,
        kind: EventKind,
        ctx: Optional[TransitionContext] = None,
        extra: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Apply a transition to one account, re-reading and retrying once on a lost race."""
        ctx = ctx or TransitionContext(now=datetime.now(timezone.utc))
        for attempt in range(2):
            doc = await self._get_db().accounts.find_one({"account_id": account_id}, {"_id": 0})
            if not doc:
                raise NotFound(f"Account {account_id} not found", account_id=account_id)
            before = SubscriptionState.from_account(doc)
            after = transition(before, kind, ctx)
            written = await self._write(doc, after, extra)
            if written is not None:
                await self._audit(account_id, kind, before, after, actor_id)
                return written
            logger.info("STATE_CAS_RETRY account_id=%s kind=%s attempt=%s", account_id, kind.value, attempt + 1)
        raise ConcurrencyConflict(
            f"Account {account_id} was modified concurrently",
            account_id=account_id,
        )

    async def apply_provider_event(
        self,
        subject_id: str,
        kind: EventKind,
        occurred_at: Optional[datetime] = None,
        ordering=None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Apply a provider event to every non-lifetime account holding ``subject_id``.

        Returns the ids of matched accounts; an empty list means no account
        holds the subscription yet.
        """
        ordering = ordering or ArrivalOrder()
        ctx = TransitionContext(now=now or datetime.now(timezone.utc), occurred_at=occurred_at)
        cursor = self._get_db().accounts.find(
            {"external_subscription_id": subject_id, "plan": {"$ne": Plan.LIFETIME.value}},
            {"_id": 0},
        )
        docs = await cursor.to_list(length=None)
        matched = []
        for doc in docs:
            await self._apply_provider_event_to(doc, kind, ctx, ordering)
            matched.append(doc["account_id"])
        return matched

    async def _apply_provider_event_to(self, doc, kind: EventKind, ctx: TransitionContext, ordering) -> None:
        for attempt in range(3):
            last_event_at = as_utc(doc.get("last_event_at"))
            if not ordering.accepts(last_event_at, ctx.occurred_at):
                logger.info(
                    "STALE_EVENT_SKIPPED account_id=%s kind=%s occurred_at=%s last_event_at=%s",
                    doc["account_id"], kind.value, ctx.occurred_at, last_event_at,
                )
                return
            before = SubscriptionState.from_account(doc)
            after = transition(before, kind, ctx)
            extra = {}
            if ctx.occurred_at and (last_event_at is None or ctx.occurred_at > last_event_at):
                extra["last_event_at"] = ctx.occurred_at
            if await self._write(doc, after, extra) is not None:
                await self._audit(doc["account_id"], kind, before, after, None)
                return
            doc = await self._get_db().accounts.find_one({"account_id": doc["account_id"]}, {"_id": 0})
            if not doc or doc.get("plan") == Plan.LIFETIME.value:
                return
        raise ConcurrencyConflict(f"Account {doc['account_id']} was modified concurrently")

    async def _audit(self, account_id, kind, before: SubscriptionState, after: SubscriptionState, actor_id) -> None:
        if before == after:
            return
        logger.info(
            "SUBSCRIPTION_TRANSITION account_id=%s kind=%s status=%s->%s plan=%s->%s",
            account_id, kind.value, before.status, after.status, before.plan, after.plan,
        )
        await audit_service.log(
            action=AuditAction.SUBSCRIPTION_TRANSITION,
            description=f"{kind.value}: {before.status} -> {after.status}",
            account_id=account_id,
            actor_id=actor_id,
            details={
                "kind": kind.value,
                "from_status": before.status,
                "to_status": after.status,
                "from_plan": before.plan,
                "to_plan": after.plan,
                "external_subscription_id": after.external_subscription_id,
            },
        )

    async def entitlement(self, account_id: str) -> Entitlement:
        credits = await credit_ledger.status(account_id)
        doc = await self._get_db().accounts.find_one({"account_id": account_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        state = SubscriptionState.from_account(doc)
        return Entitlement(
            account_id=account_id,
            plan=state.plan,
            status=state.status,
            has_access=has_access(state),
            external_subscription_id=state.external_subscription_id,
            ends_at=state.ends_at,
            credits=credits,
        )

    async def cancel_subscription(self, account_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """User-initiated cancel: cancel at the provider first, then record it."""
        doc = await self._get_db().accounts.find_one({"account_id": account_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        subscription_id = doc.get("external_subscription_id")
        if not subscription_id:
            raise ValidationError("No active subscription to cancel")
        if doc.get("subscription_status") == SubscriptionStatus.CANCELLED.value:
            raise ValidationError("Subscription is already cancelled")

        await paypal_client.cancel_subscription(subscription_id, reason or "Cancelled by customer")
        updated = await self.apply(account_id, EventKind.USER_CANCEL, actor_id=account_id)
        await audit_service.log(
            action=AuditAction.SUBSCRIPTION_CANCELLED,
            description="Subscription cancelled by customer",
            account_id=account_id,
            actor_id=account_id,
            details={"external_subscription_id": subscription_id, "reason": reason},
        )
        return updated


def has_access(state: SubscriptionState) -> bool:
    if state.status == SubscriptionStatus.PAUSED.value:
        return False
    if state.plan == Plan.LIFETIME.value:
        return True
    return state.status == SubscriptionStatus.ACTIVE.value


subscription_state_machine = SubscriptionStateMachine()

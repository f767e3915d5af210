"""Checkout Flow

One-time purchase (lifetime) and subscription initiation against PayPal.

Capture creates or upgrades the account keyed by payer email:
- new account: random temporary credential (bcrypt hash only), must change it
- existing account: upgraded in place through the subscription state machine
Capturing the same order twice never calls the provider twice and never
creates a second account. Provider timeouts surface before any account write.
A failed welcome email never rolls back the account; the result carries a
recovery flag so the redirect can offer "resend credentials".
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any
import logging
import os

from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from auth import generate_temp_password, hash_password
from database import database
from entitlements.errors import EmailInUse, NotFound, ValidationError, ProviderUnavailable
from entitlements.models.account import (
    Account,
    PaymentStatus,
    Plan,
    PlanType,
    SubscriptionStatus,
    UNLIMITED,
    add_billing_period,
)
from entitlements.models.audit import AuditAction, AuditSeverity
from entitlements.services.audit_service import audit_service
from entitlements.services.credit_ledger import allocation_for_plan, credit_ledger, next_reset_date
from entitlements.services.notifications import notification_service
from entitlements.services.paypal_client import (
    PayPalAPIError,
    approval_url,
    is_order_completed,
    paypal_client,
)
from entitlements.services.plan_provisioner import plan_provisioner
from entitlements.services.settings_service import settings_service
from entitlements.services.subscription_state import (
    EventKind,
    TransitionContext,
    subscription_state_machine,
)
from entitlements.services.webhook_reconciler import webhook_reconciler

logger = logging.getLogger(__name__)

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:8001").rstrip("/")

# Provider subscription statuses accepted at capture time
CAPTURABLE_SUBSCRIPTION_STATUSES = ("ACTIVE", "APPROVED")
ORDER_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


class CheckoutResult(BaseModel):
    account_id: str
    email: str
    transaction_id: str
    is_new_account: bool
    credentials_delivered: bool = True
    recovery_required: bool = False
    already_captured: bool = False


def _normalise_amount(amount: Any) -> str:
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if value <= 0:
        raise ValidationError("Amount must be greater than zero")
    return f"{value:.2f}"


def _validate_plan_type(plan_type: str) -> str:
    try:
        return PlanType(plan_type).value
    except ValueError:
        raise ValidationError(
            f"Invalid plan type: {plan_type}",
            allowed=[p.value for p in PlanType],
        )


def _payer_identity(payer: Dict[str, Any]) -> Dict[str, Optional[str]]:
    name = payer.get("name") or {}
    full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p) or None
    email = (payer.get("email_address") or "").strip().lower()
    if not email:
        raise ValidationError("Payer email missing from provider response")
    return {"email": email, "full_name": full_name, "payer_id": payer.get("payer_id")}


class CheckoutFlow:

    def _get_db(self):
        return database.get_db()

    # =========================================================================
    # One-time purchase
    # =========================================================================

    async def create_order(self, amount: Optional[Any] = None) -> Dict[str, Any]:
        settings = await settings_service.get()
        value = _normalise_amount(amount if amount is not None else settings.get("lifetime_price", 39.00))
        order = await paypal_client.create_order(
            amount=value,
            currency=settings.get("currency", "USD"),
            return_url=f"{BACKEND_URL}/api/payment/capture-order",
            cancel_url=f"{FRONTEND_URL}/?payment=cancelled",
        )
        link = approval_url(order)
        if not link:
            raise ProviderUnavailable("PayPal did not return an approval link")
        logger.info("ORDER_CREATED order_id=%s amount=%s", order.get("id"), value)
        return {"externalId": order["id"], "approvalUrl": link}

    async def capture_order(self, order_id: str, payer_id: Optional[str] = None) -> CheckoutResult:
        if not order_id:
            raise ValidationError("Missing order token")
        db = self._get_db()

        existing = await db.accounts.find_one({"paypal_order_id": order_id}, {"_id": 0})
        if existing:
            logger.info("ORDER_ALREADY_CAPTURED order_id=%s account_id=%s", order_id, existing["account_id"])
            return CheckoutResult(
                account_id=existing["account_id"],
                email=existing["email"],
                transaction_id=existing.get("paypal_transaction_id") or order_id,
                is_new_account=False,
                already_captured=True,
            )

        try:
            order = await paypal_client.capture_order(order_id)
        except PayPalAPIError as e:
            if e.issue != ORDER_ALREADY_CAPTURED:
                raise ValidationError("Payment could not be captured", order_id=order_id, issue=e.issue)
            # An earlier capture went through but its response was lost
            logger.info("ORDER_CAPTURE_RECOVERY order_id=%s", order_id)
            order = await paypal_client.get_order(order_id)

        if not is_order_completed(order):
            logger.warning("ORDER_NOT_COMPLETED order_id=%s status=%s", order_id, order.get("status"))
            raise ValidationError("payment_not_completed", order_id=order_id)

        payer = _payer_identity(order.get("payer") or {})
        capture = order["purchase_units"][0]["payments"]["captures"][0]
        transaction_id = capture.get("id") or order_id
        now = datetime.now(timezone.utc)
        payment_fields = {
            "paypal_order_id": order_id,
            "paypal_transaction_id": transaction_id,
            "paypal_payer_id": payer["payer_id"] or payer_id,
            "payment_status": PaymentStatus.COMPLETED.value,
            "paid_at": now,
        }

        account = await db.accounts.find_one({"email": payer["email"]}, {"_id": 0})
        if account is None:
            result = await self._create_lifetime_account(payer, payment_fields, transaction_id, now)
            if result is not None:
                return result
            account = await db.accounts.find_one({"email": payer["email"]}, {"_id": 0})

        await subscription_state_machine.apply(
            account["account_id"],
            EventKind.LIFETIME_CAPTURE,
            TransitionContext(now=now),
            extra=payment_fields,
        )
        await credit_ledger.allocate(account["account_id"], UNLIMITED)
        await audit_service.log(
            action=AuditAction.ACCOUNT_UPGRADED,
            description="Existing account upgraded to lifetime",
            account_id=account["account_id"],
            details={"order_id": order_id, "transaction_id": transaction_id},
        )
        return CheckoutResult(
            account_id=account["account_id"],
            email=account["email"],
            transaction_id=transaction_id,
            is_new_account=False,
        )

    async def _create_lifetime_account(
        self,
        payer: Dict[str, Optional[str]],
        payment_fields: Dict[str, Any],
        transaction_id: str,
        now: datetime,
    ) -> Optional[CheckoutResult]:
        """Insert a new lifetime account. None if another capture created the email first."""
        temp_password = generate_temp_password()
        account = Account(
            email=payer["email"],
            full_name=payer["full_name"],
            password_hash=hash_password(temp_password),
            must_change_password=True,
            plan=Plan.LIFETIME,
            subscription_status=SubscriptionStatus.ACTIVE,
            subscription_started_at=now,
            credits_remaining=UNLIMITED,
            credits_total=UNLIMITED,
            **payment_fields,
        )
        try:
            await self._get_db().accounts.insert_one(account.model_dump())
        except DuplicateKeyError:
            logger.info("ACCOUNT_CREATE_RACE email=%s - upgrading existing account", payer["email"])
            return None

        await audit_service.log(
            action=AuditAction.ACCOUNT_CREATED,
            description="Account created from lifetime purchase",
            account_id=account.account_id,
            details={"transaction_id": transaction_id},
        )
        delivered = await self._deliver_credentials(account, temp_password)
        return CheckoutResult(
            account_id=account.account_id,
            email=account.email,
            transaction_id=transaction_id,
            is_new_account=True,
            credentials_delivered=delivered,
            recovery_required=not delivered,
        )

    async def _deliver_credentials(self, account: Account, temp_password: str) -> bool:
        delivered = await notification_service.send_welcome_credentials(
            recipient=account.email,
            name=account.full_name,
            temp_password=temp_password,
            plan=account.plan,
        )
        if not delivered:
            await audit_service.log(
                action=AuditAction.WELCOME_EMAIL_FAILED,
                description="Welcome email not delivered; credential recovery required",
                account_id=account.account_id,
                severity=AuditSeverity.WARNING,
            )
        return delivered

    # =========================================================================
    # Subscription purchase
    # =========================================================================

    async def create_subscription(self, plan_type: str) -> Dict[str, Any]:
        plan_type = _validate_plan_type(plan_type)
        plan_id = await plan_provisioner.resolve_plan_id(plan_type)
        subscription = await paypal_client.create_subscription(
            plan_id=plan_id,
            return_url=f"{BACKEND_URL}/api/payment/capture-subscription?plan={plan_type}",
            cancel_url=f"{FRONTEND_URL}/?payment=cancelled",
        )
        link = approval_url(subscription)
        if not link:
            raise ProviderUnavailable("PayPal did not return an approval link")
        logger.info(
            "SUBSCRIPTION_CREATED subscription_id=%s plan_type=%s plan_id=%s",
            subscription.get("id"), plan_type, plan_id,
        )
        return {"externalId": subscription["id"], "approvalUrl": link}

    async def capture_subscription(self, subscription_id: str, plan_type: str) -> CheckoutResult:
        """Record the subscription on the account. Status stays as-is until activation arrives."""
        if not subscription_id:
            raise ValidationError("Missing subscription_id")
        plan_type = _validate_plan_type(plan_type)
        db = self._get_db()

        existing = await db.accounts.find_one({"external_subscription_id": subscription_id}, {"_id": 0})
        if existing:
            await webhook_reconciler.replay_unmatched(subscription_id)
            return CheckoutResult(
                account_id=existing["account_id"],
                email=existing["email"],
                transaction_id=subscription_id,
                is_new_account=False,
                already_captured=True,
            )

        try:
            details = await paypal_client.get_subscription(subscription_id)
        except PayPalAPIError as e:
            raise ValidationError("Subscription could not be verified", subscription_id=subscription_id, issue=e.issue)
        if details.get("status") not in CAPTURABLE_SUBSCRIPTION_STATUSES:
            logger.warning(
                "SUBSCRIPTION_NOT_ACTIVE subscription_id=%s status=%s", subscription_id, details.get("status"),
            )
            raise ValidationError("subscription_not_active", subscription_id=subscription_id)

        payer = _payer_identity(details.get("subscriber") or {})
        now = datetime.now(timezone.utc)

        account = await db.accounts.find_one({"email": payer["email"]}, {"_id": 0})
        result = None
        if account is None:
            result = await self._create_subscription_account(payer, subscription_id, plan_type, now)
            if result is None:
                account = await db.accounts.find_one({"email": payer["email"]}, {"_id": 0})

        if result is None:
            updated = await subscription_state_machine.apply(
                account["account_id"],
                EventKind.SUBSCRIPTION_CAPTURE,
                TransitionContext(now=now, subscription_id=subscription_id, plan=plan_type),
                extra={"paypal_payer_id": payer["payer_id"]},
            )
            if updated.get("plan") == Plan.LIFETIME.value:
                logger.warning(
                    "SUBSCRIPTION_ON_LIFETIME_ACCOUNT account_id=%s subscription_id=%s - plan kept as lifetime",
                    account["account_id"], subscription_id,
                )
            else:
                await credit_ledger.allocate_for_plan(account["account_id"], plan_type, started_at=now, now=now)
            await audit_service.log(
                action=AuditAction.SUBSCRIPTION_CAPTURED,
                description=f"Subscription {plan_type} recorded on existing account",
                account_id=account["account_id"],
                details={"subscription_id": subscription_id},
            )
            result = CheckoutResult(
                account_id=account["account_id"],
                email=account["email"],
                transaction_id=subscription_id,
                is_new_account=False,
            )

        # Activation may have arrived before this redirect
        await webhook_reconciler.replay_unmatched(subscription_id)
        return result

    async def _create_subscription_account(
        self,
        payer: Dict[str, Optional[str]],
        subscription_id: str,
        plan_type: str,
        now: datetime,
    ) -> Optional[CheckoutResult]:
        settings = await settings_service.get()
        credits = allocation_for_plan(plan_type, settings)
        temp_password = generate_temp_password()
        account = Account(
            email=payer["email"],
            full_name=payer["full_name"],
            password_hash=hash_password(temp_password),
            must_change_password=True,
            plan=plan_type,
            subscription_status=SubscriptionStatus.NONE,
            external_subscription_id=subscription_id,
            subscription_started_at=now,
            subscription_ends_at=add_billing_period(now, plan_type),
            paypal_payer_id=payer["payer_id"],
            credits_remaining=credits,
            credits_total=credits,
            credits_reset_date=next_reset_date(now, plan_type, now),
        )
        try:
            await self._get_db().accounts.insert_one(account.model_dump())
        except DuplicateKeyError:
            logger.info("ACCOUNT_CREATE_RACE email=%s - recording subscription on existing account", payer["email"])
            return None

        await audit_service.log(
            action=AuditAction.ACCOUNT_CREATED,
            description=f"Account created from {plan_type} subscription",
            account_id=account.account_id,
            details={"subscription_id": subscription_id, "credits": credits},
        )
        delivered = await self._deliver_credentials(account, temp_password)
        return CheckoutResult(
            account_id=account.account_id,
            email=account.email,
            transaction_id=subscription_id,
            is_new_account=True,
            credentials_delivered=delivered,
            recovery_required=not delivered,
        )

    # =========================================================================
    # Credential recovery
    # =========================================================================

    async def resend_credentials(self, transaction_id: str, new_email: Optional[str] = None) -> Dict[str, Any]:
        """Issue a fresh temporary credential for an account whose welcome email never arrived.

        Only accounts still on their temporary credential qualify.
        """
        db = self._get_db()
        account = await db.accounts.find_one(
            {"$or": [
                {"paypal_transaction_id": transaction_id},
                {"paypal_order_id": transaction_id},
                {"external_subscription_id": transaction_id},
            ]},
            {"_id": 0},
        )
        if not account:
            raise NotFound("No purchase found for that transaction", transaction_id=transaction_id)
        if not account.get("must_change_password"):
            raise ValidationError("Credentials were already set; use password reset instead")

        updates: Dict[str, Any] = {}
        email = account["email"]
        if new_email and new_email.strip().lower() != email:
            email = new_email.strip().lower()
            if await db.accounts.find_one({"email": email}, {"_id": 0, "account_id": 1}):
                raise EmailInUse("That email is already registered to another account")
            updates["email"] = email

        temp_password = generate_temp_password()
        updates["password_hash"] = hash_password(temp_password)
        updates["updated_at"] = datetime.now(timezone.utc)
        try:
            result = await db.accounts.update_one(
                {"account_id": account["account_id"], "must_change_password": True},
                {"$set": updates},
            )
        except DuplicateKeyError:
            raise EmailInUse("That email is already registered to another account")
        if result.matched_count == 0:
            raise ValidationError("Credentials were already set; use password reset instead")

        recipient = Account(**{**account, "email": email})
        delivered = await self._deliver_credentials(recipient, temp_password)
        if not delivered and "email" in updates:
            # Keep the address the buyer can already be reached at
            await db.accounts.update_one(
                {"account_id": account["account_id"], "email": email, "must_change_password": True},
                {"$set": {"email": account["email"], "updated_at": datetime.now(timezone.utc)}},
            )
            logger.warning("EMAIL_CHANGE_REVERTED account_id=%s", account["account_id"])
            email = account["email"]
        await audit_service.log(
            action=AuditAction.CREDENTIALS_RESENT,
            description="Temporary credentials re-issued",
            account_id=account["account_id"],
            details={"email_changed": delivered and "email" in updates, "delivered": delivered},
        )
        return {"email": email, "delivered": delivered}


checkout_flow = CheckoutFlow()

"""Account Models

An account owns exactly one subscription record and one credit record,
both embedded on the account document so every status or credit write is a
single-document conditional update.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import calendar
import uuid


# Sentinel for unlimited credits (lifetime plan)
UNLIMITED = -1


class Plan(str, Enum):
    NONE = "none"
    STARTER_MONTHLY = "starter_monthly"
    STARTER_YEARLY = "starter_yearly"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"
    LIFETIME = "lifetime"


class PlanType(str, Enum):
    """Recurring plan types; each maps to one provider billing plan."""
    STARTER_MONTHLY = "starter_monthly"
    STARTER_YEARLY = "starter_yearly"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    NONE = "none"
    COMPLETED = "completed"
    FAILED = "failed"


class Account(BaseModel):
    """Account document stored in the accounts collection."""
    account_id: str = Field(default_factory=lambda: f"ACC-{uuid.uuid4().hex[:12].upper()}")
    email: str
    full_name: Optional[str] = None

    # Credential (temporary until the owner changes it)
    password_hash: Optional[str] = None
    must_change_password: bool = False
    is_admin: bool = False

    # Subscription record
    plan: Plan = Plan.NONE
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    external_subscription_id: Optional[str] = None
    subscription_started_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    provider_status: Optional[str] = None  # Last provider-reported status, kept while paused
    last_event_at: Optional[datetime] = None
    state_version: int = 0

    # Payment references
    paypal_order_id: Optional[str] = None
    paypal_transaction_id: Optional[str] = None
    paypal_payer_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.NONE
    paid_at: Optional[datetime] = None

    # Credit record
    credits_remaining: int = 0
    credits_total: int = 0
    credits_reset_date: Optional[datetime] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore", "use_enum_values": True}


class CreditStatus(BaseModel):
    remaining: int
    total: int
    reset_date: Optional[datetime] = None
    percentage: float
    is_unlimited: bool


class Entitlement(BaseModel):
    """Effective entitlement read by the rest of the application."""
    account_id: str
    plan: str
    status: str
    has_access: bool
    external_subscription_id: Optional[str] = None
    ends_at: Optional[datetime] = None
    credits: CreditStatus


def is_recurring(plan: Optional[str]) -> bool:
    return plan in {p.value for p in PlanType}


def is_yearly(plan: Optional[str]) -> bool:
    return bool(plan) and plan.endswith("_yearly")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the store as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_period(value: datetime, plan: Optional[str], periods: int = 1) -> datetime:
    """Advance by whole billing periods: years for yearly plans, months otherwise."""
    return add_months(value, (12 if is_yearly(plan) else 1) * periods)

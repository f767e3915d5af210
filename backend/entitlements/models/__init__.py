"""Entitlement Data Models"""

from .account import (
    Account,
    CreditStatus,
    Entitlement,
    PaymentStatus,
    Plan,
    PlanType,
    SubscriptionStatus,
    UNLIMITED,
)
from .settings import (
    SiteSettings,
    SettingsUpdate,
    PricingUpdate,
    PayPalConfigUpdate,
    PayPalMode,
    SETTINGS_ID,
)
from .events import (
    BillingEvent,
    BillingEventStatus,
    WebhookEvent,
)
from .audit import (
    AuditLog,
    AuditAction,
    AuditSeverity,
)

__all__ = [
    "Account",
    "CreditStatus",
    "Entitlement",
    "PaymentStatus",
    "Plan",
    "PlanType",
    "SubscriptionStatus",
    "UNLIMITED",
    "SiteSettings",
    "SettingsUpdate",
    "PricingUpdate",
    "PayPalConfigUpdate",
    "PayPalMode",
    "SETTINGS_ID",
    "BillingEvent",
    "BillingEventStatus",
    "WebhookEvent",
    "AuditLog",
    "AuditAction",
    "AuditSeverity",
]

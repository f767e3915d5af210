"""Audit Log Models"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class AuditAction(str, Enum):
    # Checkout
    ORDER_CAPTURED = "ORDER_CAPTURED"
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ACCOUNT_UPGRADED = "ACCOUNT_UPGRADED"
    SUBSCRIPTION_CAPTURED = "SUBSCRIPTION_CAPTURED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    CREDENTIALS_RESENT = "CREDENTIALS_RESENT"
    WELCOME_EMAIL_FAILED = "WELCOME_EMAIL_FAILED"

    # Reconciliation
    SUBSCRIPTION_TRANSITION = "SUBSCRIPTION_TRANSITION"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"

    # Credits
    CREDITS_ALLOCATED = "CREDITS_ALLOCATED"
    CREDITS_RESET = "CREDITS_RESET"

    # Admin
    ACCOUNT_PAUSED = "ACCOUNT_PAUSED"
    ACCOUNT_RESUMED = "ACCOUNT_RESUMED"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    PRICING_UPDATED = "PRICING_UPDATED"
    PAYPAL_CONFIG_UPDATED = "PAYPAL_CONFIG_UPDATED"

    # Provisioning
    PLAN_PROVISIONED = "PLAN_PROVISIONED"
    PLAN_PROVISIONING_FAILED = "PLAN_PROVISIONING_FAILED"


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditLog(BaseModel):
    log_id: str = Field(default_factory=lambda: f"AUD-{uuid.uuid4().hex[:12].upper()}")
    action: AuditAction
    severity: AuditSeverity = AuditSeverity.INFO
    description: str
    account_id: Optional[str] = None
    actor_id: Optional[str] = None  # None for system / provider initiated
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore", "use_enum_values": True}

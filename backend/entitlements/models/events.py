"""Billing event models.

Inbound provider notifications are applied at-least-once; the
billing_events collection is the idempotency ledger keyed by event_key.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum


class BillingEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    UNMATCHED = "UNMATCHED"  # No account holds the subject yet; replayed on capture
    FAILED = "FAILED"        # Retried on redelivery


# Redelivery of an event in one of these states is a no-op
TERMINAL_EVENT_STATUSES = (
    BillingEventStatus.PROCESSED.value,
    BillingEventStatus.UNMATCHED.value,
)


class WebhookEvent(BaseModel):
    """Inbound PayPal notification body (only the fields reconciliation reads)."""
    id: Optional[str] = None
    event_type: str
    create_time: Optional[datetime] = None
    resource: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


class BillingEvent(BaseModel):
    event_key: str
    event_type: str
    subject_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    status: BillingEventStatus = BillingEventStatus.PROCESSING
    matched_accounts: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    claimed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

    model_config = {"extra": "ignore", "use_enum_values": True}

"""Site Settings Models

A single settings document (settings_id="global") holds the plan mapping,
pricing and credit allotments, the countdown anchor and PayPal credentials.
It is created lazily with an atomic upsert and every admin write bumps
``version`` so concurrent edits can be detected.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime
from enum import Enum


SETTINGS_ID = "global"


class PayPalMode(str, Enum):
    SANDBOX = "sandbox"
    LIVE = "live"


class SiteSettings(BaseModel):
    """Defaults applied when the settings document is first created."""
    settings_id: str = SETTINGS_ID

    # Plan mapping: plan type -> provider plan id
    plan_ids: Dict[str, str] = Field(default_factory=dict)
    paypal_product_id: Optional[str] = None

    # Pricing (USD) and credit allotments
    starter_monthly_price: float = 10.00
    starter_yearly_price: float = 96.00
    pro_monthly_price: float = 19.00
    pro_yearly_price: float = 180.00
    lifetime_price: float = 39.00
    starter_credits: int = 100
    pro_credits: int = 500
    currency: str = "USD"

    # Countdown anchor
    timer_enabled: bool = True
    timer_duration_days: int = 7
    last_reset_at: Optional[datetime] = None

    # PayPal credentials (empty means fall back to environment)
    paypal_mode: PayPalMode = PayPalMode.SANDBOX
    paypal_sandbox_client_id: str = ""
    paypal_sandbox_secret: str = ""
    paypal_live_client_id: str = ""
    paypal_live_secret: str = ""

    version: int = 0

    model_config = {"extra": "ignore", "use_enum_values": True}


# Settings field holding each recurring plan type's price
PLAN_PRICE_FIELDS = {
    "starter_monthly": "starter_monthly_price",
    "starter_yearly": "starter_yearly_price",
    "pro_monthly": "pro_monthly_price",
    "pro_yearly": "pro_yearly_price",
}

PRICE_FIELDS = tuple(PLAN_PRICE_FIELDS.values()) + ("lifetime_price",)
CREDIT_FIELDS = ("starter_credits", "pro_credits")

PAYPAL_SECRET_FIELDS = (
    "paypal_sandbox_client_id",
    "paypal_sandbox_secret",
    "paypal_live_client_id",
    "paypal_live_secret",
)


class SettingsUpdate(BaseModel):
    """Admin update of the countdown anchor and plan mapping."""
    timer_enabled: Optional[bool] = None
    timer_duration_days: Optional[int] = Field(default=None, ge=1, le=365)
    reset_timer: bool = False
    plan_ids: Optional[Dict[str, str]] = None
    expected_version: Optional[int] = None


class PricingUpdate(BaseModel):
    starter_monthly_price: Optional[float] = None
    starter_yearly_price: Optional[float] = None
    pro_monthly_price: Optional[float] = None
    pro_yearly_price: Optional[float] = None
    lifetime_price: Optional[float] = None
    starter_credits: Optional[int] = None
    pro_credits: Optional[int] = None
    expected_version: Optional[int] = None


class PayPalConfigUpdate(BaseModel):
    paypal_mode: Optional[PayPalMode] = None
    paypal_sandbox_client_id: Optional[str] = None
    paypal_sandbox_secret: Optional[str] = None
    paypal_live_client_id: Optional[str] = None
    paypal_live_secret: Optional[str] = None

    model_config = {"use_enum_values": True}

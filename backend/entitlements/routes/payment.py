"""Payment Routes

Endpoints:
- POST /api/payment/create-order - Start a one-time (lifetime) purchase
- GET|POST /api/payment/capture-order - PayPal return URL for orders
- POST /api/payment/create-subscription - Start a recurring plan purchase
- GET /api/payment/capture-subscription - PayPal return URL for subscriptions
- POST /api/payment/cancel-subscription - Cancel the caller's subscription
- POST /api/payment/resend-credentials - Re-issue temporary credentials

Capture endpoints are browser redirects from PayPal, so they always
answer with a redirect to the frontend carrying the outcome.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from urllib.parse import urlencode
import logging

from middleware import require_auth
from entitlements.errors import EntitlementError, ValidationError
from entitlements.services.checkout import FRONTEND_URL, CheckoutResult, checkout_flow
from entitlements.services.subscription_state import subscription_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["Payment"])


class CreateOrderRequest(BaseModel):
    amount: Optional[float] = None


class CreateSubscriptionRequest(BaseModel):
    plan_type: str = Field(alias="planType")

    model_config = {"populate_by_name": True}


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class ResendCredentialsRequest(BaseModel):
    transaction_id: str = Field(alias="transactionId")
    new_email: Optional[EmailStr] = Field(default=None, alias="newEmail")

    model_config = {"populate_by_name": True}


def _redirect(outcome: str, **params) -> RedirectResponse:
    query = urlencode({"payment": outcome, **{k: v for k, v in params.items() if v is not None}})
    return RedirectResponse(url=f"{FRONTEND_URL}/?{query}", status_code=302)


def _success_redirect(result: CheckoutResult) -> RedirectResponse:
    params = {"txn": result.transaction_id, "email": result.email}
    if result.is_new_account:
        params["new_account"] = "true"
    if result.recovery_required:
        params["recovery"] = "resend_credentials"
    return _redirect("success", **params)


@router.post("/create-order")
async def create_order(body: Optional[CreateOrderRequest] = None):
    order = await checkout_flow.create_order(body.amount if body else None)
    return {"success": True, **order}


@router.api_route("/capture-order", methods=["GET", "POST"])
async def capture_order(
    token: Optional[str] = Query(None),
    payer_id: Optional[str] = Query(None, alias="PayerID"),
):
    """PayPal redirects here after the buyer approves the order."""
    if not token:
        return _redirect("error", reason="missing_token")
    try:
        result = await checkout_flow.capture_order(token, payer_id)
    except ValidationError as e:
        logger.warning(f"Order capture rejected for {token}: {e.message}")
        return _redirect("failed", reason=e.message, order=token)
    except EntitlementError as e:
        logger.error(f"Order capture error for {token}: {e.message}")
        return _redirect("error", reason=e.error_code.lower(), order=token)
    except Exception as e:
        logger.error(f"Order capture crashed for {token}: {e}", exc_info=True)
        return _redirect("error", reason="capture_failed", order=token)
    return _success_redirect(result)


@router.post("/create-subscription")
async def create_subscription(body: CreateSubscriptionRequest):
    subscription = await checkout_flow.create_subscription(body.plan_type)
    return {"success": True, **subscription}


@router.get("/capture-subscription")
async def capture_subscription(
    subscription_id: Optional[str] = Query(None),
    plan: Optional[str] = Query(None),
):
    """PayPal redirects here after the buyer approves the subscription."""
    if not subscription_id or not plan:
        return _redirect("error", reason="missing_subscription")
    try:
        result = await checkout_flow.capture_subscription(subscription_id, plan)
    except ValidationError as e:
        logger.warning(f"Subscription capture rejected for {subscription_id}: {e.message}")
        return _redirect("failed", reason=e.message, subscription_id=subscription_id)
    except EntitlementError as e:
        logger.error(f"Subscription capture error for {subscription_id}: {e.message}")
        return _redirect("error", reason=e.error_code.lower(), subscription_id=subscription_id)
    except Exception as e:
        logger.error(f"Subscription capture crashed for {subscription_id}: {e}", exc_info=True)
        return _redirect("error", reason="capture_failed", subscription_id=subscription_id)
    return _success_redirect(result)


@router.post("/cancel-subscription")
async def cancel_subscription(
    body: Optional[CancelSubscriptionRequest] = None,
    user: dict = Depends(require_auth),
):
    updated = await subscription_state_machine.cancel_subscription(
        user["account_id"], reason=body.reason if body else None,
    )
    return {
        "success": True,
        "status": updated.get("subscription_status"),
        "ends_at": updated.get("subscription_ends_at"),
    }


@router.post("/resend-credentials")
async def resend_credentials(body: ResendCredentialsRequest):
    result = await checkout_flow.resend_credentials(
        body.transaction_id,
        new_email=str(body.new_email) if body.new_email else None,
    )
    return {"success": result["delivered"], **result}

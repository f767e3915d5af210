"""PayPal Webhook Handler

POST /api/payment/webhook

Every well-formed, verified notification is acknowledged with 200, whether
it was applied, ignored, held for replay or failed internally. Failures are
recorded in the billing_events ledger and retried on redelivery; returning
an error would only make PayPal retry an event we already hold.
"""

from fastapi import APIRouter, Request, HTTPException
import json
import logging
import os

from entitlements.errors import ProviderUnavailable
from entitlements.services.paypal_client import PayPalAPIError, paypal_client
from entitlements.services.webhook_reconciler import webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payment", tags=["Webhooks"])


@router.post("/webhook")
async def handle_paypal_webhook(request: Request):
    payload = await request.body()
    try:
        event = json.loads(payload)
    except ValueError:
        logger.error("WEBHOOK_INVALID_PAYLOAD")
        raise HTTPException(status_code=400, detail="Invalid payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    webhook_id = os.getenv("PAYPAL_WEBHOOK_ID")
    if webhook_id:
        try:
            verified = await paypal_client.verify_webhook_signature(dict(request.headers), event, webhook_id)
        except ProviderUnavailable:
            # Not acknowledged: PayPal redelivers once verification is reachable
            logger.error("WEBHOOK_VERIFY_UNAVAILABLE event_id=%s", event.get("id"))
            raise HTTPException(status_code=503, detail="Signature verification unavailable")
        except PayPalAPIError as e:
            logger.error("WEBHOOK_VERIFY_REJECTED event_id=%s error=%s", event.get("id"), e)
            verified = False
        if not verified:
            logger.error("WEBHOOK_INVALID_SIGNATURE event_id=%s", event.get("id"))
            raise HTTPException(status_code=400, detail="Invalid signature")
    else:
        logger.warning("PAYPAL_WEBHOOK_ID not set - webhook signature not verified")

    try:
        result = await webhook_reconciler.handle(event)
    except Exception as e:
        # Ledger unreachable
        logger.error(f"Webhook handler error for {event.get('id')}: {e}", exc_info=True)
        result = {"status": "error"}

    return {"success": True, "received": True, "status": result.get("status")}

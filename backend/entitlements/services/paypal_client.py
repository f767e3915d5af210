"""
PayPal REST client (Orders v2, Billing Plans / Subscriptions v1, Webhooks).

Every call goes through httpx with a bounded timeout. Timeouts, transport
errors and 5xx responses raise ProviderUnavailable so callers can retry the
outer operation; 4xx responses raise PayPalAPIError.

Credentials come from the site settings document first and the
PAYPAL_MODE / PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET environment second,
cached for 5 minutes.
"""
import os
import time
import logging
from typing import Optional, Dict, Any

import httpx

from entitlements.errors import ProviderUnavailable, ValidationError
from entitlements.services.settings_service import settings_service

logger = logging.getLogger(__name__)

PAYPAL_API_BASE = {
    "live": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}
PAYPAL_TIMEOUT_SECONDS = float(os.getenv("PAYPAL_TIMEOUT_SECONDS", "15"))
CREDENTIALS_TTL_SECONDS = 300
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class PayPalAPIError(Exception):
    """PayPal rejected the request (4xx)."""

    def __init__(self, status_code: int, body: Any, path: str):
        self.status_code = status_code
        self.body = body
        self.path = path
        issue = None
        if isinstance(body, dict):
            details = body.get("details") or []
            issue = (details[0].get("issue") if details else None) or body.get("name")
        self.issue = issue
        super().__init__(f"PayPal API error {status_code} on {path}: {issue or body}")


def approval_url(resource: Dict[str, Any]) -> Optional[str]:
    """Return the buyer approval link from an order or subscription resource."""
    for link in resource.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


def is_order_completed(order: Dict[str, Any]) -> bool:
    """An order counts as paid only if the order and its first capture are COMPLETED."""
    if order.get("status") != "COMPLETED":
        return False
    units = order.get("purchase_units") or []
    captures = ((units[0].get("payments") or {}).get("captures") or []) if units else []
    return bool(captures) and captures[0].get("status") == "COMPLETED"


class PayPalClient:
    """Async PayPal API client with credentials and access-token caching."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport
        self._credentials: Optional[Dict[str, str]] = None
        self._credentials_loaded_at = 0.0
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def clear_credentials_cache(self):
        self._credentials = None
        self._credentials_loaded_at = 0.0
        self._token = None
        self._token_expires_at = 0.0
        logger.info("PayPal credentials cache cleared")

    async def get_credentials(self) -> Dict[str, str]:
        if self._credentials and time.monotonic() - self._credentials_loaded_at < CREDENTIALS_TTL_SECONDS:
            return self._credentials

        settings = await settings_service.get()
        mode = settings.get("paypal_mode") or os.getenv("PAYPAL_MODE", "sandbox")
        client_id = settings.get(f"paypal_{mode}_client_id") or ""
        secret = settings.get(f"paypal_{mode}_secret") or ""
        source = "database"
        if not client_id or not secret:
            mode = os.getenv("PAYPAL_MODE", mode)
            client_id = os.getenv("PAYPAL_CLIENT_ID", "")
            secret = os.getenv("PAYPAL_CLIENT_SECRET", "")
            source = "environment"
        if not client_id or not secret:
            raise ProviderUnavailable("PayPal credentials are not configured")
        if mode not in PAYPAL_API_BASE:
            raise ValidationError(f"Unknown PayPal mode: {mode}")

        self._credentials = {"mode": mode, "client_id": client_id, "secret": secret}
        self._credentials_loaded_at = time.monotonic()
        self._token = None
        logger.info("PayPal credentials loaded mode=%s source=%s", mode, source)
        return self._credentials

    def _http(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=PAYPAL_TIMEOUT_SECONDS, transport=self._transport)

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("PAYPAL_TIMEOUT method=%s path=%s", method, path)
            raise ProviderUnavailable(f"PayPal request timed out: {path}") from e
        except httpx.TransportError as e:
            logger.error("PAYPAL_TRANSPORT_ERROR method=%s path=%s error=%s", method, path, e)
            raise ProviderUnavailable(f"PayPal unreachable: {e}") from e

        if response.status_code >= 500:
            logger.error("PAYPAL_SERVER_ERROR method=%s path=%s status=%s", method, path, response.status_code)
            raise ProviderUnavailable(f"PayPal returned {response.status_code} for {path}")
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            logger.warning("PAYPAL_REJECTED method=%s path=%s status=%s", method, path, response.status_code)
            raise PayPalAPIError(response.status_code, body, path)
        return response

    async def _access_token(self, client: httpx.AsyncClient, credentials: Dict[str, str]) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        response = await self._send(
            client,
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(credentials["client_id"], credentials["secret"]),
        )
        data = response.json()
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 300))
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return self._token

    async def request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        credentials = await self.get_credentials()
        async with self._http(PAYPAL_API_BASE[credentials["mode"]]) as client:
            token = await self._access_token(client, credentials)
            response = await self._send(
                client,
                method,
                path,
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                    "Prefer": "return=representation",
                },
            )
        if not response.content:
            return {}
        return response.json()

    # =========================================================================
    # Orders v2
    # =========================================================================

    async def create_order(self, amount: str, currency: str, return_url: str, cancel_url: str) -> Dict[str, Any]:
        return await self.request("POST", "/v2/checkout/orders", json={
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency, "value": amount},
                "description": "Lifetime access",
            }],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        })

    async def capture_order(self, order_id: str) -> Dict[str, Any]:
        return await self.request("POST", f"/v2/checkout/orders/{order_id}/capture")

    async def get_order(self, order_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/v2/checkout/orders/{order_id}")

    # =========================================================================
    # Catalog / Billing plans / Subscriptions v1
    # =========================================================================

    async def create_product(self, name: str, description: str) -> Dict[str, Any]:
        return await self.request("POST", "/v1/catalogs/products", json={
            "name": name,
            "description": description,
            "type": "SERVICE",
            "category": "SOFTWARE",
        })

    async def create_plan(
        self,
        product_id: str,
        name: str,
        price: float,
        currency: str,
        interval_unit: str,
    ) -> Dict[str, Any]:
        return await self.request("POST", "/v1/billing/plans", json={
            "product_id": product_id,
            "name": name,
            "status": "ACTIVE",
            "billing_cycles": [{
                "frequency": {"interval_unit": interval_unit, "interval_count": 1},
                "tenure_type": "REGULAR",
                "sequence": 1,
                "total_cycles": 0,
                "pricing_scheme": {
                    "fixed_price": {"value": f"{price:.2f}", "currency_code": currency},
                },
            }],
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "payment_failure_threshold": 3,
            },
        })

    async def create_subscription(self, plan_id: str, return_url: str, cancel_url: str) -> Dict[str, Any]:
        return await self.request("POST", "/v1/billing/subscriptions", json={
            "plan_id": plan_id,
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "user_action": "SUBSCRIBE_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        })

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/v1/billing/subscriptions/{subscription_id}")

    async def cancel_subscription(self, subscription_id: str, reason: str) -> None:
        await self.request("POST", f"/v1/billing/subscriptions/{subscription_id}/cancel", json={"reason": reason})

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def verify_webhook_signature(self, headers: Dict[str, str], event: Dict[str, Any], webhook_id: str) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        result = await self.request("POST", "/v1/notifications/verify-webhook-signature", json={
            "auth_algo": lowered.get("paypal-auth-algo"),
            "cert_url": lowered.get("paypal-cert-url"),
            "transmission_id": lowered.get("paypal-transmission-id"),
            "transmission_sig": lowered.get("paypal-transmission-sig"),
            "transmission_time": lowered.get("paypal-transmission-time"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        })
        return result.get("verification_status") == "SUCCESS"


# Singleton instance
paypal_client = PayPalClient()

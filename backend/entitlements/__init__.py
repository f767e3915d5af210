"""
Entitlements - Billing Reconciliation Engine
============================================

Keeps an account's access rights (plan, subscription status, usage credits)
consistent with PayPal as the external recurring-billing provider.

Writers into subscription state:
- Checkout flow (order / subscription capture redirects)
- Webhook reconciler (asynchronous provider notifications)
- Admin overrides (pause / resume)

Every status or credit write is a conditional, single-document update.
"""

__version__ = "1.0.0"

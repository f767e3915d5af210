"""
Webhook reconciliation.

- Same event delivered twice applies once.
- A FAILED event is retried on redelivery.
- Events for a subscription no account holds yet are held and replayed.
- Unhandled event types are acknowledged without touching state.
"""
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from entitlements.models.account import Account
from entitlements.models.events import BillingEventStatus
from entitlements.services import webhook_reconciler as reconciler_module
from entitlements.services.subscription_state import ProviderTimestampOrder
from entitlements.services.webhook_reconciler import STALE_PROCESSING_SECONDS, WebhookReconciler, event_key_for

pytestmark = pytest.mark.asyncio

SUB_ID = "I-0LN988D3JACS"


def _event(event_type, event_id, resource_id=SUB_ID, create_time="2025-05-10T10:00:00Z", **resource):
    return {
        "id": event_id,
        "event_type": event_type,
        "create_time": create_time,
        "resource": {"id": resource_id, **resource},
    }


async def _seed(db, **fields):
    account = Account(email=fields.pop("email", "hook@example.com"), **fields)
    await db.accounts.insert_one(account.model_dump())
    return account.account_id


async def _account(db, account_id):
    return await db.accounts.find_one({"account_id": account_id}, {"_id": 0})


async def _ledger(db, event_key):
    return await db.billing_events.find_one({"event_key": event_key}, {"_id": 0})


async def test_event_key_prefers_provider_id():
    assert event_key_for({"id": "WH-1", "event_type": "X.Y"}) == "WH-1"


async def test_event_key_without_id_depends_on_timestamps():
    first = {"event_type": "X.Y", "create_time": "2025-05-10T10:00:00Z", "resource": {"id": "R-1"}}
    later = {"event_type": "X.Y", "create_time": "2025-05-11T10:00:00Z", "resource": {"id": "R-1"}}
    bare = {"event_type": "X.Y", "resource": {"id": "R-1"}}

    assert event_key_for(first) == event_key_for(dict(first))
    assert event_key_for(first) != event_key_for(later)
    assert event_key_for(bare) != event_key_for(bare)


async def test_activation_applies_once(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()
    event = _event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-ACT-1")

    first = await reconciler.handle(event)
    second = await reconciler.handle(event)

    assert first["status"] == "processed"
    assert first["matched_accounts"] == [account_id]
    assert second["status"] == "duplicate"
    doc = await _account(fake_db, account_id)
    assert doc["subscription_status"] == "active"
    assert doc["state_version"] == 1


async def test_payment_completed_matches_by_billing_agreement(fake_db):
    account_id = await _seed(fake_db, plan="pro_yearly", subscription_status="active", external_subscription_id=SUB_ID)
    event = _event(
        "PAYMENT.SALE.COMPLETED", "WH-SALE-1",
        resource_id="SALE-77", billing_agreement_id=SUB_ID,
        create_time="2025-05-10T10:00:00Z",
    )
    result = await WebhookReconciler().handle(event)
    assert result["status"] == "processed"
    doc = await _account(fake_db, account_id)
    assert doc["subscription_ends_at"] == datetime(2026, 5, 10, 10, 0, tzinfo=timezone.utc)


async def test_unhandled_event_type_is_ignored(fake_db):
    result = await WebhookReconciler().handle(_event("CHECKOUT.ORDER.APPROVED", "WH-IGN-1"))
    assert result["status"] == "ignored"
    assert await fake_db.billing_events.count_documents({}) == 0


async def test_event_without_subject_is_ignored(fake_db):
    event = _event("PAYMENT.SALE.COMPLETED", "WH-SALE-2", resource_id="SALE-1")
    result = await WebhookReconciler().handle(event)
    assert result["status"] == "ignored"


async def test_unmatched_event_is_held(fake_db):
    result = await WebhookReconciler().handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-EARLY-1"))
    assert result["status"] == "unmatched"
    record = await _ledger(fake_db, "WH-EARLY-1")
    assert record["status"] == BillingEventStatus.UNMATCHED.value
    assert "subscriber" not in record["payload"]["resource"]

    again = await WebhookReconciler().handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-EARLY-1"))
    assert again["status"] == "duplicate"


async def test_replay_applies_held_events_in_arrival_order(fake_db):
    reconciler = WebhookReconciler()
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-R-1"))
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.SUSPENDED", "WH-R-2"))
    account_id = await _seed(fake_db, plan="starter_monthly", external_subscription_id=SUB_ID)

    applied = await reconciler.replay_unmatched(SUB_ID)

    assert applied == 2
    assert (await _account(fake_db, account_id))["subscription_status"] == "suspended"
    assert (await _ledger(fake_db, "WH-R-1"))["status"] == BillingEventStatus.PROCESSED.value
    assert await reconciler.replay_unmatched(SUB_ID) == 0


async def test_failed_event_is_retried_on_redelivery(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()
    event = _event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-FAIL-1")

    machine = reconciler_module.subscription_state_machine
    with patch.object(machine, "apply_provider_event", AsyncMock(side_effect=RuntimeError("write timeout"))):
        failed = await reconciler.handle(event)
    assert failed["status"] == "failed"
    record = await _ledger(fake_db, "WH-FAIL-1")
    assert record["status"] == BillingEventStatus.FAILED.value
    assert record["error"] == "write timeout"
    assert await fake_db.audit_logs.count_documents({"action": "WEBHOOK_FAILED"}) == 1

    retried = await reconciler.handle(event)
    assert retried["status"] == "processed"
    assert (await _account(fake_db, account_id))["subscription_status"] == "active"


async def test_in_flight_event_is_not_reclaimed_until_stale(fake_db):
    await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()
    now = datetime.now(timezone.utc)
    await fake_db.billing_events.insert_one({
        "event_key": "WH-STUCK-1",
        "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
        "subject_id": SUB_ID,
        "status": BillingEventStatus.PROCESSING.value,
        "received_at": now,
        "claimed_at": now,
    })
    event = _event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-STUCK-1")

    assert (await reconciler.handle(event))["status"] == "duplicate"

    await fake_db.billing_events.update_one(
        {"event_key": "WH-STUCK-1"},
        {"$set": {"claimed_at": now - timedelta(seconds=STALE_PROCESSING_SECONDS + 1)}},
    )
    assert (await reconciler.handle(event))["status"] == "processed"


async def test_timestamp_ordering_ignores_out_of_order_delivery(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler(ordering=ProviderTimestampOrder())

    await reconciler.handle(_event("BILLING.SUBSCRIPTION.CANCELLED", "WH-O-2", create_time="2025-05-10T12:00:00Z"))
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-O-1", create_time="2025-05-10T11:00:00Z"))

    assert (await _account(fake_db, account_id))["subscription_status"] == "cancelled"


async def test_arrival_ordering_applies_last_delivery(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()

    await reconciler.handle(_event("BILLING.SUBSCRIPTION.CANCELLED", "WH-A-2", create_time="2025-05-10T12:00:00Z"))
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-A-1", create_time="2025-05-10T11:00:00Z"))

    assert (await _account(fake_db, account_id))["subscription_status"] == "active"


async def test_activated_then_suspended_ends_suspended(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()

    await reconciler.handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-AS-1", create_time="2025-05-10T11:00:00Z"))
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.SUSPENDED", "WH-AS-2", create_time="2025-05-10T12:00:00Z"))

    doc = await _account(fake_db, account_id)
    assert doc["subscription_status"] == "suspended"
    assert doc["payment_status"] == "failed"


async def test_reactivation_without_event_ids_is_applied(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()

    def bare(event_type):
        return {"event_type": event_type, "resource": {"id": SUB_ID}}

    results = [
        await reconciler.handle(bare("BILLING.SUBSCRIPTION.ACTIVATED")),
        await reconciler.handle(bare("BILLING.SUBSCRIPTION.SUSPENDED")),
        await reconciler.handle(bare("BILLING.SUBSCRIPTION.ACTIVATED")),
    ]

    assert [r["status"] for r in results] == ["processed", "processed", "processed"]
    doc = await _account(fake_db, account_id)
    assert doc["subscription_status"] == "active"
    assert doc["payment_status"] == "completed"


async def test_same_transition_recurring_with_distinct_ids(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", external_subscription_id=SUB_ID)
    reconciler = WebhookReconciler()

    await reconciler.handle(_event("BILLING.SUBSCRIPTION.SUSPENDED", "WH-S-1", create_time="2025-05-10T10:00:00Z"))
    await reconciler.handle(_event("BILLING.SUBSCRIPTION.ACTIVATED", "WH-S-2", create_time="2025-05-11T10:00:00Z"))
    second = await reconciler.handle(
        _event("BILLING.SUBSCRIPTION.SUSPENDED", "WH-S-3", create_time="2025-05-12T10:00:00Z")
    )

    assert second["status"] == "processed"
    assert (await _account(fake_db, account_id))["subscription_status"] == "suspended"


async def test_sale_completed_marks_payment_completed(fake_db):
    account_id = await _seed(fake_db, plan="pro_monthly", subscription_status="suspended",
                             payment_status="failed", external_subscription_id=SUB_ID)
    event = _event("PAYMENT.SALE.COMPLETED", "WH-SALE-3", resource_id="SALE-78", billing_agreement_id=SUB_ID)

    await WebhookReconciler().handle(event)

    doc = await _account(fake_db, account_id)
    assert doc["subscription_status"] == "active"
    assert doc["payment_status"] == "completed"

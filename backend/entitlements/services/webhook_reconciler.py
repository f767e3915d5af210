"""Webhook Reconciler - applies PayPal notifications to subscription state.

Key Principles:
1. Idempotency: the billing_events ledger (unique event_key) applies each
   delivery once; FAILED events are retried on redelivery
2. Always acknowledge: internal failures are logged and recorded, never
   returned to the provider as errors
3. Order tolerance: notifications for a subscription no account holds yet
   are recorded UNMATCHED and replayed when checkout records the id
4. Ordering policy is pluggable (arrival order by default)

Events Handled:
- BILLING.SUBSCRIPTION.ACTIVATED / CANCELLED / SUSPENDED / EXPIRED
- PAYMENT.SALE.COMPLETED (subject = resource.billing_agreement_id)
"""
import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from entitlements.models.audit import AuditAction, AuditSeverity
from entitlements.models.events import BillingEvent, BillingEventStatus, TERMINAL_EVENT_STATUSES
from entitlements.models.account import as_utc
from entitlements.services.audit_service import audit_service
from entitlements.services.subscription_state import (
    EventKind,
    kind_for_event_type,
    ordering_from_env,
    subject_for_event,
    subscription_state_machine,
)

logger = logging.getLogger(__name__)

STALE_PROCESSING_SECONDS = 300


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return None


def event_key_for(event: Dict[str, Any]) -> str:
    """Deduplication key for a notification.

    The provider event id when present. Otherwise a fingerprint of the event
    type, resource and its timestamps; an event carrying no timestamp gets a
    fresh key, since the same transition can recur for one subscription.
    """
    if event.get("id"):
        return str(event["id"])
    resource = event.get("resource") or {}
    stamps = [event.get("create_time"), resource.get("update_time"), resource.get("status_update_time")]
    if not any(stamps):
        return f"anon:{uuid.uuid4().hex}"
    fingerprint = json.dumps(
        [event.get("event_type"), resource.get("id"), resource.get("status"), *stamps],
        default=str,
    )
    return "sha256:" + hashlib.sha256(fingerprint.encode()).hexdigest()


def _safe_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """Minimal copy kept for replay; subscriber PII is dropped."""
    resource = event.get("resource") or {}
    return {
        "id": event.get("id"),
        "event_type": event.get("event_type"),
        "create_time": event.get("create_time"),
        "resource": {
            "id": resource.get("id"),
            "status": resource.get("status"),
            "billing_agreement_id": resource.get("billing_agreement_id"),
            "create_time": resource.get("create_time"),
        },
    }


class WebhookReconciler:

    def __init__(self, ordering=None):
        self.ordering = ordering or ordering_from_env()

    def _get_db(self):
        return database.get_db()

    async def handle(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Process one notification. Safe to call any number of times with the same event."""
        event_type = event.get("event_type")
        resource = event.get("resource") or {}
        event_key = event_key_for(event)
        kind = kind_for_event_type(event_type)
        subject_id = subject_for_event(kind, resource) if kind else resource.get("id")

        logger.info(
            "WEBHOOK_RECEIVED event_key=%s event_type=%s subject_id=%s",
            event_key, event_type, subject_id,
        )

        if kind is None:
            logger.info("WEBHOOK_IGNORED event_key=%s event_type=%s (unhandled type)", event_key, event_type)
            return {"status": "ignored", "event_key": event_key}

        if not subject_id:
            logger.warning("WEBHOOK_NO_SUBJECT event_key=%s event_type=%s", event_key, event_type)
            return {"status": "ignored", "event_key": event_key}

        occurred_at = _parse_time(event.get("create_time") or resource.get("create_time"))

        if not await self._claim(event_key, event_type, subject_id, occurred_at, event):
            logger.info(f"Event {event_key} already processed - skipping")
            return {"status": "duplicate", "event_key": event_key}

        return await self._apply(event_key, event_type, kind, subject_id, occurred_at)

    async def _claim(self, event_key, event_type, subject_id, occurred_at, event) -> bool:
        """Record the event as PROCESSING. False if it was already applied or is in flight."""
        db = self._get_db()
        existing = await db.billing_events.find_one({"event_key": event_key}, {"_id": 0})
        if existing:
            if existing.get("status") in TERMINAL_EVENT_STATUSES:
                return False
            now = datetime.now(timezone.utc)
            # FAILED, or PROCESSING abandoned by a worker that died mid-flight
            retried = await db.billing_events.find_one_and_update(
                {
                    "event_key": event_key,
                    "$or": [
                        {"status": BillingEventStatus.FAILED.value},
                        {
                            "status": BillingEventStatus.PROCESSING.value,
                            "claimed_at": {"$lt": now - timedelta(seconds=STALE_PROCESSING_SECONDS)},
                        },
                    ],
                },
                {"$set": {"status": BillingEventStatus.PROCESSING.value, "error": None, "claimed_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if retried:
                logger.info("WEBHOOK_RETRY event_key=%s previous_error=%s", event_key, existing.get("error"))
            return retried is not None

        record = BillingEvent(
            event_key=event_key,
            event_type=event_type,
            subject_id=subject_id,
            occurred_at=occurred_at,
            payload=_safe_payload(event),
        )
        try:
            await db.billing_events.insert_one(record.model_dump())
        except DuplicateKeyError:
            logger.info(f"Event {event_key} duplicate insert (race) - skipping")
            return False
        return True

    async def _apply(self, event_key, event_type, kind: EventKind, subject_id, occurred_at) -> Dict[str, Any]:
        db = self._get_db()
        try:
            matched = await subscription_state_machine.apply_provider_event(
                subject_id, kind, occurred_at=occurred_at, ordering=self.ordering,
            )
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_key=%s event_type=%s error=%s",
                event_key, event_type, str(e),
            )
            await db.billing_events.update_one(
                {"event_key": event_key},
                {"$set": {
                    "status": BillingEventStatus.FAILED.value,
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await audit_service.log(
                action=AuditAction.WEBHOOK_FAILED,
                description=f"Webhook {event_type} failed for {subject_id}",
                details={"event_key": event_key, "event_type": event_type, "error": str(e)},
                severity=AuditSeverity.ERROR,
            )
            return {"status": "failed", "event_key": event_key, "error": str(e)}

        status = BillingEventStatus.PROCESSED if matched else BillingEventStatus.UNMATCHED
        await db.billing_events.update_one(
            {"event_key": event_key},
            {"$set": {
                "status": status.value,
                "processed_at": datetime.now(timezone.utc),
                "matched_accounts": matched,
            }},
        )
        if matched:
            logger.info(
                "WEBHOOK_PROCESSED_OK event_key=%s event_type=%s accounts=%s",
                event_key, event_type, matched,
            )
        else:
            logger.warning(
                "WEBHOOK_UNMATCHED event_key=%s event_type=%s subject_id=%s (held for replay)",
                event_key, event_type, subject_id,
            )
        return {"status": status.value.lower(), "event_key": event_key, "matched_accounts": matched}

    async def replay_unmatched(self, subject_id: str) -> int:
        """Re-apply events that arrived before any account held ``subject_id``, oldest first."""
        db = self._get_db()
        cursor = db.billing_events.find(
            {"subject_id": subject_id, "status": BillingEventStatus.UNMATCHED.value},
            {"_id": 0},
        ).sort("received_at", 1)
        pending = await cursor.to_list(length=None)

        applied = 0
        for record in pending:
            claimed = await db.billing_events.find_one_and_update(
                {"event_key": record["event_key"], "status": BillingEventStatus.UNMATCHED.value},
                {"$set": {"status": BillingEventStatus.PROCESSING.value}},
                return_document=ReturnDocument.AFTER,
            )
            if not claimed:
                continue
            kind = kind_for_event_type(record.get("event_type"))
            if kind is None:
                continue
            result = await self._apply(
                record["event_key"], record["event_type"], kind, subject_id, as_utc(record.get("occurred_at")),
            )
            if result["status"] == BillingEventStatus.PROCESSED.value.lower():
                applied += 1
        if pending:
            logger.info("WEBHOOK_REPLAY subject_id=%s pending=%s applied=%s", subject_id, len(pending), applied)
        return applied


webhook_reconciler = WebhookReconciler()

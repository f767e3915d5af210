"""Admin pause / resume of an account's entitlement.

Both go through the subscription state machine so they share its
single-writer guarantees with webhook processing.
"""

from datetime import datetime, timezone
from typing import Dict, Any
import logging

from entitlements.models.audit import AuditAction, AuditSeverity
from entitlements.services.audit_service import audit_service
from entitlements.services.subscription_state import (
    EventKind,
    TransitionContext,
    subscription_state_machine,
)

logger = logging.getLogger(__name__)


class AdminOverride:

    async def pause(self, account_id: str, actor_id: str) -> Dict[str, Any]:
        updated = await subscription_state_machine.apply(
            account_id,
            EventKind.ADMIN_PAUSE,
            TransitionContext(now=datetime.now(timezone.utc)),
            actor_id=actor_id,
        )
        logger.info("ACCOUNT_PAUSED account_id=%s actor=%s", account_id, actor_id)
        await audit_service.log(
            action=AuditAction.ACCOUNT_PAUSED,
            description="Account paused by admin",
            account_id=account_id,
            actor_id=actor_id,
            severity=AuditSeverity.WARNING,
        )
        return updated

    async def resume(self, account_id: str, actor_id: str) -> Dict[str, Any]:
        updated = await subscription_state_machine.apply(
            account_id,
            EventKind.ADMIN_RESUME,
            TransitionContext(now=datetime.now(timezone.utc)),
            actor_id=actor_id,
        )
        logger.info(
            "ACCOUNT_RESUMED account_id=%s actor=%s status=%s",
            account_id, actor_id, updated.get("subscription_status"),
        )
        await audit_service.log(
            action=AuditAction.ACCOUNT_RESUMED,
            description=f"Account resumed by admin ({updated.get('subscription_status')})",
            account_id=account_id,
            actor_id=actor_id,
            details={
                "status": updated.get("subscription_status"),
                "provider_status": updated.get("provider_status"),
            },
        )
        return updated


admin_override = AdminOverride()

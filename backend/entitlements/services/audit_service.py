"""Entitlement Audit Service

Append-only audit trail for transitions, overrides and provisioning.
Every entry is mirrored to the application logger at its severity.
"""

from typing import Optional, Dict, Any, List
import logging

from database import database
from entitlements.models.audit import AuditLog, AuditAction, AuditSeverity

logger = logging.getLogger(__name__)


def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {"from": before_val, "to": after_val}

    return {k: v for k, v in diff.items() if v}


class AuditService:
    """Service for audit logging."""

    def _get_db(self):
        return database.get_db()

    async def log(
        self,
        action: AuditAction,
        description: str,
        account_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> AuditLog:
        """Create an audit log entry.

        A failed insert is logged and swallowed: the audit trail must never
        undo or block the entitlement change it describes.
        """
        entry = AuditLog(
            action=action,
            severity=severity,
            description=description,
            account_id=account_id,
            actor_id=actor_id,
            details=details or {},
        )

        try:
            await self._get_db().audit_logs.insert_one(entry.model_dump())
        except Exception as e:
            logger.error(f"Failed to persist audit log {entry.action}: {e}")

        log_msg = f"[AUDIT] {entry.action}: {description}"
        if account_id:
            log_msg += f" (account: {account_id})"
        if actor_id:
            log_msg += f" (actor: {actor_id})"

        if severity == AuditSeverity.ERROR:
            logger.error(log_msg)
        elif severity == AuditSeverity.WARNING:
            logger.warning(log_msg)
        elif severity == AuditSeverity.CRITICAL:
            logger.critical(log_msg)
        else:
            logger.info(log_msg)

        return entry

    async def get_account_audit_logs(
        self,
        account_id: str,
        limit: int = 50,
        action: Optional[AuditAction] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"account_id": account_id}
        if action:
            query["action"] = action.value
        cursor = self._get_db().audit_logs.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
        return await cursor.to_list(limit)


audit_service = AuditService()

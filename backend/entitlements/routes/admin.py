"""Admin account override routes.

Endpoints:
- POST /api/admin/users/{account_id}/pause
- POST /api/admin/users/{account_id}/resume
- GET /api/admin/users/{account_id}/entitlement
- GET /api/admin/users/{account_id}/audit - Recent audit entries for the account
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from middleware import admin_route_guard
from entitlements.errors import ValidationError
from entitlements.models.audit import AuditAction
from entitlements.services.audit_service import audit_service
from entitlements.services.admin_override import admin_override
from entitlements.services.subscription_state import subscription_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/users", tags=["Admin Users"])


def _summary(doc: dict) -> dict:
    return {
        "account_id": doc["account_id"],
        "plan": doc.get("plan"),
        "status": doc.get("subscription_status"),
        "provider_status": doc.get("provider_status"),
        "external_subscription_id": doc.get("external_subscription_id"),
    }


@router.post("/{account_id}/pause")
async def pause_account(account_id: str, admin: dict = Depends(admin_route_guard)):
    updated = await admin_override.pause(account_id, actor_id=admin["account_id"])
    return {"success": True, "account": _summary(updated)}


@router.post("/{account_id}/resume")
async def resume_account(account_id: str, admin: dict = Depends(admin_route_guard)):
    updated = await admin_override.resume(account_id, actor_id=admin["account_id"])
    return {"success": True, "account": _summary(updated)}


@router.get("/{account_id}/entitlement")
async def get_entitlement(account_id: str, admin: dict = Depends(admin_route_guard)):
    entitlement = await subscription_state_machine.entitlement(account_id)
    return {"success": True, "entitlement": entitlement.model_dump()}


@router.get("/{account_id}/audit")
async def get_account_audit(
    account_id: str,
    limit: int = Query(50, ge=1, le=200),
    action: Optional[str] = Query(None),
    admin: dict = Depends(admin_route_guard),
):
    if action is not None:
        try:
            action = AuditAction(action)
        except ValueError:
            raise ValidationError(f"Unknown audit action: {action}")
    logs = await audit_service.get_account_audit_logs(account_id, limit=limit, action=action)
    return {"success": True, "logs": logs}

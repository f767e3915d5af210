"""Site settings routes.

Admin:
- GET|PUT /api/admin/settings - countdown and plan mapping
- GET|PUT /api/admin/pricing - prices and credit allotments
- POST /api/admin/create-subscription-plans - provision every recurring plan
- GET|PUT /api/admin/paypal-config - credentials (masked on read)

Public:
- GET /api/pricing
"""

from fastapi import APIRouter, Depends
import logging

from middleware import admin_route_guard
from entitlements.errors import ValidationError
from entitlements.models.account import PlanType
from entitlements.models.audit import AuditAction
from entitlements.models.settings import PayPalConfigUpdate, PricingUpdate, SettingsUpdate
from entitlements.services.audit_service import audit_service
from entitlements.services.countdown import countdown_controller
from entitlements.services.plan_provisioner import plan_provisioner
from entitlements.services.settings_service import settings_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin Settings"])
public_router = APIRouter(prefix="/api", tags=["Pricing"])


async def _settings_payload() -> dict:
    settings = await settings_service.get()
    return {
        "success": True,
        "timer": await countdown_controller.settings_view(),
        "plan_ids": settings.get("plan_ids") or {},
        "version": settings.get("version", 0),
    }


@router.get("/settings")
async def get_settings(admin: dict = Depends(admin_route_guard)):
    return await _settings_payload()


@router.put("/settings")
async def update_settings(body: SettingsUpdate, admin: dict = Depends(admin_route_guard)):
    if body.plan_ids:
        allowed = {p.value for p in PlanType}
        unknown = sorted(set(body.plan_ids) - allowed)
        if unknown:
            raise ValidationError(f"Unknown plan types: {', '.join(unknown)}", allowed=sorted(allowed))
        await settings_service.update(
            {f"plan_ids.{plan_type}": plan_id.strip() for plan_type, plan_id in body.plan_ids.items()},
            expected_version=body.expected_version,
        )
        # expected_version already checked by the plan mapping write
        body.expected_version = None

    await countdown_controller.configure(
        enabled=body.timer_enabled,
        duration_days=body.timer_duration_days,
        reset_now=body.reset_timer,
        expected_version=body.expected_version,
    )
    await audit_service.log(
        action=AuditAction.SETTINGS_UPDATED,
        description="Site settings updated",
        actor_id=admin["account_id"],
        details=body.model_dump(exclude_none=True),
    )
    return await _settings_payload()


@router.get("/pricing")
async def get_admin_pricing(admin: dict = Depends(admin_route_guard)):
    settings = await settings_service.get()
    return {"success": True, "pricing": settings_service.pricing_view(settings), "version": settings.get("version", 0)}


@router.put("/pricing")
async def update_pricing(body: PricingUpdate, admin: dict = Depends(admin_route_guard)):
    settings = await settings_service.update_pricing(
        body.model_dump(exclude={"expected_version"}),
        actor_id=admin["account_id"],
        expected_version=body.expected_version,
    )
    return {"success": True, "pricing": settings_service.pricing_view(settings), "version": settings.get("version", 0)}


@router.post("/create-subscription-plans")
async def create_subscription_plans(admin: dict = Depends(admin_route_guard)):
    results = await plan_provisioner.provision_all()
    logger.info("PLAN_PROVISION_ALL actor=%s results=%s", admin["account_id"], results)
    return {"success": all(r["success"] for r in results.values()), "plans": results}


@router.get("/paypal-config")
async def get_paypal_config(admin: dict = Depends(admin_route_guard)):
    return {"success": True, "config": await settings_service.get_paypal_config()}


@router.put("/paypal-config")
async def update_paypal_config(body: PayPalConfigUpdate, admin: dict = Depends(admin_route_guard)):
    config = await settings_service.update_paypal_config(
        body.model_dump(exclude_none=True),
        actor_id=admin["account_id"],
    )
    return {"success": True, "config": config}


@public_router.get("/pricing")
async def get_public_pricing():
    """Prices and allotments for the pricing page. No auth required."""
    settings = await settings_service.get()
    return {"success": True, "pricing": settings_service.pricing_view(settings)}

"""Countdown Controller

Self-resetting promotional deadline: endDate = last_reset_at + duration.
Once passed (and enabled) the anchor re-anchors to "now" with a
compare-and-swap on the observed last_reset_at, so simultaneous expirations
advance it once.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any
import logging

from pymongo import ReturnDocument

from database import database
from entitlements.errors import ValidationError
from entitlements.models.account import as_utc
from entitlements.models.settings import SETTINGS_ID
from entitlements.services.settings_service import settings_service

logger = logging.getLogger(__name__)

DEFAULT_DURATION_DAYS = 7
MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365


def _deadline(enabled: bool, duration_days: int, end_date: datetime, was_reset: bool) -> Dict[str, Any]:
    return {
        "endDate": end_date,
        "enabled": enabled,
        "durationDays": duration_days,
        "wasReset": was_reset,
    }


class CountdownController:

    def _get_db(self):
        return database.get_db()

    async def current_deadline(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        settings = await settings_service.get()
        enabled = settings.get("timer_enabled", True)
        duration_days = settings.get("timer_duration_days") or DEFAULT_DURATION_DAYS
        period = timedelta(days=duration_days)

        if not enabled:
            # Cosmetic future date; the anchor is left alone
            return _deadline(False, duration_days, now + period, False)

        observed = settings.get("last_reset_at")
        if observed is None:
            anchored = await self._swap_anchor(None, now)
            if anchored is None:
                return await self._winner_deadline(now)
            return _deadline(True, duration_days, now + period, False)

        end_date = as_utc(observed) + period
        if now < end_date:
            return _deadline(True, duration_days, end_date, False)

        anchored = await self._swap_anchor(observed, now)
        if anchored is None:
            return await self._winner_deadline(now)

        logger.info("COUNTDOWN_RESET previous_anchor=%s new_anchor=%s", observed, now)
        return _deadline(True, duration_days, now + period, True)

    async def _swap_anchor(self, observed: Optional[datetime], now: datetime) -> Optional[Dict[str, Any]]:
        return await self._get_db().site_settings.find_one_and_update(
            {"settings_id": SETTINGS_ID, "last_reset_at": observed},
            {"$set": {"last_reset_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def _winner_deadline(self, now: datetime) -> Dict[str, Any]:
        """Lost the swap: report the anchor another caller just wrote."""
        settings = await settings_service.get()
        duration_days = settings.get("timer_duration_days") or DEFAULT_DURATION_DAYS
        anchor = as_utc(settings.get("last_reset_at")) or now
        return _deadline(
            settings.get("timer_enabled", True),
            duration_days,
            anchor + timedelta(days=duration_days),
            False,
        )

    async def configure(
        self,
        enabled: Optional[bool] = None,
        duration_days: Optional[int] = None,
        reset_now: bool = False,
        now: Optional[datetime] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        changes: Dict[str, Any] = {}
        if enabled is not None:
            changes["timer_enabled"] = bool(enabled)
        if duration_days is not None:
            if not MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS:
                raise ValidationError(
                    f"durationDays must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS}"
                )
            changes["timer_duration_days"] = int(duration_days)
        if reset_now:
            changes["last_reset_at"] = now

        if changes:
            await settings_service.update(changes, expected_version=expected_version)
        return await self.settings_view(now)

    async def settings_view(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Admin view of the anchor. Never triggers the auto-loop."""
        now = now or datetime.now(timezone.utc)
        settings = await settings_service.get()
        duration_days = settings.get("timer_duration_days") or DEFAULT_DURATION_DAYS
        last_reset_at = as_utc(settings.get("last_reset_at"))
        end_date = (last_reset_at or now) + timedelta(days=duration_days)
        return {
            "enabled": settings.get("timer_enabled", True),
            "durationDays": duration_days,
            "lastResetAt": last_reset_at,
            "endDate": end_date,
            "isExpired": end_date <= now,
        }


countdown_controller = CountdownController()

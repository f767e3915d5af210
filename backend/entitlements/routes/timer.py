"""Public countdown endpoint.

GET /api/timer - current promotional deadline. Responses are cached in
process for 60 seconds; a store failure degrades to a 7-day window from now
instead of an error.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from datetime import datetime, timezone, timedelta
import logging
import time

from entitlements.services.countdown import DEFAULT_DURATION_DAYS, countdown_controller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Timer"])

CACHE_TTL_SECONDS = 60
CACHE_CONTROL = "public, s-maxage=60, stale-while-revalidate=120"

_cache = {"payload": None, "expires_at": 0.0}


def clear_timer_cache():
    _cache["payload"] = None
    _cache["expires_at"] = 0.0


@router.get("/timer")
async def get_timer():
    now = time.monotonic()
    payload = _cache["payload"]
    if payload is None or now >= _cache["expires_at"]:
        try:
            deadline = await countdown_controller.current_deadline()
            payload = {"success": True, **jsonable_encoder(deadline)}
            _cache["payload"] = payload
            _cache["expires_at"] = now + CACHE_TTL_SECONDS
        except Exception as e:
            logger.error(f"Timer lookup failed, serving fallback: {e}")
            fallback = datetime.now(timezone.utc) + timedelta(days=DEFAULT_DURATION_DAYS)
            payload = {
                "success": False,
                "endDate": fallback.isoformat(),
                "enabled": True,
                "durationDays": DEFAULT_DURATION_DAYS,
                "wasReset": False,
            }
    return JSONResponse(content=payload, headers={"Cache-Control": CACHE_CONTROL})

"""User credit routes.

Endpoints:
- GET /api/user/credits - balance (replenished first if the reset date passed)
- POST /api/user/credits/consume - spend credits; 402 when the balance is short
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional
import logging

from middleware import require_auth
from entitlements.services.credit_ledger import credit_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user/credits", tags=["Credits"])


class ConsumeRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


@router.get("")
async def get_credits(user: dict = Depends(require_auth)):
    status = await credit_ledger.status(user["account_id"])
    return {"success": True, "credits": status.model_dump()}


@router.post("/consume")
async def consume_credits(body: Optional[ConsumeRequest] = None, user: dict = Depends(require_auth)):
    amount = body.amount if body else 1
    status = await credit_ledger.consume(user["account_id"], amount)
    return {"success": True, "consumed": amount, "credits": status.model_dump()}

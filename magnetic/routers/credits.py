from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from magnetic.deps import get_current_user
from magnetic.models.user import User
from magnetic.services import balance_view, balances
from magnetic.services import consumption as consumption_service

router = APIRouter()


class ConsumeRequest(BaseModel):
    action: Literal["script_generation", "script_adjustment", "chat_messages"]
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/consume")
async def consume_credits(body: ConsumeRequest, user: User = Depends(get_current_user)):
    """Charge one action to the current user; 402 when there are not enough credits."""
    result = await consumption_service.consume(str(user.id), body.action, body.metadata)
    return result.as_dict()


@router.get("/balance")
async def credits_balance(user: User = Depends(get_current_user)):
    """Return current buckets and total."""
    balance = await balances.get_balance(str(user.id))
    out = balances.balance_view(balance)
    out["cycle_end_date"] = balance.cycle_end_date.isoformat() if balance and balance.cycle_end_date else None
    out["plan_credits_expire_at"] = (
        balance.plan_credits_expire_at.isoformat() if balance and balance.plan_credits_expire_at else None
    )
    return out


@router.get("/transactions")
async def credits_transactions(
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current user (newest first)."""
    entries = await balance_view.list_transactions(str(user.id), limit=limit, offset=offset)
    return {"transactions": [balance_view.transaction_out(e) for e in entries], "limit": limit, "offset": offset}


@router.get("/summary")
async def credits_summary(user: User = Depends(get_current_user)):
    """Balance plus usage in the current cycle."""
    return await balance_view.summary(str(user.id))

from typing import Literal

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from magnetic.core.exceptions import BadRequestError, NotFoundError
from magnetic.deps import require_admin
from magnetic.models.user import User
from magnetic.models.webhook_log import WebhookLog
from magnetic.services import admin_credits, balances
from magnetic.services import plans as plans_service
from magnetic.services.plan_changes import Trigger, assign_plan

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    user_id: str
    field: Literal["plan_credits", "subscription_credits", "bonus_credits"]
    amount: int
    reason: str


class AssignPlanRequest(BaseModel):
    plan_slug: str | None = None  # None removes the plan


async def _get_user(user_id: str) -> User:
    try:
        user = await User.get(PydanticObjectId(user_id))
    except InvalidId:
        user = None
    if not user:
        raise NotFoundError("User not found")
    return user


@router.post("/credits/adjust")
async def admin_adjust_credits(body: AdjustCreditsRequest, admin: User = Depends(require_admin)):
    """Admin: add or remove credits in one bucket, with a mandatory reason."""
    target = await _get_user(body.user_id)
    balance = await admin_credits.adjust_credits(str(target.id), body.field, body.amount, body.reason, str(admin.id))
    return {"success": True, "balance": balances.balance_view(balance)}


@router.post("/users/{user_id}/plan")
async def admin_assign_plan(user_id: str, body: AssignPlanRequest, admin: User = Depends(require_admin)):
    """Admin: move a user to a plan (or to no plan)."""
    target = await _get_user(user_id)
    plan = None
    if body.plan_slug:
        plan = await plans_service.get_plan_by_slug(body.plan_slug)
        if plan is None:
            raise BadRequestError("Invalid plan", details={"plan_slug": body.plan_slug})
    trigger = Trigger.ADMIN if plan else Trigger.CANCELLATION
    balance = await assign_plan(target, plan, trigger, actor_id=str(admin.id))
    return {
        "success": True,
        "plan_slug": target.plan_slug,
        "balance": balances.balance_view(balance),
    }


@router.get("/webhook-logs")
async def admin_webhook_logs(
    admin: User = Depends(require_admin),
    status: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: recent webhook deliveries, newest first."""
    query = WebhookLog.find(WebhookLog.status == status) if status else WebhookLog.find_all()
    logs = await query.sort(-WebhookLog.created_at).skip(offset).limit(limit).to_list()
    out = [
        {
            "id": str(w.id),
            "source": w.source,
            "event_type": w.event_type,
            "event_id": w.event_id,
            "status": w.status,
            "error_message": w.error_message,
            "created_at": w.created_at.isoformat(),
        }
        for w in logs
    ]
    return {"logs": out, "limit": limit, "offset": offset}

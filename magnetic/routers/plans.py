from fastapi import APIRouter, Depends
from pydantic import BaseModel

from magnetic.core.exceptions import BadRequestError
from magnetic.deps import get_current_user
from magnetic.models.user import User
from magnetic.services import balances
from magnetic.services import plans as plans_service
from magnetic.services.plan_changes import Trigger, assign_plan

router = APIRouter()


class SetupPlanRequest(BaseModel):
    plan_slug: str


@router.post("/setup")
async def setup_plan(body: SetupPlanRequest, user: User = Depends(get_current_user)):
    """Called after login: set the user's plan and create credits on first setup."""
    plan = await plans_service.get_plan_by_slug(body.plan_slug)
    if plan is None:
        raise BadRequestError("Invalid plan", details={"plan_slug": body.plan_slug})
    balance = await assign_plan(user, plan, Trigger.SIGNUP, actor_id=str(user.id))
    return {
        "success": True,
        "plan_slug": plan.slug,
        "message": f"Plan set to {plan.slug}",
        "balance": balances.balance_view(balance),
    }


@router.get("")
async def list_plans():
    """Active plan catalog, most privileged first."""
    return {"plans": [plans_service.plan_summary(p) for p in await plans_service.active_plans_by_priority()]}


@router.get("/features/{feature}")
async def feature_access(feature: str, user: User = Depends(get_current_user)):
    """Whether the current user's plan includes a feature flag."""
    plan = await plans_service.current_plan(user)
    return {
        "feature": feature,
        "enabled": plans_service.has_feature(plan, feature),
        "plan_slug": plan.slug if plan else "none",
    }

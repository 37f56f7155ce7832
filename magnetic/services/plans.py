"""Plan catalog lookups. Plans are admin data; nothing here writes them."""

from beanie import PydanticObjectId

from magnetic.models.credit_package import CreditPackage
from magnetic.models.plan import Plan
from magnetic.models.user import User


async def get_plan(plan_id: PydanticObjectId | None) -> Plan | None:
    if plan_id is None:
        return None
    return await Plan.get(plan_id)


async def get_plan_by_slug(slug: str) -> Plan | None:
    return await Plan.find_one(Plan.slug == slug, Plan.is_active == True)  # noqa: E712


async def current_plan(user: User) -> Plan | None:
    return await get_plan(user.plan_id)


async def active_plans_by_priority() -> list[Plan]:
    """Active plans, most privileged (highest display_order) first."""
    return await Plan.find(Plan.is_active == True).sort(-Plan.display_order).to_list()  # noqa: E712


async def plan_for_product(product_id: str) -> Plan | None:
    return await Plan.find_one(Plan.external_product_id == product_id, Plan.is_active == True)  # noqa: E712


async def package_for_product(product_id: str) -> CreditPackage | None:
    return await CreditPackage.find_one(
        CreditPackage.external_product_id == product_id,
        CreditPackage.is_active == True,  # noqa: E712
    )


def has_feature(plan: Plan | None, feature: str) -> bool:
    return plan is not None and feature in plan.features


def plan_summary(plan: Plan) -> dict:
    return {
        "id": str(plan.id),
        "slug": plan.slug,
        "name": plan.name,
        "display_order": plan.display_order,
        "initial_credits": plan.initial_credits,
        "monthly_credits": plan.monthly_credits,
        "has_monthly_renewal": plan.has_monthly_renewal,
        "credits_expire_days": plan.credits_expire_days,
        "can_buy_extra_credits": plan.can_buy_extra_credits,
        "features": plan.features,
    }

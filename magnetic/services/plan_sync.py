"""Cron reconciliation: keep each user's plan in line with their CRM tags."""

from datetime import datetime

from magnetic.core.audit import log_event
from magnetic.core.logging import get_logger
from magnetic.models.plan import Plan
from magnetic.models.user import User
from magnetic.services import plans
from magnetic.services.crm import ActiveCampaignClient
from magnetic.services.plan_changes import Trigger, assign_plan

log = get_logger(__name__)


def detect_plan(ordered_plans: list[Plan], plan_tags: dict[str, set[str]], contact_tags: set[str]) -> Plan | None:
    """First plan (highest display_order) whose tags intersect the contact's tags."""
    for plan in ordered_plans:
        if plan_tags.get(str(plan.id), set()) & contact_tags:
            return plan
    return None


async def recheck_user_plans(crm: ActiveCampaignClient, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    ordered = await plans.active_plans_by_priority()
    summary = {"success": True, "checked": 0, "updated": 0, "downgraded": 0, "errors": 0, "processed_at": now.isoformat()}
    if not ordered:
        log.warning("plan_recheck_no_plans")
        return summary

    plan_tags = {str(p.id): await crm.resolve_tag_ids(p.crm_tag) for p in ordered}
    users = await User.find(User.plan_id != None).to_list()  # noqa: E711

    for user in users:
        try:
            outcome = await _recheck_user(crm, user, ordered, plan_tags, now)
        except Exception:
            log.exception("plan_recheck_failed", user_id=str(user.id), email=user.email)
            summary["errors"] += 1
            continue
        summary["checked"] += 1
        if outcome == "downgraded":
            summary["downgraded"] += 1
        elif outcome == "updated":
            summary["updated"] += 1

    await log_event(None, "plan_recheck_run", "plan", None, summary, actor_id="system:recheck_user_plans")
    log.info(
        "plan_recheck_complete",
        checked=summary["checked"],
        updated=summary["updated"],
        downgraded=summary["downgraded"],
        errors=summary["errors"],
    )
    return summary


async def _recheck_user(
    crm: ActiveCampaignClient,
    user: User,
    ordered: list[Plan],
    plan_tags: dict[str, set[str]],
    now: datetime,
) -> str:
    contact_id = await crm.find_contact_id(user.email)
    detected = None
    if contact_id is not None:
        detected = detect_plan(ordered, plan_tags, await crm.contact_tag_ids(contact_id))

    if detected is None:
        log.info("plan_tag_missing", user_id=str(user.id), contact_found=contact_id is not None)
        await assign_plan(user, None, Trigger.CRM_SYNC, now=now, actor_id="system:recheck_user_plans")
        return "downgraded"
    if detected.id != user.plan_id:
        await assign_plan(user, detected, Trigger.CRM_SYNC, now=now, actor_id="system:recheck_user_plans")
        return "updated"
    user.last_crm_verification_at = now
    await user.save()
    return "unchanged"

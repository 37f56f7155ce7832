"""Cron: scheduled credit renewal and CRM plan reconciliation."""

from typing import Any

from magnetic.services.crm import ActiveCampaignClient
from magnetic.services.plan_sync import recheck_user_plans
from magnetic.services.renewal import run_renewals


async def run_renew_credits() -> dict[str, Any]:
    """Plan cycles, credit expiry and add-on subscriptions due now."""
    report = await run_renewals()
    return report.as_dict()


async def run_recheck_user_plans() -> dict[str, Any]:
    """Align every user's plan with their ActiveCampaign tags."""
    crm = ActiveCampaignClient.from_settings()
    try:
        return await recheck_user_plans(crm)
    finally:
        await crm.aclose()

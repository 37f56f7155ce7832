from fastapi import APIRouter, Depends

from magnetic.deps import require_cron_header, require_cron_secret
from magnetic.services import renewal
from magnetic.services.crm import ActiveCampaignClient
from magnetic.services.plan_sync import recheck_user_plans

router = APIRouter()


@router.post("/renew-credits", dependencies=[Depends(require_cron_secret)])
async def renew_credits():
    """Run the renewal sweeps (plan cycles, expiry, add-on subscriptions)."""
    report = await renewal.run_renewals()
    return report.as_dict()


@router.post("/recheck-user-plans", dependencies=[Depends(require_cron_header)])
async def recheck_plans():
    """Reconcile every user's plan with their CRM tags."""
    crm = ActiveCampaignClient.from_settings()
    try:
        return await recheck_user_plans(crm)
    finally:
        await crm.aclose()

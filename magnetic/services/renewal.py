"""Renewal engine: periodic plan-cycle, expiry and subscription sweeps.

Every sweep handles one user or subscription at a time; a failing item is
logged and counted, the run carries on.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId

from magnetic.core.config import get_settings
from magnetic.core.logging import get_logger
from magnetic.models.credit_balance import CreditBalance
from magnetic.models.credit_subscription import CreditSubscription
from magnetic.models.user import User
from magnetic.services import balances, plans

log = get_logger(__name__)


@dataclass
class RenewalReport:
    processed_at: datetime
    renewed_plans: int = 0
    renewed_subscriptions: int = 0
    expired_trials: int = 0
    expired_credits: int = 0
    recovered_entries: int = 0
    errors: int = 0
    skipped: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "renewed_plans": self.renewed_plans,
            "renewed_subscriptions": self.renewed_subscriptions,
            "expired_trials": self.expired_trials,
            "expired_credits": self.expired_credits,
            "recovered_entries": self.recovered_entries,
            "errors": self.errors,
            "processed_at": self.processed_at.isoformat(),
        }


def add_months(dt: datetime, months: int = 1) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


async def _load_user(user_id: str) -> User | None:
    try:
        return await User.get(PydanticObjectId(user_id))
    except InvalidId:
        return None


async def run_renewals(now: datetime | None = None) -> RenewalReport:
    now = now or datetime.utcnow()
    report = RenewalReport(processed_at=now)
    log.info("renewal_started", processed_at=now.isoformat())

    try:
        report.recovered_entries = await balances.flush_pending_ledger()
    except Exception:
        log.exception("ledger_recovery_failed")
        report.errors += 1

    await _plan_cycle_sweep(now, report)
    await _expired_plan_credits_sweep(now, report)
    await _subscription_sweep(now, report)

    log.info(
        "renewal_complete",
        renewed_plans=report.renewed_plans,
        renewed_subscriptions=report.renewed_subscriptions,
        expired_trials=report.expired_trials,
        expired_credits=report.expired_credits,
        errors=report.errors,
    )
    return report


# Sweep A: balances whose cycle (or trial window) has ended


async def _plan_cycle_sweep(now: datetime, report: RenewalReport) -> None:
    due = await CreditBalance.find(CreditBalance.cycle_end_date <= now).to_list()
    for balance in due:
        try:
            outcome = await renew_plan_cycle(balance.user_id, now)
        except Exception:
            log.exception("plan_renewal_failed", user_id=balance.user_id)
            report.errors += 1
            continue
        if outcome == "renewed":
            report.renewed_plans += 1
        elif outcome == "trial_expired":
            report.expired_trials += 1
        else:
            report.skipped.append(balance.user_id)


async def renew_plan_cycle(user_id: str, now: datetime) -> str | None:
    """Renew or expire one user's plan credits; returns "renewed", "trial_expired" or None."""
    user = await _load_user(user_id)
    plan = await plans.current_plan(user) if user else None
    if plan is None:
        log.info("plan_renewal_skipped", user_id=user_id, reason="no_plan")
        return None

    outcome: dict[str, str] = {}

    def renew(balance: CreditBalance) -> balances.Mutation | None:
        outcome.clear()
        if balance.cycle_end_date is None or balance.cycle_end_date > now:
            return None
        buckets = balances.buckets_of(balance)
        entries = []
        forfeited = buckets["plan_credits"] + buckets["subscription_credits"]
        if forfeited:
            buckets["plan_credits"] = buckets["subscription_credits"] = 0
            entries.append(
                balances.ledger_entry(
                    user_id,
                    "consumption",
                    -forfeited,
                    "cycle_reset",
                    balances.total(buckets),
                    {
                        "plan_slug": plan.slug,
                        "old_plan_credits": balance.plan_credits,
                        "old_subscription_credits": balance.subscription_credits,
                    },
                )
            )
        cycle_end = now + timedelta(days=get_settings().cycle_days)
        buckets["plan_credits"] = plan.monthly_credits
        entries.append(
            balances.ledger_entry(
                user_id,
                "plan_renewal",
                plan.monthly_credits,
                "plan_renewal",
                balances.total(buckets),
                {"plan_slug": plan.slug, "cycle_start": now.isoformat(), "cycle_end": cycle_end.isoformat()},
            )
        )
        outcome["value"] = "renewed"
        return balances.Mutation(
            changes={
                "plan_credits": plan.monthly_credits,
                "subscription_credits": 0,
                "cycle_start_date": now,
                "cycle_end_date": cycle_end,
                "plan_credits_expire_at": None,
            },
            entries=entries,
        )

    def expire_trial(balance: CreditBalance) -> balances.Mutation | None:
        outcome.clear()
        if balance.cycle_end_date is None or balance.cycle_end_date > now:
            return None
        buckets = balances.buckets_of(balance)
        old_plan, old_subscription = buckets["plan_credits"], buckets["subscription_credits"]
        buckets["plan_credits"] = 0
        entries = [
            balances.ledger_entry(
                user_id,
                "consumption",
                -old_plan,
                "trial_expired",
                balances.total(buckets),
                {"plan_slug": plan.slug, "expired_credits": old_plan},
            )
        ]
        if old_subscription:
            buckets["subscription_credits"] = 0
            entries.append(
                balances.ledger_entry(
                    user_id,
                    "consumption",
                    -old_subscription,
                    "trial_expired",
                    balances.total(buckets),
                    {"plan_slug": plan.slug, "expired_subscription_credits": old_subscription},
                )
            )
        outcome["value"] = "trial_expired"
        # No new cycle: a trial never renews without a new plan assignment.
        return balances.Mutation(
            changes={
                "plan_credits": 0,
                "subscription_credits": 0,
                "plan_credits_expire_at": None,
                "cycle_start_date": None,
                "cycle_end_date": None,
            },
            entries=entries,
        )

    await balances.mutate_balance(user_id, renew if plan.has_monthly_renewal else expire_trial)
    result = outcome.get("value")
    if result:
        log.info("plan_cycle_processed", user_id=user_id, plan_slug=plan.slug, outcome=result)
    return result


# Sweep A': plan credits with their own expiry, still inside a cycle


async def _expired_plan_credits_sweep(now: datetime, report: RenewalReport) -> None:
    due = await CreditBalance.find(
        CreditBalance.plan_credits_expire_at <= now,
        CreditBalance.plan_credits > 0,
    ).to_list()
    for balance in due:
        try:
            if await expire_plan_credits(balance.user_id, now):
                report.expired_credits += 1
        except Exception:
            log.exception("credit_expiry_failed", user_id=balance.user_id)
            report.errors += 1


async def expire_plan_credits(user_id: str, now: datetime) -> bool:
    expired: dict[str, int] = {}

    def compute(balance: CreditBalance) -> balances.Mutation | None:
        expired.clear()
        changes = balances.expire_plan_credits(balance, now)
        if changes is None:
            return None
        forfeited = balance.plan_credits
        buckets = {**balances.buckets_of(balance), "plan_credits": 0}
        entries = []
        if forfeited:
            expired["credits"] = forfeited
            entries.append(
                balances.ledger_entry(
                    user_id,
                    "consumption",
                    -forfeited,
                    "credits_expired",
                    balances.total(buckets),
                    {"reason": "plan_credits_expire_at reached"},
                )
            )
        return balances.Mutation(changes=changes, entries=entries)

    await balances.mutate_balance(user_id, compute)
    return bool(expired)


# Sweep B: add-on subscriptions due for their monthly reset


async def _subscription_sweep(now: datetime, report: RenewalReport) -> None:
    due = await CreditSubscription.find(
        CreditSubscription.status == "active",
        CreditSubscription.next_renewal_at <= now,
    ).to_list()
    for subscription in due:
        try:
            if await renew_subscription(subscription, now):
                report.renewed_subscriptions += 1
        except Exception:
            log.exception("subscription_renewal_failed", user_id=subscription.user_id, subscription_id=str(subscription.id))
            report.errors += 1


async def renew_subscription(subscription: CreditSubscription, now: datetime) -> bool:
    """Reset the user's subscription credits to the monthly allotment; no rollover."""
    user_id = subscription.user_id
    if await balances.get_balance(user_id) is None:
        log.warning("subscription_renewal_skipped", user_id=user_id, reason="no_balance")
        return False

    next_renewal = add_months(subscription.next_renewal_at, 1)
    # Claim this renewal period before granting so two runs cannot both grant it.
    claim = await CreditSubscription.get_motor_collection().update_one(
        {"_id": subscription.id, "status": "active", "next_renewal_at": subscription.next_renewal_at},
        {"$set": {"next_renewal_at": next_renewal, "updated_at": now}},
    )
    if claim.matched_count == 0:
        return False
    claimed_from = subscription.next_renewal_at
    subscription.next_renewal_at = next_renewal

    def compute(balance: CreditBalance) -> balances.Mutation:
        buckets = balances.buckets_of(balance)
        entries = []
        leftover = buckets["subscription_credits"]
        if leftover:
            buckets["subscription_credits"] = 0
            entries.append(
                balances.ledger_entry(
                    user_id,
                    "consumption",
                    -leftover,
                    "subscription_reset",
                    balances.total(buckets),
                    {"subscription_id": str(subscription.id), "unused_credits": leftover},
                )
            )
        buckets["subscription_credits"] = subscription.credits_per_month
        entries.append(
            balances.ledger_entry(
                user_id,
                "subscription_renewal",
                subscription.credits_per_month,
                "subscription_renewal",
                balances.total(buckets),
                {
                    "subscription_id": str(subscription.id),
                    "tier": subscription.tier,
                    "next_renewal": next_renewal.isoformat(),
                },
            )
        )
        return balances.Mutation(changes={"subscription_credits": subscription.credits_per_month}, entries=entries)

    try:
        await balances.mutate_balance(user_id, compute)
    except Exception:
        # Release the period so the next run grants it.
        await CreditSubscription.get_motor_collection().update_one(
            {"_id": subscription.id, "next_renewal_at": next_renewal},
            {"$set": {"next_renewal_at": claimed_from, "updated_at": now}},
        )
        subscription.next_renewal_at = claimed_from
        raise
    log.info("subscription_renewed", user_id=user_id, tier=subscription.tier, credits=subscription.credits_per_month)
    return True

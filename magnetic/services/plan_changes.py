"""Plan assignment transitions, shared by signup, the purchase webhook, CRM sync and admins.

A user's plan moves none -> planX -> planY -> none. Balance buckets only change
as a side effect of one of these transitions, and only `plan_change` decides
whether a transition grants credits.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from magnetic.core.audit import log_event
from magnetic.core.config import get_settings
from magnetic.core.logging import get_logger
from magnetic.models.credit_balance import CreditBalance
from magnetic.models.plan import Plan
from magnetic.models.user import User
from magnetic.services import balances, plans

log = get_logger(__name__)

PLAN_FIELDS = ("plan_id", "plan_slug", "plan_activated_at", "last_crm_verification_at", "updated_at")


class Trigger(str, Enum):
    SIGNUP = "signup"
    PURCHASE = "purchase"
    CRM_SYNC = "crm_sync"
    ADMIN = "admin"
    CANCELLATION = "cancellation"


@dataclass
class BalanceDelta:
    """Plan bucket overwrite plus the cycle fields that go with it."""
    plan_credits: int
    cycle_fields: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def mutation(self, balance: CreditBalance) -> balances.Mutation:
        buckets = balances.buckets_of(balance)
        entries = []
        forfeited = buckets["plan_credits"]
        if forfeited:
            buckets["plan_credits"] = 0
            entries.append(
                balances.ledger_entry(
                    balance.user_id,
                    "consumption",
                    -forfeited,
                    "plan_reset",
                    balances.total(buckets),
                    {"plan_slug": self.metadata.get("plan_slug"), "replaced_credits": forfeited},
                )
            )
        buckets["plan_credits"] = self.plan_credits
        entries.append(
            balances.ledger_entry(
                balance.user_id,
                "plan_renewal",
                self.plan_credits,
                "plan_renewal",
                balances.total(buckets),
                self.metadata,
            )
        )
        return balances.Mutation(
            changes={"plan_credits": self.plan_credits, **self.cycle_fields},
            entries=entries,
        )


def rank(plan: Plan | None) -> int:
    return plan.display_order if plan is not None else 0


def is_upgrade(from_plan: Plan | None, to_plan: Plan | None) -> bool:
    return to_plan is not None and rank(to_plan) > rank(from_plan)


def cycle_fields(plan: Plan, now: datetime) -> dict[str, Any]:
    """Cycle/expiry columns for a freshly granted plan."""
    if plan.has_monthly_renewal:
        return {
            "cycle_start_date": now,
            "cycle_end_date": now + timedelta(days=get_settings().cycle_days),
            "plan_credits_expire_at": None,
        }
    if plan.credits_expire_days:
        expire_at = now + timedelta(days=plan.credits_expire_days)
        # cycle_end_date doubles as the trial end so the renewal sweep zeroes it
        return {"cycle_start_date": None, "cycle_end_date": expire_at, "plan_credits_expire_at": expire_at}
    return {"cycle_start_date": None, "cycle_end_date": None, "plan_credits_expire_at": None}


def plan_change(
    from_plan: Plan | None,
    to_plan: Plan | None,
    trigger: Trigger,
    now: datetime,
    first_assignment: bool = False,
) -> BalanceDelta | None:
    """Decide what a plan transition does to the balance; None means buckets stay as they are."""
    if to_plan is None or trigger == Trigger.CANCELLATION:
        return None
    metadata = {
        "plan_slug": to_plan.slug,
        "plan_id": str(to_plan.id),
        "trigger": trigger.value,
        "from_plan": from_plan.slug if from_plan else None,
    }
    if trigger == Trigger.CRM_SYNC or (trigger == Trigger.SIGNUP and not first_assignment):
        if not (is_upgrade(from_plan, to_plan) and to_plan.has_monthly_renewal):
            return None
        credits = to_plan.monthly_credits or to_plan.initial_credits
        return BalanceDelta(credits, cycle_fields(to_plan, now), {**metadata, "upgrade": True})
    return BalanceDelta(
        to_plan.initial_credits,
        cycle_fields(to_plan, now),
        {**metadata, "initial": first_assignment},
    )


async def assign_plan(
    user: User,
    to_plan: Plan | None,
    trigger: Trigger,
    now: datetime | None = None,
    actor_id: str | None = None,
) -> CreditBalance | None:
    """Move the user to `to_plan` (None = no plan) and apply the resulting balance delta."""
    now = now or datetime.utcnow()
    user_id = str(user.id)
    from_plan = await plans.get_plan(user.plan_id)
    existing = await balances.get_balance(user_id)
    delta = plan_change(from_plan, to_plan, trigger, now, first_assignment=existing is None)
    previous = {field: getattr(user, field) for field in PLAN_FIELDS}

    if to_plan is None:
        user.plan_id = None
        user.plan_slug = "none"
    else:
        if from_plan is None or from_plan.id != to_plan.id:
            user.plan_activated_at = now
        user.plan_id = to_plan.id
        user.plan_slug = to_plan.slug
    if trigger == Trigger.CRM_SYNC:
        user.last_crm_verification_at = now
    user.updated_at = now
    await user.save()

    balance = existing
    if delta is not None:
        try:
            await balances.ensure_balance(user_id)
            balance = await balances.mutate_balance(user_id, delta.mutation)
        except Exception:
            # The grant failed: put the user back on the previous plan.
            for field, value in previous.items():
                setattr(user, field, value)
            await user.save()
            raise

    await log_event(
        user_id,
        "plan_changed",
        "plan",
        str(to_plan.id) if to_plan else None,
        {
            "from": from_plan.slug if from_plan else "none",
            "to": to_plan.slug if to_plan else "none",
            "trigger": trigger.value,
            "granted": delta.plan_credits if delta else 0,
        },
        actor_id=actor_id,
    )
    log.info(
        "plan_changed",
        user_id=user_id,
        from_plan=from_plan.slug if from_plan else "none",
        to_plan=to_plan.slug if to_plan else "none",
        trigger=trigger.value,
        granted=delta.plan_credits if delta else 0,
    )
    return balance

from datetime import datetime, timedelta

from magnetic.core.exceptions import ConflictError
from magnetic.models.credit_subscription import CreditSubscription
from magnetic.services import balances
from magnetic.services.renewal import add_months, run_renewals

from conftest import NOW


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31, 8, 30)) == datetime(2025, 2, 28, 8, 30)
    assert add_months(datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert add_months(datetime(2025, 12, 15)) == datetime(2026, 1, 15)


async def test_monthly_plan_cycle_renews(plans, make_user, make_balance, ledger):
    user = await make_user(plan=plans["magnetic"])
    uid = str(user.id)
    await make_balance(
        uid,
        plan_credits=4,
        subscription_credits=2,
        bonus_credits=7,
        cycle_start_date=NOW - timedelta(days=30),
        cycle_end_date=NOW - timedelta(minutes=1),
    )

    report = await run_renewals(now=NOW)

    assert report.renewed_plans == 1
    assert report.errors == 0
    balance = await balances.get_balance(uid)
    assert (balance.plan_credits, balance.subscription_credits, balance.bonus_credits) == (30, 0, 7)
    assert balance.cycle_start_date == NOW
    assert balance.cycle_end_date == NOW + timedelta(days=30)
    rows = await ledger(uid)
    assert [(r.type, r.amount, r.source, r.balance_after) for r in rows] == [
        ("consumption", -6, "cycle_reset", 7),
        ("plan_renewal", 30, "plan_renewal", 37),
    ]


async def test_second_run_renews_nothing(plans, make_user, make_balance, ledger):
    user = await make_user(plan=plans["magnetic"])
    await make_balance(str(user.id), plan_credits=1, cycle_end_date=NOW - timedelta(days=1))

    await run_renewals(now=NOW)
    again = await run_renewals(now=NOW)

    assert again.renewed_plans == 0
    assert len(await ledger(str(user.id))) == 2


async def test_trial_expiry_zeroes_plan_and_never_renews(plans, make_user, make_balance, ledger):
    user = await make_user(plan=plans["basic"])
    uid = str(user.id)
    await make_balance(
        uid,
        plan_credits=6,
        bonus_credits=3,
        cycle_end_date=NOW - timedelta(hours=1),
        plan_credits_expire_at=NOW - timedelta(hours=1),
    )

    report = await run_renewals(now=NOW)
    later = await run_renewals(now=NOW + timedelta(days=60))

    assert report.expired_trials == 1
    assert later.expired_trials == 0
    balance = await balances.get_balance(uid)
    assert (balance.plan_credits, balance.bonus_credits) == (0, 3)
    assert balance.cycle_end_date is None
    assert balance.plan_credits_expire_at is None
    rows = await ledger(uid)
    assert [(r.amount, r.source, r.balance_after) for r in rows] == [(-6, "trial_expired", 3)]


async def test_plan_credit_expiry_sweep(plans, make_user, make_balance, ledger):
    user = await make_user(plan=plans["basic"])
    uid = str(user.id)
    await make_balance(uid, plan_credits=5, plan_credits_expire_at=NOW - timedelta(minutes=5))

    report = await run_renewals(now=NOW)

    assert report.expired_credits == 1
    assert (await balances.get_balance(uid)).plan_credits == 0
    rows = await ledger(uid)
    assert [(r.amount, r.source) for r in rows] == [(-5, "credits_expired")]


async def test_user_without_plan_is_skipped(make_user, make_balance, ledger):
    user = await make_user()
    await make_balance(str(user.id), plan_credits=3, cycle_end_date=NOW - timedelta(days=1))

    report = await run_renewals(now=NOW)

    assert report.renewed_plans == 0
    assert report.errors == 0
    assert (await balances.get_balance(str(user.id))).plan_credits == 3


async def test_subscription_resets_without_rollover(make_user, make_balance, ledger):
    user = await make_user()
    uid = str(user.id)
    await make_balance(uid, subscription_credits=8, bonus_credits=1)
    due = NOW - timedelta(hours=2)
    subscription = CreditSubscription(user_id=uid, tier="Pro 50", credits_per_month=50, next_renewal_at=due)
    await subscription.insert()

    report = await run_renewals(now=NOW)
    again = await run_renewals(now=NOW)

    assert report.renewed_subscriptions == 1
    assert again.renewed_subscriptions == 0
    assert (await balances.get_balance(uid)).subscription_credits == 50
    stored = await CreditSubscription.get(subscription.id)
    assert stored.next_renewal_at == add_months(due)
    rows = await ledger(uid)
    assert [(r.type, r.amount, r.source, r.balance_after) for r in rows] == [
        ("consumption", -8, "subscription_reset", 1),
        ("subscription_renewal", 50, "subscription_renewal", 51),
    ]


async def test_failed_subscription_grant_is_retried_next_run(make_user, make_balance, monkeypatch):
    user = await make_user()
    uid = str(user.id)
    await make_balance(uid)
    due = NOW - timedelta(hours=2)
    subscription = CreditSubscription(user_id=uid, tier="Pro 50", credits_per_month=50, next_renewal_at=due)
    await subscription.insert()

    real_mutate = balances.mutate_balance

    async def conflicting(user_id, compute, **kwargs):
        raise ConflictError("balance changed concurrently")

    monkeypatch.setattr(balances, "mutate_balance", conflicting)
    failed = await run_renewals(now=NOW)

    assert failed.errors == 1
    assert (await CreditSubscription.get(subscription.id)).next_renewal_at == due

    monkeypatch.setattr(balances, "mutate_balance", real_mutate)
    retry = await run_renewals(now=NOW)

    assert retry.renewed_subscriptions == 1
    assert (await balances.get_balance(uid)).subscription_credits == 50
    assert (await CreditSubscription.get(subscription.id)).next_renewal_at == add_months(due)


async def test_cancelled_subscription_is_not_renewed(make_user, make_balance):
    user = await make_user()
    await make_balance(str(user.id), subscription_credits=2)
    await CreditSubscription(
        user_id=str(user.id),
        tier="Pro 50",
        credits_per_month=50,
        status="cancelled",
        next_renewal_at=NOW - timedelta(days=1),
    ).insert()

    report = await run_renewals(now=NOW)

    assert report.renewed_subscriptions == 0
    assert (await balances.get_balance(str(user.id))).subscription_credits == 2


async def test_subscription_without_balance_is_skipped(make_user):
    user = await make_user()
    await CreditSubscription(
        user_id=str(user.id), tier="Pro 50", credits_per_month=50, next_renewal_at=NOW - timedelta(days=1)
    ).insert()

    report = await run_renewals(now=NOW)

    assert report.renewed_subscriptions == 0
    assert report.errors == 0


async def test_renewal_report_shape():
    report = await run_renewals(now=NOW)
    body = report.as_dict()
    assert body["success"] is True
    assert body["processed_at"] == NOW.isoformat()
    assert {"renewed_plans", "renewed_subscriptions", "expired_trials", "errors"} <= body.keys()

"""Read side for the client: balance, history and cycle usage."""

from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable

from magnetic.models.credit_balance import CreditBalance
from magnetic.models.credit_transaction import CreditTransaction
from magnetic.services import balances

# Consumption entries that record forfeited credits rather than usage.
FORFEIT_SOURCES = frozenset(
    {"cycle_reset", "trial_expired", "credits_expired", "plan_reset", "subscription_reset"}
)
HISTORY_LIMIT = 100


def transaction_out(t: CreditTransaction) -> dict[str, Any]:
    return {
        "id": str(t.id),
        "type": t.type,
        "amount": t.amount,
        "source": t.source,
        "balance_after": t.balance_after,
        "metadata": t.metadata,
        "created_at": t.created_at.isoformat(),
    }


def cycle_progress(
    balance: CreditBalance | None,
    transactions: Iterable[CreditTransaction],
    now: datetime,
) -> dict[str, Any]:
    view = balances.balance_view(balance)
    usage = [t for t in transactions if t.type == "consumption" and t.source not in FORFEIT_SOURCES]
    total_consumed = sum(abs(t.amount) for t in usage)
    total_monthly = view["plan"] + view["subscription"] + total_consumed
    percent_used = round(total_consumed / total_monthly * 100) if total_monthly > 0 else 0

    by_feature: dict[str, int] = defaultdict(int)
    for t in usage:
        by_feature[t.source or "other"] += abs(t.amount)

    projected_days_left = None
    if usage and total_consumed > 0:
        first = min(t.created_at for t in usage)
        days = max(1.0, (now - first).total_seconds() / 86400)
        daily_rate = total_consumed / days
        projected_days_left = round(view["total"] / daily_rate)

    cycle_end = balance.cycle_end_date if balance else None
    return {
        "total_consumed": total_consumed,
        "total_monthly": total_monthly,
        "percent_used": percent_used,
        "usage_by_feature": dict(by_feature),
        "projected_days_left": projected_days_left,
        "remaining": view["total"],
        "cycle_end_date": cycle_end.isoformat() if cycle_end else None,
    }


async def list_transactions(user_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
    return (
        await CreditTransaction.find(CreditTransaction.user_id == user_id)
        .sort(-CreditTransaction.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def summary(user_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Balance plus usage in the current cycle (last 100 entries when there is no cycle)."""
    now = now or datetime.utcnow()
    balance = await balances.get_balance(user_id)
    query = CreditTransaction.find(CreditTransaction.user_id == user_id)
    if balance is not None and balance.cycle_start_date is not None:
        query = query.find(CreditTransaction.created_at >= balance.cycle_start_date)
    transactions = await query.sort(-CreditTransaction.created_at).limit(HISTORY_LIMIT).to_list()
    return {
        "balance": balances.balance_view(balance),
        "cycle": cycle_progress(balance, transactions, now),
    }

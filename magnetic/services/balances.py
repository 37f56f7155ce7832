"""Credit buckets, ledger entries and compare-and-swap balance updates."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from beanie import PydanticObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from magnetic.core.config import get_settings
from magnetic.core.exceptions import (
    BalanceConflictError,
    ConflictError,
    InsufficientCreditsError,
    NoCreditsConfiguredError,
)
from magnetic.core.logging import get_logger
from magnetic.models.credit_balance import CreditBalance
from magnetic.models.credit_transaction import CreditTransaction

log = get_logger(__name__)

# Debit priority: credits that expire or reset are spent before bonus credits.
BUCKETS = ("plan_credits", "subscription_credits", "bonus_credits")

TRANSACTION_TYPES = (
    "consumption",
    "plan_renewal",
    "subscription_renewal",
    "bonus_purchase",
    "admin_adjustment",
)


@dataclass
class Mutation:
    """What a balance computation wants written.

    `error` is raised after the change is committed, for outcomes such as
    "expired credits were zeroed, then the charge failed".
    """
    changes: dict[str, Any] = field(default_factory=dict)
    entries: list[dict[str, Any]] = field(default_factory=list)
    error: Exception | None = None


def buckets_of(balance: CreditBalance) -> dict[str, int]:
    return {name: getattr(balance, name) for name in BUCKETS}


def total(buckets: Mapping[str, int]) -> int:
    return sum(int(buckets.get(name, 0) or 0) for name in BUCKETS)


def balance_view(source: CreditBalance | Mapping[str, int] | None) -> dict[str, int]:
    """Client-facing {plan, subscription, bonus, total}."""
    if source is None:
        return {"plan": 0, "subscription": 0, "bonus": 0, "total": 0}
    buckets = buckets_of(source) if isinstance(source, CreditBalance) else source
    return {
        "plan": buckets.get("plan_credits", 0),
        "subscription": buckets.get("subscription_credits", 0),
        "bonus": buckets.get("bonus_credits", 0),
        "total": total(buckets),
    }


def debit(buckets: Mapping[str, int], cost: int) -> dict[str, int]:
    """Return new bucket values after charging `cost`, plan -> subscription -> bonus.

    Never debits partially: raises InsufficientCreditsError with the untouched balance.
    """
    if cost < 0:
        raise ValueError("cost must not be negative")
    out = {name: int(buckets.get(name, 0) or 0) for name in BUCKETS}
    if total(out) < cost:
        raise InsufficientCreditsError(balance_view(out), cost)
    remaining = cost
    for name in BUCKETS:
        if remaining == 0:
            break
        take = min(remaining, out[name])
        out[name] -= take
        remaining -= take
    return out


def expire_plan_credits(balance: CreditBalance, now: datetime) -> dict[str, Any] | None:
    """Changes that zero plan credits whose expiration has passed, or None."""
    expire_at = balance.plan_credits_expire_at
    if expire_at is None or expire_at > now:
        return None
    return {"plan_credits": 0, "plan_credits_expire_at": None}


def ledger_entry(
    user_id: str,
    type: str,
    amount: int,
    source: str,
    balance_after: int,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Ledger row with a pre-allocated id, so it can be replayed without duplicates."""
    if type not in TRANSACTION_TYPES:
        raise ValueError(f"Invalid transaction type: {type}")
    return {
        "_id": PydanticObjectId(),
        "user_id": user_id,
        "type": type,
        "amount": amount,
        "source": source,
        "balance_after": balance_after,
        "metadata": metadata,
        "created_at": datetime.utcnow(),
    }


async def get_balance(user_id: str) -> CreditBalance | None:
    return await CreditBalance.find_one(CreditBalance.user_id == user_id)


async def ensure_balance(user_id: str) -> CreditBalance:
    """Return the user's balance row, creating an empty one on first plan assignment."""
    balance = await get_balance(user_id)
    if balance:
        return balance
    balance = CreditBalance(user_id=user_id)
    try:
        await balance.insert()
    except DuplicateKeyError:
        # Another request created it first.
        balance = await get_balance(user_id)
    return balance


async def apply_change(
    balance: CreditBalance,
    changes: dict[str, Any],
    entries: list[dict[str, Any]] | None = None,
) -> CreditBalance:
    """Write bucket changes and their ledger entries as one logical unit.

    The balance update is conditioned on `version` and pushes the entries into
    `pending_ledger` atomically; entries are then inserted into the ledger and
    pulled. A crash in between leaves them pending for `flush_pending_ledger`.
    """
    entries = entries or []
    set_fields = {**changes, "updated_at": datetime.utcnow()}
    for name in BUCKETS:
        if name in set_fields and set_fields[name] < 0:
            raise ValueError(f"{name} cannot go negative")
    update: dict[str, Any] = {"$set": set_fields, "$inc": {"version": 1}}
    if entries:
        update["$push"] = {"pending_ledger": {"$each": entries}}
    collection = CreditBalance.get_motor_collection()
    result = await collection.update_one({"_id": balance.id, "version": balance.version}, update)
    if result.matched_count == 0:
        raise BalanceConflictError(balance.user_id)
    for key, value in set_fields.items():
        setattr(balance, key, value)
    balance.version += 1
    if entries:
        await _commit_entries(balance, entries)
    return balance


async def _commit_entries(balance: CreditBalance, entries: list[dict[str, Any]]) -> None:
    collection = CreditBalance.get_motor_collection()
    try:
        for entry in entries:
            await _insert_entry(entry)
    except PyMongoError as e:
        log.error(
            "ledger_write_failed",
            user_id=balance.user_id,
            entry_ids=[str(x["_id"]) for x in entries],
            reason=str(e),
        )
        return
    await collection.update_one(
        {"_id": balance.id},
        {"$pull": {"pending_ledger": {"_id": {"$in": [x["_id"] for x in entries]}}}},
    )


async def _insert_entry(entry: dict[str, Any]) -> bool:
    """Insert one pending entry; False if it was already in the ledger."""
    if await CreditTransaction.get(entry["_id"]):
        return False
    fields = {k: v for k, v in entry.items() if k != "_id"}
    await CreditTransaction(id=entry["_id"], **fields).insert()
    return True


async def flush_pending_ledger() -> int:
    """Insert ledger entries left behind by an interrupted write; returns how many were recovered."""
    recovered = 0
    collection = CreditBalance.get_motor_collection()
    stuck = await CreditBalance.find({"pending_ledger": {"$ne": []}}).to_list()
    for balance in stuck:
        entries = list(balance.pending_ledger)
        for entry in entries:
            if await _insert_entry(entry):
                recovered += 1
        await collection.update_one(
            {"_id": balance.id},
            {"$pull": {"pending_ledger": {"_id": {"$in": [x["_id"] for x in entries]}}}},
        )
    if recovered:
        log.warning("ledger_entries_recovered", count=recovered)
    return recovered


async def mutate_balance(
    user_id: str,
    compute: Callable[[CreditBalance], Mutation | None],
) -> CreditBalance:
    """Read, compute and compare-and-swap until the write lands or retries run out.

    `compute` must be pure with respect to the balance it receives: it is called
    again with a fresh read after every conflict.
    """
    attempts = get_settings().balance_max_retries
    for attempt in range(1, attempts + 1):
        balance = await get_balance(user_id)
        if balance is None:
            raise NoCreditsConfiguredError(user_id)
        mutation = compute(balance)
        if mutation is None or (not mutation.changes and not mutation.entries):
            if mutation is not None and mutation.error:
                raise mutation.error
            return balance
        try:
            balance = await apply_change(balance, mutation.changes, mutation.entries)
        except BalanceConflictError:
            log.warning("balance_conflict_retry", user_id=user_id, attempt=attempt)
            continue
        if mutation.error:
            raise mutation.error
        return balance
    raise ConflictError("Balance is busy, try again", details={"user_id": user_id})

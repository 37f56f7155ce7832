"""Hotmart webhook: verify, log, and turn purchase events into plan/credit changes.

The provider always gets a 200; the outcome lives in `webhook_logs`.
"""

import json
import re
from datetime import datetime, timedelta
from typing import Any, Mapping

from pymongo.errors import DuplicateKeyError, PyMongoError

from magnetic.core.config import get_settings
from magnetic.core.exceptions import (
    InvalidWebhookSignatureError,
    WebhookError,
    WebhookPayloadError,
)
from magnetic.core.logging import get_logger
from magnetic.core.security import secrets_match, verify_hmac_signature
from magnetic.models.credit_balance import CreditBalance
from magnetic.models.credit_package import CreditPackage
from magnetic.models.credit_purchase import CreditPurchase
from magnetic.models.credit_subscription import CreditSubscription
from magnetic.models.plan import Plan
from magnetic.models.user import User
from magnetic.models.webhook_event import WebhookEvent
from magnetic.models.webhook_log import WebhookLog
from magnetic.services import balances, plans
from magnetic.services.plan_changes import Trigger, assign_plan

log = get_logger(__name__)

SOURCE = "hotmart"
HMAC_HEADER = "x-hotmart-hmac-sha256"
HOTTOK_HEADER = "x-hotmart-hottok"

PURCHASE_APPROVED = "PURCHASE_APPROVED"
CANCELLATION_EVENTS = ("PURCHASE_CANCELED", "SUBSCRIPTION_CANCELLATION")
SUBSCRIPTION_RENEWAL = "SUBSCRIPTION_RENEWAL"

# RFC 5321: max 254 chars; only safe characters allowed
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")
EMAIL_MAX_LENGTH = 254
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1F\x7F]")


def _dig(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise WebhookPayloadError(f"Invalid JSON body: {e}") from e
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")
    return payload


def extract_event_type(payload: dict[str, Any]) -> str | None:
    return payload.get("event") or _dig(payload, "data", "event") or None


def extract_event_id(payload: dict[str, Any]) -> str | None:
    value = payload.get("id")
    return str(value) if value else None


def extract_email(payload: dict[str, Any]) -> str:
    raw = (
        _dig(payload, "data", "buyer", "email")
        or _dig(payload, "buyer", "email")
        or _dig(payload, "data", "subscriber", "email")
    )
    if not raw or not isinstance(raw, str):
        raise WebhookPayloadError("No buyer email")
    email = raw.lower().strip()
    if len(email) > EMAIL_MAX_LENGTH:
        raise WebhookPayloadError(f"Email too long ({len(email)} chars)")
    if CONTROL_CHARS_RE.search(email) or not EMAIL_RE.match(email):
        raise WebhookPayloadError("Invalid email format")
    return email


def extract_product_id(payload: dict[str, Any]) -> str | None:
    value = (
        _dig(payload, "data", "product", "id")
        or _dig(payload, "product", "id")
        or _dig(payload, "data", "subscription", "product", "id")
    )
    return str(value) if value else None


def verify_signature(raw_body: bytes, headers: Mapping[str, str]) -> None:
    """HMAC-SHA256 over the raw body when a secret is configured."""
    secret = get_settings().hotmart_webhook_secret
    if secret and not verify_hmac_signature(raw_body, headers.get(HMAC_HEADER), secret):
        raise InvalidWebhookSignatureError("Invalid HMAC signature")


def verify_hottok(payload: dict[str, Any], headers: Mapping[str, str]) -> None:
    """Legacy static token, only consulted when no HMAC secret is configured."""
    s = get_settings()
    if s.hotmart_webhook_secret or not s.hotmart_hottok:
        return
    received = payload.get("hottok") or headers.get(HOTTOK_HEADER) or ""
    if not secrets_match(str(received), s.hotmart_hottok):
        raise InvalidWebhookSignatureError("Invalid hottok")


def verify_webhook(raw_body: bytes, headers: Mapping[str, str], payload: dict[str, Any]) -> None:
    verify_signature(raw_body, headers)
    verify_hottok(payload, headers)


async def record(
    event_type: str | None,
    event_id: str | None,
    payload: Any,
    status: str,
    error_message: str | None = None,
) -> None:
    try:
        await WebhookLog(
            source=SOURCE,
            event_type=event_type,
            event_id=event_id,
            payload=payload,
            status=status,
            error_message=error_message,
        ).insert()
    except PyMongoError as e:
        log.error("webhook_log_failed", event_type=event_type, status=status, reason=str(e))


async def claim_event(event_id: str) -> bool:
    """Insert the event's claim row; False when another delivery already holds it."""
    try:
        await WebhookEvent(source=SOURCE, event_id=event_id).insert()
    except DuplicateKeyError:
        return False
    return True


async def complete_event(event_id: str, now: datetime) -> None:
    await WebhookEvent.get_motor_collection().update_one(
        {"source": SOURCE, "event_id": event_id},
        {"$set": {"status": "processed", "updated_at": now}},
    )


async def release_event(event_id: str) -> None:
    """Drop an unfinished claim so the provider's retry can process the event."""
    try:
        await WebhookEvent.get_motor_collection().delete_one(
            {"source": SOURCE, "event_id": event_id, "status": "processing"}
        )
    except PyMongoError as e:
        log.error("webhook_claim_release_failed", event_id=event_id, reason=str(e))


async def handle_webhook(raw_body: bytes, headers: Mapping[str, str], now: datetime | None = None) -> dict[str, str]:
    """Verify and process one delivery; returns the body to send back with HTTP 200."""
    now = now or datetime.utcnow()
    payload: Any = None
    event_type = event_id = None
    claimed = False
    try:
        payload = parse_payload(raw_body)
        event_type = extract_event_type(payload)
        event_id = extract_event_id(payload)
        verify_webhook(raw_body, headers, payload)

        if event_id:
            claimed = await claim_event(event_id)
        if event_id and not claimed:
            log.info("webhook_duplicate", event_type=event_type, event_id=event_id)
            await record(event_type, event_id, payload, "duplicate")
            return {"status": "ok"}

        await record(event_type, event_id, payload, "received")
        email = extract_email(payload)
        product_id = extract_product_id(payload)
        log.info("webhook_received", event_type=event_type, event_id=event_id, product_id=product_id)
        await dispatch(event_type, email, product_id, now)
        if claimed:
            # Applied: from here on the claim is kept even if marking it fails.
            claimed = False
            await complete_event(event_id, now)
        await record(event_type, event_id, payload, "processed")
        return {"status": "ok"}
    except WebhookError as e:
        log.warning("webhook_not_processed", status=e.status, event_type=event_type, reason=str(e))
        if claimed:
            await release_event(event_id)
        if payload is None:
            # Unparsed body: keep the raw text for replay.
            payload = raw_body.decode("utf-8", errors="replace")
        await record(event_type, event_id, payload, e.status, str(e))
        return {"status": e.status}
    except Exception as e:
        log.exception("webhook_failed", event_type=event_type, event_id=event_id)
        if claimed:
            await release_event(event_id)
        await record(event_type, event_id, payload, "error", str(e)[:500])
        return {"status": "error"}


async def dispatch(event_type: str | None, email: str, product_id: str | None, now: datetime) -> None:
    if event_type == PURCHASE_APPROVED:
        await handle_purchase_approved(email, product_id, now)
    elif event_type in CANCELLATION_EVENTS:
        await handle_cancellation(email, product_id, now)
    elif event_type == SUBSCRIPTION_RENEWAL:
        await handle_subscription_renewal(email, product_id, now)
    else:
        log.info("webhook_event_ignored", event_type=event_type)


async def _find_user(email: str) -> User | None:
    user = await User.find_one(User.email == email)
    if user is None:
        log.info("webhook_user_not_found", email=email)
    return user


async def handle_purchase_approved(email: str, product_id: str | None, now: datetime) -> None:
    if not product_id:
        log.info("purchase_without_product", email=email)
        return
    plan = await plans.plan_for_product(product_id)
    if plan is not None:
        user = await _find_user(email)
        if user:
            await assign_plan(user, plan, Trigger.PURCHASE, now=now, actor_id=f"{SOURCE}:webhook")
        return
    package = await plans.package_for_product(product_id)
    if package is not None:
        user = await _find_user(email)
        if user:
            await activate_credit_package(user, package, now)
        return
    log.warning("unknown_product", product_id=product_id)


async def activate_credit_package(user: User, package: CreditPackage, now: datetime) -> CreditBalance:
    """One-time packages add bonus credits; recurring ones add subscription credits and (re)open the subscription."""
    user_id = str(user.id)
    await balances.ensure_balance(user_id)
    metadata = {"package_name": package.name, "package_id": str(package.id), "source": SOURCE}

    if package.package_type == "one_time":
        def grant_bonus(balance: CreditBalance) -> balances.Mutation:
            new_bonus = balance.bonus_credits + package.credits_amount
            after = {**balances.buckets_of(balance), "bonus_credits": new_bonus}
            return balances.Mutation(
                changes={"bonus_credits": new_bonus},
                entries=[
                    balances.ledger_entry(
                        user_id,
                        "bonus_purchase",
                        package.credits_amount,
                        f"package_{package.id}",
                        balances.total(after),
                        metadata,
                    )
                ],
            )

        balance = await balances.mutate_balance(user_id, grant_bonus)
        await CreditPurchase(
            user_id=user_id,
            package=package.name,
            credits=package.credits_amount,
            price_brl=package.price_brl,
        ).insert()
        log.info("bonus_credits_granted", user_id=user_id, credits=package.credits_amount)
        return balance

    await upsert_subscription(user_id, package, now)

    def grant_subscription(balance: CreditBalance) -> balances.Mutation:
        new_subscription = balance.subscription_credits + package.credits_amount
        after = {**balances.buckets_of(balance), "subscription_credits": new_subscription}
        return balances.Mutation(
            changes={"subscription_credits": new_subscription},
            entries=[
                balances.ledger_entry(
                    user_id,
                    "subscription_renewal",
                    package.credits_amount,
                    f"subscription_{package.id}",
                    balances.total(after),
                    metadata,
                )
            ],
        )

    balance = await balances.mutate_balance(user_id, grant_subscription)
    log.info("subscription_credits_granted", user_id=user_id, credits=package.credits_amount)
    return balance


async def upsert_subscription(user_id: str, package: CreditPackage, now: datetime) -> CreditSubscription:
    next_renewal = now + timedelta(days=get_settings().subscription_renewal_days)
    subscription = await CreditSubscription.find_one(CreditSubscription.user_id == user_id)
    if subscription is None:
        subscription = CreditSubscription(
            user_id=user_id,
            tier=package.name,
            credits_per_month=package.credits_amount,
            price_brl=package.price_brl,
            next_renewal_at=next_renewal,
        )
        await subscription.insert()
        return subscription
    subscription.tier = package.name
    subscription.credits_per_month = package.credits_amount
    subscription.price_brl = package.price_brl
    subscription.status = "active"
    subscription.cancelled_at = None
    subscription.next_renewal_at = next_renewal
    subscription.updated_at = now
    await subscription.save()
    return subscription


async def handle_cancellation(email: str, product_id: str | None, now: datetime) -> None:
    """Drop the plan or stop the add-on; credits already granted stay."""
    user = await _find_user(email)
    if user is None or not product_id:
        return
    plan = await Plan.find_one(Plan.external_product_id == product_id)
    if plan is not None and user.plan_id == plan.id:
        await assign_plan(user, None, Trigger.CANCELLATION, now=now, actor_id=f"{SOURCE}:webhook")
        return
    package = await CreditPackage.find_one(CreditPackage.external_product_id == product_id)
    if package is None:
        log.info("cancellation_not_matched", user_id=str(user.id), product_id=product_id)
        return
    subscription = await CreditSubscription.find_one(
        CreditSubscription.user_id == str(user.id),
        CreditSubscription.status == "active",
    )
    if subscription is None:
        return
    subscription.status = "cancelled"
    subscription.cancelled_at = now
    subscription.updated_at = now
    await subscription.save()
    log.info("subscription_cancelled", user_id=str(user.id), tier=subscription.tier)


async def handle_subscription_renewal(email: str, product_id: str | None, now: datetime) -> None:
    if not product_id:
        return
    package = await plans.package_for_product(product_id)
    if package is None or package.package_type != "recurring":
        log.info("renewal_for_non_recurring_product", product_id=product_id)
        return
    user = await _find_user(email)
    if user:
        await activate_credit_package(user, package, now)

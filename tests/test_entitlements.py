import asyncio
import json
from datetime import timedelta

import pytest
import pytest_asyncio

from magnetic.core.exceptions import WebhookPayloadError
from magnetic.core.security import hmac_sha256_hex
from magnetic.models.credit_package import CreditPackage
from magnetic.models.credit_purchase import CreditPurchase
from magnetic.models.credit_subscription import CreditSubscription
from magnetic.models.user import User
from magnetic.models.webhook_event import WebhookEvent
from magnetic.models.webhook_log import WebhookLog
from magnetic.services import balances, entitlements
from magnetic.services.entitlements import extract_email, handle_webhook

from conftest import NOW

SECRET = "hotmart-test-secret"


def event(name: str, product_id: str, email: str = "ana@example.com", event_id: str = "evt-1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "event": name,
            "data": {"buyer": {"email": email}, "product": {"id": product_id}},
        }
    ).encode()


def signed(body: bytes) -> dict[str, str]:
    return {"x-hotmart-hmac-sha256": hmac_sha256_hex(body, SECRET)}


@pytest.fixture(autouse=True)
def webhook_secret(settings, monkeypatch):
    monkeypatch.setattr(settings, "hotmart_webhook_secret", SECRET)
    monkeypatch.setattr(settings, "hotmart_hottok", "")


@pytest_asyncio.fixture
async def packages():
    one_time = CreditPackage(name="Pack 20", package_type="one_time", credits_amount=20, external_product_id="3003")
    recurring = CreditPackage(name="Pro 50", package_type="recurring", credits_amount=50, external_product_id="4004")
    await one_time.insert()
    await recurring.insert()
    return {"one_time": one_time, "recurring": recurring}


def test_extract_email_normalises_and_validates():
    payload = {"data": {"buyer": {"email": "  Ana@Example.COM "}}}
    assert extract_email(payload) == "ana@example.com"
    assert extract_email({"data": {"subscriber": {"email": "b@x.io"}}}) == "b@x.io"
    with pytest.raises(WebhookPayloadError):
        extract_email({"data": {"buyer": {"email": "not-an-email"}}})
    with pytest.raises(WebhookPayloadError):
        extract_email({"data": {"buyer": {"email": "a" * 250 + "@x.com"}}})
    with pytest.raises(WebhookPayloadError):
        extract_email({"data": {}})


async def test_invalid_signature_is_rejected_without_mutation(plans, make_user):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "2002")

    result = await handle_webhook(body, {"x-hotmart-hmac-sha256": "0" * 64}, now=NOW)

    assert result == {"status": "rejected"}
    assert await balances.get_balance(str(user.id)) is None
    assert (await User.get(user.id)).plan_id is None
    logged = await WebhookLog.find_all().to_list()
    assert [w.status for w in logged] == ["rejected"]


async def test_missing_signature_is_rejected(plans, make_user):
    await make_user()
    result = await handle_webhook(event("PURCHASE_APPROVED", "2002"), {}, now=NOW)
    assert result == {"status": "rejected"}


async def test_purchase_of_plan_assigns_it(plans, make_user, ledger):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "2002")

    result = await handle_webhook(body, signed(body), now=NOW)

    assert result == {"status": "ok"}
    stored = await User.get(user.id)
    assert stored.plan_slug == "magnetic"
    balance = await balances.get_balance(str(user.id))
    assert balance.plan_credits == 30
    assert balance.cycle_end_date == NOW + timedelta(days=30)
    statuses = [w.status for w in await WebhookLog.find_all().sort("_id").to_list()]
    assert statuses == ["received", "processed"]


async def test_duplicate_event_is_not_applied_twice(plans, make_user, ledger):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "2002", event_id="evt-dup")

    await handle_webhook(body, signed(body), now=NOW)
    second = await handle_webhook(body, signed(body), now=NOW)

    assert second == {"status": "ok"}
    assert len(await ledger(str(user.id))) == 1
    assert await WebhookLog.find(WebhookLog.status == "duplicate").count() == 1


async def test_concurrent_deliveries_apply_once(plans, make_user, ledger):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "2002", event_id="evt-race")

    results = await asyncio.gather(*(handle_webhook(body, signed(body), now=NOW) for _ in range(3)))

    assert results == [{"status": "ok"}] * 3
    assert len(await ledger(str(user.id))) == 1
    assert await WebhookLog.find(WebhookLog.status == "duplicate").count() == 2
    claim = await WebhookEvent.find_one(WebhookEvent.event_id == "evt-race")
    assert claim.status == "processed"


async def test_failed_delivery_releases_its_claim(plans, make_user, ledger, monkeypatch):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "2002", event_id="evt-retry")
    real_dispatch = entitlements.dispatch

    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(entitlements, "dispatch", broken)
    first = await handle_webhook(body, signed(body), now=NOW)
    monkeypatch.setattr(entitlements, "dispatch", real_dispatch)
    retry = await handle_webhook(body, signed(body), now=NOW)

    assert first == {"status": "error"}
    assert retry == {"status": "ok"}
    assert (await User.get(user.id)).plan_slug == "magnetic"
    assert len(await ledger(str(user.id))) == 1


async def test_one_time_package_adds_bonus(plans, packages, make_user, make_balance, ledger):
    user = await make_user()
    await make_balance(str(user.id), plan_credits=5)
    body = event("PURCHASE_APPROVED", "3003")

    await handle_webhook(body, signed(body), now=NOW)

    balance = await balances.get_balance(str(user.id))
    assert (balance.plan_credits, balance.bonus_credits) == (5, 20)
    rows = await ledger(str(user.id))
    assert [(r.type, r.amount, r.source, r.balance_after) for r in rows] == [
        ("bonus_purchase", 20, f"package_{packages['one_time'].id}", 25)
    ]
    purchase = await CreditPurchase.find_one(CreditPurchase.user_id == str(user.id))
    assert purchase.credits == 20


async def test_recurring_package_opens_subscription(packages, make_user, ledger):
    user = await make_user()
    body = event("PURCHASE_APPROVED", "4004")

    await handle_webhook(body, signed(body), now=NOW)

    balance = await balances.get_balance(str(user.id))
    assert balance.subscription_credits == 50
    subscription = await CreditSubscription.find_one(CreditSubscription.user_id == str(user.id))
    assert subscription.status == "active"
    assert subscription.next_renewal_at == NOW + timedelta(days=30)
    rows = await ledger(str(user.id))
    assert [(r.type, r.source) for r in rows] == [("subscription_renewal", f"subscription_{packages['recurring'].id}")]


async def test_cancelling_current_plan_clears_it_but_keeps_credits(plans, make_user):
    user = await make_user()
    buy = event("PURCHASE_APPROVED", "2002", event_id="evt-buy")
    await handle_webhook(buy, signed(buy), now=NOW)

    cancel = event("PURCHASE_CANCELED", "2002", event_id="evt-cancel")
    result = await handle_webhook(cancel, signed(cancel), now=NOW)

    assert result == {"status": "ok"}
    stored = await User.get(user.id)
    assert stored.plan_id is None
    assert (await balances.get_balance(str(user.id))).plan_credits == 30


async def test_cancelling_other_plan_keeps_current(plans, make_user):
    user = await make_user(plan=plans["magnetic"])
    cancel = event("SUBSCRIPTION_CANCELLATION", "1001", event_id="evt-cancel-basic")

    await handle_webhook(cancel, signed(cancel), now=NOW)

    assert (await User.get(user.id)).plan_slug == "magnetic"


async def test_cancelling_addon_marks_subscription_cancelled(packages, make_user):
    user = await make_user()
    buy = event("PURCHASE_APPROVED", "4004", event_id="evt-sub")
    await handle_webhook(buy, signed(buy), now=NOW)

    cancel = event("SUBSCRIPTION_CANCELLATION", "4004", event_id="evt-sub-cancel")
    await handle_webhook(cancel, signed(cancel), now=NOW)

    subscription = await CreditSubscription.find_one(CreditSubscription.user_id == str(user.id))
    assert subscription.status == "cancelled"
    assert subscription.cancelled_at == NOW
    assert (await balances.get_balance(str(user.id))).subscription_credits == 50


async def test_subscription_renewal_event_adds_credits(packages, make_user):
    user = await make_user()
    first = event("PURCHASE_APPROVED", "4004", event_id="evt-a")
    await handle_webhook(first, signed(first), now=NOW)
    renewal = event("SUBSCRIPTION_RENEWAL", "4004", event_id="evt-b")

    await handle_webhook(renewal, signed(renewal), now=NOW + timedelta(days=30))

    assert (await balances.get_balance(str(user.id))).subscription_credits == 100


async def test_unknown_user_is_acknowledged(plans):
    body = event("PURCHASE_APPROVED", "2002", email="ghost@example.com")
    result = await handle_webhook(body, signed(body), now=NOW)
    assert result == {"status": "ok"}


async def test_bad_email_is_logged_as_error(plans):
    body = event("PURCHASE_APPROVED", "2002", email="bad\x01@example.com")
    result = await handle_webhook(body, signed(body), now=NOW)
    assert result == {"status": "error"}
    assert await WebhookLog.find(WebhookLog.status == "error").count() == 1


async def test_malformed_json_is_logged_as_error():
    body = b"{not json"
    result = await handle_webhook(body, signed(body), now=NOW)
    assert result == {"status": "error"}
    logged = await WebhookLog.find_one(WebhookLog.status == "error")
    assert logged.payload == "{not json"


async def test_hottok_checked_when_no_hmac_secret(plans, make_user, settings, monkeypatch):
    monkeypatch.setattr(settings, "hotmart_webhook_secret", "")
    monkeypatch.setattr(settings, "hotmart_hottok", "tok-123")
    user = await make_user()
    good = json.loads(event("PURCHASE_APPROVED", "2002", event_id="evt-h1"))
    good["hottok"] = "tok-123"
    bad = event("PURCHASE_APPROVED", "2002", event_id="evt-h2")

    assert await handle_webhook(bad, {"x-hotmart-hottok": "wrong"}, now=NOW) == {"status": "rejected"}
    assert await handle_webhook(json.dumps(good).encode(), {}, now=NOW) == {"status": "ok"}
    assert (await User.get(user.id)).plan_slug == "magnetic"


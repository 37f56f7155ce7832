import httpx
import pytest

from magnetic.core.exceptions import UpstreamProviderError
from magnetic.models.audit_log import AuditLog
from magnetic.models.user import User
from magnetic.services import balances
from magnetic.services.crm import ActiveCampaignClient, parse_tag_inputs
from magnetic.services.plan_sync import recheck_user_plans

from conftest import NOW

TAGS = {"aluno-basic": "11", "aluno-magnetic": "22"}


def crm_client(contacts: dict[str, list[str]], failing: set[str] = frozenset()) -> ActiveCampaignClient:
    """Fake ActiveCampaign: `contacts` maps email -> tag ids."""
    ids = {email: str(i + 100) for i, email in enumerate(contacts)}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Api-Token"] == "ac-key"
        path = request.url.path
        if path == "/api/3/tags":
            search = request.url.params["search"]
            found = [{"id": TAGS[search], "tag": search}] if search in TAGS else []
            return httpx.Response(200, json={"tags": found})
        if path == "/api/3/contacts":
            email = request.url.params["email"]
            if email in failing:
                return httpx.Response(500, text="boom")
            found = [{"id": ids[email], "email": email}] if email in ids else []
            return httpx.Response(200, json={"contacts": found})
        if path.endswith("/contactTags"):
            contact_id = path.split("/")[-2]
            email = next(e for e, i in ids.items() if i == contact_id)
            return httpx.Response(200, json={"contactTags": [{"tag": t} for t in contacts[email]]})
        return httpx.Response(404)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ActiveCampaignClient("https://acct.api-us1.com/", "ac-key", http=http)


def test_parse_tag_inputs():
    assert parse_tag_inputs(" aluno-basic, 42 ,,") == ["aluno-basic", "42"]
    assert parse_tag_inputs("") == []


async def test_resolve_tag_ids_keeps_numeric_and_searches_names():
    crm = crm_client({})
    assert await crm.resolve_tag_ids("aluno-magnetic, 99, missing") == {"22", "99"}
    await crm.aclose()


async def test_upstream_error_is_raised():
    crm = crm_client({"err@example.com": []}, failing={"err@example.com"})
    with pytest.raises(UpstreamProviderError):
        await crm.find_contact_id("err@example.com")
    await crm.aclose()


async def test_recheck_outcomes(plans, make_user, make_balance):
    keeps = await make_user("keeps@example.com", plan=plans["magnetic"])
    upgrades = await make_user("upgrades@example.com", plan=plans["basic"])
    loses = await make_user("loses@example.com", plan=plans["basic"])
    gone = await make_user("gone@example.com", plan=plans["magnetic"])
    await make_user("free@example.com")
    for user in (keeps, upgrades, loses, gone):
        await make_balance(str(user.id), plan_credits=4)

    crm = crm_client(
        {
            "keeps@example.com": ["22"],
            "upgrades@example.com": ["11", "22"],
            "loses@example.com": ["77"],
        }
    )
    summary = await recheck_user_plans(crm, now=NOW)
    await crm.aclose()

    assert summary["checked"] == 4
    assert summary["updated"] == 1
    assert summary["downgraded"] == 2
    assert summary["errors"] == 0

    assert (await User.get(keeps.id)).last_crm_verification_at == NOW
    upgraded = await User.get(upgrades.id)
    assert upgraded.plan_slug == "magnetic"
    assert (await balances.get_balance(str(upgrades.id))).plan_credits == 30
    for user in (loses, gone):
        stored = await User.get(user.id)
        assert stored.plan_id is None
        # Losing the tag removes access, never credits.
        assert (await balances.get_balance(str(user.id))).plan_credits == 4

    assert await AuditLog.find_one(AuditLog.event_type == "plan_recheck_run") is not None


async def test_downgrade_by_tag_grants_nothing(plans, make_user, make_balance):
    user = await make_user("down@example.com", plan=plans["magnetic"])
    await make_balance(str(user.id), plan_credits=2)
    crm = crm_client({"down@example.com": ["11"]})

    summary = await recheck_user_plans(crm, now=NOW)
    await crm.aclose()

    assert summary["updated"] == 1
    assert (await User.get(user.id)).plan_slug == "basic"
    assert (await balances.get_balance(str(user.id))).plan_credits == 2


async def test_per_user_errors_do_not_stop_the_run(plans, make_user):
    await make_user("err@example.com", plan=plans["basic"])
    ok = await make_user("ok@example.com", plan=plans["basic"])
    crm = crm_client({"err@example.com": [], "ok@example.com": ["11"]}, failing={"err@example.com"})

    summary = await recheck_user_plans(crm, now=NOW)
    await crm.aclose()

    assert summary["errors"] == 1
    assert summary["checked"] == 1
    assert (await User.get(ok.id)).last_crm_verification_at == NOW


def test_client_requires_configuration(settings, monkeypatch):
    from magnetic.core.exceptions import BadRequestError
    monkeypatch.setattr(settings, "activecampaign_api_url", "")
    with pytest.raises(BadRequestError):
        ActiveCampaignClient.from_settings()

import os
from datetime import datetime
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

# Settings are read once; keep tests away from real services.
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "magnetic_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")
os.environ.setdefault("HOTMART_WEBHOOK_SECRET", "")
os.environ.setdefault("HOTMART_HOTTOK", "")

NOW = datetime(2025, 3, 10, 12, 0, 0)


@pytest_asyncio.fixture(autouse=True)
async def db():
    """Fresh in-memory database per test, bound to every document model."""
    from magnetic.db.init import init_db
    client = AsyncMongoMockClient()
    database = client["magnetic_test"]
    await init_db(database=database)
    yield database


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from magnetic.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def settings():
    from magnetic.core.config import get_settings
    return get_settings()


@pytest_asyncio.fixture
async def plans():
    """Trial plan (10 credits for 30 days) and a monthly plan (30 credits per cycle)."""
    from magnetic.models.plan import Plan
    basic = Plan(
        slug="basic",
        name="Basic",
        display_order=1,
        initial_credits=10,
        credits_expire_days=30,
        features=["script_generation"],
        external_product_id="1001",
        crm_tag="aluno-basic",
    )
    magnetic = Plan(
        slug="magnetic",
        name="Magnetic",
        display_order=2,
        initial_credits=30,
        monthly_credits=30,
        has_monthly_renewal=True,
        can_buy_extra_credits=True,
        features=["script_generation", "chat", "voice_dna"],
        external_product_id="2002",
        crm_tag="aluno-magnetic",
    )
    await basic.insert()
    await magnetic.insert()
    return {"basic": basic, "magnetic": magnetic}


@pytest_asyncio.fixture
async def make_user():
    from magnetic.models.user import User

    async def _make(email: str = "ana@example.com", role: str = "user", plan=None) -> User:
        user = User(email=email, name=email.split("@")[0], role=role)
        if plan is not None:
            user.plan_id = plan.id
            user.plan_slug = plan.slug
        await user.insert()
        return user

    return _make


@pytest_asyncio.fixture
async def make_balance():
    from magnetic.models.credit_balance import CreditBalance

    async def _make(user_id: str, **fields) -> CreditBalance:
        balance = CreditBalance(user_id=user_id, **fields)
        await balance.insert()
        return balance

    return _make


@pytest.fixture
def auth_headers():
    from magnetic.core.security import create_access_token

    def _headers(user) -> dict[str, str]:
        token = create_access_token({"user_id": str(user.id), "session_version": user.session_version})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def ledger():
    """Ledger rows for a user in write order."""
    from magnetic.models.credit_transaction import CreditTransaction

    async def _ledger(user_id: str):
        return await CreditTransaction.find(CreditTransaction.user_id == user_id).sort("_id").to_list()

    return _ledger

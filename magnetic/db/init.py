import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from magnetic.core.config import get_settings
from magnetic.models import (
    Agent,
    AuditLog,
    ChatMessage,
    CreditBalance,
    CreditPackage,
    CreditPurchase,
    CreditSubscription,
    CreditTransaction,
    FailedJob,
    Plan,
    User,
    WebhookEvent,
    WebhookLog,
)

DOCUMENT_MODELS = [
    User,
    Plan,
    CreditPackage,
    CreditBalance,
    CreditTransaction,
    CreditSubscription,
    CreditPurchase,
    Agent,
    ChatMessage,
    WebhookLog,
    WebhookEvent,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database: AsyncIOMotorDatabase | None = None) -> None:
    """Bind every document model; pass `database` to reuse an existing client (worker, tests)."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)

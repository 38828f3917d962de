from typing import Any

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from fulfillment.core.config import get_settings
from fulfillment.models.archived_transaction import ArchivedTransaction
from fulfillment.models.audit_log import AuditLog
from fulfillment.models.credit_account import CreditAccount
from fulfillment.models.dead_letter import DeadLetter
from fulfillment.models.outbox_item import OutboxItem
from fulfillment.models.transaction import Transaction

DOCUMENT_MODELS = [
    Transaction,
    CreditAccount,
    OutboxItem,
    DeadLetter,
    ArchivedTransaction,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client: Any | None = None) -> None:
    """Bind Beanie documents; tests pass an in-memory client."""
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)

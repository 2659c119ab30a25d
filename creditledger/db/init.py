import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from creditledger.core.config import get_settings
from creditledger.models.catalog import FlowListing, PromptListing
from creditledger.models.credit_bucket import CreditBucket
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.failed_job import FailedJob
from creditledger.models.flow_unlock import FlowUnlock
from creditledger.models.referral import Referral
from creditledger.models.system_config import SystemConfig
from creditledger.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditBucket,
    CreditTransaction,
    Referral,
    SystemConfig,
    PromptListing,
    FlowListing,
    FlowUnlock,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def create_client(uri: str | None = None) -> AsyncIOMotorClient:
    uri = uri or get_settings().mongodb_uri
    kwargs = {}
    if _use_tls(uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(uri, **kwargs)


async def init_db(client=None, db_name: str | None = None):
    """Bind the document models to `client` (created from settings if omitted) and return it.

    The caller owns the client and must close it (see `close_db`).
    """
    client = client or create_client()
    database = client[db_name or get_settings().mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client


def close_db(client) -> None:
    client.close()

"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from creditledger.core.config import get_settings
from creditledger.core.security import verify_cron_authorization, verify_service_token
from creditledger.services.ledger import Ledger

SERVICE_TOKEN_HEADER = "X-Service-Token"


def get_ledger(request: Request) -> Ledger:
    """Dependency: the ledger built at startup."""
    return request.app.state.ledger


async def require_service_token(x_service_token: str | None = Header(None, alias=SERVICE_TOKEN_HEADER)) -> None:
    """Dependency: calls from the web layer carry the shared service token."""
    verify_service_token(x_service_token, get_settings().service_token)


async def require_cron_secret(authorization: str | None = Header(None)) -> None:
    """Dependency: scheduler calls carry `Authorization: Bearer <CRON_SECRET>`."""
    verify_cron_authorization(authorization, get_settings().cron_secret)

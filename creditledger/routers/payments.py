from typing import Any

from fastapi import APIRouter, Body, Depends

from creditledger.deps import get_ledger, require_service_token
from creditledger.services.ledger import Ledger

router = APIRouter()


@router.post("/webhook", dependencies=[Depends(require_service_token)])
async def payment_webhook(event: dict[str, Any] = Body(...), ledger: Ledger = Depends(get_ledger)):
    """Provider event, signature already verified by the web layer. Redelivery is a no-op."""
    return await ledger.payments.handle_event(event)

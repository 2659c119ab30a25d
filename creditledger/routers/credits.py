from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditledger.deps import get_ledger, require_service_token
from creditledger.models.enums import ItemType, PromptLength
from creditledger.services.bundles import list_bundles
from creditledger.services.ledger import Ledger

router = APIRouter(dependencies=[Depends(require_service_token)])


class CalculateCostRequest(BaseModel):
    model_id: str
    prompt_length: PromptLength | None = None
    prompt_text: str | None = None
    creator_fee_percent: int = Field(0, ge=0, le=100)


class BurnRequest(BaseModel):
    model_id: str
    prompt_length: PromptLength | None = None
    prompt_text: str | None = None
    creator_id: str | None = None
    creator_fee_percent: int = Field(0, ge=0, le=100)
    item_type: ItemType = ItemType.COMPLETION
    item_id: str | None = None
    flow_id: str | None = None
    source: str | None = None


class ChargePromptRequest(BaseModel):
    prompt_id: str
    model_id: str
    prompt_length: PromptLength | None = None
    prompt_text: str | None = None
    source: str | None = None


class UnlockFlowRequest(BaseModel):
    flow_id: str


@router.get("/users/{user_id}/balance")
async def credits_balance(user_id: str, ledger: Ledger = Depends(get_ledger)):
    """Spendable credits; expired buckets are swept first."""
    return {"user_id": user_id, "balance": await ledger.get_user_total_credits(user_id)}


@router.get("/users/{user_id}/breakdown")
async def credits_breakdown(user_id: str, ledger: Ledger = Depends(get_ledger)):
    breakdown = await ledger.get_user_credit_breakdown(user_id)
    buckets = await ledger.get_user_credit_buckets(user_id)
    return {
        "user_id": user_id,
        "breakdown": breakdown,
        "total": sum(breakdown.values()),
        "buckets": [
            {
                "id": str(b.id),
                "type": b.type.value,
                "amount": b.amount,
                "remaining": b.remaining,
                "source": b.source,
                "expires_at": b.expires_at.isoformat() if b.expires_at else None,
                "created_at": b.created_at.isoformat(),
            }
            for b in buckets
        ],
    }


@router.get("/users/{user_id}/history")
async def credits_history(
    user_id: str,
    limit: int = Query(10, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ledger: Ledger = Depends(get_ledger),
):
    """Transactions, newest first."""
    return await ledger.get_user_credit_history(user_id, limit, offset)


@router.post("/calculate-cost")
async def calculate_cost(body: CalculateCostRequest, ledger: Ledger = Depends(get_ledger)):
    cost = ledger.calculate_cost(body.model_id, body.prompt_length, body.prompt_text, body.creator_fee_percent)
    return cost.to_public()


@router.get("/bundles")
async def credit_bundles(user_id: str | None = None, ledger: Ledger = Depends(get_ledger)):
    """Purchasable bundles; with `user_id`, flags bundles gated on monthly burn."""
    burn = None
    if user_id:
        burn = (await ledger.tiers.calculate_tier(user_id)).monthly_burn
    return {"bundles": list_bundles(burn)}


@router.post("/users/{user_id}/burn")
async def burn_credits(user_id: str, body: BurnRequest, ledger: Ledger = Depends(get_ledger)):
    """Charge one model run. `success: false` means insufficient credits."""
    return await ledger.burn_credits(user_id, **body.model_dump())


@router.post("/users/{user_id}/charge-prompt")
async def charge_prompt(user_id: str, body: ChargePromptRequest, ledger: Ledger = Depends(get_ledger)):
    return await ledger.charge_for_prompt_run(user_id, **body.model_dump())


@router.post("/users/{user_id}/unlock-flow")
async def unlock_flow(user_id: str, body: UnlockFlowRequest, ledger: Ledger = Depends(get_ledger)):
    return await ledger.charge_for_flow_unlock(user_id, body.flow_id)


@router.get("/users/{user_id}/flows/{flow_id}/unlocked")
async def flow_unlocked(user_id: str, flow_id: str, ledger: Ledger = Depends(get_ledger)):
    return {"user_id": user_id, "flow_id": flow_id, "unlocked": await ledger.has_unlocked_flow(user_id, flow_id)}


@router.get("/users/{user_id}/automation/tier")
async def automation_tier(
    user_id: str,
    days: int = Query(30, ge=1, le=365),
    ledger: Ledger = Depends(get_ledger),
):
    return (await ledger.tiers.calculate_tier(user_id, days)).model_dump(mode="json")


@router.get("/users/{user_id}/automation/stats")
async def automation_stats(
    user_id: str,
    days: int = Query(30, ge=1, le=365),
    ledger: Ledger = Depends(get_ledger),
):
    return await ledger.tiers.usage_stats(user_id, days)


@router.get("/users/{user_id}/check")
async def credits_check(
    user_id: str,
    amount: int = Query(..., ge=1),
    ledger: Ledger = Depends(get_ledger),
):
    """Whether the user can afford `amount` right now. Nothing is reserved."""
    return {
        "user_id": user_id,
        "amount": amount,
        "has_enough": await ledger.has_enough_credits(user_id, amount),
        "balance": await ledger.get_user_total_credits(user_id),
    }


@router.get("/creators/{creator_id}/earnings")
async def creator_earnings(creator_id: str, ledger: Ledger = Depends(get_ledger)):
    return await ledger.creator_earnings(creator_id)

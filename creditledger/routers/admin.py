from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditledger.deps import get_ledger, require_service_token
from creditledger.models.enums import BucketType
from creditledger.services.ledger import Ledger

router = APIRouter(dependencies=[Depends(require_service_token)])


class AdjustRequest(BaseModel):
    user_id: str
    amount: int  # positive grants, negative debits
    reason: str = Field(..., min_length=1)
    bucket_type: BucketType = BucketType.BONUS
    expiry_days: int | None = Field(None, gt=0)
    admin_id: str | None = None
    external_ref: str | None = None


class MigrateRequest(BaseModel):
    user_id: str
    amount: int


@router.post("/credits/adjust")
async def admin_adjust_credits(body: AdjustRequest, ledger: Ledger = Depends(get_ledger)):
    """Admin: grant or remove credits for one user."""
    result = await ledger.admin_adjust(**body.model_dump())
    result["balance"] = await ledger.get_user_total_credits(body.user_id)
    return result


@router.post("/credits/migrate")
async def admin_migrate_credits(body: MigrateRequest, ledger: Ledger = Depends(get_ledger)):
    """Admin: move a legacy balance into a purchased bucket (once per user)."""
    bucket = await ledger.migrate_legacy_balance(body.user_id, body.amount)
    return {
        "user_id": body.user_id,
        "migrated": bucket.amount if bucket else 0,
        "bucket_id": str(bucket.id) if bucket else None,
        "balance": await ledger.get_user_total_credits(body.user_id),
    }


@router.get("/credits/stats")
async def admin_credit_stats(ledger: Ledger = Depends(get_ledger)):
    """Admin: platform-wide credit totals, recent burn and revenue."""
    return await ledger.admin_credit_stats()

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditledger.deps import get_ledger, require_service_token
from creditledger.services.ledger import Ledger

router = APIRouter(dependencies=[Depends(require_service_token)])


class SignupRequest(BaseModel):
    user_id: str
    referral_code: str | None = None
    email: str = ""
    name: str = ""


class ReferralConfigUpdate(BaseModel):
    inviter_bonus: int | None = Field(None, ge=0)
    invitee_bonus: int | None = Field(None, ge=0)
    min_spend_requirement: int | None = Field(None, ge=0)
    welcome_bonus: int | None = Field(None, ge=0)
    inviter_expiry_days: int | None = Field(None, gt=0)
    invitee_expiry_days: int | None = Field(None, gt=0)


@router.post("/signup")
async def referral_signup(body: SignupRequest, ledger: Ledger = Depends(get_ledger)):
    """Register a new user's referral code and link their inviter, if any."""
    return await ledger.referrals.process_new_user_signup(
        body.user_id, body.referral_code, email=body.email, name=body.name
    )


@router.get("/users/{user_id}/stats")
async def referral_stats(user_id: str, ledger: Ledger = Depends(get_ledger)):
    return await ledger.referrals.referral_stats(user_id)


@router.get("/config")
async def referral_config(ledger: Ledger = Depends(get_ledger)):
    return (await ledger.referrals.get_referral_config()).model_dump(by_alias=True)


@router.put("/config")
async def update_referral_config(body: ReferralConfigUpdate, ledger: Ledger = Depends(get_ledger)):
    """Admin: partial update of the referral program record."""
    config = await ledger.referrals.update_referral_config(body.model_dump(exclude_none=True))
    return {"success": True, "config": config.model_dump(by_alias=True)}

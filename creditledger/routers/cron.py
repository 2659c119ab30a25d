"""Scheduler-triggered jobs. Each is safe to call more than once."""

from datetime import datetime

from fastapi import APIRouter, Depends

from creditledger.core.logging import job_context
from creditledger.deps import get_ledger, require_cron_secret
from creditledger.services.ledger import Ledger

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.post("/credit-cleanup")
async def credit_cleanup(ledger: Ledger = Depends(get_ledger)):
    with job_context("credit_cleanup", trigger="http"):
        expired = await ledger.sweep_expired()
    return {"success": True, "expired_buckets": expired, "timestamp": datetime.utcnow().isoformat()}


@router.post("/referrals")
async def process_referrals(ledger: Ledger = Depends(get_ledger)):
    with job_context("process_referrals", trigger="http"):
        processed = await ledger.process_referrals()
    return {"success": True, "processed": processed, "timestamp": datetime.utcnow().isoformat()}


@router.post("/automation-bonuses")
async def automation_bonuses(ledger: Ledger = Depends(get_ledger)):
    with job_context("automation_bonuses", trigger="http"):
        results = await ledger.award_automation_bonuses()
    return {"success": True, "results": results, "timestamp": datetime.utcnow().isoformat()}

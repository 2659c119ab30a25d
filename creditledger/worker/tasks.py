"""ARQ job definitions for the ledger's scheduled work."""

import uuid
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from arq.connections import RedisSettings

from creditledger.core.config import get_settings
from creditledger.core.exceptions import AppError
from creditledger.core.logging import configure_logging, get_logger, job_context
from creditledger.db.init import close_db, init_db
from creditledger.models.failed_job import FailedJob
from creditledger.services.ledger import build_ledger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            error_type=type(e).__name__,
            error_code=e.code if isinstance(e, AppError) else None,
            reason=str(e)[:2000],
            retries=0,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def sweep_expired_credits(ctx: dict[str, Any]) -> int:
    """Cron: zero out expired buckets (daily)."""
    ledger = ctx["ledger"]
    with job_context("sweep_expired_credits"):
        log.info("job_start")
        expired = await _run_with_dlq("sweep_expired_credits", _job_id(ctx), [], {}, ledger.sweep_expired())
        log.info("job_done", expired=expired)
    return expired


async def process_referrals(ctx: dict[str, Any]) -> int:
    """Cron: reward referrals whose invitee has spent enough (hourly)."""
    ledger = ctx["ledger"]
    with job_context("process_referrals"):
        log.info("job_start")
        processed = await _run_with_dlq("process_referrals", _job_id(ctx), [], {}, ledger.process_referrals())
        log.info("job_done", processed=processed)
    return processed


async def award_automation_bonuses(ctx: dict[str, Any]) -> dict[str, Any]:
    """Cron: last month's automation tier bonuses (1st of the month)."""
    ledger = ctx["ledger"]
    now = datetime.utcnow()
    with job_context("award_automation_bonuses"):
        log.info("job_start")
        results = await _run_with_dlq(
            "award_automation_bonuses",
            _job_id(ctx),
            [],
            {"now": now.isoformat()},
            ledger.award_automation_bonuses(now),
        )
        log.info("job_done", bonuses_awarded=results["bonuses_awarded"])
    return results


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(debug=settings.debug)
    ctx["mongo_client"] = await init_db()
    # arq's own connection doubles as the lock backend
    ctx["ledger"] = build_ledger(settings, redis=ctx.get("redis"))
    log.info("worker_startup", lock_backend=settings.lock_backend)


async def shutdown(ctx: dict) -> None:
    client = ctx.get("mongo_client")
    if client is not None:
        close_db(client)


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )

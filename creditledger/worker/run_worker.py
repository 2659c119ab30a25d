"""Run ARQ worker. Usage: python -m creditledger.worker.run_worker
(or `arq creditledger.worker.run_worker.WorkerSettings`)"""

from arq import run_worker
from arq.cron import cron
from creditledger.worker.tasks import (
    award_automation_bonuses,
    get_redis_settings,
    process_referrals,
    shutdown,
    startup,
    sweep_expired_credits,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [sweep_expired_credits, process_referrals, award_automation_bonuses]
    cron_jobs = [
        cron(sweep_expired_credits, hour=3, minute=0, second=0),  # daily 03:00 UTC
        cron(process_referrals, minute=0, second=0),  # hourly
        cron(award_automation_bonuses, day=1, hour=0, minute=30, second=0),  # 1st of month 00:30 UTC
    ]
    on_startup = startup
    on_shutdown = shutdown


def main():
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()

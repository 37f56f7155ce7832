"""Run ARQ worker. Usage: python -m magnetic.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from magnetic.worker.tasks import (
    get_redis_settings,
    recheck_user_plans,
    renew_credits,
    scheduled_recheck_user_plans,
    shutdown,
    startup,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [renew_credits, recheck_user_plans, scheduled_recheck_user_plans]
    cron_jobs = [
        cron(renew_credits, hour=3, minute=0, second=0),  # daily 03:00 UTC
        cron(scheduled_recheck_user_plans, hour=4, minute=0, second=0),  # gated to every other day
    ]
    on_startup = startup
    on_shutdown = shutdown
    job_timeout = 3600


def main():
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()

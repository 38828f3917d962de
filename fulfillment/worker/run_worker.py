"""Run ARQ worker. Usage: python -m fulfillment.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from fulfillment.worker.tasks import (
    drain_outbox,
    get_redis_settings,
    prune_old_transactions,
    shutdown,
    startup,
    sweep_stale_transactions,
)


class WorkerSettings:
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    functions = [drain_outbox, sweep_stale_transactions, prune_old_transactions]
    cron_jobs = [
        cron(drain_outbox, second=set(range(0, 60, 5)), unique=True),
        cron(sweep_stale_transactions, second=set(range(0, 60, 10)), unique=True),
        cron(prune_old_transactions, hour=3, minute=0, second=0, unique=True),
    ]


def main():
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()

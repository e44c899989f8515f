"""ARQ worker for payment cleanup and Paystack reconciliation."""

from arq import cron
from libs.common.arq_config import JOB_TIMEOUT_SECONDS, get_redis_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()


async def task_cleanup_payments(ctx: dict):
    from services.payments_service.tasks import cleanup_payments

    logger.info("Running: cleanup_payments")
    result = await cleanup_payments()
    logger.info("Cleanup finished: %s", result["summary"])


async def task_reconcile_pending_payments(ctx: dict):
    from services.payments_service.tasks import reconcile_pending_paystack_payments

    logger.info("Running: reconcile_pending_paystack_payments")
    await reconcile_pending_paystack_payments()


class WorkerSettings:
    redis_settings = get_redis_settings()
    on_startup = startup
    job_timeout = JOB_TIMEOUT_SECONDS
    # Both sweeps are idempotent; a missed run is picked up by the next one
    max_tries = 1

    functions = [
        task_cleanup_payments,
        task_reconcile_pending_payments,
    ]

    cron_jobs = [
        cron(task_cleanup_payments, minute=0, run_at_startup=False),
        cron(
            task_reconcile_pending_payments,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
    ]

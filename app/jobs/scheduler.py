"""
APScheduler Configuration

Background job scheduler for billing and reconciliation.

Jobs:
- monthly_service_billing: 03:00 on the 1st of each month, bills every
  billable landlord for the previous calendar month
- reconcile_unmatched_payments: every RECONCILE_INTERVAL_MINUTES, retries
  automatic matching for unallocated payments
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import settings

logger = logging.getLogger(__name__)

# Job stores
jobstores = {
    'default': MemoryJobStore()
}

# Executors
executors = {
    'default': AsyncIOExecutor(),
}

# Job defaults
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 3600,  # A late monthly run is still wanted
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.SCHEDULER_TIMEZONE
)


async def run_monthly_billing_job():
    """Scheduler entry point for the monthly billing run."""
    from app.jobs.billing_runner import run_monthly_billing

    try:
        summary = await run_monthly_billing()
        logger.info(
            f"Monthly billing {summary.get('status')}: "
            f"{summary.get('processed_count', 0)} invoices, "
            f"{summary.get('failed', 0)} failures"
        )
    except Exception as e:
        logger.error(f"Monthly billing job failed: {e}")


async def run_reconciliation_job():
    """Scheduler entry point for the unmatched payment retry."""
    from app.jobs.reconciliation_jobs import reconcile_unmatched_payments

    try:
        await reconcile_unmatched_payments()
    except Exception as e:
        logger.error(f"Reconciliation job failed: {e}")


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        scheduler.add_job(
            run_monthly_billing_job,
            'cron',
            day=1,
            hour=3,
            minute=0,
            id='monthly_service_billing',
            name='Monthly Service Billing',
            replace_existing=True,
        )

        scheduler.add_job(
            run_reconciliation_job,
            'interval',
            minutes=settings.RECONCILE_INTERVAL_MINUTES,
            id='reconcile_unmatched_payments',
            name='Reconcile Unmatched Payments',
            replace_existing=True,
        )

        scheduler.start()
        logger.info("Background job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]

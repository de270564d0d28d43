"""
APScheduler Configuration for the settlement sweeps.

Periodic jobs:
- Tracking sync (poll carrier for active shipments)
- Close billing cycles whose end date has passed
- Generate invoices for closed cycles
- Mark unpaid invoices overdue

Every job runs with max_instances=1 and coalesce=True so a slow sweep is
never overlapped by the next trigger.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from shipsettle.config import settings

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
    'misfire_grace_time': 300,
}

# Create scheduler
scheduler = AsyncIOScheduler(
    jobstores=jobstores,
    executors=executors,
    job_defaults=job_defaults,
    timezone=settings.BILLING_TIMEZONE
)


def register_jobs() -> None:
    """Add the settlement jobs to the scheduler."""
    from shipsettle.jobs.billing_jobs import (
        close_expired_billing_cycles,
        generate_cycle_invoices,
        refresh_overdue_invoices,
    )
    from shipsettle.jobs.tracking_jobs import sync_shipment_statuses

    # ============================================================
    # TRACKING
    # ============================================================

    scheduler.add_job(
        sync_shipment_statuses,
        'interval',
        hours=settings.TRACKING_SYNC_INTERVAL_HOURS,
        id='sync_shipment_statuses',
        name='Sync Shipment Statuses',
        replace_existing=True,
    )

    # ============================================================
    # BILLING
    # ============================================================

    scheduler.add_job(
        close_expired_billing_cycles,
        'interval',
        minutes=settings.CYCLE_CLOSE_INTERVAL_MINUTES,
        id='close_expired_billing_cycles',
        name='Close Expired Billing Cycles',
        replace_existing=True,
    )

    scheduler.add_job(
        generate_cycle_invoices,
        'interval',
        minutes=settings.INVOICE_SWEEP_INTERVAL_MINUTES,
        id='generate_cycle_invoices',
        name='Generate Cycle Invoices',
        replace_existing=True,
    )

    scheduler.add_job(
        refresh_overdue_invoices,
        'interval',
        minutes=settings.INVOICE_SWEEP_INTERVAL_MINUTES,
        id='refresh_overdue_invoices',
        name='Refresh Overdue Invoices',
        replace_existing=True,
    )


def start_scheduler():
    """Start the background job scheduler."""
    if not scheduler.running:
        register_jobs()
        scheduler.start()
        logger.info("Settlement job scheduler started")

        for job in scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Settlement job scheduler stopped")


def get_job_status():
    """Get status of all scheduled jobs."""
    jobs = scheduler.get_jobs()
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger),
        }
        for job in jobs
    ]

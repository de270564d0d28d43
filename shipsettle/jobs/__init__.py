"""
Background Jobs Module

Handles scheduled tasks for:
- Shipment status sync
- Billing cycle close
- Invoice generation
- Overdue invoice refresh
"""

from shipsettle.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler, get_job_status
from shipsettle.jobs.billing_jobs import (
    close_expired_billing_cycles,
    generate_cycle_invoices,
    refresh_overdue_invoices,
)
from shipsettle.jobs.tracking_jobs import sync_shipment_statuses

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "get_job_status",
    "close_expired_billing_cycles",
    "generate_cycle_invoices",
    "refresh_overdue_invoices",
    "sync_shipment_statuses",
]

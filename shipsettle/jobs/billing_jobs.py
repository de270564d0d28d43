"""
Billing Jobs

Background jobs for the billing lifecycle:
- Close cycles whose end date has passed (OPEN -> CLOSED)
- Generate invoices for closed cycles (CLOSED -> INVOICED)
- Mark unpaid invoices past their due date OVERDUE
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from shipsettle.database import get_db_session
from shipsettle.services.billing_cycle_service import BillingCycleService
from shipsettle.services.invoice_service import InvoiceService

logger = logging.getLogger(__name__)


async def close_expired_billing_cycles(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Close every OPEN billing cycle whose end date has passed.

    Safe to re-run: a cycle that is already closed is skipped.
    """
    logger.info("Starting billing cycle close sweep...")
    start_time = datetime.now(timezone.utc)

    try:
        async with get_db_session() as session:
            closed = await BillingCycleService(session).close_expired_cycles(now=now)

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(f"Billing cycle close sweep completed: closed {len(closed)} in {elapsed:.2f}s")
        return {"closed": len(closed), "cycles": [c.cycle_code for c in closed]}

    except Exception as e:
        logger.error(f"Billing cycle close sweep failed: {e}")
        raise


async def generate_cycle_invoices(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Invoice every CLOSED cycle.

    Cycles blocked by missing merchant tax configuration stay CLOSED and
    are retried on the next run.
    """
    logger.info("Starting invoice generation sweep...")
    start_time = datetime.now(timezone.utc)

    try:
        async with get_db_session() as session:
            invoices = await InvoiceService(session).finalize_closed_cycles(now=now)

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(f"Invoice generation completed: {len(invoices)} invoices in {elapsed:.2f}s")
        return {"invoiced": len(invoices), "invoices": [i.invoice_number for i in invoices]}

    except Exception as e:
        logger.error(f"Invoice generation sweep failed: {e}")
        raise


async def refresh_overdue_invoices(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Mark PENDING / PARTIALLY_PAID invoices past due as OVERDUE."""
    try:
        async with get_db_session() as session:
            updated = await InvoiceService(session).refresh_overdue(now=now)

        if updated:
            logger.info(f"Marked {updated} invoices overdue")
        return {"overdue": updated}

    except Exception as e:
        logger.error(f"Overdue invoice refresh failed: {e}")
        raise

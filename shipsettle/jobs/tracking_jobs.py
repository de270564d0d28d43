"""
Tracking Jobs

Polls the carrier for every shipment still in flight and applies the
status changes (cycle counters, RTO charges, refunds).
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any

from shipsettle.core.exceptions import SweepAlreadyRunning
from shipsettle.database import get_db_session, async_session_factory
from shipsettle.services.carrier_service import CarrierClient
from shipsettle.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)


async def sync_shipment_statuses(carrier=None, session_factory=None) -> Dict[str, Any]:
    """
    One tracking sweep over all active tracking records.

    Each record is polled in its own session, so a failure on one AWB is
    recorded on that record and the sweep moves on.
    """
    logger.info("Starting shipment status sync...")
    start_time = datetime.now(timezone.utc)

    try:
        async with get_db_session() as session:
            service = TrackingService(
                session,
                carrier=carrier or CarrierClient(),
                session_factory=session_factory or async_session_factory,
            )
            summary = await service.sync_all()

        elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(f"Shipment status sync completed in {elapsed:.2f}s")
        return summary

    except SweepAlreadyRunning:
        logger.warning("Shipment status sync skipped: previous sweep still running")
        return {"total": 0, "successful": 0, "failed": 0, "terminal": 0, "skipped": 0, "already_running": True}

    except Exception as e:
        logger.error(f"Shipment status sync failed: {e}")
        raise

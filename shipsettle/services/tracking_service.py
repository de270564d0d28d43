"""
Shipment Status Synchronizer.

Polls the carrier for every shipment that has not reached a terminal
status, maps the carrier's status vocabulary onto ShipmentStatus and
applies the transition:

- cycle outcome counters move (in transit -> delivered, ...)
- RTO debits the return tariff
- a carrier cancellation before pickup refunds the booking charge

Terminal statuses (DELIVERED, RTO, CANCELLED, LOST) latch the tracking
record inactive; it is never polled again. A failed poll is stored on the
record and retried on the next sweep.
"""
import asyncio
import uuid
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipsettle.config import settings
from shipsettle.core.exceptions import SettlementError, SweepAlreadyRunning
from shipsettle.core.locks import merchant_locks
from shipsettle.db_types import utcnow
from shipsettle.models.shipment import (
    Shipment, ShipmentStatus, TERMINAL_STATUSES, PRE_PICKUP_STATUSES,
)
from shipsettle.models.tracking import TrackingRecord
from shipsettle.schemas.tracking import CarrierTrackingResult
from shipsettle.services.billing_cycle_service import BillingCycleService

logger = logging.getLogger(__name__)


# Carrier status vocabulary, keyed by normalized (lowercase, single-spaced) text
STATUS_MAP = {
    # Delivered
    "delivered": ShipmentStatus.DELIVERED,

    # Out for delivery
    "out for delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "outfor delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "outfordelivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "out for delivery (ofd)": ShipmentStatus.OUT_FOR_DELIVERY,
    "ofd": ShipmentStatus.OUT_FOR_DELIVERY,
    "dispatched": ShipmentStatus.OUT_FOR_DELIVERY,

    # In transit (Pending = waiting at destination facility)
    "pending": ShipmentStatus.IN_TRANSIT,
    "in transit": ShipmentStatus.IN_TRANSIT,
    "intransit": ShipmentStatus.IN_TRANSIT,
    "in transist": ShipmentStatus.IN_TRANSIT,
    "intranist": ShipmentStatus.IN_TRANSIT,

    # Pickup / manifest
    "manifested": ShipmentStatus.PICKUPS_MANIFESTS,
    "manifest": ShipmentStatus.PICKUPS_MANIFESTS,
    "pickup": ShipmentStatus.PICKUPS_MANIFESTS,
    "pickup and manifest": ShipmentStatus.PICKUPS_MANIFESTS,
    "pickups manifests": ShipmentStatus.PICKUPS_MANIFESTS,
    "not picked": ShipmentStatus.PICKUPS_MANIFESTS,
    "notpicked": ShipmentStatus.PICKUPS_MANIFESTS,
    "ready to ship": ShipmentStatus.READY_TO_SHIP,

    # Return to origin
    "rto": ShipmentStatus.RTO,
    "r.t.o": ShipmentStatus.RTO,
    "return to origin": ShipmentStatus.RTO,
    "returned": ShipmentStatus.RTO,

    # Cancelled
    "cancelled": ShipmentStatus.CANCELLED,
    "canceled": ShipmentStatus.CANCELLED,
    "cancel": ShipmentStatus.CANCELLED,

    # Non-delivery report
    "ndr": ShipmentStatus.NDR,
    "non delivery report": ShipmentStatus.NDR,
    "non delivery": ShipmentStatus.NDR,

    "lost": ShipmentStatus.LOST,
}

# Terminal status -> timestamp column on the tracking record
TERMINAL_TIMESTAMPS = {
    ShipmentStatus.DELIVERED: "delivered_at",
    ShipmentStatus.RTO: "rto_at",
    ShipmentStatus.CANCELLED: "cancelled_at",
    ShipmentStatus.LOST: "lost_at",
}

_sweep_lock = asyncio.Lock()


def normalize_carrier_status(raw: Optional[str]) -> str:
    """Lowercase, '-'/'_' as spaces, collapsed whitespace, no trailing dot."""
    if raw is None:
        return ""
    text = re.sub(r"[\s\-_]+", " ", str(raw)).strip().lower()
    return text.rstrip(".")


def map_carrier_status(raw: Optional[str]) -> Optional[ShipmentStatus]:
    """
    Internal status for a carrier status string.

    Unknown strings return None and the shipment is left unchanged.
    """
    mapped = STATUS_MAP.get(normalize_carrier_status(raw))
    if mapped is None:
        logger.warning(f"Unmapped carrier status '{raw}'")
    return mapped


class SyncOutcome(str, Enum):
    """Result of polling one tracking record."""
    UPDATED = "UPDATED"        # Status moved
    UNCHANGED = "UNCHANGED"    # Poll succeeded, same status
    TERMINAL = "TERMINAL"      # Reached a terminal status, record latched
    UNMAPPED = "UNMAPPED"      # Carrier status not recognized
    FAILED = "FAILED"          # Poll or transition failed, retried next sweep


class TrackingService:
    """
    Service for tracking records and the status sync sweep.

    Usage:
        service = TrackingService(db, carrier=CarrierClient())
        await service.register(shipment)
        summary = await service.sync_all()
    """

    def __init__(
        self,
        db: AsyncSession,
        carrier=None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.db = db
        self.carrier = carrier
        self.session_factory = session_factory
        self.cycles = BillingCycleService(db)

    # ==================== RECORDS ====================

    async def get_record(self, awb_number: str) -> Optional[TrackingRecord]:
        result = await self.db.execute(
            select(TrackingRecord).where(TrackingRecord.awb_number == awb_number)
        )
        return result.scalar_one_or_none()

    async def register(self, shipment: Shipment, commit: bool = False) -> Optional[TrackingRecord]:
        """Start tracking a shipment. Returns the existing record when already registered."""
        if not shipment.awb_number:
            return None

        existing = await self.get_record(shipment.awb_number)
        if existing is not None:
            return existing

        record = TrackingRecord(
            shipment_id=shipment.id,
            merchant_id=shipment.merchant_id,
            awb_number=shipment.awb_number,
            current_status=shipment.status,
            status_history=[],
            tracking_failures=[],
            is_tracking_active=not shipment.is_terminal,
        )
        self.db.add(record)
        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.info(f"Tracking registered for AWB {shipment.awb_number}")
        return record

    def deactivate(self, record: TrackingRecord, status: ShipmentStatus, at: datetime) -> None:
        """Latch a record inactive on a terminal status. Never reactivated."""
        record.current_status = status.value
        record.is_tracking_active = False
        column = TERMINAL_TIMESTAMPS.get(status)
        if column and getattr(record, column) is None:
            setattr(record, column, at)

    async def get_active_records(self, limit: Optional[int] = None) -> List[TrackingRecord]:
        """Records still being polled, least recently tracked first."""
        stmt = (
            select(TrackingRecord)
            .where(TrackingRecord.is_tracking_active.is_(True))
            .order_by(TrackingRecord.last_tracked_at.asc().nulls_first())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ==================== SYNC ====================

    @staticmethod
    def _append_history(
        record: TrackingRecord,
        status: ShipmentStatus,
        result: CarrierTrackingResult,
        now: datetime,
    ) -> bool:
        """Append one history entry, deduplicated on (status, timestamp)."""
        history = list(record.status_history or [])
        if result.status_at is not None:
            timestamp = result.status_at.isoformat()
            if any(h.get("status") == status.value and h.get("timestamp") == timestamp for h in history):
                return False
        else:
            if history and history[-1].get("status") == status.value:
                return False
            timestamp = now.isoformat()

        history.append({
            "status": status.value,
            "carrier_status": result.status,
            "timestamp": timestamp,
            "location": result.location,
            "instructions": result.instructions,
        })
        record.status_history = history
        return True

    @staticmethod
    def _record_failure(record: TrackingRecord, error: Exception, now: datetime) -> None:
        failures = list(record.tracking_failures or [])
        failures.append({
            "timestamp": now.isoformat(),
            "error": str(error),
            "error_type": getattr(error, "error_type", type(error).__name__),
            "status_code": getattr(error, "status_code", None),
        })
        record.tracking_failures = failures[-settings.TRACKING_FAILURE_HISTORY:]
        record.last_tracked_at = now

    async def _apply_transition(
        self,
        record: TrackingRecord,
        new_status: ShipmentStatus,
        result: CarrierTrackingResult,
        now: datetime,
    ) -> None:
        async with merchant_locks.hold(record.merchant_id):
            shipment = await self.db.get(Shipment, record.shipment_id)
            if shipment is None:
                raise SettlementError(f"Shipment for AWB {record.awb_number} no longer exists")

            status_at = result.status_at or now
            if shipment.is_terminal:
                # Settled elsewhere (e.g. cancelled by the merchant)
                self.deactivate(record, ShipmentStatus(shipment.status), status_at)
                return

            old_status = shipment.status
            if new_status == ShipmentStatus.CANCELLED and old_status in {s.value for s in PRE_PICKUP_STATUSES}:
                await self.cycles.refund_shipment(shipment, "Cancelled by carrier before pickup")

            if shipment.billing_cycle_id is not None:
                cycle = await self.cycles.get_cycle(shipment.billing_cycle_id)
                await self.cycles.on_status_change(cycle, shipment, old_status, new_status)

            shipment.status = new_status.value
            if new_status == ShipmentStatus.DELIVERED:
                shipment.delivered_at = status_at
            elif new_status == ShipmentStatus.CANCELLED:
                shipment.cancelled_at = status_at

            record.current_status = new_status.value
            if new_status in TERMINAL_STATUSES:
                self.deactivate(record, new_status, status_at)

            await self.db.flush()

        logger.info(f"AWB {record.awb_number}: {old_status} -> {new_status.value}")

    async def sync_record(self, record: TrackingRecord, now: Optional[datetime] = None) -> SyncOutcome:
        """
        Poll the carrier for one record and apply what it reports.

        Any failed poll or failed transition (e.g. the wallet cannot cover
        an RTO charge) is stored on the record and never raised.
        """
        now = now or utcnow()
        if not record.is_tracking_active:
            return SyncOutcome.UNCHANGED

        try:
            result = await self.carrier.poll_tracking(record.awb_number)
        except Exception as e:
            logger.warning(f"Tracking poll failed for AWB {record.awb_number}: {e!r}")
            self._record_failure(record, e, now)
            await self.db.commit()
            return SyncOutcome.FAILED

        record.tracking_count = (record.tracking_count or 0) + 1
        record.last_tracked_at = now
        record.carrier_status = result.status

        new_status = map_carrier_status(result.status)
        if new_status is None:
            await self.db.commit()
            return SyncOutcome.UNMAPPED

        self._append_history(record, new_status, result, now)
        if new_status.value == record.current_status:
            await self.db.commit()
            return SyncOutcome.UNCHANGED

        try:
            async with merchant_locks.hold(record.merchant_id):
                await self._apply_transition(record, new_status, result, now)
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self.db.refresh(record)
            logger.error(f"Could not apply {new_status.value} to AWB {record.awb_number}: {e}")
            self._record_failure(record, e, now)
            await self.db.commit()
            return SyncOutcome.FAILED

        return SyncOutcome.UPDATED if record.is_tracking_active else SyncOutcome.TERMINAL

    async def sync_all(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        One sweep over every active record, each in its own session.

        Raises:
            SweepAlreadyRunning: the previous sweep has not finished.
        """
        if _sweep_lock.locked():
            raise SweepAlreadyRunning("Tracking sync is already running")

        async with _sweep_lock:
            limit = limit or settings.TRACKING_SYNC_BATCH_SIZE
            record_ids: List[uuid.UUID] = [r.id for r in await self.get_active_records(limit)]
            summary = {"total": len(record_ids), "successful": 0, "failed": 0, "terminal": 0, "skipped": 0}

            for record_id in record_ids:
                try:
                    outcome = await self._sync_one(record_id)
                except Exception as e:
                    logger.error(f"Tracking sync crashed on record {record_id}: {e}")
                    summary["failed"] += 1
                    continue

                if outcome == SyncOutcome.FAILED:
                    summary["failed"] += 1
                elif outcome == SyncOutcome.UNMAPPED:
                    summary["skipped"] += 1
                else:
                    summary["successful"] += 1
                    if outcome == SyncOutcome.TERMINAL:
                        summary["terminal"] += 1

        logger.info(
            f"Tracking sync: {summary['successful']}/{summary['total']} successful, "
            f"{summary['failed']} failed, {summary['terminal']} terminal, {summary['skipped']} skipped"
        )
        return summary

    async def _sync_one(self, record_id: uuid.UUID) -> SyncOutcome:
        if self.session_factory is None:
            record = await self.db.get(TrackingRecord, record_id)
            return await self.sync_record(record) if record else SyncOutcome.UNMAPPED

        async with self.session_factory() as session:
            service = TrackingService(session, carrier=self.carrier)
            record = await session.get(TrackingRecord, record_id)
            if record is None:
                return SyncOutcome.UNMAPPED
            return await service.sync_record(record)

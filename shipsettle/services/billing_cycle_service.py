"""Billing Cycle Aggregator.

Buckets charged shipments into half-month periods per merchant:

    day 1-15        -> cycle 1
    day 16-month end -> cycle 2

Days are evaluated in the billing timezone (BILLING_TIMEZONE); start and
end are stored in UTC. Lifecycle: OPEN -> CLOSED -> INVOICED.

All mutations run under the merchant lock and re-read the cycle row with
SELECT ... FOR UPDATE before touching counters.
"""
import calendar
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from shipsettle.config import settings
from shipsettle.core.enum_utils import get_enum_value
from shipsettle.core.exceptions import BillingCycleNotFound, CycleClosed, InvalidStateTransition
from shipsettle.core.locks import merchant_locks
from shipsettle.db_types import utcnow
from shipsettle.models.billing_cycle import BillingCycle, BillingCycleShipment, CycleStatus
from shipsettle.models.rate_card import Direction
from shipsettle.models.shipment import Shipment, ShipmentStatus, PaymentMode
from shipsettle.models.wallet import TransactionCategory, WalletTransaction
from shipsettle.schemas.tariff import ChargeBreakdown
from shipsettle.services.tariff_engine import TariffEngine, default_engine
from shipsettle.services.wallet_service import WalletService, quantize_amount

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Counter column that holds a shipment in each status
OUTCOME_BUCKETS = {
    ShipmentStatus.NEW.value: "in_transit_shipments",
    ShipmentStatus.READY_TO_SHIP.value: "in_transit_shipments",
    ShipmentStatus.PICKUPS_MANIFESTS.value: "in_transit_shipments",
    ShipmentStatus.IN_TRANSIT.value: "in_transit_shipments",
    ShipmentStatus.OUT_FOR_DELIVERY.value: "in_transit_shipments",
    ShipmentStatus.NDR.value: "in_transit_shipments",
    ShipmentStatus.DELIVERED.value: "delivered_shipments",
    ShipmentStatus.RTO.value: "rto_shipments",
    ShipmentStatus.CANCELLED.value: "cancelled_shipments",
    ShipmentStatus.LOST.value: "lost_shipments",
}


@dataclass(frozen=True)
class CyclePeriod:
    """The cycle a moment falls into. start/end are aware UTC datetimes."""
    year: int
    month: int
    cycle_number: int
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


def billing_timezone() -> ZoneInfo:
    return ZoneInfo(settings.BILLING_TIMEZONE)


def cycle_period(moment: datetime, tz: Optional[ZoneInfo] = None) -> CyclePeriod:
    """
    Period for ``moment``. Naive datetimes are read as billing-timezone local time.

    The 15th at 23:59:59 is cycle 1; the 16th at 00:00:00 is cycle 2.
    """
    tz = tz or billing_timezone()
    local = moment.replace(tzinfo=tz) if moment.tzinfo is None else moment.astimezone(tz)
    year, month = local.year, local.month

    if local.day <= 15:
        cycle_number = 1
        start_local = datetime(year, month, 1, tzinfo=tz)
        end_local = datetime(year, month, 15, 23, 59, 59, 999999, tzinfo=tz)
    else:
        cycle_number = 2
        last_day = calendar.monthrange(year, month)[1]
        start_local = datetime(year, month, 16, tzinfo=tz)
        end_local = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=tz)

    return CyclePeriod(
        year=year,
        month=month,
        cycle_number=cycle_number,
        start=start_local.astimezone(timezone.utc),
        end=end_local.astimezone(timezone.utc),
    )


def make_cycle_code(merchant_id: uuid.UUID, period: CyclePeriod) -> str:
    merchant_short = merchant_id.hex[-6:].upper()
    return f"BC-{merchant_short}-{period.year}{period.month:02d}-C{period.cycle_number}"


def outcome_bucket(status: str) -> str:
    return OUTCOME_BUCKETS.get(get_enum_value(status), "in_transit_shipments")


class BillingCycleService:
    """Service for billing cycle aggregation and lifecycle."""

    def __init__(self, db: AsyncSession, engine: Optional[TariffEngine] = None):
        self.db = db
        self.engine = engine or default_engine
        self.wallet = WalletService(db)

    # ==================== LOOKUPS ====================

    @staticmethod
    def cycle_period(moment: datetime) -> CyclePeriod:
        return cycle_period(moment)

    async def get_cycle(self, cycle_id: uuid.UUID) -> BillingCycle:
        cycle = await self.db.get(BillingCycle, cycle_id)
        if cycle is None:
            raise BillingCycleNotFound(f"Billing cycle {cycle_id} not found")
        return cycle

    async def _lock_cycle(self, cycle_id: uuid.UUID) -> BillingCycle:
        """Re-read the cycle row for update, discarding any stale in-session copy."""
        await self.db.flush()
        result = await self.db.execute(
            select(BillingCycle)
            .where(BillingCycle.id == cycle_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        cycle = result.scalar_one_or_none()
        if cycle is None:
            raise BillingCycleNotFound(f"Billing cycle {cycle_id} not found")
        return cycle

    async def find_cycle(self, merchant_id: uuid.UUID, period: CyclePeriod) -> Optional[BillingCycle]:
        result = await self.db.execute(
            select(BillingCycle).where(
                and_(
                    BillingCycle.merchant_id == merchant_id,
                    BillingCycle.year == period.year,
                    BillingCycle.month == period.month,
                    BillingCycle.cycle_number == period.cycle_number,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_cycles(
        self,
        merchant_id: uuid.UUID,
        status: Optional[CycleStatus] = None,
        skip: int = 0,
        limit: int = 24,
    ) -> Tuple[List[BillingCycle], int]:
        """List a merchant's cycles, newest first."""
        filters = [BillingCycle.merchant_id == merchant_id]
        if status:
            filters.append(BillingCycle.status == get_enum_value(status))

        total = (await self.db.execute(
            select(func.count(BillingCycle.id)).where(and_(*filters))
        )).scalar() or 0

        result = await self.db.execute(
            select(BillingCycle)
            .where(and_(*filters))
            .order_by(BillingCycle.start_date.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def get_or_create_current_cycle(
        self,
        merchant_id: uuid.UUID,
        now: Optional[datetime] = None,
        commit: bool = False,
    ) -> BillingCycle:
        """
        Find or lazily create the cycle covering ``now``.

        Raises:
            CycleClosed: the period's cycle exists but no longer accepts shipments.
        """
        period = cycle_period(now or utcnow())

        async with merchant_locks.hold(merchant_id):
            cycle = await self.find_cycle(merchant_id, period)
            if cycle is None:
                cycle = BillingCycle(
                    cycle_code=make_cycle_code(merchant_id, period),
                    merchant_id=merchant_id,
                    year=period.year,
                    month=period.month,
                    cycle_number=period.cycle_number,
                    start_date=period.start,
                    end_date=period.end,
                    status=CycleStatus.OPEN.value,
                )
                self.db.add(cycle)
                await self.db.flush()
                logger.info(f"Opened billing cycle {cycle.cycle_code}")
                if commit:
                    await self.db.commit()
            elif cycle.status != CycleStatus.OPEN.value:
                raise CycleClosed(cycle.cycle_code, cycle.status)

        return cycle

    # ==================== AGGREGATION ====================

    async def is_member(self, shipment_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(BillingCycleShipment.id).where(BillingCycleShipment.shipment_id == shipment_id)
        )
        return result.first() is not None

    async def add_shipment(
        self,
        cycle: BillingCycle,
        shipment: Shipment,
        charges: Optional[ChargeBreakdown] = None,
        commit: bool = False,
    ) -> bool:
        """
        Fold a charged shipment into the cycle summary.

        Idempotent per shipment id: returns False, and changes nothing, when
        the shipment is already a member of any cycle.

        Raises:
            CycleClosed: the cycle is not OPEN.
        """
        async with merchant_locks.hold(cycle.merchant_id):
            cycle = await self._lock_cycle(cycle.id)
            if cycle.status != CycleStatus.OPEN.value:
                raise CycleClosed(cycle.cycle_code, cycle.status)

            if await self.is_member(shipment.id):
                logger.info(f"Shipment {shipment.awb_number} already aggregated, skipping")
                return False

            if charges is not None:
                forward = quantize_amount(charges.forward_or_rto_charge)
                cod = quantize_amount(charges.cod_charge)
            else:
                forward = shipment.forward_charge or ZERO
                cod = shipment.cod_charge or ZERO

            self.db.add(BillingCycleShipment(
                billing_cycle_id=cycle.id,
                shipment_id=shipment.id,
                awb_number=shipment.awb_number,
            ))
            shipment.billing_cycle_id = cycle.id

            cycle.total_shipments += 1
            bucket = outcome_bucket(shipment.status)
            setattr(cycle, bucket, getattr(cycle, bucket) + 1)

            if shipment.payment_mode == PaymentMode.COD.value:
                cycle.cod_shipments += 1
                cycle.total_cod_amount = (cycle.total_cod_amount or ZERO) + (shipment.cod_amount or ZERO)
            else:
                cycle.prepaid_shipments += 1

            cycle.total_declared_weight_grams += shipment.declared_weight_grams
            cycle.total_charged_weight_grams += shipment.charged_weight_grams
            cycle.total_forward_charges = (cycle.total_forward_charges or ZERO) + forward
            cycle.total_cod_charges = (cycle.total_cod_charges or ZERO) + cod

            distribution = dict(cycle.zone_distribution or {})
            distribution[shipment.zone] = distribution.get(shipment.zone, 0) + 1
            cycle.zone_distribution = distribution

            await self.db.flush()
            if commit:
                await self.db.commit()

        logger.info(f"Added shipment {shipment.awb_number} to cycle {cycle.cycle_code}")
        return True

    async def add_weight_discrepancy(
        self,
        cycle: BillingCycle,
        amount: Decimal,
        commit: bool = False,
    ) -> None:
        """Fold an extra weight charge into the cycle while it is still OPEN."""
        async with merchant_locks.hold(cycle.merchant_id):
            cycle = await self._lock_cycle(cycle.id)
            if cycle.status != CycleStatus.OPEN.value:
                logger.warning(
                    f"Cycle {cycle.cycle_code} is {cycle.status}; weight discrepancy "
                    f"{amount} stays on the ledger only"
                )
                return
            cycle.total_weight_discrepancy_charges = (
                (cycle.total_weight_discrepancy_charges or ZERO) + quantize_amount(amount)
            )
            await self.db.flush()
            if commit:
                await self.db.commit()

    async def refund_shipment(
        self,
        shipment: Shipment,
        reason: str,
        commit: bool = False,
    ) -> Optional[WalletTransaction]:
        """
        Reverse the booking debit of a shipment and take its charges back out
        of its cycle while the cycle is still OPEN.

        Returns the REFUND entry, or None when there was nothing to reverse.
        """
        if shipment.charge_transaction_id is None:
            return None

        async with merchant_locks.hold(shipment.merchant_id):
            if await self.wallet.find_reversal(shipment.charge_transaction_id) is not None:
                logger.info(f"Charge for {shipment.awb_number} already reversed")
                return None

            refund = await self.wallet.reverse(
                shipment.charge_transaction_id, reason, commit=False
            )
            forward = shipment.forward_charge or ZERO
            cod = shipment.cod_charge or ZERO

            if shipment.billing_cycle_id is not None:
                cycle = await self._lock_cycle(shipment.billing_cycle_id)
                if cycle.status != CycleStatus.OPEN.value:
                    logger.warning(
                        f"Cycle {cycle.cycle_code} is {cycle.status}; refund for "
                        f"{shipment.awb_number} stays on the ledger only"
                    )
                else:
                    cycle.total_forward_charges = max((cycle.total_forward_charges or ZERO) - forward, ZERO)
                    cycle.total_cod_charges = max((cycle.total_cod_charges or ZERO) - cod, ZERO)

            shipment.forward_charge = ZERO
            shipment.cod_charge = ZERO
            shipment.total_charge = max((shipment.total_charge or ZERO) - forward - cod, ZERO)

            await self.db.flush()
            if commit:
                await self.db.commit()

        logger.info(f"Refunded {refund.amount} for shipment {shipment.awb_number}: {reason}")
        return refund

    async def on_status_change(
        self,
        cycle: BillingCycle,
        shipment: Shipment,
        old_status: str,
        new_status: str,
        commit: bool = False,
    ) -> Decimal:
        """
        Move the shipment between outcome buckets.

        On RTO, debits the RTO tariff from the wallet (RTO_CHARGE) and folds
        it into ``total_rto_charges``. Returns the RTO amount, 0 otherwise.
        Once the cycle is CLOSED or INVOICED its summary is frozen; the RTO
        debit is still posted to the ledger.

        Raises:
            InsufficientBalance: the wallet cannot cover the RTO charge.
        """
        old_value = get_enum_value(old_status)
        new_value = get_enum_value(new_status)
        rto_amount = ZERO

        async with merchant_locks.hold(cycle.merchant_id):
            cycle = await self._lock_cycle(cycle.id)
            frozen = cycle.status != CycleStatus.OPEN.value

            if new_value == ShipmentStatus.RTO.value and old_value != new_value and not shipment.rto_charge:
                breakdown = self.engine.price(
                    shipment.tier,
                    Direction.RTO,
                    shipment.zone,
                    shipment.charged_weight_grams,
                )
                rto_amount = quantize_amount(breakdown.forward_or_rto_charge)
                await self.wallet.debit(
                    shipment.merchant_id,
                    rto_amount,
                    TransactionCategory.RTO_CHARGE,
                    shipment=shipment,
                    description=f"RTO charge for {shipment.awb_number}",
                    commit=False,
                )
                shipment.rto_charge = rto_amount
                shipment.total_charge = (shipment.total_charge or ZERO) + rto_amount
                if not frozen:
                    cycle.total_rto_charges = (cycle.total_rto_charges or ZERO) + rto_amount

            old_bucket = outcome_bucket(old_value)
            new_bucket = outcome_bucket(new_value)
            if frozen:
                logger.info(
                    f"Cycle {cycle.cycle_code} is {cycle.status}; summary not updated for "
                    f"{shipment.awb_number} {old_value} -> {new_value}"
                )
            elif old_bucket != new_bucket:
                setattr(cycle, old_bucket, max(getattr(cycle, old_bucket) - 1, 0))
                setattr(cycle, new_bucket, getattr(cycle, new_bucket) + 1)

            await self.db.flush()
            if commit:
                await self.db.commit()

        return rto_amount

    # ==================== LIFECYCLE ====================

    async def close_cycle(self, cycle_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """Close one cycle. Closing a cycle that is not OPEN is a no-op (False)."""
        cycle = await self.get_cycle(cycle_id)
        async with merchant_locks.hold(cycle.merchant_id):
            cycle = await self._lock_cycle(cycle_id)
            if cycle.status != CycleStatus.OPEN.value:
                return False
            cycle.status = CycleStatus.CLOSED.value
            cycle.closed_at = now or utcnow()
            await self.db.commit()
        logger.info(f"Closed billing cycle {cycle.cycle_code}")
        return True

    async def close_expired_cycles(self, now: Optional[datetime] = None) -> List[BillingCycle]:
        """
        Close every OPEN cycle whose end date has passed.

        Safe to run repeatedly and alongside add_shipment: each close is a
        serialized transition under the merchant lock and re-checks status.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(BillingCycle.id)
            .where(
                and_(
                    BillingCycle.status == CycleStatus.OPEN.value,
                    BillingCycle.end_date < now,
                )
            )
            .order_by(BillingCycle.end_date)
        )
        cycle_ids = list(result.scalars().all())

        closed = []
        for cycle_id in cycle_ids:
            if await self.close_cycle(cycle_id, now=now):
                closed.append(await self.get_cycle(cycle_id))

        if closed:
            logger.info(f"Closed {len(closed)} expired billing cycles")
        return closed

    async def mark_invoiced(
        self,
        cycle: BillingCycle,
        invoice_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> BillingCycle:
        """CLOSED -> INVOICED. Caller holds the merchant lock and commits."""
        if cycle.status != CycleStatus.CLOSED.value:
            raise InvalidStateTransition(
                f"Cycle {cycle.cycle_code} is {cycle.status}; only CLOSED cycles can be invoiced"
            )
        cycle.status = CycleStatus.INVOICED.value
        cycle.invoice_id = invoice_id
        cycle.invoiced_at = now or utcnow()
        await self.db.flush()
        return cycle

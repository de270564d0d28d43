"""
Settlement Service - the entry point used by the order flow and billing UI.

Combines the tariff engine, wallet ledger, billing cycle aggregator,
invoice finalizer and tracking registration. Every mutating call runs
under the merchant lock and ends in exactly one commit; on any failure the
session is rolled back so a debit never exists without its cycle entry.
"""
import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shipsettle.config import settings
from shipsettle.core.exceptions import (
    InvalidInput, InvalidStateTransition, ShipmentNotFound, DuplicateShipment,
)
from shipsettle.core.locks import merchant_locks
from shipsettle.db_types import utcnow
from shipsettle.models.invoice import Invoice
from shipsettle.models.shipment import Shipment, ShipmentStatus, PaymentMode, PRE_PICKUP_STATUSES
from shipsettle.models.wallet import WalletTransaction, TransactionCategory
from shipsettle.schemas.invoice import InvoiceDetail, PaymentInfo
from shipsettle.schemas.shipment import ShipmentChargeRequest
from shipsettle.schemas.tariff import ChargeBreakdown, Dimensions
from shipsettle.services.billing_cycle_service import BillingCycleService
from shipsettle.services.invoice_service import InvoiceService
from shipsettle.services.rate_card_service import RateCardService
from shipsettle.services.tariff_engine import TariffEngine, volumetric_weight_grams
from shipsettle.services.tracking_service import TrackingService
from shipsettle.services.wallet_service import WalletService, quantize_amount

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class SettlementService:
    """
    Facade over the settlement core.

    Usage:
        service = SettlementService(db)

        breakdown = await service.quote(merchant_id, request)
        txn = await service.charge_shipment(merchant_id, request)
        balance = await service.get_current_balance(merchant_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[TariffEngine] = None,
        carrier=None,
    ):
        self.db = db
        self.carrier = carrier
        self._engine = engine
        self.wallet = WalletService(db)
        self.cycles = BillingCycleService(db, engine)
        self.invoices = InvoiceService(db)
        self.tracking = TrackingService(db, carrier=carrier)

    async def get_engine(self) -> TariffEngine:
        """Engine over persisted rate cards, loaded once per service."""
        if self._engine is None:
            self._engine = await RateCardService(self.db).get_engine()
            self.cycles.engine = self._engine
        return self._engine

    # ==================== LOOKUPS ====================

    async def find_shipment(self, awb_number: str) -> Optional[Shipment]:
        result = await self.db.execute(select(Shipment).where(Shipment.awb_number == awb_number))
        return result.scalar_one_or_none()

    async def get_shipment(self, merchant_id: uuid.UUID, awb_number: str) -> Shipment:
        shipment = await self.find_shipment(awb_number)
        if shipment is None or shipment.merchant_id != merchant_id:
            raise ShipmentNotFound(f"Shipment {awb_number} not found")
        return shipment

    async def get_current_balance(self, merchant_id: uuid.UUID) -> Decimal:
        return await self.wallet.get_balance(merchant_id)

    async def recharge_wallet(
        self,
        merchant_id: uuid.UUID,
        amount,
        reference_number: Optional[str] = None,
    ) -> WalletTransaction:
        return await self.wallet.recharge(merchant_id, amount, reference_number=reference_number)

    # ==================== PRICING ====================

    @staticmethod
    def _dimensions(request: ShipmentChargeRequest) -> Optional[Dimensions]:
        if not request.has_dimensions:
            return None
        return Dimensions.of(request.length_cm, request.width_cm, request.height_cm)

    async def _resolve_zone(self, request: ShipmentChargeRequest) -> str:
        if request.zone:
            return request.zone
        if self.carrier is None:
            raise InvalidInput(f"Zone is required for shipment {request.awb_number}")

        origin = request.pickup_pincode or settings.DEFAULT_ORIGIN_PINCODE
        if not origin or not request.delivery_pincode:
            raise InvalidInput(
                f"Zone lookup for {request.awb_number} needs pickup and delivery pincodes"
            )

        chargeable = Decimal(request.weight_grams)
        dimensions = self._dimensions(request)
        if dimensions is not None:
            chargeable = max(chargeable, volumetric_weight_grams(
                dimensions.length_cm, dimensions.width_cm, dimensions.height_cm
            ))

        zone = await self.carrier.lookup_zone(
            origin,
            request.delivery_pincode,
            int(chargeable),
            payment_type="COD" if request.payment_mode == PaymentMode.COD else "Pre-paid",
        )
        return zone.value

    async def quote(self, merchant_id: uuid.UUID, request: ShipmentChargeRequest) -> ChargeBreakdown:
        """Price a shipment for the merchant's tier. Nothing is written."""
        merchant = await self.wallet.get_merchant(merchant_id)
        engine = await self.get_engine()
        zone = await self._resolve_zone(request)
        cod_amount = request.cod_amount if request.payment_mode == PaymentMode.COD else Decimal("0")
        return engine.quote(
            merchant.tier,
            request.direction,
            zone,
            request.weight_grams,
            dimensions=self._dimensions(request),
            cod_amount=cod_amount,
        )

    # ==================== CHARGING ====================

    async def charge_shipment(
        self,
        merchant_id: uuid.UUID,
        request: ShipmentChargeRequest,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """
        Price, debit and aggregate one booked shipment in a single commit.

        Charging an AWB that was already charged returns the original debit.

        Raises:
            InvalidInput: bad zone, weight, tier or amounts.
            InsufficientBalance: the wallet cannot cover the charge.
            CycleClosed: the current period's cycle is no longer open.
        """
        now = now or utcnow()

        async with merchant_locks.hold(merchant_id):
            try:
                existing = await self.find_shipment(request.awb_number)
                if existing is not None:
                    if existing.merchant_id != merchant_id:
                        raise InvalidInput(f"AWB {request.awb_number} belongs to another merchant")
                    logger.info(f"{DuplicateShipment(request.awb_number)}; returning original charge")
                    return await self.wallet.get_transaction(existing.charge_transaction_id)

                merchant = await self.wallet.get_merchant(merchant_id, for_update=True)
                breakdown = await self.quote(merchant_id, request)
                base_charge = quantize_amount(breakdown.forward_or_rto_charge)
                cod_charge = quantize_amount(breakdown.cod_charge)

                shipment = Shipment(
                    id=uuid.uuid4(),
                    merchant_id=merchant_id,
                    awb_number=request.awb_number,
                    order_reference=request.order_reference,
                    direction=breakdown.direction.value,
                    zone=breakdown.zone.value,
                    tier=merchant.tier,
                    status=ShipmentStatus.NEW.value,
                    payment_mode=request.payment_mode.value,
                    cod_amount=quantize_amount(breakdown.cod_amount),
                    declared_weight_grams=request.weight_grams,
                    volumetric_weight_grams=int(breakdown.volumetric_weight_grams),
                    charged_weight_grams=int(breakdown.chargeable_weight_grams),
                    length_cm=request.length_cm,
                    width_cm=request.width_cm,
                    height_cm=request.height_cm,
                    pickup_pincode=request.pickup_pincode or merchant.pickup_pincode,
                    delivery_pincode=request.delivery_pincode,
                    forward_charge=base_charge,
                    cod_charge=cod_charge,
                    rto_charge=ZERO,
                    weight_discrepancy_charge=ZERO,
                    total_charge=base_charge + cod_charge,
                    booked_at=request.booked_at or now,
                )
                self.db.add(shipment)
                await self.db.flush()

                txn = await self.wallet.debit(
                    merchant_id,
                    shipment.total_charge,
                    TransactionCategory.SHIPPING_CHARGE,
                    shipment=shipment,
                    description=f"Shipping charge for {shipment.awb_number} (zone {shipment.zone})",
                    commit=False,
                )
                shipment.charge_transaction_id = txn.id

                cycle = await self.cycles.get_or_create_current_cycle(merchant_id, now=now)
                await self.cycles.add_shipment(cycle, shipment, breakdown)
                await self.tracking.register(shipment)

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            f"Charged {txn.amount} for {shipment.awb_number} to merchant {merchant_id}, "
            f"balance {txn.closing_balance}"
        )
        return txn

    async def cancel_shipment(
        self,
        merchant_id: uuid.UUID,
        awb_number: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Optional[WalletTransaction]:
        """
        Cancel a shipment that has not been picked up and refund its charge.

        Cancelling an already cancelled shipment returns None.

        Raises:
            InvalidStateTransition: the shipment has left the pickup stage.
        """
        now = now or utcnow()

        async with merchant_locks.hold(merchant_id):
            try:
                shipment = await self.get_shipment(merchant_id, awb_number)
                if shipment.status == ShipmentStatus.CANCELLED.value:
                    return None
                if shipment.status not in {s.value for s in PRE_PICKUP_STATUSES}:
                    raise InvalidStateTransition(
                        f"Shipment {awb_number} is {shipment.status} and can no longer be cancelled"
                    )

                old_status = shipment.status
                refund = await self.cycles.refund_shipment(shipment, reason)
                if shipment.billing_cycle_id is not None:
                    cycle = await self.cycles.get_cycle(shipment.billing_cycle_id)
                    await self.cycles.on_status_change(
                        cycle, shipment, old_status, ShipmentStatus.CANCELLED
                    )

                shipment.status = ShipmentStatus.CANCELLED.value
                shipment.cancelled_at = now
                shipment.cancellation_reason = reason

                record = await self.tracking.get_record(awb_number)
                if record is not None:
                    self.tracking.deactivate(record, ShipmentStatus.CANCELLED, now)

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(f"Cancelled shipment {awb_number}: {reason}")
        return refund

    async def apply_weight_discrepancy(
        self,
        merchant_id: uuid.UUID,
        awb_number: str,
        carrier_weight_grams: int,
    ) -> Optional[WalletTransaction]:
        """
        Re-price at the carrier-measured weight and debit the difference.

        Only increases are charged; a lighter or equal measurement is stored
        and returns None. Re-applying the same weight is a no-op.
        """
        if carrier_weight_grams is None or carrier_weight_grams <= 0:
            raise InvalidInput(f"Carrier weight must be positive, got {carrier_weight_grams!r}")

        async with merchant_locks.hold(merchant_id):
            try:
                shipment = await self.get_shipment(merchant_id, awb_number)
                if shipment.status == ShipmentStatus.CANCELLED.value:
                    raise InvalidStateTransition(f"Shipment {awb_number} is cancelled")

                engine = await self.get_engine()
                breakdown = engine.price(
                    shipment.tier,
                    shipment.direction,
                    shipment.zone,
                    carrier_weight_grams,
                    shipment.volumetric_weight_grams,
                )
                repriced = quantize_amount(breakdown.forward_or_rto_charge)
                difference = repriced - shipment.forward_charge - (shipment.weight_discrepancy_charge or ZERO)
                shipment.carrier_weight_grams = carrier_weight_grams

                txn = None
                if difference > 0:
                    txn = await self.wallet.debit(
                        merchant_id,
                        difference,
                        TransactionCategory.WEIGHT_DISCREPANCY,
                        shipment=shipment,
                        description=(
                            f"Weight discrepancy for {awb_number}: "
                            f"{shipment.charged_weight_grams}g charged, {carrier_weight_grams}g measured"
                        ),
                        commit=False,
                    )
                    shipment.weight_discrepancy_charge = (shipment.weight_discrepancy_charge or ZERO) + difference
                    shipment.total_charge = (shipment.total_charge or ZERO) + difference
                    if shipment.billing_cycle_id is not None:
                        cycle = await self.cycles.get_cycle(shipment.billing_cycle_id)
                        await self.cycles.add_weight_discrepancy(cycle, difference)

                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        if txn is not None:
            logger.info(f"Weight discrepancy charge {difference} for {awb_number}")
        return txn

    # ==================== INVOICES ====================

    async def list_invoices(
        self,
        merchant_id: uuid.UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        payment_status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Invoice], int]:
        return await self.invoices.list_invoices(
            merchant_id, date_from, date_to, payment_status, skip, limit
        )

    async def get_invoice(self, merchant_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        return await self.invoices.get_invoice(invoice_id, merchant_id=merchant_id)

    async def get_invoice_detail(self, merchant_id: uuid.UUID, invoice_id: uuid.UUID) -> InvoiceDetail:
        """Invoice with tax split, lines and adjustments as a plain schema."""
        invoice = await self.get_invoice(merchant_id, invoice_id)
        return InvoiceDetail.model_validate(invoice)

    async def mark_invoice_paid(
        self,
        merchant_id: uuid.UUID,
        invoice_id: uuid.UUID,
        payment: PaymentInfo,
    ) -> Invoice:
        return await self.invoices.mark_invoice_paid(invoice_id, payment, merchant_id=merchant_id)

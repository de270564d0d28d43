"""Invoice Service for closed billing cycles.

Flow:
- Billing cycle CLOSED (end date passed, summary frozen)
- Tax split from merchant state codes: CGST + SGST when the pickup state
  equals the billing state, IGST otherwise
- Invoice + one line per contributing shipment, cycle -> INVOICED

Amounts accumulate at full precision; the grand total is rounded half-up
once. After generation only payment fields change; corrections are issued
as credit/debit notes.
"""
import csv
import io
import uuid
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Tuple, Union

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from shipsettle.config import settings
from shipsettle.core.enum_utils import get_enum_value
from shipsettle.core.exceptions import (
    InvalidInput, InvalidStateTransition, InvoiceNotFound, MerchantNotFound,
    SettlementError, TaxConfigurationError,
)
from shipsettle.core.locks import merchant_locks
from shipsettle.db_types import utcnow
from shipsettle.models.billing_cycle import BillingCycle, BillingCycleShipment, CycleStatus
from shipsettle.models.invoice import (
    Invoice, InvoiceLine, InvoiceAdjustment, PaymentStatus, AdjustmentType, InvoiceStatus,
)
from shipsettle.models.merchant import Merchant
from shipsettle.models.shipment import Shipment
from shipsettle.schemas.invoice import PaymentInfo, TransactionRow
from shipsettle.services.billing_cycle_service import BillingCycleService
from shipsettle.services.wallet_service import quantize_amount

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
GRAMS_PER_KG = Decimal("1000")


# GST State Code mapping
GST_STATE_CODES = {
    "01": "Jammu & Kashmir", "02": "Himachal Pradesh", "03": "Punjab",
    "04": "Chandigarh", "05": "Uttarakhand", "06": "Haryana",
    "07": "Delhi", "08": "Rajasthan", "09": "Uttar Pradesh",
    "10": "Bihar", "11": "Sikkim", "12": "Arunachal Pradesh",
    "13": "Nagaland", "14": "Manipur", "15": "Mizoram",
    "16": "Tripura", "17": "Meghalaya", "18": "Assam",
    "19": "West Bengal", "20": "Jharkhand", "21": "Odisha",
    "22": "Chhattisgarh", "23": "Madhya Pradesh", "24": "Gujarat",
    "26": "Dadra & Nagar Haveli and Daman & Diu", "27": "Maharashtra",
    "28": "Andhra Pradesh (Old)", "29": "Karnataka", "30": "Goa",
    "31": "Lakshadweep", "32": "Kerala", "33": "Tamil Nadu",
    "34": "Puducherry", "35": "Andaman & Nicobar Islands",
    "36": "Telangana", "37": "Andhra Pradesh",
    "38": "Ladakh", "97": "Other Territory"
}

# Reverse mapping: State name to code
STATE_TO_CODE = {v.upper(): k for k, v in GST_STATE_CODES.items()}


def get_state_code(name_or_code: Optional[str]) -> Optional[str]:
    """
    GST state code for a state name or code, None when unknown.

    Unlike a billing address form, the finalizer never guesses a default
    state: an unknown state blocks invoicing.
    """
    if not name_or_code:
        return None
    value = name_or_code.strip().upper()
    if value.isdigit():
        value = value.zfill(2)
        return value if value in GST_STATE_CODES else None
    value = value.replace(" AND ", " & ")
    return STATE_TO_CODE.get(value)


def _display(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_tax(subtotal: Decimal, gst_rate: Decimal, intra_state: bool) -> dict:
    """
    Tax split for one invoice.

    Exactly one path runs: CGST + SGST (half the rate each) when intra-state,
    IGST (full rate) otherwise. The combined tax is rounded once; SGST takes
    whatever CGST leaves so the parts always add up to ``total_tax``, and
    ``grand_total`` is exactly ``subtotal + total_tax``.
    """
    subtotal = _display(subtotal)
    total_tax = _display(subtotal * gst_rate / Decimal("100"))
    if intra_state:
        half_rate = gst_rate / 2
        cgst = _display(subtotal * half_rate / Decimal("100"))
        split = {
            "cgst_rate": half_rate, "cgst_amount": cgst,
            "sgst_rate": half_rate, "sgst_amount": total_tax - cgst,
            "igst_rate": ZERO, "igst_amount": ZERO,
        }
    else:
        split = {
            "cgst_rate": ZERO, "cgst_amount": ZERO,
            "sgst_rate": ZERO, "sgst_amount": ZERO,
            "igst_rate": gst_rate, "igst_amount": total_tax,
        }

    split["total_tax"] = total_tax
    split["grand_total"] = subtotal + total_tax
    return split


class InvoiceService:
    """Service for invoice finalization, payments and adjustments."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.cycles = BillingCycleService(db)

    # ==================== LOOKUPS ====================

    async def get_merchant(self, merchant_id: uuid.UUID) -> Merchant:
        merchant = await self.db.get(Merchant, merchant_id)
        if merchant is None:
            raise MerchantNotFound(f"Merchant {merchant_id} not found")
        return merchant

    async def get_invoice(
        self,
        invoice_id: uuid.UUID,
        merchant_id: Optional[uuid.UUID] = None,
    ) -> Invoice:
        """Invoice with lines and adjustments. Scoped to ``merchant_id`` when given."""
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if merchant_id is not None:
            stmt = stmt.where(Invoice.merchant_id == merchant_id)
        result = await self.db.execute(stmt)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        return invoice

    async def get_invoice_for_cycle(self, cycle_id: uuid.UUID) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(Invoice.billing_cycle_id == cycle_id)
        )
        return result.scalar_one_or_none()

    async def list_invoices(
        self,
        merchant_id: uuid.UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        payment_status: Optional[Union[str, PaymentStatus]] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Invoice], int]:
        """List invoices by invoice date, newest first."""
        filters = [Invoice.merchant_id == merchant_id]
        if date_from:
            filters.append(Invoice.invoice_date >= date_from)
        if date_to:
            filters.append(Invoice.invoice_date <= date_to)
        if payment_status:
            filters.append(Invoice.payment_status == get_enum_value(payment_status))

        count_stmt = select(func.count(Invoice.id)).where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        result = await self.db.execute(
            select(Invoice)
            .where(and_(*filters))
            .order_by(Invoice.invoice_date.desc(), Invoice.merchant_sequence.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def next_sequence(self, merchant_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.max(Invoice.merchant_sequence)).where(Invoice.merchant_id == merchant_id)
        )
        return (result.scalar() or 0) + 1

    @staticmethod
    def make_invoice_number(cycle: BillingCycle, sequence: int) -> str:
        # Format: INV2511C1-00001 (Year, Month, Cycle, Sequence)
        return f"INV{cycle.year % 100:02d}{cycle.month:02d}C{cycle.cycle_number}-{sequence:05d}"

    async def _cycle_shipments(self, cycle_id: uuid.UUID) -> List[Shipment]:
        result = await self.db.execute(
            select(Shipment)
            .join(BillingCycleShipment, BillingCycleShipment.shipment_id == Shipment.id)
            .where(BillingCycleShipment.billing_cycle_id == cycle_id)
            .order_by(Shipment.booked_at, Shipment.awb_number)
        )
        return list(result.scalars().all())

    # ==================== FINALIZATION ====================

    def _tax_codes(self, merchant: Merchant) -> Tuple[str, str]:
        billing = get_state_code(merchant.billing_state_code)
        pickup = get_state_code(merchant.pickup_state_code)
        missing = []
        if billing is None:
            missing.append("billing_state_code")
        if pickup is None:
            missing.append("pickup_state_code")
        if missing:
            raise TaxConfigurationError(merchant.id, missing)
        return billing, pickup

    async def finalize(self, cycle_id: uuid.UUID, now: Optional[datetime] = None) -> Invoice:
        """
        Turn one CLOSED cycle into an invoice and mark the cycle INVOICED.

        Finalizing an already invoiced cycle returns its invoice.

        Raises:
            TaxConfigurationError: merchant state codes missing; cycle stays CLOSED.
            InvalidStateTransition: the cycle is still OPEN.
        """
        cycle = await self.cycles.get_cycle(cycle_id)
        now = now or utcnow()

        async with merchant_locks.hold(cycle.merchant_id):
            cycle = await self.cycles._lock_cycle(cycle_id)

            if cycle.status == CycleStatus.INVOICED.value:
                existing = await self.get_invoice_for_cycle(cycle.id)
                if existing is not None:
                    logger.info(f"Cycle {cycle.cycle_code} already invoiced as {existing.invoice_number}")
                    return existing
            if cycle.status != CycleStatus.CLOSED.value:
                raise InvalidStateTransition(
                    f"Cycle {cycle.cycle_code} is {cycle.status}; only CLOSED cycles can be invoiced"
                )

            merchant = await self.get_merchant(cycle.merchant_id)
            billing_code, pickup_code = self._tax_codes(merchant)
            intra_state = billing_code == pickup_code

            forward = cycle.total_forward_charges or ZERO
            rto = cycle.total_rto_charges or ZERO
            cod = cycle.total_cod_charges or ZERO
            discrepancy = cycle.total_weight_discrepancy_charges or ZERO
            subtotal = cycle.estimated_total

            tax = compute_tax(subtotal, Decimal(settings.GST_RATE), intra_state)
            sequence = await self.next_sequence(merchant.id)

            invoice = Invoice(
                invoice_number=self.make_invoice_number(cycle, sequence),
                merchant_id=merchant.id,
                billing_cycle_id=cycle.id,
                merchant_sequence=sequence,
                cycle_code=cycle.cycle_code,
                period_start=cycle.start_date,
                period_end=cycle.end_date,
                invoice_date=now,
                due_date=now + timedelta(days=settings.INVOICE_DUE_DAYS),
                status=InvoiceStatus.GENERATED.value,

                # GST info
                seller_gstin=settings.SELLER_GSTIN,
                buyer_gstin=merchant.gstin,
                place_of_supply=billing_code,
                place_of_supply_name=GST_STATE_CODES.get(billing_code),
                is_igst=not intra_state,
                sac_code=settings.SAC_CODE,

                # Charges
                forward_charges=forward,
                rto_charges=rto,
                cod_charges=cod,
                weight_discrepancy_charges=discrepancy,
                subtotal=_display(subtotal),
                cgst_rate=tax["cgst_rate"],
                cgst_amount=tax["cgst_amount"],
                sgst_rate=tax["sgst_rate"],
                sgst_amount=tax["sgst_amount"],
                igst_rate=tax["igst_rate"],
                igst_amount=tax["igst_amount"],
                total_tax=tax["total_tax"],
                grand_total=tax["grand_total"],

                # Shipment summary
                total_shipments=cycle.total_shipments,
                delivered_shipments=cycle.delivered_shipments,
                rto_shipments=cycle.rto_shipments,
                cancelled_shipments=cycle.cancelled_shipments,
                total_cod_amount=cycle.total_cod_amount or ZERO,

                # Payment
                payment_status=PaymentStatus.PENDING.value,
                amount_paid=ZERO,
                balance_due=tax["grand_total"],
            )

            for line_number, shipment in enumerate(await self._cycle_shipments(cycle.id), start=1):
                invoice.lines.append(InvoiceLine(
                    line_number=line_number,
                    shipment_id=shipment.id,
                    awb_number=shipment.awb_number,
                    order_reference=shipment.order_reference,
                    shipment_status=shipment.status,
                    zone=shipment.zone,
                    payment_mode=shipment.payment_mode,
                    declared_weight_grams=shipment.declared_weight_grams,
                    charged_weight_grams=shipment.charged_weight_grams,
                    pickup_pincode=shipment.pickup_pincode,
                    delivery_pincode=shipment.delivery_pincode,
                    forward_charge=shipment.forward_charge or ZERO,
                    rto_charge=shipment.rto_charge or ZERO,
                    cod_charge=shipment.cod_charge or ZERO,
                    weight_discrepancy_charge=shipment.weight_discrepancy_charge or ZERO,
                    total_charge=shipment.total_charge or ZERO,
                    cod_amount=shipment.cod_amount or ZERO,
                ))

            self.db.add(invoice)
            await self.db.flush()
            await self.cycles.mark_invoiced(cycle, invoice.id, now=now)
            await self.db.commit()

        logger.info(
            f"Generated invoice {invoice.invoice_number} for cycle {cycle.cycle_code}: "
            f"subtotal {invoice.subtotal}, tax {invoice.total_tax} "
            f"({'IGST' if invoice.is_igst else 'CGST+SGST'}), total {invoice.grand_total}"
        )
        return invoice

    async def finalize_closed_cycles(self, now: Optional[datetime] = None) -> List[Invoice]:
        """Invoice every CLOSED cycle. A cycle that fails is logged and left CLOSED."""
        result = await self.db.execute(
            select(BillingCycle.id, BillingCycle.cycle_code)
            .where(BillingCycle.status == CycleStatus.CLOSED.value)
            .order_by(BillingCycle.end_date)
        )
        pending = list(result.all())

        invoices = []
        rolled_back = False
        for cycle_id, cycle_code in pending:
            try:
                invoices.append(await self.finalize(cycle_id, now=now))
            except TaxConfigurationError as e:
                await self.db.rollback()
                rolled_back = True
                logger.warning(f"Cycle {cycle_code} not invoiced: {e}")
            except SettlementError as e:
                await self.db.rollback()
                rolled_back = True
                logger.error(f"Failed to invoice cycle {cycle_code}: {e}")

        # A rollback expires everything in the session, including invoices committed earlier
        if rolled_back:
            for invoice in invoices:
                await self.db.refresh(invoice)
        return invoices

    # ==================== PAYMENTS ====================

    async def mark_invoice_paid(
        self,
        invoice_id: uuid.UUID,
        payment: PaymentInfo,
        merchant_id: Optional[uuid.UUID] = None,
    ) -> Invoice:
        """
        Record a payment. PAID once amount_paid reaches the grand total,
        otherwise PARTIALLY_PAID (OVERDUE stays OVERDUE until fully paid).
        """
        invoice = await self.get_invoice(invoice_id, merchant_id)

        async with merchant_locks.hold(invoice.merchant_id):
            await self.db.refresh(invoice)
            if invoice.payment_status == PaymentStatus.PAID.value or invoice.balance_due <= 0:
                raise InvalidStateTransition(f"Invoice {invoice.invoice_number} is already paid")

            amount = quantize_amount(payment.amount) if payment.amount is not None else invoice.balance_due
            if amount <= 0:
                raise InvalidInput(f"Payment amount must be positive, got {amount}")
            if amount > invoice.balance_due:
                raise InvalidInput(
                    f"Payment {amount} exceeds balance due {invoice.balance_due} "
                    f"on invoice {invoice.invoice_number}"
                )

            invoice.amount_paid = invoice.amount_paid + amount
            invoice.balance_due = max(invoice.grand_total - invoice.amount_paid, ZERO)
            if invoice.amount_paid >= invoice.grand_total:
                invoice.payment_status = PaymentStatus.PAID.value
                invoice.paid_at = payment.paid_at or utcnow()
            elif invoice.payment_status != PaymentStatus.OVERDUE.value:
                invoice.payment_status = PaymentStatus.PARTIALLY_PAID.value

            invoice.payment_method = get_enum_value(payment.payment_method)
            invoice.payment_reference = payment.payment_reference
            if payment.notes:
                invoice.payment_notes = payment.notes

            await self.db.commit()

        logger.info(
            f"Payment of {amount} recorded on invoice {invoice.invoice_number}: "
            f"{invoice.payment_status}, balance {invoice.balance_due}"
        )
        return invoice

    async def refresh_overdue(self, now: Optional[datetime] = None) -> int:
        """Mark unpaid invoices past their due date OVERDUE. Returns how many changed."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Invoice).where(
                and_(
                    Invoice.payment_status.in_([
                        PaymentStatus.PENDING.value,
                        PaymentStatus.PARTIALLY_PAID.value,
                    ]),
                    Invoice.due_date < now,
                )
            )
        )
        invoices = list(result.scalars().all())
        for invoice in invoices:
            invoice.payment_status = PaymentStatus.OVERDUE.value
            logger.info(f"Invoice {invoice.invoice_number} is overdue (due {invoice.due_date:%Y-%m-%d})")

        if invoices:
            await self.db.commit()
        return len(invoices)

    # ==================== ADJUSTMENTS ====================

    async def add_adjustment(
        self,
        invoice_id: uuid.UUID,
        note_type: Union[str, AdjustmentType],
        amount,
        reason: str,
        awb_number: Optional[str] = None,
    ) -> InvoiceAdjustment:
        """Issue a credit or debit note. The invoice amounts are never edited."""
        note_value = get_enum_value(note_type)
        if note_value not in {t.value for t in AdjustmentType}:
            raise InvalidInput(f"Unknown adjustment type '{note_value}'")
        amount = quantize_amount(amount)
        if amount <= 0:
            raise InvalidInput(f"Adjustment amount must be positive, got {amount}")
        if not reason or not reason.strip():
            raise InvalidInput("Adjustment reason is required")

        invoice = await self.get_invoice(invoice_id)
        async with merchant_locks.hold(invoice.merchant_id):
            count = (await self.db.execute(
                select(func.count(InvoiceAdjustment.id))
                .where(InvoiceAdjustment.invoice_id == invoice.id)
            )).scalar() or 0
            prefix = "CN" if note_value == AdjustmentType.CREDIT_NOTE.value else "DN"

            adjustment = InvoiceAdjustment(
                note_number=f"{prefix}-{invoice.invoice_number}-{count + 1:02d}",
                note_type=note_value,
                amount=amount,
                reason=reason.strip(),
                awb_number=awb_number,
            )
            invoice.adjustments.append(adjustment)
            await self.db.commit()

        logger.info(f"Issued {adjustment.note_number} for {amount} on invoice {invoice.invoice_number}")
        return adjustment

    # ==================== EXPORT ====================

    async def transaction_rows(self, invoice_id: uuid.UUID) -> List[TransactionRow]:
        """Per-shipment rows backing the transaction list download."""
        invoice = await self.get_invoice(invoice_id)
        return [
            TransactionRow(
                awb_number=line.awb_number,
                order_reference=line.order_reference,
                status=line.shipment_status,
                zone=line.zone,
                payment_mode=line.payment_mode,
                declared_weight_kg=Decimal(line.declared_weight_grams) / GRAMS_PER_KG,
                charged_weight_kg=Decimal(line.charged_weight_grams) / GRAMS_PER_KG,
                pickup_pincode=line.pickup_pincode,
                delivery_pincode=line.delivery_pincode,
                forward_charge=line.forward_charge,
                rto_charge=line.rto_charge,
                cod_charge=line.cod_charge,
                weight_discrepancy_charge=line.weight_discrepancy_charge,
                total_charge=line.total_charge,
                cod_amount=line.cod_amount,
            )
            for line in invoice.lines
        ]

    async def transaction_csv(self, invoice_id: uuid.UUID) -> str:
        rows = await self.transaction_rows(invoice_id)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(TransactionRow.CSV_HEADERS)
        for row in rows:
            writer.writerow(row.as_csv_row())
        return buffer.getvalue()

import csv
import io
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shipsettle.core.exceptions import (
    ImmutableRecordError, InvalidInput, InvalidStateTransition, InvoiceNotFound, TaxConfigurationError,
)
from shipsettle.models.billing_cycle import CycleStatus
from shipsettle.models.invoice import AdjustmentType, PaymentMethod, PaymentStatus
from shipsettle.models.shipment import PaymentMode, ShipmentStatus
from shipsettle.schemas.invoice import PaymentInfo, TransactionRow
from shipsettle.services.billing_cycle_service import BillingCycleService
from shipsettle.services.invoice_service import InvoiceService, compute_tax, get_state_code

BOOKED = datetime(2025, 11, 10, 6, 30, tzinfo=timezone.utc)
AFTER_CLOSE = datetime(2025, 11, 16, 2, 0, tzinfo=timezone.utc)


async def closed_cycle(db, merchant, make_shipment, shipments=None):
    """Open a November C1 cycle, fold shipments into it and close it."""
    cycles = BillingCycleService(db)
    cycle = await cycles.get_or_create_current_cycle(merchant.id, BOOKED)
    for overrides in shipments or [{}]:
        shipment = await make_shipment(merchant, **overrides)
        await cycles.add_shipment(cycle, shipment)
    await db.commit()
    await cycles.close_cycle(cycle.id, now=AFTER_CLOSE)
    return cycle


# ==================== TAX ====================

def test_intra_state_tax_splits_in_half():
    tax = compute_tax(Decimal("232.00"), Decimal("18"), intra_state=True)
    assert tax["cgst_rate"] == Decimal("9")
    assert tax["cgst_amount"] == Decimal("20.88")
    assert tax["sgst_amount"] == Decimal("20.88")
    assert tax["igst_amount"] == 0
    assert tax["total_tax"] == Decimal("41.76")
    assert tax["grand_total"] == Decimal("273.76")


def test_inter_state_tax_is_igst_only():
    tax = compute_tax(Decimal("232.00"), Decimal("18"), intra_state=False)
    assert tax["igst_rate"] == Decimal("18")
    assert tax["igst_amount"] == Decimal("41.76")
    assert tax["cgst_amount"] == tax["sgst_amount"] == 0
    assert tax["grand_total"] == Decimal("273.76")


@pytest.mark.parametrize("subtotal,cgst,sgst,total_tax,grand_total", [
    ("40.50", "3.65", "3.64", "7.29", "47.79"),
    ("100.05", "9.00", "9.01", "18.01", "118.06"),
    ("0.01", "0.00", "0.00", "0.00", "0.01"),
])
def test_tax_parts_add_up_to_the_grand_total(subtotal, cgst, sgst, total_tax, grand_total):
    tax = compute_tax(Decimal(subtotal), Decimal("18"), intra_state=True)
    assert tax["cgst_amount"] == Decimal(cgst)
    assert tax["sgst_amount"] == Decimal(sgst)
    assert tax["total_tax"] == Decimal(total_tax)
    assert tax["cgst_amount"] + tax["sgst_amount"] == tax["total_tax"]
    assert tax["grand_total"] == Decimal(subtotal) + tax["total_tax"] == Decimal(grand_total)


def test_odd_paise_inter_state_tax():
    tax = compute_tax(Decimal("100.05"), Decimal("18"), intra_state=False)
    assert tax["igst_amount"] == tax["total_tax"] == Decimal("18.01")
    assert tax["grand_total"] == Decimal("118.06")


@pytest.mark.parametrize("value,expected", [
    ("06", "06"),
    ("6", "06"),
    ("Haryana", "06"),
    ("karnataka", "29"),
    ("Jammu and Kashmir", "01"),
    ("99", None),
    ("Atlantis", None),
    ("", None),
    (None, None),
])
def test_get_state_code(value, expected):
    assert get_state_code(value) == expected


# ==================== FINALIZATION ====================

async def test_finalize_intra_state(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment, [
        {"awb_number": "AWB0000000002", "booked_at": BOOKED + timedelta(hours=1)},
        {"awb_number": "AWB0000000001"},
    ])

    invoice = await InvoiceService(db).finalize(cycle.id, now=AFTER_CLOSE)

    assert invoice.invoice_number == "INV2511C1-00001"
    assert invoice.merchant_sequence == 1
    assert invoice.is_igst is False
    assert invoice.place_of_supply == "06"
    assert invoice.place_of_supply_name == "Haryana"
    assert invoice.forward_charges == Decimal("464.00")
    assert invoice.subtotal == Decimal("464.00")
    assert invoice.cgst_amount == invoice.sgst_amount == Decimal("41.76")
    assert invoice.igst_amount == 0
    assert invoice.grand_total == Decimal("547.52")
    assert invoice.balance_due == invoice.grand_total
    assert invoice.payment_status == PaymentStatus.PENDING.value
    assert invoice.due_date == AFTER_CLOSE + timedelta(days=15)
    assert [line.awb_number for line in invoice.lines] == ["AWB0000000001", "AWB0000000002"]
    assert [line.line_number for line in invoice.lines] == [1, 2]

    cycle = await BillingCycleService(db).get_cycle(cycle.id)
    assert cycle.status == CycleStatus.INVOICED.value
    assert cycle.invoice_id == invoice.id


async def test_finalize_inter_state(db, interstate_merchant, make_shipment):
    cycle = await closed_cycle(db, interstate_merchant, make_shipment)
    invoice = await InvoiceService(db).finalize(cycle.id, now=AFTER_CLOSE)
    assert invoice.is_igst is True
    assert invoice.place_of_supply == "29"
    assert invoice.igst_rate == Decimal("18")
    assert invoice.igst_amount == Decimal("41.76")
    assert invoice.cgst_amount == invoice.sgst_amount == 0
    assert invoice.grand_total == Decimal("273.76")


async def test_finalize_is_idempotent(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    first = await service.finalize(cycle.id, now=AFTER_CLOSE)
    second = await service.finalize(cycle.id, now=AFTER_CLOSE + timedelta(hours=1))
    assert first.id == second.id
    _, total = await service.list_invoices(merchant.id)
    assert total == 1


async def test_finalize_open_cycle_is_rejected(db, merchant):
    cycle = await BillingCycleService(db).get_or_create_current_cycle(merchant.id, BOOKED, commit=True)
    with pytest.raises(InvalidStateTransition):
        await InvoiceService(db).finalize(cycle.id)


async def test_missing_state_codes_block_invoicing(db, untaxed_merchant, make_shipment):
    cycle = await closed_cycle(db, untaxed_merchant, make_shipment)
    with pytest.raises(TaxConfigurationError) as exc_info:
        await InvoiceService(db).finalize(cycle.id, now=AFTER_CLOSE)
    assert exc_info.value.missing == ["billing_state_code", "pickup_state_code"]
    assert cycle.status == CycleStatus.CLOSED.value


async def test_invoice_numbers_are_sequential_per_merchant(db, merchant, make_shipment):
    service = InvoiceService(db)
    first_cycle = await closed_cycle(db, merchant, make_shipment)
    first = await service.finalize(first_cycle.id, now=AFTER_CLOSE)

    cycles = BillingCycleService(db)
    later = datetime(2025, 11, 20, 6, 0, tzinfo=timezone.utc)
    second_cycle = await cycles.get_or_create_current_cycle(merchant.id, later)
    await cycles.add_shipment(second_cycle, await make_shipment(merchant, booked_at=later))
    await db.commit()
    await cycles.close_cycle(second_cycle.id)
    second = await service.finalize(second_cycle.id)

    assert first.invoice_number == "INV2511C1-00001"
    assert second.invoice_number == "INV2511C2-00002"


async def test_finalize_closed_cycles_skips_misconfigured(db, merchant, untaxed_merchant, make_shipment):
    good = await closed_cycle(db, merchant, make_shipment)
    bad = await closed_cycle(db, untaxed_merchant, make_shipment)
    good_id, bad_id = good.id, bad.id

    invoices = await InvoiceService(db).finalize_closed_cycles(now=AFTER_CLOSE)

    assert [i.billing_cycle_id for i in invoices] == [good_id]
    assert invoices[0].invoice_number == "INV2511C1-00001"
    cycles = BillingCycleService(db)
    assert (await cycles.get_cycle(bad_id)).status == CycleStatus.CLOSED.value
    assert (await cycles.get_cycle(good_id)).status == CycleStatus.INVOICED.value


async def test_invoice_lines_cover_cod_and_rto(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment, [
        {
            "payment_mode": PaymentMode.COD.value,
            "cod_amount": Decimal("1000"),
            "cod_charge": Decimal("41.30"),
            "total_charge": Decimal("273.30"),
        },
    ])
    invoice = await InvoiceService(db).finalize(cycle.id, now=AFTER_CLOSE)
    assert invoice.cod_charges == Decimal("41.30")
    assert invoice.subtotal == Decimal("273.30")
    assert invoice.total_cod_amount == Decimal("1000")
    assert invoice.lines[0].payment_mode == PaymentMode.COD.value


# ==================== PAYMENTS ====================

async def test_partial_then_full_payment(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)

    invoice = await service.mark_invoice_paid(
        invoice.id, PaymentInfo(amount=Decimal("100"), payment_method=PaymentMethod.UPI),
    )
    assert invoice.payment_status == PaymentStatus.PARTIALLY_PAID.value
    assert invoice.amount_paid == Decimal("100.00")
    assert invoice.balance_due == Decimal("173.76")

    with pytest.raises(InvalidInput):
        await service.mark_invoice_paid(invoice.id, PaymentInfo(amount=Decimal("500")))

    paid_at = datetime(2025, 11, 20, tzinfo=timezone.utc)
    invoice = await service.mark_invoice_paid(
        invoice.id, PaymentInfo(payment_reference="UTR123", paid_at=paid_at),
    )
    assert invoice.payment_status == PaymentStatus.PAID.value
    assert invoice.balance_due == 0
    assert invoice.paid_at == paid_at
    assert invoice.payment_reference == "UTR123"

    with pytest.raises(InvalidStateTransition):
        await service.mark_invoice_paid(invoice.id, PaymentInfo())


async def test_payment_is_scoped_to_merchant(db, merchant, interstate_merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)
    with pytest.raises(InvoiceNotFound):
        await service.mark_invoice_paid(invoice.id, PaymentInfo(), merchant_id=interstate_merchant.id)
    with pytest.raises(InvoiceNotFound):
        await service.get_invoice(uuid.uuid4())


async def test_refresh_overdue(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)

    assert await service.refresh_overdue(now=AFTER_CLOSE + timedelta(days=10)) == 0
    assert await service.refresh_overdue(now=AFTER_CLOSE + timedelta(days=16)) == 1
    assert invoice.payment_status == PaymentStatus.OVERDUE.value
    assert await service.refresh_overdue(now=AFTER_CLOSE + timedelta(days=17)) == 0

    invoice = await service.mark_invoice_paid(invoice.id, PaymentInfo(amount=Decimal("10")))
    assert invoice.payment_status == PaymentStatus.OVERDUE.value
    invoice = await service.mark_invoice_paid(invoice.id, PaymentInfo())
    assert invoice.payment_status == PaymentStatus.PAID.value

    overdue, total = await service.list_invoices(merchant.id, payment_status=PaymentStatus.OVERDUE)
    assert total == 0
    paid, total = await service.list_invoices(merchant.id, payment_status="PAID")
    assert total == 1


# ==================== IMMUTABILITY / ADJUSTMENTS ====================

async def test_finalized_invoice_amounts_are_immutable(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)
    invoice_id = invoice.id

    invoice.grand_total = Decimal("1.00")
    with pytest.raises(ImmutableRecordError):
        await db.flush()
    await db.rollback()

    invoice = await service.get_invoice(invoice_id)
    assert invoice.grand_total == Decimal("273.76")


async def test_adjustments_are_notes_not_edits(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment)
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)

    credit = await service.add_adjustment(
        invoice.id, AdjustmentType.CREDIT_NOTE, 50, "Weight re-audit", awb_number=invoice.lines[0].awb_number,
    )
    debit = await service.add_adjustment(invoice.id, "DEBIT_NOTE", "20", "Missed COD fee")

    assert credit.note_number == "CN-INV2511C1-00001-01"
    assert debit.note_number == "DN-INV2511C1-00001-02"
    invoice = await service.get_invoice(invoice.id)
    assert invoice.grand_total == Decimal("273.76")
    assert invoice.net_adjustment == Decimal("-30.00")

    with pytest.raises(InvalidInput):
        await service.add_adjustment(invoice.id, "REFUND_NOTE", 5, "nope")
    with pytest.raises(InvalidInput):
        await service.add_adjustment(invoice.id, AdjustmentType.CREDIT_NOTE, 5, "   ")


# ==================== EXPORT ====================

async def test_transaction_csv(db, merchant, make_shipment):
    cycle = await closed_cycle(db, merchant, make_shipment, [
        {"awb_number": "AWB0000000001", "status": ShipmentStatus.DELIVERED.value},
    ])
    service = InvoiceService(db)
    invoice = await service.finalize(cycle.id, now=AFTER_CLOSE)

    rows = await service.transaction_rows(invoice.id)
    assert rows[0].charged_weight_kg == Decimal("5")

    reader = csv.reader(io.StringIO(await service.transaction_csv(invoice.id)))
    header, first = list(reader)
    assert header == TransactionRow.CSV_HEADERS
    assert first[0] == "AWB0000000001"
    assert first[2] == ShipmentStatus.DELIVERED.value
    assert first[6] == "5"
    assert first[9] == "232.00"

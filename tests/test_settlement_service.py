from datetime import datetime, timezone
from decimal import Decimal

import pytest

from shipsettle.core.exceptions import (
    InsufficientBalance, InvalidInput, InvalidStateTransition, ShipmentNotFound,
)
from shipsettle.models.billing_cycle import BillingCycle
from shipsettle.models.invoice import PaymentStatus
from shipsettle.models.rate_card import ZoneCode
from shipsettle.models.shipment import ShipmentStatus
from shipsettle.models.wallet import TransactionCategory
from shipsettle.schemas.invoice import PaymentInfo
from shipsettle.services.invoice_service import InvoiceService
from shipsettle.services.settlement_service import SettlementService
from shipsettle.services.billing_cycle_service import BillingCycleService
from tests.conftest import charge_request

BOOKED = datetime(2025, 11, 10, 6, 30, tzinfo=timezone.utc)
AFTER_CLOSE = datetime(2025, 11, 16, 2, 0, tzinfo=timezone.utc)


class FakeZoneCarrier:
    def __init__(self, zone: ZoneCode):
        self.zone = zone
        self.calls = []

    async def lookup_zone(self, origin, destination, weight_grams, payment_type="Pre-paid"):
        self.calls.append((origin, destination, weight_grams, payment_type))
        return self.zone


# ==================== QUOTE / CHARGE ====================

async def test_quote_writes_nothing(db, merchant):
    service = SettlementService(db)
    breakdown = await service.quote(merchant.id, charge_request(zone="Zone C-2 (Metro to Metro)"))
    assert breakdown.zone == ZoneCode.C
    assert breakdown.total == Decimal("232")
    _, total = await service.wallet.list_transactions(merchant.id)
    assert total == 0


async def test_charge_shipment_debits_and_aggregates(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000, reference_number="PG-1")

    txn = await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)

    assert txn.amount == Decimal("232.00")
    assert txn.opening_balance == Decimal("1000.00")
    assert txn.closing_balance == Decimal("768.00")
    assert txn.category == TransactionCategory.SHIPPING_CHARGE.value
    assert txn.awb_number == "AWB1000000001"
    assert txn.zone == "C"
    assert await service.get_current_balance(merchant.id) == Decimal("768.00")

    shipment = await service.get_shipment(merchant.id, "AWB1000000001")
    assert shipment.charge_transaction_id == txn.id
    assert shipment.status == ShipmentStatus.NEW.value
    assert shipment.forward_charge == Decimal("232.00")
    assert shipment.booked_at == BOOKED

    cycle = await db.get(BillingCycle, shipment.billing_cycle_id)
    assert (cycle.year, cycle.month, cycle.cycle_number) == (2025, 11, 1)
    assert cycle.total_shipments == 1
    assert cycle.total_forward_charges == Decimal("232.00")

    record = await service.tracking.get_record("AWB1000000001")
    assert record.is_tracking_active
    assert await service.wallet.verify_chain(merchant.id)


async def test_exact_balance_then_insufficient(db, merchant):
    merchant_id = merchant.id
    service = SettlementService(db)
    await service.recharge_wallet(merchant_id, 232)

    txn = await service.charge_shipment(merchant_id, charge_request(), now=BOOKED)
    assert txn.closing_balance == Decimal("0.00")

    with pytest.raises(InsufficientBalance):
        await service.charge_shipment(merchant_id, charge_request("AWB1000000002", weight_grams=250), now=BOOKED)

    assert await service.get_current_balance(merchant_id) == Decimal("0.00")
    assert await service.find_shipment("AWB1000000002") is None
    with pytest.raises(InsufficientBalance):
        await service.wallet.debit(merchant_id, 1)


async def test_cod_shipment_charges_cod_fee(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)

    txn = await service.charge_shipment(
        merchant.id,
        charge_request(weight_grams=500, payment_mode="cod", cod_amount=Decimal("1000")),
        now=BOOKED,
    )

    assert txn.amount == Decimal("92.30")
    shipment = await service.get_shipment(merchant.id, "AWB1000000001")
    assert shipment.cod_charge == Decimal("41.30")
    assert shipment.cod_amount == Decimal("1000.00")
    cycle = await db.get(BillingCycle, shipment.billing_cycle_id)
    assert cycle.cod_shipments == 1
    assert cycle.total_cod_charges == Decimal("41.30")


async def test_volumetric_weight_is_charged(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)
    txn = await service.charge_shipment(
        merchant.id,
        charge_request(weight_grams=500, length_cm=30, width_cm=20, height_cm=10),
        now=BOOKED,
    )
    assert txn.amount == Decimal("107.00")
    shipment = await service.get_shipment(merchant.id, "AWB1000000001")
    assert shipment.volumetric_weight_grams == 1200
    assert shipment.charged_weight_grams == 1200


async def test_duplicate_awb_returns_original_charge(db, merchant, make_merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)
    first = await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)
    second = await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)

    assert second.id == first.id
    assert await service.get_current_balance(merchant.id) == Decimal("768.00")

    other = await make_merchant(name="Someone Else")
    other_id = other.id
    with pytest.raises(InvalidInput):
        await service.charge_shipment(other_id, charge_request(), now=BOOKED)


async def test_invalid_request_is_rejected_before_debit(db, merchant):
    merchant_id = merchant.id
    service = SettlementService(db)
    await service.recharge_wallet(merchant_id, 1000)
    with pytest.raises(InvalidInput):
        await service.charge_shipment(merchant_id, charge_request(zone="Q"), now=BOOKED)
    with pytest.raises(InvalidInput):
        await service.charge_shipment(merchant_id, charge_request(weight_grams=0), now=BOOKED)
    assert await service.get_current_balance(merchant_id) == Decimal("1000.00")


# ==================== ZONE LOOKUP ====================

async def test_missing_zone_is_looked_up_from_carrier(db, merchant):
    carrier = FakeZoneCarrier(ZoneCode.D)
    service = SettlementService(db, carrier=carrier)
    await service.recharge_wallet(merchant.id, 1000)

    txn = await service.charge_shipment(merchant.id, charge_request(zone=None), now=BOOKED)

    assert txn.amount == Decimal("245.00")
    assert txn.zone == "D"
    assert carrier.calls == [("122001", "560001", 5000, "Pre-paid")]


async def test_missing_zone_without_carrier(db, merchant):
    with pytest.raises(InvalidInput):
        await SettlementService(db).quote(merchant.id, charge_request(zone=None))


async def test_missing_zone_without_pincodes(db, merchant):
    service = SettlementService(db, carrier=FakeZoneCarrier(ZoneCode.A))
    with pytest.raises(InvalidInput):
        await service.quote(merchant.id, charge_request(zone=None, delivery_pincode=None))


# ==================== CANCEL ====================

async def test_cancel_before_pickup_refunds(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)
    charge = await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)

    refund = await service.cancel_shipment(merchant.id, "AWB1000000001", "Buyer cancelled")

    assert refund.reversal_of_id == charge.id
    assert refund.amount == Decimal("232.00")
    assert await service.get_current_balance(merchant.id) == Decimal("1000.00")

    shipment = await service.get_shipment(merchant.id, "AWB1000000001")
    assert shipment.status == ShipmentStatus.CANCELLED.value
    assert shipment.cancellation_reason == "Buyer cancelled"
    cycle = await db.get(BillingCycle, shipment.billing_cycle_id)
    assert cycle.cancelled_shipments == 1
    assert cycle.in_transit_shipments == 0
    assert cycle.total_forward_charges == Decimal("0.00")

    record = await service.tracking.get_record("AWB1000000001")
    assert not record.is_tracking_active
    assert record.cancelled_at is not None

    assert await service.cancel_shipment(merchant.id, "AWB1000000001", "again") is None
    assert await service.wallet.verify_chain(merchant.id)


async def test_cancel_after_pickup_is_rejected(db, merchant):
    merchant_id = merchant.id
    service = SettlementService(db)
    await service.recharge_wallet(merchant_id, 1000)
    await service.charge_shipment(merchant_id, charge_request(), now=BOOKED)
    shipment = await service.get_shipment(merchant_id, "AWB1000000001")
    shipment.status = ShipmentStatus.IN_TRANSIT.value
    await db.commit()

    with pytest.raises(InvalidStateTransition):
        await service.cancel_shipment(merchant_id, "AWB1000000001", "too late")
    assert await service.get_current_balance(merchant_id) == Decimal("768.00")


async def test_cancel_unknown_shipment(db, merchant):
    with pytest.raises(ShipmentNotFound):
        await SettlementService(db).cancel_shipment(merchant.id, "NOPE", "x")


# ==================== WEIGHT DISCREPANCY ====================

async def test_weight_discrepancy_charges_the_difference_once(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)
    await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)

    txn = await service.apply_weight_discrepancy(merchant.id, "AWB1000000001", 6000)
    assert txn.amount == Decimal("36.00")
    assert txn.category == TransactionCategory.WEIGHT_DISCREPANCY.value
    assert await service.get_current_balance(merchant.id) == Decimal("732.00")

    shipment = await service.get_shipment(merchant.id, "AWB1000000001")
    assert shipment.carrier_weight_grams == 6000
    assert shipment.weight_discrepancy_charge == Decimal("36.00")
    assert shipment.total_charge == Decimal("268.00")
    cycle = await db.get(BillingCycle, shipment.billing_cycle_id)
    assert cycle.total_weight_discrepancy_charges == Decimal("36.00")

    assert await service.apply_weight_discrepancy(merchant.id, "AWB1000000001", 6000) is None
    assert await service.get_current_balance(merchant.id) == Decimal("732.00")


async def test_lighter_measurement_is_not_refunded(db, merchant):
    service = SettlementService(db)
    await service.recharge_wallet(merchant.id, 1000)
    await service.charge_shipment(merchant.id, charge_request(), now=BOOKED)
    assert await service.apply_weight_discrepancy(merchant.id, "AWB1000000001", 250) is None
    assert await service.get_current_balance(merchant.id) == Decimal("768.00")


async def test_weight_discrepancy_rejects_bad_weight(db, merchant):
    with pytest.raises(InvalidInput):
        await SettlementService(db).apply_weight_discrepancy(merchant.id, "AWB1000000001", 0)


# ==================== INVOICES ====================

async def test_charge_to_paid_invoice(db, merchant):
    merchant_id = merchant.id
    service = SettlementService(db)
    await service.recharge_wallet(merchant_id, 1000)
    await service.charge_shipment(merchant_id, charge_request(), now=BOOKED)

    await BillingCycleService(db).close_expired_cycles(now=AFTER_CLOSE)
    invoices = await InvoiceService(db).finalize_closed_cycles(now=AFTER_CLOSE)
    assert len(invoices) == 1

    listed, total = await service.list_invoices(merchant_id)
    assert total == 1
    invoice = await service.get_invoice(merchant_id, listed[0].id)
    assert invoice.grand_total == Decimal("273.76")
    assert [line.awb_number for line in invoice.lines] == ["AWB1000000001"]

    invoice = await service.mark_invoice_paid(merchant_id, invoice.id, PaymentInfo(payment_method="upi"))
    assert invoice.payment_status == PaymentStatus.PAID.value
    assert invoice.payment_method == "UPI"

    detail = await service.get_invoice_detail(merchant_id, invoice.id)
    assert detail.cgst_amount == detail.sgst_amount == Decimal("20.88")
    assert detail.balance_due == Decimal("0.00")
    assert [line.awb_number for line in detail.lines] == ["AWB1000000001"]
    assert detail.adjustments == []

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from shipsettle.core.exceptions import CycleClosed, InsufficientBalance
from shipsettle.models.billing_cycle import CycleStatus
from shipsettle.models.shipment import PaymentMode, Shipment, ShipmentStatus
from shipsettle.models.wallet import TransactionCategory
from shipsettle.services.billing_cycle_service import (
    BillingCycleService, billing_timezone, cycle_period, make_cycle_code,
)
from shipsettle.services.wallet_service import WalletService

IST = billing_timezone()
BOOKED = datetime(2025, 11, 10, 6, 30, tzinfo=timezone.utc)
AFTER_END = datetime(2025, 11, 16, 1, 0, tzinfo=timezone.utc)


# ==================== PERIODS ====================

def test_fifteenth_is_first_cycle_sixteenth_is_second():
    first = cycle_period(datetime(2025, 11, 15, 23, 59, 59, tzinfo=IST))
    second = cycle_period(datetime(2025, 11, 16, 0, 0, 0, tzinfo=IST))
    assert (first.year, first.month, first.cycle_number) == (2025, 11, 1)
    assert (second.year, second.month, second.cycle_number) == (2025, 11, 2)


def test_day_is_taken_in_billing_timezone():
    # 18:30 UTC on the 15th is midnight of the 16th in India
    assert cycle_period(datetime(2025, 11, 15, 18, 29, 59, tzinfo=timezone.utc)).cycle_number == 1
    assert cycle_period(datetime(2025, 11, 15, 18, 30, 0, tzinfo=timezone.utc)).cycle_number == 2


def test_period_bounds_are_utc():
    period = cycle_period(datetime(2025, 11, 20, 12, 0, tzinfo=IST))
    assert period.start == datetime(2025, 11, 15, 18, 30, tzinfo=timezone.utc)
    assert period.end == datetime(2025, 11, 30, 18, 29, 59, 999999, tzinfo=timezone.utc)
    assert period.contains(datetime(2025, 11, 30, 18, 0, tzinfo=timezone.utc))
    assert not period.contains(datetime(2025, 11, 30, 18, 30, tzinfo=timezone.utc))


def test_second_cycle_ends_on_last_day_of_month():
    leap = cycle_period(datetime(2024, 2, 20, tzinfo=IST))
    assert leap.end.astimezone(IST).day == 29
    december = cycle_period(datetime(2025, 12, 31, 23, 0, tzinfo=IST))
    assert december.end.astimezone(IST).day == 31


def test_naive_datetime_is_local_time():
    assert cycle_period(datetime(2025, 11, 16, 0, 0)).cycle_number == 2


def test_cycle_code(merchant):
    code = make_cycle_code(merchant.id, cycle_period(BOOKED))
    assert code == f"BC-{merchant.id.hex[-6:].upper()}-202511-C1"


# ==================== AGGREGATION ====================

async def test_get_or_create_is_idempotent(db, merchant):
    service = BillingCycleService(db)
    first = await service.get_or_create_current_cycle(merchant.id, BOOKED, commit=True)
    second = await service.get_or_create_current_cycle(merchant.id, BOOKED + timedelta(days=2))
    assert first.id == second.id
    assert first.status == CycleStatus.OPEN.value
    _, total = await service.list_cycles(merchant.id)
    assert total == 1


async def test_add_shipment_updates_summary_once(db, merchant, make_shipment):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    prepaid = await make_shipment(merchant)
    cod = await make_shipment(
        merchant,
        zone="D",
        payment_mode=PaymentMode.COD.value,
        cod_amount=Decimal("1000"),
        forward_charge=Decimal("245.00"),
        cod_charge=Decimal("41.30"),
        declared_weight_grams=4800,
    )

    assert await service.add_shipment(cycle, prepaid, commit=True)
    assert await service.add_shipment(cycle, cod, commit=True)
    assert not await service.add_shipment(cycle, prepaid, commit=True)

    cycle = await service.get_cycle(cycle.id)
    assert cycle.total_shipments == 2
    assert cycle.in_transit_shipments == 2
    assert cycle.prepaid_shipments == 1
    assert cycle.cod_shipments == 1
    assert cycle.total_cod_amount == Decimal("1000")
    assert cycle.total_forward_charges == Decimal("477.00")
    assert cycle.total_cod_charges == Decimal("41.30")
    assert cycle.total_declared_weight_grams == 9800
    assert cycle.total_charged_weight_grams == 10000
    assert cycle.zone_distribution == {"C": 1, "D": 1}
    assert prepaid.billing_cycle_id == cycle.id


async def test_status_change_moves_buckets(db, merchant, make_shipment):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant)
    await service.add_shipment(cycle, shipment, commit=True)

    rto = await service.on_status_change(
        cycle, shipment, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED, commit=True,
    )
    assert rto == 0
    cycle = await service.get_cycle(cycle.id)
    assert cycle.in_transit_shipments == 0
    assert cycle.delivered_shipments == 1


async def test_rto_debits_wallet_and_folds_into_cycle(db, merchant, make_shipment):
    await WalletService(db).recharge(merchant.id, 500)
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant)
    await service.add_shipment(cycle, shipment, commit=True)

    rto = await service.on_status_change(
        cycle, shipment, ShipmentStatus.IN_TRANSIT, ShipmentStatus.RTO, commit=True,
    )

    assert rto == Decimal("277.00")
    assert shipment.rto_charge == Decimal("277.00")
    cycle = await service.get_cycle(cycle.id)
    assert cycle.total_rto_charges == Decimal("277.00")
    assert cycle.rto_shipments == 1
    assert cycle.in_transit_shipments == 0

    wallet = WalletService(db)
    assert await wallet.get_balance(merchant.id) == Decimal("223.00")
    items, _ = await wallet.list_transactions(merchant.id, category=TransactionCategory.RTO_CHARGE)
    assert items[0].awb_number == shipment.awb_number

    # A repeated RTO report does not charge twice
    again = await service.on_status_change(
        cycle, shipment, ShipmentStatus.RTO, ShipmentStatus.RTO, commit=True,
    )
    assert again == 0
    assert await wallet.get_balance(merchant.id) == Decimal("223.00")


async def test_rto_with_insufficient_balance(db, merchant, make_shipment):
    await WalletService(db).recharge(merchant.id, 100)
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant)
    await service.add_shipment(cycle, shipment, commit=True)

    with pytest.raises(InsufficientBalance):
        await service.on_status_change(cycle, shipment, ShipmentStatus.IN_TRANSIT, ShipmentStatus.RTO)


async def test_refund_shipment_reverses_charge(db, merchant, make_shipment):
    wallet = WalletService(db)
    await wallet.recharge(merchant.id, 1000)
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant)
    debit = await wallet.debit(merchant.id, 232, shipment=shipment, commit=False)
    shipment.charge_transaction_id = debit.id
    await service.add_shipment(cycle, shipment, commit=True)

    refund = await service.refund_shipment(shipment, "Cancelled by merchant", commit=True)

    assert refund.reversal_of_id == debit.id
    assert await wallet.get_balance(merchant.id) == Decimal("1000.00")
    assert shipment.forward_charge == 0
    cycle = await service.get_cycle(cycle.id)
    assert cycle.total_forward_charges == Decimal("0.00")

    assert await service.refund_shipment(shipment, "again", commit=True) is None


# ==================== LIFECYCLE ====================

async def test_close_expired_cycles(db, merchant, make_shipment):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED, commit=True)

    assert await service.close_expired_cycles(now=datetime(2025, 11, 15, 12, 0, tzinfo=timezone.utc)) == []

    after_end = datetime(2025, 11, 16, 1, 0, tzinfo=timezone.utc)
    closed = await service.close_expired_cycles(now=after_end)
    assert [c.id for c in closed] == [cycle.id]
    assert closed[0].status == CycleStatus.CLOSED.value
    assert closed[0].closed_at == after_end

    assert await service.close_expired_cycles(now=after_end) == []
    assert not await service.close_cycle(cycle.id)


async def test_closed_cycle_rejects_shipments(db, merchant, make_shipment):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED, commit=True)
    await service.close_cycle(cycle.id)

    shipment = await make_shipment(merchant)
    with pytest.raises(CycleClosed):
        await service.add_shipment(cycle, shipment)
    with pytest.raises(CycleClosed):
        await service.get_or_create_current_cycle(merchant.id, BOOKED)


async def test_closed_cycle_summary_is_frozen(db, merchant, make_shipment):
    wallet = WalletService(db)
    await wallet.recharge(merchant.id, 1000)
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant, status=ShipmentStatus.IN_TRANSIT.value)
    await service.add_shipment(cycle, shipment, commit=True)
    await service.close_cycle(cycle.id, now=AFTER_END)

    rto = await service.on_status_change(
        cycle, shipment, ShipmentStatus.IN_TRANSIT, ShipmentStatus.RTO, commit=True,
    )
    await service.add_weight_discrepancy(cycle, Decimal("36.00"), commit=True)

    # The ledger still carries the RTO charge
    assert rto == Decimal("277.00")
    assert shipment.rto_charge == Decimal("277.00")
    assert await wallet.get_balance(merchant.id) == Decimal("723.00")

    cycle = await service.get_cycle(cycle.id)
    assert cycle.status == CycleStatus.CLOSED.value
    assert (cycle.total_rto_charges, cycle.rto_shipments, cycle.in_transit_shipments) == (
        Decimal("0.00"), 0, 1,
    )
    assert cycle.total_weight_discrepancy_charges == Decimal("0.00")


async def test_refund_on_closed_cycle_stays_on_the_ledger(db, merchant, make_shipment):
    wallet = WalletService(db)
    await wallet.recharge(merchant.id, 1000)
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    shipment = await make_shipment(merchant)
    debit = await wallet.debit(merchant.id, 232, shipment=shipment, commit=False)
    shipment.charge_transaction_id = debit.id
    await service.add_shipment(cycle, shipment, commit=True)
    await service.close_cycle(cycle.id, now=AFTER_END)

    refund = await service.refund_shipment(shipment, "Cancelled after close", commit=True)

    assert refund.amount == Decimal("232.00")
    assert await wallet.get_balance(merchant.id) == Decimal("1000.00")
    cycle = await service.get_cycle(cycle.id)
    assert cycle.total_forward_charges == Decimal("232.00")


# ==================== CONCURRENCY ====================

async def test_concurrent_adds_keep_every_shipment(db, session_factory, merchant, make_shipment):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    cycle_id = cycle.id
    shipment_ids = [(await make_shipment(merchant)).id for _ in range(8)]
    await db.commit()

    async def add(shipment_id):
        async with session_factory() as session:
            cycles = BillingCycleService(session)
            return await cycles.add_shipment(
                await cycles.get_cycle(cycle_id),
                await session.get(Shipment, shipment_id),
                commit=True,
            )

    results = await asyncio.gather(*(add(shipment_id) for shipment_id in shipment_ids))
    assert all(results)

    async with session_factory() as session:
        cycle = await BillingCycleService(session).get_cycle(cycle_id)
        assert cycle.total_shipments == 8
        assert cycle.in_transit_shipments == 8
        assert cycle.total_forward_charges == Decimal("1856.00")
        assert cycle.zone_distribution["C"] == 8


@pytest.mark.parametrize("close_first", [True, False])
async def test_close_racing_add_never_loses_a_shipment(
    db, session_factory, merchant, make_shipment, close_first,
):
    service = BillingCycleService(db)
    cycle = await service.get_or_create_current_cycle(merchant.id, BOOKED)
    cycle_id = cycle.id
    shipment_id = (await make_shipment(merchant)).id
    await db.commit()

    async def add():
        async with session_factory() as session:
            cycles = BillingCycleService(session)
            try:
                return await cycles.add_shipment(
                    await cycles.get_cycle(cycle_id),
                    await session.get(Shipment, shipment_id),
                    commit=True,
                )
            except CycleClosed:
                await session.rollback()
                return False

    async def close():
        async with session_factory() as session:
            closed = await BillingCycleService(session).close_expired_cycles(now=AFTER_END)
            return [c.id for c in closed]

    if close_first:
        closed, added = await asyncio.gather(close(), add())
    else:
        added, closed = await asyncio.gather(add(), close())

    assert closed == [cycle_id]
    async with session_factory() as session:
        cycles = BillingCycleService(session)
        cycle = await cycles.get_cycle(cycle_id)
        assert cycle.status == CycleStatus.CLOSED.value
        assert cycle.total_shipments == (1 if added else 0)
        assert await cycles.is_member(shipment_id) == added

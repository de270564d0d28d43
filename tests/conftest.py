"""
Pytest fixtures for the settlement test suite.

Provides:
- A file-backed SQLite database per test (separate sessions share state)
- Merchants in the common tax setups (intra-state, inter-state, unconfigured)
- Helpers to build shipments and charge requests
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from shipsettle import models  # noqa: F401
from shipsettle.database import Base, build_engine, build_session_factory
from shipsettle.models.merchant import Merchant
from shipsettle.models.rate_card import MerchantTier
from shipsettle.models.shipment import Shipment, ShipmentStatus, PaymentMode
from shipsettle.schemas.shipment import ShipmentChargeRequest


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def _create_merchant(db, **overrides) -> Merchant:
    values = dict(
        merchant_code=f"M{uuid.uuid4().hex[:8].upper()}",
        name="Acme Retail",
        email="billing@acme.example",
        tier=MerchantTier.BASIC_USER.value,
        gstin="06AABCA1234F1Z5",
        billing_state="Haryana",
        billing_state_code="06",
        pickup_state_code="06",
        pickup_pincode="122001",
    )
    values.update(overrides)
    merchant = Merchant(**values)
    db.add(merchant)
    await db.commit()
    return merchant


@pytest_asyncio.fixture
async def merchant(db) -> Merchant:
    """Basic-tier merchant shipping from the state it is billed in."""
    return await _create_merchant(db)


@pytest_asyncio.fixture
async def interstate_merchant(db) -> Merchant:
    """Billed in Karnataka, ships from Haryana."""
    return await _create_merchant(
        db,
        name="Bangalore Books",
        gstin="29AABCB1234F1Z5",
        billing_state="Karnataka",
        billing_state_code="29",
        pickup_state_code="06",
    )


@pytest_asyncio.fixture
async def untaxed_merchant(db) -> Merchant:
    """No GST state codes on file."""
    return await _create_merchant(
        db,
        name="Pending KYC",
        gstin=None,
        billing_state=None,
        billing_state_code=None,
        pickup_state_code=None,
    )


@pytest.fixture
def make_merchant(db):
    async def factory(**overrides) -> Merchant:
        return await _create_merchant(db, **overrides)
    return factory


@pytest.fixture
def make_shipment(db):
    """Insert a shipment directly (bypassing the ledger) for aggregator tests."""
    async def factory(merchant: Merchant, awb_number: str = None, **overrides) -> Shipment:
        values = dict(
            id=uuid.uuid4(),
            merchant_id=merchant.id,
            awb_number=awb_number or f"AWB{uuid.uuid4().hex[:10].upper()}",
            order_reference="ORD-1001",
            direction="FORWARD",
            zone="C",
            tier=merchant.tier,
            status=ShipmentStatus.NEW.value,
            payment_mode=PaymentMode.PREPAID.value,
            cod_amount=Decimal("0"),
            declared_weight_grams=5000,
            volumetric_weight_grams=0,
            charged_weight_grams=5000,
            pickup_pincode="122001",
            delivery_pincode="560001",
            forward_charge=Decimal("232.00"),
            cod_charge=Decimal("0.00"),
            rto_charge=Decimal("0.00"),
            weight_discrepancy_charge=Decimal("0.00"),
            total_charge=Decimal("232.00"),
            booked_at=datetime(2025, 11, 10, 6, 30, tzinfo=timezone.utc),
        )
        values.update(overrides)
        shipment = Shipment(**values)
        db.add(shipment)
        await db.flush()
        return shipment
    return factory


def charge_request(awb_number: str = "AWB1000000001", **overrides) -> ShipmentChargeRequest:
    values = dict(
        awb_number=awb_number,
        order_reference="ORD-1001",
        zone="C",
        weight_grams=5000,
        pickup_pincode="122001",
        delivery_pincode="560001",
    )
    values.update(overrides)
    return ShipmentChargeRequest(**values)

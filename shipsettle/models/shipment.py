"""Shipment model: the settlement view of a charged consignment."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, ForeignKey, Integer, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment
from shipsettle.models.rate_card import Direction


class ShipmentStatus(str, Enum):
    """Internal shipment status enumeration."""
    NEW = "NEW"                                # Charged, not yet handed over
    READY_TO_SHIP = "READY_TO_SHIP"            # Label generated
    PICKUPS_MANIFESTS = "PICKUPS_MANIFESTS"    # Manifested / pickup scheduled
    IN_TRANSIT = "IN_TRANSIT"                  # With the carrier
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"      # Last mile
    NDR = "NDR"                                # Non-delivery report raised
    DELIVERED = "DELIVERED"                    # Successfully delivered
    RTO = "RTO"                                # Returned to origin
    CANCELLED = "CANCELLED"                    # Cancelled
    LOST = "LOST"                              # Lost in transit


TERMINAL_STATUSES = frozenset({
    ShipmentStatus.DELIVERED,
    ShipmentStatus.RTO,
    ShipmentStatus.CANCELLED,
    ShipmentStatus.LOST,
})

# Statuses from which a charge may still be refunded on cancellation
PRE_PICKUP_STATUSES = frozenset({
    ShipmentStatus.NEW,
    ShipmentStatus.READY_TO_SHIP,
    ShipmentStatus.PICKUPS_MANIFESTS,
})


class PaymentMode(str, Enum):
    """Payment mode enumeration."""
    PREPAID = "PREPAID"
    COD = "COD"


class Shipment(Base):
    """
    Shipment charged against a merchant wallet.

    Weights are integer grams; charges are the amounts actually posted to
    the ledger (2 dp).
    """
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # AWB/Tracking
    awb_number: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        comment="Air Waybill number from carrier"
    )
    order_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Merchant order id"
    )

    direction: Mapped[str] = mapped_column(
        String(10),
        default=Direction.FORWARD.value,
        nullable=False,
        comment=enum_comment(Direction)
    )
    zone: Mapped[str] = mapped_column(
        String(1),
        nullable=False,
        comment="Collapsed zone A-F"
    )
    tier: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="Merchant tier at charge time"
    )

    # Status
    status: Mapped[str] = mapped_column(
        String(30),
        default=ShipmentStatus.NEW.value,
        nullable=False,
        index=True,
        comment=enum_comment(ShipmentStatus)
    )

    # Payment
    payment_mode: Mapped[str] = mapped_column(
        String(10),
        default=PaymentMode.PREPAID.value,
        nullable=False,
        comment=enum_comment(PaymentMode)
    )
    cod_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        default=Decimal("0"),
        nullable=False,
        comment="COD amount to collect"
    )

    # Weight (grams)
    declared_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False)
    volumetric_weight_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    charged_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False)
    carrier_weight_grams: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Weight measured by the carrier (weight discrepancy)"
    )

    # Dimensions (cm)
    length_cm: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    width_cm: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    height_cm: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    pickup_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    delivery_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Charges
    forward_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    cod_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    rto_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    weight_discrepancy_charge: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    total_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    # Settlement links
    billing_cycle_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    charge_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("wallet_transactions.id", ondelete="SET NULL"),
        nullable=True
    )

    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    booked_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    @property
    def is_cod(self) -> bool:
        return self.payment_mode == PaymentMode.COD.value

    def __repr__(self) -> str:
        return f"<Shipment(awb='{self.awb_number}', status='{self.status}')>"

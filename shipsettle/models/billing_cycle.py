"""Billing cycle models: half-month accumulation periods per merchant."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, ForeignKey, Integer, Numeric, UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import JSONType, UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment


class CycleStatus(str, Enum):
    """Billing cycle lifecycle."""
    OPEN = "OPEN"            # Accepting shipments
    CLOSED = "CLOSED"        # End date passed, awaiting invoice
    INVOICED = "INVOICED"    # Invoice generated and linked


def empty_zone_distribution() -> dict:
    return {zone: 0 for zone in "ABCDEF"}


class BillingCycle(Base):
    """
    One billing period for one merchant.

    Day 1-15 is cycle 1, day 16 to month end is cycle 2 (billing timezone).
    The summary columns are running totals maintained by the aggregator.
    """
    __tablename__ = "billing_cycles"
    __table_args__ = (
        UniqueConstraint(
            "merchant_id", "year", "month", "cycle_number",
            name="uq_billing_cycle_period"
        ),
        Index("ix_billing_cycle_status_end", "status", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    cycle_code: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        index=True,
        comment="BC-<merchant6>-<YYYYMM>-C<n>"
    )

    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Period
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False, comment="1 or 2")
    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=CycleStatus.OPEN.value,
        nullable=False,
        index=True,
        comment=enum_comment(CycleStatus)
    )

    # Shipment counters
    total_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    in_transit_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delivered_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rto_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lost_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    prepaid_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cod_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Weights (grams)
    total_declared_weight_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_charged_weight_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Charges
    total_forward_charges: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    total_rto_charges: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    total_cod_charges: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    total_weight_discrepancy_charges: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    total_cod_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        default=Decimal("0"),
        nullable=False,
        comment="COD value collected on behalf of the merchant"
    )

    zone_distribution: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=empty_zone_distribution,
        comment="Shipment count per zone A-F"
    )

    # Lifecycle
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    invoiced_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True,
        comment="Invoice generated from this cycle"
    )

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
    def estimated_total(self) -> Decimal:
        """Sum of all charge categories (pre-tax)."""
        return (
            (self.total_forward_charges or Decimal("0"))
            + (self.total_rto_charges or Decimal("0"))
            + (self.total_cod_charges or Decimal("0"))
            + (self.total_weight_discrepancy_charges or Decimal("0"))
        )

    @property
    def is_open(self) -> bool:
        return self.status == CycleStatus.OPEN.value

    def __repr__(self) -> str:
        return f"<BillingCycle(code='{self.cycle_code}', status='{self.status}')>"


class BillingCycleShipment(Base):
    """Membership of a shipment in a cycle. At most one row per shipment."""
    __tablename__ = "billing_cycle_shipments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    billing_cycle_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("shipments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    awb_number: Mapped[str] = mapped_column(String(100), nullable=False)

    added_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<BillingCycleShipment(awb='{self.awb_number}')>"

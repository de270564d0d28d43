"""Tracking record model used by the carrier status synchronizer."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, ForeignKey, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import JSONType, UUIDType, UTCDateTime, utcnow


class TrackingRecord(Base):
    """
    Polling state for one shipment AWB.

    ``is_tracking_active`` is a one-way latch: it flips to False the first
    time a terminal status is reached and is never set back.
    """
    __tablename__ = "tracking_records"
    __table_args__ = (
        Index("ix_tracking_active_last", "is_tracking_active", "last_tracked_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    shipment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("shipments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    awb_number: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True
    )

    current_status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        comment="Internal status (see ShipmentStatus)"
    )
    carrier_status: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Raw status string last reported by the carrier"
    )
    status_history: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="[{status, carrier_status, timestamp, location, instructions}]"
    )

    is_tracking_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_tracked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    tracking_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tracking_failures: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Most recent poll failures [{timestamp, error, error_type, status_code}]"
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rto_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    lost_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

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

    def __repr__(self) -> str:
        return (
            f"<TrackingRecord(awb='{self.awb_number}', status='{self.current_status}', "
            f"active={self.is_tracking_active})>"
        )

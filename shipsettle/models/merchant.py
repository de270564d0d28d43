"""Merchant model: the billing party that owns a wallet, cycles and invoices."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment
from shipsettle.models.rate_card import MerchantTier


class Merchant(Base):
    """
    Merchant (seller) account as seen by the settlement core.

    The wallet balance is NOT stored here. It is derived from the latest
    wallet transaction; this row is only locked (SELECT ... FOR UPDATE)
    to serialize ledger writes across processes.
    """
    __tablename__ = "merchants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    merchant_code: Mapped[Optional[str]] = mapped_column(
        String(30),
        unique=True,
        nullable=True,
        index=True,
        comment="Human readable merchant code e.g., MRC-000123"
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Pricing
    tier: Mapped[str] = mapped_column(
        String(30),
        default=MerchantTier.NEW_USER.value,
        nullable=False,
        comment=enum_comment(MerchantTier)
    )

    # GST details
    gstin: Mapped[Optional[str]] = mapped_column(
        String(15),
        nullable=True,
        comment="Buyer GSTIN printed on invoices"
    )
    billing_state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    billing_state_code: Mapped[Optional[str]] = mapped_column(
        String(2),
        nullable=True,
        comment="GST state code of the registered billing address"
    )
    pickup_state_code: Mapped[Optional[str]] = mapped_column(
        String(2),
        nullable=True,
        comment="GST state code of the pickup (origin) warehouse"
    )
    pickup_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Timestamps
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
    def is_intra_state(self) -> bool:
        """Pickup and billing in the same state (CGST + SGST)."""
        return (
            self.billing_state_code is not None
            and self.billing_state_code == self.pickup_state_code
        )

    def __repr__(self) -> str:
        return f"<Merchant(name='{self.name}', tier='{self.tier}')>"

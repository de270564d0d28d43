"""Rate card models: per-tier forward/RTO tariffs for zones A-F."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import JSONType, UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment


# ============================================
# ENUMS
# ============================================

class ZoneCode(str, Enum):
    """Zone classification for delivery."""
    A = "A"  # Within City
    B = "B"  # Within State
    C = "C"  # Metro to Metro
    D = "D"  # Rest of India
    E = "E"  # North East / J&K
    F = "F"  # Special / Remote


class MerchantTier(str, Enum):
    """Merchant pricing tier."""
    NEW_USER = "NEW_USER"
    LITE_USER = "LITE_USER"
    BASIC_USER = "BASIC_USER"
    ADVANCED_USER = "ADVANCED_USER"


# Display names used by the billing UI and the carrier rate sheet
TIER_DISPLAY_NAMES = {
    MerchantTier.NEW_USER: "New User",
    MerchantTier.LITE_USER: "Lite User",
    MerchantTier.BASIC_USER: "Basic User",
    MerchantTier.ADVANCED_USER: "Advanced",
}


class Direction(str, Enum):
    """Which tariff table applies."""
    FORWARD = "FORWARD"
    RTO = "RTO"


class SlabRule(str, Enum):
    """The seven weight-slab rules every direction carries."""
    UPTO_250G = "upto_250g"
    UPTO_500G_ADD = "upto_500g_add"
    ADD_500G_TILL_5KG = "add_500g_till_5kg"
    UPTO_5KG = "upto_5kg"
    ADD_1KG_TILL_10KG = "add_1kg_till_10kg"
    UPTO_10KG = "upto_10kg"
    ADD_1KG_BEYOND_10KG = "add_1kg_beyond_10kg"


# ============================================
# RATE CARD
# ============================================

class RateCard(Base):
    """
    Persisted tariff for one merchant tier.

    An active row overrides the built-in table for its tier. Slabs are
    stored as JSON: {rule: {zone: "price"}} with prices as strings so
    that they round-trip into Decimal without float noise.
    """
    __tablename__ = "rate_cards"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    tier: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True,
        comment=enum_comment(MerchantTier)
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    forward_slabs: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Forward tariff {rule: {zone: price}}"
    )
    rto_slabs: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="RTO tariff {rule: {zone: price}}"
    )
    cod_rule: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="{percentage, minimum_amount, gst_applies}"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

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
        return f"<RateCard(tier='{self.tier}', active={self.is_active})>"

"""Shipment charge request schema."""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from shipsettle.core.enum_utils import (
    create_uppercase_validator, VALID_PAYMENT_MODES, VALID_DIRECTIONS,
)
from shipsettle.models.rate_card import Direction
from shipsettle.models.shipment import PaymentMode
from shipsettle.schemas.base import BaseCreateSchema


class ShipmentChargeRequest(BaseCreateSchema):
    """
    What the order-creation flow hands over when a shipment is booked.

    ``zone`` may be a raw carrier code (e.g. "Zone C-2 (Metro to Metro)");
    it is collapsed to A-F before pricing. Without a zone the carrier is
    asked for one from the pincodes. Weight and amounts are checked by
    the tariff engine, which raises InvalidInput.
    """
    awb_number: str = Field(..., min_length=1, max_length=100)
    order_reference: Optional[str] = Field(None, max_length=100)
    zone: Optional[str] = Field(None, max_length=60)
    direction: Direction = Direction.FORWARD
    weight_grams: int
    length_cm: Optional[Decimal] = None
    width_cm: Optional[Decimal] = None
    height_cm: Optional[Decimal] = None
    payment_mode: PaymentMode = PaymentMode.PREPAID
    cod_amount: Decimal = Decimal("0")
    pickup_pincode: Optional[str] = Field(None, max_length=10)
    delivery_pincode: Optional[str] = Field(None, max_length=10)
    booked_at: Optional[datetime] = None

    _normalize_payment_mode = create_uppercase_validator('payment_mode', VALID_PAYMENT_MODES)
    _normalize_direction = create_uppercase_validator('direction', VALID_DIRECTIONS)

    @property
    def has_dimensions(self) -> bool:
        return None not in (self.length_cm, self.width_cm, self.height_cm)

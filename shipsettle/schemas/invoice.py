"""Invoice schemas: payment input, summary/detail views and CSV rows."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import ClassVar, List, Optional

from pydantic import Field

from shipsettle.core.enum_utils import create_uppercase_validator, VALID_PAYMENT_METHODS
from shipsettle.models.invoice import PaymentMethod
from shipsettle.schemas.base import BaseCreateSchema, BaseResponseSchema


class PaymentInfo(BaseCreateSchema):
    """Payment recorded against an invoice. ``amount`` defaults to the balance due."""
    amount: Optional[Decimal] = Field(None, gt=0)
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    payment_reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None

    _normalize_method = create_uppercase_validator('payment_method', VALID_PAYMENT_METHODS)


class InvoiceLineResponse(BaseResponseSchema):
    line_number: int
    awb_number: str
    order_reference: Optional[str] = None
    shipment_status: str
    zone: str
    payment_mode: str
    declared_weight_grams: int
    charged_weight_grams: int
    forward_charge: Decimal
    rto_charge: Decimal
    cod_charge: Decimal
    weight_discrepancy_charge: Decimal
    total_charge: Decimal
    cod_amount: Decimal


class InvoiceAdjustmentResponse(BaseResponseSchema):
    note_number: str
    note_type: str
    amount: Decimal
    reason: str
    awb_number: Optional[str] = None
    created_at: datetime


class InvoiceSummary(BaseResponseSchema):
    """Invoice list item."""
    id: uuid.UUID
    invoice_number: str
    cycle_code: str
    invoice_date: datetime
    due_date: datetime
    period_start: datetime
    period_end: datetime
    subtotal: Decimal
    total_tax: Decimal
    grand_total: Decimal
    payment_status: str
    amount_paid: Decimal
    balance_due: Decimal
    total_shipments: int


class InvoiceDetail(InvoiceSummary):
    """Full invoice with tax split, lines and adjustments."""
    merchant_id: uuid.UUID
    seller_gstin: str
    buyer_gstin: Optional[str] = None
    place_of_supply: str
    place_of_supply_name: Optional[str] = None
    is_igst: bool
    sac_code: str
    forward_charges: Decimal
    rto_charges: Decimal
    cod_charges: Decimal
    weight_discrepancy_charges: Decimal
    cgst_rate: Decimal
    cgst_amount: Decimal
    sgst_rate: Decimal
    sgst_amount: Decimal
    igst_rate: Decimal
    igst_amount: Decimal
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    lines: List[InvoiceLineResponse] = []
    adjustments: List[InvoiceAdjustmentResponse] = []


class TransactionRow(BaseResponseSchema):
    """One row of the invoice transaction list download."""
    awb_number: str
    order_reference: Optional[str] = None
    status: str
    zone: str
    payment_mode: str
    declared_weight_kg: Decimal
    charged_weight_kg: Decimal
    pickup_pincode: Optional[str] = None
    delivery_pincode: Optional[str] = None
    forward_charge: Decimal
    rto_charge: Decimal
    cod_charge: Decimal
    weight_discrepancy_charge: Decimal
    total_charge: Decimal
    cod_amount: Decimal

    CSV_HEADERS: ClassVar[List[str]] = [
        "AWB Number", "Order Reference", "Status", "Zone", "Payment Mode",
        "Declared Weight (kg)", "Charged Weight (kg)", "Pickup Pincode",
        "Delivery Pincode", "Forward Charge", "RTO Charge", "COD Charge",
        "Weight Discrepancy", "Total", "COD Amount",
    ]

    def as_csv_row(self) -> list:
        return [
            self.awb_number, self.order_reference or "", self.status, self.zone,
            self.payment_mode, str(self.declared_weight_kg), str(self.charged_weight_kg),
            self.pickup_pincode or "", self.delivery_pincode or "",
            str(self.forward_charge), str(self.rto_charge), str(self.cod_charge),
            str(self.weight_discrepancy_charge), str(self.total_charge), str(self.cod_amount),
        ]

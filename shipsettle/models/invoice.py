"""Invoice models for closed billing cycles (GST tax invoices)."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    String, Boolean, ForeignKey, Integer, Numeric, Text, Index, UniqueConstraint,
    event, inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shipsettle.database import Base
from shipsettle.db_types import UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment
from shipsettle.core.exceptions import ImmutableRecordError


class InvoiceStatus(str, Enum):
    """Document status."""
    GENERATED = "GENERATED"


class PaymentStatus(str, Enum):
    """Invoice payment status."""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class PaymentMethod(str, Enum):
    """How an invoice was settled."""
    WALLET_DEDUCTION = "WALLET_DEDUCTION"
    BANK_TRANSFER = "BANK_TRANSFER"
    UPI = "UPI"
    AUTO_DEBIT = "AUTO_DEBIT"
    RAZORPAY = "RAZORPAY"


class AdjustmentType(str, Enum):
    """Correction note kinds."""
    CREDIT_NOTE = "CREDIT_NOTE"
    DEBIT_NOTE = "DEBIT_NOTE"


# Columns that may still change after the invoice is finalized
PAYMENT_FIELDS = frozenset({
    "payment_status",
    "amount_paid",
    "balance_due",
    "payment_method",
    "payment_reference",
    "payment_notes",
    "paid_at",
    "updated_at",
})


class Invoice(Base):
    """
    Tax invoice generated from exactly one closed billing cycle.

    Amounts are frozen at generation time. Only the payment columns in
    PAYMENT_FIELDS may be updated afterwards; corrections go through
    InvoiceAdjustment (credit/debit notes).
    """
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("merchant_id", "invoice_number", name="uq_invoice_merchant_number"),
        UniqueConstraint("merchant_id", "merchant_sequence", name="uq_invoice_merchant_sequence"),
        Index("ix_invoice_merchant_date", "merchant_id", "invoice_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    invoice_number: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        index=True,
        comment="INV<YY><MM>C<n>-<seq5>"
    )

    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    billing_cycle_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    merchant_sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Per-merchant invoice counter"
    )

    # Period snapshot
    cycle_code: Mapped[str] = mapped_column(String(40), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    invoice_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    due_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.GENERATED.value,
        nullable=False,
        comment=enum_comment(InvoiceStatus)
    )

    # GST info
    seller_gstin: Mapped[str] = mapped_column(String(15), nullable=False)
    buyer_gstin: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    place_of_supply: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="GST state code of the buyer"
    )
    place_of_supply_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_igst: Mapped[bool] = mapped_column(Boolean, nullable=False)
    sac_code: Mapped[str] = mapped_column(String(10), nullable=False)

    # Charge categories
    forward_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rto_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cod_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    weight_discrepancy_charges: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cgst_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    cgst_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    sgst_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    sgst_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    igst_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    igst_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    total_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Shipment summary snapshot
    total_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delivered_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rto_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_shipments: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cod_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    # Payment
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
        comment=enum_comment(PaymentStatus)
    )
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    balance_due: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment=enum_comment(PaymentMethod)
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

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

    # Relationships
    lines: Mapped[List["InvoiceLine"]] = relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLine.line_number"
    )
    adjustments: Mapped[List["InvoiceAdjustment"]] = relationship(
        "InvoiceAdjustment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceAdjustment.created_at"
    )

    @property
    def net_adjustment(self) -> Decimal:
        """Debit notes minus credit notes."""
        total = Decimal("0")
        for adj in self.adjustments:
            if adj.note_type == AdjustmentType.DEBIT_NOTE.value:
                total += adj.amount
            else:
                total -= adj.amount
        return total

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', total={self.grand_total})>"


class InvoiceLine(Base):
    """Per-shipment charge line on an invoice."""
    __tablename__ = "invoice_lines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    shipment_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    awb_number: Mapped[str] = mapped_column(String(100), nullable=False)
    order_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipment_status: Mapped[str] = mapped_column(String(30), nullable=False)
    zone: Mapped[str] = mapped_column(String(1), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(10), nullable=False)

    declared_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False)
    charged_weight_grams: Mapped[int] = mapped_column(Integer, nullable=False)
    pickup_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    delivery_pincode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    forward_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rto_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cod_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    weight_discrepancy_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    total_charge: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cod_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="lines")

    def __repr__(self) -> str:
        return f"<InvoiceLine(awb='{self.awb_number}', total={self.total_charge})>"


class InvoiceAdjustment(Base):
    """Credit or debit note issued against a finalized invoice."""
    __tablename__ = "invoice_adjustments"
    __table_args__ = (
        UniqueConstraint("invoice_id", "note_number", name="uq_invoice_adjustment_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    note_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="CN-/DN- prefixed note number"
    )
    note_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment=enum_comment(AdjustmentType)
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    awb_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="adjustments")

    def __repr__(self) -> str:
        return f"<InvoiceAdjustment(number='{self.note_number}', amount={self.amount})>"


@event.listens_for(Invoice, "before_update")
def _guard_finalized_invoice(mapper, connection, target):
    state = inspect(target)
    changed = [
        prop.key for prop in mapper.column_attrs
        if prop.key not in PAYMENT_FIELDS and state.attrs[prop.key].history.has_changes()
    ]
    if changed:
        raise ImmutableRecordError(
            f"Invoice {target.invoice_number} is finalized; "
            f"only payment fields may change (attempted: {', '.join(changed)})"
        )


@event.listens_for(Invoice, "before_delete")
def _forbid_invoice_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Invoice {target.invoice_number} cannot be deleted")


@event.listens_for(InvoiceLine, "before_update")
def _forbid_line_update(mapper, connection, target):
    raise ImmutableRecordError(f"Invoice line {target.awb_number} is immutable")

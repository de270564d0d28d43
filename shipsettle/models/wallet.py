"""Wallet ledger model: append-only, per-merchant chained transactions."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, ForeignKey, Integer, Numeric, Text,
    UniqueConstraint, Index, event, inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from shipsettle.database import Base
from shipsettle.db_types import UUIDType, UTCDateTime, utcnow
from shipsettle.core.enum_utils import enum_comment
from shipsettle.core.exceptions import ImmutableRecordError


class TransactionType(str, Enum):
    """Direction of the balance movement."""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TransactionCategory(str, Enum):
    """Why the balance moved."""
    WALLET_RECHARGE = "WALLET_RECHARGE"
    SHIPPING_CHARGE = "SHIPPING_CHARGE"
    RTO_CHARGE = "RTO_CHARGE"
    REFUND = "REFUND"
    WEIGHT_DISCREPANCY = "WEIGHT_DISCREPANCY"
    COD_REMITTANCE = "COD_REMITTANCE"
    ADJUSTMENT = "ADJUSTMENT"


class WalletTransaction(Base):
    """
    Immutable ledger entry.

    closing_balance = opening_balance + signed(amount), and for one
    merchant the rows ordered by ``sequence`` form an unbroken chain.
    The current balance is the closing_balance of the highest sequence.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        UniqueConstraint("merchant_id", "sequence", name="uq_wallet_txn_merchant_sequence"),
        Index("ix_wallet_txn_merchant_created", "merchant_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    transaction_number: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
        index=True,
        comment="CR/DR prefixed reference e.g., DR1718000000123A1B2"
    )

    merchant_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("merchants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Per-merchant position in the ledger chain, starting at 1"
    )

    transaction_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment=enum_comment(TransactionType)
    )
    category: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment=enum_comment(TransactionCategory)
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        comment="Always positive; sign comes from transaction_type"
    )
    opening_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    closing_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_number: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Payment gateway / bank reference for recharges"
    )

    # Shipment link
    shipment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        nullable=True,
        index=True,
        comment="Originating shipment"
    )
    awb_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    weight_grams: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    zone: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)

    # Reversal link
    reversal_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True),
        ForeignKey("wallet_transactions.id", ondelete="RESTRICT"),
        unique=True,
        nullable=True,
        comment="Debit this refund reverses"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    @property
    def signed_amount(self) -> Decimal:
        if self.transaction_type == TransactionType.DEBIT.value:
            return -self.amount
        return self.amount

    def __repr__(self) -> str:
        return (
            f"<WalletTransaction(number='{self.transaction_number}', "
            f"type='{self.transaction_type}', amount={self.amount})>"
        )


@event.listens_for(WalletTransaction, "before_update")
def _forbid_transaction_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        prop.key for prop in mapper.column_attrs
        if state.attrs[prop.key].history.has_changes()
    ]
    if changed:
        raise ImmutableRecordError(
            f"Wallet transaction {target.transaction_number} is immutable "
            f"(attempted change: {', '.join(changed)})"
        )


@event.listens_for(WalletTransaction, "before_delete")
def _forbid_transaction_delete(mapper, connection, target):
    raise ImmutableRecordError(
        f"Wallet transaction {target.transaction_number} cannot be deleted"
    )

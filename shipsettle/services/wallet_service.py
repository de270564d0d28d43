"""Wallet Ledger Service.

Append-only per-merchant ledger. The balance is never stored: it is the
closing_balance of the merchant's highest-sequence transaction.

Every post runs under the per-merchant lock and a row lock on the
merchant, reads the latest entry, and appends the next one in the chain.
The (merchant_id, sequence) unique constraint rejects any write that slips
past both.
"""
import uuid
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple, Union

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from shipsettle.core.enum_utils import get_enum_value
from shipsettle.core.exceptions import (
    InvalidInput, DuplicateReversal, InsufficientBalance, MerchantNotFound, NotFound,
)
from shipsettle.core.locks import merchant_locks
from shipsettle.db_types import utcnow
from shipsettle.models.merchant import Merchant
from shipsettle.models.shipment import Shipment
from shipsettle.models.wallet import WalletTransaction, TransactionType, TransactionCategory
from shipsettle.services.tariff_engine import to_decimal

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize_amount(value) -> Decimal:
    """Round a money amount to paise, half-up."""
    return to_decimal(value, "amount").quantize(CENT, rounding=ROUND_HALF_UP)


def _transaction_number(txn_type: TransactionType) -> str:
    prefix = "CR" if txn_type == TransactionType.CREDIT else "DR"
    millis = int(utcnow().timestamp() * 1000)
    return f"{prefix}{millis}{uuid.uuid4().hex[:6].upper()}"


class WalletService:
    """
    Service for wallet debits, credits and reversals.

    Mutating methods take ``commit``. With ``commit=False`` the entry is only
    flushed and the caller must hold ``merchant_locks.hold(merchant_id)``
    until it commits, so that no other writer reads the uncommitted balance.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== READS ====================

    async def get_merchant(self, merchant_id: uuid.UUID, for_update: bool = False) -> Merchant:
        stmt = select(Merchant).where(Merchant.id == merchant_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        merchant = result.scalar_one_or_none()
        if merchant is None:
            raise MerchantNotFound(f"Merchant {merchant_id} not found")
        return merchant

    async def get_latest_transaction(self, merchant_id: uuid.UUID) -> Optional[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.merchant_id == merchant_id)
            .order_by(WalletTransaction.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_balance(self, merchant_id: uuid.UUID) -> Decimal:
        """Current balance: closing balance of the latest entry, 0 when there is none."""
        latest = await self.get_latest_transaction(merchant_id)
        if latest is None:
            await self.get_merchant(merchant_id)
            return ZERO
        return latest.closing_balance

    async def get_transaction(self, transaction_id: uuid.UUID) -> WalletTransaction:
        txn = await self.db.get(WalletTransaction, transaction_id)
        if txn is None:
            raise NotFound(f"Wallet transaction {transaction_id} not found")
        return txn

    async def find_reversal(self, transaction_id: uuid.UUID) -> Optional[WalletTransaction]:
        result = await self.db.execute(
            select(WalletTransaction).where(WalletTransaction.reversal_of_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        merchant_id: uuid.UUID,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        category: Optional[Union[str, TransactionCategory]] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[WalletTransaction], int]:
        """List a merchant's ledger, newest first, with filters and pagination."""
        filters = [WalletTransaction.merchant_id == merchant_id]
        if date_from:
            filters.append(WalletTransaction.created_at >= date_from)
        if date_to:
            filters.append(WalletTransaction.created_at <= date_to)
        if category:
            filters.append(WalletTransaction.category == get_enum_value(category))

        count_stmt = select(func.count(WalletTransaction.id)).where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(WalletTransaction)
            .where(and_(*filters))
            .order_by(WalletTransaction.sequence.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def verify_chain(self, merchant_id: uuid.UUID) -> bool:
        """
        Audit the ledger chain for one merchant.

        Checks contiguous sequences from 1, closing = opening + signed(amount)
        on every row, and opening[i+1] == closing[i].
        """
        result = await self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.merchant_id == merchant_id)
            .order_by(WalletTransaction.sequence.asc())
        )
        previous_closing = ZERO
        for expected_sequence, txn in enumerate(result.scalars(), start=1):
            if txn.sequence != expected_sequence:
                logger.error(
                    f"Ledger gap for merchant {merchant_id}: expected sequence "
                    f"{expected_sequence}, found {txn.sequence}"
                )
                return False
            if txn.opening_balance != previous_closing:
                logger.error(
                    f"Ledger break at {txn.transaction_number}: opening {txn.opening_balance} "
                    f"!= previous closing {previous_closing}"
                )
                return False
            if txn.closing_balance != txn.opening_balance + txn.signed_amount:
                logger.error(
                    f"Ledger arithmetic error at {txn.transaction_number}: "
                    f"{txn.opening_balance} + {txn.signed_amount} != {txn.closing_balance}"
                )
                return False
            previous_closing = txn.closing_balance
        return True

    # ==================== POSTING ====================

    async def _post(
        self,
        merchant_id: uuid.UUID,
        txn_type: TransactionType,
        amount,
        category: Union[str, TransactionCategory],
        shipment: Optional[Shipment] = None,
        description: Optional[str] = None,
        reference_number: Optional[str] = None,
        reversal_of: Optional[WalletTransaction] = None,
        commit: bool = True,
    ) -> WalletTransaction:
        amount = quantize_amount(amount)
        if amount <= 0:
            raise InvalidInput(f"Amount must be positive, got {amount}")
        category_value = get_enum_value(category)
        if category_value not in {c.value for c in TransactionCategory}:
            raise InvalidInput(f"Unknown transaction category '{category_value}'")

        async with merchant_locks.hold(merchant_id):
            await self.get_merchant(merchant_id, for_update=True)

            if reversal_of is not None and await self.find_reversal(reversal_of.id) is not None:
                raise DuplicateReversal(
                    f"Transaction {reversal_of.transaction_number} has already been reversed"
                )

            latest = await self.get_latest_transaction(merchant_id)
            opening = latest.closing_balance if latest else ZERO
            sequence = latest.sequence + 1 if latest else 1

            if txn_type == TransactionType.DEBIT:
                if amount > opening:
                    raise InsufficientBalance(merchant_id, opening, amount)
                closing = opening - amount
            else:
                closing = opening + amount

            txn = WalletTransaction(
                transaction_number=_transaction_number(txn_type),
                merchant_id=merchant_id,
                sequence=sequence,
                transaction_type=txn_type.value,
                category=category_value,
                amount=amount,
                opening_balance=opening,
                closing_balance=closing,
                description=description,
                reference_number=reference_number,
                reversal_of_id=reversal_of.id if reversal_of is not None else None,
                created_at=utcnow(),
            )
            if shipment is not None:
                txn.shipment_id = shipment.id
                txn.awb_number = shipment.awb_number
                txn.weight_grams = shipment.charged_weight_grams
                txn.zone = shipment.zone
            elif reversal_of is not None:
                txn.shipment_id = reversal_of.shipment_id
                txn.awb_number = reversal_of.awb_number
                txn.weight_grams = reversal_of.weight_grams
                txn.zone = reversal_of.zone

            self.db.add(txn)
            await self.db.flush()

            if commit:
                await self.db.commit()

        logger.info(
            f"Wallet {txn_type.value.lower()} {txn.transaction_number} for merchant {merchant_id}: "
            f"{category_value} {amount} (balance {opening} -> {closing})"
        )
        return txn

    async def debit(
        self,
        merchant_id: uuid.UUID,
        amount,
        category: Union[str, TransactionCategory] = TransactionCategory.SHIPPING_CHARGE,
        shipment: Optional[Shipment] = None,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> WalletTransaction:
        """
        Debit the wallet.

        Raises:
            InsufficientBalance: amount exceeds the current balance.
            InvalidInput: non-positive amount or unknown category.
        """
        return await self._post(
            merchant_id, TransactionType.DEBIT, amount, category,
            shipment=shipment, description=description, commit=commit,
        )

    async def credit(
        self,
        merchant_id: uuid.UUID,
        amount,
        category: Union[str, TransactionCategory],
        reference_number: Optional[str] = None,
        shipment: Optional[Shipment] = None,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> WalletTransaction:
        """Credit the wallet."""
        return await self._post(
            merchant_id, TransactionType.CREDIT, amount, category,
            shipment=shipment, description=description,
            reference_number=reference_number, commit=commit,
        )

    async def recharge(
        self,
        merchant_id: uuid.UUID,
        amount,
        reference_number: Optional[str] = None,
        commit: bool = True,
    ) -> WalletTransaction:
        """Top up the wallet (payment gateway / bank transfer)."""
        return await self.credit(
            merchant_id,
            amount,
            TransactionCategory.WALLET_RECHARGE,
            reference_number=reference_number,
            description="Wallet recharge",
            commit=commit,
        )

    async def reverse(
        self,
        transaction_id: uuid.UUID,
        reason: str,
        commit: bool = True,
    ) -> WalletTransaction:
        """
        Reverse a debit with a REFUND credit that references it.

        The original entry is never touched.

        Raises:
            DuplicateReversal: the debit was already reversed.
            InvalidInput: the transaction is not a debit.
        """
        original = await self.get_transaction(transaction_id)
        if original.transaction_type != TransactionType.DEBIT.value:
            raise InvalidInput(
                f"Only debits can be reversed; {original.transaction_number} is a credit"
            )

        return await self._post(
            original.merchant_id,
            TransactionType.CREDIT,
            original.amount,
            TransactionCategory.REFUND,
            description=f"Reversal of {original.transaction_number}: {reason}",
            reference_number=original.transaction_number,
            reversal_of=original,
            commit=commit,
        )

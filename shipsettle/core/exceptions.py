"""Error kinds raised by the settlement services.

Every service raises one of these instead of a bare ``ValueError`` so that
callers (order creation flow, billing UI, background jobs) can tell a
caller mistake from a refused debit or a transient carrier failure.
"""
import uuid
from decimal import Decimal
from typing import Optional, Sequence


class SettlementError(Exception):
    """Base class for all settlement errors."""
    pass


class InvalidInput(SettlementError):
    """Bad zone, tier, weight or amount. Rejected before any computation."""
    pass


class DuplicateReversal(InvalidInput):
    """The ledger entry has already been reversed."""
    pass


class NotFound(SettlementError):
    """A referenced record does not exist."""
    pass


class MerchantNotFound(NotFound):
    pass


class ShipmentNotFound(NotFound):
    pass


class InvoiceNotFound(NotFound):
    pass


class BillingCycleNotFound(NotFound):
    pass


class InsufficientBalance(SettlementError):
    """Wallet debit refused because the amount exceeds the current balance."""

    def __init__(self, merchant_id: uuid.UUID, balance: Decimal, requested: Decimal):
        self.merchant_id = merchant_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient wallet balance for merchant {merchant_id}: "
            f"balance {balance}, requested {requested}"
        )


class DuplicateShipment(SettlementError):
    """The shipment has already been charged or aggregated."""

    def __init__(self, awb_number: str):
        self.awb_number = awb_number
        super().__init__(f"Shipment {awb_number} has already been processed")


class CycleClosed(SettlementError):
    """The billing cycle no longer admits shipments."""

    def __init__(self, cycle_code: str, status: str):
        self.cycle_code = cycle_code
        self.status = status
        super().__init__(f"Billing cycle {cycle_code} is {status}")


class CarrierUnavailable(SettlementError):
    """Transient carrier failure (timeout, transport error, 5xx)."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: str = "CARRIER_ERROR",
    ):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(f"Carrier unavailable ({error_type}): {message}")


class TaxConfigurationError(SettlementError):
    """GST state codes missing; the cycle cannot be invoiced."""

    def __init__(self, merchant_id: uuid.UUID, missing: Sequence[str]):
        self.merchant_id = merchant_id
        self.missing = list(missing)
        super().__init__(
            f"Merchant {merchant_id} is missing tax configuration: {', '.join(self.missing)}"
        )


class InvalidStateTransition(SettlementError):
    """A lifecycle transition that the record's current status does not allow."""
    pass


class ImmutableRecordError(SettlementError):
    """Attempt to modify or delete a finalized record."""
    pass


class SweepAlreadyRunning(SettlementError):
    """A periodic sweep was started while the previous run is still going."""
    pass

"""ORM models. Importing this package registers every table on Base.metadata."""
from shipsettle.models.rate_card import RateCard, ZoneCode, MerchantTier, Direction, SlabRule
from shipsettle.models.merchant import Merchant
from shipsettle.models.shipment import Shipment, ShipmentStatus, PaymentMode
from shipsettle.models.wallet import WalletTransaction, TransactionType, TransactionCategory
from shipsettle.models.billing_cycle import BillingCycle, BillingCycleShipment, CycleStatus
from shipsettle.models.invoice import (
    Invoice, InvoiceLine, InvoiceAdjustment,
    InvoiceStatus, PaymentStatus, PaymentMethod, AdjustmentType,
)
from shipsettle.models.tracking import TrackingRecord

__all__ = [
    "RateCard", "ZoneCode", "MerchantTier", "Direction", "SlabRule",
    "Merchant",
    "Shipment", "ShipmentStatus", "PaymentMode",
    "WalletTransaction", "TransactionType", "TransactionCategory",
    "BillingCycle", "BillingCycleShipment", "CycleStatus",
    "Invoice", "InvoiceLine", "InvoiceAdjustment",
    "InvoiceStatus", "PaymentStatus", "PaymentMethod", "AdjustmentType",
    "TrackingRecord",
]

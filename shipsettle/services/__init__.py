# Services module
from shipsettle.services.tariff_engine import TariffEngine, default_engine
from shipsettle.services.rate_card_service import RateCardService
from shipsettle.services.wallet_service import WalletService
from shipsettle.services.billing_cycle_service import BillingCycleService
from shipsettle.services.invoice_service import InvoiceService

# Carrier / tracking
from shipsettle.services.carrier_service import CarrierClient
from shipsettle.services.tracking_service import TrackingService

# Facade
from shipsettle.services.settlement_service import SettlementService

__all__ = [
    "TariffEngine",
    "default_engine",
    "RateCardService",
    "WalletService",
    "BillingCycleService",
    "InvoiceService",
    # Carrier / tracking
    "CarrierClient",
    "TrackingService",
    # Facade
    "SettlementService",
]

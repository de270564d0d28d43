"""Shipping cost settlement core: tariffs, wallet ledger, billing cycles, invoices and tracking sync."""

__version__ = "1.0.0"

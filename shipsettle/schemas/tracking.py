"""Carrier collaborator result schemas."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class CarrierTrackingResult:
    """Latest scan reported by the carrier for one AWB."""
    awb_number: str
    status: str
    status_at: Optional[datetime] = None
    location: Optional[str] = None
    instructions: Optional[str] = None

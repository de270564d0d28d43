"""
Carrier (Delhivery) Integration Service.

Read-only collaborator used by the settlement core:
- Zone lookup for a pickup/delivery pincode pair
- Latest tracking status for an AWB

Every failure talking to the carrier (timeout, transport error, non-2xx,
unreadable payload) surfaces as CarrierUnavailable so callers can retry.
"""
import httpx
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from zoneinfo import ZoneInfo

from shipsettle.config import settings
from shipsettle.core.exceptions import CarrierUnavailable
from shipsettle.models.rate_card import ZoneCode
from shipsettle.schemas.tracking import CarrierTrackingResult
from shipsettle.services.zone_service import collapse_zone

logger = logging.getLogger(__name__)

CHARGES_ENDPOINT = "/api/kinko/v1/invoice/charges/.json"
TRACKING_ENDPOINT = "/api/v1/packages/json/"


def _parse_carrier_datetime(value: Optional[str]) -> Optional[datetime]:
    """Carrier timestamps are ISO-8601, sometimes without an offset (IST)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable carrier timestamp '{value}'")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(settings.BILLING_TIMEZONE))
    return parsed.astimezone(timezone.utc)


class CarrierClient:
    """
    Async client for the carrier API.

    Usage:
        client = CarrierClient()

        zone = await client.lookup_zone("122001", "560001", 500)
        result = await client.poll_tracking("1234567890123")

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.CARRIER_API_URL).rstrip("/")
        self.token = token if token is not None else settings.CARRIER_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.CARRIER_TIMEOUT_SECONDS
        self.transport = transport

    async def _request(self, endpoint: str, params: Optional[Dict] = None) -> Any:
        """Make authenticated GET request to the carrier API."""
        headers = {
            "Authorization": f"Token {self.token}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.get(url, headers=headers, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"Carrier API timeout on {endpoint}: {e}")
            raise CarrierUnavailable(f"Timed out after {self.timeout}s", error_type="TIMEOUT") from e
        except httpx.HTTPError as e:
            logger.warning(f"Carrier API transport error on {endpoint}: {e}")
            raise CarrierUnavailable(str(e), error_type="TRANSPORT_ERROR") from e

        if response.status_code >= 400:
            logger.error(f"Carrier API error: {response.status_code} - {response.text[:200]}")
            raise CarrierUnavailable(
                response.text[:200] or response.reason_phrase,
                status_code=response.status_code,
                error_type="HTTP_ERROR",
            )

        try:
            return response.json()
        except ValueError as e:
            raise CarrierUnavailable(
                "Invalid JSON from carrier",
                status_code=response.status_code,
                error_type="INVALID_RESPONSE",
            ) from e

    # ==================== ZONE LOOKUP ====================

    async def lookup_zone(
        self,
        origin_pincode: str,
        destination_pincode: str,
        chargeable_weight_grams: int,
        service_mode: str = "S",
        payment_type: str = "Pre-paid",
    ) -> ZoneCode:
        """
        Ask the carrier which zone a lane falls in.

        Args:
            service_mode: "S" surface, "E" express
            payment_type: "Pre-paid" or "COD"

        Returns:
            Collapsed zone letter (D1/D2 -> D)
        """
        data = await self._request(
            CHARGES_ENDPOINT,
            params={
                "md": service_mode,
                "ss": "Delivered",
                "d_pin": destination_pincode,
                "o_pin": origin_pincode,
                "cgm": chargeable_weight_grams,
                "pt": payment_type,
            },
        )

        row = data[0] if isinstance(data, list) and data else data
        raw_zone = row.get("zone") if isinstance(row, dict) else None
        if not raw_zone:
            raise CarrierUnavailable(
                f"No zone returned for {origin_pincode} -> {destination_pincode}",
                error_type="INVALID_RESPONSE",
            )

        zone = collapse_zone(raw_zone)
        logger.info(f"Carrier zone {origin_pincode} -> {destination_pincode}: {raw_zone} ({zone.value})")
        return zone

    # ==================== TRACKING ====================

    async def poll_tracking(self, awb_number: str) -> CarrierTrackingResult:
        """Latest status for one AWB."""
        data = await self._request(TRACKING_ENDPOINT, params={"waybill": awb_number})

        shipments = data.get("ShipmentData") if isinstance(data, dict) else None
        if not shipments:
            raise CarrierUnavailable(
                f"No tracking information for {awb_number}",
                error_type="NOT_FOUND",
            )

        entry = shipments[0] if isinstance(shipments, list) else None
        shipment = entry.get("Shipment", entry) if isinstance(entry, dict) else None
        if not isinstance(shipment, dict):
            raise CarrierUnavailable(
                f"Unexpected tracking payload for {awb_number}",
                error_type="INVALID_RESPONSE",
            )

        status = shipment.get("Status") or {}
        if isinstance(status, str):
            status = {"Status": status}

        raw_status = status.get("Status") if isinstance(status, dict) else None
        if not raw_status:
            raise CarrierUnavailable(
                f"Tracking payload for {awb_number} has no status",
                error_type="INVALID_RESPONSE",
            )

        return CarrierTrackingResult(
            awb_number=shipment.get("AWB") or awb_number,
            status=raw_status,
            status_at=_parse_carrier_datetime(status.get("StatusDateTime")),
            location=status.get("StatusLocation"),
            instructions=status.get("Instructions"),
        )

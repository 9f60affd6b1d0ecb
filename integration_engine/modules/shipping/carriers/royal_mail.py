"""
Royal Mail Courier Implementation v1.0.0

- Shipping API token (clientId / clientSecret), cached for its 4 hour life
- Rates come from the published tariff bands; Royal Mail has no quote API
- Shipments and labels via the Shipping API, events via the Tracking API
- UK postcode validation is local
- Registered via @register_carrier decorator
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from integration_engine.core.exceptions import UpstreamError, ValidationError
from integration_engine.modules.provider import OAuthToken, OperationResult, TestConnectionResult
from integration_engine.modules.shipping.carriers import register_carrier
from integration_engine.modules.shipping.carriers.base import (
    Address,
    AddressValidationResult,
    BaseCourierProvider,
    LabelData,
    PackageDimensions,
    RateRequest,
    RateResponse,
    ServiceOption,
    ShipmentRequest,
    ShipmentResponse,
    TrackingEvent,
    TrackingResponse,
    TrackingStatus,
    parse_datetime,
)

logger = logging.getLogger(__name__)

ROYAL_MAIL_PRODUCTION_URL = "https://api.royalmail.net/shipping/v3"
ROYAL_MAIL_SANDBOX_URL = "https://api.royalmail.net/shipping/v3/sandbox"
ROYAL_MAIL_TRACKING_API = "https://api.royalmail.net/mailpieces/v2/{tracking_number}/events"
ROYAL_MAIL_TRACKING_URL = "https://www.royalmail.com/track-your-item#/tracking-results/{tracking_number}"

# Shipping API tokens are valid for 4 hours
TOKEN_LIFETIME_SECONDS = 4 * 60 * 60

UK_POSTCODE_RE = re.compile(r"^([A-Z]{1,2}[0-9][A-Z0-9]?)\s*([0-9][A-Z]{2})$")
UK_COUNTRY_CODES = {"GB", "UK"}


@dataclass(frozen=True)
class RoyalMailService:
    code: str
    name: str
    offering: str
    service_type: str
    domestic: bool
    estimated_days: int
    bands: Tuple[Tuple[float, str], ...]  # (max kg, price GBP) per parcel
    guaranteed: bool = False
    signature: bool = False
    max_insurance: Optional[str] = None


ROYAL_MAIL_SERVICES: Tuple[RoyalMailService, ...] = (
    RoyalMailService(
        code="TRACKED_48",
        name="Royal Mail Tracked 48",
        offering="TPS",
        service_type="T",
        domestic=True,
        estimated_days=2,
        bands=((2.0, "3.39"), (10.0, "5.49"), (20.0, "8.49")),
    ),
    RoyalMailService(
        code="TRACKED_24",
        name="Royal Mail Tracked 24",
        offering="TPN",
        service_type="T",
        domestic=True,
        estimated_days=1,
        bands=((2.0, "4.19"), (10.0, "6.39"), (20.0, "9.49")),
    ),
    RoyalMailService(
        code="SPECIAL_DELIVERY_1PM",
        name="Royal Mail Special Delivery Guaranteed by 1pm",
        offering="SD1",
        service_type="D",
        domestic=True,
        estimated_days=1,
        bands=((0.1, "8.25"), (0.5, "9.20"), (1.0, "10.60"), (2.0, "13.15"), (10.0, "21.70"), (20.0, "27.95")),
        guaranteed=True,
        signature=True,
        max_insurance="750.00",
    ),
    RoyalMailService(
        code="INTERNATIONAL_TRACKED",
        name="Royal Mail International Tracked",
        offering="MTE",
        service_type="I",
        domestic=False,
        estimated_days=5,
        bands=((0.1, "9.95"), (0.5, "13.50"), (1.0, "16.90"), (2.0, "22.40")),
    ),
)

SERVICES_BY_CODE: Dict[str, RoyalMailService] = {s.code: s for s in ROYAL_MAIL_SERVICES}


def _band_price(service: RoyalMailService, weight: float) -> Optional[Decimal]:
    for max_kg, price in service.bands:
        if weight <= max_kg:
            return Decimal(price)
    return None


@register_carrier("royal_mail")
class RoyalMailProvider(BaseCourierProvider):
    """Royal Mail Shipping/Tracking API adapter."""

    provider_id = "royal_mail"
    provider_name = "Royal Mail"
    required_credentials = ("clientId", "clientSecret", "accountNumber")
    optional_credentials = ("postingLocation",)

    STATUS_CODES = {
        "EVKSP": TrackingStatus.DELIVERED,
        "EVKOP": TrackingStatus.DELIVERED,
        "EVGPD": TrackingStatus.OUT_FOR_DELIVERY,
        "EVKNR": TrackingStatus.FAILED_ATTEMPT,
        "EVNRT": TrackingStatus.RETURN_TO_SENDER,
        "EVNMI": TrackingStatus.IN_TRANSIT,
        "EVDAV": TrackingStatus.IN_TRANSIT,
        "EVORI": TrackingStatus.IN_TRANSIT,
        "EVAIP": TrackingStatus.PRE_TRANSIT,
    }
    STATUS_KEYWORDS = (
        ("RETURN", TrackingStatus.RETURN_TO_SENDER),
        ("CANCEL", TrackingStatus.CANCELLED),
        ("ATTEMPT", TrackingStatus.FAILED_ATTEMPT),
        ("WE TRIED", TrackingStatus.FAILED_ATTEMPT),
        ("SOMETHING FOR YOU", TrackingStatus.FAILED_ATTEMPT),
        ("OUT FOR DELIVERY", TrackingStatus.OUT_FOR_DELIVERY),
        ("WITH DELIVERY", TrackingStatus.OUT_FOR_DELIVERY),
        ("DELIVERED", TrackingStatus.DELIVERED),
        ("HELD", TrackingStatus.EXCEPTION),
        ("DAMAGE", TrackingStatus.EXCEPTION),
        ("EXCEPTION", TrackingStatus.EXCEPTION),
        ("PRE-ADVICE", TrackingStatus.PRE_TRANSIT),
        ("AWAITING", TrackingStatus.PRE_TRANSIT),
        ("LABEL", TrackingStatus.PRE_TRANSIT),
        ("RECEIVED", TrackingStatus.IN_TRANSIT),
        ("ACCEPTED", TrackingStatus.IN_TRANSIT),
        ("PROCESSED", TrackingStatus.IN_TRANSIT),
        ("CUSTOMS", TrackingStatus.IN_TRANSIT),
        ("TRANSIT", TrackingStatus.IN_TRANSIT),
    )

    @property
    def base_url(self) -> str:
        return ROYAL_MAIL_SANDBOX_URL if self.is_test_mode else ROYAL_MAIL_PRODUCTION_URL

    def _client_headers(self) -> Dict[str, str]:
        return {
            "X-IBM-Client-Id": self.credential("clientId"),
            "X-IBM-Client-Secret": self.credential("clientSecret"),
        }

    async def _fetch_token(self) -> OAuthToken:
        return await self._request_token(
            "/token",
            headers=self._client_headers(),
            default_expires_in=TOKEN_LIFETIME_SECONDS,
        )

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self.get_access_token()
        headers = self._client_headers()
        headers["X-RMG-Auth-Token"] = token
        return headers

    async def _ping(self) -> TestConnectionResult:
        await self.get_access_token()
        return TestConnectionResult(
            success=True,
            message="Authenticated with Royal Mail",
            details={"environment": "sandbox" if self.is_test_mode else "production"},
        )

    def _extract_error_message(self, payload) -> Optional[str]:
        if isinstance(payload, dict):
            errors = payload.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                description = errors[0].get("errorDescription") or errors[0].get("errorCause")
                if description:
                    return description
            if payload.get("moreInformation") or payload.get("httpMessage"):
                return payload.get("moreInformation") or payload.get("httpMessage")
        return super()._extract_error_message(payload)

    # ==================== Rates ====================

    @staticmethod
    def _is_domestic(address: Address) -> bool:
        return address.country.upper() in UK_COUNTRY_CODES

    def _eligible_services(self, to_address: Address) -> List[RoyalMailService]:
        domestic = self._is_domestic(to_address)
        return [s for s in ROYAL_MAIL_SERVICES if s.domestic == domestic]

    async def get_rates(self, request: RateRequest) -> List[RateResponse]:
        self.require_packages(request.packages)

        if not self._is_domestic(request.from_address):
            logger.info(f"Royal Mail only ships from the UK, got origin {request.from_address.country}")
            return []

        rates = []
        for service in self._eligible_services(request.to_address):
            if request.service and request.service != service.code:
                continue

            prices = [_band_price(service, p.weight) for p in request.packages]
            if any(price is None for price in prices):
                continue

            rates.append(RateResponse(
                provider_id=self.provider_id,
                provider_name=self.provider_name,
                service_code=service.code,
                service_name=service.name,
                rate=sum(prices, Decimal("0.00")),
                currency="GBP",
                estimated_days=service.estimated_days,
                guaranteed_delivery=service.guaranteed,
                signature_required=service.signature,
                insurance_included=service.max_insurance is not None,
                max_insurance_value=Decimal(service.max_insurance) if service.max_insurance else None,
                metadata={"offering": service.offering},
            ))

        return rates

    async def get_available_services(self, from_address: Address, to_address: Address) -> List[ServiceOption]:
        if not self._is_domestic(from_address):
            return []
        return [
            ServiceOption(code=s.code, name=s.name, description=f"Up to {s.bands[-1][0]:g}kg per parcel")
            for s in self._eligible_services(to_address)
        ]

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResponse:
        service = SERVICES_BY_CODE.get(request.service_code)
        if not service:
            raise ValidationError(
                f"Unknown Royal Mail service '{request.service_code}'",
                field="service_code",
            )
        self.require_phone(request.from_address, "Sender")
        recipient_phone = self.require_phone(request.to_address, "Recipient")
        self.require_packages(request.packages)

        to = request.to_address
        payload = {
            "shipmentType": "Delivery",
            "service": {
                "format": "P",
                "occurrence": "1",
                "offering": service.offering,
                "type": service.service_type,
                "signature": request.signature_required or service.signature,
                "enhancements": ["14"] if request.saturday_delivery else [],
            },
            "shippingDate": (request.ship_date or date.today()).isoformat(),
            "recipientContact": {
                "name": to.name,
                "complementaryName": to.company,
                "telephoneNumber": recipient_phone,
                "electronicAddress": to.email,
            },
            "recipientAddress": {
                "addressLine1": to.street1,
                "addressLine2": to.street2,
                "postTown": to.city,
                "county": to.state,
                "postCode": to.postal_code,
                "country": to.country,
            },
            "items": [
                {"count": 1, "weight": {"unitOfMeasure": "g", "value": int(round(p.weight * 1000))}}
                for p in request.packages
            ],
            "customerReference": {
                "reference1": request.reference1 or request.order_id,
                "reference2": request.reference2,
            },
        }
        if self.credential("postingLocation"):
            payload["postingLocation"] = self.credential("postingLocation")

        data = await self._request("POST", "/shipments", json=payload)

        completed = data.get("completedShipments") or [{}]
        items = completed[0].get("shipmentItems") or []
        if not items or not items[0].get("shipmentNumber"):
            raise UpstreamError("Royal Mail did not return a shipment number", provider=self.provider_id)

        shipment_number = items[0]["shipmentNumber"]
        label_format = request.label_format.upper() if request.label_format.upper() in ("PDF", "PNG") else "PDF"
        label = await self._request(
            "PUT",
            f"/shipments/{shipment_number}/label",
            params={"outputFormat": label_format},
        )

        prices = [_band_price(service, p.weight) for p in request.packages]

        return ShipmentResponse(
            provider_id=self.provider_id,
            shipment_id=shipment_number,
            tracking_number=shipment_number,
            service_code=service.code,
            labels=[LabelData(format=label_format, data=label.get("label"))],
            tracking_url=ROYAL_MAIL_TRACKING_URL.format(tracking_number=shipment_number),
            rate=sum(prices, Decimal("0.00")) if all(p is not None for p in prices) else None,
            currency="GBP",
            metadata={"item_ids": [i.get("itemID") for i in items]},
        )

    async def cancel_shipment(self, shipment_id: str) -> OperationResult:
        await self._request("DELETE", f"/shipments/{shipment_id}")
        return OperationResult(success=True, message=f"Shipment {shipment_id} cancelled")

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> TrackingResponse:
        headers = self._client_headers()
        headers["X-Accept-RMG-Terms"] = "yes"
        try:
            data = await self._request(
                "GET",
                ROYAL_MAIL_TRACKING_API.format(tracking_number=tracking_number),
                headers=headers,
                authenticate=False,
            )
        except UpstreamError as e:
            if e.status_code == 404:
                return TrackingResponse(
                    provider_id=self.provider_id,
                    tracking_number=tracking_number,
                    status=TrackingStatus.UNKNOWN,
                    status_description=e.message,
                )
            raise

        mail_piece = data.get("mailPieces") or {}
        summary = mail_piece.get("summary") or {}

        events = [
            TrackingEvent(
                timestamp=parse_datetime(event.get("eventDateTime")),
                status=self.map_status(event.get("eventCode"), event.get("eventName")),
                description=event.get("eventName", ""),
                location=event.get("locationName"),
                code=event.get("eventCode"),
            )
            for event in mail_piece.get("events") or []
        ]

        status = self.map_status(
            summary.get("lastEventCode"),
            summary.get("statusCategory") or summary.get("lastEventName"),
        )
        delivered_at = parse_datetime(summary.get("lastEventDateTime")) if status == TrackingStatus.DELIVERED else None

        return TrackingResponse(
            provider_id=self.provider_id,
            tracking_number=tracking_number,
            status=status,
            status_description=summary.get("statusDescription") or summary.get("lastEventName"),
            estimated_delivery_date=parse_datetime((mail_piece.get("estimatedDelivery") or {}).get("date")),
            delivered_at=delivered_at,
            signed_by=(mail_piece.get("signature") or {}).get("recipientName"),
            events=events,
        )

    # ==================== Address Validation ====================

    async def validate_address(self, address: Address) -> AddressValidationResult:
        if not self._is_domestic(address):
            return AddressValidationResult(
                is_valid=True,
                normalized_address=address,
                errors=["Royal Mail validates UK postcodes only"],
            )

        match = UK_POSTCODE_RE.match(address.postal_code.upper().strip())
        if not match:
            return AddressValidationResult(
                is_valid=False,
                errors=[f"'{address.postal_code}' is not a valid UK postcode"],
            )

        normalized = Address(
            name=address.name,
            company=address.company,
            street1=address.street1,
            street2=address.street2,
            city=address.city.upper(),
            state=address.state,
            postal_code=f"{match.group(1)} {match.group(2)}",
            country="GB",
            phone=address.phone,
            email=address.email,
            is_residential=address.is_residential,
        )
        return AddressValidationResult(is_valid=True, normalized_address=normalized)

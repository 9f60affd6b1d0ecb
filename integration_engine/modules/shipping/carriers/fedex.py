"""
FedEx Courier Implementation v1.0.0

- OAuth client credentials (apiKey / secretKey) with a cached token
- Rate quotes, ship, track, cancel, address resolve, pickups and
  service availability against the FedEx REST APIs
- Registered via @register_carrier decorator
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from integration_engine.core.exceptions import UpstreamError
from integration_engine.modules.provider import OAuthToken, OperationResult, TestConnectionResult
from integration_engine.modules.shipping.carriers import register_carrier
from integration_engine.modules.shipping.carriers.base import (
    Address,
    AddressValidationResult,
    BaseCourierProvider,
    LabelData,
    PackageDimensions,
    PickupRequest,
    PickupResponse,
    RateRequest,
    RateResponse,
    ServiceOption,
    ShipmentRequest,
    ShipmentResponse,
    TrackingEvent,
    TrackingResponse,
    TrackingStatus,
    parse_datetime,
    to_money,
)

logger = logging.getLogger(__name__)

FEDEX_PRODUCTION_URL = "https://apis.fedex.com"
FEDEX_SANDBOX_URL = "https://apis-sandbox.fedex.com"
FEDEX_TRACKING_URL = "https://www.fedex.com/fedextrack/?trknbr={tracking_number}"

_TRANSIT_WORDS = [
    "ONE", "TWO", "THREE", "FOUR", "FIVE", "SIX", "SEVEN", "EIGHT", "NINE", "TEN",
    "ELEVEN", "TWELVE", "THIRTEEN", "FOURTEEN", "FIFTEEN", "SIXTEEN", "SEVENTEEN",
    "EIGHTEEN", "NINETEEN", "TWENTY",
]
# "ONE_DAY" -> 1, "TWO_DAYS" -> 2, ...
FEDEX_TRANSIT_DAYS = {
    f"{word}_{'DAY' if index == 0 else 'DAYS'}": index + 1
    for index, word in enumerate(_TRANSIT_WORDS)
}

LABEL_IMAGE_TYPES = {"PDF": "PDF", "PNG": "PNG", "ZPL": "ZPLII"}


@register_carrier("fedex")
class FedExProvider(BaseCourierProvider):
    """FedEx REST API adapter."""

    provider_id = "fedex"
    provider_name = "FedEx"
    required_credentials = ("apiKey", "secretKey", "accountNumber")
    optional_credentials = ("meterNumber",)

    STATUS_CODES = {
        "OC": TrackingStatus.PRE_TRANSIT,
        "IN": TrackingStatus.PRE_TRANSIT,
        "PU": TrackingStatus.IN_TRANSIT,
        "IT": TrackingStatus.IN_TRANSIT,
        "IX": TrackingStatus.IN_TRANSIT,
        "AR": TrackingStatus.IN_TRANSIT,
        "AF": TrackingStatus.IN_TRANSIT,
        "DP": TrackingStatus.IN_TRANSIT,
        "OD": TrackingStatus.OUT_FOR_DELIVERY,
        "DL": TrackingStatus.DELIVERED,
        "DE": TrackingStatus.EXCEPTION,
        "SE": TrackingStatus.EXCEPTION,
        "DY": TrackingStatus.EXCEPTION,
        "CA": TrackingStatus.CANCELLED,
        "RS": TrackingStatus.RETURN_TO_SENDER,
    }
    STATUS_KEYWORDS = (
        ("RETURN", TrackingStatus.RETURN_TO_SENDER),
        ("CANCEL", TrackingStatus.CANCELLED),
        ("ATTEMPT", TrackingStatus.FAILED_ATTEMPT),
        ("NOT DELIVERED", TrackingStatus.FAILED_ATTEMPT),
        ("UNDELIVERED", TrackingStatus.EXCEPTION),
        ("OUT FOR DELIVERY", TrackingStatus.OUT_FOR_DELIVERY),
        ("ON FEDEX VEHICLE FOR DELIVERY", TrackingStatus.OUT_FOR_DELIVERY),
        ("EXCEPTION", TrackingStatus.EXCEPTION),
        ("DELAY", TrackingStatus.EXCEPTION),
        ("DELIVERED", TrackingStatus.DELIVERED),
        ("LABEL CREATED", TrackingStatus.PRE_TRANSIT),
        ("SHIPMENT INFORMATION SENT", TrackingStatus.PRE_TRANSIT),
        ("PICKED UP", TrackingStatus.IN_TRANSIT),
        ("IN TRANSIT", TrackingStatus.IN_TRANSIT),
        ("ARRIVED", TrackingStatus.IN_TRANSIT),
        ("DEPARTED", TrackingStatus.IN_TRANSIT),
    )

    @property
    def base_url(self) -> str:
        return FEDEX_SANDBOX_URL if self.is_test_mode else FEDEX_PRODUCTION_URL

    @property
    def account_number(self) -> str:
        return self.credential("accountNumber")

    async def _fetch_token(self) -> OAuthToken:
        return await self._request_token(
            "/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.credential("apiKey"),
                "client_secret": self.credential("secretKey"),
            },
        )

    async def _ping(self) -> TestConnectionResult:
        await self.get_access_token()
        return TestConnectionResult(
            success=True,
            message="Authenticated with FedEx",
            details={"environment": "sandbox" if self.is_test_mode else "production"},
        )

    # ==================== Payload Builders ====================

    @staticmethod
    def _address(address: Address) -> Dict[str, Any]:
        street_lines = [line for line in (address.street1, address.street2) if line]
        payload = {
            "streetLines": street_lines,
            "city": address.city,
            "postalCode": address.postal_code,
            "countryCode": address.country,
            "residential": address.is_residential,
        }
        if address.state:
            payload["stateOrProvinceCode"] = address.state
        return payload

    @classmethod
    def _party(cls, address: Address, phone: str) -> Dict[str, Any]:
        contact = {"personName": address.name, "phoneNumber": phone}
        if address.company:
            contact["companyName"] = address.company
        if address.email:
            contact["emailAddress"] = address.email
        return {"contact": contact, "address": cls._address(address)}

    @staticmethod
    def _package_line(package: PackageDimensions, sequence: int) -> Dict[str, Any]:
        line = {
            "sequenceNumber": sequence,
            "weight": {"units": "KG", "value": round(package.weight, 2)},
        }
        if package.length and package.width and package.height:
            line["dimensions"] = {
                "length": int(round(package.length)),
                "width": int(round(package.width)),
                "height": int(round(package.height)),
                "units": "CM",
            }
        return line

    # ==================== Rates ====================

    async def get_rates(self, request: RateRequest) -> List[RateResponse]:
        self.require_packages(request.packages)

        requested_shipment: Dict[str, Any] = {
            "shipper": {"address": self._address(request.from_address)},
            "recipient": {"address": self._address(request.to_address)},
            "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
            "rateRequestType": ["ACCOUNT", "LIST"],
            "shipDateStamp": (request.ship_date or date.today()).isoformat(),
            "requestedPackageLineItems": [
                self._package_line(p, i + 1) for i, p in enumerate(request.packages)
            ],
        }
        if request.service:
            requested_shipment["serviceType"] = request.service

        data = await self._request(
            "POST",
            "/rate/v1/rates/quotes",
            json={
                "accountNumber": {"value": self.account_number},
                "requestedShipment": requested_shipment,
                "returnTransitTimes": True,
            },
        )

        rates = []
        for detail in data.get("output", {}).get("rateReplyDetails", []):
            rate = self._parse_rate(detail)
            if rate:
                rates.append(rate)

        logger.info(f"FedEx returned {len(rates)} rates")
        return rates

    def _parse_rate(self, detail: Dict[str, Any]) -> Optional[RateResponse]:
        rated_details = detail.get("ratedShipmentDetails") or []
        if not rated_details:
            return None

        # Prefer negotiated account rates over list rates
        rated = next(
            (r for r in rated_details if r.get("rateType") == "ACCOUNT"),
            rated_details[0],
        )
        amount = to_money(rated.get("totalNetCharge"))
        if amount is None:
            return None

        commit = detail.get("commit") or {}
        operational = detail.get("operationalDetail") or {}
        transit = operational.get("transitTime") or commit.get("transitDays", {}).get("minimumTransitTime")
        delivery = parse_datetime(
            (commit.get("dateDetail") or {}).get("dayFormat") or operational.get("deliveryDate")
        )

        return RateResponse(
            provider_id=self.provider_id,
            provider_name=self.provider_name,
            service_code=detail.get("serviceType", ""),
            service_name=detail.get("serviceName") or detail.get("serviceType", ""),
            rate=amount,
            currency=rated.get("currency") or "USD",
            estimated_days=FEDEX_TRANSIT_DAYS.get(str(transit).upper()) if transit else None,
            estimated_delivery_date=delivery,
            guaranteed_delivery=bool(commit.get("guaranteedDelivery")),
            saturday_delivery=bool(commit.get("saturdayDelivery")),
            metadata={"rate_type": rated.get("rateType")},
        )

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResponse:
        shipper_phone = self.require_phone(request.from_address, "Sender")
        recipient_phone = self.require_phone(request.to_address, "Recipient")
        self.require_packages(request.packages)

        requested_shipment: Dict[str, Any] = {
            "shipper": self._party(request.from_address, shipper_phone),
            "recipients": [self._party(request.to_address, recipient_phone)],
            "shipDatestamp": (request.ship_date or date.today()).isoformat(),
            "serviceType": request.service_code,
            "packagingType": "YOUR_PACKAGING",
            "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
            "shippingChargesPayment": {"paymentType": "SENDER"},
            "labelSpecification": {
                "imageType": LABEL_IMAGE_TYPES.get(request.label_format.upper(), "PDF"),
                "labelStockType": "PAPER_4X6",
            },
            "requestedPackageLineItems": [
                self._package_line(p, i + 1) for i, p in enumerate(request.packages)
            ],
        }

        special_services = []
        if request.saturday_delivery:
            special_services.append("SATURDAY_DELIVERY")
        if special_services:
            requested_shipment["shipmentSpecialServices"] = {"specialServiceTypes": special_services}

        if request.signature_required:
            for line in requested_shipment["requestedPackageLineItems"]:
                line["packageSpecialServices"] = {
                    "specialServiceTypes": ["SIGNATURE_OPTION"],
                    "signatureOptionType": "DIRECT",
                }

        references = [
            {"customerReferenceType": "CUSTOMER_REFERENCE", "value": ref}
            for ref in (request.reference1 or request.order_id, request.reference2)
            if ref
        ]
        if references:
            requested_shipment["requestedPackageLineItems"][0]["customerReferences"] = references

        if request.customs_info:
            requested_shipment["customsClearanceDetail"] = {
                "dutiesPayment": {"paymentType": "SENDER"},
                "commodities": [
                    {
                        "description": item.description,
                        "quantity": item.quantity,
                        "quantityUnits": "PCS",
                        "weight": {"units": "KG", "value": item.weight},
                        "customsValue": {"amount": float(item.value), "currency": request.customs_info.currency},
                        "countryOfManufacture": item.origin_country or request.from_address.country,
                        "harmonizedCode": item.hs_code,
                    }
                    for item in request.customs_info.items
                ],
            }

        headers = {}
        if request.idempotency_key:
            headers["x-customer-transaction-id"] = request.idempotency_key

        data = await self._request(
            "POST",
            "/ship/v1/shipments",
            json={
                "labelResponseOptions": "LABEL",
                "accountNumber": {"value": self.account_number},
                "requestedShipment": requested_shipment,
            },
            headers=headers,
        )

        shipments = data.get("output", {}).get("transactionShipments") or []
        if not shipments:
            raise UpstreamError("FedEx did not return a shipment", provider=self.provider_id)
        shipment = shipments[0]

        tracking_number = shipment.get("masterTrackingNumber")
        if not tracking_number:
            raise UpstreamError("FedEx shipment response missing tracking number", provider=self.provider_id)

        labels = []
        for index, piece in enumerate(shipment.get("pieceResponses") or []):
            for document in piece.get("packageDocuments") or []:
                labels.append(LabelData(
                    format=document.get("docType") or request.label_format,
                    data=document.get("encodedLabel"),
                    url=document.get("url"),
                    package_index=index,
                ))

        rating = (shipment.get("completedShipmentDetail") or {}).get("shipmentRating") or {}
        rate_details = rating.get("shipmentRateDetails") or [{}]

        return ShipmentResponse(
            provider_id=self.provider_id,
            shipment_id=tracking_number,
            tracking_number=tracking_number,
            service_code=shipment.get("serviceType") or request.service_code,
            labels=labels,
            tracking_url=FEDEX_TRACKING_URL.format(tracking_number=tracking_number),
            rate=to_money(rate_details[0].get("totalNetCharge")),
            currency=rate_details[0].get("currency"),
            metadata={"transaction_id": data.get("transactionId")},
        )

    async def cancel_shipment(self, shipment_id: str) -> OperationResult:
        data = await self._request(
            "PUT",
            "/ship/v1/shipments/cancel",
            json={
                "accountNumber": {"value": self.account_number},
                "trackingNumber": shipment_id,
                "deletionControl": "DELETE_ALL_PACKAGES",
            },
        )
        output = data.get("output", {})
        cancelled = bool(output.get("cancelledShipment"))
        message = output.get("message") or ("Shipment cancelled" if cancelled else "Shipment was not cancelled")
        return OperationResult(success=cancelled, message=message)

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> TrackingResponse:
        data = await self._request(
            "POST",
            "/track/v1/trackingnumbers",
            json={
                "includeDetailedScans": True,
                "trackingInfo": [{"trackingNumberInfo": {"trackingNumber": tracking_number}}],
            },
        )

        complete = data.get("output", {}).get("completeTrackResults") or [{}]
        results = complete[0].get("trackResults") or [{}]
        result = results[0]

        if result.get("error") or not result:
            error = result.get("error") or {}
            logger.info(f"FedEx has no tracking for {tracking_number}: {error.get('code')}")
            return TrackingResponse(
                provider_id=self.provider_id,
                tracking_number=tracking_number,
                status=TrackingStatus.UNKNOWN,
                status_description=error.get("message"),
            )

        latest = result.get("latestStatusDetail") or {}
        status = self.map_status(latest.get("code"), latest.get("description"))

        events = []
        for scan in result.get("scanEvents") or []:
            location = scan.get("scanLocation") or {}
            events.append(TrackingEvent(
                timestamp=parse_datetime(scan.get("date")),
                status=self.map_status(scan.get("derivedStatusCode") or scan.get("eventType"), scan.get("eventDescription")),
                description=scan.get("eventDescription", ""),
                location=", ".join(
                    part for part in (location.get("city"), location.get("stateOrProvinceCode"), location.get("countryCode"))
                    if part
                ) or None,
                code=scan.get("eventType"),
            ))

        dates = {d.get("type"): parse_datetime(d.get("dateTime")) for d in result.get("dateAndTimes") or []}

        return TrackingResponse(
            provider_id=self.provider_id,
            tracking_number=tracking_number,
            status=status,
            status_description=latest.get("description"),
            estimated_delivery_date=dates.get("ESTIMATED_DELIVERY"),
            delivered_at=dates.get("ACTUAL_DELIVERY"),
            signed_by=(result.get("deliveryDetails") or {}).get("receivedByName"),
            events=events,
        )

    # ==================== Address Validation ====================

    async def validate_address(self, address: Address) -> AddressValidationResult:
        data = await self._request(
            "POST",
            "/address/v1/addresses/resolve",
            json={"addressesToValidate": [{"address": self._address(address)}]},
        )

        resolved_list = data.get("output", {}).get("resolvedAddresses") or []
        if not resolved_list:
            return AddressValidationResult(is_valid=False, errors=["FedEx could not resolve the address"])
        resolved = resolved_list[0]

        attributes = resolved.get("attributes") or {}
        is_valid = str(attributes.get("Resolved", "")).lower() == "true"
        street_lines = resolved.get("streetLinesToken") or [address.street1]

        normalized = Address(
            name=address.name,
            company=address.company,
            street1=street_lines[0],
            street2=street_lines[1] if len(street_lines) > 1 else address.street2,
            city=resolved.get("city") or address.city,
            state=resolved.get("stateOrProvinceCode") or address.state,
            postal_code=resolved.get("postalCode") or address.postal_code,
            country=resolved.get("countryCode") or address.country,
            phone=address.phone,
            email=address.email,
            is_residential=resolved.get("classification") != "BUSINESS",
        )
        classification = resolved.get("classification")

        return AddressValidationResult(
            is_valid=is_valid,
            normalized_address=normalized,
            errors=[m.get("message", "") for m in resolved.get("customerMessages") or [] if isinstance(m, dict)],
            is_residential=None if classification in (None, "UNKNOWN", "MIXED") else classification == "RESIDENTIAL",
        )

    # ==================== Pickups / Services ====================

    async def schedule_pickup(self, request: PickupRequest) -> PickupResponse:
        phone = self.require_phone(request.address, "Pickup")
        data = await self._request(
            "POST",
            "/pickup/v1/pickups",
            json={
                "associatedAccountNumber": {"value": self.account_number},
                "originDetail": {
                    "pickupLocation": self._party(request.address, phone),
                    "readyDateTimestamp": f"{request.pickup_date.isoformat()}T{request.ready_time}:00",
                    "customerCloseTime": f"{request.close_time}:00",
                    "packageLocation": "FRONT",
                },
                "totalWeight": {"units": "KG", "value": request.total_weight},
                "packageCount": request.package_count,
                "carrierCode": "FDXE",
                "remarks": request.instructions,
            },
        )
        output = data.get("output", {})
        confirmation = output.get("pickupConfirmationCode")
        if not confirmation:
            raise UpstreamError("FedEx did not confirm the pickup", provider=self.provider_id)

        return PickupResponse(
            provider_id=self.provider_id,
            confirmation_number=confirmation,
            pickup_date=request.pickup_date,
            ready_time=request.ready_time,
            close_time=request.close_time,
            metadata={"location": output.get("location")},
        )

    async def cancel_pickup(self, confirmation_number: str) -> OperationResult:
        data = await self._request(
            "PUT",
            "/pickup/v1/pickups/cancel",
            json={
                "associatedAccountNumber": {"value": self.account_number},
                "pickupConfirmationCode": confirmation_number,
                "carrierCode": "FDXE",
            },
        )
        message = data.get("output", {}).get("cancelConfirmationMessage") or "Pickup cancelled"
        return OperationResult(success=True, message=message)

    async def get_available_services(self, from_address: Address, to_address: Address) -> List[ServiceOption]:
        data = await self._request(
            "POST",
            "/availability/v1/packageandserviceoptions",
            json={
                "requestedShipment": {
                    "shipper": {"address": self._address(from_address)},
                    "recipients": [{"address": self._address(to_address)}],
                },
                "carrierCodes": ["FDXE", "FDXG"],
            },
        )

        services: Dict[str, ServiceOption] = {}
        for option in data.get("output", {}).get("packageOptions") or []:
            service_type = option.get("serviceType") or {}
            key = service_type.get("key")
            if key and key not in services:
                services[key] = ServiceOption(
                    code=key,
                    name=service_type.get("displayText") or key,
                    description=(option.get("packageType") or {}).get("displayText"),
                )
        return list(services.values())

"""
DHL Express Courier Implementation v1.0.0

- MyDHL API with HTTP basic auth (siteId or apiKey / password)
- Rates, shipments with labels, checkpoint tracking, address
  validation, pickups and product listing
- Registered via @register_carrier decorator
"""
import base64
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from integration_engine.core.exceptions import UpstreamError
from integration_engine.modules.provider import OperationResult, TestConnectionResult
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
    total_weight,
)

logger = logging.getLogger(__name__)

DHL_PRODUCTION_URL = "https://express.api.dhl.com/mydhlapi"
DHL_SANDBOX_URL = "https://express.api.dhl.com/mydhlapi/test"
DHL_TRACKING_URL = "https://www.dhl.com/en/express/tracking.html?AWB={tracking_number}"

LABEL_TEMPLATE = "ECOM26_84_001"


@register_carrier("dhl")
class DHLProvider(BaseCourierProvider):
    """DHL Express (MyDHL API) adapter."""

    provider_id = "dhl"
    provider_name = "DHL Express"
    required_credentials = ("apiKey", "accountNumber")
    optional_credentials = ("siteId", "password")

    STATUS_CODES = {
        "SA": TrackingStatus.PRE_TRANSIT,
        "PU": TrackingStatus.IN_TRANSIT,
        "PL": TrackingStatus.IN_TRANSIT,
        "DF": TrackingStatus.IN_TRANSIT,
        "AF": TrackingStatus.IN_TRANSIT,
        "AR": TrackingStatus.IN_TRANSIT,
        "CC": TrackingStatus.IN_TRANSIT,
        "CR": TrackingStatus.IN_TRANSIT,
        "RR": TrackingStatus.IN_TRANSIT,
        "TR": TrackingStatus.IN_TRANSIT,
        "WC": TrackingStatus.OUT_FOR_DELIVERY,
        "OK": TrackingStatus.DELIVERED,
        "NH": TrackingStatus.FAILED_ATTEMPT,
        "CA": TrackingStatus.FAILED_ATTEMPT,
        "BA": TrackingStatus.EXCEPTION,
        "OH": TrackingStatus.EXCEPTION,
        "MS": TrackingStatus.EXCEPTION,
        "RT": TrackingStatus.RETURN_TO_SENDER,
    }
    STATUS_KEYWORDS = (
        ("RETURN", TrackingStatus.RETURN_TO_SENDER),
        ("CANCEL", TrackingStatus.CANCELLED),
        ("NOT HOME", TrackingStatus.FAILED_ATTEMPT),
        ("ATTEMPT", TrackingStatus.FAILED_ATTEMPT),
        ("WITH DELIVERY COURIER", TrackingStatus.OUT_FOR_DELIVERY),
        ("OUT FOR DELIVERY", TrackingStatus.OUT_FOR_DELIVERY),
        ("DELIVERED", TrackingStatus.DELIVERED),
        ("ON HOLD", TrackingStatus.EXCEPTION),
        ("DELAY", TrackingStatus.EXCEPTION),
        ("EXCEPTION", TrackingStatus.EXCEPTION),
        ("SHIPMENT INFORMATION RECEIVED", TrackingStatus.PRE_TRANSIT),
        ("PICKED UP", TrackingStatus.IN_TRANSIT),
        ("PROCESSED", TrackingStatus.IN_TRANSIT),
        ("ARRIVED", TrackingStatus.IN_TRANSIT),
        ("DEPARTED", TrackingStatus.IN_TRANSIT),
        ("TRANSIT", TrackingStatus.IN_TRANSIT),
        ("CLEARANCE", TrackingStatus.IN_TRANSIT),
    )

    @property
    def base_url(self) -> str:
        return DHL_SANDBOX_URL if self.is_test_mode else DHL_PRODUCTION_URL

    @property
    def account_number(self) -> str:
        return self.credential("accountNumber")

    async def _auth_headers(self) -> Dict[str, str]:
        username = self.credential("siteId") or self.credential("apiKey")
        password = self.credential("password")
        encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}

    async def _ping(self) -> TestConnectionResult:
        await self._request(
            "GET",
            "/address-validate",
            params={"type": "delivery", "countryCode": "GB", "postalCode": "EC1A1BB", "cityName": "London"},
        )
        return TestConnectionResult(
            success=True,
            message="Connected to DHL Express",
            details={"environment": "sandbox" if self.is_test_mode else "production"},
        )

    # ==================== Payload Builders ====================

    @staticmethod
    def _postal_address(address: Address) -> Dict[str, Any]:
        payload = {
            "postalCode": address.postal_code,
            "cityName": address.city,
            "countryCode": address.country,
            "addressLine1": address.street1,
        }
        if address.street2:
            payload["addressLine2"] = address.street2
        if address.state:
            payload["provinceCode"] = address.state
        return payload

    @classmethod
    def _party(cls, address: Address, phone: str) -> Dict[str, Any]:
        contact = {
            "phone": phone,
            "fullName": address.name,
            "companyName": address.company or address.name,
        }
        if address.email:
            contact["email"] = address.email
        return {
            "postalAddress": cls._postal_address(address),
            "contactInformation": contact,
            "typeCode": "private" if address.is_residential else "business",
        }

    @staticmethod
    def _package(package: PackageDimensions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"weight": round(package.weight, 3)}
        if package.length and package.width and package.height:
            payload["dimensions"] = {
                "length": round(package.length, 1),
                "width": round(package.width, 1),
                "height": round(package.height, 1),
            }
        return payload

    def _rate_params(self, from_address: Address, to_address: Address, packages: List[PackageDimensions],
                     ship_date: Optional[date]) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "accountNumber": self.account_number,
            "originCountryCode": from_address.country,
            "originCityName": from_address.city,
            "originPostalCode": from_address.postal_code,
            "destinationCountryCode": to_address.country,
            "destinationCityName": to_address.city,
            "destinationPostalCode": to_address.postal_code,
            "weight": total_weight(packages) if packages else 0.5,
            "plannedShippingDate": (ship_date or date.today()).isoformat(),
            "isCustomsDeclarable": str(from_address.country != to_address.country).lower(),
            "unitOfMeasurement": "metric",
        }
        if packages:
            largest = max(packages, key=lambda p: p.length * p.width * p.height)
            params.update({
                "length": round(largest.length or 1, 1),
                "width": round(largest.width or 1, 1),
                "height": round(largest.height or 1, 1),
            })
        return params

    # ==================== Rates ====================

    async def get_rates(self, request: RateRequest) -> List[RateResponse]:
        self.require_packages(request.packages)

        data = await self._request(
            "GET",
            "/rates",
            params=self._rate_params(request.from_address, request.to_address, request.packages, request.ship_date),
        )

        rates = []
        for product in data.get("products") or []:
            if request.service and product.get("productCode") != request.service:
                continue
            rate = self._parse_rate(product)
            if rate:
                rates.append(rate)

        logger.info(f"DHL returned {len(rates)} rates")
        return rates

    def _parse_rate(self, product: Dict[str, Any]) -> Optional[RateResponse]:
        prices = product.get("totalPrice") or []
        if not prices:
            return None

        # BILLC is the price in the billing currency
        price = next((p for p in prices if p.get("currencyType") == "BILLC"), prices[0])
        amount = to_money(price.get("price"))
        if amount is None:
            return None

        capabilities = product.get("deliveryCapabilities") or {}
        transit_days = capabilities.get("totalTransitDays")

        return RateResponse(
            provider_id=self.provider_id,
            provider_name=self.provider_name,
            service_code=product.get("productCode", ""),
            service_name=product.get("productName") or product.get("productCode", ""),
            rate=amount,
            currency=price.get("priceCurrency") or "EUR",
            estimated_days=int(transit_days) if transit_days is not None else None,
            estimated_delivery_date=parse_datetime(capabilities.get("estimatedDeliveryDateAndTime")),
            guaranteed_delivery=True,
            metadata={"network_type": product.get("networkTypeCode")},
        )

    # ==================== Shipments ====================

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResponse:
        shipper_phone = self.require_phone(request.from_address, "Sender")
        receiver_phone = self.require_phone(request.to_address, "Recipient")
        self.require_packages(request.packages)

        ship_date = request.ship_date or date.today()
        is_declarable = request.from_address.country != request.to_address.country

        content: Dict[str, Any] = {
            "packages": [self._package(p) for p in request.packages],
            "isCustomsDeclarable": is_declarable,
            "description": request.reference1 or f"Order {request.order_id}",
            "incoterm": "DAP",
            "unitOfMeasurement": "metric",
        }
        if is_declarable and request.customs_info:
            content["declaredValue"] = float(sum(i.value * i.quantity for i in request.customs_info.items))
            content["declaredValueCurrency"] = request.customs_info.currency
            content["exportDeclaration"] = {
                "lineItems": [
                    {
                        "number": index + 1,
                        "description": item.description,
                        "price": float(item.value),
                        "quantity": {"value": item.quantity, "unitOfMeasurement": "PCS"},
                        "commodityCodes": [{"typeCode": "outbound", "value": item.hs_code}] if item.hs_code else [],
                        "manufacturerCountry": item.origin_country or request.from_address.country,
                        "weight": {"netValue": item.weight, "grossValue": item.weight},
                    }
                    for index, item in enumerate(request.customs_info.items)
                ],
                "invoice": {
                    "number": request.customs_info.invoice_number or request.order_id,
                    "date": ship_date.isoformat(),
                },
            }

        payload: Dict[str, Any] = {
            "plannedShippingDateAndTime": f"{ship_date.isoformat()}T12:00:00GMT+00:00",
            "pickup": {"isRequested": False},
            "productCode": request.service_code,
            "accounts": [{"typeCode": "shipper", "number": self.account_number}],
            "customerDetails": {
                "shipperDetails": self._party(request.from_address, shipper_phone),
                "receiverDetails": self._party(request.to_address, receiver_phone),
            },
            "content": content,
            "outputImageProperties": {
                "encodingFormat": request.label_format.lower(),
                "imageOptions": [{"typeCode": "label", "templateName": LABEL_TEMPLATE}],
            },
            "customerReferences": [
                {"value": ref, "typeCode": "CU"}
                for ref in (request.reference1 or request.order_id, request.reference2)
                if ref
            ],
        }

        value_added = []
        if request.signature_required:
            value_added.append({"serviceCode": "SF"})
        if request.insurance:
            value_added.append({"serviceCode": "II", "value": float(request.insurance), "currency": "GBP"})
        if value_added:
            payload["valueAddedServices"] = value_added

        headers = {}
        if request.idempotency_key:
            headers["Message-Reference"] = request.idempotency_key

        data = await self._request("POST", "/shipments", json=payload, headers=headers)

        tracking_number = data.get("shipmentTrackingNumber")
        if not tracking_number:
            raise UpstreamError("DHL shipment response missing tracking number", provider=self.provider_id)

        labels = [
            LabelData(
                format=(document.get("imageFormat") or request.label_format).upper(),
                data=document.get("content"),
                package_index=index,
            )
            for index, document in enumerate(data.get("documents") or [])
            if document.get("typeCode") == "label"
        ]

        charges = data.get("shipmentCharges") or [{}]
        charge = next((c for c in charges if c.get("currencyType") == "BILLC"), charges[0])

        return ShipmentResponse(
            provider_id=self.provider_id,
            shipment_id=tracking_number,
            tracking_number=tracking_number,
            service_code=request.service_code,
            labels=labels,
            tracking_url=data.get("trackingUrl") or DHL_TRACKING_URL.format(tracking_number=tracking_number),
            rate=to_money(charge.get("price")),
            currency=charge.get("priceCurrency"),
            metadata={
                "package_tracking_numbers": [p.get("trackingNumber") for p in data.get("packages") or []],
                "dispatch_confirmation": data.get("dispatchConfirmationNumber"),
            },
        )

    async def cancel_shipment(self, shipment_id: str) -> OperationResult:
        # MyDHL has no void endpoint; unscanned waybills are not billed
        logger.info(f"DHL shipment {shipment_id} cannot be voided via API")
        return OperationResult(
            success=False,
            message="DHL Express shipments cannot be cancelled via API; unused waybills are not charged",
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str) -> TrackingResponse:
        try:
            data = await self._request(
                "GET",
                f"/shipments/{tracking_number}/tracking",
                params={"trackingView": "all-checkpoints", "levelOfDetail": "all"},
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

        shipments = data.get("shipments") or []
        if not shipments:
            return TrackingResponse(
                provider_id=self.provider_id,
                tracking_number=tracking_number,
                status=TrackingStatus.UNKNOWN,
            )
        shipment = shipments[0]

        events = []
        for event in shipment.get("events") or []:
            service_area = (event.get("serviceArea") or [{}])[0]
            timestamp = None
            if event.get("date"):
                timestamp = parse_datetime(f"{event['date']}T{event.get('time') or '00:00:00'}")
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=self.map_status(event.get("typeCode"), event.get("description")),
                description=event.get("description", ""),
                location=service_area.get("description"),
                code=event.get("typeCode"),
            ))

        # Checkpoints are oldest first
        latest = (shipment.get("events") or [{}])[-1]
        status = self.map_status(latest.get("typeCode"), latest.get("description") or shipment.get("description"))

        return TrackingResponse(
            provider_id=self.provider_id,
            tracking_number=tracking_number,
            status=status,
            status_description=latest.get("description") or shipment.get("description"),
            estimated_delivery_date=parse_datetime(shipment.get("estimatedDeliveryDate")),
            delivered_at=events[-1].timestamp if events and status == TrackingStatus.DELIVERED else None,
            signed_by=latest.get("signedBy"),
            events=events,
        )

    # ==================== Address Validation ====================

    async def validate_address(self, address: Address) -> AddressValidationResult:
        params = {
            "type": "delivery",
            "countryCode": address.country,
            "postalCode": address.postal_code,
            "cityName": address.city,
        }
        try:
            data = await self._request("GET", "/address-validate", params=params)
        except UpstreamError as e:
            if e.status_code in (400, 404):
                return AddressValidationResult(is_valid=False, errors=[e.message])
            raise

        matches = data.get("address") or []
        if not matches:
            return AddressValidationResult(is_valid=False, errors=["DHL could not match the address"])

        match = matches[0]
        normalized = Address(
            name=address.name,
            company=address.company,
            street1=address.street1,
            street2=address.street2,
            city=match.get("cityName") or address.city,
            state=address.state,
            postal_code=match.get("postalCode") or address.postal_code,
            country=match.get("countryCode") or address.country,
            phone=address.phone,
            email=address.email,
            is_residential=address.is_residential,
        )
        suggestions = [
            Address(
                name=address.name,
                street1=address.street1,
                city=m.get("cityName") or address.city,
                postal_code=m.get("postalCode") or address.postal_code,
                country=m.get("countryCode") or address.country,
            )
            for m in matches[1:]
        ]

        return AddressValidationResult(
            is_valid=True,
            normalized_address=normalized,
            suggestions=suggestions,
            errors=[w for w in data.get("warnings") or [] if isinstance(w, str)],
        )

    # ==================== Pickups / Services ====================

    async def schedule_pickup(self, request: PickupRequest) -> PickupResponse:
        phone = self.require_phone(request.address, "Pickup")
        data = await self._request(
            "POST",
            "/pickups",
            json={
                "plannedPickupDateAndTime": f"{request.pickup_date.isoformat()}T{request.ready_time}:00GMT+00:00",
                "closeTime": request.close_time,
                "location": "reception",
                "remark": request.instructions,
                "accounts": [{"typeCode": "shipper", "number": self.account_number}],
                "customerDetails": {"shipperDetails": self._party(request.address, phone)},
                "shipmentDetails": [
                    {
                        "productCode": "P",
                        "isCustomsDeclarable": False,
                        "unitOfMeasurement": "metric",
                        "packages": [
                            {"weight": round(request.total_weight / max(request.package_count, 1), 3)}
                            for _ in range(max(request.package_count, 1))
                        ],
                    }
                ],
            },
        )

        confirmations = data.get("dispatchConfirmationNumbers") or []
        if not confirmations:
            raise UpstreamError("DHL did not confirm the pickup", provider=self.provider_id)

        return PickupResponse(
            provider_id=self.provider_id,
            confirmation_number=confirmations[0],
            pickup_date=request.pickup_date,
            ready_time=data.get("readyByTime") or request.ready_time,
            close_time=request.close_time,
            metadata={"warnings": data.get("warnings") or []},
        )

    async def cancel_pickup(self, confirmation_number: str) -> OperationResult:
        await self._request(
            "DELETE",
            f"/pickups/{confirmation_number}",
            params={"requestorName": "integration-engine", "reason": "not needed"},
        )
        return OperationResult(success=True, message="Pickup cancelled")

    async def get_available_services(self, from_address: Address, to_address: Address) -> List[ServiceOption]:
        data = await self._request(
            "GET",
            "/products",
            params=self._rate_params(from_address, to_address, [], None),
        )
        return [
            ServiceOption(
                code=product.get("productCode", ""),
                name=product.get("productName") or product.get("productCode", ""),
                description=product.get("localProductName"),
            )
            for product in data.get("products") or []
            if product.get("productCode")
        ]

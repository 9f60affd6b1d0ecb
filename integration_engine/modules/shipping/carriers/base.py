"""
Base Courier Interface v1.0.0

All couriers implement this interface. Requests and responses are
vendor-neutral: weights in kg, dimensions in cm, structured addresses.
Each courier provides its own:
  - Rate quotes
  - Shipment creation and labels
  - Tracking with status mapping
  - Cancellation
  - Address validation
Pickups and service listings are optional.
"""
import logging
import re
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from integration_engine.core.config import settings
from integration_engine.core.exceptions import NotSupportedError, ValidationError
from integration_engine.modules.provider import BaseProvider, OperationResult

logger = logging.getLogger(__name__)

KG_TO_LB = 2.20462
CM_TO_IN = 0.393701

MIN_PHONE_DIGITS = 7


# =============================================================================
# Courier-Agnostic Data Classes
# =============================================================================

class TrackingStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    PRE_TRANSIT = "PRE_TRANSIT"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    FAILED_ATTEMPT = "FAILED_ATTEMPT"
    EXCEPTION = "EXCEPTION"
    RETURN_TO_SENDER = "RETURN_TO_SENDER"
    CANCELLED = "CANCELLED"


@dataclass
class Address:
    name: str
    street1: str
    city: str
    postal_code: str
    country: str
    company: Optional[str] = None
    street2: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    is_residential: bool = True


@dataclass
class PackageDimensions:
    """Package measurements in metric units."""
    weight: float  # kg
    length: float = 0.0  # cm
    width: float = 0.0  # cm
    height: float = 0.0  # cm


@dataclass
class RateRequest:
    from_address: Address
    to_address: Address
    packages: List[PackageDimensions]
    ship_date: Optional[date] = None
    service: Optional[str] = None
    is_return: bool = False


@dataclass
class RateResponse:
    provider_id: str
    provider_name: str
    service_code: str
    service_name: str
    rate: Decimal
    currency: str
    estimated_days: Optional[int] = None
    estimated_delivery_date: Optional[datetime] = None
    guaranteed_delivery: bool = False
    saturday_delivery: bool = False
    signature_required: bool = False
    tracking_included: bool = True
    insurance_included: bool = False
    max_insurance_value: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CustomsItem:
    description: str
    quantity: int
    value: Decimal
    weight: float  # kg
    hs_code: Optional[str] = None
    origin_country: Optional[str] = None


@dataclass
class CustomsInfo:
    contents_type: str  # MERCHANDISE, GIFT, DOCUMENTS, SAMPLE, RETURN
    items: List[CustomsItem]
    invoice_number: Optional[str] = None
    currency: str = "GBP"


@dataclass
class ShipmentRequest:
    order_id: str
    from_address: Address
    to_address: Address
    packages: List[PackageDimensions]
    service_code: str
    ship_date: Optional[date] = None
    reference1: Optional[str] = None
    reference2: Optional[str] = None
    signature_required: bool = False
    saturday_delivery: bool = False
    insurance: Optional[Decimal] = None
    customs_info: Optional[CustomsInfo] = None
    label_format: str = "PDF"  # PDF, PNG, ZPL
    idempotency_key: Optional[str] = None


@dataclass
class LabelData:
    format: str
    data: Optional[str] = None  # base64
    url: Optional[str] = None
    package_index: int = 0


@dataclass
class ShipmentResponse:
    provider_id: str
    shipment_id: str
    tracking_number: str
    service_code: str
    labels: List[LabelData] = field(default_factory=list)
    tracking_url: Optional[str] = None
    rate: Optional[Decimal] = None
    currency: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TrackingEvent:
    timestamp: Optional[datetime]
    status: TrackingStatus
    description: str
    location: Optional[str] = None
    code: Optional[str] = None


@dataclass
class TrackingResponse:
    provider_id: str
    tracking_number: str
    status: TrackingStatus
    status_description: Optional[str] = None
    estimated_delivery_date: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AddressValidationResult:
    is_valid: bool
    normalized_address: Optional[Address] = None
    suggestions: List[Address] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    is_residential: Optional[bool] = None


@dataclass
class PickupRequest:
    address: Address
    pickup_date: date
    ready_time: str  # HH:MM
    close_time: str  # HH:MM
    package_count: int
    total_weight: float  # kg
    instructions: Optional[str] = None


@dataclass
class PickupResponse:
    provider_id: str
    confirmation_number: str
    pickup_date: date
    ready_time: Optional[str] = None
    close_time: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServiceOption:
    code: str
    name: str
    description: Optional[str] = None


# =============================================================================
# Unit conversion
# =============================================================================

def convert_weight(kg: float) -> float:
    """kg -> lb, two decimal places."""
    return round(kg * KG_TO_LB, 2)


def convert_dimensions(cm: float) -> float:
    """cm -> in, two decimal places."""
    return round(cm * CM_TO_IN, 2)


def total_weight(packages: Sequence[PackageDimensions]) -> float:
    return round(sum(p.weight for p in packages), 3)


def to_money(value: Any) -> Optional[Decimal]:
    """Vendor amount (str, int or float) as a 2dp Decimal; None when unparseable."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse vendor ISO-8601 timestamps and dates; None when unparseable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparseable timestamp from courier: {value!r}")
        return None


# =============================================================================
# Base Courier Interface
# =============================================================================

class BaseCourierProvider(BaseProvider):
    """
    Abstract base class for all courier adapters.

    Subclasses declare STATUS_CODES (exact vendor codes) and
    STATUS_KEYWORDS (ordered substrings matched against codes and
    descriptions) for tracking status normalization.
    """

    OPTIONAL_OPERATIONS = ("schedule_pickup", "cancel_pickup", "get_available_services")

    STATUS_CODES: Dict[str, TrackingStatus] = {}
    STATUS_KEYWORDS: Tuple[Tuple[str, TrackingStatus], ...] = ()

    @abstractmethod
    async def get_rates(self, request: RateRequest) -> List[RateResponse]:
        pass

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResponse:
        pass

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> TrackingResponse:
        pass

    @abstractmethod
    async def cancel_shipment(self, shipment_id: str) -> OperationResult:
        pass

    @abstractmethod
    async def validate_address(self, address: Address) -> AddressValidationResult:
        pass

    async def schedule_pickup(self, request: PickupRequest) -> PickupResponse:
        raise NotSupportedError(self.provider_id, "schedule_pickup")

    async def cancel_pickup(self, confirmation_number: str) -> OperationResult:
        raise NotSupportedError(self.provider_id, "cancel_pickup")

    async def get_available_services(self, from_address: Address, to_address: Address) -> List[ServiceOption]:
        raise NotSupportedError(self.provider_id, "get_available_services")

    def supports(self, operation: str) -> bool:
        """Whether this courier overrides the named optional operation."""
        if operation not in self.OPTIONAL_OPERATIONS:
            return hasattr(self, operation)
        return getattr(type(self), operation) is not getattr(BaseCourierProvider, operation)

    # ==================== Status Mapping ====================

    def map_status(self, code: Optional[str], description: Optional[str] = None) -> TrackingStatus:
        """
        Map vendor tracking vocabulary to TrackingStatus.

        Exact code match first, then keyword substrings against the code
        and the description. Unrecognised values fall back to
        TRACKING_UNMAPPED_STATUS with a warning.
        """
        code_upper = (code or "").upper().strip()
        description_upper = (description or "").upper().strip()

        if not code_upper and not description_upper:
            return TrackingStatus.UNKNOWN

        if code_upper in self.STATUS_CODES:
            return self.STATUS_CODES[code_upper]

        for text in (code_upper, description_upper):
            if not text:
                continue
            for keyword, status in self.STATUS_KEYWORDS:
                if keyword in text:
                    return status

        fallback = TrackingStatus(settings.TRACKING_UNMAPPED_STATUS)
        logger.warning(
            f"Unknown {self.provider_name} status: code={code!r} description={description!r}, "
            f"defaulting to {fallback.value}"
        )
        return fallback

    # ==================== Validation ====================

    @staticmethod
    def require_phone(address: Address, party: str) -> str:
        """
        Return the address phone or raise ValidationError naming the party.

        A usable phone has at least MIN_PHONE_DIGITS digits.
        """
        if not address.phone or not address.phone.strip():
            raise ValidationError(
                f"{party} phone number is required to create a shipment",
                field=f"{party.lower()}.phone",
            )
        digits = re.sub(r"\D", "", address.phone)
        if len(digits) < MIN_PHONE_DIGITS:
            raise ValidationError(
                f"{party} phone number '{address.phone}' is not usable: "
                f"expected at least {MIN_PHONE_DIGITS} digits",
                field=f"{party.lower()}.phone",
            )
        return address.phone.strip()

    @staticmethod
    def require_packages(packages: Sequence[PackageDimensions]) -> None:
        if not packages:
            raise ValidationError("At least one package is required", field="packages")
        for index, package in enumerate(packages):
            if package.weight <= 0:
                raise ValidationError(
                    f"Package {index + 1} weight must be greater than zero",
                    field=f"packages[{index}].weight",
                )

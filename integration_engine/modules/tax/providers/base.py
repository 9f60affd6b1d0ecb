"""
Base Tax Provider Interface v1.0.0

All tax services implement this interface. Amounts are Decimal in the
transaction currency; rates are Decimal fractions (0.20 == 20%).
"""
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from integration_engine.core.exceptions import NotSupportedError
from integration_engine.modules.provider import BaseProvider, OperationResult

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
DEFAULT_TAX_CODE = "P0000000"  # General merchandise


class TransactionType(str, Enum):
    SALE = "SALE"
    RETURN = "RETURN"
    ESTIMATE = "ESTIMATE"


class TaxDocumentStatus(str, Enum):
    TEMPORARY = "TEMPORARY"
    SAVED = "SAVED"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"


class JurisdictionType(str, Enum):
    COUNTRY = "COUNTRY"
    STATE = "STATE"
    COUNTY = "COUNTY"
    CITY = "CITY"
    DISTRICT = "DISTRICT"


@dataclass
class TaxAddress:
    street1: str
    city: str
    postal_code: str
    country: str  # ISO 3166-1 alpha-2
    street2: Optional[str] = None
    state: Optional[str] = None


@dataclass
class TaxLineItem:
    id: str
    description: str
    quantity: int
    unit_price: Decimal
    amount: Decimal  # quantity * unit_price
    product_id: Optional[str] = None
    sku: Optional[str] = None
    tax_code: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    is_tax_included: bool = False


@dataclass
class TaxDiscount:
    type: str  # FIXED or PERCENTAGE
    amount: Decimal


@dataclass
class TaxCalculationRequest:
    transaction_id: str
    transaction_type: TransactionType
    transaction_date: date
    currency_code: str
    from_address: TaxAddress
    to_address: TaxAddress
    line_items: List[TaxLineItem]
    customer_code: Optional[str] = None
    discount: Optional[TaxDiscount] = None
    shipping_amount: Optional[Decimal] = None
    shipping_tax_code: Optional[str] = None
    exemption_number: Optional[str] = None
    is_commit: bool = False


@dataclass
class TaxJurisdictionDetail:
    jurisdiction_type: JurisdictionType
    jurisdiction_name: str
    tax_type: str
    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    jurisdiction_code: Optional[str] = None


@dataclass
class TaxLineItemResult:
    line_item_id: str
    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    exempt_amount: Decimal = ZERO
    details: List[TaxJurisdictionDetail] = field(default_factory=list)


@dataclass
class TaxSummary:
    tax_type: str
    jurisdiction_name: str
    taxable_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal


@dataclass
class TaxCalculationResponse:
    transaction_id: str
    status: TaxDocumentStatus
    transaction_date: date
    total_amount: Decimal
    total_taxable_amount: Decimal
    total_tax_amount: Decimal
    total_exempt_amount: Decimal
    currency_code: str
    document_code: Optional[str] = None
    line_items: List[TaxLineItemResult] = field(default_factory=list)
    summary: List[TaxSummary] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaxJurisdiction:
    code: Optional[str]
    name: Optional[str]
    type: Optional[str]


@dataclass
class TaxAddressValidationResult:
    is_valid: bool
    normalized_address: Optional[TaxAddress] = None
    tax_jurisdictions: List[TaxJurisdiction] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)


@dataclass
class ExemptionCertificate:
    id: str
    customer_id: str
    certificate_number: str
    exemption_reason: str
    region: str
    country: str
    valid_from: Optional[date]
    status: str  # ACTIVE, EXPIRED, REVOKED
    customer_name: Optional[str] = None
    valid_to: Optional[date] = None
    document_url: Optional[str] = None


@dataclass
class TaxCode:
    code: str
    description: str


@dataclass
class NexusLocation:
    country: str
    region: Optional[str]
    has_nexus: bool


# =============================================================================
# Helpers
# =============================================================================

def format_date(value: Union[date, datetime, None]) -> str:
    """ISO date (YYYY-MM-DD); today when value is None."""
    if value is None:
        value = date.today()
    if isinstance(value, datetime):
        value = value.date()
    return value.isoformat()


def round_tax(value: Any) -> Decimal:
    """Round to two decimal places, half up."""
    return to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """Vendor number as Decimal; missing or unparseable values become zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def line_items_total(items: List[TaxLineItem]) -> Decimal:
    return sum((to_decimal(item.amount) for item in items), Decimal("0"))


def zero_tax_response(request: TaxCalculationRequest) -> TaxCalculationResponse:
    """Deterministic no-tax result used when no provider can answer."""
    total = round_tax(line_items_total(request.line_items))
    return TaxCalculationResponse(
        transaction_id=request.transaction_id,
        status=TaxDocumentStatus.TEMPORARY,
        transaction_date=request.transaction_date,
        total_amount=total,
        total_taxable_amount=ZERO,
        total_tax_amount=ZERO,
        total_exempt_amount=ZERO,
        currency_code=request.currency_code,
    )


# =============================================================================
# Base Tax Provider Interface
# =============================================================================

class BaseTaxProvider(BaseProvider):
    """Abstract base class for all tax calculation adapters."""

    OPTIONAL_OPERATIONS = ("get_tax_codes", "get_nexus_locations", "get_exemption_certificates")

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    async def calculate_tax(self, request: TaxCalculationRequest) -> TaxCalculationResponse:
        pass

    @abstractmethod
    async def commit_transaction(self, transaction_id: str) -> OperationResult:
        pass

    @abstractmethod
    async def void_transaction(self, transaction_id: str) -> OperationResult:
        pass

    @abstractmethod
    async def refund_transaction(
        self,
        original_transaction_id: str,
        refund_transaction_id: str,
        items: List[TaxLineItem],
    ) -> TaxCalculationResponse:
        pass

    @abstractmethod
    async def validate_address(self, address: TaxAddress) -> TaxAddressValidationResult:
        pass

    async def get_tax_codes(self) -> List[TaxCode]:
        raise NotSupportedError(self.provider_id, "get_tax_codes")

    async def get_nexus_locations(self) -> List[NexusLocation]:
        raise NotSupportedError(self.provider_id, "get_nexus_locations")

    async def get_exemption_certificates(self, customer_id: str) -> List[ExemptionCertificate]:
        raise NotSupportedError(self.provider_id, "get_exemption_certificates")

    def supports(self, operation: str) -> bool:
        """Whether this provider overrides the named optional operation."""
        if operation not in self.OPTIONAL_OPERATIONS:
            return hasattr(self, operation)
        return getattr(type(self), operation) is not getattr(BaseTaxProvider, operation)

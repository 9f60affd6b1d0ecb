"""
TaxJar Implementation v1.0.0

- TaxJar REST v2 with a bearer API token
- /taxes calculations are not stored; orders are recorded with
  create_order_transaction
- Registered via @register_tax_provider decorator
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from integration_engine.core.exceptions import UpstreamError
from integration_engine.modules.provider import OperationResult, TestConnectionResult
from integration_engine.modules.tax.providers import register_tax_provider
from integration_engine.modules.tax.providers.base import (
    BaseTaxProvider,
    JurisdictionType,
    NexusLocation,
    TaxAddress,
    TaxAddressValidationResult,
    TaxCalculationRequest,
    TaxCalculationResponse,
    TaxCode,
    TaxDocumentStatus,
    TaxJurisdictionDetail,
    TaxLineItem,
    TaxLineItemResult,
    TaxSummary,
    format_date,
    line_items_total,
    round_tax,
    to_decimal,
)

logger = logging.getLogger(__name__)

TAXJAR_PRODUCTION_URL = "https://api.taxjar.com/v2"
TAXJAR_SANDBOX_URL = "https://api.sandbox.taxjar.com/v2"

# (summary tax type, breakdown prefix, collectable key)
SUMMARY_LEVELS = (
    ("STATE_TAX", "state", "state_tax_collectable"),
    ("COUNTY_TAX", "county", "county_tax_collectable"),
    ("CITY_TAX", "city", "city_tax_collectable"),
    ("SPECIAL_TAX", "special", "special_district_tax_collectable"),
)

# (jurisdiction, line prefix, rate key)
LINE_LEVELS = (
    (JurisdictionType.STATE, "state", "state_sales_tax_rate"),
    (JurisdictionType.COUNTY, "county", "county_tax_rate"),
    (JurisdictionType.CITY, "city", "city_tax_rate"),
    (JurisdictionType.DISTRICT, "special", "special_tax_rate"),
)


@register_tax_provider("taxjar")
class TaxJarProvider(BaseTaxProvider):
    """TaxJar REST v2 adapter."""

    provider_id = "taxjar"
    provider_name = "TaxJar"
    required_credentials = ("apiToken",)

    @property
    def base_url(self) -> str:
        return TAXJAR_SANDBOX_URL if self.is_test_mode else TAXJAR_PRODUCTION_URL

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.credential('apiToken')}"}

    async def _ping(self) -> TestConnectionResult:
        environment = "sandbox" if self.is_test_mode else "production"
        response = await self._request("GET", "/categories")

        categories = response.get("categories")
        if categories is None:
            return TestConnectionResult(success=False, message="Unexpected response from TaxJar")
        return TestConnectionResult(
            success=True,
            message=f"TaxJar {environment} connection successful",
            details={"environment": environment, "categories_available": len(categories)},
        )

    # ==================== Calculation ====================

    @staticmethod
    def _address_fields(request: TaxCalculationRequest) -> Dict[str, Any]:
        origin, destination = request.from_address, request.to_address
        return {
            "from_country": origin.country,
            "from_zip": origin.postal_code,
            "from_state": origin.state,
            "from_city": origin.city,
            "from_street": origin.street1,
            "to_country": destination.country,
            "to_zip": destination.postal_code,
            "to_state": destination.state,
            "to_city": destination.city,
            "to_street": destination.street1,
        }

    def _tax_payload(self, request: TaxCalculationRequest) -> Dict[str, Any]:
        payload = self._address_fields(request)
        payload.update({
            "amount": float(line_items_total(request.line_items)),
            "shipping": float(request.shipping_amount or 0),
            "line_items": [
                {
                    "id": item.id,
                    "quantity": item.quantity,
                    "product_tax_code": item.tax_code,
                    "unit_price": float(item.unit_price),
                    "discount": float(item.discount_amount or 0),
                }
                for item in request.line_items
            ],
        })
        if request.exemption_number:
            payload["exemption_type"] = "wholesale"
        return payload

    @staticmethod
    def _line_details(line: Dict[str, Any]) -> List[TaxJurisdictionDetail]:
        details = []
        for jurisdiction, prefix, rate_key in LINE_LEVELS:
            taxable = to_decimal(line.get(f"{prefix}_taxable_amount"))
            if taxable <= 0:
                continue
            rate = to_decimal(line.get(rate_key))
            details.append(TaxJurisdictionDetail(
                jurisdiction_type=jurisdiction,
                jurisdiction_name=line.get(prefix) or "",
                tax_type="SALES_TAX",
                taxable_amount=taxable,
                tax_amount=round_tax(rate * taxable),
                tax_rate=rate,
            ))
        return details

    def _parse_tax(self, request: TaxCalculationRequest, tax: Dict[str, Any]) -> TaxCalculationResponse:
        breakdown = tax.get("breakdown") or {}
        taxable_total = to_decimal(tax.get("taxable_amount"))
        overall_rate = to_decimal(tax.get("rate"))

        line_items = [
            TaxLineItemResult(
                line_item_id=str(line.get("id")),
                taxable_amount=to_decimal(line.get("taxable_amount")),
                tax_amount=to_decimal(line.get("tax_collectable")),
                tax_rate=to_decimal(line.get("combined_tax_rate")),
                details=self._line_details(line),
            )
            for line in breakdown.get("line_items") or []
        ]

        # No line breakdown: spread the overall rate across the request lines
        if not line_items:
            line_items = [
                TaxLineItemResult(
                    line_item_id=item.id,
                    taxable_amount=to_decimal(item.amount),
                    tax_amount=round_tax(to_decimal(item.amount) * overall_rate),
                    tax_rate=overall_rate,
                )
                for item in request.line_items
            ]

        fallback_names = {"state": request.to_address.state or "", "city": request.to_address.city}
        summary = []
        for tax_type, prefix, collectable_key in SUMMARY_LEVELS:
            collectable = to_decimal(breakdown.get(collectable_key))
            rate = to_decimal(breakdown.get(f"{prefix}_tax_rate"))
            if collectable <= 0 and not (prefix == "special" and rate > 0):
                continue
            summary.append(TaxSummary(
                tax_type=tax_type,
                jurisdiction_name=(
                    "Special Districts" if prefix == "special"
                    else breakdown.get(prefix) or fallback_names.get(prefix, "")
                ),
                taxable_amount=to_decimal(breakdown.get(f"{prefix}_taxable_amount")) or taxable_total,
                tax_amount=collectable,
                tax_rate=rate,
            ))

        amount_to_collect = to_decimal(tax.get("amount_to_collect"))
        total = line_items_total(request.line_items) + to_decimal(request.shipping_amount) + amount_to_collect

        return TaxCalculationResponse(
            transaction_id=request.transaction_id,
            status=TaxDocumentStatus.TEMPORARY,
            transaction_date=request.transaction_date,
            total_amount=round_tax(total),
            total_taxable_amount=round_tax(taxable_total),
            total_tax_amount=round_tax(amount_to_collect),
            total_exempt_amount=round_tax(tax.get("exempt_amount")),
            currency_code=request.currency_code,
            line_items=line_items,
            summary=summary,
            metadata={
                "rate": tax.get("rate"),
                "has_nexus": tax.get("has_nexus"),
                "freight_taxable": tax.get("freight_taxable"),
            },
        )

    async def calculate_tax(self, request: TaxCalculationRequest) -> TaxCalculationResponse:
        response = await self._request("POST", "/taxes", json=self._tax_payload(request))
        return self._parse_tax(request, response.get("tax") or {})

    # ==================== Transactions ====================

    async def commit_transaction(self, transaction_id: str) -> OperationResult:
        # /taxes results are not stored; orders are recorded via create_order_transaction
        return OperationResult(
            success=True,
            message="TaxJar transactions are committed via create_order_transaction. "
                    "Use refund_transaction for returns.",
        )

    async def void_transaction(self, transaction_id: str) -> OperationResult:
        try:
            await self._request("DELETE", f"/transactions/orders/{transaction_id}")
        except UpstreamError as e:
            return OperationResult(success=False, message=f"Failed to delete transaction: {e.message}")
        return OperationResult(success=True, message="Transaction deleted successfully")

    async def refund_transaction(
        self,
        original_transaction_id: str,
        refund_transaction_id: str,
        items: List[TaxLineItem],
    ) -> TaxCalculationResponse:
        total = line_items_total(items)
        payload = {
            "transaction_id": refund_transaction_id,
            "transaction_reference_id": original_transaction_id,
            "transaction_date": format_date(None),
            "amount": -abs(float(total)),
            "shipping": 0,
            "sales_tax": 0,
            "line_items": [
                {
                    "id": item.id,
                    "quantity": item.quantity,
                    "product_tax_code": item.tax_code,
                    "unit_price": -abs(float(item.unit_price)),
                    "discount": float(item.discount_amount or 0),
                }
                for item in items
            ],
        }

        response = await self._request("POST", "/transactions/refunds", json=payload)
        refund = response.get("refund") or {}

        return TaxCalculationResponse(
            transaction_id=refund_transaction_id,
            document_code=refund.get("transaction_id"),
            status=TaxDocumentStatus.COMMITTED,
            transaction_date=date.today(),
            total_amount=round_tax(refund.get("amount")),
            total_taxable_amount=round_tax(refund.get("amount")),
            total_tax_amount=round_tax(refund.get("sales_tax")),
            total_exempt_amount=Decimal("0.00"),
            currency_code="USD",
        )

    async def create_order_transaction(self, request: TaxCalculationRequest, tax_amount: Decimal) -> OperationResult:
        """Record a completed order with TaxJar for filing."""
        total = line_items_total(request.line_items)
        tax_amount = to_decimal(tax_amount)

        payload = self._address_fields(request)
        payload.update({
            "transaction_id": request.transaction_id,
            "transaction_date": format_date(request.transaction_date),
            "amount": float(total),
            "shipping": float(request.shipping_amount or 0),
            "sales_tax": float(tax_amount),
            "line_items": [
                {
                    "id": item.id,
                    "quantity": item.quantity,
                    "product_identifier": item.product_id or item.sku,
                    "description": item.description,
                    "product_tax_code": item.tax_code,
                    "unit_price": float(item.unit_price),
                    "discount": float(item.discount_amount or 0),
                    # Allocate order tax proportionally to line value
                    "sales_tax": float(round_tax(to_decimal(item.amount) * tax_amount / total)) if total else 0,
                }
                for item in request.line_items
            ],
        })

        try:
            response = await self._request("POST", "/transactions/orders", json=payload)
        except UpstreamError as e:
            logger.error(f"Failed to create TaxJar order: {e.message}")
            return OperationResult(success=False, message=e.message, details={"transaction_id": request.transaction_id})

        order = response.get("order") or {}
        return OperationResult(
            success=True,
            message="Order recorded",
            details={"transaction_id": order.get("transaction_id") or request.transaction_id},
        )

    # ==================== Addresses / Reference Data ====================

    async def validate_address(self, address: TaxAddress) -> TaxAddressValidationResult:
        try:
            response = await self._request(
                "POST",
                "/addresses/validate",
                json={
                    "country": address.country,
                    "state": address.state,
                    "zip": address.postal_code,
                    "city": address.city,
                    "street": address.street1,
                },
            )
        except UpstreamError as e:
            logger.warning(f"TaxJar address validation failed: {e.message}")
            return TaxAddressValidationResult(is_valid=True, normalized_address=address, messages=[e.message])

        validated = (response.get("addresses") or [None])[0]
        if not validated:
            return TaxAddressValidationResult(is_valid=False, normalized_address=address)

        return TaxAddressValidationResult(
            is_valid=True,
            normalized_address=TaxAddress(
                street1=validated.get("street") or address.street1,
                street2=address.street2,
                city=validated.get("city") or address.city,
                state=validated.get("state") or address.state,
                postal_code=validated.get("zip") or address.postal_code,
                country=validated.get("country") or address.country,
            ),
        )

    async def get_tax_codes(self) -> List[TaxCode]:
        try:
            response = await self._request("GET", "/categories")
        except UpstreamError as e:
            logger.warning(f"Failed to get tax categories: {e.message}")
            return []

        return [
            TaxCode(
                code=category.get("product_tax_code", ""),
                description=f"{category.get('name', '')}: {category.get('description', '')}",
            )
            for category in response.get("categories") or []
        ]

    async def get_nexus_locations(self) -> List[NexusLocation]:
        try:
            response = await self._request("GET", "/nexus/regions")
        except UpstreamError as e:
            logger.warning(f"Failed to get nexus regions: {e.message}")
            return []

        return [
            NexusLocation(country=region.get("country_code", ""), region=region.get("region_code"), has_nexus=True)
            for region in response.get("regions") or []
        ]

"""
Avalara AvaTax Implementation v1.0.0

- AvaTax REST v2 with basic auth (accountId / licenseKey)
- Transactions are created under the configured companyCode
- Registered via @register_tax_provider decorator
"""
import base64
import logging
from datetime import date
from typing import Any, Dict, List

from integration_engine.core.exceptions import UpstreamError
from integration_engine.modules.provider import OperationResult, TestConnectionResult
from integration_engine.modules.tax.providers import register_tax_provider
from integration_engine.modules.tax.providers.base import (
    DEFAULT_TAX_CODE,
    BaseTaxProvider,
    ExemptionCertificate,
    JurisdictionType,
    NexusLocation,
    TaxAddress,
    TaxAddressValidationResult,
    TaxCalculationRequest,
    TaxCalculationResponse,
    TaxCode,
    TaxDocumentStatus,
    TaxJurisdiction,
    TaxJurisdictionDetail,
    TaxLineItem,
    TaxLineItemResult,
    TaxSummary,
    TransactionType,
    format_date,
    round_tax,
    to_decimal,
)

logger = logging.getLogger(__name__)

AVALARA_PRODUCTION_URL = "https://rest.avatax.com/api/v2"
AVALARA_SANDBOX_URL = "https://sandbox-rest.avatax.com/api/v2"
AVALARA_CLIENT_HEADER = "IntegrationEngine;1.0;REST;v2"

DOCUMENT_TYPES = {
    TransactionType.SALE: "SalesInvoice",
    TransactionType.RETURN: "ReturnInvoice",
    TransactionType.ESTIMATE: "SalesOrder",
}

STATUS_MAP = {
    "temporary": TaxDocumentStatus.TEMPORARY,
    "saved": TaxDocumentStatus.SAVED,
    "committed": TaxDocumentStatus.COMMITTED,
    "cancelled": TaxDocumentStatus.CANCELLED,
    "adjusted": TaxDocumentStatus.COMMITTED,
    "posted": TaxDocumentStatus.COMMITTED,
}

JURISDICTION_MAP = {
    "COUNTRY": JurisdictionType.COUNTRY,
    "STATE": JurisdictionType.STATE,
    "COUNTY": JurisdictionType.COUNTY,
    "CITY": JurisdictionType.CITY,
    "SPECIAL": JurisdictionType.DISTRICT,
}


def map_document_status(status: Any) -> TaxDocumentStatus:
    return STATUS_MAP.get(str(status or "").lower(), TaxDocumentStatus.SAVED)


def map_jurisdiction_type(value: Any) -> JurisdictionType:
    return JURISDICTION_MAP.get(str(value or "").upper(), JurisdictionType.STATE)


@register_tax_provider("avalara")
class AvalaraProvider(BaseTaxProvider):
    """Avalara AvaTax REST v2 adapter."""

    provider_id = "avalara"
    provider_name = "Avalara AvaTax"
    required_credentials = ("accountId", "licenseKey", "companyCode")

    @property
    def base_url(self) -> str:
        return AVALARA_SANDBOX_URL if self.is_test_mode else AVALARA_PRODUCTION_URL

    @property
    def company_code(self) -> str:
        return self.credential("companyCode")

    async def _auth_headers(self) -> Dict[str, str]:
        raw = f"{self.credential('accountId')}:{self.credential('licenseKey')}"
        return {
            "Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}",
            "X-Avalara-Client": AVALARA_CLIENT_HEADER,
        }

    async def _ping(self) -> TestConnectionResult:
        environment = "sandbox" if self.is_test_mode else "production"
        response = await self._request("GET", "/utilities/ping")

        if response.get("authenticated") is True:
            return TestConnectionResult(
                success=True,
                message=f"Avalara {environment} connection successful",
                details={
                    "environment": environment,
                    "version": response.get("version"),
                    "authenticated_as": response.get("authenticatedUserName"),
                },
            )
        return TestConnectionResult(success=False, message="Authentication failed")

    # ==================== Calculation ====================

    @staticmethod
    def _address(address: TaxAddress, location_code: str) -> Dict[str, Any]:
        return {
            "locationCode": location_code,
            "line1": address.street1,
            "line2": address.street2,
            "city": address.city,
            "region": address.state,
            "postalCode": address.postal_code,
            "country": address.country,
        }

    def _transaction_payload(self, request: TaxCalculationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": DOCUMENT_TYPES.get(request.transaction_type, "SalesOrder"),
            "companyCode": self.company_code,
            "code": request.transaction_id,
            "date": format_date(request.transaction_date),
            "customerCode": request.customer_code or "GUEST",
            "currencyCode": request.currency_code,
            "commit": request.is_commit,
            "addresses": {
                "shipFrom": self._address(request.from_address, "shipFrom"),
                "shipTo": self._address(request.to_address, "shipTo"),
            },
            "lines": [
                {
                    "number": str(index + 1),
                    "itemCode": item.product_id or item.sku or item.id,
                    "description": item.description,
                    "quantity": item.quantity,
                    "amount": float(item.amount),
                    "taxCode": item.tax_code or DEFAULT_TAX_CODE,
                    "discounted": bool(item.discount_amount),
                    "taxIncluded": item.is_tax_included,
                    "ref1": item.id,
                }
                for index, item in enumerate(request.line_items)
            ],
        }

        if request.shipping_amount:
            payload["lines"].append({
                "number": str(len(request.line_items) + 1),
                "itemCode": "SHIPPING",
                "description": "Shipping",
                "quantity": 1,
                "amount": float(request.shipping_amount),
                "taxCode": request.shipping_tax_code or "FR020100",
                "ref1": "shipping",
            })
        if request.exemption_number:
            payload["exemptionNo"] = request.exemption_number
        if request.discount:
            payload["discount"] = float(request.discount.amount)

        return payload

    def _parse_transaction(self, response: Dict[str, Any]) -> TaxCalculationResponse:
        lines = []
        for line in response.get("lines") or []:
            taxable = to_decimal(line.get("taxableAmount"))
            tax = to_decimal(line.get("tax"))
            lines.append(TaxLineItemResult(
                line_item_id=str(line.get("ref1") or line.get("lineNumber") or ""),
                taxable_amount=taxable,
                tax_amount=tax,
                tax_rate=(tax / taxable) if taxable > 0 else to_decimal(0),
                exempt_amount=to_decimal(line.get("exemptAmount")),
                details=[
                    TaxJurisdictionDetail(
                        jurisdiction_type=map_jurisdiction_type(detail.get("jurisdictionType")),
                        jurisdiction_name=detail.get("jurisName") or "",
                        jurisdiction_code=detail.get("jurisCode"),
                        tax_type=detail.get("taxType") or "",
                        taxable_amount=to_decimal(detail.get("taxableAmount")),
                        tax_amount=to_decimal(detail.get("tax")),
                        tax_rate=to_decimal(detail.get("rate")),
                    )
                    for detail in line.get("details") or []
                ],
            ))

        summary = [
            TaxSummary(
                tax_type=s.get("taxType") or "",
                jurisdiction_name=s.get("jurisName") or "",
                taxable_amount=to_decimal(s.get("taxable")),
                tax_amount=to_decimal(s.get("tax")),
                tax_rate=to_decimal(s.get("rate")),
            )
            for s in response.get("summary") or []
        ]

        transaction_date = response.get("date")
        document_id = response.get("id")

        return TaxCalculationResponse(
            transaction_id=response.get("code") or "",
            document_code=str(document_id) if document_id is not None else None,
            status=map_document_status(response.get("status")),
            transaction_date=date.fromisoformat(transaction_date[:10]) if transaction_date else date.today(),
            total_amount=round_tax(response.get("totalAmount")),
            total_taxable_amount=round_tax(response.get("totalTaxable")),
            total_tax_amount=round_tax(response.get("totalTax")),
            total_exempt_amount=round_tax(response.get("totalExempt")),
            currency_code=response.get("currencyCode") or "USD",
            line_items=lines,
            summary=summary,
            metadata={
                "avalara_document_id": document_id,
                "locked": response.get("locked"),
                "region": response.get("region"),
                "country": response.get("country"),
            },
        )

    async def calculate_tax(self, request: TaxCalculationRequest) -> TaxCalculationResponse:
        response = await self._request(
            "POST",
            "/transactions/create",
            json=self._transaction_payload(request),
        )
        return self._parse_transaction(response)

    # ==================== Transactions ====================

    async def commit_transaction(self, transaction_id: str) -> OperationResult:
        try:
            await self._request(
                "POST",
                f"/companies/{self.company_code}/transactions/{transaction_id}/commit",
                json={"commit": True},
            )
        except UpstreamError as e:
            return OperationResult(success=False, message=f"Failed to commit transaction: {e.message}")
        return OperationResult(success=True, message="Transaction committed successfully")

    async def void_transaction(self, transaction_id: str) -> OperationResult:
        try:
            await self._request(
                "POST",
                f"/companies/{self.company_code}/transactions/{transaction_id}/void",
                json={"code": "DocVoided"},
            )
        except UpstreamError as e:
            return OperationResult(success=False, message=f"Failed to void transaction: {e.message}")
        return OperationResult(success=True, message="Transaction voided successfully")

    async def refund_transaction(
        self,
        original_transaction_id: str,
        refund_transaction_id: str,
        items: List[TaxLineItem],
    ) -> TaxCalculationResponse:
        payload = {
            "refundTransactionCode": refund_transaction_id,
            "refundDate": format_date(None),
            "refundType": "Partial",
            "refundLines": [str(index + 1) for index in range(len(items))],
            "referenceCode": original_transaction_id,
        }
        response = await self._request(
            "POST",
            f"/companies/{self.company_code}/transactions/{original_transaction_id}/refund",
            json=payload,
        )
        return self._parse_transaction(response)

    # ==================== Addresses / Reference Data ====================

    async def validate_address(self, address: TaxAddress) -> TaxAddressValidationResult:
        try:
            response = await self._request(
                "POST",
                "/addresses/resolve",
                json={
                    "line1": address.street1,
                    "line2": address.street2,
                    "city": address.city,
                    "region": address.state,
                    "postalCode": address.postal_code,
                    "country": address.country,
                },
            )
        except UpstreamError as e:
            logger.warning(f"Avalara address validation failed: {e.message}")
            return TaxAddressValidationResult(is_valid=True, normalized_address=address, messages=[e.message])

        validated = (response.get("validatedAddresses") or [None])[0]
        normalized = address
        if validated:
            normalized = TaxAddress(
                street1=validated.get("line1") or address.street1,
                street2=validated.get("line2") or address.street2,
                city=validated.get("city") or address.city,
                state=validated.get("region") or address.state,
                postal_code=validated.get("postalCode") or address.postal_code,
                country=validated.get("country") or address.country,
            )

        return TaxAddressValidationResult(
            is_valid=response.get("coordinates") is not None,
            normalized_address=normalized,
            tax_jurisdictions=[
                TaxJurisdiction(
                    code=authority.get("jurisdictionCode"),
                    name=authority.get("jurisdictionName"),
                    type=authority.get("jurisdictionType"),
                )
                for authority in response.get("taxAuthorities") or []
            ],
            messages=[m.get("summary", "") for m in response.get("messages") or []],
        )

    async def get_exemption_certificates(self, customer_id: str) -> List[ExemptionCertificate]:
        try:
            response = await self._request(
                "GET",
                f"/companies/{self.company_code}/customers/{customer_id}/certificates",
            )
        except UpstreamError as e:
            logger.warning(f"Failed to get exemption certificates: {e.message}")
            return []

        certificates = []
        for cert in response.get("value") or []:
            effective = cert.get("effectiveDate")
            expiration = cert.get("expirationDate")
            certificates.append(ExemptionCertificate(
                id=str(cert.get("id")),
                customer_id=customer_id,
                customer_name=cert.get("customerName"),
                certificate_number=cert.get("exemptionNumber") or "",
                exemption_reason=str(cert.get("exemptReasonId") or ""),
                region=cert.get("region") or "",
                country=cert.get("country") or "",
                valid_from=date.fromisoformat(effective[:10]) if effective else None,
                valid_to=date.fromisoformat(expiration[:10]) if expiration else None,
                status="ACTIVE" if cert.get("status") == "Active" else "EXPIRED",
                document_url=cert.get("pdfUrl"),
            ))
        return certificates

    async def get_tax_codes(self) -> List[TaxCode]:
        try:
            response = await self._request("GET", "/definitions/taxcodes", params={"$top": 100})
        except UpstreamError as e:
            logger.warning(f"Failed to get tax codes: {e.message}")
            return []

        return [
            TaxCode(code=tc.get("taxCode", ""), description=tc.get("description", ""))
            for tc in response.get("value") or []
        ]

    async def get_nexus_locations(self) -> List[NexusLocation]:
        try:
            response = await self._request("GET", f"/companies/{self.company_code}/nexus")
        except UpstreamError as e:
            logger.warning(f"Failed to get nexus locations: {e.message}")
            return []

        return [
            NexusLocation(
                country=nexus.get("country", ""),
                region=nexus.get("region"),
                has_nexus=bool(nexus.get("hasLocalNexus") or nexus.get("hasPhysicalNexus")),
            )
            for nexus in response.get("value") or []
        ]

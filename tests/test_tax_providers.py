"""
Tests for tax adapters against mocked vendor APIs.
"""
import base64
import json
from decimal import Decimal

import httpx
import pytest

from integration_engine.modules.tax.providers import get_registered_tax_providers, get_tax_provider_class
from integration_engine.modules.tax.providers.avalara import AvalaraProvider, map_document_status
from integration_engine.modules.tax.providers.base import (
    JurisdictionType,
    TaxDocumentStatus,
    TaxLineItem,
    zero_tax_response,
)
from integration_engine.modules.tax.providers.taxjar import TaxJarProvider


def test_registry():
    assert {"avalara", "taxjar"} <= set(get_registered_tax_providers())
    assert get_tax_provider_class("taxjar") is TaxJarProvider
    assert get_tax_provider_class("vertex") is None


def test_zero_tax_response(tax_request):
    response = zero_tax_response(tax_request)

    assert response.total_tax_amount == Decimal("0.00")
    assert response.total_amount == Decimal("80.00")
    assert response.status == TaxDocumentStatus.TEMPORARY
    assert response.transaction_id == "order-2001"


class TestAvalara:

    @pytest.mark.asyncio
    async def test_calculate_tax(self, avalara_credentials, tax_request):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "id": 987654,
                "code": "order-2001",
                "status": "Temporary",
                "date": "2025-03-14",
                "totalAmount": 90.0,
                "totalTaxable": 90.0,
                "totalTax": 7.99,
                "totalExempt": 0,
                "currencyCode": "USD",
                "lines": [
                    {"ref1": "line-1", "taxableAmount": 50.0, "tax": 4.44,
                     "details": [{"jurisdictionType": "State", "jurisName": "NEW YORK", "taxType": "Sales",
                                  "taxableAmount": 50.0, "tax": 2.0, "rate": 0.04}]},
                    {"ref1": "line-2", "taxableAmount": 30.0, "tax": 2.66, "details": []},
                    {"ref1": "shipping", "taxableAmount": 10.0, "tax": 0.89, "details": []},
                ],
                "summary": [
                    {"taxType": "Sales", "jurisName": "NEW YORK", "taxable": 90.0, "tax": 3.6, "rate": 0.04},
                    {"taxType": "Sales", "jurisName": "NEW YORK CITY", "taxable": 90.0, "tax": 4.39, "rate": 0.04875},
                ],
            })

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        response = await provider.calculate_tax(tax_request)

        assert seen["path"] == "/api/v2/transactions/create"
        expected = base64.b64encode(b"2000123456:ABCDEF0123456789").decode()
        assert seen["auth"] == f"Basic {expected}"
        body = seen["body"]
        assert body["type"] == "SalesInvoice"
        assert body["companyCode"] == "DEFAULT"
        assert body["customerCode"] == "GUEST"
        assert [line["ref1"] for line in body["lines"]] == ["line-1", "line-2", "shipping"]

        assert response.total_tax_amount == Decimal("7.99")
        assert response.status == TaxDocumentStatus.TEMPORARY
        assert response.document_code == "987654"
        assert [line.line_item_id for line in response.line_items] == ["line-1", "line-2", "shipping"]
        assert response.line_items[0].details[0].jurisdiction_type == JurisdictionType.STATE
        assert response.line_items[1].tax_rate == Decimal("2.66") / Decimal("30.0")
        assert len(response.summary) == 2

    def test_document_status_mapping(self):
        assert map_document_status("Committed") == TaxDocumentStatus.COMMITTED
        assert map_document_status("Adjusted") == TaxDocumentStatus.COMMITTED
        assert map_document_status(None) == TaxDocumentStatus.SAVED

    @pytest.mark.asyncio
    async def test_ping(self, avalara_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v2/utilities/ping"
            return httpx.Response(200, json={"authenticated": True, "version": "24.1", "authenticatedUserName": "api"})

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        result = await provider.test_connection()

        assert result.success is True
        assert result.details["environment"] == "sandbox"

    @pytest.mark.asyncio
    async def test_ping_unauthenticated(self, avalara_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"authenticated": False})

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        result = await provider.test_connection()

        assert result.success is False

    @pytest.mark.asyncio
    async def test_void_failure_reported(self, avalara_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"message": "Document already committed"}})

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        result = await provider.void_transaction("order-2001")

        assert result.success is False
        assert "Document already committed" in result.message

    @pytest.mark.asyncio
    async def test_commit(self, avalara_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v2/companies/DEFAULT/transactions/order-2001/commit"
            return httpx.Response(200, json={"status": "Committed"})

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        result = await provider.commit_transaction("order-2001")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_address_validation_error_accepts_address(self, avalara_credentials, tax_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "unavailable"})

        provider = AvalaraProvider(avalara_credentials, transport=httpx.MockTransport(handler))
        result = await provider.validate_address(tax_request.to_address)

        assert result.is_valid is True
        assert result.normalized_address == tax_request.to_address


class TestTaxJar:

    @pytest.mark.asyncio
    async def test_calculate_tax_with_breakdown(self, taxjar_credentials, tax_request):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "tax": {
                    "amount_to_collect": 7.1,
                    "taxable_amount": 80.0,
                    "rate": 0.08875,
                    "has_nexus": True,
                    "freight_taxable": False,
                    "breakdown": {
                        "state_tax_collectable": 3.2,
                        "state_tax_rate": 0.04,
                        "state_taxable_amount": 80.0,
                        "county_tax_collectable": 0,
                        "city_tax_collectable": 3.6,
                        "city_tax_rate": 0.045,
                        "city_taxable_amount": 80.0,
                        "special_district_tax_collectable": 0.3,
                        "special_tax_rate": 0.00375,
                        "special_district_taxable_amount": 80.0,
                        "line_items": [
                            {"id": "line-1", "taxable_amount": 50.0, "tax_collectable": 4.44,
                             "combined_tax_rate": 0.08875, "state_taxable_amount": 50.0,
                             "state_sales_tax_rate": 0.04, "state": "NY"},
                            {"id": "line-2", "taxable_amount": 30.0, "tax_collectable": 2.66,
                             "combined_tax_rate": 0.08875},
                        ],
                    },
                }
            })

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        response = await provider.calculate_tax(tax_request)

        assert seen["path"] == "/v2/taxes"
        assert seen["auth"] == "Bearer taxjar-token-9f8e7d6c"
        assert seen["body"]["to_zip"] == "10118"
        assert seen["body"]["amount"] == 80.0
        assert seen["body"]["shipping"] == 10.0

        assert response.total_tax_amount == Decimal("7.10")
        assert response.total_amount == Decimal("97.10")
        assert response.status == TaxDocumentStatus.TEMPORARY
        assert [line.line_item_id for line in response.line_items] == ["line-1", "line-2"]
        assert response.line_items[0].details[0].tax_amount == Decimal("2.00")
        assert response.line_items[1].details == []
        assert [s.tax_type for s in response.summary] == ["STATE_TAX", "CITY_TAX", "SPECIAL_TAX"]
        assert response.summary[0].jurisdiction_name == "NY"
        assert response.summary[2].jurisdiction_name == "Special Districts"

    @pytest.mark.asyncio
    async def test_calculate_tax_without_breakdown(self, taxjar_credentials, tax_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"tax": {"amount_to_collect": 8.0, "taxable_amount": 80.0, "rate": 0.1}})

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        response = await provider.calculate_tax(tax_request)

        assert [line.tax_amount for line in response.line_items] == [Decimal("5.00"), Decimal("3.00")]
        assert response.summary == []

    @pytest.mark.asyncio
    async def test_commit_is_noop(self, taxjar_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no HTTP call expected")

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        result = await provider.commit_transaction("order-2001")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_void_error_reports_failure(self, taxjar_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert request.url.path == "/v2/transactions/orders/order-2001"
            return httpx.Response(404, json={"error": "Not Found", "detail": "Resource not found"})

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        result = await provider.void_transaction("order-2001")

        assert result.success is False

    @pytest.mark.asyncio
    async def test_refund_uses_negative_amounts(self, taxjar_credentials):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "refund": {"transaction_id": "refund-1", "amount": -25.0, "sales_tax": -2.22},
            })

        items = [TaxLineItem(id="line-1", description="Comic", quantity=1,
                             unit_price=Decimal("25.00"), amount=Decimal("25.00"))]
        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        response = await provider.refund_transaction("order-2001", "refund-1", items)

        assert seen["body"]["amount"] == -25.0
        assert seen["body"]["transaction_reference_id"] == "order-2001"
        assert seen["body"]["line_items"][0]["unit_price"] == -25.0
        assert response.status == TaxDocumentStatus.COMMITTED
        assert response.total_tax_amount == Decimal("-2.22")

    @pytest.mark.asyncio
    async def test_create_order_allocates_tax(self, taxjar_credentials, tax_request):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"order": {"transaction_id": "order-2001"}})

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))
        result = await provider.create_order_transaction(tax_request, Decimal("8.00"))

        assert result.success is True
        assert [line["sales_tax"] for line in seen["body"]["line_items"]] == [5.0, 3.0]
        assert seen["body"]["sales_tax"] == 8.0

    @pytest.mark.asyncio
    async def test_nexus_and_tax_codes(self, taxjar_credentials):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v2/nexus/regions":
                return httpx.Response(200, json={"regions": [{"country_code": "US", "region_code": "NY"}]})
            return httpx.Response(200, json={"categories": [
                {"name": "Books", "product_tax_code": "81100", "description": "Printed books"},
            ]})

        provider = TaxJarProvider(taxjar_credentials, transport=httpx.MockTransport(handler))

        nexus = await provider.get_nexus_locations()
        codes = await provider.get_tax_codes()

        assert nexus[0].region == "NY"
        assert nexus[0].has_nexus is True
        assert codes[0].code == "81100"
        assert provider.supports("get_nexus_locations")
        assert not provider.supports("get_exemption_certificates")

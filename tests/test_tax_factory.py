"""
Tests for TaxFactory fallbacks and transaction handling.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from integration_engine.core.exceptions import UpstreamError
from integration_engine.models.integration import IntegrationCategory, IntegrationLog
from integration_engine.modules.provider import OperationResult
from integration_engine.modules.tax.providers.avalara import AvalaraProvider
from integration_engine.modules.tax.providers.base import (
    TaxCalculationResponse,
    TaxCode,
    TaxDocumentStatus,
    TaxLineItem,
)
from integration_engine.services.tax_factory import NO_PROVIDER_MESSAGE, TaxFactory


def tax_response(request, total_tax: str) -> TaxCalculationResponse:
    return TaxCalculationResponse(
        transaction_id=request.transaction_id,
        status=TaxDocumentStatus.TEMPORARY,
        transaction_date=request.transaction_date,
        total_amount=Decimal("90.00") + Decimal(total_tax),
        total_taxable_amount=Decimal("90.00"),
        total_tax_amount=Decimal(total_tax),
        total_exempt_amount=Decimal("0.00"),
        currency_code=request.currency_code,
    )


@pytest.fixture
def factory(session_factory, cipher):
    return TaxFactory(session_factory=session_factory, cipher=cipher, call_timeout=1.0)


@pytest_asyncio.fixture
async def loaded_factory(factory, mock_db, scalars_result, make_config, avalara_credentials, taxjar_credentials):
    """Avalara active at priority 10, TaxJar inactive."""
    mock_db.execute.return_value = scalars_result([
        make_config("avalara", avalara_credentials, category=IntegrationCategory.TAX, priority=10),
        make_config("taxjar", taxjar_credentials, category=IntegrationCategory.TAX, is_active=False),
    ])
    await factory.load_providers()
    return factory


class TestActiveProvider:

    @pytest.mark.asyncio
    async def test_active_provider(self, loaded_factory):
        assert isinstance(loaded_factory.active_provider, AvalaraProvider)
        assert loaded_factory.get_active_provider() is loaded_factory.active_provider
        assert loaded_factory.has_active_provider()

    def test_no_provider(self, factory):
        assert factory.active_provider is None
        assert not factory.has_active_provider()


class TestCalculateTax:

    @pytest.mark.asyncio
    async def test_uses_active_provider(self, loaded_factory, mock_db, tax_request):
        expected = tax_response(tax_request, "7.99")
        loaded_factory.active_provider.calculate_tax = AsyncMock(return_value=expected)

        response = await loaded_factory.calculate_tax(tax_request)

        assert response is expected
        log = mock_db.add.call_args.args[0]
        assert isinstance(log, IntegrationLog)
        assert log.action == "CALCULATE_TAX"
        assert log.details["total_tax"] == "7.99"
        assert log.details["reference"] == "order-2001"

    @pytest.mark.asyncio
    async def test_failure_uses_fallback(self, loaded_factory, mock_db, tax_request):
        loaded_factory.active_provider.calculate_tax = AsyncMock(side_effect=UpstreamError("AvaTax unavailable"))
        manual = tax_response(tax_request, "6.40")
        fallback = AsyncMock(return_value=manual)

        response = await loaded_factory.calculate_tax(tax_request, fallback=fallback)

        assert response is manual
        fallback.assert_awaited_once()
        assert mock_db.add.call_args.args[0].action == "CALCULATE_TAX_FAILED"

    @pytest.mark.asyncio
    async def test_failure_without_fallback_is_zero_tax(self, loaded_factory, tax_request):
        loaded_factory.active_provider.calculate_tax = AsyncMock(side_effect=UpstreamError("AvaTax unavailable"))

        response = await loaded_factory.calculate_tax(tax_request)

        assert response.total_tax_amount == Decimal("0.00")
        assert response.total_amount == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_no_provider_uses_fallback(self, factory, tax_request):
        manual = tax_response(tax_request, "5.00")

        response = await factory.calculate_tax(tax_request, fallback=AsyncMock(return_value=manual))

        assert response is manual

    @pytest.mark.asyncio
    async def test_no_provider_no_fallback(self, factory, tax_request):
        response = await factory.calculate_tax(tax_request)

        assert response.total_tax_amount == Decimal("0.00")
        assert response.transaction_id == "order-2001"


class TestTransactions:

    @pytest.mark.asyncio
    async def test_commit_without_provider(self, factory):
        result = await factory.commit_transaction("order-2001")

        assert result.success is True
        assert result.message == NO_PROVIDER_MESSAGE

    @pytest.mark.asyncio
    async def test_void_without_provider(self, factory):
        result = await factory.void_transaction("order-2001")

        assert result.success is True
        assert result.message == NO_PROVIDER_MESSAGE

    @pytest.mark.asyncio
    async def test_commit_passes_through(self, loaded_factory):
        loaded_factory.active_provider.commit_transaction = AsyncMock(
            return_value=OperationResult(success=True, message="Transaction committed successfully")
        )

        result = await loaded_factory.commit_transaction("order-2001")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_void_error_reported(self, loaded_factory):
        loaded_factory.active_provider.void_transaction = AsyncMock(side_effect=UpstreamError("network down"))

        result = await loaded_factory.void_transaction("order-2001")

        assert result.success is False
        assert result.message == "network down"

    @pytest.mark.asyncio
    async def test_refund_without_provider(self, factory):
        assert await factory.refund_transaction("order-2001", "refund-1", []) is None

    @pytest.mark.asyncio
    async def test_refund_error_propagates(self, loaded_factory, mock_db):
        loaded_factory.active_provider.refund_transaction = AsyncMock(side_effect=UpstreamError("refund rejected"))
        items = [TaxLineItem(id="line-1", description="Comic", quantity=1,
                             unit_price=Decimal("25.00"), amount=Decimal("25.00"))]

        with pytest.raises(UpstreamError):
            await loaded_factory.refund_transaction("order-2001", "refund-1", items)
        assert mock_db.add.call_args.args[0].action == "REFUND_TRANSACTION_FAILED"


class TestReferenceData:

    @pytest.mark.asyncio
    async def test_validate_address_without_provider(self, factory, tax_request):
        result = await factory.validate_address(tax_request.to_address)

        assert result.is_valid is True
        assert result.normalized_address is tax_request.to_address

    @pytest.mark.asyncio
    async def test_validate_address_error_accepts(self, loaded_factory, tax_request):
        loaded_factory.active_provider.validate_address = AsyncMock(side_effect=RuntimeError("boom"))

        result = await loaded_factory.validate_address(tax_request.to_address)

        assert result.is_valid is True

    @pytest.mark.asyncio
    async def test_tax_codes(self, loaded_factory):
        loaded_factory.active_provider.get_tax_codes = AsyncMock(return_value=[TaxCode("P0000000", "General")])

        codes = await loaded_factory.get_tax_codes()

        assert codes[0].code == "P0000000"

    @pytest.mark.asyncio
    async def test_reference_data_errors_return_empty(self, loaded_factory):
        loaded_factory.active_provider.get_tax_codes = AsyncMock(side_effect=UpstreamError("down"))
        loaded_factory.active_provider.get_nexus_locations = AsyncMock(side_effect=UpstreamError("down"))

        assert await loaded_factory.get_tax_codes() == []
        assert await loaded_factory.get_nexus_locations() == []

    @pytest.mark.asyncio
    async def test_reference_data_without_provider(self, factory):
        assert await factory.get_tax_codes() == []
        assert await factory.get_nexus_locations() == []

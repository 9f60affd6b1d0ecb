"""
Tax Factory v1.0.0

- Loads TAX integrations into tax adapters
- One active provider (highest priority active config)
- Checkout never sees a provider error: calculation degrades to the
  caller's fallback or to a zero-tax result
"""
import logging
from typing import Awaitable, Callable, List, Optional, Type

from integration_engine.models.integration import IntegrationCategory
from integration_engine.modules.provider import OperationResult
from integration_engine.modules.tax.providers import get_tax_provider_class
from integration_engine.modules.tax.providers.base import (
    BaseTaxProvider,
    NexusLocation,
    TaxAddress,
    TaxAddressValidationResult,
    TaxCalculationRequest,
    TaxCalculationResponse,
    TaxCode,
    TaxLineItem,
    zero_tax_response,
)
from integration_engine.services.provider_factory import BaseProviderFactory

logger = logging.getLogger(__name__)

NO_PROVIDER_MESSAGE = "No external tax provider configured"

TaxFallback = Callable[[], Awaitable[TaxCalculationResponse]]


class TaxFactory(BaseProviderFactory):
    """Tax adapters for the TAX category."""

    category = IntegrationCategory.TAX
    kind = "tax"
    stats_action = "CALCULATE_TAX"

    def _resolve_class(self, provider_id: str) -> Optional[Type[BaseTaxProvider]]:
        return get_tax_provider_class(provider_id)

    @property
    def active_provider(self) -> Optional[BaseTaxProvider]:
        return self.get_default_provider()

    def get_active_provider(self) -> Optional[BaseTaxProvider]:
        return self.active_provider

    def has_active_provider(self) -> bool:
        return self.active_provider is not None

    async def load_providers(self) -> None:
        await super().load_providers()
        active = self.active_provider
        logger.info(f"Active tax provider: {active.provider_id if active else 'none'}")

    # ==================== Calculation ====================

    async def calculate_tax(
        self,
        request: TaxCalculationRequest,
        fallback: Optional[TaxFallback] = None,
    ) -> TaxCalculationResponse:
        """
        Calculate tax with the active provider.

        Falls back to ``fallback()`` when the provider is absent or fails,
        and to a zero-tax response when no fallback is given.
        """
        provider = self.active_provider
        if provider is not None:
            try:
                return await self._audited(
                    provider,
                    "CALCULATE_TAX",
                    provider.calculate_tax(request),
                    reference=request.transaction_id,
                    summarize=lambda r: {"total_tax": str(r.total_tax_amount)},
                )
            except Exception as e:
                logger.error(f"Tax calculation failed with {provider.provider_id}: {e}")

        if fallback is not None:
            logger.info("Falling back to manual tax calculation")
            return await fallback()

        return zero_tax_response(request)

    # ==================== Transactions ====================

    async def commit_transaction(self, transaction_id: str) -> OperationResult:
        provider = self.active_provider
        if provider is None:
            return OperationResult(success=True, message=NO_PROVIDER_MESSAGE)

        try:
            return await self._audited(
                provider,
                "COMMIT_TRANSACTION",
                provider.commit_transaction(transaction_id),
                reference=transaction_id,
                summarize=lambda r: {"success": r.success},
            )
        except Exception as e:
            return OperationResult(success=False, message=str(e))

    async def void_transaction(self, transaction_id: str) -> OperationResult:
        provider = self.active_provider
        if provider is None:
            return OperationResult(success=True, message=NO_PROVIDER_MESSAGE)

        try:
            return await self._audited(
                provider,
                "VOID_TRANSACTION",
                provider.void_transaction(transaction_id),
                reference=transaction_id,
                summarize=lambda r: {"success": r.success},
            )
        except Exception as e:
            return OperationResult(success=False, message=str(e))

    async def refund_transaction(
        self,
        original_transaction_id: str,
        refund_transaction_id: str,
        items: List[TaxLineItem],
    ) -> Optional[TaxCalculationResponse]:
        """Refund through the active provider; None when there is none. Errors propagate."""
        provider = self.active_provider
        if provider is None:
            return None

        try:
            return await self._audited(
                provider,
                "REFUND_TRANSACTION",
                provider.refund_transaction(original_transaction_id, refund_transaction_id, items),
                reference=refund_transaction_id,
                summarize=lambda r: {"original_transaction_id": original_transaction_id},
            )
        except Exception as e:
            logger.error(f"Refund {refund_transaction_id} failed with {provider.provider_id}: {e}")
            raise

    # ==================== Addresses / Reference Data ====================

    async def validate_address(self, address: TaxAddress) -> TaxAddressValidationResult:
        provider = self.active_provider
        if provider is None:
            return TaxAddressValidationResult(is_valid=True, normalized_address=address)

        try:
            return await self._call(provider, "validate_address", provider.validate_address(address))
        except Exception as e:
            logger.warning(f"Address validation failed: {e}")
            return TaxAddressValidationResult(is_valid=True, normalized_address=address)

    async def get_tax_codes(self) -> List[TaxCode]:
        provider = self.active_provider
        if provider is None or not provider.supports("get_tax_codes"):
            return []

        try:
            return await self._call(provider, "get_tax_codes", provider.get_tax_codes())
        except Exception as e:
            logger.warning(f"Failed to get tax codes: {e}")
            return []

    async def get_nexus_locations(self) -> List[NexusLocation]:
        provider = self.active_provider
        if provider is None or not provider.supports("get_nexus_locations"):
            return []

        try:
            return await self._call(provider, "get_nexus_locations", provider.get_nexus_locations())
        except Exception as e:
            logger.warning(f"Failed to get nexus locations: {e}")
            return []

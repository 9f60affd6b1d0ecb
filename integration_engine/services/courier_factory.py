"""
Courier Factory v1.0.0

- Loads SHIPPING integrations into courier adapters
- Rate shopping across every active carrier (failures isolated per carrier)
- Explicit-carrier shipment, pickup and cancellation calls
- Tracking with carrier auto-detection
- Idempotent shipment creation per order and carrier

Usage:
    factory = CourierFactory()
    await factory.load_providers()
    rates = await factory.get_all_rates(request)
"""
import asyncio
import dataclasses
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

from integration_engine.core.exceptions import UpstreamError
from integration_engine.models.integration import IntegrationCategory
from integration_engine.modules.provider import OperationResult
from integration_engine.modules.shipping.carriers import get_carrier_class
from integration_engine.modules.shipping.carriers.base import (
    Address,
    AddressValidationResult,
    BaseCourierProvider,
    PickupRequest,
    PickupResponse,
    RateRequest,
    RateResponse,
    ServiceOption,
    ShipmentRequest,
    ShipmentResponse,
    TrackingResponse,
    TrackingStatus,
)
from integration_engine.services.provider_factory import BaseProviderFactory

logger = logging.getLogger(__name__)


def shipment_idempotency_key(order_id: str, provider_name: str) -> str:
    """Stable key for one order shipped through one carrier."""
    return hashlib.sha256(f"{order_id}:{provider_name}".encode()).hexdigest()[:32]


def _transit_days(rate: RateResponse) -> float:
    return rate.estimated_days if rate.estimated_days is not None else float("inf")


# Oldest shipments are evicted first once the cache is full
SHIPMENT_CACHE_LIMIT = 1000


@dataclass
class _KeyLock:
    """Per-key lock plus the number of callers holding or waiting on it."""
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class CourierFactory(BaseProviderFactory):
    """Courier adapters for the SHIPPING category."""

    category = IntegrationCategory.SHIPPING
    kind = "shipping"
    stats_action = "CREATE_SHIPMENT"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._shipment_locks: Dict[str, _KeyLock] = {}
        self._shipments: Dict[str, ShipmentResponse] = {}

    def _resolve_class(self, provider_id: str) -> Optional[Type[BaseCourierProvider]]:
        return get_carrier_class(provider_id)

    async def load_providers(self) -> None:
        """Rebuild the adapter cache; remembered shipments belong to the old adapters and are dropped."""
        await super().load_providers()
        self._shipments.clear()
        self._shipment_locks.clear()

    def _remember_shipment(self, key: str, response: ShipmentResponse) -> None:
        self._shipments.pop(key, None)
        while len(self._shipments) >= SHIPMENT_CACHE_LIMIT:
            del self._shipments[next(iter(self._shipments))]
        self._shipments[key] = response

    def _forget_shipment(self, provider_name: str, shipment_id: str) -> None:
        """Drop remembered shipments matching a cancelled shipment id or tracking number."""
        stale = [
            key for key, shipment in self._shipments.items()
            if shipment.provider_id == provider_name
            and shipment_id in (shipment.shipment_id, shipment.tracking_number)
        ]
        for key in stale:
            del self._shipments[key]

    # ==================== Rates ====================

    async def get_all_rates(self, request: RateRequest) -> List[RateResponse]:
        """
        Quote every active carrier concurrently.

        A failing carrier is logged and contributes no rates.

        Returns:
            Rates from all carriers, cheapest first
        """
        providers = self.get_active_providers()
        if not providers:
            logger.warning("No active shipping providers for rate lookup")
            return []

        results = await asyncio.gather(
            *(self._call(provider, "get_rates", provider.get_rates(request)) for provider in providers),
            return_exceptions=True,
        )

        all_rates: List[RateResponse] = []
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to get rates from {provider.provider_id}: {result}")
                continue
            logger.info(f"Got {len(result)} rates from {provider.provider_id}")
            all_rates.extend(result)

        # Sort by rate (lowest first)
        all_rates.sort(key=lambda r: r.rate)
        return all_rates

    async def get_rates(self, provider_name: str, request: RateRequest) -> List[RateResponse]:
        provider = self._require_provider(provider_name)
        return await self._call(provider, "get_rates", provider.get_rates(request))

    async def find_cheapest_rate(self, request: RateRequest) -> Optional[RateResponse]:
        rates = await self.get_all_rates(request)
        return rates[0] if rates else None

    async def find_fastest_rate(self, request: RateRequest) -> Optional[RateResponse]:
        """Fewest estimated days; the cheaper rate wins a tie. Rates without an estimate rank last."""
        rates = await self.get_all_rates(request)
        fastest: Optional[RateResponse] = None
        for rate in rates:
            if fastest is None or _transit_days(rate) < _transit_days(fastest):
                fastest = rate
        return fastest

    # ==================== Shipments ====================

    async def create_shipment(self, provider_name: str, request: ShipmentRequest) -> ShipmentResponse:
        """
        Create a shipment with a specific carrier.

        Concurrent or repeated calls for the same order and carrier share one
        idempotency key: they are serialized and a repeat returns the earlier
        response instead of buying a second label.

        Raises:
            NotFoundError: carrier unknown or inactive
            ValidationError / UpstreamError: from the carrier
        """
        provider = self._require_provider(provider_name)
        key = request.idempotency_key or shipment_idempotency_key(request.order_id, provider_name)
        if request.idempotency_key != key:
            request = dataclasses.replace(request, idempotency_key=key)

        key_lock = self._shipment_locks.get(key)
        if key_lock is None:
            key_lock = self._shipment_locks[key] = _KeyLock()
        key_lock.users += 1
        try:
            async with key_lock.lock:
                existing = self._shipments.get(key)
                if existing is not None:
                    logger.info(f"Returning existing {provider_name} shipment for order {request.order_id}")
                    return existing

                response = await self._audited(
                    provider,
                    "CREATE_SHIPMENT",
                    provider.create_shipment(request),
                    reference=request.order_id,
                    summarize=lambda r: {"tracking_number": r.tracking_number, "idempotency_key": key},
                )
                self._remember_shipment(key, response)
                return response
        finally:
            key_lock.users -= 1
            if key_lock.users == 0 and self._shipment_locks.get(key) is key_lock:
                del self._shipment_locks[key]

    async def cancel_shipment(self, provider_name: str, shipment_id: str) -> OperationResult:
        """Cancel a shipment; once cancelled, the order can be shipped again with the carrier."""
        provider = self._require_provider(provider_name)
        result = await self._audited(
            provider,
            "CANCEL_SHIPMENT",
            provider.cancel_shipment(shipment_id),
            reference=shipment_id,
            summarize=lambda r: {"success": r.success, "message": r.message},
        )
        if result.success:
            self._forget_shipment(provider_name, shipment_id)
        return result

    async def schedule_pickup(self, provider_name: str, request: PickupRequest) -> PickupResponse:
        provider = self._require_provider(provider_name)
        return await self._audited(
            provider,
            "SCHEDULE_PICKUP",
            provider.schedule_pickup(request),
            summarize=lambda r: {"confirmation_number": r.confirmation_number},
        )

    async def cancel_pickup(self, provider_name: str, confirmation_number: str) -> OperationResult:
        provider = self._require_provider(provider_name)
        return await self._audited(
            provider,
            "CANCEL_PICKUP",
            provider.cancel_pickup(confirmation_number),
            reference=confirmation_number,
            summarize=lambda r: {"success": r.success},
        )

    async def get_available_services(
        self,
        provider_name: str,
        from_address: Address,
        to_address: Address,
    ) -> List[ServiceOption]:
        provider = self._require_provider(provider_name)
        return await self._call(
            provider,
            "get_available_services",
            provider.get_available_services(from_address, to_address),
        )

    # ==================== Tracking ====================

    async def track_shipment(self, tracking_number: str, provider_name: Optional[str] = None) -> TrackingResponse:
        """
        Track a shipment, auto-detecting the carrier when none is named.

        Without a carrier, active carriers are tried by priority until one
        reports a status other than UNKNOWN.

        Raises:
            NotFoundError: named carrier unknown or inactive
            UpstreamError: no carrier could track the number
        """
        if provider_name:
            provider = self._require_provider(provider_name)
            return await self._call(provider, "track_shipment", provider.track_shipment(tracking_number))

        errors: List[str] = []
        for provider in self.get_active_providers():
            try:
                response = await self._call(provider, "track_shipment", provider.track_shipment(tracking_number))
            except Exception as e:
                errors.append(f"{provider.provider_id}: {e}")
                continue

            if response.status != TrackingStatus.UNKNOWN:
                return response
            errors.append(f"{provider.provider_id}: tracking number not recognized")

        raise UpstreamError(
            f"Unable to track shipment. Tried providers: {', '.join(errors) or 'none'}",
            code="TRACKING_UNAVAILABLE",
            details={"tracking_number": tracking_number, "errors": errors},
        )

    # ==================== Addresses ====================

    async def validate_address(self, address: Address, provider_name: Optional[str] = None) -> AddressValidationResult:
        if provider_name:
            provider = self._require_provider(provider_name)
        else:
            provider = self.get_default_provider()
            if provider is None:
                # No carrier to ask; accept the address as given
                return AddressValidationResult(is_valid=True, normalized_address=address)

        return await self._call(provider, "validate_address", provider.validate_address(address))

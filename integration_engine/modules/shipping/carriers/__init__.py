"""
Courier Registry v1.0.0

- Maps provider ids to courier adapter classes
- Couriers register themselves with @register_carrier
- Unknown provider ids resolve to None; the factory skips them
"""
from typing import Dict, List, Optional, Type
import logging

from integration_engine.modules.shipping.carriers.base import BaseCourierProvider

logger = logging.getLogger(__name__)

# Registry of courier implementations
_CARRIER_REGISTRY: Dict[str, Type[BaseCourierProvider]] = {}


def register_carrier(provider_id: str):
    """
    Decorator to register a courier implementation.

    Usage:
        @register_carrier("fedex")
        class FedExProvider(BaseCourierProvider):
            ...
    """
    def decorator(cls: Type[BaseCourierProvider]):
        _CARRIER_REGISTRY[provider_id] = cls
        logger.debug(f"Registered courier: {provider_id} -> {cls.__name__}")
        return cls
    return decorator


def get_carrier_class(provider_id: str) -> Optional[Type[BaseCourierProvider]]:
    return _CARRIER_REGISTRY.get(provider_id)


def get_registered_carriers() -> List[str]:
    """Get list of all registered courier ids."""
    return list(_CARRIER_REGISTRY.keys())


# Import couriers to trigger registration
# These imports must be at the bottom to avoid circular imports
from integration_engine.modules.shipping.carriers.royal_mail import RoyalMailProvider  # noqa: E402, F401
from integration_engine.modules.shipping.carriers.fedex import FedExProvider  # noqa: E402, F401
from integration_engine.modules.shipping.carriers.dhl import DHLProvider  # noqa: E402, F401

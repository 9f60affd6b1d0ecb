"""
Tax Provider Registry v1.0.0

- Maps provider ids to tax adapter classes
- Providers register themselves with @register_tax_provider
"""
from typing import Dict, List, Optional, Type
import logging

from integration_engine.modules.tax.providers.base import BaseTaxProvider

logger = logging.getLogger(__name__)

# Registry of tax provider implementations
_TAX_PROVIDER_REGISTRY: Dict[str, Type[BaseTaxProvider]] = {}


def register_tax_provider(provider_id: str):
    """
    Decorator to register a tax provider implementation.

    Usage:
        @register_tax_provider("avalara")
        class AvalaraProvider(BaseTaxProvider):
            ...
    """
    def decorator(cls: Type[BaseTaxProvider]):
        _TAX_PROVIDER_REGISTRY[provider_id] = cls
        logger.debug(f"Registered tax provider: {provider_id} -> {cls.__name__}")
        return cls
    return decorator


def get_tax_provider_class(provider_id: str) -> Optional[Type[BaseTaxProvider]]:
    return _TAX_PROVIDER_REGISTRY.get(provider_id)


def get_registered_tax_providers() -> List[str]:
    return list(_TAX_PROVIDER_REGISTRY.keys())


# Import providers to trigger registration
# These imports must be at the bottom to avoid circular imports
from integration_engine.modules.tax.providers.avalara import AvalaraProvider  # noqa: E402, F401
from integration_engine.modules.tax.providers.taxjar import TaxJarProvider  # noqa: E402, F401
